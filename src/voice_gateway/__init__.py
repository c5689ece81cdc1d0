"""
Hearth - Voice Gateway

HTTP and voice surface for the home control core: text and audio commands,
direct device updates, reconciliation triggers and security controls.
"""

__version__ = "0.1.0"
