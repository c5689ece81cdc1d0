"""
Hearth - Home Control Core

Voice command interpretation and dispatch, dual-store device state with
read-back reconciliation, and the security arming state machine.
"""

__version__ = "0.1.0"
