"""
Hearth - Shared Utilities

Common functionality used across all Hearth services:
- Configuration and structured logging
- Error taxonomy
- Data model (rooms, appliances, canonical devices, commands)
- Notification channel
- Inventory and canonical device store clients
"""

__version__ = "0.1.0"
