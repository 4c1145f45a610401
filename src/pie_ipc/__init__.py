"""
Pie Menu IPC - client side of the local menu IPC protocol.

This package defines the wire vocabulary shared with the menu application,
the discovery record, and the reference show-menu and observer clients.
"""

__version__ = "0.1.0"
