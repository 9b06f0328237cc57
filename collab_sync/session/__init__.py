"""
Session endpoint client.

Provides the HTTP implementation of the open/push/sync/update/close
contract used by the sync service.
"""

from .api import SessionApi
from .connection import Connection

__all__ = [
    "SessionApi",
    "Connection",
]
