"""
Collaborative Sync Client

Client-side synchronization core for collaborative rich-text editing.

Provides:
- A sync service keeping a local step log in line with a shared document
- An adaptive polling backend over a stateless HTTP session endpoint
- Error classification surfaced through a synchronous event bus

Usage:

    >>> from collab_sync import SessionApi, SessionApiConfig, SyncService
    >>> api = SessionApi(SessionApiConfig.from_env())
    >>> service = SyncService(api, serialize=editor.serialize, get_document_state=editor.state)
    >>> service.on("sync", lambda payload: editor.apply(payload.steps))
    >>> await service.open(file_id=42)
    >>> service.start_sync()
    >>> await service.send_steps(editor.sendable_steps)
    >>> await service.close()
"""

from .config import SessionApiConfig, SyncConfig
from .events import EventBus
from .exceptions import (
    CollabSyncError,
    ConfigurationError,
    ConnectionClosedError,
    InvalidResponseError,
    SessionApiError,
    SessionConnectionError,
    SessionRequestError,
)
from .host import AlwaysVisible, LoggingNotifier, Notifier, VisibilityProvider, VisibilitySignal
from .polling import PollingBackend
from .protocol import (
    ChangePayload,
    DocumentInfo,
    DocumentSnapshot,
    ErrorPayload,
    ErrorType,
    LoadedPayload,
    OpenResponse,
    ReceivedStep,
    SessionInfo,
    StateChangePayload,
    StepBucket,
    SyncEventName,
    SyncPayload,
    SyncResponse,
)
from .service import ServiceState, StepLogSlice, SyncService
from .session import Connection, SessionApi

__all__ = [
    # Core
    "SyncService",
    "ServiceState",
    "StepLogSlice",
    "PollingBackend",
    "EventBus",
    # Session endpoint
    "SessionApi",
    "Connection",
    # Configuration
    "SyncConfig",
    "SessionApiConfig",
    # Host capabilities
    "VisibilityProvider",
    "VisibilitySignal",
    "AlwaysVisible",
    "Notifier",
    "LoggingNotifier",
    # Protocol
    "ErrorType",
    "SyncEventName",
    "DocumentInfo",
    "DocumentSnapshot",
    "SessionInfo",
    "StepBucket",
    "OpenResponse",
    "SyncResponse",
    "LoadedPayload",
    "ChangePayload",
    "SyncPayload",
    "ReceivedStep",
    "StateChangePayload",
    "ErrorPayload",
    # Exceptions
    "CollabSyncError",
    "SessionRequestError",
    "SessionApiError",
    "SessionConnectionError",
    "InvalidResponseError",
    "ConnectionClosedError",
    "ConfigurationError",
]

__version__ = "0.1.0"
