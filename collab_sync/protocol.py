"""
Wire types and event payloads for the collaborative sync protocol.

The session endpoint speaks JSON with camelCase keys; these dataclasses
hold the decoded values in snake_case and convert back for requests.
Steps are opaque to this package: bucket ``data`` is passed through
untouched and only checked for being a list.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

logger = logging.getLogger(__name__)

# =============================================================================
# Enumerations
# =============================================================================


class ErrorType(IntEnum):
    """Error classifications reported through ``error`` events."""

    # Save failed due to an external change; needs manual resolution
    SAVE_COLLISSION = 0
    # Pushing local steps was rejected while in sync with the server
    PUSH_FAILURE = 1
    LOAD_ERROR = 2
    CONNECTION_FAILED = 3
    SOURCE_NOT_FOUND = 4


class SyncEventName(str, Enum):
    """Names of the events published by the sync service."""

    OPENED = "opened"
    LOADED = "loaded"
    CHANGE = "change"
    SAVE = "save"
    SYNC = "sync"
    STATE_CHANGE = "stateChange"
    ERROR = "error"
    IDLE = "idle"


# =============================================================================
# Wire Types
# =============================================================================


def _as_int(value: Any) -> int:
    """Read an integer field, treating missing or malformed values as 0."""
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


@dataclass
class DocumentInfo:
    """Remote metadata of the shared document.

    ``last_saved_version_time`` is a unix timestamp in seconds, as sent
    by the server.
    """

    id: int | str | None = None
    last_saved_version: int = 0
    last_saved_version_time: float = 0
    current_version: int = 0
    base_version_etag: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = ("id", "lastSavedVersion", "lastSavedVersionTime", "currentVersion", "baseVersionEtag")

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DocumentInfo:
        """Create from a decoded JSON object."""
        if not isinstance(data, dict):
            data = {}
        return cls(
            id=data.get("id"),
            last_saved_version=_as_int(data.get("lastSavedVersion")),
            last_saved_version_time=_as_float(data.get("lastSavedVersionTime")),
            current_version=_as_int(data.get("currentVersion")),
            base_version_etag=data.get("baseVersionEtag"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation."""
        result = dict(self.extra)
        result.update(
            {
                "id": self.id,
                "lastSavedVersion": self.last_saved_version,
                "lastSavedVersionTime": self.last_saved_version_time,
                "currentVersion": self.current_version,
            }
        )
        if self.base_version_etag is not None:
            result["baseVersionEtag"] = self.base_version_etag
        return result


@dataclass
class SessionInfo:
    """A collaborator session as reported in the roster.

    ``last_contact`` is a unix timestamp in seconds.
    """

    id: int | str | None = None
    user_id: str | None = None
    guest_name: str | None = None
    color: str | None = None
    last_contact: float = 0
    token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        return cls(
            id=data.get("id"),
            user_id=data.get("userId"),
            guest_name=data.get("guestName"),
            color=data.get("color"),
            last_contact=_as_float(data.get("lastContact")),
            token=data.get("token"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "guestName": self.guest_name,
            "color": self.color,
            "lastContact": self.last_contact,
        }
        if self.token is not None:
            result["token"] = self.token
        return result


@dataclass
class StepBucket:
    """A group of steps accepted by the server under one version.

    ``data`` is expected to be a list of opaque steps but is kept as
    received so malformed buckets can be detected and skipped.
    """

    version: int
    session_id: int | str | None
    data: Any

    @classmethod
    def from_dict(cls, data: Any) -> StepBucket:
        if not isinstance(data, dict):
            # No step list, so the receiver skips it
            return cls(version=0, session_id=None, data=None)
        return cls(
            version=_as_int(data.get("version")),
            session_id=data.get("sessionId"),
            data=data.get("data"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "sessionId": self.session_id, "data": self.data}


@dataclass
class DocumentSnapshot:
    """Initial content delivered when a session is opened."""

    document_source: str | None = None
    document_state: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DocumentSnapshot:
        data = data or {}
        return cls(
            document_source=data.get("documentSource"),
            document_state=data.get("documentState"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"documentSource": self.document_source, "documentState": self.document_state}


@dataclass
class OpenResponse:
    """Result of negotiating a collaboration session."""

    document: DocumentInfo
    session: SessionInfo
    state: DocumentSnapshot
    is_public: bool = False
    read_only: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OpenResponse:
        """Create from a decoded open response.

        Accepts the initial content either nested under ``state`` or as
        top-level ``content``/``documentState`` keys.
        """
        if "state" in data:
            state = DocumentSnapshot.from_dict(data.get("state"))
        else:
            state = DocumentSnapshot(
                document_source=data.get("content"),
                document_state=data.get("documentState"),
            )
        return cls(
            document=DocumentInfo.from_dict(data.get("document")),
            session=SessionInfo.from_dict(data.get("session") or {}),
            state=state,
            is_public=bool(data.get("isPublic", False)),
            read_only=bool(data.get("readOnly", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "session": self.session.to_dict(),
            "state": self.state.to_dict(),
            "isPublic": self.is_public,
            "readOnly": self.read_only,
        }


@dataclass
class SyncResponse:
    """Result of one sync request: document metadata, roster and new steps."""

    document: DocumentInfo
    sessions: list[SessionInfo] = field(default_factory=list)
    steps: list[StepBucket] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncResponse:
        """Create from a decoded sync response.

        Malformed step buckets are kept (with no step list) so they can be
        reported; roster entries that are not objects are dropped.
        """
        sessions = []
        for entry in _as_list(data.get("sessions")):
            if isinstance(entry, dict):
                sessions.append(SessionInfo.from_dict(entry))
            else:
                logger.warning(f"Ignoring malformed session entry: {entry!r}")
        return cls(
            document=DocumentInfo.from_dict(data.get("document")),
            sessions=sessions,
            steps=[StepBucket.from_dict(s) for s in _as_list(data.get("steps"))],
        )


def encode_document_state(state: str | bytes | None) -> str | None:
    """Prepare an opaque document state blob for the JSON transport.

    Strings pass through verbatim; bytes are base64 encoded.
    """
    if isinstance(state, bytes):
        return base64.b64encode(state).decode("ascii")
    return state


# =============================================================================
# Event Payloads
# =============================================================================


@dataclass
class LoadedPayload:
    """Payload of ``opened`` and ``loaded`` events."""

    document: DocumentInfo
    session: SessionInfo
    document_source: str | None
    document_state: str | None
    version: int


@dataclass
class ChangePayload:
    """Payload of ``change`` events, emitted after every successful fetch."""

    document: DocumentInfo
    sessions: list[SessionInfo]


# A save is reported with the same document/roster pair
SavePayload = ChangePayload


@dataclass
class ReceivedStep:
    """A single applied step together with the session that produced it."""

    step: Any
    client_id: int | str | None


@dataclass
class SyncPayload:
    """Payload of ``sync`` events."""

    steps: list[ReceivedStep]
    document: DocumentInfo | None
    version: int


@dataclass
class StateChangePayload:
    """Payload of ``stateChange`` events; only the set field changed."""

    dirty: bool | None = None
    initial_loading: bool | None = None


@dataclass
class ErrorPayload:
    """Payload of ``error`` events."""

    type: ErrorType
    data: dict[str, Any] = field(default_factory=dict)
