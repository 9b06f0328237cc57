"""
Sync service: the façade the editing surface talks to.

Owns the step log, the document version, the collaborator roster and
the event bus. Opening and closing the session happen here; fetch
timing is delegated to the polling backend.

Typical flow:
    editor -> send_steps -> Connection.push -> server
    PollingBackend -> Connection.sync -> _receive_steps -> "sync" event -> editor
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from .config import SyncConfig
from .events import EventBus, EventHandler
from .exceptions import (
    CollabSyncError,
    ConnectionClosedError,
    InvalidResponseError,
    SessionApiError,
    SessionConnectionError,
)
from .host import LoggingNotifier, Notifier, VisibilityProvider
from .logging_utils import SyncLoggerAdapter
from .polling import PollingBackend
from .protocol import (
    ErrorPayload,
    ErrorType,
    LoadedPayload,
    ReceivedStep,
    SessionInfo,
    StateChangePayload,
    SyncEventName,
    SyncPayload,
    SyncResponse,
)
from .session.connection import Connection

logger = logging.getLogger(__name__)

PUSH_FAILURE_NOTICE = "Changes could not be sent yet"


class ServiceState(Enum):
    """Lifecycle state of the sync service."""

    UNOPENED = "unopened"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionOpener(Protocol):
    """Anything able to negotiate a session, normally a SessionApi."""

    async def open(
        self,
        file_id: int | str | None = None,
        file_path: str | None = None,
        share_token: str | None = None,
        guest_name: str | None = None,
    ) -> Connection: ...


@dataclass
class StepLogSlice:
    """Steps applied from a given position on, with their originating sessions."""

    steps: list[Any]
    client_ids: list[int | str | None]


class SyncService:
    """Keeps a local document model in step with the shared remote document.

    Example:
        >>> service = SyncService(api, serialize=editor.to_markdown, get_document_state=editor.state)
        >>> service.on("sync", lambda payload: editor.apply(payload.steps))
        >>> await service.open(file_id=42)
        >>> service.start_sync()
        >>> await service.send_steps(editor.sendable_steps)
        >>> await service.close()
    """

    def __init__(
        self,
        api: SessionOpener,
        serialize: Callable[[], str],
        get_document_state: Callable[[], str | bytes | None],
        config: SyncConfig | None = None,
        visibility: VisibilityProvider | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the sync service.

        Args:
            api: Session opener used by ``open``
            serialize: Returns the serialized document content for saving
            get_document_state: Returns the opaque editor state blob saved alongside
            config: Timing configuration shared with the polling backend
            visibility: Foreground/background signal of the host
            notifier: Channel for transient user notices
            clock: Wall clock in seconds
        """
        self._bus = EventBus()
        self._api = api
        self.serialize = serialize
        self.get_document_state = get_document_state
        self.config = config or SyncConfig()
        self._visibility = visibility
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock

        self.connection: Connection | None = None
        self.backend: PollingBackend | None = None
        self.state = ServiceState.UNOPENED

        self.sessions: list[SessionInfo] = []
        self.steps: list[Any] = []
        self.step_client_ids: list[int | str | None] = []
        self.version = 0
        self.last_step_push = clock()

        self._push_lock = asyncio.Lock()
        self._connection_ready = asyncio.Event()
        self._log = SyncLoggerAdapter(logger, self.log_context)

    @property
    def sending(self) -> bool:
        """Whether a push is currently in flight."""
        return self._push_lock.locked()

    def log_context(self) -> dict[str, Any]:
        """Document fields attached to every record logged for this service."""
        if self.connection is None:
            return {}
        return {
            "file_id": self.connection.document.id,
            "session_id": self.connection.session.id,
            "version": self.version,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(
        self,
        file_id: int | str | None = None,
        initial_session: dict[str, Any] | None = None,
        file_path: str | None = None,
        share_token: str | None = None,
        guest_name: str | None = None,
    ) -> bool:
        """Establish the collaboration session.

        Failures are reported as LOAD_ERROR (server refused) or
        CONNECTION_FAILED (server unreachable) error events.

        Args:
            file_id: Id of the document to open
            initial_session: Open response obtained earlier; skips the request
            file_path: Optional document path
            share_token: Share token for link-shared documents
            guest_name: Guest display name on public documents

        Returns:
            True if the session is open
        """
        if self.state != ServiceState.UNOPENED:
            self._log.error(f"Cannot open a sync service in state {self.state.value}")
            return False

        self.state = ServiceState.OPENING
        self.off(SyncEventName.CHANGE, self._update_sessions).on(SyncEventName.CHANGE, self._update_sessions)

        try:
            if initial_session is not None:
                self.connection = Connection.from_snapshot(
                    self._api, initial_session, file_path=file_path, share_token=share_token
                )
            else:
                self.connection = await self._api.open(
                    file_id=file_id,
                    file_path=file_path,
                    share_token=share_token,
                    guest_name=guest_name,
                )
        except Exception as e:
            self.state = ServiceState.UNOPENED
            self._emit_open_error(e)
            return False

        self.version = self.connection.last_saved_version
        self.backend = PollingBackend(
            self,
            self.connection,
            config=self.config,
            visibility=self._visibility,
            clock=self._clock,
        )
        self.state = ServiceState.OPEN
        self._connection_ready.set()
        self._log.info(f"Opened document at version {self.version}")

        payload = LoadedPayload(
            document=self.connection.document,
            session=self.connection.session,
            document_source=self.connection.state.document_source,
            document_state=self.connection.state.document_state,
            version=self.version,
        )
        self.emit(SyncEventName.OPENED, payload)
        self.emit(SyncEventName.LOADED, payload)
        return True

    def _emit_open_error(self, error: Exception) -> None:
        if isinstance(error, SessionApiError):
            self._log.error(f"Failed to open document: {error}")
            self._emit_error(ErrorType.LOAD_ERROR, {"status": error.status, "data": error.data})
        elif isinstance(error, InvalidResponseError):
            self._log.error(f"Failed to open document: {error}")
            self._emit_error(ErrorType.LOAD_ERROR, {"status": None, "data": {}, "reason": error.reason})
        else:
            self._log.error(f"Failed to connect while opening document: {error}", exc_info=error)
            self._emit_error(ErrorType.CONNECTION_FAILED)

    def _update_sessions(self, payload: Any) -> None:
        self.sessions = list(payload.sessions)

    def start_sync(self) -> None:
        """Start the fetch loop of the polling backend."""
        if self.backend is None:
            self._log.error("Cannot start sync before the document is opened")
            return
        self.backend.connect()

    async def close(self) -> None:
        """Stop syncing, hand a final save to the server, and close the session.

        Waits for a ``save`` acknowledgment up to ``close_timeout_ms``.
        Never raises; failures closing the connection are logged.
        """
        if self.state in (ServiceState.CLOSING, ServiceState.CLOSED):
            return

        self.state = ServiceState.CLOSING
        if self.backend is None or self.connection is None:
            self.state = ServiceState.CLOSED
            return

        self.backend.disconnect()
        saved = asyncio.Event()

        def on_save(_payload: Any) -> None:
            saved.set()

        self.on(SyncEventName.SAVE, on_save)
        try:
            await asyncio.wait_for(self._drain(saved), timeout=self.config.close_timeout_ms / 1000)
        except TimeoutError:
            self._log.warning(f"No save confirmation within {self.config.close_timeout_ms} ms, closing anyway")
        finally:
            self.off(SyncEventName.SAVE, on_save)

        await self._close_connection()
        self.state = ServiceState.CLOSED
        self._log.info("Closed document")

    async def _drain(self, saved: asyncio.Event) -> None:
        # A fetch in flight would clear the save request on completion
        await self.backend.wait_for_fetch()
        self.save()
        await self.backend.flush()
        await saved.wait()

    async def _close_connection(self) -> None:
        if self.connection is None:
            return
        self.backend.disconnect()
        try:
            await self.connection.close()
        except Exception as e:
            self._log.error(f"Failed to close connection: {e}")

    # =========================================================================
    # Steps
    # =========================================================================

    async def send_steps(self, producer: Callable[[], dict[str, Any] | None]) -> dict[str, Any] | None:
        """Push locally produced steps.

        ``stateChange`` with ``dirty=True`` is emitted before anything else.
        The call then waits until a connection exists and no other push is
        in flight; ``producer`` is invoked only once the push starts, so it
        yields the steps sendable at that moment.

        Returns:
            Server answer of the push, or None if nothing was pushed
        """
        self.emit(SyncEventName.STATE_CHANGE, StateChangePayload(dirty=True))

        if self.connection is None or self._push_lock.locked():
            self._log.debug("Push deferred until the connection is free")

        await self._connection_ready.wait()
        async with self._push_lock:
            sendable = producer()
            if sendable is None:
                return None
            try:
                result = await self.connection.push(sendable)
            except SessionConnectionError:
                self._log.error("Failed to push steps, no response from server")
                self._emit_error(ErrorType.CONNECTION_FAILED)
                return None
            except SessionApiError as e:
                self._handle_push_error(e)
                return None
            except CollabSyncError as e:
                self._log.error(f"Failed to push steps: {e}")
                return None

            self.last_step_push = self._clock()
            return result

    def _handle_push_error(self, error: SessionApiError) -> None:
        self._log.error(f"Failed to apply steps (status {error.status})")
        if error.status != 403:
            return

        document = error.data.get("document")
        if not document:
            # Either the session is invalid or the document is read only
            self._log.error("Failed to write to document - not allowed")
            return

        # Only report a conflict if we have synced up to the latest version
        if document.get("currentVersion") == self.version:
            self._emit_error(ErrorType.PUSH_FAILURE)
            self._notifier.show_temporary(PUSH_FAILURE_NOTICE)

    def steps_since(self, version: int) -> StepLogSlice:
        """Return the step log from position ``version`` on."""
        start = max(version, 0)
        return StepLogSlice(
            steps=self.steps[start:],
            client_ids=self.step_client_ids[start:],
        )

    def _receive_steps(self, response: SyncResponse | dict[str, Any]) -> None:
        """Apply step buckets returned by a fetch, in transport order."""
        if isinstance(response, dict):
            response = SyncResponse.from_dict(response)

        new_steps: list[ReceivedStep] = []
        for bucket in response.steps:
            if self.version < bucket.version:
                self.version = bucket.version

            if not isinstance(bucket.data, list):
                self._log.warning(f"Invalid step data in bucket version {bucket.version}, skipping")
                continue

            for step in bucket.data:
                self.steps.append(step)
                self.step_client_ids.append(bucket.session_id)
                new_steps.append(ReceivedStep(step=step, client_id=bucket.session_id))

        self.last_step_push = self._clock()
        self.emit(
            SyncEventName.SYNC,
            SyncPayload(steps=new_steps, document=response.document, version=self.version),
        )

    def check_idle(self) -> bool:
        """Report (and announce) whether nobody has pushed for the idle timeout."""
        minutes = (self._clock() - self.last_step_push) / 60
        if minutes > self.config.idle_timeout_minutes:
            self._log.debug(
                f"Document is idle for {self.config.idle_timeout_minutes} minutes, suspending connection"
            )
            self.emit(SyncEventName.IDLE)
            return True
        return False

    # =========================================================================
    # Saving
    # =========================================================================

    def get_content(self) -> str:
        return self.serialize()

    def save(self) -> None:
        if self.backend is not None:
            self.backend.save()

    def force_save(self) -> None:
        """Save overwriting outside changes, reconnecting the backend if needed."""
        if self.backend is None:
            self._log.error("Cannot force a save before the document is opened")
            return
        if not self.backend.connected:
            self.backend.connect()
        self.backend.force_save()

    # =========================================================================
    # Pass-through Calls
    # =========================================================================

    async def update_session(self, guest_name: str) -> SessionInfo | None:
        """Rename the guest session; only meaningful on public documents."""
        if self.connection is None or not self.connection.is_public:
            return None
        try:
            return await self.connection.update(guest_name)
        except CollabSyncError as e:
            self._log.error(f"Failed to update the session: {e}")
            raise

    async def upload_attachment(self, path: Path) -> dict[str, Any]:
        return await self._require_connection("upload attachment").upload_attachment(path)

    async def insert_attachment_file(self, file_path: str) -> dict[str, Any]:
        return await self._require_connection("insert attachment").insert_attachment_file(file_path)

    def _require_connection(self, operation: str) -> Connection:
        if self.connection is None:
            raise ConnectionClosedError(operation)
        return self.connection

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: SyncEventName | str, handler: EventHandler) -> SyncService:
        self._bus.on(event, handler)
        return self

    def off(self, event: SyncEventName | str, handler: EventHandler | None = None) -> SyncService:
        self._bus.off(event, handler)
        return self

    def emit(self, event: SyncEventName | str, payload: Any = None) -> None:
        self._bus.emit(event, payload)

    def _emit_error(self, error_type: ErrorType, data: dict[str, Any] | None = None) -> None:
        self.emit(SyncEventName.ERROR, ErrorPayload(type=error_type, data=data or {}))
