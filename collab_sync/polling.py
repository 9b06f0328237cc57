"""
Polling backend driving periodic synchronization.

A fixed-granularity driver ticks every ``tick_interval_ms`` and decides
whether a fetch is due. The fetch cadence adapts to activity:

- steps arriving: reset to the base interval
- nothing new, several live collaborators: doubled up to the maximum
- nothing new, working alone: jump to the single-editor interval
- editor hidden: the invisible interval
- service unavailable (503): doubled

At most one fetch is in flight at any time. Save requests (manual,
forced, or autosave once the last save is old enough) ride along with
the next fetch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .config import SyncConfig
from .exceptions import SessionApiError, SessionConnectionError
from .host import AlwaysVisible, VisibilityProvider
from .logging_utils import SyncLoggerAdapter
from .protocol import (
    ChangePayload,
    ErrorPayload,
    ErrorType,
    SavePayload,
    StateChangePayload,
    SyncEventName,
    SyncResponse,
)

if TYPE_CHECKING:
    from .service import SyncService
    from .session.connection import Connection

logger = logging.getLogger(__name__)


class PollingBackend:
    """Fetch loop over a single connection on behalf of a sync service.

    All state is touched from the event loop only; the ``_poll_active``
    flag is the sole guard against overlapping fetches.
    """

    def __init__(
        self,
        sync_service: SyncService,
        connection: Connection,
        config: SyncConfig | None = None,
        visibility: VisibilityProvider | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the polling backend.

        Args:
            sync_service: Service receiving steps and events
            connection: Open connection to fetch from
            config: Timing configuration
            visibility: Foreground/background signal of the host
            clock: Wall clock in seconds, comparable with server timestamps
        """
        self._service = sync_service
        self._connection = connection
        self.config = config or SyncConfig()
        self._visibility = visibility or AlwaysVisible()
        self._clock = clock
        self._log = SyncLoggerAdapter(logger, sync_service.log_context)

        self._fetch_interval: float = self.config.fetch_interval_ms
        self._fetch_retry_counter = 0
        self._last_poll: float = 0
        self._last_save: float = self._now_ms()
        self._poll_active = False
        self._forced_save = False
        self._manual_save = False
        self._initial_loading_finished = False

        self._driver: asyncio.Task[None] | None = None
        self._fetch_tasks: set[asyncio.Task[None]] = set()
        self._fetch_idle = asyncio.Event()
        self._fetch_idle.set()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def connected(self) -> bool:
        """Whether the fetch driver is running."""
        return self._driver is not None

    @property
    def fetch_interval(self) -> float:
        return self._fetch_interval

    @property
    def retry_count(self) -> int:
        return self._fetch_retry_counter

    @property
    def poll_active(self) -> bool:
        return self._poll_active

    @property
    def initial_loading_finished(self) -> bool:
        return self._initial_loading_finished

    @property
    def last_save(self) -> float:
        return self._last_save

    @property
    def save_pending(self) -> bool:
        return self._forced_save or self._manual_save

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """Start the fetch driver and observe visibility changes.

        Must be called from a running event loop. Connecting twice is a
        caller error and is ignored.
        """
        if self._driver is not None:
            self._log.error("Trying to connect, but already connected")
            return

        self._initial_loading_finished = False
        self._driver = asyncio.get_running_loop().create_task(self._drive())
        self._visibility.add_listener(self._on_visibility_change)
        self._log.debug("Polling backend connected")

    def disconnect(self) -> None:
        """Stop the fetch driver. A fetch already in flight completes normally."""
        if self._driver is not None:
            self._driver.cancel()
            self._driver = None
            self._log.debug("Polling backend disconnected")
        self._visibility.remove_listener(self._on_visibility_change)

    async def _drive(self) -> None:
        tick = self.config.tick_interval_ms / 1000
        while True:
            await asyncio.sleep(tick)
            if self._poll_active:
                continue
            task = asyncio.create_task(self._fetch_steps())
            self._fetch_tasks.add(task)
            task.add_done_callback(self._fetch_tasks.discard)

    def save(self) -> None:
        """Request a save with the next fetch."""
        self._manual_save = True

    def force_save(self) -> None:
        """Request a forced save, overwriting outside changes, with the next fetch."""
        self._forced_save = True

    async def wait_for_fetch(self) -> None:
        """Wait until no fetch is in flight."""
        await self._fetch_idle.wait()

    async def flush(self) -> None:
        """Run one fetch right away, even with the driver stopped.

        A fetch already in flight is awaited first. Used while closing to
        hand a pending save to the server.
        """
        await self.wait_for_fetch()
        await self._fetch_steps(drain=True)

    # =========================================================================
    # Fetching
    # =========================================================================

    async def _fetch_steps(self, drain: bool = False) -> None:
        """Decide whether a fetch is due and perform it.

        Normally only invoked through the driver.
        """
        if self._poll_active:
            return

        now = self._now_ms()
        should_save = self._forced_save or self._manual_save

        if not drain and self._last_poll > now - self._fetch_interval and not should_save:
            return

        if not drain and self._driver is None:
            self._log.error("Fetch triggered without a running driver")
            return

        self._poll_active = True
        self._fetch_idle.clear()
        try:
            should_autosave = self._last_save < now - self.config.autosave_interval_ms
            save_data: dict[str, Any] = {}
            if should_save or should_autosave:
                save_data = {
                    "autosave_content": self._service.get_content(),
                    "document_state": self._service.get_document_state(),
                }

            self._log.debug(f"Fetching steps since version {self._service.version}")
            response = await self._connection.sync(
                version=self._service.version,
                **save_data,
                force=self._forced_save,
                manual_save=self._manual_save,
            )
            self._handle_response(response)
        except Exception as e:
            self._handle_error(e)
        finally:
            self._last_poll = self._now_ms()
            self._poll_active = False
            self._fetch_idle.set()
            self._manual_save = False
            self._forced_save = False

    def _handle_response(self, response: SyncResponse) -> None:
        document = response.document
        sessions = response.sessions
        self._fetch_retry_counter = 0

        if self._service.version < document.last_saved_version:
            self._log.debug(f"Saved document at version {document.last_saved_version}")
            self._last_save = document.last_saved_version_time * 1000
            self._service.emit(SyncEventName.SAVE, SavePayload(document=document, sessions=sessions))

        self._service.emit(SyncEventName.CHANGE, ChangePayload(document=document, sessions=sessions))

        if not response.steps:
            if not self._initial_loading_finished:
                self._initial_loading_finished = True
                self._last_save = document.last_saved_version_time * 1000

            if self._service.check_idle():
                self.disconnect()
                return

            disconnect_before = self._now_ms() - self.config.collaborator_disconnect_time_ms
            alive = [s for s in sessions if s.last_contact * 1000 > disconnect_before]
            if len(alive) < 2:
                self.maximum_refetch_timer()
            else:
                self.increase_refetch_timer()

            self._service.emit(SyncEventName.STATE_CHANGE, StateChangePayload(dirty=False))
            self._service.emit(SyncEventName.STATE_CHANGE, StateChangePayload(initial_loading=True))
            return

        self._service._receive_steps(response)
        self._forced_save = False
        if self._initial_loading_finished:
            self.reset_refetch_timer()

    def _handle_error(self, error: Exception) -> None:
        if isinstance(error, SessionConnectionError):
            retries = self._fetch_retry_counter
            self._fetch_retry_counter += 1
            if retries >= self.config.max_retry_fetch_count:
                self._log.error("Network error when fetching steps, emitting CONNECTION_FAILED")
                self._emit_error(ErrorType.CONNECTION_FAILED, {"retry": False})
            else:
                self._log.error(f"Network error when fetching steps, retry {self._fetch_retry_counter}")
            return

        status = error.status if isinstance(error, SessionApiError) else None

        if status == 409:
            self._log.error("Conflict during file save, please resolve")
            self._emit_error(
                ErrorType.SAVE_COLLISSION,
                {"outside_change": error.data.get("outsideChange")},
            )
            self.disconnect()
        elif status in (403, 404):
            self._log.error(f"Document source not available (status {status})")
            self._emit_error(ErrorType.SOURCE_NOT_FOUND)
            self.disconnect()
        elif status == 503:
            self.increase_refetch_timer()
            self._emit_error(ErrorType.CONNECTION_FAILED, {"retry": False})
            self._log.error(f"Failed to fetch steps due to unavailable service: {error}")
        else:
            self.disconnect()
            self._emit_error(ErrorType.CONNECTION_FAILED, {"retry": False})
            self._log.error(f"Failed to fetch steps due to other reason: {error}", exc_info=status is None)

    def _emit_error(self, error_type: ErrorType, data: dict[str, Any] | None = None) -> None:
        self._service.emit(SyncEventName.ERROR, ErrorPayload(type=error_type, data=data or {}))

    # =========================================================================
    # Cadence
    # =========================================================================

    def reset_refetch_timer(self) -> None:
        self._fetch_interval = self.config.fetch_interval_ms

    def increase_refetch_timer(self) -> None:
        self._fetch_interval = min(self._fetch_interval * 2, self.config.fetch_interval_max_ms)

    def maximum_refetch_timer(self) -> None:
        self._fetch_interval = self.config.fetch_interval_single_editor_ms

    def _on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self._fetch_interval = self.config.fetch_interval_invisible_ms
        else:
            self.reset_refetch_timer()
