"""
Shared test configuration and fixtures.

Provides a controllable clock and a mocked session connection so the
sync service and polling backend can be exercised without a server.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from collab_sync.config import SyncConfig
from collab_sync.protocol import DocumentInfo, DocumentSnapshot, SessionInfo, SyncResponse

START_TIME = 1_700_000_000.0


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_sync_response(
    steps: list[dict[str, Any]] | None = None,
    sessions: list[dict[str, Any]] | None = None,
    last_saved_version: int = 0,
    last_saved_version_time: float = START_TIME,
) -> SyncResponse:
    """Build a sync response as the server would return it."""
    return SyncResponse.from_dict(
        {
            "document": {
                "id": 42,
                "lastSavedVersion": last_saved_version,
                "lastSavedVersionTime": last_saved_version_time,
                "currentVersion": last_saved_version,
            },
            "sessions": sessions or [],
            "steps": steps or [],
        }
    )


def make_connection(last_saved_version: int = 0, is_public: bool = False) -> MagicMock:
    """Create a mock connection honoring the session contract."""
    connection = MagicMock()
    connection.document = DocumentInfo(
        id=42,
        last_saved_version=last_saved_version,
        last_saved_version_time=START_TIME,
        current_version=last_saved_version,
    )
    connection.session = SessionInfo(id=1, token="session-token", last_contact=START_TIME)
    connection.state = DocumentSnapshot(document_source="## Hello world\n", document_state="state-blob")
    connection.is_public = is_public
    connection.last_saved_version = last_saved_version
    connection.push = AsyncMock(return_value={"version": last_saved_version + 1})
    connection.sync = AsyncMock(return_value=make_sync_response())
    connection.update = AsyncMock(return_value=SessionInfo(id=1, guest_name="Guest"))
    connection.close = AsyncMock()
    connection.upload_attachment = AsyncMock(return_value={"name": "image.png"})
    connection.insert_attachment_file = AsyncMock(return_value={"name": "file.pdf"})
    return connection


@pytest.fixture
def clock():
    """Fake wall clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def quiet_config():
    """Config whose fetch driver never ticks during a test."""
    return SyncConfig(tick_interval_ms=3_600_000)


@pytest.fixture
def connection():
    """Mock connection at version 0."""
    return make_connection()


@pytest.fixture
def api(connection):
    """Mock session API opening the mock connection."""
    mock = MagicMock()
    mock.open = AsyncMock(return_value=connection)
    return mock


class EventRecorder:
    """Collects emitted events in order."""

    def __init__(self, service: Any, *names: str):
        self.events: list[tuple[str, Any]] = []
        for name in names:
            service.on(name, lambda payload, name=name: self.events.append((name, payload)))

    def of(self, name: str) -> list[Any]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def sync_response():
    """Factory for sync responses."""
    return make_sync_response


@pytest.fixture
def record_events():
    """Factory attaching an EventRecorder to a service."""
    return EventRecorder
