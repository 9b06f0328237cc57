"""Tests for the sync service: lifecycle, step log, pushing and closing."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from collab_sync.config import SyncConfig
from collab_sync.exceptions import (
    ConnectionClosedError,
    InvalidResponseError,
    SessionApiError,
    SessionConnectionError,
)
from collab_sync.host import Notifier
from collab_sync.protocol import ErrorType, SyncEventName
from collab_sync.service import PUSH_FAILURE_NOTICE, ServiceState, SyncService

PUSH_URL = "https://cloud.example.com/apps/text/session/push"
CREATE_URL = "https://cloud.example.com/apps/text/session/create"


@pytest.fixture
def notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def make_service(api, clock, quiet_config, notifier):
    """Factory for services sharing the mocked API and clock."""

    def factory(**overrides):
        options = {
            "serialize": lambda: "# Serialized",
            "get_document_state": lambda: "opaque-state",
            "config": quiet_config,
            "notifier": notifier,
            "clock": clock,
        }
        options.update(overrides)
        return SyncService(api, **options)

    return factory


@pytest.fixture
async def service(make_service):
    service = make_service()
    await service.open(file_id=42)
    yield service
    if service.backend is not None:
        service.backend.disconnect()


def one_step(version=0):
    return {"version": version, "steps": ["local-step"]}


class TestOpen:
    """Tests for opening a document."""

    @pytest.mark.asyncio
    async def test_open_sets_version_and_emits(self, make_service, api, record_events):
        """Opening adopts the saved version and emits opened then loaded."""
        service = make_service()
        recorder = record_events(service, "opened", "loaded")

        assert await service.open(file_id=42) is True

        api.open.assert_awaited_once()
        assert api.open.await_args.kwargs["file_id"] == 42
        assert service.state == ServiceState.OPEN
        assert service.version == 0
        assert [name for name, _ in recorder.events] == ["opened", "loaded"]
        loaded = recorder.of("loaded")[0]
        assert loaded.document_source == "## Hello world\n"
        assert loaded.version == 0
        assert service.backend is not None

    @pytest.mark.asyncio
    async def test_open_uses_last_saved_version(self, make_service, api, connection):
        """The initial version is the connection's last saved version."""
        connection.last_saved_version = 7
        service = make_service()

        await service.open(file_id=42)

        assert service.version == 7

    @pytest.mark.asyncio
    async def test_open_rejected_emits_load_error(self, make_service, api, record_events):
        """A refused open reports LOAD_ERROR without raising."""
        api.open.side_effect = SessionApiError(CREATE_URL, 404, {"error": "not found"})
        service = make_service()
        recorder = record_events(service, "error", "opened")

        assert await service.open(file_id=123) is False

        errors = recorder.of("error")
        assert errors[0].type == ErrorType.LOAD_ERROR
        assert errors[0].data["status"] == 404
        assert recorder.of("opened") == []
        assert service.state == ServiceState.UNOPENED

    @pytest.mark.asyncio
    async def test_open_invalid_answer_emits_load_error(self, make_service, api, record_events):
        """An answer that cannot be decoded is a load error, not a connection failure."""
        api.open.side_effect = InvalidResponseError(CREATE_URL, "body is not valid JSON")
        service = make_service()
        recorder = record_events(service, "error")

        assert await service.open(file_id=42) is False

        error = recorder.of("error")[0]
        assert error.type == ErrorType.LOAD_ERROR
        assert error.data["reason"] == "body is not valid JSON"
        assert service.state == ServiceState.UNOPENED

    @pytest.mark.asyncio
    async def test_open_unreachable_emits_connection_failed(self, make_service, api, record_events):
        """An unreachable server reports CONNECTION_FAILED."""
        api.open.side_effect = SessionConnectionError(CREATE_URL)
        service = make_service()
        recorder = record_events(service, "error")

        assert await service.open(file_id=42) is False

        assert recorder.of("error")[0].type == ErrorType.CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_open_can_be_retried_after_failure(self, make_service, api, connection):
        """A failed open leaves the service openable."""
        api.open.side_effect = [SessionConnectionError(CREATE_URL), connection]
        service = make_service()

        assert await service.open(file_id=42) is False
        assert await service.open(file_id=42) is True
        assert service.connection is connection

    @pytest.mark.asyncio
    async def test_open_twice_is_rejected(self, service, api):
        """An open service cannot be opened again."""
        assert await service.open(file_id=42) is False
        api.open.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_from_initial_session(self, make_service, api):
        """A previously obtained session snapshot skips the open request."""
        service = make_service()
        snapshot = {
            "document": {"id": 42, "lastSavedVersion": 5, "lastSavedVersionTime": 0},
            "session": {"id": 9, "token": "tok"},
            "state": {"documentSource": "# Snapshot", "documentState": None},
        }

        assert await service.open(initial_session=snapshot) is True

        api.open.assert_not_awaited()
        assert service.version == 5
        assert service.connection.session.id == 9

    @pytest.mark.asyncio
    async def test_roster_follows_change_events(self, service, sync_response):
        """The roster is replaced wholesale on each change event."""
        first = sync_response(sessions=[{"id": 1}, {"id": 2}])
        second = sync_response(sessions=[{"id": 3}])

        service.emit("change", first)
        assert [s.id for s in service.sessions] == [1, 2]

        service.emit("change", second)
        assert [s.id for s in service.sessions] == [3]


class TestSendSteps:
    """Tests for pushing local steps."""

    @pytest.mark.asyncio
    async def test_dirty_emitted_before_push(self, service, connection):
        """stateChange(dirty) is observed before the network call."""
        order = []
        service.on("stateChange", lambda payload: order.append(("dirty", payload.dirty)))

        async def push(payload):
            order.append(("push", payload))
            return {}

        connection.push.side_effect = push

        await service.send_steps(lambda: one_step())

        assert order == [("dirty", True), ("push", one_step())]

    @pytest.mark.asyncio
    async def test_successful_push_clears_sending(self, service, connection):
        """After a successful push nothing is in flight."""
        result = await service.send_steps(lambda: one_step())

        assert result == {"version": 1}
        assert service.sending is False
        connection.push.assert_awaited_once_with(one_step())

    @pytest.mark.asyncio
    async def test_nothing_to_send(self, service, connection):
        """A producer returning None skips the push."""
        assert await service.send_steps(lambda: None) is None
        connection.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_push_in_flight(self, service, connection):
        """Concurrent sends are serialized; the producer runs when the push starts."""
        release = asyncio.Event()
        active = 0
        peak = 0

        async def push(payload):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1
            return {}

        connection.push.side_effect = push
        produced = []

        def producer(n):
            def produce():
                produced.append(n)
                return one_step(n)

            return produce

        first = asyncio.create_task(service.send_steps(producer(1)))
        second = asyncio.create_task(service.send_steps(producer(2)))
        await asyncio.sleep(0.01)

        assert service.sending is True
        assert produced == [1]

        release.set()
        await asyncio.gather(first, second)

        assert produced == [1, 2]
        assert peak == 1
        assert connection.push.await_count == 2

    @pytest.mark.asyncio
    async def test_send_waits_for_connection(self, make_service, connection):
        """Steps sent before open are pushed once the connection exists."""
        service = make_service()
        task = asyncio.create_task(service.send_steps(lambda: one_step()))
        await asyncio.sleep(0.01)

        connection.push.assert_not_awaited()

        await service.open(file_id=42)
        await asyncio.wait_for(task, timeout=1)

        connection.push.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_without_response(self, service, connection, record_events):
        """A push without response reports CONNECTION_FAILED immediately."""
        recorder = record_events(service, "error")
        connection.push.side_effect = SessionConnectionError(PUSH_URL)

        assert await service.send_steps(lambda: one_step()) is None

        assert recorder.of("error")[0].type == ErrorType.CONNECTION_FAILED
        assert service.sending is False

    @pytest.mark.asyncio
    async def test_push_rejected_while_in_sync(self, service, connection, notifier, record_events):
        """A 403 at the current version reports PUSH_FAILURE with a notice."""
        recorder = record_events(service, "error")
        connection.push.side_effect = SessionApiError(
            PUSH_URL, 403, {"document": {"currentVersion": service.version}}
        )

        await service.send_steps(lambda: one_step())

        assert recorder.of("error")[0].type == ErrorType.PUSH_FAILURE
        notifier.show_temporary.assert_called_once_with(PUSH_FAILURE_NOTICE)

    @pytest.mark.asyncio
    async def test_push_rejected_while_behind(self, service, connection, notifier, record_events):
        """A 403 while behind the server is not reported; the next fetch catches up."""
        recorder = record_events(service, "error")
        connection.push.side_effect = SessionApiError(
            PUSH_URL, 403, {"document": {"currentVersion": service.version + 3}}
        )

        await service.send_steps(lambda: one_step())

        assert recorder.of("error") == []
        notifier.show_temporary.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_not_allowed_is_only_logged(self, service, connection, notifier, record_events, caplog):
        """A 403 without document payload is logged only."""
        recorder = record_events(service, "error")
        connection.push.side_effect = SessionApiError(PUSH_URL, 403, {})

        await service.send_steps(lambda: one_step())

        assert recorder.of("error") == []
        notifier.show_temporary.assert_not_called()
        assert "not allowed" in caplog.text

    @pytest.mark.asyncio
    async def test_other_push_failures_are_not_retried(self, service, connection, record_events):
        """Other statuses are logged without retrying the payload."""
        recorder = record_events(service, "error")
        connection.push.side_effect = SessionApiError(PUSH_URL, 500)

        await service.send_steps(lambda: one_step())

        assert recorder.of("error") == []
        connection.push.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_push_after_close_is_logged(self, service, connection):
        """Pushing on a closed connection does not raise."""
        connection.push.side_effect = ConnectionClosedError("push")

        assert await service.send_steps(lambda: one_step()) is None


class TestStepLog:
    """Tests for applying received steps."""

    @pytest.mark.asyncio
    async def test_open_push_fetch_scenario(self, service, connection, sync_response, record_events):
        """A pushed step comes back through a fetch and lands in the log."""
        recorder = record_events(service, "sync")
        assert service.version == 0

        await service.send_steps(lambda: one_step())
        service._receive_steps(
            sync_response(steps=[{"version": 1, "sessionId": "A", "data": ["stepX"]}])
        )

        assert service.steps == ["stepX"]
        assert service.version == 1
        payload = recorder.of("sync")[0]
        assert payload.steps[0].step == "stepX"
        assert payload.steps[0].client_id == "A"
        assert payload.version == 1

    @pytest.mark.asyncio
    async def test_log_length_matches_buckets(self, service):
        """The log holds every step of every bucket, with parallel client ids."""
        service._receive_steps(
            {
                "document": {"id": 42},
                "steps": [
                    {"version": 1, "sessionId": "A", "data": ["a1", "a2"]},
                    {"version": 2, "sessionId": "B", "data": ["b1"]},
                    {"version": 4, "sessionId": "A", "data": ["a3", "a4", "a5"]},
                ],
            }
        )

        assert service.steps == ["a1", "a2", "b1", "a3", "a4", "a5"]
        assert service.step_client_ids == ["A", "A", "B", "A", "A", "A"]
        assert service.version == 4

    @pytest.mark.asyncio
    async def test_version_never_decreases(self, service):
        """Buckets with an older version do not move the version back."""
        service._receive_steps({"document": {}, "steps": [{"version": 5, "sessionId": "A", "data": ["x"]}]})
        service._receive_steps({"document": {}, "steps": [{"version": 3, "sessionId": "B", "data": ["y"]}]})

        assert service.version == 5
        assert service.steps == ["x", "y"]

    @pytest.mark.asyncio
    async def test_malformed_bucket_is_skipped(self, service, record_events, caplog):
        """A bucket whose data is not a list is logged and skipped."""
        recorder = record_events(service, "sync")

        service._receive_steps(
            {
                "document": {},
                "steps": [
                    {"version": 1, "sessionId": "A", "data": ["ok-1"]},
                    {"version": 2, "sessionId": "B", "data": "garbage"},
                    {"version": 3, "sessionId": "C", "data": ["ok-2"]},
                ],
            }
        )

        assert service.steps == ["ok-1", "ok-2"]
        assert service.step_client_ids == ["A", "C"]
        assert service.version == 3
        assert [s.step for s in recorder.of("sync")[0].steps] == ["ok-1", "ok-2"]
        assert "Invalid step data" in caplog.text

    @pytest.mark.asyncio
    async def test_steps_since(self, service):
        """steps_since returns matching slices of steps and client ids."""
        service._receive_steps(
            {
                "document": {},
                "steps": [
                    {"version": 1, "sessionId": "A", "data": ["s1"]},
                    {"version": 2, "sessionId": "B", "data": ["s2"]},
                    {"version": 3, "sessionId": "C", "data": ["s3"]},
                ],
            }
        )

        result = service.steps_since(1)

        assert result.steps == ["s2", "s3"]
        assert result.client_ids == ["B", "C"]
        assert service.steps_since(0).steps == ["s1", "s2", "s3"]
        assert service.steps_since(10).steps == []


class TestIdle:
    """Tests for idle detection."""

    @pytest.mark.asyncio
    async def test_recent_activity_is_not_idle(self, service, clock, record_events):
        recorder = record_events(service, "idle")
        clock.advance(60)

        assert service.check_idle() is False
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_idle_after_timeout(self, service, clock, record_events):
        """No activity for longer than the idle timeout emits idle."""
        recorder = record_events(service, "idle")
        clock.advance(1440 * 60 + 1)

        assert service.check_idle() is True
        assert len(recorder.of("idle")) == 1

    @pytest.mark.asyncio
    async def test_received_steps_refresh_activity(self, service, clock):
        clock.advance(1440 * 60 + 1)
        service._receive_steps({"document": {}, "steps": []})

        assert service.check_idle() is False

    @pytest.mark.asyncio
    async def test_successful_push_refreshes_activity(self, service, clock):
        clock.advance(1440 * 60 + 1)
        await service.send_steps(lambda: one_step())

        assert service.check_idle() is False


class TestSaving:
    """Tests for save delegation."""

    @pytest.mark.asyncio
    async def test_save_requests_backend_save(self, service):
        service.save()
        assert service.backend.save_pending is True

    @pytest.mark.asyncio
    async def test_save_before_open_is_ignored(self, make_service):
        make_service().save()

    @pytest.mark.asyncio
    async def test_force_save_reconnects_backend(self, service):
        """force_save restarts a disconnected backend."""
        assert service.backend.connected is False

        service.force_save()

        assert service.backend.connected is True
        assert service.backend.save_pending is True


class TestClose:
    """Tests for closing the service."""

    @pytest.mark.asyncio
    async def test_close_without_save_confirmation_times_out(self, service, connection):
        """Without a save event close resolves after the bounded wait."""
        service.start_sync()
        started = time.monotonic()

        await service.close()

        elapsed = time.monotonic() - started
        assert elapsed < 2.5
        connection.close.assert_awaited_once()
        assert service.state == ServiceState.CLOSED
        assert service.backend.connected is False

    @pytest.mark.asyncio
    async def test_close_hands_final_save_to_server(self, service, connection, sync_response):
        """The drain fetch carries the save and a confirmation ends the wait early."""
        connection.sync.return_value = sync_response(last_saved_version=1)
        started = time.monotonic()

        await service.close()

        assert time.monotonic() - started < 1
        kwargs = connection.sync.await_args.kwargs
        assert kwargs["manual_save"] is True
        assert kwargs["autosave_content"] == "# Serialized"
        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_during_fetch_still_saves(self, service, connection, sync_response):
        """A fetch in flight is awaited before the final save is sent."""
        release = asyncio.Event()
        responses = [sync_response(), sync_response(last_saved_version=1)]

        async def sync(**kwargs):
            if not release.is_set():
                await release.wait()
            return responses.pop(0)

        connection.sync.side_effect = sync
        service.start_sync()
        in_flight = asyncio.create_task(service.backend._fetch_steps())
        await asyncio.sleep(0)
        assert service.backend.poll_active is True

        closing = asyncio.create_task(service.close())
        await asyncio.sleep(0)
        started = time.monotonic()
        release.set()
        await closing
        await in_flight

        assert time.monotonic() - started < 1
        assert connection.sync.await_count == 2
        first, second = connection.sync.await_args_list
        assert first.kwargs["manual_save"] is False
        assert second.kwargs["manual_save"] is True
        assert second.kwargs["autosave_content"] == "# Serialized"
        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_with_hanging_sync(self, make_service, connection):
        """A hanging drain request is abandoned after the timeout."""
        service = make_service(config=SyncConfig(tick_interval_ms=3_600_000, close_timeout_ms=100))
        await service.open(file_id=42)

        async def hang(**kwargs):
            await asyncio.sleep(10)

        connection.sync.side_effect = hang

        await asyncio.wait_for(service.close(), timeout=1)

        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_swallows_connection_errors(self, make_service, connection, sync_response):
        """Errors closing the connection are logged, not raised."""
        service = make_service()
        await service.open(file_id=42)
        connection.sync.return_value = sync_response(last_saved_version=1)
        connection.close.side_effect = SessionConnectionError("https://cloud.example.com/session/close")

        await service.close()

        assert service.state == ServiceState.CLOSED

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, service, connection, sync_response):
        connection.sync.return_value = sync_response(last_saved_version=1)

        await service.close()
        await service.close()

        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_unopened_service(self, make_service):
        service = make_service()

        await service.close()

        assert service.state == ServiceState.CLOSED

    @pytest.mark.asyncio
    async def test_close_removes_save_listener(self, service, connection, sync_response):
        connection.sync.return_value = sync_response(last_saved_version=1)

        await service.close()

        assert service._bus.handler_count(SyncEventName.SAVE) == 0


class TestPassThrough:
    """Tests for calls forwarded to the connection."""

    @pytest.mark.asyncio
    async def test_update_session_on_private_document(self, service, connection):
        """Renaming is a no-op on non-public documents."""
        assert await service.update_session("Guest") is None
        connection.update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_session_on_public_document(self, service, connection):
        connection.is_public = True

        session = await service.update_session("Guest")

        assert session.guest_name == "Guest"
        connection.update.assert_awaited_once_with("Guest")

    @pytest.mark.asyncio
    async def test_update_session_failure_is_raised(self, service, connection):
        connection.is_public = True
        connection.update.side_effect = SessionApiError("https://cloud.example.com/session", 403)

        with pytest.raises(SessionApiError):
            await service.update_session("Guest")

    @pytest.mark.asyncio
    async def test_attachments(self, service, connection, tmp_path):
        path = tmp_path / "image.png"

        assert await service.upload_attachment(path) == {"name": "image.png"}
        assert await service.insert_attachment_file("/Documents/file.pdf") == {"name": "file.pdf"}
        connection.upload_attachment.assert_awaited_once_with(path)
        connection.insert_attachment_file.assert_awaited_once_with("/Documents/file.pdf")

    @pytest.mark.asyncio
    async def test_attachments_require_connection(self, make_service):
        with pytest.raises(ConnectionClosedError):
            await make_service().insert_attachment_file("/file.pdf")


class TestEventsFacade:
    """Tests for the service event methods."""

    @pytest.mark.asyncio
    async def test_on_off_chain(self, make_service):
        service = make_service()
        handler = MagicMock()

        assert service.on("save", handler) is service
        service.emit("save", "payload")
        assert service.off("save", handler) is service
        service.emit("save", "again")

        handler.assert_called_once_with("payload")

