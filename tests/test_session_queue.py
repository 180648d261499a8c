"""Tests for the offline session queue."""

import shutil
import tempfile
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests
import responses

from distrack_sync.errors import (
    InvalidSessionError,
    NotLinkedError,
    StorageError,
    TransientNetworkError,
)
from distrack_sync.schemas import SessionPayload, StreakData
from distrack_sync.sync.dt_client import DisTrackClient
from distrack_sync.sync.http_client import ApiClient
from distrack_sync.sync.session_queue import FLUSH_JOB_ID, QUEUE_KEY, SessionQueue
from distrack_sync.sync.state_store import StateStore

API_URL = "https://api.distrack.test"
SESSIONS_URL = f"{API_URL}/v1/sessions"


def make_payload(minutes: int = 30, session_id=None) -> SessionPayload:
    return SessionPayload(
        duration=minutes * 60,
        session_date="2026-10-19T10:00:00+00:00",
        languages={"python": minutes * 60},
        streak_data=StreakData(current_streak=3, longest_streak=7),
        session_id=session_id,
    )


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class SessionQueueTestBase:
    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "state.db"
        self.state = StateStore(db_path=self.db_path)
        self.uploader = Mock()
        self.queue = SessionQueue(self.uploader, self.state, auto_flush=False)

    def teardown_method(self):
        """Clean up."""
        self.queue.close()
        self.state.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestEnqueue(SessionQueueTestBase):
    """Tests for SessionQueue.enqueue()."""

    def test_enqueue_assigns_session_id(self):
        """Test a payload without id gets one."""
        session_id = self.queue.enqueue(make_payload())

        assert session_id
        assert self.queue.items()[0].session_id == session_id

    def test_enqueue_keeps_existing_session_id(self):
        """Test a caller-provided id is preserved."""
        session_id = self.queue.enqueue(make_payload(session_id="s-1"))

        assert session_id == "s-1"

    def test_enqueue_accepts_wire_dict(self):
        """Test a dict in upload format is accepted."""
        session_id = self.queue.enqueue(
            {
                "duration": 120,
                "sessionDate": "2026-10-19T10:00:00+00:00",
                "languages": {"go": 120},
                "streakData": {"currentStreak": 1, "longestStreak": 2},
            }
        )

        item = self.queue.items()[0]
        assert item.session_id == session_id
        assert item.payload.streak_data.longest_streak == 2

    def test_enqueue_rejects_incomplete_wire_dict(self):
        """Test a dict without required fields names them and stores nothing."""
        with pytest.raises(InvalidSessionError, match="sessionDate"):
            self.queue.enqueue({"duration": 120, "languages": {"go": 120}})

        assert self.queue.is_empty()

    def test_enqueue_survives_restart(self):
        """Test an enqueued item is on disk with attempts=0."""
        session_id = self.queue.enqueue(make_payload())
        self.state.close()

        reopened = SessionQueue(self.uploader, StateStore(db_path=self.db_path), auto_flush=False)
        items = reopened.items()

        assert len(items) == 1
        assert items[0].session_id == session_id
        assert items[0].attempts == 0
        assert items[0].last_error is None

    def test_enqueue_duplicate_id_is_ignored(self):
        """Test session ids stay unique within the queue."""
        self.queue.enqueue(make_payload(minutes=10, session_id="s-1"))
        self.queue.enqueue(make_payload(minutes=20, session_id="s-1"))

        items = self.queue.items()
        assert len(items) == 1
        assert items[0].payload.duration == 600

    def test_overflow_evicts_oldest(self):
        """Test 501 enqueues leave the newest 500."""
        ids = [self.queue.enqueue(make_payload(session_id=f"s-{i}")) for i in range(501)]

        stored = self.state.get(QUEUE_KEY)
        assert len(stored) == 500
        assert stored[0]["session_id"] == ids[1]
        assert stored[-1]["session_id"] == ids[-1]

    def test_small_cap(self):
        """Test a custom cap is honored."""
        queue = SessionQueue(self.uploader, self.state, max_items=2, auto_flush=False)

        for i in range(5):
            queue.enqueue(make_payload(session_id=f"s-{i}"))

        assert [item.session_id for item in queue.items()] == ["s-3", "s-4"]

    def test_storage_failure_surfaces(self):
        """Test enqueue raises when the queue can't be written."""
        state = Mock()
        state.get.return_value = []
        state.set.side_effect = StorageError("disk full")
        queue = SessionQueue(self.uploader, state, auto_flush=False)

        with pytest.raises(StorageError):
            queue.enqueue(make_payload())

    def test_enqueue_does_not_upload_when_auto_flush_disabled(self):
        self.queue.enqueue(make_payload())

        self.uploader.upload_session.assert_not_called()


class TestFlush(SessionQueueTestBase):
    """Tests for SessionQueue.flush()."""

    def test_flush_all_succeed_empties_queue(self):
        """Test a fully successful flush persists an empty array."""
        for i in range(3):
            self.queue.enqueue(make_payload(session_id=f"s-{i}"))

        result = self.queue.flush()

        assert result.attempted == 3
        assert result.sent == 3
        assert result.failed == 0
        assert self.state.get(QUEUE_KEY) == []

    def test_flush_partial_failure(self):
        """Test 2 of 3 succeeding leaves exactly the failed one with attempts=1."""
        for i in range(3):
            self.queue.enqueue(make_payload(session_id=f"s-{i}"))

        def upload(payload):
            if payload["session_id"] == "s-1":
                raise TransientNetworkError("Server error: 503", status_code=503)
            return Mock(status_code=201)

        self.uploader.upload_session.side_effect = upload

        result = self.queue.flush()

        items = self.queue.items()
        assert result.sent == 2
        assert result.failed == 1
        assert len(items) == 1
        assert items[0].session_id == "s-1"
        assert items[0].attempts == 1
        assert items[0].last_error == "Server error: 503"

    def test_flush_uploads_oldest_first(self):
        """Test items are attempted in insertion order."""
        for i in range(3):
            self.queue.enqueue(make_payload(session_id=f"s-{i}"))

        self.queue.flush()

        uploaded = [c.args[0]["session_id"] for c in self.uploader.upload_session.call_args_list]
        assert uploaded == ["s-0", "s-1", "s-2"]

    def test_upload_payload_excludes_queue_bookkeeping(self):
        """Test attempts/queuedAt/lastError are not sent."""
        self.queue.enqueue(make_payload(session_id="s-0"))

        self.queue.flush()

        payload = self.uploader.upload_session.call_args.args[0]
        assert payload == {
            "session_id": "s-0",
            "duration": 1800,
            "sessionDate": "2026-10-19T10:00:00+00:00",
            "languages": {"python": 1800},
            "streakData": {"currentStreak": 3, "longestStreak": 7},
        }

    def test_failed_items_keep_relative_order(self):
        """Test failures stay in insertion order across passes."""
        for i in range(4):
            self.queue.enqueue(make_payload(session_id=f"s-{i}"))
        self.uploader.upload_session.side_effect = NotLinkedError()

        self.queue.flush()
        self.queue.flush()

        items = self.queue.items()
        assert [item.session_id for item in items] == ["s-0", "s-1", "s-2", "s-3"]
        assert all(item.attempts == 2 for item in items)

    def test_flush_empty_queue(self):
        """Test flushing nothing makes no calls."""
        result = self.queue.flush()

        assert result.attempted == 0
        self.uploader.upload_session.assert_not_called()

    def test_overlapping_flush_is_skipped(self):
        """Test a second flush while one runs returns immediately."""
        self.queue.enqueue(make_payload(session_id="s-0"))
        release = threading.Event()

        def slow_upload(payload):
            release.wait(timeout=5)

        self.uploader.upload_session.side_effect = slow_upload
        worker = threading.Thread(target=self.queue.flush)
        worker.start()
        assert wait_until(lambda: self.queue.is_flushing)

        result = self.queue.flush()

        release.set()
        worker.join(timeout=5)
        assert result.skipped is True
        assert self.uploader.upload_session.call_count == 1
        assert self.queue.is_flushing is False

    def test_enqueue_during_flush_is_kept(self):
        """Test a session queued mid-flush isn't overwritten by the flush."""
        self.queue.enqueue(make_payload(session_id="s-0"))

        def upload(payload):
            self.queue.enqueue(make_payload(session_id="s-late"))

        self.uploader.upload_session.side_effect = upload

        self.queue.flush()

        items = self.queue.items()
        assert [item.session_id for item in items] == ["s-late"]
        assert items[0].attempts == 0

    def test_unexpected_error_fails_only_that_item(self):
        """Test an unexpected exception is recorded and the pass continues."""
        for i in range(3):
            self.queue.enqueue(make_payload(session_id=f"s-{i}"))

        def upload(payload):
            if payload["session_id"] == "s-1":
                raise RuntimeError("boom")

        self.uploader.upload_session.side_effect = upload

        result = self.queue.flush()

        items = self.queue.items()
        assert result.sent == 2
        assert result.failed == 1
        assert [(item.session_id, item.attempts) for item in items] == [("s-1", 1)]
        assert items[0].last_error == "boom"
        assert self.queue.is_flushing is False

    @responses.activate
    def test_transport_error_mid_pass(self):
        """Test a broken response stream fails one upload, not the whole pass."""
        responses.add(responses.POST, SESSIONS_URL, json={}, status=201)
        responses.add(
            responses.POST,
            SESSIONS_URL,
            body=requests.exceptions.ChunkedEncodingError("broken stream"),
        )
        responses.add(responses.POST, SESSIONS_URL, json={}, status=201)
        base_url = Mock()
        base_url.resolve.return_value = API_URL
        auth = Mock()
        auth.get_auth_header.return_value = {"Authorization": "Bearer A"}
        client = DisTrackClient(ApiClient(base_url=base_url, auth=auth))
        queue = SessionQueue(client, self.state, auto_flush=False)
        for i in range(3):
            queue.enqueue(make_payload(session_id=f"s-{i}"))

        try:
            result = queue.flush()
        finally:
            client.close()

        items = queue.items()
        assert len(responses.calls) == 3
        assert result.sent == 2
        assert [(item.session_id, item.attempts) for item in items] == [("s-1", 1)]
        assert "broken stream" in items[0].last_error

    def test_corrupt_entries_are_dropped(self):
        """Test unreadable stored items don't block the rest."""
        self.queue.enqueue(make_payload(session_id="s-0"))
        stored = self.state.get(QUEUE_KEY)
        stored.insert(0, {"session_id": "broken"})
        self.state.set(QUEUE_KEY, stored)

        assert [item.session_id for item in self.queue.items()] == ["s-0"]


class TestBackgroundFlush(SessionQueueTestBase):
    """Tests for fire-and-forget and periodic flushing."""

    def test_enqueue_triggers_background_flush(self):
        """Test enqueue uploads without waiting for it."""
        queue = SessionQueue(self.uploader, self.state, auto_flush=True)

        queue.enqueue(make_payload(session_id="s-0"))
        queue._background_flush.join(timeout=5)

        self.uploader.upload_session.assert_called_once()
        assert queue.is_empty()

    def test_enqueue_never_fails_on_network(self):
        """Test network trouble leaves the item queued for later."""
        self.uploader.upload_session.side_effect = TransientNetworkError("Cannot connect")
        queue = SessionQueue(self.uploader, self.state, auto_flush=True)

        session_id = queue.enqueue(make_payload())
        queue._background_flush.join(timeout=5)

        items = queue.items()
        assert items[0].session_id == session_id
        assert items[0].attempts == 1

    def test_start_is_idempotent(self):
        """Test starting twice keeps one scheduler and one job."""
        self.queue.start()
        scheduler = self.queue._scheduler
        self.queue.start()

        assert self.queue._scheduler is scheduler
        assert self.queue.is_running is True
        assert scheduler.get_job(FLUSH_JOB_ID) is not None

    def test_stop_is_idempotent(self):
        """Test stopping twice (or before starting) is harmless."""
        self.queue.stop()
        self.queue.start()
        self.queue.stop()
        self.queue.stop()

        assert self.queue.is_running is False

    def test_restart_after_stop(self):
        self.queue.start()
        self.queue.stop()
        self.queue.start()

        assert self.queue.is_running is True

    def test_close_does_not_flush(self):
        """Test disposal stops the timer without uploading."""
        self.queue.enqueue(make_payload())
        self.queue.start()

        self.queue.close()

        assert self.queue.is_running is False
        self.uploader.upload_session.assert_not_called()
        assert self.queue.size() == 1

    def test_context_manager_stops(self):
        with SessionQueue(self.uploader, self.state, auto_flush=False) as queue:
            queue.start()
            assert queue.is_running is True

        assert queue.is_running is False
