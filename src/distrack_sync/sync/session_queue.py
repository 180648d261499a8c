"""Offline queue for finished sessions waiting to be uploaded.

Items live in the state store under "session_queue", oldest first. A flush
makes one pass over the queue: uploaded items are dropped, failed ones stay
in place with their attempt counter bumped. Delivery is at-least-once; the
server deduplicates on session_id.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import DEFAULT_FLUSH_INTERVAL, MAX_QUEUE_ITEMS
from ..errors import DisTrackError
from ..schemas import QueuedSession, SessionPayload
from .protocols import SessionUploaderProtocol, StateStoreProtocol

__all__ = ["SessionQueue", "FlushResult", "QUEUE_KEY"]

logger = logging.getLogger(__name__)

QUEUE_KEY = "session_queue"
FLUSH_JOB_ID = "session_queue_flush"
IMMEDIATE_FLUSH_JOB_ID = "session_queue_immediate_flush"


@dataclass
class FlushResult:
    """Outcome of one flush pass."""

    attempted: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False


class SessionQueue:
    """Durable FIFO of session uploads with periodic flushing."""

    def __init__(
        self,
        uploader: SessionUploaderProtocol,
        state: StateStoreProtocol,
        max_items: int = MAX_QUEUE_ITEMS,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        auto_flush: bool = True,
    ):
        """Initialize the session queue.

        Args:
            uploader: Client whose upload_session() delivers one payload
            state: Plain durable store holding the queue
            max_items: Oldest items are evicted beyond this length
            flush_interval: Seconds between periodic flushes
            auto_flush: Start a background flush after every enqueue
        """
        self.uploader = uploader
        self.state = state
        self.max_items = max_items
        self.flush_interval = flush_interval
        self.auto_flush = auto_flush

        # Serializes every read-modify-write of the persisted queue
        self._store_lock = threading.RLock()
        self._flush_guard = threading.Lock()

        self._scheduler: Optional[BackgroundScheduler] = None
        self._scheduler_lock = threading.Lock()
        self._background_flush: Optional[threading.Thread] = None

    # -- persistence -------------------------------------------------------

    def _load(self) -> list[QueuedSession]:
        raw = self.state.get(QUEUE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Stored session queue is not a list, ignoring it")
            return []

        items = []
        for entry in raw:
            try:
                items.append(QueuedSession.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable queued session: {e}")
        return items

    def _save(self, items: list[QueuedSession]) -> None:
        self.state.set(QUEUE_KEY, [item.to_dict() for item in items])

    # -- public API --------------------------------------------------------

    def enqueue(self, payload: Union[SessionPayload, dict]) -> str:
        """Add a session to the queue and kick off a background flush.

        Args:
            payload: Session payload (dict in wire form is accepted)

        Returns:
            The session id (generated when the payload had none)

        Raises:
            InvalidSessionError: A dict payload lacks duration or sessionDate
            StorageError: The queue could not be persisted
        """
        if isinstance(payload, dict):
            payload = SessionPayload.from_dict(payload)
        item = QueuedSession.new(payload)

        with self._store_lock:
            queue = self._load()
            if any(queued.session_id == item.session_id for queued in queue):
                logger.debug(f"Session {item.session_id} already queued")
            else:
                queue.append(item)

            overflow = len(queue) - self.max_items
            if overflow > 0:
                del queue[:overflow]
                logger.warning(f"Session queue full, dropped {overflow} oldest sessions")

            self._save(queue)

        if self.auto_flush:
            self._trigger_flush()
        return item.session_id

    def flush(self) -> FlushResult:
        """Try to upload every queued session once, oldest first.

        Returns immediately with skipped=True when another flush is running.
        """
        if not self._flush_guard.acquire(blocking=False):
            logger.debug("Flush already in progress, skipping")
            return FlushResult(skipped=True)

        try:
            with self._store_lock:
                snapshot = self._load()
            if not snapshot:
                return FlushResult()

            # session_id -> failed copy, or None once uploaded
            outcome: dict[str, Optional[QueuedSession]] = {}
            for item in snapshot:
                try:
                    self.uploader.upload_session(item.payload.to_dict())
                except DisTrackError as e:
                    logger.warning(f"Failed to upload session {item.session_id}: {e}")
                    outcome[item.session_id] = item.failed(str(e))
                except Exception as e:
                    logger.exception(f"Unexpected error uploading session {item.session_id}")
                    outcome[item.session_id] = item.failed(str(e) or type(e).__name__)
                else:
                    outcome[item.session_id] = None

            with self._store_lock:
                # Items enqueued during the pass are not in outcome and stay as-is
                remaining = []
                for item in self._load():
                    if item.session_id not in outcome:
                        remaining.append(item)
                    elif outcome[item.session_id] is not None:
                        remaining.append(outcome[item.session_id])
                self._save(remaining)

            failed = sum(1 for result in outcome.values() if result is not None)
            result = FlushResult(
                attempted=len(snapshot),
                sent=len(snapshot) - failed,
                failed=failed,
            )
            logger.info(
                f"Session queue flushed: {result.sent} sent, {result.failed} failed"
            )
            return result
        finally:
            self._flush_guard.release()

    @property
    def is_flushing(self) -> bool:
        return self._flush_guard.locked()

    def items(self) -> list[QueuedSession]:
        """Snapshot of the queued sessions, oldest first."""
        with self._store_lock:
            return self._load()

    def size(self) -> int:
        return len(self.items())

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> int:
        """Drop every queued session."""
        with self._store_lock:
            count = len(self._load())
            self._save([])
        return count

    # -- scheduling --------------------------------------------------------

    def start(self) -> None:
        """Start the periodic flush. Calling it again is a no-op."""
        with self._scheduler_lock:
            if self._scheduler is not None:
                return

            scheduler = BackgroundScheduler()
            scheduler.add_job(
                self._flush_in_background,
                trigger=IntervalTrigger(seconds=self.flush_interval),
                id=FLUSH_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
        logger.info(f"Session queue flush started (interval: {self.flush_interval}s)")

    def stop(self) -> None:
        """Stop the periodic flush. Calling it again is a no-op."""
        with self._scheduler_lock:
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Session queue flush stopped")

    @property
    def is_running(self) -> bool:
        with self._scheduler_lock:
            return self._scheduler is not None

    def _trigger_flush(self) -> None:
        """Schedule a one-off flush without waiting for it."""
        with self._scheduler_lock:
            scheduler = self._scheduler
            if scheduler is not None and scheduler.running:
                scheduler.add_job(
                    self._flush_in_background,
                    id=IMMEDIATE_FLUSH_JOB_ID,
                    replace_existing=True,
                )
                return

        thread = threading.Thread(
            target=self._flush_in_background,
            name="session-queue-flush",
            daemon=True,
        )
        self._background_flush = thread
        thread.start()

    def _flush_in_background(self) -> None:
        try:
            self.flush()
        except Exception as e:
            logger.warning(f"Session queue flush failed: {e}")

    def close(self) -> None:
        """Stop flushing. Queued sessions stay on disk for the next run."""
        self.stop()

    def __enter__(self) -> "SessionQueue":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
