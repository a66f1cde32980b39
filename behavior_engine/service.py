"""
Service container.

EngagementService wires the session store, event batcher, assigner and analytics
aggregator to one database and owns their background threads. The FastAPI app
creates one in its lifespan and stores it on `app.state.service`; tests build
their own against an in-memory database.
"""

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
import time
from typing import Deque, Optional, Tuple

from fastapi import Request
from sqlalchemy.engine import Engine

from behavior_engine import errors
from behavior_engine.analytics import AnalyticsAggregator
from behavior_engine.assignment import ExperimentAssigner
from behavior_engine.batcher import EventBatcher
from behavior_engine.config import Settings
from behavior_engine.database import build_engine, build_session_factory, init_db
from behavior_engine.persistence import BatchProcessor, EventWriter, SessionRepository
from behavior_engine.schemas import BehaviorEventCreate
from behavior_engine.segments import SegmentThresholds
from behavior_engine.sessions import Session, SessionStore

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS = 60.0


@dataclass
class FailedWrite:
    """A session snapshot or merge record that could not be stored."""
    kind: str
    session_id: str
    args: Tuple
    attempts: int
    last_error: str


class EngagementService:
    def __init__(self, settings: Settings, engine: Optional[Engine] = None):
        self.settings = settings
        self.engine = engine if engine is not None else build_engine(settings.database_url)
        self.session_factory = build_session_factory(self.engine)

        self.repository = SessionRepository(self.session_factory, settings.session_max_retained_events)
        self.store = SessionStore(
            thresholds=SegmentThresholds.from_settings(settings),
            ttl_ms=settings.session_ttl_seconds * 1000,
            max_retained_events=settings.session_max_retained_events,
            loader=self.repository.load,
            sink=self._save_snapshot,
            merge_sink=self._record_merge,
        )
        self.batcher = EventBatcher(
            writer=EventWriter(self.session_factory),
            processor=BatchProcessor(self.session_factory),
            batch_size=settings.batch_size,
            flush_interval=settings.batch_flush_interval_seconds,
            sweep_interval=settings.batch_sweep_interval_seconds,
            max_retries=settings.batch_max_retries,
            backoff_base=settings.batch_retry_backoff_seconds,
            processing_delay=settings.batch_processing_delay_seconds,
            workers=settings.batch_workers,
            dead_letter_limit=settings.batch_dead_letter_limit,
        )
        self.assigner = ExperimentAssigner(self.session_factory, self.store, self.batcher)
        self.analytics = AnalyticsAggregator(self.session_factory)

        # Single worker so snapshot writes land in the order they were published
        self._snapshot_executor: Optional[ThreadPoolExecutor] = None
        self._maintenance: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.dead_letters: Deque[FailedWrite] = deque(maxlen=settings.batch_dead_letter_limit)
        self._dead_lettered_writes = 0
        self._dead_letter_lock = threading.Lock()

    # -- lifecycle -------------------------------------------------------------

    def start(self):
        init_db(self.engine)
        if self.settings.batch_background_flush:
            self._snapshot_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-snapshot")
            self.batcher.start()
            self._stop.clear()
            self._maintenance = threading.Thread(
                target=self._maintenance_loop, name="session-maintenance", daemon=True
            )
            self._maintenance.start()
        logger.info("Engagement service started")

    def shutdown(self):
        """Drain buffered events and pending snapshot writes, then stop background threads."""
        self._stop.set()
        if self._maintenance is not None:
            self._maintenance.join()
            self._maintenance = None

        self.batcher.shutdown()

        executor = self._snapshot_executor
        if executor is not None:
            self._snapshot_executor = None
            executor.shutdown(wait=True)
        logger.info("Engagement service stopped")

    # -- operations -----------------------------------------------------------

    def ingest(self, event: BehaviorEventCreate) -> Session:
        """Apply an event to its session and queue it for durable storage."""
        session = self.store.apply_event(event.session_id, event)
        self.batcher.enqueue(event.session_id, event)
        return session

    def health(self) -> dict:
        return {
            "sessions_in_memory": len(self.store),
            "batcher": self.batcher.stats(),
            "session_writes": {
                "dead_lettered": self._dead_lettered_writes,
                "retained_dead_letters": len(self.dead_letters),
            },
        }

    # -- persistence hooks --------------------------------------------------------

    def _submit(self, kind: str, session_id: str, fn, *args):
        executor = self._snapshot_executor
        if executor is not None:
            executor.submit(self._write_with_retry, kind, session_id, fn, *args)
        else:
            self._write_with_retry(kind, session_id, fn, *args)

    def _write_with_retry(self, kind: str, session_id: str, fn, *args):
        """
        Run a durable session write with the batcher's retry policy.

        Storage failures are retried with exponential backoff; once retries are
        exhausted, or on any other error, the write is dead-lettered.
        """
        max_retries = self.settings.batch_max_retries
        attempts = 0
        while True:
            attempts += 1
            try:
                fn(*args)
                return
            except errors.DurableWriteFailure as e:
                if attempts > max_retries:
                    self._dead_letter(FailedWrite(kind, session_id, args, attempts, str(e)))
                    return
                delay = self.settings.batch_retry_backoff_seconds * 2 ** (attempts - 1)
                logger.warning(
                    f"{kind} write for session {session_id} failed "
                    f"(attempt {attempts}/{max_retries + 1}); retrying in {delay:.2f}s: {e}"
                )
                time.sleep(delay)
            except Exception as e:
                logger.error(f"{kind} write for session {session_id} failed: {e}", exc_info=True)
                self._dead_letter(FailedWrite(kind, session_id, args, attempts, str(e)))
                return

    def _dead_letter(self, failed: FailedWrite):
        logger.error(
            f"Dead-lettering {failed.kind} write for session {failed.session_id} "
            f"after {failed.attempts} attempts: {failed.last_error}"
        )
        with self._dead_letter_lock:
            self._dead_lettered_writes += 1
            self.dead_letters.append(failed)

    def _save_snapshot(self, session: Session):
        self._submit("snapshot", session.session_id, self.repository.save, session)

    def _record_merge(self, merged, tombstone, primary_before, secondary_before, reason, confidence):
        self._submit(
            "merge", merged.session_id, self.repository.record_merge,
            merged, tombstone, primary_before, secondary_before, reason, confidence,
        )

    def _maintenance_loop(self):
        while not self._stop.wait(EVICTION_INTERVAL_SECONDS):
            try:
                self.store.evict_expired()
            except Exception as e:
                logger.error(f"Session eviction failed: {e}", exc_info=True)


def get_service(request: Request) -> EngagementService:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.service


def get_db(request: Request):
    """
    Dependency that provides a database session.
    Ensures session is properly closed after request.
    """
    db = get_service(request).session_factory()
    try:
        yield db
    finally:
        db.close()
