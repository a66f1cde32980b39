"""
Event batching pipeline.

Events are buffered per session and written in batches:

- a buffer is flushed when it holds `batch_size` events, or when its oldest event
  has waited `flush_interval` seconds (checked by the sweeper)
- the full batch is detached under the lock and a fresh buffer keeps accepting
  events while the batch is written
- a failed write puts the batch back at the head of the session's queue with the
  same batch id and exponential backoff; after `max_retries` retries it goes to
  the dead-letter queue, which keeps the most recent `dead_letter_limit` batches
- a successful write schedules post-flush processing after `processing_delay`

At most one batch per session is in flight, so a session's batches are written
in the order they were formed.

Without `start()` the batcher runs inline: flushes happen in the calling thread
and processing runs immediately. Tests use this mode.
"""

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Callable, Deque, Dict, List, Optional, Tuple
import uuid

logger = logging.getLogger(__name__)


@dataclass
class PendingBatch:
    batch_id: str
    session_id: str
    events: List
    attempts: int = 0
    not_before: float = 0.0
    last_error: Optional[str] = None


@dataclass
class _SessionBuffer:
    events: List = field(default_factory=list)
    opened_at: float = 0.0
    pending: Deque[PendingBatch] = field(default_factory=deque)
    in_flight: bool = False

    def idle(self) -> bool:
        return not self.events and not self.pending and not self.in_flight


class EventBatcher:
    """
    Per-session event buffers with batched durable writes.

    `writer` must provide `write_batch(batch_id, events)` and raise on failure.
    `processor` must provide `process(batch_id)` and be idempotent per batch id.
    """

    def __init__(
        self,
        writer,
        processor=None,
        batch_size: int = 100,
        flush_interval: float = 5.0,
        sweep_interval: float = 1.0,
        max_retries: int = 5,
        backoff_base: float = 0.5,
        processing_delay: float = 1.0,
        workers: int = 4,
        dead_letter_limit: int = 1000,
        dead_letter: Optional[Callable[[PendingBatch, Exception], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.writer = writer
        self.processor = processor
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.sweep_interval = sweep_interval
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.processing_delay = processing_delay
        self.workers = workers
        self.dead_letter_callback = dead_letter
        self._clock = clock

        self._lock = threading.Lock()
        self._buffers: Dict[str, _SessionBuffer] = {}
        self._scheduled: List[Tuple[float, str]] = []
        self.dead_letters: Deque[PendingBatch] = deque(maxlen=dead_letter_limit)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

        self._flushed_batches = 0
        self._flushed_events = 0
        self._failed_attempts = 0
        self._dead_lettered_batches = 0
        self._processed_batches = 0

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweeper is not None

    def start(self):
        """Start the sweeper thread and the worker pool."""
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="event-flush")
        self._sweeper = threading.Thread(target=self._sweep_loop, name="event-sweeper", daemon=True)
        self._sweeper.start()
        logger.info(
            f"Event batcher started (batch_size={self.batch_size}, "
            f"flush_interval={self.flush_interval}s, workers={self.workers})"
        )

    def shutdown(self):
        """Stop the sweeper, write every buffered event and run pending processing."""
        sweeper = self._sweeper
        if sweeper is not None:
            self._stop.set()
            sweeper.join()
            self._sweeper = None

        self.flush_all()
        self.run_scheduled_processing(force=True)

        executor = self._executor
        if executor is not None:
            self._executor = None
            executor.shutdown(wait=True)
        logger.info(f"Event batcher stopped: {self.stats()}")

    # -- ingestion -------------------------------------------------------------

    def enqueue(self, session_id: str, event) -> None:
        """Buffer one event. Never waits on durable I/O when running in the background."""
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                buffer = self._buffers[session_id] = _SessionBuffer()
            if not buffer.events:
                buffer.opened_at = self._clock()
            buffer.events.append(event)
            if len(buffer.events) >= self.batch_size:
                self._detach_locked(session_id, buffer)
            ready = self._take_ready_locked(buffer, self._clock())

        if ready is not None:
            self._dispatch(ready)

    def sweep(self) -> int:
        """
        Flush buffers whose oldest event has waited long enough, retry batches
        whose backoff has elapsed and start due post-flush processing.

        Returns the number of batches dispatched.
        """
        now = self._clock()
        ready = []
        with self._lock:
            for session_id, buffer in list(self._buffers.items()):
                if buffer.events and now - buffer.opened_at >= self.flush_interval:
                    self._detach_locked(session_id, buffer)
                batch = self._take_ready_locked(buffer, now)
                if batch is not None:
                    ready.append(batch)
                elif buffer.idle():
                    del self._buffers[session_id]

        for batch in ready:
            self._dispatch(batch)
        self.run_scheduled_processing()
        return len(ready)

    def flush_all(self, timeout: Optional[float] = None) -> bool:
        """
        Write everything that is buffered, ignoring flush intervals and retry backoff.

        Returns False if `timeout` seconds pass before every buffer is drained.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            ready = []
            with self._lock:
                for session_id, buffer in self._buffers.items():
                    if buffer.events:
                        self._detach_locked(session_id, buffer)
                    batch = self._take_ready_locked(buffer, None)
                    if batch is not None:
                        ready.append(batch)
                drained = all(b.idle() for b in self._buffers.values())

            if drained and not ready:
                return True
            for batch in ready:
                self._flush(batch)
            if not ready:
                if deadline is not None and time.monotonic() > deadline:
                    return False
                time.sleep(0.01)

    # -- flushing ----------------------------------------------------------------

    def _detach_locked(self, session_id: str, buffer: _SessionBuffer):
        events, buffer.events = buffer.events, []
        buffer.pending.append(PendingBatch(batch_id=str(uuid.uuid4()), session_id=session_id, events=events))

    def _take_ready_locked(self, buffer: _SessionBuffer, now: Optional[float]) -> Optional[PendingBatch]:
        if buffer.in_flight or not buffer.pending:
            return None
        head = buffer.pending[0]
        if now is not None and head.not_before > now:
            return None
        buffer.pending.popleft()
        buffer.in_flight = True
        return head

    def _dispatch(self, batch: PendingBatch):
        executor = self._executor
        if executor is not None:
            executor.submit(self._flush, batch)
        else:
            self._flush(batch)

    def _flush(self, batch: PendingBatch):
        try:
            self.writer.write_batch(batch.batch_id, batch.events)
        except Exception as e:
            self._on_failure(batch, e)
            return

        process_now = False
        with self._lock:
            self._flushed_batches += 1
            self._flushed_events += len(batch.events)
            # Scheduled before the buffer is released so a concurrent drain sees it
            if self.processor is not None:
                if self.running:
                    self._scheduled.append((self._clock() + self.processing_delay, batch.batch_id))
                else:
                    process_now = True
            buffer = self._buffers.get(batch.session_id)
            ready = None
            if buffer is not None:
                buffer.in_flight = False
                ready = self._take_ready_locked(buffer, self._clock())
        logger.debug(f"Flushed batch {batch.batch_id} ({len(batch.events)} events, session {batch.session_id})")

        if process_now:
            self._process(batch.batch_id)
        if ready is not None:
            self._dispatch(ready)

    def _on_failure(self, batch: PendingBatch, exc: Exception):
        batch.attempts += 1
        batch.last_error = str(exc)
        ready = None
        with self._lock:
            self._failed_attempts += 1
            buffer = self._buffers.setdefault(batch.session_id, _SessionBuffer())
            buffer.in_flight = False
            if batch.attempts > self.max_retries:
                self._dead_lettered_batches += 1
                self.dead_letters.append(batch)
                ready = self._take_ready_locked(buffer, self._clock())
            else:
                batch.not_before = self._clock() + self.backoff_base * 2 ** (batch.attempts - 1)
                buffer.pending.appendleft(batch)

        if batch.attempts > self.max_retries:
            logger.error(
                f"Dead-lettering batch {batch.batch_id} ({len(batch.events)} events, "
                f"session {batch.session_id}) after {batch.attempts} attempts: {exc}"
            )
            if self.dead_letter_callback is not None:
                self.dead_letter_callback(batch, exc)
            if ready is not None:
                self._dispatch(ready)
        else:
            logger.warning(
                f"Batch {batch.batch_id} write failed (attempt {batch.attempts}/{self.max_retries + 1}); "
                f"retrying in {batch.not_before - self._clock():.2f}s: {exc}"
            )

    # -- post-flush processing -----------------------------------------------------

    def run_scheduled_processing(self, force: bool = False) -> int:
        """Run processing whose delay has elapsed (all of it when `force`)."""
        now = self._clock()
        with self._lock:
            due = [b for t, b in self._scheduled if force or t <= now]
            self._scheduled = [(t, b) for t, b in self._scheduled if not (force or t <= now)]

        executor = self._executor
        for batch_id in due:
            if executor is not None and not force:
                executor.submit(self._process, batch_id)
            else:
                self._process(batch_id)
        return len(due)

    def _process(self, batch_id: str):
        try:
            self.processor.process(batch_id)
        except Exception as e:
            logger.error(f"Post-flush processing failed for batch {batch_id}: {e}", exc_info=True)
            return
        with self._lock:
            self._processed_batches += 1

    # -- background sweeper ----------------------------------------------------------

    def _sweep_loop(self):
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Event sweeper iteration failed: {e}", exc_info=True)

    # -- introspection -----------------------------------------------------------------

    def stats(self) -> dict:
        with self._lock:
            return {
                "buffered_events": sum(len(b.events) for b in self._buffers.values()),
                "pending_batches": sum(len(b.pending) for b in self._buffers.values()),
                "in_flight_batches": sum(1 for b in self._buffers.values() if b.in_flight),
                "flushed_batches": self._flushed_batches,
                "flushed_events": self._flushed_events,
                "failed_attempts": self._failed_attempts,
                "dead_lettered_batches": self._dead_lettered_batches,
                "processed_batches": self._processed_batches,
                "scheduled_processing": len(self._scheduled),
            }
