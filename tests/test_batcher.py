"""Test the event batcher: size and age flushes, retry, dead letters and processing."""

import threading
import time

import pytest

from behavior_engine.batcher import EventBatcher
from behavior_engine.errors import DurableWriteFailure


class RecordingWriter:
    """Stores batches in memory; fails the first `failures` calls."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = []
        self.batches = []
        self.lock = threading.Lock()

    def write_batch(self, batch_id, events):
        with self.lock:
            self.calls.append(batch_id)
            if self.failures:
                self.failures -= 1
                raise DurableWriteFailure("database unavailable")
            self.batches.append((batch_id, list(events)))
        return len(events)


class RecordingProcessor:
    def __init__(self):
        self.processed = []

    def process(self, batch_id):
        self.processed.append(batch_id)


@pytest.fixture
def writer():
    return RecordingWriter()


@pytest.fixture
def processor():
    return RecordingProcessor()


# ===================================================================
# Flush triggers
# ===================================================================

class TestSizeFlush:

    def test_250_events_flush_as_100_100_50(self, writer, seconds_clock):
        batcher = EventBatcher(writer, batch_size=100, clock=seconds_clock)
        for i in range(250):
            batcher.enqueue("session-1", i)

        assert [len(events) for _, events in writer.batches] == [100, 100]
        assert batcher.stats()["buffered_events"] == 50

        batcher.flush_all()
        assert [len(events) for _, events in writer.batches] == [100, 100, 50]
        flushed = [e for _, events in writer.batches for e in events]
        assert flushed == list(range(250))
        assert len({batch_id for batch_id, _ in writer.batches}) == 3

    def test_buffers_are_per_session(self, writer, seconds_clock):
        batcher = EventBatcher(writer, batch_size=3, clock=seconds_clock)
        for i in range(4):
            batcher.enqueue("session-a", ("a", i))
            batcher.enqueue("session-b", ("b", i))
        assert len(writer.batches) == 2
        for _, events in writer.batches:
            assert len({owner for owner, _ in events}) == 1


class TestAgeFlush:

    def test_sweep_flushes_old_buffers_only(self, writer, seconds_clock):
        batcher = EventBatcher(writer, batch_size=100, flush_interval=5.0, clock=seconds_clock)
        batcher.enqueue("session-1", "e1")
        seconds_clock.advance(3.0)
        batcher.enqueue("session-1", "e2")
        batcher.enqueue("session-2", "x1")

        seconds_clock.advance(1.5)
        assert batcher.sweep() == 0

        seconds_clock.advance(0.5)
        assert batcher.sweep() == 1
        assert writer.batches[0][1] == ["e1", "e2"]

        seconds_clock.advance(3.0)
        assert batcher.sweep() == 1
        assert writer.batches[1][1] == ["x1"]

    def test_idle_buffers_are_dropped(self, writer, seconds_clock):
        batcher = EventBatcher(writer, batch_size=1, clock=seconds_clock)
        batcher.enqueue("session-1", "e1")
        batcher.sweep()
        assert batcher.stats()["buffered_events"] == 0
        assert batcher._buffers == {}


# ===================================================================
# Retry and dead letters
# ===================================================================

class TestRetry:

    def test_failed_batch_is_retried_with_same_id_and_backoff(self, seconds_clock):
        writer = RecordingWriter(failures=2)
        batcher = EventBatcher(writer, batch_size=2, backoff_base=0.5, max_retries=5, clock=seconds_clock)
        batcher.enqueue("session-1", "e1")
        batcher.enqueue("session-1", "e2")
        assert len(writer.calls) == 1

        # first retry is due after 0.5s
        seconds_clock.advance(0.25)
        batcher.sweep()
        assert len(writer.calls) == 1
        seconds_clock.advance(0.25)
        batcher.sweep()
        assert len(writer.calls) == 2

        # second retry after a further 1.0s
        seconds_clock.advance(0.75)
        batcher.sweep()
        assert len(writer.calls) == 2
        seconds_clock.advance(0.25)
        batcher.sweep()

        assert len(writer.calls) == 3
        assert len(set(writer.calls)) == 1
        assert writer.batches == [(writer.calls[0], ["e1", "e2"])]
        assert batcher.stats()["failed_attempts"] == 2

    def test_buffer_keeps_accepting_while_batch_waits(self, seconds_clock):
        writer = RecordingWriter(failures=1)
        batcher = EventBatcher(writer, batch_size=2, backoff_base=1.0, clock=seconds_clock)
        for event in ("e1", "e2", "e3", "e4", "e5"):
            batcher.enqueue("session-1", event)

        stats = batcher.stats()
        assert stats["pending_batches"] == 2
        assert stats["buffered_events"] == 1

        batcher.flush_all()
        assert [events for _, events in writer.batches] == [["e1", "e2"], ["e3", "e4"], ["e5"]]

    def test_dead_letter_after_max_retries(self, seconds_clock):
        writer = RecordingWriter(failures=1000)
        dead = []
        batcher = EventBatcher(
            writer, batch_size=2, max_retries=2, clock=seconds_clock,
            dead_letter=lambda batch, exc: dead.append((batch, exc)),
        )
        batcher.enqueue("session-1", "e1")
        batcher.enqueue("session-1", "e2")

        assert batcher.flush_all()
        assert len(writer.calls) == 3
        assert len(batcher.dead_letters) == 1
        assert batcher.dead_letters[0].events == ["e1", "e2"]
        assert batcher.dead_letters[0].attempts == 3
        assert isinstance(dead[0][1], DurableWriteFailure)
        assert batcher.stats()["dead_lettered_batches"] == 1

    def test_dead_letters_are_capped_but_all_reported(self, seconds_clock):
        writer = RecordingWriter(failures=1000)
        dead = []
        batcher = EventBatcher(
            writer, batch_size=1, max_retries=0, dead_letter_limit=2, clock=seconds_clock,
            dead_letter=lambda batch, exc: dead.append(batch.events),
        )
        for event in ("e1", "e2", "e3"):
            batcher.enqueue("session-1", event)

        assert [b.events for b in batcher.dead_letters] == [["e2"], ["e3"]]
        assert dead == [["e1"], ["e2"], ["e3"]]
        assert batcher.stats()["dead_lettered_batches"] == 3

    def test_dead_letter_does_not_block_later_batches(self, seconds_clock):
        writer = RecordingWriter(failures=1)
        batcher = EventBatcher(writer, batch_size=1, max_retries=0, clock=seconds_clock)
        batcher.enqueue("session-1", "lost")
        batcher.enqueue("session-1", "kept")
        assert [events for _, events in writer.batches] == [["kept"]]
        assert batcher.dead_letters[0].events == ["lost"]


# ===================================================================
# Post-flush processing
# ===================================================================

class TestProcessing:

    def test_inline_processing_runs_after_each_flush(self, writer, processor, seconds_clock):
        batcher = EventBatcher(writer, processor, batch_size=2, clock=seconds_clock)
        for i in range(4):
            batcher.enqueue("session-1", i)
        assert processor.processed == [batch_id for batch_id, _ in writer.batches]
        assert batcher.stats()["processed_batches"] == 2

    def test_failed_batch_is_not_processed(self, processor, seconds_clock):
        writer = RecordingWriter(failures=1000)
        batcher = EventBatcher(writer, processor, batch_size=1, max_retries=0, clock=seconds_clock)
        batcher.enqueue("session-1", "e1")
        assert processor.processed == []


# ===================================================================
# Background mode
# ===================================================================

class TestBackground:

    def test_shutdown_drains_everything(self, writer, processor):
        batcher = EventBatcher(
            writer, processor, batch_size=10, flush_interval=60, sweep_interval=0.01,
            processing_delay=60, workers=2,
        )
        batcher.start()
        for i in range(35):
            batcher.enqueue(f"session-{i % 3}", i)
        batcher.shutdown()

        flushed = sorted(e for _, events in writer.batches for e in events)
        assert flushed == list(range(35))
        assert sorted(processor.processed) == sorted(batch_id for batch_id, _ in writer.batches)
        assert not batcher.running

    def test_sweeper_flushes_by_age(self, writer):
        batcher = EventBatcher(writer, batch_size=100, flush_interval=0.05, sweep_interval=0.01)
        batcher.start()
        try:
            batcher.enqueue("session-1", "e1")
            deadline = time.monotonic() + 5
            while not writer.batches and time.monotonic() < deadline:
                time.sleep(0.01)
            assert writer.batches[0][1] == ["e1"]
        finally:
            batcher.shutdown()
