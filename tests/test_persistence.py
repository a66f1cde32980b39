"""Test durable storage: event writer dedupe, batch processing and session snapshots."""

import pytest

from behavior_engine.models import (
    BatchMetric, BehaviorEvent, Experiment, ExperimentEvent, SessionMergeRecord, UserSession
)
from behavior_engine.persistence import BatchProcessor, EventWriter, SessionRepository
from behavior_engine.schemas import BehaviorEventCreate, ExperimentEventCreate
from behavior_engine.segments import Segment
from behavior_engine.sessions import SessionStore

SID = "session-persist-1"


def behavior(type, timestamp, session_id=SID, **data):
    return BehaviorEventCreate(session_id=session_id, type=type, timestamp=timestamp, data=data)


def count(session_factory, model, **filters):
    db = session_factory()
    try:
        return db.query(model).filter_by(**filters).count()
    finally:
        db.close()


# ===================================================================
# EventWriter
# ===================================================================

class TestEventWriter:

    def test_writes_behavior_rows(self, session_factory):
        writer = EventWriter(session_factory)
        events = [
            behavior("page_visit", 1000, deviceType="mobile"),
            behavior("scroll_depth", 1001, depth=80),
            behavior("cta_click", 1002),
        ]
        assert writer.write_batch("batch-1", events) == 3

        db = session_factory()
        try:
            rows = db.query(BehaviorEvent).order_by(BehaviorEvent.timestamp).all()
            assert [r.event_type for r in rows] == ["page_visit", "scroll_depth", "cta_click"]
            assert rows[0].device_type == "mobile"
            assert rows[1].event_data == {"depth": 80}
            assert {r.batch_id for r in rows} == {"batch-1"}
            assert not any(r.is_processed for r in rows)
        finally:
            db.close()

    def test_rewriting_a_batch_stores_nothing_new(self, session_factory):
        writer = EventWriter(session_factory)
        events = [behavior("page_visit", 1000), behavior("page_visit", 2000)]
        writer.write_batch("batch-1", events)
        assert writer.write_batch("batch-1", events) == 0
        assert count(session_factory, BehaviorEvent) == 2

    def test_duplicates_within_a_batch(self, session_factory):
        writer = EventWriter(session_factory)
        events = [behavior("page_visit", 1000), behavior("page_visit", 1000), behavior("cta_click", 1000)]
        assert writer.write_batch("batch-1", events) == 2

    def test_experiment_events(self, session_factory, make_experiment):
        experiment_id = make_experiment()
        db = session_factory()
        try:
            variant_id = db.get(Experiment, experiment_id).variants[0].id
        finally:
            db.close()

        event = ExperimentEventCreate(
            session_id=SID, experiment_id=experiment_id, variant_id=variant_id,
            event_type="click", timestamp=5000, metadata={"button": "hero"},
        )
        writer = EventWriter(session_factory)
        assert writer.write_batch("batch-2", [event, behavior("cta_click", 5000)]) == 2
        assert writer.write_batch("batch-2", [event]) == 0

        db = session_factory()
        try:
            row = db.query(ExperimentEvent).one()
            assert row.details == {"button": "hero"}
            assert row.variant_id == variant_id
        finally:
            db.close()


# ===================================================================
# BatchProcessor
# ===================================================================

class TestBatchProcessor:

    @pytest.fixture
    def written(self, session_factory):
        EventWriter(session_factory).write_batch("batch-9", [
            behavior("page_visit", 1), behavior("page_visit", 2), behavior("quiz_answer", 3),
        ])
        return BatchProcessor(session_factory)

    def test_process_counts_and_marks_rows(self, written, session_factory):
        metric = written.process("batch-9")
        assert metric.event_count == 3
        assert metric.counts_by_type == {"page_visit": 2, "quiz_answer": 1}
        assert count(session_factory, BehaviorEvent, is_processed=True) == 3

    def test_reprocessing_is_idempotent(self, written, session_factory):
        first = written.process("batch-9")
        second = written.process("batch-9")
        assert count(session_factory, BatchMetric) == 1
        assert (first.event_count, first.counts_by_type) == (second.event_count, second.counts_by_type)

    def test_unknown_batch(self, written, session_factory):
        assert written.process("no-such-batch") is None
        assert count(session_factory, BatchMetric) == 0


# ===================================================================
# SessionRepository
# ===================================================================

class TestSessionRepository:

    def test_snapshot_round_trip(self, session_factory):
        repository = SessionRepository(session_factory)
        store = SessionStore(sink=repository.save)
        store.upsert(SID, user_id="user-1", device_info={"type": "tablet"})
        for i, payload in enumerate([
            {"type": "page_visit", "data": {"emotion": "calm", "category": "wellness"}},
            {"type": "page_visit", "data": {}},
            {"type": "quiz_answer", "data": {"quizId": "q1", "answers": {"a": 1}, "score": 7, "result": "calm"}},
            {"type": "affiliate_click", "data": {"offerId": "o1", "offerSlug": "deal"}},
            {"type": "time_on_site", "data": {"timeSpent": 1234}},
        ]):
            store.apply_event(SID, {"sessionId": SID, "timestamp": 100 + i, **payload})
        store.remember_assignment(SID, 4, 40)
        original = store.get(SID)

        restored = repository.load(SID)
        assert restored.user_id == "user-1"
        assert restored.device_info == {"type": "tablet"}
        assert restored.page_views == 2
        assert restored.total_time_on_site == 1234
        assert restored.categories == {"wellness"}
        assert restored.quiz_results == original.quiz_results
        assert restored.affiliate_clicks == original.affiliate_clicks
        assert restored.assignments == {"4": 40}
        assert restored.segment == Segment.RETURNING_VISITOR
        assert restored.start_time == original.start_time

    def test_restores_recent_behaviors_from_events(self, session_factory):
        repository = SessionRepository(session_factory, max_retained_events=2)
        store = SessionStore(sink=repository.save)
        store.get_or_create(SID)
        EventWriter(session_factory).write_batch("b", [behavior("cta_click", t) for t in (10, 20, 30)])

        restored = repository.load(SID)
        assert [e.timestamp for e in restored.behaviors] == [20, 30]

    def test_fresh_store_loads_from_repository(self, session_factory):
        repository = SessionRepository(session_factory)
        SessionStore(sink=repository.save).apply_event(
            SID, {"sessionId": SID, "type": "page_visit", "timestamp": 1}
        )
        fresh = SessionStore(loader=repository.load)
        assert fresh.get(SID).page_views == 1

    def test_unknown_session(self, session_factory):
        assert SessionRepository(session_factory).load("session-unknown") is None

    def test_record_merge(self, session_factory):
        repository = SessionRepository(session_factory)
        store = SessionStore(sink=repository.save, merge_sink=repository.record_merge)
        store.get_or_create(SID)
        store.get_or_create("session-persist-2")
        store.merge(SID, "session-persist-2", reason="email", confidence=99)

        db = session_factory()
        try:
            record = db.query(SessionMergeRecord).one()
            assert (record.primary_session_id, record.secondary_session_id) == (SID, "session-persist-2")
            assert record.merge_data["secondary"]["session_id"] == "session-persist-2"
            tombstone = db.query(UserSession).filter_by(session_id="session-persist-2").one()
            assert tombstone.is_active is False
            assert tombstone.merged_into == SID
        finally:
            db.close()
