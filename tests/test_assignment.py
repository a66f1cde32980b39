"""Test experiment assignment: stability, eligibility, fallbacks and impressions."""

from collections import Counter

import pytest

from behavior_engine import errors
from behavior_engine.bucketing import choose_variant, in_traffic_allocation
from behavior_engine.models import (
    Experiment,
    ExperimentEvent,
    ExperimentStatus,
    UserExperimentAssignment,
)
from behavior_engine.schemas import ExperimentEventCreate
from behavior_engine.service import EngagementService


def sessions(n, prefix="visitor"):
    return [f"{prefix}-{i:06d}" for i in range(n)]


def stored(session_factory, model, **filters):
    db = session_factory()
    try:
        return db.query(model).filter_by(**filters).all()
    finally:
        db.close()


# ===================================================================
# Stability
# ===================================================================

class TestStability:

    def test_repeat_calls_return_the_same_variant(self, service, make_experiment):
        experiment_id = make_experiment()
        first = service.assigner.assign("visitor-000001", experiment_id)
        assert first.is_new and first.eligible

        for _ in range(5):
            again = service.assigner.assign("visitor-000001", experiment_id)
            assert again.variant.id == first.variant.id
            assert again.assignment.id == first.assignment.id
            assert not again.is_new

    def test_fresh_service_on_same_database_agrees(self, service, test_settings, engine, make_experiment):
        experiment_id = make_experiment()
        before = {sid: service.assigner.assign(sid, experiment_id).variant.id for sid in sessions(40)}

        restarted = EngagementService(test_settings, engine=engine)
        restarted.start()
        try:
            after = {sid: restarted.assigner.assign(sid, experiment_id) for sid in sessions(40)}
        finally:
            restarted.shutdown()

        assert {sid: r.variant.id for sid, r in after.items()} == before
        assert not any(r.is_new for r in after.values())

    def test_assignment_matches_deterministic_bucket(self, service, make_experiment, session_factory):
        experiment_id = make_experiment(variants=(("control", 20, True), ("a", 40, False), ("b", 40, False)))
        db = session_factory()
        try:
            variants = list(db.get(Experiment, experiment_id).variants)
        finally:
            db.close()

        for sid in sessions(30):
            expected = choose_variant(sid, experiment_id, variants)
            assert service.assigner.assign(sid, experiment_id).variant.id == expected.id

    def test_split_follows_configuration(self, service, make_experiment):
        experiment_id = make_experiment(variants=(("control", 50, True), ("treatment", 50, False)))
        counts = Counter(
            service.assigner.assign(sid, experiment_id).variant.slug for sid in sessions(2000)
        )
        assert abs(counts["control"] / 2000 - 0.5) < 0.05


# ===================================================================
# Eligibility
# ===================================================================

class TestEligibility:

    @pytest.mark.parametrize("status", [ExperimentStatus.DRAFT, ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED])
    def test_inactive_experiments_are_not_eligible(self, service, make_experiment, session_factory, status):
        experiment_id = make_experiment(status=status)
        result = service.assigner.assign("visitor-000001", experiment_id)
        assert not result.eligible
        assert result.assignment is None and result.variant is None
        assert status.value in result.reason
        assert stored(session_factory, UserExperimentAssignment) == []

    def test_outside_date_window(self, service, make_experiment, past, future):
        not_started = make_experiment(start_date=future)
        ended = make_experiment(end_date=past)
        running = make_experiment(start_date=past, end_date=future)
        assert not service.assigner.assign("visitor-000001", not_started).eligible
        assert not service.assigner.assign("visitor-000001", ended).eligible
        assert service.assigner.assign("visitor-000001", running).eligible

    def test_paused_experiment_still_returns_existing_assignment(self, service, make_experiment, session_factory):
        experiment_id = make_experiment()
        first = service.assigner.assign("visitor-000001", experiment_id)

        db = session_factory()
        try:
            db.get(Experiment, experiment_id).status = ExperimentStatus.PAUSED
            db.commit()
        finally:
            db.close()

        again = service.assigner.assign("visitor-000001", experiment_id)
        assert again.eligible and again.variant.id == first.variant.id

    def test_traffic_gate(self, service, make_experiment):
        experiment_id = make_experiment(traffic_allocation=30)
        for sid in sessions(200):
            result = service.assigner.assign(sid, experiment_id)
            assert result.eligible == in_traffic_allocation(sid, experiment_id, 30)

    def test_zero_allocation_admits_nobody(self, service, make_experiment):
        experiment_id = make_experiment(traffic_allocation=0)
        assert not any(service.assigner.assign(sid, experiment_id).eligible for sid in sessions(50))

    def test_unknown_experiment(self, service):
        with pytest.raises(errors.ExperimentNotFound):
            service.assigner.assign("visitor-000001", 999)

    def test_no_active_variants(self, service, make_experiment):
        experiment_id = make_experiment(variants=(("control", 50, True, False), ("b", 50, False, False)))
        with pytest.raises(errors.NoVariantsAvailable):
            service.assigner.assign("visitor-000001", experiment_id)

    def test_malformed_session(self, service, make_experiment):
        with pytest.raises(errors.ValidationError):
            service.assigner.assign("bad", make_experiment())


# ===================================================================
# Fallbacks
# ===================================================================

class TestControlFallback:

    def test_partial_split_sends_remainder_to_control(self, service, make_experiment):
        experiment_id = make_experiment(variants=(("control", 35, True), ("treatment", 35, False)))
        counts = Counter(
            service.assigner.assign(sid, experiment_id).variant.slug for sid in sessions(3000)
        )
        assert abs(counts["control"] / 3000 - 0.65) < 0.04
        assert abs(counts["treatment"] / 3000 - 0.35) < 0.04

    def test_inactive_variant_is_skipped(self, service, make_experiment):
        experiment_id = make_experiment(variants=(("control", 50, True), ("retired", 50, False, False)))
        slugs = {service.assigner.assign(sid, experiment_id).variant.slug for sid in sessions(100)}
        assert slugs == {"control"}


# ===================================================================
# Side effects
# ===================================================================

class TestSideEffects:

    def test_assignment_is_cached_on_session(self, service, make_experiment):
        experiment_id = make_experiment()
        result = service.assigner.assign("visitor-000001", experiment_id)
        assert service.store.get("visitor-000001").assignments == {str(experiment_id): result.variant.id}

    def test_new_assignment_records_one_impression(self, service, make_experiment, session_factory):
        experiment_id = make_experiment()
        result = service.assigner.assign("visitor-000001", experiment_id, user_id="user-1")
        service.assigner.assign("visitor-000001", experiment_id)
        service.batcher.flush_all()

        events = stored(session_factory, ExperimentEvent)
        assert [(e.event_type, e.variant_id, e.user_id) for e in events] == [
            ("impression", result.variant.id, "user-1")
        ]

    def test_session_assignments(self, service, make_experiment):
        first = make_experiment()
        second = make_experiment()
        service.assigner.assign("visitor-000001", first)
        service.assigner.assign("visitor-000001", second)
        assignments = service.assigner.session_assignments("visitor-000001")
        assert [a.experiment_id for a in assignments] == [first, second]
        assert all(a.variant.experiment_id == a.experiment_id for a in assignments)


class TestTrack:

    def test_track_queues_event(self, service, make_experiment, session_factory):
        experiment_id = make_experiment()
        result = service.assigner.assign("visitor-000001", experiment_id)
        service.assigner.track(ExperimentEventCreate(
            session_id="visitor-000001", experiment_id=experiment_id,
            variant_id=result.variant.id, event_type="conversion", event_value="49.00",
        ))
        service.batcher.flush_all()
        assert len(stored(session_factory, ExperimentEvent, event_type="conversion")) == 1

    def test_track_rejects_foreign_variant(self, service, make_experiment, session_factory):
        first = make_experiment()
        second = make_experiment()
        db = session_factory()
        try:
            foreign_variant = db.get(Experiment, second).variants[0].id
        finally:
            db.close()

        with pytest.raises(errors.ValidationError):
            service.assigner.track(ExperimentEventCreate(
                session_id="visitor-000001", experiment_id=first,
                variant_id=foreign_variant, event_type="click",
            ))

    def test_track_unknown_experiment(self, service):
        with pytest.raises(errors.ExperimentNotFound):
            service.assigner.track(ExperimentEventCreate(
                session_id="visitor-000001", experiment_id=404, variant_id=1, event_type="click",
            ))
