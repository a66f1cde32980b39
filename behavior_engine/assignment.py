"""
Experiment assignment.

A session's variant for an experiment is decided once and then stored:

1. an existing assignment for (session, experiment) is returned unchanged
2. unknown experiments raise ExperimentNotFound; inactive experiments, or ones
   outside their start/end window, are not eligible
3. the traffic gate admits a deterministic share of sessions
4. the variant comes from the deterministic bucket (see bucketing.py)
5. the assignment is stored, cached on the session, and an impression is queued

The stored row is the source of truth, so a restarted service hands out the same
variants as before.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, sessionmaker

from behavior_engine import errors
from behavior_engine.batcher import EventBatcher
from behavior_engine.bucketing import choose_variant, in_traffic_allocation
from behavior_engine.models import (
    Experiment,
    ExperimentStatus,
    ExperimentVariant,
    UserExperimentAssignment,
)
from behavior_engine.schemas import ExperimentEventCreate
from behavior_engine.sessions import SessionStore, validate_session_id

logger = logging.getLogger(__name__)


@dataclass
class AssignmentResult:
    assignment: Optional[UserExperimentAssignment]
    variant: Optional[ExperimentVariant]
    eligible: bool
    is_new: bool
    reason: Optional[str] = None


def ineligibility_reason(experiment: Experiment, now: datetime) -> Optional[str]:
    """Why new sessions cannot enter the experiment right now, or None if they can."""
    if experiment.status != ExperimentStatus.ACTIVE:
        return f"Experiment is {experiment.status.value}"
    if experiment.start_date is not None and now < experiment.start_date:
        return "Experiment has not started"
    if experiment.end_date is not None and now > experiment.end_date:
        return "Experiment has ended"
    return None


class ExperimentAssigner:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: SessionStore,
        batcher: EventBatcher,
        clock=datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.store = store
        self.batcher = batcher
        self._clock = clock

    def assign(
        self,
        session_id: str,
        experiment_id: int,
        user_id: Optional[str] = None,
        device_fingerprint: Optional[str] = None,
    ) -> AssignmentResult:
        """
        Get or create the session's assignment for an experiment.

        **Idempotency Guarantee**: once a session has a variant for an experiment,
        every later call returns that same variant, including after a restart and
        when two requests race to create it.
        """
        validate_session_id(session_id)

        db = self.session_factory()
        try:
            existing = self._find(db, session_id, experiment_id)
            if existing is not None:
                result = AssignmentResult(existing, existing.variant, eligible=True, is_new=False)
            else:
                result = self._create(db, session_id, experiment_id, user_id, device_fingerprint)
        finally:
            db.close()

        if result.assignment is not None:
            self.store.remember_assignment(session_id, experiment_id, result.variant.id)
        if result.is_new:
            self.batcher.enqueue(session_id, ExperimentEventCreate(
                session_id=session_id,
                experiment_id=experiment_id,
                variant_id=result.variant.id,
                event_type="impression",
                user_id=user_id,
                metadata={"source": "assignment"},
            ))
        return result

    def _find(self, db, session_id: str, experiment_id: int) -> Optional[UserExperimentAssignment]:
        return (
            db.query(UserExperimentAssignment)
            .options(joinedload(UserExperimentAssignment.variant))
            .filter(
                UserExperimentAssignment.session_id == session_id,
                UserExperimentAssignment.experiment_id == experiment_id,
            )
            .first()
        )

    def _create(self, db, session_id, experiment_id, user_id, device_fingerprint) -> AssignmentResult:
        experiment = db.get(Experiment, experiment_id)
        if experiment is None:
            raise errors.ExperimentNotFound(f"Experiment {experiment_id} not found")

        reason = ineligibility_reason(experiment, self._clock())
        if reason is not None:
            return AssignmentResult(None, None, eligible=False, is_new=False, reason=reason)

        if not in_traffic_allocation(session_id, experiment.id, experiment.traffic_allocation):
            return AssignmentResult(
                None, None, eligible=False, is_new=False,
                reason="Session is outside the experiment's traffic allocation",
            )

        variants = [v for v in experiment.variants if v.is_active]
        variant = choose_variant(session_id, experiment.id, variants)
        if variant is None:
            raise errors.NoVariantsAvailable(f"Experiment {experiment_id} has no active variants")

        assignment = UserExperimentAssignment(
            session_id=session_id,
            experiment_id=experiment.id,
            variant_id=variant.id,
            user_id=user_id,
            device_fingerprint=device_fingerprint,
        )
        try:
            db.add(assignment)
            db.commit()
            db.refresh(assignment)
        except IntegrityError:
            # Another request created the assignment first
            db.rollback()
            existing = self._find(db, session_id, experiment_id)
            if existing is None:
                raise
            return AssignmentResult(existing, existing.variant, eligible=True, is_new=False)

        logger.info(f"Assigned session {session_id} to variant {variant.slug} of experiment {experiment.slug}")
        return AssignmentResult(assignment, variant, eligible=True, is_new=True)

    def session_assignments(self, session_id: str) -> List[UserExperimentAssignment]:
        """Every stored assignment of a session, with its variant loaded."""
        validate_session_id(session_id)
        db = self.session_factory()
        try:
            return (
                db.query(UserExperimentAssignment)
                .options(joinedload(UserExperimentAssignment.variant))
                .filter(UserExperimentAssignment.session_id == session_id)
                .order_by(UserExperimentAssignment.experiment_id)
                .all()
            )
        finally:
            db.close()

    def track(self, event: ExperimentEventCreate) -> None:
        """Queue a click, conversion or bounce against an experiment variant."""
        db = self.session_factory()
        try:
            experiment = db.get(Experiment, event.experiment_id)
            if experiment is None:
                raise errors.ExperimentNotFound(f"Experiment {event.experiment_id} not found")
            variant = db.get(ExperimentVariant, event.variant_id)
            if variant is None or variant.experiment_id != experiment.id:
                raise errors.ValidationError(
                    f"Variant {event.variant_id} does not belong to experiment {event.experiment_id}"
                )
        finally:
            db.close()

        self.batcher.enqueue(event.session_id, event)
