"""
Durable storage for sessions and event batches.

- SessionRepository: session snapshots, restores and merge history
- EventWriter: writes one batch of behavior/experiment events, skipping rows
  that are already stored so a retried batch never duplicates anything
- BatchProcessor: post-flush step that derives per-batch counts
"""

from collections import Counter, deque
import logging
from typing import Iterable, List, Optional, Sequence, Union

from sqlalchemy import tuple_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from behavior_engine import errors
from behavior_engine.models import (
    BatchMetric,
    BehaviorEvent,
    ExperimentEvent,
    SessionMergeRecord,
    UserSession,
)
from behavior_engine.schemas import BehaviorEventCreate, ExperimentEventCreate
from behavior_engine.segments import Segment
from behavior_engine.sessions import AffiliateClickRecord, QuizRecord, Session
from behavior_engine.timeutil import datetime_to_ms, ms_to_datetime

logger = logging.getLogger(__name__)

QueuedEvent = Union[BehaviorEventCreate, ExperimentEventCreate]


def session_to_row_values(session: Session) -> dict:
    return {
        "user_id": session.user_id,
        "start_time": ms_to_datetime(session.start_time),
        "last_activity": ms_to_datetime(session.last_activity),
        "total_time_on_site": session.total_time_on_site,
        "page_views": session.page_views,
        "interactions": session.interactions,
        "device_info": session.device_info,
        "location": session.location,
        "preferences": {
            "emotions": sorted(session.emotions),
            "categories": sorted(session.categories),
            "interactiveModules": sorted(session.interactive_modules),
        },
        "quiz_results": [
            {"quizId": q.quiz_id, "answers": q.answers, "score": q.score,
             "result": q.result, "timestamp": q.timestamp}
            for q in session.quiz_results
        ],
        "affiliate_clicks": [
            {"offerId": c.offer_id, "offerSlug": c.offer_slug,
             "timestamp": c.timestamp, "converted": c.converted}
            for c in session.affiliate_clicks
        ],
        "assignments": dict(session.assignments),
        "segment": session.segment.value,
        "personalization_flags": dict(session.personalization_flags),
        "is_active": session.is_active,
        "merged_into": session.merged_into,
    }


def row_to_session(row: UserSession, behaviors: Iterable[BehaviorEventCreate], max_retained_events: int) -> Session:
    preferences = row.preferences or {}
    return Session(
        session_id=row.session_id,
        user_id=row.user_id,
        start_time=datetime_to_ms(row.start_time),
        last_activity=datetime_to_ms(row.last_activity),
        total_time_on_site=row.total_time_on_site or 0,
        page_views=row.page_views or 0,
        interactions=row.interactions or 0,
        behaviors=deque(behaviors, maxlen=max_retained_events),
        emotions=set(preferences.get("emotions", [])),
        categories=set(preferences.get("categories", [])),
        interactive_modules=set(preferences.get("interactiveModules", [])),
        quiz_results=[
            QuizRecord(
                quiz_id=q["quizId"], answers=q.get("answers") or {}, score=q.get("score", 0),
                result=q.get("result", ""), timestamp=q["timestamp"],
            )
            for q in row.quiz_results or []
        ],
        affiliate_clicks=[
            AffiliateClickRecord(
                offer_id=c["offerId"], offer_slug=c.get("offerSlug"),
                timestamp=c["timestamp"], converted=bool(c.get("converted")),
            )
            for c in row.affiliate_clicks or []
        ],
        segment=Segment(row.segment),
        personalization_flags=dict(row.personalization_flags or {}),
        assignments={str(k): int(v) for k, v in (row.assignments or {}).items()},
        device_info=row.device_info,
        location=row.location,
        is_active=row.is_active,
        merged_into=row.merged_into,
    )


def behavior_row_to_event(row: BehaviorEvent) -> BehaviorEventCreate:
    return BehaviorEventCreate(
        session_id=row.session_id,
        type=row.event_type,
        timestamp=datetime_to_ms(row.timestamp),
        page_slug=row.page_slug,
        user_id=row.user_id,
        data=row.event_data or {},
    )


class SessionRepository:
    """Reads and writes session snapshots."""

    def __init__(self, session_factory: sessionmaker, max_retained_events: int = 200):
        self.session_factory = session_factory
        self.max_retained_events = max_retained_events

    def save(self, session: Session) -> None:
        """Insert or overwrite the durable snapshot of a session."""
        values = session_to_row_values(session)
        db = self.session_factory()
        try:
            row = db.query(UserSession).filter(UserSession.session_id == session.session_id).first()
            if row is None:
                db.add(UserSession(session_id=session.session_id, **values))
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise errors.DurableWriteFailure(f"Could not save session {session.session_id}") from e
        finally:
            db.close()

    def load(self, session_id: str) -> Optional[Session]:
        """Restore a session, including its most recent stored behavior events."""
        db = self.session_factory()
        try:
            row = db.query(UserSession).filter(UserSession.session_id == session_id).first()
            if row is None:
                return None
            recent = (
                db.query(BehaviorEvent)
                .filter(BehaviorEvent.session_id == session_id)
                .order_by(BehaviorEvent.timestamp.desc())
                .limit(self.max_retained_events)
                .all()
            )
            behaviors = [behavior_row_to_event(r) for r in reversed(recent)]
            return row_to_session(row, behaviors, self.max_retained_events)
        finally:
            db.close()

    def record_merge(
        self,
        merged: Session,
        tombstone: Session,
        primary_before: Session,
        secondary_before: Session,
        reason: str,
        confidence: float,
    ) -> None:
        """Persist both post-merge snapshots and the merge record in one transaction."""
        db = self.session_factory()
        try:
            for snapshot in (merged, tombstone):
                values = session_to_row_values(snapshot)
                row = db.query(UserSession).filter(UserSession.session_id == snapshot.session_id).first()
                if row is None:
                    db.add(UserSession(session_id=snapshot.session_id, **values))
                else:
                    for name, value in values.items():
                        setattr(row, name, value)

            db.add(SessionMergeRecord(
                primary_session_id=merged.session_id,
                secondary_session_id=tombstone.session_id,
                reason=reason,
                confidence=confidence,
                merge_data={
                    "primary": session_to_row_values_json(primary_before),
                    "secondary": session_to_row_values_json(secondary_before),
                },
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise errors.DurableWriteFailure("Could not record session merge") from e
        finally:
            db.close()


def session_to_row_values_json(session: Session) -> dict:
    """Snapshot values with datetimes as epoch ms, for JSON columns."""
    values = session_to_row_values(session)
    values["start_time"] = session.start_time
    values["last_activity"] = session.last_activity
    values["session_id"] = session.session_id
    return values


class EventWriter:
    """
    Writes one batch of queued events.

    Behavior events are keyed by (session_id, timestamp, event_type) and
    experiment events by (session_id, experiment_id, timestamp, event_type).
    Keys already stored, or repeated within the batch, are skipped, so writing
    the same batch twice stores each event once.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def write_batch(self, batch_id: str, events: Sequence[QueuedEvent]) -> int:
        """Returns the number of rows inserted."""
        behavior = [e for e in events if isinstance(e, BehaviorEventCreate)]
        experiment = [e for e in events if isinstance(e, ExperimentEventCreate)]

        db = self.session_factory()
        try:
            inserted = self._write_behavior(db, batch_id, behavior)
            inserted += self._write_experiment(db, batch_id, experiment)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise errors.DurableWriteFailure(f"Batch {batch_id} could not be written: {e}") from e
        finally:
            db.close()

        skipped = len(events) - inserted
        if skipped:
            logger.info(f"Batch {batch_id}: skipped {skipped} already stored events")
        return inserted

    def _write_behavior(self, db, batch_id: str, events: List[BehaviorEventCreate]) -> int:
        if not events:
            return 0
        keys = {(e.session_id, ms_to_datetime(e.timestamp), e.type.value) for e in events}
        existing = set(map(tuple,
            db.query(BehaviorEvent.session_id, BehaviorEvent.timestamp, BehaviorEvent.event_type)
            .filter(tuple_(BehaviorEvent.session_id, BehaviorEvent.timestamp, BehaviorEvent.event_type).in_(list(keys)))
            .all()
        ))

        inserted = 0
        for event in events:
            key = (event.session_id, ms_to_datetime(event.timestamp), event.type.value)
            if key in existing:
                continue
            existing.add(key)
            device_type = event.data.get("deviceType")
            db.add(BehaviorEvent(
                session_id=event.session_id,
                event_type=event.type.value,
                event_data=event.data,
                page_slug=event.page_slug,
                timestamp=key[1],
                user_id=event.user_id,
                device_type=device_type if isinstance(device_type, str) else None,
                batch_id=batch_id,
            ))
            inserted += 1
        return inserted

    def _write_experiment(self, db, batch_id: str, events: List[ExperimentEventCreate]) -> int:
        if not events:
            return 0
        keys = {
            (e.session_id, e.experiment_id, ms_to_datetime(e.timestamp), e.event_type)
            for e in events
        }
        existing = set(map(tuple,
            db.query(
                ExperimentEvent.session_id, ExperimentEvent.experiment_id,
                ExperimentEvent.timestamp, ExperimentEvent.event_type,
            )
            .filter(tuple_(
                ExperimentEvent.session_id, ExperimentEvent.experiment_id,
                ExperimentEvent.timestamp, ExperimentEvent.event_type,
            ).in_(list(keys)))
            .all()
        ))

        inserted = 0
        for event in events:
            key = (event.session_id, event.experiment_id, ms_to_datetime(event.timestamp), event.event_type)
            if key in existing:
                continue
            existing.add(key)
            db.add(ExperimentEvent(
                session_id=event.session_id,
                experiment_id=event.experiment_id,
                variant_id=event.variant_id,
                event_type=event.event_type,
                event_value=event.event_value,
                page_slug=event.page_slug,
                timestamp=key[2],
                user_id=event.user_id,
                device_type=event.device_type,
                details=event.metadata,
                batch_id=batch_id,
            ))
            inserted += 1
        return inserted


class BatchProcessor:
    """
    Post-flush processing for a written batch.

    Recomputes the batch's counts from the stored rows and replaces the
    BatchMetric row, so processing the same batch id again gives the same result.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def process(self, batch_id: str) -> Optional[BatchMetric]:
        db = self.session_factory()
        try:
            behavior_rows = db.query(BehaviorEvent).filter(BehaviorEvent.batch_id == batch_id).all()
            experiment_rows = db.query(ExperimentEvent).filter(ExperimentEvent.batch_id == batch_id).all()
            if not behavior_rows and not experiment_rows:
                logger.debug(f"Batch {batch_id} has no stored rows; nothing to process")
                return None

            counts = Counter(r.event_type for r in behavior_rows)
            counts.update(f"experiment:{r.event_type}" for r in experiment_rows)
            session_id = (behavior_rows or experiment_rows)[0].session_id

            metric = db.get(BatchMetric, batch_id)
            if metric is None:
                metric = BatchMetric(batch_id=batch_id, session_id=session_id)
                db.add(metric)
            metric.session_id = session_id
            metric.event_count = sum(counts.values())
            metric.counts_by_type = dict(sorted(counts.items()))

            for row in behavior_rows:
                row.is_processed = True

            db.commit()
            logger.info(f"Processed batch {batch_id}: {metric.event_count} events")
            return metric
        except SQLAlchemyError as e:
            db.rollback()
            raise errors.DurableWriteFailure(f"Batch {batch_id} could not be processed: {e}") from e
        finally:
            db.close()
