"""
SQLAlchemy ORM models for the behavior engine.

Schema Design Decisions:
- Sessions hold a durable snapshot of the in-memory session (counters, preference sets,
  quiz results, affiliate clicks, segment and the assignment cache)
- behavior_events and experiment_events are append-only ledgers; unique constraints on the
  dedupe key make at-least-once batch delivery idempotent
- Assignments use a composite unique constraint on (session_id, experiment_id) so the first
  writer wins and every later lookup returns the same variant
- Merges never delete a session; the secondary is tombstoned and the merge is recorded
"""

from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime, Text, ForeignKey, Boolean,
    UniqueConstraint, Index, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from behavior_engine.database import Base


class ExperimentStatus(str, enum.Enum):
    """Lifecycle states for experiments."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExperimentType(str, enum.Enum):
    """What an experiment varies."""
    PAGE = "page"
    OFFER = "offer"
    CTA = "cta"
    QUIZ = "quiz"
    CONTENT = "content"


class UserSession(Base):
    """
    Durable snapshot of a visitor session.

    The live copy is held by the in-memory session store; this row is rewritten
    after every mutation and read back when a session is not in memory.
    """
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False, unique=True)
    user_id = Column(String(255), nullable=True)

    start_time = Column(DateTime, nullable=False)
    last_activity = Column(DateTime, nullable=False)

    total_time_on_site = Column(BigInteger, default=0, nullable=False)
    page_views = Column(Integer, default=0, nullable=False)
    interactions = Column(Integer, default=0, nullable=False)

    device_info = Column(JSON, nullable=True)
    location = Column(JSON, nullable=True)
    preferences = Column(JSON, nullable=True)
    quiz_results = Column(JSON, nullable=True)
    affiliate_clicks = Column(JSON, nullable=True)
    assignments = Column(JSON, nullable=True)

    segment = Column(String(50), default="new_visitor", nullable=False)
    personalization_flags = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    merged_into = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_user_sessions_segment", "segment"),
    )


class BehaviorEvent(Base):
    """
    A single visitor behavior event.

    Rows are only ever inserted. The (session_id, timestamp, event_type) triple is the
    dedupe key: a batch retried after a partial failure cannot create duplicates.
    """
    __tablename__ = "behavior_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=True)
    page_slug = Column(String(255), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    user_id = Column(String(255), nullable=True)
    device_type = Column(String(50), nullable=True)

    batch_id = Column(String(36), nullable=True)
    is_processed = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "timestamp", "event_type", name="uq_behavior_event_dedupe"),
        Index("ix_behavior_events_type_timestamp", "event_type", "timestamp"),
        Index("ix_behavior_events_timestamp", "timestamp"),
        Index("ix_behavior_events_batch_id", "batch_id"),
    )


class Experiment(Base):
    """
    Represents an A/B test.

    traffic_allocation is the share of all sessions eligible for the experiment;
    variant traffic_percentage splits the eligible share.
    """
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(SQLEnum(ExperimentType), nullable=False)
    target_entity = Column(String(255), nullable=False)
    traffic_allocation = Column(Integer, default=100, nullable=False)
    status = Column(SQLEnum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    created_by = Column(String(255), nullable=True)
    config = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    variants = relationship(
        "ExperimentVariant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="ExperimentVariant.id",
    )
    assignments = relationship("UserExperimentAssignment", back_populates="experiment", cascade="all, delete-orphan")


class ExperimentVariant(Base):
    """
    A variant within an experiment (e.g., "control", "treatment_a").

    Traffic is specified as a percentage (0-100) of the experiment's eligible traffic.
    The configuration payload is opaque to the assignment engine.
    """
    __tablename__ = "experiment_variants"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    slug = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    traffic_percentage = Column(Integer, nullable=False)
    configuration = Column(JSON, nullable=False, default=dict)
    is_control = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    experiment = relationship("Experiment", back_populates="variants")
    assignments = relationship("UserExperimentAssignment", back_populates="variant")

    __table_args__ = (
        UniqueConstraint("experiment_id", "slug", name="uq_variant_slug_per_experiment"),
        Index("ix_experiment_variants_experiment_id", "experiment_id"),
    )


class UserExperimentAssignment(Base):
    """
    Records a session's assignment to a specific variant.

    Key properties:
    - Composite unique constraint ensures one assignment per session per experiment
    - Rows are never updated; the first assignment is permanent for the pair
    """
    __tablename__ = "user_experiment_assignments"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False)

    assigned_at = Column(DateTime, default=func.now(), nullable=False)

    user_id = Column(String(255), nullable=True)
    device_fingerprint = Column(String(255), nullable=True)

    experiment = relationship("Experiment", back_populates="assignments")
    variant = relationship("ExperimentVariant", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("session_id", "experiment_id", name="uq_session_experiment_assignment"),
        Index("ix_assignments_session_id", "session_id"),
        Index("ix_assignments_variant_id", "variant_id"),
    )


class ExperimentEvent(Base):
    """Impression, click, conversion or bounce recorded against an assignment."""
    __tablename__ = "experiment_events"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(255), nullable=False)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant_id = Column(Integer, ForeignKey("experiment_variants.id", ondelete="CASCADE"), nullable=False)

    event_type = Column(String(50), nullable=False)
    event_value = Column(String(255), nullable=True)
    page_slug = Column(String(255), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    user_id = Column(String(255), nullable=True)
    device_type = Column(String(50), nullable=True)
    details = Column("metadata", JSON, nullable=True)

    batch_id = Column(String(36), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "session_id", "experiment_id", "timestamp", "event_type",
            name="uq_experiment_event_dedupe",
        ),
        Index("ix_experiment_events_experiment_variant", "experiment_id", "variant_id"),
        Index("ix_experiment_events_timestamp", "timestamp"),
    )


class SessionMergeRecord(Base):
    """Tombstone left behind when one session is merged into another."""
    __tablename__ = "session_merge_history"

    id = Column(Integer, primary_key=True, index=True)
    primary_session_id = Column(String(255), nullable=False, index=True)
    secondary_session_id = Column(String(255), nullable=False, unique=True)
    reason = Column(String(100), nullable=False)
    confidence = Column(Float, nullable=False)
    merge_data = Column(JSON, nullable=True)
    merged_at = Column(DateTime, default=func.now(), nullable=False)


class BatchMetric(Base):
    """Derived per-batch counts written by the post-flush processing step."""
    __tablename__ = "batch_metrics"

    batch_id = Column(String(36), primary_key=True)
    session_id = Column(String(255), nullable=False, index=True)
    event_count = Column(Integer, default=0, nullable=False)
    counts_by_type = Column(JSON, nullable=False, default=dict)
    processed_at = Column(DateTime, default=func.now(), nullable=False)
