"""
Pydantic schemas for request validation and response serialization.

Organized by domain:
- Behavior event schemas
- Session schemas
- Variant / experiment schemas
- Assignment and experiment event schemas
- Analytics schemas

Wire format is camelCase (sessionId, pageSlug, ...); Python attributes are snake_case.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from enum import Enum

from behavior_engine import errors
from behavior_engine.models import ExperimentStatus, ExperimentType
from behavior_engine.timeutil import now_ms

SESSION_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.:\-]{5,127}$"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase field names."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True



class BehaviorEventType(str, Enum):
    """Closed set of behavior events a client may send."""
    PAGE_VISIT = "page_visit"
    SCROLL_DEPTH = "scroll_depth"
    QUIZ_ANSWER = "quiz_answer"
    AFFILIATE_CLICK = "affiliate_click"
    TIME_ON_SITE = "time_on_site"
    CTA_CLICK = "cta_click"
    CONTENT_ENGAGEMENT = "content_engagement"


class BehaviorEventCreate(CamelModel):
    """Schema for recording a behavior event."""
    session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    type: BehaviorEventType
    timestamp: int = Field(default_factory=now_ms, ge=0, description="Epoch milliseconds")
    page_slug: Optional[str] = Field(None, max_length=255)
    user_id: Optional[str] = Field(None, max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def validate_payload(self):
        """Reject payload fields the session model would misread."""
        data = self.data
        if self.type == BehaviorEventType.TIME_ON_SITE and "timeSpent" in data:
            if not _is_number(data["timeSpent"]) or data["timeSpent"] < 0:
                raise ValueError("data.timeSpent must be a non-negative number of milliseconds")
        if self.type == BehaviorEventType.QUIZ_ANSWER:
            if "quizId" in data and not isinstance(data["quizId"], (str, int)):
                raise ValueError("data.quizId must be a string")
            if "score" in data and not _is_number(data["score"]):
                raise ValueError("data.score must be a number")
            if "answers" in data and not isinstance(data["answers"], dict):
                raise ValueError("data.answers must be an object")
        if self.type == BehaviorEventType.AFFILIATE_CLICK:
            if "offerId" in data and not isinstance(data["offerId"], (str, int)):
                raise ValueError("data.offerId must be a string")
            if "converted" in data and not isinstance(data["converted"], bool):
                raise ValueError("data.converted must be a boolean")
        return self


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class EventAccepted(CamelModel):
    accepted: bool = True
    session_id: str
    segment: str


class EventBatchCreate(BaseModel):
    """
    Multiple events in one request. Elements are validated one by one so a single
    bad element does not reject the rest.
    """
    events: List[Dict[str, Any]] = Field(..., min_length=1, max_length=1000)


class RejectedEvent(CamelModel):
    index: int
    error: str
    details: Optional[Any] = None


class EventBatchResponse(CamelModel):
    accepted_count: int
    rejected: List[RejectedEvent] = []
    batch_id: str


def parse_event(payload: Dict[str, Any]) -> BehaviorEventCreate:
    """Validate a raw event payload, raising the engine's ValidationError on failure."""
    try:
        return BehaviorEventCreate.model_validate(payload)
    except PydanticValidationError as e:
        raise errors.ValidationError(
            "Invalid behavior event",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        )



class QuizResult(CamelModel):
    quiz_id: str
    answers: Dict[str, Any] = {}
    score: float = 0
    result: str = ""
    timestamp: int


class AffiliateClick(CamelModel):
    offer_id: str
    offer_slug: Optional[str] = None
    timestamp: int
    converted: bool = False


class Preferences(CamelModel):
    emotions: List[str] = []
    categories: List[str] = []
    interactive_modules: List[str] = []


class SessionUpsert(CamelModel):
    """Create or update a session. Repeating the same request is a no-op."""
    session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    user_id: Optional[str] = Field(None, max_length=255)
    device_info: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None


class SessionResponse(CamelModel):
    """Point-in-time snapshot of a session."""
    session_id: str
    user_id: Optional[str] = None
    start_time: int
    last_activity: int
    total_time_on_site: int
    page_views: int
    interactions: int
    preferences: Preferences
    quiz_results: List[QuizResult]
    affiliate_clicks: List[AffiliateClick]
    behaviors: List[BehaviorEventCreate]
    segment: str
    personalization_flags: Dict[str, bool]
    assignments: Dict[str, int]
    device_info: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    is_active: bool
    merged_into: Optional[str] = None


class SessionMergeRequest(CamelModel):
    primary_session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    secondary_session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    reason: str = Field(..., min_length=1, max_length=100, description="e.g. 'email', 'phone', 'fingerprint'")
    confidence: float = Field(..., ge=0, le=100)



class VariantBase(CamelModel):
    """Base variant properties."""
    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    traffic_percentage: int = Field(..., ge=0, le=100, description="Traffic percentage (0-100)")
    configuration: Dict[str, Any] = Field(default_factory=dict, description="Opaque variant configuration")
    is_control: bool = False


class VariantCreate(VariantBase):
    """Schema for creating a variant."""
    pass


class VariantResponse(VariantBase):
    """Schema for variant in responses."""
    id: int
    experiment_id: int
    is_active: bool


class ExperimentVariantCreate(VariantCreate):
    """Schema for adding a variant to an existing experiment."""
    experiment_id: int
    is_active: bool = True


class VariantUpdate(CamelModel):
    """Schema for updating a variant. Deactivated variants receive no new assignments."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    traffic_percentage: Optional[int] = Field(None, ge=0, le=100)
    configuration: Optional[Dict[str, Any]] = None
    is_control: Optional[bool] = None
    is_active: Optional[bool] = None


class ExperimentBase(CamelModel):
    """Base experiment properties."""
    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255, description="Experiment name")
    description: Optional[str] = Field(None, description="Experiment description")
    type: ExperimentType
    target_entity: str = Field(..., min_length=1, max_length=255, description="Page slug, offer id, ...")
    traffic_allocation: int = Field(100, ge=0, le=100, description="Share of all traffic eligible (0-100)")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ExperimentCreate(ExperimentBase):
    """Schema for creating an experiment with variants."""
    variants: List[VariantCreate] = Field(..., min_length=1)
    created_by: Optional[str] = None
    config: Optional[Dict[str, Any]] = None

    @field_validator("variants")
    @classmethod
    def validate_traffic_split(cls, variants: List[VariantCreate]) -> List[VariantCreate]:
        """Variant traffic may leave room for the control fallback but never exceed 100%."""
        total = sum(v.traffic_percentage for v in variants)
        if total > 100:
            raise ValueError(f"Variant traffic must sum to at most 100%, got {total}%")
        slugs = [v.slug for v in variants]
        if len(slugs) != len(set(slugs)):
            raise ValueError("Variant slugs must be unique within an experiment")
        return variants


class ExperimentUpdate(CamelModel):
    """Schema for updating an experiment."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[ExperimentStatus] = None
    traffic_allocation: Optional[int] = Field(None, ge=0, le=100)
    end_date: Optional[datetime] = None


class ExperimentResponse(ExperimentBase):
    """Schema for experiment in responses."""
    id: int
    status: ExperimentStatus
    created_at: datetime
    updated_at: datetime
    variants: List[VariantResponse] = []


class ExperimentListResponse(CamelModel):
    """Schema for listing experiments."""
    experiments: List[ExperimentResponse]
    total: int



class AssignRequest(CamelModel):
    session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    user_id: Optional[str] = Field(None, max_length=255)
    device_fingerprint: Optional[str] = Field(None, max_length=255)


class AssignmentOut(CamelModel):
    id: int
    session_id: str
    experiment_id: int
    variant_id: int
    assigned_at: datetime
    user_id: Optional[str] = None
    device_fingerprint: Optional[str] = None


class AssignmentResponse(CamelModel):
    """Response when getting/creating an assignment."""
    assignment: Optional[AssignmentOut] = None
    variant: Optional[VariantResponse] = None
    eligible: bool = True
    is_new_assignment: bool = Field(
        False, description="True if this is a new assignment, False if returning existing"
    )
    reason: Optional[str] = None


class ExperimentEventCreate(CamelModel):
    """Schema for tracking an experiment event."""
    session_id: str = Field(..., pattern=SESSION_ID_PATTERN)
    experiment_id: int
    variant_id: int
    event_type: Literal["impression", "click", "conversion", "bounce"]
    event_value: Optional[str] = Field(None, max_length=255)
    page_slug: Optional[str] = Field(None, max_length=255)
    timestamp: int = Field(default_factory=now_ms, ge=0)
    user_id: Optional[str] = Field(None, max_length=255)
    device_type: Optional[str] = Field(None, max_length=50)
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        frozen = True


class ExperimentEventBatchCreate(BaseModel):
    """Experiment events tracked in one request, validated one by one."""
    events: List[Dict[str, Any]] = Field(..., min_length=1, max_length=1000)


def parse_experiment_event(payload: Dict[str, Any]) -> ExperimentEventCreate:
    try:
        return ExperimentEventCreate.model_validate(payload)
    except PydanticValidationError as e:
        raise errors.ValidationError(
            "Invalid experiment event",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        )


class ExperimentEventOut(CamelModel):
    """A stored experiment event."""
    id: int
    session_id: str
    experiment_id: int
    variant_id: int
    event_type: str
    event_value: Optional[str] = None
    page_slug: Optional[str] = None
    timestamp: datetime
    user_id: Optional[str] = None
    device_type: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    batch_id: Optional[str] = None



class VariantMetrics(CamelModel):
    """Metrics for a single variant."""
    variant_id: int
    variant_slug: str
    variant_name: str
    is_control: bool
    impressions: int
    clicks: int
    conversions: int
    bounces: int
    click_through_rate: float = Field(description="clicks / impressions, 0 when no impressions")
    conversion_rate: float = Field(description="conversions / impressions, 0 when no impressions")


class AnalyticsSummary(CamelModel):
    total_impressions: int
    total_clicks: int
    total_conversions: int
    total_bounces: int
    click_through_rate: float
    conversion_rate: float
    top_performing_variant: Optional[str] = None


class ExperimentAnalytics(CamelModel):
    experiment_id: int
    experiment_slug: str
    experiment_status: ExperimentStatus
    analysis_start: Optional[datetime] = None
    analysis_end: Optional[datetime] = None
    variants: List[VariantMetrics]
    summary: AnalyticsSummary
    generated_at: datetime = Field(default_factory=datetime.utcnow)


class CountByKey(CamelModel):
    key: str
    count: int


class BehaviorRollup(CamelModel):
    total_events: int
    unique_sessions: int
    events_by_type: List[CountByKey]
    events_by_day: List[CountByKey]
    events_by_device: List[CountByKey]
    segments: List[CountByKey]
    filters: Dict[str, Any]
    generated_at: datetime = Field(default_factory=datetime.utcnow)


class SessionStats(CamelModel):
    total_sessions: int
    avg_time_on_site: float = Field(description="Milliseconds")
    avg_page_views: float
    avg_interactions: float


class UserInsights(CamelModel):
    """Engagement averages and segment mix over stored, unmerged sessions."""
    session_stats: SessionStats
    segment_distribution: List[CountByKey]
    generated_at: datetime = Field(default_factory=datetime.utcnow)


class HeatmapCell(CamelModel):
    page_slug: str
    event_type: str
    count: int


class BehaviorHeatmap(CamelModel):
    timeframe: str
    since: datetime
    heatmap_data: List[HeatmapCell]
    generated_at: datetime = Field(default_factory=datetime.utcnow)


class SessionFlow(CamelModel):
    session_id: str
    event_count: int
    first_event: datetime
    last_event: datetime


class ConversionFlows(CamelModel):
    user_flows: List[SessionFlow]
    generated_at: datetime = Field(default_factory=datetime.utcnow)
