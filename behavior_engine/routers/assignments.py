"""
Assignment and experiment tracking endpoints.

Called by the site on page render, so these routes are public: a session id is
all a visitor has.
"""

from fastapi import APIRouter, Depends, status
import logging
import uuid

from behavior_engine import errors
from behavior_engine.schemas import (
    AssignRequest,
    AssignmentOut,
    AssignmentResponse,
    EventBatchResponse,
    ExperimentEventBatchCreate,
    ExperimentEventCreate,
    RejectedEvent,
    VariantResponse,
    parse_experiment_event,
)
from behavior_engine.service import EngagementService, get_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/experiments",
    tags=["assignments"]
)


@router.post("/track", status_code=status.HTTP_202_ACCEPTED)
async def track_experiment_event(
    event: ExperimentEventCreate,
    service: EngagementService = Depends(get_service)
):
    """
    Record a click, conversion or bounce for a variant.

    The event is queued for batched storage; it shows up in analytics once its
    batch is flushed.
    """
    service.assigner.track(event)
    return {"accepted": True}


@router.post("/track-bulk", response_model=EventBatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def track_experiment_events_bulk(
    batch_data: ExperimentEventBatchCreate,
    service: EngagementService = Depends(get_service)
):
    """
    Track many experiment events in one request.

    Elements are checked one by one: malformed events, unknown experiments and
    variants from another experiment are reported in `rejected` by index, the
    rest are queued. Limited to 1000 events per request.
    """
    batch_id = str(uuid.uuid4())
    accepted = 0
    rejected = []

    for index, payload in enumerate(batch_data.events):
        try:
            service.assigner.track(parse_experiment_event(payload))
        except (errors.ValidationError, errors.ExperimentNotFound) as e:
            rejected.append(RejectedEvent(index=index, error=e.message, details=e.details))
            continue
        accepted += 1

    if rejected:
        logger.info(f"Experiment event batch {batch_id}: accepted {accepted}, rejected {len(rejected)}")
    return EventBatchResponse(accepted_count=accepted, rejected=rejected, batch_id=batch_id)


@router.post("/{experiment_id}/assign", response_model=AssignmentResponse)
async def assign_variant(
    experiment_id: int,
    request: AssignRequest,
    service: EngagementService = Depends(get_service)
):
    """
    Get a session's variant for an experiment.

    **Idempotency Guarantee**: Once a session receives a variant, all subsequent
    calls return the same variant.

    Behavior:
    - Already assigned: returns the stored assignment (isNewAssignment=false)
    - Not assigned, experiment active and session inside the traffic allocation:
      creates the assignment (isNewAssignment=true) and records an impression
    - Experiment paused, draft, completed or outside its dates, or session outside
      the traffic allocation: eligible=false with a reason, nothing is stored
    """
    result = service.assigner.assign(
        request.session_id,
        experiment_id,
        user_id=request.user_id,
        device_fingerprint=request.device_fingerprint,
    )
    return AssignmentResponse(
        assignment=AssignmentOut.model_validate(result.assignment) if result.assignment else None,
        variant=VariantResponse.model_validate(result.variant) if result.variant else None,
        eligible=result.eligible,
        is_new_assignment=result.is_new,
        reason=result.reason,
    )
