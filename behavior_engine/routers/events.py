"""
Behavior event ingestion endpoints.

Events update the in-memory session right away and are written to storage in
batches, so both routes answer 202 Accepted.
"""

from fastapi import APIRouter, Depends, status
import logging
import uuid

from behavior_engine import errors
from behavior_engine.schemas import (
    BehaviorEventCreate,
    EventAccepted,
    EventBatchCreate,
    EventBatchResponse,
    RejectedEvent,
    parse_event,
)
from behavior_engine.service import EngagementService, get_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/events",
    tags=["events"]
)


@router.post("", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def record_event(
    event: BehaviorEventCreate,
    service: EngagementService = Depends(get_service)
):
    """
    Record a single behavior event.

    The session is created on its first event. The response carries the
    session's segment after the event was applied.
    """
    session = service.ingest(event)
    return EventAccepted(session_id=session.session_id, segment=session.segment.value)


@router.post("/batch", response_model=EventBatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def record_events_batch(
    batch_data: EventBatchCreate,
    service: EngagementService = Depends(get_service)
):
    """
    Record multiple events in a single request.

    Each element is validated on its own: invalid elements are reported in
    `rejected` by index and the rest are accepted. Limited to 1000 events per
    request.
    """
    batch_id = str(uuid.uuid4())
    accepted = 0
    rejected = []

    for index, payload in enumerate(batch_data.events):
        try:
            service.ingest(parse_event(payload))
        except errors.ValidationError as e:
            rejected.append(RejectedEvent(index=index, error=e.message, details=e.details))
            continue
        accepted += 1

    if rejected:
        logger.info(f"Event batch {batch_id}: accepted {accepted}, rejected {len(rejected)}")
    return EventBatchResponse(accepted_count=accepted, rejected=rejected, batch_id=batch_id)
