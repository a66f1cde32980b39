"""
Session endpoints: upsert, snapshot, merge, reset, assignments and personalization.
"""

from fastapi import APIRouter, Depends, status

from behavior_engine import errors
from behavior_engine.schemas import (
    AssignmentOut,
    SessionMergeRequest,
    SessionResponse,
    SessionUpsert,
    VariantResponse,
)
from behavior_engine.segments import Segment, derive_flags, recommend
from behavior_engine.service import EngagementService, get_service
from behavior_engine.sessions import Session

router = APIRouter(tags=["sessions"])


def to_response(session: Session) -> SessionResponse:
    return SessionResponse.model_validate(session.snapshot())


def get_session_or_404(service: EngagementService, session_id: str) -> Session:
    session = service.store.get(session_id)
    if session is None:
        raise errors.SessionNotFound(f"Session {session_id} not found")
    return session


@router.post("/sessions", response_model=SessionResponse)
async def upsert_session(
    body: SessionUpsert,
    service: EngagementService = Depends(get_service)
):
    """
    Create a session, or update its identity and device details.

    Sending the same body twice leaves the session unchanged.
    """
    session = service.store.upsert(
        body.session_id,
        user_id=body.user_id,
        device_info=body.device_info,
        location=body.location,
    )
    return to_response(session)


@router.post("/sessions/merge", response_model=SessionResponse)
async def merge_sessions(
    body: SessionMergeRequest,
    service: EngagementService = Depends(get_service)
):
    """
    Merge the secondary session into the primary after identity resolution
    (same email, phone or device fingerprint).

    Returns the merged primary session. The secondary stays readable as an
    inactive session pointing at the primary, and its later events are applied
    to the primary.
    """
    merged = service.store.merge(
        body.primary_session_id,
        body.secondary_session_id,
        reason=body.reason,
        confidence=body.confidence,
    )
    return to_response(merged)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    service: EngagementService = Depends(get_service)
):
    """Current snapshot of a session. Expired sessions are reported as not found."""
    return to_response(get_session_or_404(service, session_id))


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset_session(
    session_id: str,
    service: EngagementService = Depends(get_service)
):
    """Clear a session's counters and histories, keeping its id and experiment assignments."""
    get_session_or_404(service, session_id)
    return to_response(service.store.reset(session_id))


@router.get("/sessions/{session_id}/experiments")
async def get_session_experiments(
    session_id: str,
    service: EngagementService = Depends(get_service)
):
    """Every experiment the session has been assigned to, with the variant it got."""
    assignments = service.assigner.session_assignments(session_id)
    return {
        "sessionId": session_id,
        "assignments": [
            {
                "assignment": AssignmentOut.model_validate(a),
                "variant": VariantResponse.model_validate(a.variant),
            }
            for a in assignments
        ],
    }


@router.get("/personalization/{session_id}", status_code=status.HTTP_200_OK)
async def get_personalization(
    session_id: str,
    service: EngagementService = Depends(get_service)
):
    """
    Content recommendations for a session: primary CTA, emotion theme, content
    style, emotions and offers, plus the personalization flags.

    Unknown sessions get the new visitor defaults.
    """
    session = service.store.get(session_id)
    if session is None:
        segment, categories, emotions = Segment.NEW_VISITOR, [], []
        flags = derive_flags(segment)
    else:
        segment = session.segment
        categories = sorted(session.categories)
        emotions = sorted(session.emotions)
        flags = dict(session.personalization_flags)

    recommendations = recommend(segment, categories, emotions)
    recommendations["personalizationFlags"] = flags
    recommendations["sessionId"] = session_id
    return recommendations
