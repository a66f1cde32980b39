"""
Analytics endpoints (admin).

Reports are computed from stored events only; events still waiting in the
batcher appear once their batch is flushed.
"""

from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from datetime import datetime

from behavior_engine.auth import verify_token
from behavior_engine.schemas import (
    BehaviorHeatmap,
    BehaviorRollup,
    ConversionFlows,
    ExperimentAnalytics,
    ExperimentEventOut,
    UserInsights,
)
from behavior_engine.service import EngagementService, get_service

router = APIRouter(
    tags=["analytics"],
    dependencies=[Depends(verify_token)]
)


@router.get("/experiments/{experiment_id}/analytics", response_model=ExperimentAnalytics)
async def get_experiment_analytics(
    experiment_id: int,
    start_date: Optional[datetime] = Query(None, description="Only events at or after this time"),
    end_date: Optional[datetime] = Query(None, description="Only events at or before this time"),
    event_type: Optional[str] = Query(None, description="impression, click, conversion or bounce"),
    device_type: Optional[str] = Query(None, description="Filter by device type"),
    variant_id: Optional[int] = Query(None, description="Restrict the report to one variant"),
    service: EngagementService = Depends(get_service)
):
    """
    Per-variant performance for an experiment.

    For each variant: impressions, clicks, conversions, bounces, click-through
    rate and conversion rate (both relative to impressions, 0 without
    impressions). The summary adds totals and the variant with the best
    conversion rate.
    """
    return service.analytics.experiment_analytics(
        experiment_id,
        start=start_date,
        end=end_date,
        event_type=event_type,
        device_type=device_type,
        variant_id=variant_id,
    )


@router.get("/analytics/events", response_model=BehaviorRollup)
async def get_behavior_analytics(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    event_type: Optional[str] = Query(None, description="Filter by behavior event type"),
    device_type: Optional[str] = Query(None, description="Filter by device type"),
    session_id: Optional[str] = Query(None, description="Restrict to one session"),
    service: EngagementService = Depends(get_service)
):
    """Behavior event counts by type, day and device, plus the segment mix of stored sessions."""
    return service.analytics.behavior_rollup(
        start=start_date,
        end=end_date,
        event_type=event_type,
        device_type=device_type,
        session_id=session_id,
    )


@router.get("/experiments/{experiment_id}/events", response_model=List[ExperimentEventOut])
async def get_experiment_events(
    experiment_id: int,
    start_date: Optional[datetime] = Query(None, description="Only events at or after this time"),
    end_date: Optional[datetime] = Query(None, description="Only events at or before this time"),
    limit: int = Query(1000, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    service: EngagementService = Depends(get_service)
):
    """Raw stored events of an experiment in time order, for detailed analysis."""
    events = service.analytics.experiment_events(
        experiment_id, start=start_date, end=end_date, limit=limit, offset=offset
    )
    return [ExperimentEventOut.model_validate(e) for e in events]


@router.get("/analytics/user-insights", response_model=UserInsights)
async def get_user_insights(service: EngagementService = Depends(get_service)):
    """
    Session statistics for the admin dashboard.

    Total sessions, average time on site (ms), page views and interactions per
    session, and how sessions are distributed over segments. Merged-away
    sessions are not counted.
    """
    return service.analytics.user_insights()


@router.get("/analytics/heatmap", response_model=BehaviorHeatmap)
async def get_behavior_heatmap(
    timeframe: str = Query("7d", description="1d, 7d or 30d"),
    service: EngagementService = Depends(get_service)
):
    """Behavior event counts per page and event type over the timeframe."""
    return service.analytics.behavior_heatmap(timeframe)


@router.get("/analytics/conversion-flows", response_model=ConversionFlows)
async def get_conversion_flows(
    limit: int = Query(100, ge=1, le=1000),
    service: EngagementService = Depends(get_service)
):
    """Per-session event counts with first and last event time, busiest sessions first."""
    return service.analytics.conversion_flows(limit=limit)
