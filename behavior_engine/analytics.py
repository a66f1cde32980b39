"""
Read-side aggregation over stored events.

Everything here reads whatever has been flushed so far; events still buffered in
the batcher are not counted yet.
"""

from datetime import datetime, timedelta
import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from behavior_engine import errors
from behavior_engine.models import BehaviorEvent, Experiment, ExperimentEvent, UserSession
from behavior_engine.schemas import (
    AnalyticsSummary,
    BehaviorHeatmap,
    BehaviorRollup,
    ConversionFlows,
    CountByKey,
    ExperimentAnalytics,
    HeatmapCell,
    SessionFlow,
    SessionStats,
    UserInsights,
    VariantMetrics,
)

logger = logging.getLogger(__name__)

EXPERIMENT_EVENT_TYPES = ("impression", "click", "conversion", "bounce")

HEATMAP_TIMEFRAMES = {"1d": 1, "7d": 7, "30d": 30}


def rate(numerator: int, denominator: int) -> float:
    """Fraction rounded to 4 places; 0 when there is nothing to divide by."""
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def _average(value) -> float:
    return round(float(value), 2) if value is not None else 0.0


class AnalyticsAggregator:
    def __init__(self, session_factory: sessionmaker, clock=datetime.utcnow):
        self.session_factory = session_factory
        self._clock = clock

    def experiment_analytics(
        self,
        experiment_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None,
        device_type: Optional[str] = None,
        variant_id: Optional[int] = None,
    ) -> ExperimentAnalytics:
        """
        Per-variant impressions, clicks, conversions and bounces for an experiment.

        Rates are relative to impressions. The top performing variant is the one
        with the highest conversion rate (ties go to the lower id); there is none
        until some variant has a conversion.
        """
        db = self.session_factory()
        try:
            experiment = db.get(Experiment, experiment_id)
            if experiment is None:
                raise errors.ExperimentNotFound(f"Experiment {experiment_id} not found")

            query = db.query(
                ExperimentEvent.variant_id,
                ExperimentEvent.event_type,
                func.count(ExperimentEvent.id).label("count"),
            ).filter(ExperimentEvent.experiment_id == experiment_id)
            if start is not None:
                query = query.filter(ExperimentEvent.timestamp >= start)
            if end is not None:
                query = query.filter(ExperimentEvent.timestamp <= end)
            if event_type:
                query = query.filter(ExperimentEvent.event_type == event_type)
            if device_type:
                query = query.filter(ExperimentEvent.device_type == device_type)
            if variant_id is not None:
                query = query.filter(ExperimentEvent.variant_id == variant_id)

            counts = {}
            for row in query.group_by(ExperimentEvent.variant_id, ExperimentEvent.event_type).all():
                counts[(row.variant_id, row.event_type)] = row.count

            variants = [v for v in experiment.variants if variant_id is None or v.id == variant_id]
            metrics = []
            for variant in sorted(variants, key=lambda v: v.id):
                impressions = counts.get((variant.id, "impression"), 0)
                clicks = counts.get((variant.id, "click"), 0)
                conversions = counts.get((variant.id, "conversion"), 0)
                metrics.append(VariantMetrics(
                    variant_id=variant.id,
                    variant_slug=variant.slug,
                    variant_name=variant.name,
                    is_control=variant.is_control,
                    impressions=impressions,
                    clicks=clicks,
                    conversions=conversions,
                    bounces=counts.get((variant.id, "bounce"), 0),
                    click_through_rate=rate(clicks, impressions),
                    conversion_rate=rate(conversions, impressions),
                ))

            total_impressions = sum(m.impressions for m in metrics)
            total_clicks = sum(m.clicks for m in metrics)
            total_conversions = sum(m.conversions for m in metrics)

            top = None
            ranked = sorted(metrics, key=lambda m: (-m.conversion_rate, m.variant_id))
            if ranked and ranked[0].conversion_rate > 0:
                top = ranked[0].variant_slug

            return ExperimentAnalytics(
                experiment_id=experiment.id,
                experiment_slug=experiment.slug,
                experiment_status=experiment.status,
                analysis_start=start,
                analysis_end=end,
                variants=metrics,
                summary=AnalyticsSummary(
                    total_impressions=total_impressions,
                    total_clicks=total_clicks,
                    total_conversions=total_conversions,
                    total_bounces=sum(m.bounces for m in metrics),
                    click_through_rate=rate(total_clicks, total_impressions),
                    conversion_rate=rate(total_conversions, total_impressions),
                    top_performing_variant=top,
                ),
            )
        finally:
            db.close()

    def behavior_rollup(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[str] = None,
        device_type: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> BehaviorRollup:
        """Behavior event counts by type, day and device, plus the segment mix of stored sessions."""
        db = self.session_factory()
        try:
            conditions = []
            if start is not None:
                conditions.append(BehaviorEvent.timestamp >= start)
            if end is not None:
                conditions.append(BehaviorEvent.timestamp <= end)
            if event_type:
                conditions.append(BehaviorEvent.event_type == event_type)
            if device_type:
                conditions.append(BehaviorEvent.device_type == device_type)
            if session_id:
                conditions.append(BehaviorEvent.session_id == session_id)

            total = db.query(func.count(BehaviorEvent.id)).filter(*conditions).scalar() or 0
            unique_sessions = (
                db.query(func.count(func.distinct(BehaviorEvent.session_id))).filter(*conditions).scalar() or 0
            )

            def grouped(column):
                rows = (
                    db.query(column.label("key"), func.count(BehaviorEvent.id).label("count"))
                    .filter(*conditions)
                    .group_by(column)
                    .order_by(column)
                    .all()
                )
                return [CountByKey(key=str(r.key) if r.key is not None else "unknown", count=r.count) for r in rows]

            segment_query = db.query(UserSession.segment, func.count(UserSession.id).label("count")).filter(
                UserSession.is_active.is_(True)
            )
            if session_id:
                segment_query = segment_query.filter(UserSession.session_id == session_id)
            segments = [
                CountByKey(key=r.segment, count=r.count)
                for r in segment_query.group_by(UserSession.segment).order_by(UserSession.segment).all()
            ]

            return BehaviorRollup(
                total_events=total,
                unique_sessions=unique_sessions,
                events_by_type=grouped(BehaviorEvent.event_type),
                events_by_day=grouped(func.date(BehaviorEvent.timestamp)),
                events_by_device=grouped(BehaviorEvent.device_type),
                segments=segments,
                filters={
                    "start": start.isoformat() if start else None,
                    "end": end.isoformat() if end else None,
                    "eventType": event_type,
                    "deviceType": device_type,
                    "sessionId": session_id,
                },
            )
        finally:
            db.close()

    def experiment_events(
        self,
        experiment_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> List[ExperimentEvent]:
        """Stored events of an experiment in time order, optionally within [start, end]."""
        db = self.session_factory()
        try:
            if db.get(Experiment, experiment_id) is None:
                raise errors.ExperimentNotFound(f"Experiment {experiment_id} not found")
            query = db.query(ExperimentEvent).filter(ExperimentEvent.experiment_id == experiment_id)
            if start is not None:
                query = query.filter(ExperimentEvent.timestamp >= start)
            if end is not None:
                query = query.filter(ExperimentEvent.timestamp <= end)
            return (
                query.order_by(ExperimentEvent.timestamp, ExperimentEvent.id)
                .offset(offset)
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    def user_insights(self) -> UserInsights:
        """Session count, engagement averages and segment distribution of stored sessions."""
        db = self.session_factory()
        try:
            active = UserSession.is_active.is_(True)
            stats = db.query(
                func.count(UserSession.id).label("total"),
                func.avg(UserSession.total_time_on_site).label("time_on_site"),
                func.avg(UserSession.page_views).label("page_views"),
                func.avg(UserSession.interactions).label("interactions"),
            ).filter(active).one()

            distribution = (
                db.query(UserSession.segment, func.count(UserSession.id).label("count"))
                .filter(active)
                .group_by(UserSession.segment)
                .order_by(func.count(UserSession.id).desc(), UserSession.segment)
                .all()
            )
            return UserInsights(
                session_stats=SessionStats(
                    total_sessions=stats.total or 0,
                    avg_time_on_site=_average(stats.time_on_site),
                    avg_page_views=_average(stats.page_views),
                    avg_interactions=_average(stats.interactions),
                ),
                segment_distribution=[CountByKey(key=r.segment, count=r.count) for r in distribution],
            )
        finally:
            db.close()

    def behavior_heatmap(self, timeframe: str = "7d") -> BehaviorHeatmap:
        """Behavior event counts per (page, event type) over the last 1, 7 or 30 days."""
        if timeframe not in HEATMAP_TIMEFRAMES:
            raise errors.ValidationError(
                f"Unknown timeframe '{timeframe}', expected one of {', '.join(HEATMAP_TIMEFRAMES)}"
            )
        since = self._clock() - timedelta(days=HEATMAP_TIMEFRAMES[timeframe])

        db = self.session_factory()
        try:
            rows = (
                db.query(
                    BehaviorEvent.page_slug,
                    BehaviorEvent.event_type,
                    func.count(BehaviorEvent.id).label("count"),
                )
                .filter(BehaviorEvent.timestamp >= since)
                .group_by(BehaviorEvent.page_slug, BehaviorEvent.event_type)
                .order_by(func.count(BehaviorEvent.id).desc(), BehaviorEvent.page_slug, BehaviorEvent.event_type)
                .all()
            )
            cells = [
                HeatmapCell(page_slug=r.page_slug or "unknown", event_type=r.event_type, count=r.count)
                for r in rows
            ]
            return BehaviorHeatmap(timeframe=timeframe, since=since, heatmap_data=cells)
        finally:
            db.close()

    def conversion_flows(self, limit: int = 100) -> ConversionFlows:
        """Per-session event counts and first/last event times, busiest sessions first."""
        db = self.session_factory()
        try:
            event_count = func.count(BehaviorEvent.id)
            rows = (
                db.query(
                    BehaviorEvent.session_id,
                    event_count.label("event_count"),
                    func.min(BehaviorEvent.timestamp).label("first_event"),
                    func.max(BehaviorEvent.timestamp).label("last_event"),
                )
                .group_by(BehaviorEvent.session_id)
                .order_by(event_count.desc(), BehaviorEvent.session_id)
                .limit(limit)
                .all()
            )
            return ConversionFlows(user_flows=[
                SessionFlow(
                    session_id=r.session_id,
                    event_count=r.event_count,
                    first_event=r.first_event,
                    last_event=r.last_event,
                )
                for r in rows
            ])
        finally:
            db.close()
