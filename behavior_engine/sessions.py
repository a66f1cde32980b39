"""
In-memory session store.

Sessions are published copy-on-write: every mutation works on a private copy made
under the session's lock, re-runs segment classification, and then swaps the copy
into the store. A Session object handed to a caller is never modified afterwards,
so readers always see a consistent snapshot without taking a lock.

Mutations of one session are serialized by a per-session lock; different sessions
never contend beyond the short store-level lock that guards the map itself.
"""

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
import logging
import re
import threading
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Union

from behavior_engine import errors
from behavior_engine.schemas import (
    SESSION_ID_PATTERN,
    BehaviorEventCreate,
    BehaviorEventType,
    parse_event,
)
from behavior_engine.segments import (
    DEFAULT_THRESHOLDS,
    Segment,
    SegmentThresholds,
    SessionCounters,
    derive_flags,
    evaluate,
)
from behavior_engine.timeutil import now_ms

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(SESSION_ID_PATTERN)

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_RETAINED_EVENTS = 200
MAX_MERGE_CHAIN = 16


@dataclass(frozen=True)
class QuizRecord:
    quiz_id: str
    answers: Dict[str, Any]
    score: float
    result: str
    timestamp: int


@dataclass(frozen=True)
class AffiliateClickRecord:
    offer_id: str
    offer_slug: Optional[str]
    timestamp: int
    converted: bool = False


@dataclass
class Session:
    """One visitor's session. Treat instances returned by the store as read-only."""
    session_id: str
    start_time: int
    last_activity: int
    user_id: Optional[str] = None
    total_time_on_site: int = 0
    page_views: int = 0
    interactions: int = 0
    behaviors: Deque[BehaviorEventCreate] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_MAX_RETAINED_EVENTS)
    )
    emotions: Set[str] = field(default_factory=set)
    categories: Set[str] = field(default_factory=set)
    interactive_modules: Set[str] = field(default_factory=set)
    quiz_results: List[QuizRecord] = field(default_factory=list)
    affiliate_clicks: List[AffiliateClickRecord] = field(default_factory=list)
    segment: Segment = Segment.NEW_VISITOR
    personalization_flags: Dict[str, bool] = field(default_factory=lambda: derive_flags(Segment.NEW_VISITOR))
    assignments: Dict[str, int] = field(default_factory=dict)
    device_info: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    is_active: bool = True
    merged_into: Optional[str] = None

    @classmethod
    def new(cls, session_id: str, now: int, max_retained_events: int = DEFAULT_MAX_RETAINED_EVENTS) -> "Session":
        return cls(
            session_id=session_id,
            start_time=now,
            last_activity=now,
            behaviors=deque(maxlen=max_retained_events),
        )

    def copy(self) -> "Session":
        return replace(
            self,
            behaviors=deque(self.behaviors, maxlen=self.behaviors.maxlen),
            emotions=set(self.emotions),
            categories=set(self.categories),
            interactive_modules=set(self.interactive_modules),
            quiz_results=list(self.quiz_results),
            affiliate_clicks=list(self.affiliate_clicks),
            personalization_flags=dict(self.personalization_flags),
            assignments=dict(self.assignments),
            device_info=dict(self.device_info) if self.device_info is not None else None,
            location=dict(self.location) if self.location is not None else None,
        )

    def counters(self) -> SessionCounters:
        return SessionCounters(
            page_views=self.page_views,
            total_time_on_site=self.total_time_on_site,
            affiliate_clicks=len(self.affiliate_clicks),
            converted_clicks=sum(1 for c in self.affiliate_clicks if c.converted),
            quiz_results=len(self.quiz_results),
        )

    def snapshot(self) -> dict:
        """Plain-data view used for API responses."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "start_time": self.start_time,
            "last_activity": self.last_activity,
            "total_time_on_site": self.total_time_on_site,
            "page_views": self.page_views,
            "interactions": self.interactions,
            "preferences": {
                "emotions": sorted(self.emotions),
                "categories": sorted(self.categories),
                "interactive_modules": sorted(self.interactive_modules),
            },
            "quiz_results": [vars(q) for q in self.quiz_results],
            "affiliate_clicks": [vars(c) for c in self.affiliate_clicks],
            "behaviors": list(self.behaviors),
            "segment": self.segment.value,
            "personalization_flags": dict(self.personalization_flags),
            "assignments": dict(self.assignments),
            "device_info": self.device_info,
            "location": self.location,
            "is_active": self.is_active,
            "merged_into": self.merged_into,
        }


def apply_behavior(session: Session, event: BehaviorEventCreate) -> None:
    """Fold one event into a session's counters, preferences and histories (in place)."""
    data = event.data
    session.interactions += 1
    session.behaviors.append(event)
    if event.user_id and not session.user_id:
        session.user_id = event.user_id

    if event.type == BehaviorEventType.PAGE_VISIT:
        session.page_views += 1
        if isinstance(data.get("emotion"), str) and data["emotion"]:
            session.emotions.add(data["emotion"])
        if isinstance(data.get("category"), str) and data["category"]:
            session.categories.add(data["category"])

    elif event.type == BehaviorEventType.QUIZ_ANSWER:
        if data.get("quizId") is not None:
            session.quiz_results.append(QuizRecord(
                quiz_id=str(data["quizId"]),
                answers=dict(data.get("answers") or {}),
                score=data.get("score", 0),
                result=str(data.get("result", "")),
                timestamp=event.timestamp,
            ))

    elif event.type == BehaviorEventType.AFFILIATE_CLICK:
        if data.get("offerId") is not None:
            _record_affiliate_click(session, event)

    elif event.type == BehaviorEventType.TIME_ON_SITE:
        spent = data.get("timeSpent", 0)
        if spent > 0:
            session.total_time_on_site += int(spent)

    elif event.type == BehaviorEventType.CONTENT_ENGAGEMENT:
        if isinstance(data.get("module"), str) and data["module"]:
            session.interactive_modules.add(data["module"])


def _record_affiliate_click(session: Session, event: BehaviorEventCreate) -> None:
    offer_id = str(event.data["offerId"])
    converted = event.data.get("converted") is True

    if converted:
        existing = [i for i, c in enumerate(session.affiliate_clicks) if c.offer_id == offer_id]
        if existing:
            # A conversion only ever flips a click from unconverted to converted.
            for i in existing:
                if not session.affiliate_clicks[i].converted:
                    session.affiliate_clicks[i] = replace(session.affiliate_clicks[i], converted=True)
                    break
            return

    session.affiliate_clicks.append(AffiliateClickRecord(
        offer_id=offer_id,
        offer_slug=event.data.get("offerSlug"),
        timestamp=event.timestamp,
        converted=converted,
    ))


def validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
        raise errors.ValidationError(f"Malformed session identifier: {session_id!r}")
    return session_id


SessionLoader = Callable[[str], Optional[Session]]
SessionSink = Callable[[Session], None]
MergeSink = Callable[[Session, Session, Session, Session, str, float], None]


class SessionStore:
    """
    Per-visitor session state, keyed by session identifier.

    `loader` restores a session from durable storage when it is not in memory,
    `sink` receives every published snapshot (expected to persist asynchronously),
    and `merge_sink` records merges. All three are optional so the store can run
    purely in memory.
    """

    def __init__(
        self,
        thresholds: SegmentThresholds = DEFAULT_THRESHOLDS,
        ttl_ms: int = DEFAULT_TTL_MS,
        max_retained_events: int = DEFAULT_MAX_RETAINED_EVENTS,
        loader: Optional[SessionLoader] = None,
        sink: Optional[SessionSink] = None,
        merge_sink: Optional[MergeSink] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.thresholds = thresholds
        self.ttl_ms = ttl_ms
        self.max_retained_events = max_retained_events
        self._loader = loader
        self._sink = sink
        self._merge_sink = merge_sink
        self._clock = clock

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._store_lock = threading.Lock()

    # -- reads -------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        """Current snapshot, or None when the session is unknown or expired."""
        validate_session_id(session_id)
        with self._locked(session_id):
            return self._lookup_locked(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    # -- mutations -----------------------------------------------------------

    def get_or_create(self, session_id: str) -> Session:
        validate_session_id(session_id)
        with self._locked(session_id):
            return self._current_locked(session_id)

    def apply_event(self, session_id: str, event: Union[BehaviorEventCreate, dict]) -> Session:
        """
        Validate and apply one behavior event, then reclassify the session.

        Events for a session that was merged away are applied to the session it
        was merged into.
        """
        validate_session_id(session_id)
        if isinstance(event, dict):
            event = parse_event(event)
        if event.session_id != session_id:
            raise errors.ValidationError(
                f"Event session {event.session_id!r} does not match {session_id!r}"
            )

        with self._locked_owner(session_id) as owner_id:
            updated = self._current_locked(owner_id).copy()
            apply_behavior(updated, event)
            updated.last_activity = max(updated.last_activity, self._clock())
            return self._publish_locked(updated)

    def upsert(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        device_info: Optional[dict] = None,
        location: Optional[dict] = None,
    ) -> Session:
        """
        Create the session if needed and fill in identity/device details.

        A merged-away identifier updates the session it was merged into.
        """
        validate_session_id(session_id)
        with self._locked_owner(session_id) as owner_id:
            current = self._current_locked(owner_id)
            changes = {}
            if user_id is not None and user_id != current.user_id:
                changes["user_id"] = user_id
            if device_info is not None and device_info != current.device_info:
                changes["device_info"] = dict(device_info)
            if location is not None and location != current.location:
                changes["location"] = dict(location)
            if not changes:
                return current

            updated = current.copy()
            for name, value in changes.items():
                setattr(updated, name, value)
            return self._publish_locked(updated)

    def reset(self, session_id: str) -> Session:
        """Explicit reset: fresh counters and histories under the same identifier."""
        validate_session_id(session_id)
        with self._locked(session_id):
            current = self._current_locked(session_id)
            if not current.is_active:
                raise errors.MergeConflict(
                    f"Session {session_id} was merged into {current.merged_into} and cannot be reset"
                )
            fresh = Session.new(session_id, self._clock(), self.max_retained_events)
            fresh.user_id = current.user_id
            fresh.device_info = current.device_info
            fresh.location = current.location
            fresh.assignments = dict(current.assignments)
            logger.info(f"Session {session_id} reset")
            return self._publish_locked(fresh)

    def remember_assignment(self, session_id: str, experiment_id: int, variant_id: int) -> Session:
        """Cache an experiment assignment on the session that owns `session_id`."""
        validate_session_id(session_id)
        key = str(experiment_id)
        with self._locked_owner(session_id) as owner_id:
            current = self._current_locked(owner_id)
            if current.assignments.get(key) == variant_id:
                return current
            updated = current.copy()
            updated.assignments[key] = variant_id
            return self._publish_locked(updated)

    def merge(self, primary_id: str, secondary_id: str, reason: str, confidence: float) -> Session:
        """
        Merge the secondary session into the primary (cross-device identity resolution).

        Counters are summed, preference sets unioned and histories concatenated in
        timestamp order. The secondary becomes an inactive tombstone pointing at the
        primary. Both sessions are locked for the whole operation and both new
        snapshots are published together, so no partial merge is ever visible.
        """
        validate_session_id(primary_id)
        validate_session_id(secondary_id)
        if primary_id == secondary_id:
            raise errors.MergeConflict(f"Cannot merge session {primary_id} into itself")

        first, second = sorted((primary_id, secondary_id))
        with self._locked(first), self._locked(second):
            primary = self._lookup_locked(primary_id)
            secondary = self._lookup_locked(secondary_id)
            for session_id, session in ((primary_id, primary), (secondary_id, secondary)):
                if session is None:
                    raise errors.MergeConflict(f"Session {session_id} does not exist")
                if not session.is_active:
                    raise errors.MergeConflict(
                        f"Session {session_id} was already merged into {session.merged_into}"
                    )

            merged = self._combine(primary, secondary)
            tombstone = secondary.copy()
            tombstone.is_active = False
            tombstone.merged_into = primary_id

            with self._store_lock:
                self._sessions[primary_id] = merged
                self._sessions[secondary_id] = tombstone

        logger.info(
            f"Merged session {secondary_id} into {primary_id} "
            f"(reason={reason}, confidence={confidence})"
        )
        if self._merge_sink is not None:
            self._merge_sink(merged, tombstone, primary, secondary, reason, confidence)
        return merged

    def evict_expired(self) -> int:
        """
        Drop idle sessions and merge tombstones from memory, along with unused locks.

        Durable snapshots stay, so a loader brings an evicted tombstone back on its
        next lookup. A session whose lock is held is skipped until the next pass.
        """
        now = self._clock()
        with self._store_lock:
            candidates = [sid for sid, s in self._sessions.items() if self._is_idle(s, now)]
            candidates.extend(sid for sid in self._locks if sid not in self._sessions)

        evicted = 0
        for session_id in candidates:
            lock = self._lock_for(session_id)
            if not lock.acquire(blocking=False):
                continue
            try:
                with self._store_lock:
                    if self._locks.get(session_id) is not lock:
                        continue
                    session = self._sessions.get(session_id)
                    if session is not None and not self._is_idle(session, now):
                        continue
                    if session is not None:
                        del self._sessions[session_id]
                        evicted += 1
                    del self._locks[session_id]
            finally:
                lock.release()
        if evicted:
            logger.debug(f"Evicted {evicted} idle sessions")
        return evicted

    # -- internals -------------------------------------------------------------

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._store_lock:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _acquire(self, session_id: str) -> threading.Lock:
        """Take the session's lock, retrying if eviction retired it while we waited."""
        while True:
            lock = self._lock_for(session_id)
            lock.acquire()
            with self._store_lock:
                if self._locks.get(session_id) is lock:
                    return lock
            lock.release()

    @contextmanager
    def _locked(self, session_id: str):
        lock = self._acquire(session_id)
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def _locked_owner(self, session_id: str):
        """
        Lock the session that owns `session_id` and yield its identifier.

        Merge tombstones, in memory or restored by the loader, are followed to the
        session they were merged into. The tombstone is checked under its own lock,
        so a merge that commits while we wait is seen here.
        """
        seen = set()
        current = session_id
        while True:
            lock = self._acquire(current)
            try:
                session = self._lookup_locked(current)
            except Exception:
                lock.release()
                raise
            seen.add(current)
            target = None
            if session is not None and not session.is_active:
                target = session.merged_into
            if not target or target in seen or len(seen) >= MAX_MERGE_CHAIN:
                break
            lock.release()
            current = target
        try:
            yield current
        finally:
            lock.release()

    def _is_expired(self, session: Session, now: int) -> bool:
        return session.is_active and now - session.last_activity > self.ttl_ms

    def _is_idle(self, session: Session, now: int) -> bool:
        return now - session.last_activity > self.ttl_ms

    def _lookup_locked(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None and self._loader is not None:
            session = self._loader(session_id)
            if session is not None:
                with self._store_lock:
                    self._sessions[session_id] = session
        if session is not None and self._is_expired(session, self._clock()):
            return None
        return session

    def _current_locked(self, session_id: str) -> Session:
        session = self._lookup_locked(session_id)
        if session is None:
            if session_id in self._sessions:
                logger.info(f"Session {session_id} expired; starting a fresh session")
            session = self._publish_locked(
                Session.new(session_id, self._clock(), self.max_retained_events)
            )
        return session

    def _publish_locked(self, session: Session) -> Session:
        session.segment, session.personalization_flags = evaluate(session.counters(), self.thresholds)
        with self._store_lock:
            self._sessions[session.session_id] = session
        if self._sink is not None:
            self._sink(session)
        return session

    def _combine(self, primary: Session, secondary: Session) -> Session:
        merged = Session.new(primary.session_id, min(primary.start_time, secondary.start_time),
                             self.max_retained_events)
        merged.last_activity = max(primary.last_activity, secondary.last_activity)
        merged.user_id = primary.user_id or secondary.user_id
        merged.total_time_on_site = primary.total_time_on_site + secondary.total_time_on_site
        merged.page_views = primary.page_views + secondary.page_views
        merged.interactions = primary.interactions + secondary.interactions
        merged.emotions = primary.emotions | secondary.emotions
        merged.categories = primary.categories | secondary.categories
        merged.interactive_modules = primary.interactive_modules | secondary.interactive_modules

        merged.behaviors.extend(sorted(
            list(primary.behaviors) + list(secondary.behaviors), key=lambda e: e.timestamp
        ))
        merged.quiz_results = sorted(
            primary.quiz_results + secondary.quiz_results, key=lambda q: q.timestamp
        )
        merged.affiliate_clicks = sorted(
            primary.affiliate_clicks + secondary.affiliate_clicks, key=lambda c: c.timestamp
        )
        merged.assignments = {**secondary.assignments, **primary.assignments}
        merged.device_info = primary.device_info or secondary.device_info
        merged.location = primary.location or secondary.location
        merged.segment, merged.personalization_flags = evaluate(merged.counters(), self.thresholds)
        return merged
