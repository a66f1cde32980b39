"""
Segment classification and personalization derivation.

Everything here is a pure function of its arguments: the same counters always
produce the same segment, and the same segment always produces the same flags.
The session store calls `evaluate()` once per mutation so that every reader
sees flags derived from a single place.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Tuple


class Segment(str, Enum):
    NEW_VISITOR = "new_visitor"
    RETURNING_VISITOR = "returning_visitor"
    ENGAGED_USER = "engaged_user"
    HIGH_CONVERTER = "high_converter"
    RESEARCHER = "researcher"
    BUYER = "buyer"


@dataclass(frozen=True)
class SegmentThresholds:
    """Behavior thresholds; defaults match the production rules."""
    buyer_min_clicks: int = 5
    engaged_min_page_views: int = 10
    engaged_min_time_ms: int = 600_000
    researcher_min_quizzes: int = 2
    researcher_max_clicks: int = 3
    returning_min_page_views: int = 1

    @classmethod
    def from_settings(cls, settings) -> "SegmentThresholds":
        return cls(
            buyer_min_clicks=settings.segment_buyer_min_clicks,
            engaged_min_page_views=settings.segment_engaged_min_page_views,
            engaged_min_time_ms=settings.segment_engaged_min_time_ms,
            researcher_min_quizzes=settings.segment_researcher_min_quizzes,
            researcher_max_clicks=settings.segment_researcher_max_clicks,
            returning_min_page_views=settings.segment_returning_min_page_views,
        )


DEFAULT_THRESHOLDS = SegmentThresholds()


@dataclass(frozen=True)
class SessionCounters:
    """The slice of session state the classifier is allowed to look at."""
    page_views: int = 0
    total_time_on_site: int = 0
    affiliate_clicks: int = 0
    converted_clicks: int = 0
    quiz_results: int = 0


def classify(counters: SessionCounters, thresholds: SegmentThresholds = DEFAULT_THRESHOLDS) -> Segment:
    """
    Map session counters to exactly one segment. First matching rule wins:

    1. any converted affiliate click            -> high_converter
    2. affiliate clicks >= buyer_min_clicks     -> buyer
    3. page views >= engaged_min_page_views and
       time on site > engaged_min_time_ms       -> engaged_user
    4. quizzes >= researcher_min_quizzes and
       affiliate clicks < researcher_max_clicks -> researcher
    5. page views > returning_min_page_views    -> returning_visitor
    6. otherwise                                -> new_visitor
    """
    if counters.converted_clicks > 0:
        return Segment.HIGH_CONVERTER
    if counters.affiliate_clicks >= thresholds.buyer_min_clicks:
        return Segment.BUYER
    if (
        counters.page_views >= thresholds.engaged_min_page_views
        and counters.total_time_on_site > thresholds.engaged_min_time_ms
    ):
        return Segment.ENGAGED_USER
    if (
        counters.quiz_results >= thresholds.researcher_min_quizzes
        and counters.affiliate_clicks < thresholds.researcher_max_clicks
    ):
        return Segment.RESEARCHER
    if counters.page_views > thresholds.returning_min_page_views:
        return Segment.RETURNING_VISITOR
    return Segment.NEW_VISITOR


def derive_flags(segment: Segment) -> Dict[str, bool]:
    """Personalization flags for a segment."""
    return {
        "showPersonalizedOffers": segment != Segment.NEW_VISITOR,
        "useAggressiveCTAs": segment in (Segment.BUYER, Segment.HIGH_CONVERTER),
        "showSocialProof": segment in (Segment.RESEARCHER, Segment.ENGAGED_USER),
        "prioritizeEducation": segment == Segment.RESEARCHER,
        "showUrgency": segment in (Segment.BUYER, Segment.RETURNING_VISITOR),
    }


def evaluate(
    counters: SessionCounters, thresholds: SegmentThresholds = DEFAULT_THRESHOLDS
) -> Tuple[Segment, Dict[str, bool]]:
    segment = classify(counters, thresholds)
    return segment, derive_flags(segment)


PRIMARY_CTA = {
    Segment.NEW_VISITOR: "Get Started Free",
    Segment.RETURNING_VISITOR: "Continue Your Journey",
    Segment.ENGAGED_USER: "Unlock Premium Features",
    Segment.HIGH_CONVERTER: "Get VIP Access",
    Segment.RESEARCHER: "Get Detailed Guide",
    Segment.BUYER: "Buy Now - Best Price",
}

EMOTION_THEME = {
    Segment.NEW_VISITOR: "trust",
    Segment.RETURNING_VISITOR: "confidence",
    Segment.ENGAGED_USER: "excitement",
    Segment.HIGH_CONVERTER: "confidence",
    Segment.RESEARCHER: "trust",
    Segment.BUYER: "excitement",
}

CONTENT_STYLE = {
    Segment.NEW_VISITOR: "educational",
    Segment.RETURNING_VISITOR: "promotional",
    Segment.ENGAGED_USER: "social_proof",
    Segment.HIGH_CONVERTER: "urgent",
    Segment.RESEARCHER: "educational",
    Segment.BUYER: "urgent",
}

SEGMENT_OFFERS = {
    Segment.NEW_VISITOR: ["free-guide", "starter-course"],
    Segment.RETURNING_VISITOR: ["premium-course", "advanced-toolkit"],
    Segment.ENGAGED_USER: ["masterclass", "coaching-program"],
    Segment.HIGH_CONVERTER: ["elite-program", "vip-access"],
    Segment.RESEARCHER: ["detailed-course", "expert-consultation"],
    Segment.BUYER: ["premium-bundle", "exclusive-offer"],
}

# Checked in this order; later matches end up first in the list.
CATEGORY_OFFERS = [
    ("fitness", ["fitness-transformation", "workout-program"]),
    ("finance", ["investment-course", "trading-masterclass"]),
    ("wellness", ["meditation-app", "stress-relief"]),
]

SEGMENT_EMOTIONS = {
    Segment.NEW_VISITOR: ["trust", "calm"],
    Segment.BUYER: ["confidence", "excitement"],
    Segment.RESEARCHER: ["trust", "relief"],
}

MAX_OFFERS = 5


def recommend(segment: Segment, categories: Iterable[str] = (), emotions: Iterable[str] = ()) -> dict:
    """Content and offer recommendations for a segment and the visitor's preferences."""
    categories = list(categories)
    offers: List[str] = list(SEGMENT_OFFERS[segment])
    for category, category_offers in CATEGORY_OFFERS:
        if category in categories:
            offers = category_offers + offers

    recommended_emotions = SEGMENT_EMOTIONS.get(segment, list(emotions))

    return {
        "segment": segment.value,
        "primaryCTA": PRIMARY_CTA[segment],
        "emotionTheme": EMOTION_THEME[segment],
        "contentStyle": CONTENT_STYLE[segment],
        "emotions": recommended_emotions[:3],
        "categories": categories,
        "offers": offers[:MAX_OFFERS],
    }
