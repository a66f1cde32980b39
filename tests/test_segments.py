"""Test segments: classification rules, flags and recommendations."""

import pytest

from behavior_engine.config import Settings
from behavior_engine.segments import (
    DEFAULT_THRESHOLDS,
    MAX_OFFERS,
    Segment,
    SegmentThresholds,
    SessionCounters,
    classify,
    derive_flags,
    evaluate,
    recommend,
)


# ===================================================================
# classify()
# ===================================================================

class TestClassify:
    """Each rule in isolation, then precedence between rules."""

    def test_empty_session_is_new_visitor(self):
        assert classify(SessionCounters()) == Segment.NEW_VISITOR

    def test_single_page_view_is_still_new(self):
        assert classify(SessionCounters(page_views=1)) == Segment.NEW_VISITOR

    def test_two_page_views_is_returning(self):
        assert classify(SessionCounters(page_views=2)) == Segment.RETURNING_VISITOR

    def test_engaged_needs_both_views_and_time(self):
        assert classify(SessionCounters(page_views=10, total_time_on_site=600_001)) == Segment.ENGAGED_USER
        # Exactly 10 minutes is not enough
        assert classify(SessionCounters(page_views=10, total_time_on_site=600_000)) == Segment.RETURNING_VISITOR
        assert classify(SessionCounters(page_views=9, total_time_on_site=900_000)) == Segment.RETURNING_VISITOR

    def test_researcher(self):
        assert classify(SessionCounters(quiz_results=2, affiliate_clicks=2)) == Segment.RESEARCHER

    def test_researcher_with_too_many_clicks(self):
        counters = SessionCounters(page_views=1, quiz_results=3, affiliate_clicks=3)
        assert classify(counters) == Segment.NEW_VISITOR

    def test_buyer(self):
        assert classify(SessionCounters(affiliate_clicks=5)) == Segment.BUYER

    def test_high_converter(self):
        assert classify(SessionCounters(affiliate_clicks=1, converted_clicks=1)) == Segment.HIGH_CONVERTER


class TestPrecedence:
    """First matching rule wins."""

    def test_converter_beats_buyer(self):
        counters = SessionCounters(affiliate_clicks=8, converted_clicks=1)
        assert classify(counters) == Segment.HIGH_CONVERTER

    def test_buyer_beats_engaged(self):
        counters = SessionCounters(page_views=20, total_time_on_site=3_600_000, affiliate_clicks=5)
        assert classify(counters) == Segment.BUYER

    def test_engaged_beats_researcher(self):
        counters = SessionCounters(page_views=12, total_time_on_site=700_000, quiz_results=4)
        assert classify(counters) == Segment.ENGAGED_USER

    def test_researcher_beats_returning(self):
        counters = SessionCounters(page_views=5, quiz_results=2)
        assert classify(counters) == Segment.RESEARCHER

    def test_deterministic(self):
        counters = SessionCounters(page_views=3, quiz_results=1, affiliate_clicks=2)
        assert len({classify(counters) for _ in range(50)}) == 1


class TestThresholds:

    def test_defaults_match_settings_defaults(self):
        settings = Settings(jwt_secret_key="x")
        assert SegmentThresholds.from_settings(settings) == DEFAULT_THRESHOLDS

    def test_custom_thresholds(self):
        thresholds = SegmentThresholds(buyer_min_clicks=2)
        assert classify(SessionCounters(affiliate_clicks=2), thresholds) == Segment.BUYER
        assert classify(SessionCounters(affiliate_clicks=2)) != Segment.BUYER


# ===================================================================
# Flags
# ===================================================================

class TestFlags:

    @pytest.mark.parametrize("segment,expected", [
        (Segment.NEW_VISITOR, {"showPersonalizedOffers": False, "useAggressiveCTAs": False,
                               "showSocialProof": False, "prioritizeEducation": False, "showUrgency": False}),
        (Segment.RETURNING_VISITOR, {"showPersonalizedOffers": True, "useAggressiveCTAs": False,
                                     "showSocialProof": False, "prioritizeEducation": False, "showUrgency": True}),
        (Segment.ENGAGED_USER, {"showPersonalizedOffers": True, "useAggressiveCTAs": False,
                                "showSocialProof": True, "prioritizeEducation": False, "showUrgency": False}),
        (Segment.HIGH_CONVERTER, {"showPersonalizedOffers": True, "useAggressiveCTAs": True,
                                  "showSocialProof": False, "prioritizeEducation": False, "showUrgency": False}),
        (Segment.RESEARCHER, {"showPersonalizedOffers": True, "useAggressiveCTAs": False,
                              "showSocialProof": True, "prioritizeEducation": True, "showUrgency": False}),
        (Segment.BUYER, {"showPersonalizedOffers": True, "useAggressiveCTAs": True,
                         "showSocialProof": False, "prioritizeEducation": False, "showUrgency": True}),
    ])
    def test_flags_per_segment(self, segment, expected):
        assert derive_flags(segment) == expected

    def test_evaluate_pairs_segment_with_its_flags(self):
        segment, flags = evaluate(SessionCounters(affiliate_clicks=6))
        assert segment == Segment.BUYER
        assert flags == derive_flags(Segment.BUYER)


# ===================================================================
# Recommendations
# ===================================================================

class TestRecommend:

    def test_new_visitor_defaults(self):
        rec = recommend(Segment.NEW_VISITOR)
        assert rec["primaryCTA"] == "Get Started Free"
        assert rec["emotionTheme"] == "trust"
        assert rec["contentStyle"] == "educational"
        assert rec["offers"] == ["free-guide", "starter-course"]
        assert rec["emotions"] == ["trust", "calm"]

    def test_category_offers_are_prepended(self):
        rec = recommend(Segment.BUYER, categories=["fitness"])
        assert rec["offers"][:2] == ["fitness-transformation", "workout-program"]
        assert "premium-bundle" in rec["offers"]

    def test_offers_are_capped(self):
        rec = recommend(Segment.BUYER, categories=["fitness", "finance", "wellness"])
        assert len(rec["offers"]) == MAX_OFFERS
        assert rec["offers"][0] == "meditation-app"

    def test_segments_without_preset_emotions_use_visitor_emotions(self):
        rec = recommend(Segment.ENGAGED_USER, emotions=["joy", "curiosity", "calm", "trust"])
        assert rec["emotions"] == ["joy", "curiosity", "calm"]
