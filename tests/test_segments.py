"""Tests for segment criteria matching."""

import pytest

from conftest import NOW
from shoppulse.recommender.models import BehavioralSegment, SessionMetrics, UserProfile
from shoppulse.recommender.segments import Criterion, Operator, canonical_segments


def profile(**overrides):
    values = dict(
        user_id="u-x",
        behavioral_segment=BehavioralSegment.BUYER,
        preference_vector={},
        engagement_score=0.2,
        lifetime_value=0.0,
        churn_risk=0.0,
        purchase_frequency=0.0,
        average_order_value=0.0,
        session_metrics=SessionMetrics(),
        next_best_actions=[],
        last_updated=NOW,
    )
    values.update(overrides)
    return UserProfile(**values)


def segments():
    return {s.segment_id: s for s in canonical_segments()}


def test_criterion_operators():
    assert Criterion("lifetime_value", Operator.GT, 100).matches(profile(lifetime_value=101))
    assert not Criterion("lifetime_value", Operator.GT, 100).matches(profile(lifetime_value=100))
    assert Criterion("churn_risk", Operator.LT, 0.3).matches(profile(churn_risk=0.1))
    assert Criterion("purchase_frequency", Operator.EQ, 0).matches(profile())


def test_criterion_rejects_unknown_field():
    with pytest.raises(ValueError):
        Criterion("shoe_size", Operator.GT, 10)


def test_high_value_customer():
    high_value = segments()["high-value-customers"]
    assert high_value.matches(profile(lifetime_value=1500, churn_risk=0.1))
    assert not high_value.matches(profile(lifetime_value=1500, churn_risk=0.5))


def test_at_risk_customer():
    at_risk = segments()["at-risk-customers"]
    assert at_risk.matches(profile(lifetime_value=250, churn_risk=0.9))
    assert not at_risk.matches(profile(lifetime_value=50, churn_risk=0.9))


def test_new_prospect_needs_engagement_and_no_purchases():
    prospects = segments()["new-prospects"]
    assert prospects.matches(profile(engagement_score=0.8))
    assert not prospects.matches(profile(engagement_score=0.8, purchase_frequency=0.5))


def test_price_sensitive_matches_behavioral_segment():
    price_sensitive = segments()["price-sensitive"]
    assert price_sensitive.matches(profile(behavioral_segment=BehavioralSegment.PRICE_SENSITIVE))
    assert not price_sensitive.matches(profile())


def test_canonical_segments_are_fresh_copies():
    first = canonical_segments()
    first[0].user_count = 12
    assert all(s.user_count == 0 for s in canonical_segments())
