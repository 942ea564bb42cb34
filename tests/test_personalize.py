"""Tests for the hybrid personalized recommender.

The recommender blends collaborative filtering scores from the SVD model
with preference-vector affinity, and degrades to a single signal when the
other is unavailable.
"""

import pytest

from conftest import make_products, view
from shoppulse.config import Settings
from shoppulse.recommender.personalize import PersonalizedRecommender
from shoppulse.recommender.train import train_svd_model
from shoppulse.recommender.utils import build_interaction_matrix


@pytest.fixture
def settings() -> Settings:
    return Settings(scheduler_enabled=False)


@pytest.fixture
def products():
    return [p for p in make_products() if p.is_listed]


@pytest.fixture
def shoe_lover():
    """Normalized preference weights of a shopper who mostly browses shoes."""
    return {
        "categories": {"c-shoes": 0.8, "c-gear": 0.2},
        "brands": {"b-acme": 1.0},
        "price_ranges": {"medium": 1.0},
    }


@pytest.fixture
def trained_recommender(settings):
    events = [
        view(pid, user_id=uid)
        for uid, pids in {
            "u1": ["p1", "p2", "p3"],
            "u2": ["p1", "p2"],
            "u3": ["p4", "p5"],
            "u4": ["p3", "p4", "p5"],
        }.items()
        for pid in pids
    ]
    matrix, user_idx, product_idx = build_interaction_matrix(events, {"product_view": 1.0}, 0.1)
    model = train_svd_model(matrix, n_components=2, n_iter=5)
    return PersonalizedRecommender(
        settings,
        model=model,
        user_product_matrix=matrix,
        user_id_to_idx=user_idx,
        product_id_to_idx=product_idx,
    )


def test_weights_are_normalized(settings):
    recommender = PersonalizedRecommender(settings, cf_weight=3.0, preference_weight=1.0)

    assert recommender.cf_weight == pytest.approx(0.75)
    assert recommender.preference_weight == pytest.approx(0.25)


def test_normalize_scores():
    assert PersonalizedRecommender._normalize_scores({}) == {}
    assert PersonalizedRecommender._normalize_scores({"a": 2.0, "b": 2.0}) == {"a": 0.5, "b": 0.5}
    assert PersonalizedRecommender._normalize_scores({"a": 1.0, "b": 3.0}) == {"a": 0.0, "b": 1.0}


def test_preference_only_without_model(settings, products, shoe_lover):
    recommender = PersonalizedRecommender(settings)

    results = recommender.recommend("u9", products, preferences=shoe_lover, top_n=3)

    assert [pid for pid, _, _ in results][0] == "p1"
    for _, score, breakdown in results:
        assert breakdown["cf_score"] == 0.0
        assert score == pytest.approx(breakdown["preference_score"])


def test_no_signal_returns_nothing(settings, products):
    assert PersonalizedRecommender(settings).recommend("u9", products) == []


def test_purchased_products_excluded(settings, products, shoe_lover):
    recommender = PersonalizedRecommender(settings)

    results = recommender.recommend(
        "u9", products, preferences=shoe_lover, purchased_product_ids={"p1"}
    )

    assert "p1" not in {pid for pid, _, _ in results}


def test_hybrid_blends_both_signals(trained_recommender, products, shoe_lover):
    results = trained_recommender.recommend("u2", products, preferences=shoe_lover, top_n=5)

    assert results
    for _, score, breakdown in results:
        expected = 0.7 * breakdown["cf_score"] + 0.3 * breakdown["preference_score"]
        assert score == pytest.approx(expected)
    scores = [score for _, score, _ in results]
    assert scores == sorted(scores, reverse=True)


def test_unknown_user_gets_preference_scores(trained_recommender, products, shoe_lover):
    assert not trained_recommender.knows_user("stranger")

    results = trained_recommender.recommend("stranger", products, preferences=shoe_lover)

    assert all(breakdown["cf_score"] == 0.0 for _, _, breakdown in results)


def test_cf_only_when_no_preferences(trained_recommender, products):
    results = trained_recommender.recommend("u3", products, top_n=5)

    assert results
    for _, score, breakdown in results:
        assert score == pytest.approx(breakdown["cf_score"])
