"""Tests for the strategy resolver and its fallback chains."""

from datetime import timedelta

import pytest

from conftest import NOW, days_ago, fixed_clock, view
from shoppulse.exceptions import NotFoundError, PersistenceError, ValidationError
from shoppulse.recommender.models import Recommendation, RecommendationType
from shoppulse.recommender.strategies import (
    RecommendationRequest,
    StrategyResolver,
    parse_type,
    rank,
)

T = RecommendationType


@pytest.fixture
def resolver(store, settings):
    return StrategyResolver(store, settings, clock=fixed_clock)


def request_for(recommendation_type, **kwargs):
    return RecommendationRequest(recommendation_type=recommendation_type, **kwargs)


def ids(resolution):
    return [r.recommended_product_id for r in resolution.recommendations]


def test_rank_clamps_orders_and_numbers():
    recs = [
        Recommendation(recommended_product_id="a", recommendation_type=T.TRENDING, score=1.7),
        Recommendation(recommended_product_id="b", recommendation_type=T.TRENDING, score=-0.2),
        Recommendation(recommended_product_id="c", recommendation_type=T.TRENDING, score=0.4),
    ]
    ranked = rank(recs, limit=2)

    assert [r.recommended_product_id for r in ranked] == ["a", "c"]
    assert [r.position for r in ranked] == [1, 2]
    assert ranked[0].score == 1.0


def test_parse_type_rejects_unknown():
    assert parse_type("trending") == T.TRENDING
    with pytest.raises(ValidationError):
        parse_type("most_gifted")


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 51])
async def test_limit_out_of_range(resolver, limit):
    with pytest.raises(ValidationError):
        await resolver.resolve(request_for(T.TRENDING, limit=limit))


@pytest.mark.asyncio
async def test_personalized_requires_an_actor(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(request_for(T.PERSONALIZED))


@pytest.mark.asyncio
async def test_similar_requires_product(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(request_for(T.SIMILAR_PRODUCTS))
    with pytest.raises(NotFoundError):
        await resolver.resolve(request_for(T.SIMILAR_PRODUCTS, product_id="nope"))


@pytest.mark.asyncio
async def test_frequently_bought_together_uses_market_basket(resolver):
    resolution = await resolver.resolve(
        request_for(T.FREQUENTLY_BOUGHT_TOGETHER, product_id="p1")
    )

    assert resolution.strategy == "market_basket"
    assert resolution.fallback
    assert ids(resolution) == ["p3", "p4"]
    assert [r.score for r in resolution.recommendations] == pytest.approx([0.75, 0.5])
    assert resolution.recommendations[0].metadata["frequency"] == 3
    assert resolution.recommendations[0].recommended_product["title"] == "Running Socks"


@pytest.mark.asyncio
async def test_frequently_bought_together_falls_back_to_similarity(resolver):
    resolution = await resolver.resolve(
        request_for(T.FREQUENTLY_BOUGHT_TOGETHER, product_id="p2")
    )

    assert resolution.strategy == "category_brand_similarity"
    # p6 shares the category but is inactive
    assert ids(resolution) == ["p1"]


def ranked_triples(recommendations):
    return [(r.recommended_product_id, r.score, r.position) for r in recommendations]


@pytest.mark.asyncio
async def test_recently_viewed_requires_an_actor(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(request_for(T.RECENTLY_VIEWED))


@pytest.mark.asyncio
async def test_frequently_bought_together_requires_product(resolver):
    with pytest.raises(ValidationError):
        await resolver.resolve(request_for(T.FREQUENTLY_BOUGHT_TOGETHER))


@pytest.mark.asyncio
async def test_similarity_fallback_matches_direct_computation(resolver):
    expected = ranked_triples(rank(await resolver.compute_similar("p1", 10), limit=10))

    similar = await resolver.resolve(request_for(T.SIMILAR_PRODUCTS, product_id="p1", limit=10))
    assert similar.strategy == "category_brand_similarity"
    assert ranked_triples(similar.recommendations) == expected

    again = await resolver.resolve(request_for(T.SIMILAR_PRODUCTS, product_id="p1", limit=10))
    assert ranked_triples(again.recommendations) == expected

    fbt = await resolver.resolve(
        request_for(T.FREQUENTLY_BOUGHT_TOGETHER, product_id="p2", limit=10)
    )
    assert ranked_triples(fbt.recommendations) == ranked_triples(
        rank(await resolver.compute_similar("p2", 10), limit=10)
    )


@pytest.mark.asyncio
async def test_similar_products_share_category_or_brand(resolver):
    resolution = await resolver.resolve(request_for(T.SIMILAR_PRODUCTS, product_id="p1"))

    assert set(ids(resolution)) == {"p2", "p3"}
    assert ids(resolution)[0] == "p3"
    assert resolution.recommendations[0].score == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_unreadable_stored_records_fall_through(resolver, store, monkeypatch):
    async def unreachable(*args, **kwargs):
        raise PersistenceError("find_recommendations", ConnectionError("database is down"))

    monkeypatch.setattr(store, "find_recommendations", unreachable)

    resolution = await resolver.resolve(request_for(T.TRENDING))

    assert resolution.strategy == "velocity"
    assert ids(resolution) == ["p5", "p1"]


@pytest.mark.asyncio
async def test_trending_by_velocity(resolver):
    resolution = await resolver.resolve(request_for(T.TRENDING))

    assert resolution.strategy == "velocity"
    assert ids(resolution) == ["p5", "p1"]
    assert resolution.recommendations[0].score == 1.0
    assert resolution.recommendations[1].score == pytest.approx(5 / 6)


@pytest.mark.asyncio
async def test_trending_category_filter_applies_before_limit(resolver):
    resolution = await resolver.resolve(request_for(T.TRENDING, category_id="c-shoes", limit=1))
    assert ids(resolution) == ["p1"]


@pytest.mark.asyncio
async def test_bestsellers_exclude_cancelled_orders(resolver):
    resolution = await resolver.resolve(request_for(T.BESTSELLERS))

    assert resolution.strategy == "sales"
    assert ids(resolution) == ["p1", "p3", "p4"]
    assert [r.score for r in resolution.recommendations] == pytest.approx([1.0, 0.75, 0.5])


@pytest.mark.asyncio
async def test_top_rated_thresholds(resolver):
    resolution = await resolver.resolve(request_for(T.TOP_RATED))

    assert ids(resolution) == ["p3", "p1", "p2"]
    assert resolution.recommendations[0].score == pytest.approx(4.8 / 5)


@pytest.mark.asyncio
async def test_new_arrivals_skip_unlisted(resolver):
    resolution = await resolver.resolve(request_for(T.NEW_ARRIVALS))

    assert ids(resolution) == ["p3", "p5", "p1", "p2", "p4"]


@pytest.mark.asyncio
async def test_recently_viewed_from_history(resolver, store):
    await store.upsert_browsing_history(view("p2", user_id="u7", at=days_ago(2)))
    await store.upsert_browsing_history(view("p4", user_id="u7", at=days_ago(1)))
    await store.upsert_browsing_history(view("p6", user_id="u7", at=NOW))

    resolution = await resolver.resolve(request_for(T.RECENTLY_VIEWED, user_id="u7"))

    assert resolution.strategy == "browsing_history"
    assert not resolution.fallback
    assert ids(resolution) == ["p4", "p2"]
    assert all(r.viewed and r.clicked for r in resolution.recommendations)


@pytest.mark.asyncio
async def test_recently_viewed_without_history_is_empty(resolver):
    resolution = await resolver.resolve(request_for(T.RECENTLY_VIEWED, session_id="fresh"))

    assert resolution.recommendations == []
    assert resolution.strategy is None


@pytest.mark.asyncio
async def test_personalized_falls_back_to_trending(resolver):
    resolution = await resolver.resolve(request_for(T.PERSONALIZED, user_id="u9"))

    assert resolution.fallback
    assert resolution.strategy == "velocity"
    assert all(r.is_ephemeral for r in resolution.recommendations)


@pytest.mark.asyncio
async def test_stored_recommendations_preferred(resolver, store):
    await store.save_recommendations(
        [
            Recommendation(
                user_id="u1",
                recommended_product_id=pid,
                recommendation_type=T.PERSONALIZED,
                score=score,
                position=9,
                expires_at=NOW + timedelta(hours=1),
            )
            for pid, score in [("p4", 0.4), ("p2", 0.9)]
        ]
    )

    resolution = await resolver.resolve(request_for(T.PERSONALIZED, user_id="u1"))

    assert resolution.strategy == "stored_personalized"
    assert not resolution.fallback
    assert ids(resolution) == ["p2", "p4"]
    assert [r.position for r in resolution.recommendations] == [1, 2]
    assert [r.score for r in resolution.recommendations] == [0.9, 0.4]


@pytest.mark.asyncio
async def test_product_details_optional(resolver):
    resolution = await resolver.resolve(request_for(T.TOP_RATED, include_product_details=False))
    assert all(r.recommended_product is None for r in resolution.recommendations)


@pytest.mark.asyncio
async def test_get_recommendations_uses_default_limit(resolver):
    recs = await resolver.get_recommendations("new_arrivals", limit=2)
    assert len(recs) == 2
    for rec in recs:
        assert 0.0 <= rec.score <= 1.0


@pytest.mark.asyncio
async def test_mark_interaction(resolver, store):
    record = Recommendation(
        recommended_product_id="p1", recommendation_type=T.TRENDING, score=0.5
    )
    await store.save_recommendations([record])

    updated = await resolver.mark_interaction(record.id, "clicked")
    assert updated.clicked
    assert store.recommendations[record.id].clicked

    with pytest.raises(ValidationError):
        await resolver.mark_interaction(record.id, "liked")
    with pytest.raises(NotFoundError):
        await resolver.mark_interaction("missing", "viewed")
