"""Tests for the in-memory event store adapter."""

from datetime import timedelta

import pandas as pd
import pytest

from conftest import NOW, days_ago, event, view
from shoppulse.recommender.models import (
    ActivityType,
    OrderStatus,
    Recommendation,
    RecommendationType,
)
from shoppulse.recommender.store import (
    ACTIVITY_TABLE,
    BROWSING_HISTORY_TABLE,
    RECOMMENDATION_TABLE,
    InMemoryEventStore,
)


@pytest.mark.asyncio
async def test_find_products_hides_unlisted_by_default(store):
    listed = {p.id for p in await store.find_products()}
    everything = {p.id for p in await store.find_products(listed_only=False)}

    assert "p6" not in listed
    assert "p6" in everything


@pytest.mark.asyncio
async def test_find_products_filters_by_category(store):
    products = await store.find_products(category_id="c-gear")
    assert {p.id for p in products} == {"p4", "p5"}


@pytest.mark.asyncio
async def test_activity_stats_group_by_entity(store):
    stats = await store.activity_stats_by_entity(
        since=days_ago(7), activity_types=[ActivityType.PRODUCT_VIEW]
    )
    counts = dict(zip(stats["entity_id"], stats["activity_count"]))

    assert counts["p5"] == 6
    assert counts["p1"] == 5
    assert counts["p2"] == 1


@pytest.mark.asyncio
async def test_order_item_stats_excludes_statuses(store):
    stats = await store.order_item_stats(
        since=days_ago(30), exclude_statuses=[OrderStatus.CANCELLED]
    )
    quantities = dict(zip(stats["product_id"], stats["quantity"]))

    assert "p2" not in quantities
    assert quantities["p1"] == 4
    assert quantities["p3"] == 3


@pytest.mark.asyncio
async def test_active_user_ids_most_recent_first(store):
    users = await store.active_user_ids(since=days_ago(7))
    assert users == ["u2", "u1"]


@pytest.mark.asyncio
async def test_upsert_browsing_history_increments_views(empty_store):
    await empty_store.upsert_browsing_history(view("p1", user_id="u1", at=days_ago(1)))
    entry = await empty_store.upsert_browsing_history(view("p1", user_id="u1", at=NOW))

    history = await empty_store.browsing_history(user_id="u1")
    assert len(history) == 1
    assert entry.view_count == 2
    assert entry.last_viewed_at == NOW


@pytest.mark.asyncio
async def test_anonymous_history_is_per_view(empty_store):
    await empty_store.upsert_browsing_history(view("p1", session_id="anon"))
    await empty_store.upsert_browsing_history(view("p2", session_id="anon"))

    history = await empty_store.browsing_history(session_id="anon")
    assert {h.product_id for h in history} == {"p1", "p2"}


@pytest.mark.asyncio
async def test_save_recommendations_replaces_same_scope(empty_store):
    def rec(product_id, score):
        return Recommendation(
            user_id="u1",
            recommended_product_id=product_id,
            recommendation_type=RecommendationType.PERSONALIZED,
            score=score,
        )

    await empty_store.save_recommendations([rec("p1", 0.9), rec("p2", 0.8)])
    await empty_store.save_recommendations([rec("p3", 0.5)])

    found = await empty_store.find_recommendations(
        RecommendationType.PERSONALIZED, now=NOW, user_id="u1"
    )
    assert [r.recommended_product_id for r in found] == ["p3"]


@pytest.mark.asyncio
async def test_find_recommendations_skips_expired(empty_store):
    await empty_store.save_recommendations(
        [
            Recommendation(
                recommended_product_id="p1",
                recommendation_type=RecommendationType.TRENDING,
                score=0.7,
                expires_at=NOW - timedelta(minutes=1),
            )
        ]
    )
    found = await empty_store.find_recommendations(RecommendationType.TRENDING, now=NOW)
    assert found == []


@pytest.mark.asyncio
async def test_purge_keeps_interacted_recommendations(empty_store):
    old = days_ago(120)
    untouched = Recommendation(
        recommended_product_id="p1",
        recommendation_type=RecommendationType.TRENDING,
        score=0.5,
        created_at=old,
    )
    clicked = Recommendation(
        recommended_product_id="p2",
        recommendation_type=RecommendationType.TOP_RATED,
        score=0.5,
        created_at=old,
        clicked=True,
    )
    empty_store.recommendations = {untouched.id: untouched, clicked.id: clicked}
    empty_store.add_activities([event(ActivityType.SEARCH, at=old), event(ActivityType.SEARCH)])

    cutoff = days_ago(90)
    assert await empty_store.purge(RECOMMENDATION_TABLE, cutoff) == 1
    assert await empty_store.purge(ACTIVITY_TABLE, cutoff) == 1
    assert await empty_store.purge(BROWSING_HISTORY_TABLE, cutoff) == 0
    assert await empty_store.purge("unknown_table", cutoff) == 0
    assert clicked.id in empty_store.recommendations


def test_from_csv_dir_requires_products(tmp_path):
    with pytest.raises(FileNotFoundError):
        InMemoryEventStore.from_csv_dir(str(tmp_path))


def test_from_csv_dir_loads_seed_files(tmp_path):
    pd.DataFrame(
        [
            {
                "id": "p1",
                "title": "Trail Shoe",
                "slug": "trail-shoe",
                "price": 120.0,
                "category_id": "c-shoes",
                "brand_id": "b-acme",
                "average_rating": 4.5,
                "review_count": 10,
                "is_active": True,
                "visibility": "public",
                "created_at": "2024-06-01T00:00:00Z",
            }
        ]
    ).to_csv(tmp_path / "products.csv", index=False)
    pd.DataFrame(
        [
            {
                "activity_type": "product_view",
                "session_id": "s-1",
                "user_id": "u1",
                "entity_id": "p1",
                "entity_type": "product",
                "device_type": "mobile",
                "timestamp": "2024-06-10T08:00:00Z",
            }
        ]
    ).to_csv(tmp_path / "activities.csv", index=False)
    pd.DataFrame(
        [{"id": "o1", "user_id": "u1", "status": "delivered", "total": 120.0,
          "placed_at": "2024-06-10T09:00:00Z"}]
    ).to_csv(tmp_path / "orders.csv", index=False)
    pd.DataFrame(
        [{"order_id": "o1", "product_id": "p1", "quantity": 1, "total_price": 120.0}]
    ).to_csv(tmp_path / "order_items.csv", index=False)

    store = InMemoryEventStore.from_csv_dir(str(tmp_path))

    assert store.products["p1"].category_id == "c-shoes"
    assert store.activities[0].activity_type == ActivityType.PRODUCT_VIEW
    assert store.activities[0].timestamp.tzinfo is not None
    assert store.orders["o1"].items[0].product_id == "p1"
