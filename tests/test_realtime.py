"""Tests for the real-time event hook and anomaly detection."""

import pytest

from conftest import NOW, days_ago, event, view
from shoppulse.recommender.models import ActivityType
from shoppulse.recommender.realtime import (
    PROCESS_ACTIVITY_JOB,
    REAL_TIME_UPDATE_JOB,
    RollingTrend,
    job_priority,
    rolling_trending_score,
)
from shoppulse.recommender.tasks import BATCH_PRIORITY, CLEANUP_PRIORITY, TRAINING_PRIORITY


def test_rolling_trending_score_caps_each_component():
    assert rolling_trending_score(RollingTrend("p1")) == 0.0
    saturated = RollingTrend("p1", views=500, purchases=50, velocity=9.0)
    assert rolling_trending_score(saturated) == pytest.approx(1.0)


def test_job_priority_by_activity():
    assert job_priority(ActivityType.ADD_TO_CART) == 10
    assert job_priority(ActivityType.PRODUCT_VIEW) == 5
    assert job_priority(ActivityType.ADD_TO_WISHLIST) == 5
    assert job_priority(ActivityType.CHECKOUT_START) == 5


@pytest.mark.parametrize("activity_type", list(ActivityType))
def test_real_time_jobs_outrank_background_jobs(activity_type):
    priority = job_priority(activity_type)
    assert priority > BATCH_PRIORITY
    assert priority > TRAINING_PRIORITY
    assert priority > CLEANUP_PRIORITY


@pytest.mark.asyncio
async def test_view_enqueues_processing_and_refresh(engine):
    jobs = await engine.on_activity(view("p1", user_id="u1"))

    assert [job.name for job in jobs] == [PROCESS_ACTIVITY_JOB, REAL_TIME_UPDATE_JOB]
    assert all(job.priority == 5 for job in jobs)
    assert jobs[1].attempts == 3


@pytest.mark.asyncio
async def test_search_only_enqueues_processing(engine):
    jobs = await engine.on_activity(event(ActivityType.SEARCH, session_id="s-q"))
    assert [job.name for job in jobs] == [PROCESS_ACTIVITY_JOB]


def test_update_trending_accumulates(engine):
    realtime = engine.realtime
    realtime.update_trending(view("p3", at=NOW))
    trend = realtime.update_trending(view("p3", at=NOW))

    assert trend.views == 2
    assert trend.velocity == pytest.approx(2.0)
    assert trend.score == pytest.approx(2 / 100 * 0.4 + 1.0 * 0.2)
    assert realtime.update_trending(event(ActivityType.SEARCH)) is None
    assert realtime.get_trending_snapshot()[0].product_id == "p3"


@pytest.mark.asyncio
async def test_cart_abandonment_risk(engine, store):
    store.add_activities(
        event(ActivityType.ADD_TO_CART, "p4", user_id="u8", at=days_ago(0, hours=i))
        for i in range(5)
    )
    assert await engine.realtime.cart_abandonment_risk("u8") == 1.0
    assert await engine.realtime.cart_abandonment_risk("nobody") == 0.0

    store.add_activities([event(ActivityType.CHECKOUT_COMPLETE, user_id="u8")])
    assert await engine.realtime.cart_abandonment_risk("u8") == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_view_spike_recorded_as_anomaly(engine):
    await engine.on_activity(view("p4", session_id="s-spike"))
    await engine.process_pending()

    anomalies = engine.get_recent_anomalies()
    spike = next(a for a in anomalies if a.type == "spike")
    assert spike.entity_id == "p4"
    assert spike.severity == "high"


@pytest.mark.asyncio
async def test_cart_add_flags_abandonment(engine):
    await engine.on_activity(event(ActivityType.ADD_TO_CART, "p2", session_id="s-u2", user_id="u2"))
    await engine.process_pending()

    flagged = [a for a in engine.get_recent_anomalies() if a.type == "unusual_pattern"]
    assert flagged[0].entity_id == "u2"
    assert flagged[0].details["cart_abandonment_risk"] == 1.0
