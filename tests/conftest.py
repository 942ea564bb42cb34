"""Shared fixtures: a fixed clock, test settings and a seeded in-memory store."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from shoppulse.config import Settings
from shoppulse.engine import RecommendationEngine
from shoppulse.recommender.models import (
    ActivityEvent,
    ActivityType,
    Order,
    OrderItem,
    OrderStatus,
    Product,
)
from shoppulse.recommender.store import InMemoryEventStore

# Wednesday noon, UTC
NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def days_ago(days: float, hours: float = 0) -> datetime:
    return NOW - timedelta(days=days, hours=hours)


def view(product_id, session_id="s-1", user_id=None, at=None, device="desktop"):
    return ActivityEvent(
        activity_type=ActivityType.PRODUCT_VIEW,
        session_id=session_id,
        user_id=user_id,
        entity_id=product_id,
        entity_type="product",
        device_type=device,
        timestamp=at or NOW,
    )


def event(activity_type, product_id=None, session_id="s-1", user_id=None, at=None, device=None):
    return ActivityEvent(
        activity_type=activity_type,
        session_id=session_id,
        user_id=user_id,
        entity_id=product_id,
        entity_type="product" if product_id else None,
        device_type=device,
        timestamp=at or NOW,
    )


def make_products():
    return [
        Product(id="p1", title="Trail Shoe", price=120.0, category_id="c-shoes", brand_id="b-acme",
                average_rating=4.6, review_count=40, created_at=days_ago(10)),
        Product(id="p2", title="Road Shoe", price=90.0, category_id="c-shoes", brand_id="b-zoom",
                average_rating=4.2, review_count=12, created_at=days_ago(40)),
        Product(id="p3", title="Running Socks", price=12.0, category_id="c-apparel", brand_id="b-acme",
                average_rating=4.8, review_count=100, created_at=days_ago(2)),
        Product(id="p4", title="Water Bottle", price=25.0, category_id="c-gear", brand_id="b-hydro",
                average_rating=3.9, review_count=8, created_at=days_ago(100)),
        Product(id="p5", title="Headlamp", price=45.0, category_id="c-gear", brand_id="b-lumen",
                average_rating=4.1, review_count=3, created_at=days_ago(5)),
        Product(id="p6", title="Retired Shoe", price=60.0, category_id="c-shoes", brand_id="b-acme",
                average_rating=5.0, review_count=50, is_active=False, created_at=days_ago(1)),
    ]


def make_orders():
    def items(*product_ids):
        return [OrderItem(product_id=pid, quantity=1, total_price=10.0) for pid in product_ids]

    return [
        Order(id="o1", user_id="u1", status=OrderStatus.DELIVERED, total=132.0,
              placed_at=days_ago(5), items=items("p1", "p3")),
        Order(id="o2", user_id="u2", status=OrderStatus.DELIVERED, total=157.0,
              placed_at=days_ago(4), items=items("p1", "p3", "p4")),
        Order(id="o3", user_id="u3", status=OrderStatus.DELIVERED, total=132.0,
              placed_at=days_ago(3), items=items("p1", "p3")),
        Order(id="o4", user_id="u1", status=OrderStatus.DELIVERED, total=145.0,
              placed_at=days_ago(2), items=items("p1", "p4")),
        Order(id="o5", user_id="u2", status=OrderStatus.CANCELLED, total=450.0,
              placed_at=days_ago(1), items=[OrderItem(product_id="p2", quantity=5, total_price=450.0)]),
    ]


def make_activities():
    events = []
    # p5: six views in the last two days
    for i in range(6):
        events.append(view("p5", session_id=f"s-p5-{i}", at=days_ago(2, hours=-i)))
    # p1: five views spread over the last six days
    for i in range(5):
        events.append(view("p1", session_id=f"s-p1-{i}", user_id="u1", at=days_ago(6 - i)))
    # u2 browses shoes and adds one to the cart
    events.append(view("p2", session_id="s-u2", user_id="u2", at=days_ago(1)))
    events.append(
        event(ActivityType.ADD_TO_CART, "p2", session_id="s-u2", user_id="u2", at=days_ago(1, hours=-1))
    )
    return events


@pytest.fixture
def settings():
    return Settings(
        scheduler_enabled=False,
        preference_persist_probability=1.0,
        job_timeout_seconds=None,
        backoff_base_seconds=0.0,
        model_dir=None,
        data_dir=None,
    )


@pytest.fixture
def store():
    store = InMemoryEventStore()
    store.add_products(make_products())
    store.add_orders(make_orders())
    store.add_activities(make_activities())
    return store


@pytest.fixture
def empty_store():
    return InMemoryEventStore()


@pytest.fixture
def engine(store, settings):
    return RecommendationEngine(store, settings, clock=fixed_clock, rng=random.Random(7))
