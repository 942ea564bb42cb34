"""User profiling engine.

Derives a behavioural profile per user from a 30-day activity window and
the user's delivered orders: behavioural segment, preference vector,
engagement, lifetime value, churn risk, session metrics and next best
actions. Profiles are cached and grouped into the canonical user segments.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from shoppulse.config import Settings
from shoppulse.recommender.cache import StateCache
from shoppulse.recommender.jobs import run_in_batches
from shoppulse.recommender.models import (
    ActivityEvent,
    ActivityType,
    BehavioralSegment,
    Order,
    OrderStatus,
    SessionMetrics,
    UserProfile,
    utcnow,
)
from shoppulse.recommender.preferences import PreferenceEngine
from shoppulse.recommender.segments import UserSegment, canonical_segments
from shoppulse.recommender.store import EventStore
from shoppulse.recommender.utils import clamp

# Configure module logger
logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
MAX_WINDOW_ACTIVITIES = 1000
HIGH_VALUE_ACTIVITIES = frozenset(
    {ActivityType.ADD_TO_CART, ActivityType.ADD_TO_WISHLIST, ActivityType.CHECKOUT_START}
)


def _days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / SECONDS_PER_DAY


def group_sessions(events: Sequence[ActivityEvent]) -> Dict[str, List[ActivityEvent]]:
    """Group events by session id, or by user and calendar date when absent."""
    sessions: Dict[str, List[ActivityEvent]] = defaultdict(list)
    for event in events:
        key = event.session_id or f"{event.user_id}_{event.timestamp.date().isoformat()}"
        sessions[key].append(event)
    return sessions


def average_session_duration(events: Sequence[ActivityEvent]) -> float:
    """Mean span in seconds of sessions with more than one event."""
    durations = [
        (max(e.timestamp for e in group) - min(e.timestamp for e in group)).total_seconds()
        for group in group_sessions(events).values()
        if len(group) > 1
    ]
    return sum(durations) / len(durations) if durations else 0.0


def session_metrics(events: Sequence[ActivityEvent]) -> SessionMetrics:
    sessions = group_sessions(events)
    if not sessions:
        return SessionMetrics()
    sizes = [len(group) for group in sessions.values()]
    return SessionMetrics(
        average_session_duration=average_session_duration(events),
        pages_per_session=sum(sizes) / len(sizes),
        bounce_rate=sum(1 for size in sizes if size == 1) / len(sizes),
    )


def recency_score(events: Sequence[ActivityEvent], now: datetime) -> float:
    if not events:
        return 0.0
    days_since = _days_between(max(e.timestamp for e in events), now)
    return max(0.0, 1 - days_since / 30)


def engagement_score(events: Sequence[ActivityEvent], now: datetime) -> float:
    """Blend of activity frequency, high-value ratio and recency, in [0, 1]."""
    if not events:
        return 0.0
    unique_days = len({e.timestamp.date() for e in events})
    frequency = len(events) / max(unique_days, 1)
    high_value_ratio = sum(1 for e in events if e.activity_type in HIGH_VALUE_ACTIVITIES) / len(
        events
    )
    score = frequency * 0.3 + high_value_ratio * 0.4 + recency_score(events, now) * 0.3
    return clamp(score / 10)


def purchase_metrics(orders: Sequence[Order], now: datetime) -> Dict[str, float]:
    """Monthly purchase frequency, average order value and purchase history span."""
    if not orders:
        return {"frequency": 0.0, "average_order_value": 0.0, "days_since_first": 0.0}
    first_purchase = min(o.placed_at for o in orders)
    days_since_first = max(1.0, _days_between(first_purchase, now))
    return {
        "frequency": len(orders) / (days_since_first / 30),
        "average_order_value": sum(o.total for o in orders) / len(orders),
        "days_since_first": days_since_first,
    }


def lifetime_value(orders: Sequence[Order], engagement: float, now: datetime) -> float:
    if not orders:
        return engagement * 500
    metrics = purchase_metrics(orders, now)
    predicted_months = min(24.0, metrics["days_since_first"] / 30 * 2)
    return metrics["average_order_value"] * metrics["frequency"] * predicted_months


def churn_risk(
    events: Sequence[ActivityEvent],
    orders: Sequence[Order],
    last_activity_at: Optional[datetime],
    now: datetime,
) -> float:
    """Risk in [0, 1] that the user disengages; 1.0 without any recorded activity."""
    if last_activity_at is None:
        return 1.0

    risk = 0.0
    days_inactive = _days_between(last_activity_at, now)
    if days_inactive > 30:
        risk += 0.4
    elif days_inactive > 14:
        risk += 0.2

    ages = [_days_between(e.timestamp, now) for e in events]
    recent = sum(1 for age in ages if age < 7)
    older = sum(1 for age in ages if 7 <= age < 14)
    if older > 0 and recent < older * 0.5:
        risk += 0.3

    if orders:
        last_purchase = max(o.placed_at for o in orders)
        if _days_between(last_purchase, now) > 60:
            risk += 0.3

    return clamp(risk)


def behavioral_segment(
    events: Sequence[ActivityEvent], orders: Sequence[Order], now: datetime
) -> BehavioralSegment:
    """Classify by rule precedence; the first matching rule wins."""
    views = sum(1 for e in events if e.activity_type == ActivityType.PRODUCT_VIEW)
    cart_adds = sum(1 for e in events if e.activity_type == ActivityType.ADD_TO_CART)
    purchases = len(orders)
    purchase_ratio = purchases / views if views else 0.0
    cart_ratio = cart_adds / views if views else 0.0
    avg_session = average_session_duration(events)

    if purchases == 0 and views > 20:
        return BehavioralSegment.BROWSER
    if purchase_ratio > 0.1 and avg_session < 300:
        return BehavioralSegment.IMPULSE_BUYER
    if avg_session > 1800 and cart_ratio < 0.1:
        return BehavioralSegment.RESEARCHER
    if purchases >= 3 and _days_between(min(o.placed_at for o in orders), now) > 30:
        return BehavioralSegment.LOYAL_CUSTOMER

    deal_engagement = sum(1 for e in events if e.entity_type in ("coupon", "deal"))
    if deal_engagement > purchases:
        return BehavioralSegment.PRICE_SENSITIVE
    if purchases > 0:
        return BehavioralSegment.BUYER
    return BehavioralSegment.BROWSER


def behavioral_patterns(events: Sequence[ActivityEvent]) -> List[str]:
    if not events:
        return []
    patterns = []
    weekend = sum(1 for e in events if e.timestamp.weekday() >= 5)
    if weekend > len(events) * 0.6:
        patterns.append("weekend_shopper")
    mobile = sum(1 for e in events if e.device_type == "mobile")
    if mobile > len(events) * 0.7:
        patterns.append("mobile_first")
    return patterns


def next_best_actions(segment: BehavioralSegment, risk: float) -> List[str]:
    if risk > 0.7:
        return ["send_winback_email", "offer_discount", "recommend_popular_products"]
    if segment == BehavioralSegment.BROWSER:
        return ["send_first_purchase_incentive", "show_social_proof", "recommend_trending"]
    if segment == BehavioralSegment.LOYAL_CUSTOMER:
        return ["offer_exclusive_preview", "recommend_premium_products", "invite_to_vip_program"]
    if segment == BehavioralSegment.PRICE_SENSITIVE:
        return ["send_sale_notifications", "recommend_deal_products", "offer_bulk_discount"]
    return []


class ProfilingEngine:
    """Builds, caches and segments user profiles."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        preferences: PreferenceEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.preferences = preferences
        self.clock = clock
        self.profiles: StateCache[UserProfile] = StateCache(
            "profiles", ttl_seconds=settings.profile_cache_ttl, clock=clock
        )
        self.segments: Dict[str, UserSegment] = {s.segment_id: s for s in canonical_segments()}

    async def update_user_profile(self, user_id: str) -> UserProfile:
        now = self.clock()
        since = now - timedelta(days=self.settings.profile_window_days)

        async with self.profiles.lock(user_id):
            events = await self.store.find_activities(
                user_id=user_id, since=since, limit=MAX_WINDOW_ACTIVITIES, newest_first=True
            )
            orders = await self.store.find_orders(
                user_id=user_id, statuses=[OrderStatus.DELIVERED]
            )
            last_activity = await self.store.last_activity_at(user_id)
            vector = await self.preferences.build_from_events(user_id, events)

            segment = behavioral_segment(events, orders, now)
            engagement = engagement_score(events, now)
            risk = churn_risk(events, orders, last_activity, now)
            purchases = purchase_metrics(orders, now)

            profile = UserProfile(
                user_id=user_id,
                behavioral_segment=segment,
                preference_vector=vector.weights(),
                engagement_score=engagement,
                lifetime_value=lifetime_value(orders, engagement, now),
                churn_risk=risk,
                purchase_frequency=purchases["frequency"],
                average_order_value=purchases["average_order_value"],
                session_metrics=session_metrics(events),
                next_best_actions=next_best_actions(segment, risk),
                last_updated=now,
                behavioral_patterns=behavioral_patterns(events),
            )
            self.profiles.set(user_id, profile)

        logger.debug(
            "Updated user profile",
            extra={"user_id": user_id, "segment": segment.value, "churn_risk": risk},
        )
        return profile

    async def update_user_profiles(self) -> int:
        """Refresh profiles of recently active users, then segment counts."""
        since = self.clock() - timedelta(days=self.settings.profile_window_days)
        user_ids = await self.store.active_user_ids(since, limit=self.settings.max_profiled_users)
        logger.info(f"Updating profiles for {len(user_ids)} active users")

        updated = await run_in_batches(
            user_ids,
            self.update_user_profile,
            self.settings.profile_batch_size,
            label="profile update",
        )
        self.update_user_segments()
        return updated

    def update_user_segments(self) -> List[UserSegment]:
        profiles = self.profiles.values()
        for segment in self.segments.values():
            segment.user_count = sum(1 for p in profiles if segment.matches(p))
        return list(self.segments.values())

    async def get_user_profile(self, user_id: str) -> UserProfile:
        cached = self.profiles.get(user_id)
        if cached is not None:
            return cached
        return await self.update_user_profile(user_id)

    async def refresh_user_profile(self, user_id: str) -> UserProfile:
        self.profiles.delete(user_id)
        return await self.update_user_profile(user_id)

    def get_user_segments(self) -> List[UserSegment]:
        return list(self.segments.values())

    def get_users_in_segment(self, segment_id: str) -> List[UserProfile]:
        segment = self.segments.get(segment_id)
        if segment is None:
            return []
        return [p for p in self.profiles.values() if segment.matches(p)]

    def get_profiling_analytics(self) -> Dict[str, Any]:
        profiles = self.profiles.values()
        segment_distribution: Dict[str, int] = defaultdict(int)
        churn_distribution = {"low": 0, "medium": 0, "high": 0}

        for profile in profiles:
            segment_distribution[profile.behavioral_segment.value] += 1
            if profile.churn_risk < 0.3:
                churn_distribution["low"] += 1
            elif profile.churn_risk < 0.7:
                churn_distribution["medium"] += 1
            else:
                churn_distribution["high"] += 1

        average_engagement = (
            sum(p.engagement_score for p in profiles) / len(profiles) if profiles else 0.0
        )
        return {
            "total_profiles": len(profiles),
            "segment_distribution": dict(segment_distribution),
            "churn_risk_distribution": churn_distribution,
            "average_engagement": average_engagement,
            "last_update": self.clock().isoformat(),
        }
