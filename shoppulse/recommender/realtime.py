"""Real-time analytics driven by incoming activity events.

Each event enqueues a ``process-activity`` job that folds it into the
actor's preference vector, the product's rolling trending metrics and the
anomaly detectors. High-intent events additionally enqueue a
``real-time-update`` job that refreshes the shopper's recommendations.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from shoppulse.config import Settings
from shoppulse.recommender.cache import StateCache
from shoppulse.recommender.jobs import Job, JobQueue
from shoppulse.recommender.models import ActivityEvent, ActivityType, utcnow
from shoppulse.recommender.preferences import PreferenceEngine
from shoppulse.recommender.store import EventStore

# Configure module logger
logger = logging.getLogger(__name__)

PROCESS_ACTIVITY_JOB = "process-activity"
REAL_TIME_UPDATE_JOB = "real-time-update"

HOT_UPDATE_ACTIVITIES = frozenset(
    {
        ActivityType.PRODUCT_VIEW,
        ActivityType.ADD_TO_CART,
        ActivityType.CHECKOUT_START,
        ActivityType.ADD_TO_WISHLIST,
    }
)
PRIORITY_BY_ACTIVITY = {ActivityType.ADD_TO_CART: 10, ActivityType.PRODUCT_VIEW: 5}
DEFAULT_PRIORITY = 5
REAL_TIME_ATTEMPTS = 3

ROLLING_WINDOW_SECONDS = 3600
TRENDING_ALERT_SCORE = 0.8
VIEW_SPIKE_RATIO = 3
HIGH_SEVERITY_SPIKE_RATIO = 5
CART_ABANDONMENT_ALERT = 0.7
ANOMALY_HISTORY = 1000


@dataclass
class RollingTrend:
    product_id: str
    views: int = 0
    purchases: int = 0
    velocity: float = 0.0
    score: float = 0.0
    time_window: str = "1h"


@dataclass
class Anomaly:
    type: str
    entity_id: str
    entity_type: str
    severity: str
    description: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


def rolling_trending_score(trend: RollingTrend) -> float:
    view_score = min(trend.views / 100, 1)
    purchase_score = min(trend.purchases / 10, 1)
    velocity_score = min(trend.velocity, 1)
    return view_score * 0.4 + purchase_score * 0.4 + velocity_score * 0.2


def job_priority(activity_type: ActivityType) -> int:
    return PRIORITY_BY_ACTIVITY.get(activity_type, DEFAULT_PRIORITY)


class RealtimeAnalytics:
    """Event hook feeding the preference, trending and anomaly state."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        queue: JobQueue,
        preferences: PreferenceEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.queue = queue
        self.preferences = preferences
        self.clock = clock
        self.trending: StateCache[RollingTrend] = StateCache(
            "rolling-trending", ttl_seconds=ROLLING_WINDOW_SECONDS, clock=clock
        )
        self.anomalies: Deque[Anomaly] = deque(maxlen=ANOMALY_HISTORY)
        queue.register(PROCESS_ACTIVITY_JOB, self.process_activity)

    def on_activity(self, event: ActivityEvent) -> List[Job]:
        """Enqueue the processing jobs for one event."""
        jobs = [
            self.queue.add(
                PROCESS_ACTIVITY_JOB, {"event": event}, priority=job_priority(event.activity_type)
            )
        ]

        if event.activity_type in HOT_UPDATE_ACTIVITIES:
            jobs.append(
                self.queue.add(
                    REAL_TIME_UPDATE_JOB,
                    {
                        "user_id": event.user_id,
                        "session_id": event.session_id,
                        "activity_type": event.activity_type.value,
                        "entity_id": event.entity_id,
                    },
                    priority=job_priority(event.activity_type),
                    attempts=REAL_TIME_ATTEMPTS,
                    backoff_seconds=self.settings.backoff_base_seconds,
                )
            )
        return jobs

    async def process_activity(self, job: Job) -> None:
        event: ActivityEvent = job.data["event"]
        await self.preferences.update_on_event(event)
        self.update_trending(event)
        await self.detect_anomalies(event)

    def update_trending(self, event: ActivityEvent) -> Optional[RollingTrend]:
        if not event.is_product_event:
            return None

        product_id = event.entity_id
        trend = self.trending.get(product_id) or RollingTrend(product_id=product_id)
        if event.activity_type == ActivityType.PRODUCT_VIEW:
            trend.views += 1
        elif event.activity_type == ActivityType.CHECKOUT_COMPLETE:
            trend.purchases += 1

        age_minutes = (self.clock() - event.timestamp).total_seconds() / 60
        trend.velocity += max(0.0, 1 - age_minutes / 60)
        trend.score = rolling_trending_score(trend)
        self.trending.set(product_id, trend)

        if trend.score > TRENDING_ALERT_SCORE:
            logger.info(
                "Product crossed the trending threshold",
                extra={"product_id": product_id, "score": trend.score},
            )
        return trend

    async def cart_abandonment_risk(self, user_id: str) -> float:
        since = self.clock() - timedelta(hours=24)
        cart_adds = await self.store.count_activities(
            user_id=user_id, activity_types=[ActivityType.ADD_TO_CART], since=since
        )
        if cart_adds == 0:
            return 0.0
        checkouts = await self.store.count_activities(
            user_id=user_id, activity_types=[ActivityType.CHECKOUT_COMPLETE], since=since
        )
        return max(0.0, 1 - checkouts / cart_adds)

    async def detect_anomalies(self, event: ActivityEvent) -> List[Anomaly]:
        now = self.clock()
        detected = []

        if event.activity_type == ActivityType.PRODUCT_VIEW and event.entity_id:
            views = [ActivityType.PRODUCT_VIEW]
            recent_views = await self.store.count_activities(
                entity_id=event.entity_id, activity_types=views, since=now - timedelta(hours=1)
            )
            weekly_views = await self.store.count_activities(
                entity_id=event.entity_id, activity_types=views, since=now - timedelta(days=7)
            )
            average_views = weekly_views / 7
            if recent_views > average_views * VIEW_SPIKE_RATIO:
                severity = "high" if recent_views > average_views * HIGH_SEVERITY_SPIKE_RATIO else "medium"
                detected.append(
                    Anomaly(
                        type="spike",
                        entity_id=event.entity_id,
                        entity_type="product",
                        severity=severity,
                        description=f"Product views spike: {recent_views} vs avg {average_views:.1f}",
                        timestamp=now,
                        details={"recent_views": recent_views, "average_views": average_views},
                    )
                )

        if event.activity_type == ActivityType.ADD_TO_CART and event.user_id:
            risk = await self.cart_abandonment_risk(event.user_id)
            if risk > CART_ABANDONMENT_ALERT:
                detected.append(
                    Anomaly(
                        type="unusual_pattern",
                        entity_id=event.user_id,
                        entity_type="user",
                        severity="medium",
                        description=f"High cart abandonment risk: {risk:.2f}",
                        timestamp=now,
                        details={"cart_abandonment_risk": risk},
                    )
                )

        for anomaly in detected:
            logger.warning(
                anomaly.description,
                extra={"anomaly_type": anomaly.type, "entity_id": anomaly.entity_id, "severity": anomaly.severity},
            )
            self.anomalies.append(anomaly)
        return detected

    def get_trending_snapshot(self, limit: int = 20) -> List[RollingTrend]:
        trends = sorted(self.trending.values(), key=lambda t: t.score, reverse=True)
        return trends[:limit]

    def get_recent_anomalies(self, limit: int = 50) -> List[Anomaly]:
        return list(self.anomalies)[-limit:][::-1]
