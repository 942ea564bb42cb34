"""Recommendation engine facade.

Wires the store, engines, job queue and scheduler together and exposes the
query API, the activity event hook and the introspection calls used by the
HTTP layer and the CLI.

Example:
    engine = build_engine()
    await engine.start()
    recs = await engine.get_recommendations("trending", limit=5)
"""

import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from shoppulse.config import Settings, get_settings
from shoppulse.recommender.jobs import Job, JobListener, JobQueue, Scheduler
from shoppulse.recommender.models import (
    ActivityEvent,
    ActivityType,
    Recommendation,
    RecommendationType,
    SeasonalPattern,
    TrendAnalysis,
    UserProfile,
    utcnow,
)
from shoppulse.recommender.preferences import PreferenceEngine
from shoppulse.recommender.profiling import ProfilingEngine
from shoppulse.recommender.realtime import Anomaly, RealtimeAnalytics
from shoppulse.recommender.segments import UserSegment
from shoppulse.recommender.store import EventStore, InMemoryEventStore
from shoppulse.recommender.strategies import (
    RecommendationRequest,
    Resolution,
    StrategyResolver,
)
from shoppulse.recommender.tasks import RecommendationTasks
from shoppulse.recommender.train import ModelTrainer
from shoppulse.recommender.trends import TrendEngine

# Configure module logger
logger = logging.getLogger(__name__)


class RecommendationEngine:
    """Single entry point over the recommendation pipeline."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        job_listener: Optional[JobListener] = None,
        scheduler_listener: Optional[Callable[[str, bool, float], None]] = None,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

        self.queue = JobQueue(
            timeout_seconds=settings.job_timeout_seconds, listener=job_listener
        )
        self.scheduler = Scheduler(clock=clock, listener=scheduler_listener)

        self.preferences = PreferenceEngine(store, settings, clock=clock, rng=rng)
        self.trends = TrendEngine(store, settings, clock=clock)
        self.profiling = ProfilingEngine(store, settings, self.preferences, clock=clock)
        self.resolver = StrategyResolver(store, settings, clock=clock)
        self.trainer = ModelTrainer(store, settings, self.trends, clock=clock)
        self.realtime = RealtimeAnalytics(
            store, settings, self.queue, self.preferences, clock=clock
        )
        self.tasks = RecommendationTasks(
            store,
            settings,
            self.queue,
            self.resolver,
            self.preferences,
            self.trends,
            self.profiling,
            self.trainer,
            clock=clock,
        )
        self.tasks.register_schedules(self.scheduler)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.queue.start(self.settings.queue_workers)
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        logger.info("Recommendation engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop()
        logger.info("Recommendation engine stopped")

    async def process_pending(self) -> None:
        """Run queued jobs (and their retries) to completion."""
        await self.queue.drain()

    # ------------------------------------------------------------------
    # Event hook
    # ------------------------------------------------------------------

    async def on_activity(self, event: ActivityEvent) -> List[Job]:
        """Record an activity event and enqueue its processing jobs.

        Product views update the browsing history; completed checkouts mark
        matching history entries as converted.

        Returns:
            The jobs enqueued for the event.
        """
        await self.store.record_activity(event)

        if event.activity_type == ActivityType.PRODUCT_VIEW and event.is_product_event:
            await self.store.upsert_browsing_history(event)
        elif event.activity_type == ActivityType.CHECKOUT_COMPLETE:
            await self.store.mark_conversion(
                user_id=event.user_id,
                session_id=event.session_id,
                product_id=event.entity_id if event.is_product_event else None,
            )

        jobs = self.realtime.on_activity(event)
        logger.debug(
            "Activity recorded",
            extra={
                "activity_type": event.activity_type.value,
                "actor_id": event.actor_id,
                "jobs": len(jobs),
            },
        )
        return jobs

    # ------------------------------------------------------------------
    # Query API
    # ------------------------------------------------------------------

    async def get_recommendations(
        self,
        recommendation_type: Union[str, RecommendationType],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        product_id: Optional[str] = None,
        category_id: Optional[str] = None,
        limit: Optional[int] = None,
        include_product_details: bool = True,
    ) -> List[Recommendation]:
        return await self.resolver.get_recommendations(
            recommendation_type,
            user_id=user_id,
            session_id=session_id,
            product_id=product_id,
            category_id=category_id,
            limit=limit,
            include_product_details=include_product_details,
        )

    async def resolve(self, request: RecommendationRequest) -> Resolution:
        return await self.resolver.resolve(request)

    async def mark_interaction(self, recommendation_id: str, kind: str) -> Recommendation:
        return await self.resolver.mark_interaction(recommendation_id, kind)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_user_profile(self, user_id: str) -> UserProfile:
        return await self.profiling.get_user_profile(user_id)

    def get_user_segments(self) -> List[UserSegment]:
        return self.profiling.get_user_segments()

    def get_users_in_segment(self, segment_id: str) -> List[UserProfile]:
        return self.profiling.get_users_in_segment(segment_id)

    def get_profiling_analytics(self) -> Dict[str, Any]:
        return self.profiling.get_profiling_analytics()

    async def get_product_trend(self, product_id: str) -> Optional[TrendAnalysis]:
        return await self.trends.get_product_trend(product_id)

    def get_seasonal_patterns(self, entity_id: str, entity_type: str = "product") -> List[SeasonalPattern]:
        return self.trends.get_seasonal_patterns(entity_id, entity_type)

    def get_trending_products_ml(self, limit: int = 20) -> List[TrendAnalysis]:
        return self.trends.get_trending_products_ml(limit)

    def get_predictions(self) -> List[Dict[str, Any]]:
        return self.trends.get_predictions()

    def get_recent_anomalies(self, limit: int = 50) -> List[Anomaly]:
        return self.realtime.get_recent_anomalies(limit)

    def status(self) -> Dict[str, Any]:
        return {
            "queue_size": self.queue.size,
            "jobs_completed": len(self.queue.completed),
            "jobs_failed": len(self.queue.failed),
            "models": {name: ts.isoformat() for name, ts in self.trainer.trained_at.items()},
            "schedule": self.scheduler.status(),
        }


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[EventStore] = None,
    clock: Callable[[], datetime] = utcnow,
    rng: Optional[random.Random] = None,
    job_listener: Optional[JobListener] = None,
    scheduler_listener: Optional[Callable[[str, bool, float], None]] = None,
) -> RecommendationEngine:
    """Build an engine, loading CSV seed data when ``settings.data_dir`` is set."""
    settings = settings or get_settings()
    if store is None:
        if settings.data_dir:
            logger.info(f"Loading seed data from {settings.data_dir}")
            store = InMemoryEventStore.from_csv_dir(settings.data_dir)
        else:
            store = InMemoryEventStore()
    return RecommendationEngine(
        store,
        settings,
        clock=clock,
        rng=rng,
        job_listener=job_listener,
        scheduler_listener=scheduler_listener,
    )
