"""Scheduled and queued recommendation tasks.

Cron triggers enqueue work on the ``JobQueue`` (or run light passes
directly); the queue handlers below do the heavy lifting:

- ``real-time-update``: refresh one shopper's personalized list.
- ``batch-generation``: regenerate a recommendation type in bulk.
- ``model-training``: retrain one model.
- ``data-cleanup``: purge records older than the retention period.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from shoppulse.config import Settings
from shoppulse.exceptions import ComputationError
from shoppulse.recommender.jobs import Job, JobQueue, Scheduler, run_in_batches
from shoppulse.recommender.models import (
    OrderStatus,
    Recommendation,
    RecommendationBatch,
    RecommendationType,
    new_id,
    utcnow,
)
from shoppulse.recommender.preferences import PreferenceEngine
from shoppulse.recommender.profiling import ProfilingEngine
from shoppulse.recommender.realtime import REAL_TIME_UPDATE_JOB
from shoppulse.recommender.store import (
    ACTIVITY_TABLE,
    BROWSING_HISTORY_TABLE,
    RECOMMENDATION_TABLE,
    EventStore,
)
from shoppulse.recommender.strategies import StrategyResolver
from shoppulse.recommender.train import MODEL_TYPES, ModelTrainer
from shoppulse.recommender.trends import TrendEngine

# Configure module logger
logger = logging.getLogger(__name__)

BATCH_GENERATION_JOB = "batch-generation"
MODEL_TRAINING_JOB = "model-training"
DATA_CLEANUP_JOB = "data-cleanup"

PERSONALIZED_ALGORITHM = "hybrid-svd-v1.0"
BATCH_ALGORITHMS = {
    RecommendationType.PERSONALIZED: PERSONALIZED_ALGORITHM,
    RecommendationType.TRENDING: "velocity-v1.0",
    RecommendationType.TOP_RATED: "rating-v1.0",
}
CLEANUP_TABLES = (ACTIVITY_TABLE, BROWSING_HISTORY_TABLE, RECOMMENDATION_TABLE)

HOT_PRIORITY = 10
# Below every real-time update (5 and up)
BATCH_PRIORITY = 4
BATCH_ATTEMPTS = 2
TRAINING_PRIORITY = 3
CLEANUP_PRIORITY = 1
# Only orders in these states mark a product as already bought
PURCHASED_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


class RecommendationTasks:
    """Handlers behind the job queue and the cron schedule."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        queue: JobQueue,
        resolver: StrategyResolver,
        preferences: PreferenceEngine,
        trends: TrendEngine,
        profiling: ProfilingEngine,
        trainer: ModelTrainer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.queue = queue
        self.resolver = resolver
        self.preferences = preferences
        self.trends = trends
        self.profiling = profiling
        self.trainer = trainer
        self.clock = clock

        queue.register(REAL_TIME_UPDATE_JOB, self.process_real_time_update)
        queue.register(BATCH_GENERATION_JOB, self.process_batch_generation)
        queue.register(MODEL_TRAINING_JOB, self.process_model_training)
        queue.register(DATA_CLEANUP_JOB, self.process_data_cleanup)

    def register_schedules(self, scheduler: Scheduler) -> None:
        s = self.settings
        scheduler.add("hot-recommendations", s.hot_recommendations_cron, self.queue_hot_recommendations)
        scheduler.add("trend-detection", s.trend_detection_cron, self.trends.detect_trends)
        scheduler.add("user-profiling", s.profiling_cron, self.profiling.update_user_profiles)
        scheduler.add("daily-recommendations", s.daily_batch_cron, self.queue_daily_batches)
        scheduler.add("weekly-model-training", s.weekly_training_cron, self.queue_model_training)
        scheduler.add("daily-cleanup", s.cleanup_cron, self.queue_cleanup)

    # ------------------------------------------------------------------
    # Cron triggers
    # ------------------------------------------------------------------

    async def queue_hot_recommendations(self) -> List[Job]:
        """Refresh recommendations for the most recently active users."""
        since = self.clock() - timedelta(minutes=self.settings.hot_users_window_minutes)
        user_ids = await self.store.active_user_ids(since=since, limit=self.settings.hot_users_limit)
        jobs = [
            self.queue.add(
                REAL_TIME_UPDATE_JOB,
                {"user_id": user_id, "activity_type": "hot_refresh"},
                priority=HOT_PRIORITY,
                attempts=3,
                backoff_seconds=self.settings.backoff_base_seconds,
            )
            for user_id in user_ids
        ]
        logger.info(f"Queued hot recommendation updates for {len(jobs)} active users")
        return jobs

    async def queue_daily_batches(self) -> List[Job]:
        jobs = []
        for i, (recommendation_type, algorithm) in enumerate(BATCH_ALGORITHMS.items()):
            jobs.append(
                self.queue.add(
                    BATCH_GENERATION_JOB,
                    {
                        "type": recommendation_type.value,
                        "batch_size": self.settings.batch_size,
                        "algorithm_version": algorithm,
                    },
                    priority=BATCH_PRIORITY,
                    attempts=BATCH_ATTEMPTS,
                    backoff_seconds=self.settings.backoff_base_seconds,
                    delay_seconds=i * self.settings.batch_stagger_seconds,
                )
            )
        logger.info("Queued daily recommendation batches")
        return jobs

    async def queue_model_training(self) -> List[Job]:
        jobs = [
            self.queue.add(
                MODEL_TRAINING_JOB,
                {"model_type": model_type, "data_window": "weekly", "force": False},
                priority=TRAINING_PRIORITY,
                attempts=1,
                delay_seconds=i * self.settings.training_stagger_seconds,
            )
            for i, model_type in enumerate(MODEL_TYPES)
        ]
        logger.info("Queued weekly model training")
        return jobs

    async def queue_cleanup(self) -> Job:
        return self.queue.add(
            DATA_CLEANUP_JOB,
            {
                "operation": "archive",
                "days_to_keep": self.settings.retention_days,
                "tables": list(CLEANUP_TABLES),
            },
            priority=CLEANUP_PRIORITY,
            attempts=1,
        )

    # ------------------------------------------------------------------
    # Queue handlers
    # ------------------------------------------------------------------

    async def process_real_time_update(self, job: Job) -> int:
        user_id = job.data.get("user_id")
        if not user_id:
            # Anonymous shoppers are served by the on-demand fallbacks
            logger.debug(
                "Skipping real-time update for anonymous session",
                extra={"session_id": job.data.get("session_id")},
            )
            return 0
        return await self.generate_personalized(user_id)

    async def generate_personalized(self, user_id: str, batch_id: Optional[str] = None) -> int:
        """Persist a fresh personalized list for one user.

        Returns:
            Number of records stored (0 when there is no signal for the user).
        """
        vector = await self.preferences.get_preferences(user_id)
        products = await self.store.find_products()
        orders = await self.store.find_orders(user_id=user_id, statuses=PURCHASED_STATUSES)
        purchased = {item.product_id for order in orders for item in order.items}

        scored = self.trainer.personalizer.recommend(
            user_id,
            products,
            preferences=vector.weights(),
            purchased_product_ids=purchased,
            top_n=self.settings.max_limit,
        )
        if not scored:
            return 0

        now = self.clock()
        records = [
            Recommendation(
                user_id=user_id,
                recommended_product_id=product_id,
                recommendation_type=RecommendationType.PERSONALIZED,
                score=score,
                position=position,
                algorithm_version=PERSONALIZED_ALGORITHM,
                metadata={"batch_id": batch_id, **breakdown} if batch_id else dict(breakdown),
                expires_at=now + timedelta(hours=self.settings.recommendation_ttl_hours),
                created_at=now,
            )
            for position, (product_id, score, breakdown) in enumerate(scored, start=1)
        ]
        return await self.store.save_recommendations(records)

    async def process_batch_generation(self, job: Job) -> int:
        recommendation_type = RecommendationType(job.data["type"])
        batch_size = job.data.get("batch_size", self.settings.batch_size)
        now = self.clock()
        batch = await self.store.create_batch(
            RecommendationBatch(
                batch_type=recommendation_type,
                algorithm_version=job.data.get(
                    "algorithm_version", BATCH_ALGORITHMS.get(recommendation_type, "")
                ),
                started_at=now,
            )
        )
        logger.info(
            f"Generating {recommendation_type.value} recommendations",
            extra={"batch_id": batch.id, "batch_size": batch_size},
        )

        if recommendation_type == RecommendationType.PERSONALIZED:
            total = await self._generate_personalized_batch(batch.id, batch_size)
        else:
            total = await self._generate_global_batch(recommendation_type, batch.id)

        await self.store.complete_batch(batch.id, total, self.clock())
        logger.info(
            f"Generated {total} {recommendation_type.value} recommendations",
            extra={"batch_id": batch.id},
        )
        return total

    async def _generate_personalized_batch(self, batch_id: str, batch_size: int) -> int:
        since = self.clock() - timedelta(days=self.settings.profile_window_days)
        user_ids = await self.store.active_user_ids(since=since, limit=batch_size)
        total = 0

        async def generate(user_id: str) -> None:
            nonlocal total
            generated = await self.generate_personalized(user_id, batch_id=batch_id)
            total += generated

        await run_in_batches(
            user_ids, generate, self.settings.profile_batch_size, label="personalized batch"
        )
        return total

    async def _generate_global_batch(
        self, recommendation_type: RecommendationType, batch_id: str
    ) -> int:
        compute = {
            RecommendationType.TRENDING: self.resolver.compute_trending,
            RecommendationType.TOP_RATED: self.resolver.compute_top_rated,
        }.get(recommendation_type)
        if compute is None:
            raise ValueError(f"Batch generation not supported for {recommendation_type.value}")

        try:
            results = await compute(None, self.settings.max_limit)
        except ComputationError as e:
            logger.info(
                f"No {recommendation_type.value} recommendations to store",
                extra={"reason": e.message},
            )
            return 0

        now = self.clock()
        for position, rec in enumerate(results, start=1):
            rec.id = new_id()
            rec.position = position
            rec.metadata = {**rec.metadata, "batch_id": batch_id}
            rec.expires_at = now + timedelta(hours=self.settings.recommendation_ttl_hours)
            rec.created_at = now
        return await self.store.save_recommendations(results)

    async def process_model_training(self, job: Job) -> bool:
        return await self.trainer.train(
            job.data["model_type"],
            data_window=job.data.get("data_window", "weekly"),
            force=job.data.get("force", False),
        )

    async def process_data_cleanup(self, job: Job) -> int:
        days_to_keep = job.data.get("days_to_keep", self.settings.retention_days)
        cutoff = self.clock() - timedelta(days=days_to_keep)
        removed = 0
        for table in job.data.get("tables", CLEANUP_TABLES):
            count = await self.store.purge(table, cutoff)
            logger.info(f"Purged {count} records from {table}", extra={"cutoff": cutoff.isoformat()})
            removed += count

        pruned = sum(
            cache.prune()
            for cache in (
                self.preferences.cache,
                self.trends.trends,
                self.trends.seasonal,
                self.profiling.profiles,
            )
        )
        logger.info(f"Pruned {pruned} expired cache entries")
        return removed
