"""Trend detection engine.

Classifies every recently active product as rising, falling, stable or
volatile from its daily activity series, predicts the short-term direction
from momentum, tags contributing factors and detects weekly, monthly and
quarterly seasonality for products, categories and brands.

Results are transient cache state: they can be recomputed from the activity
history at any time.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from shoppulse.config import Settings
from shoppulse.exceptions import PersistenceError
from shoppulse.recommender.cache import StateCache
from shoppulse.recommender.jobs import run_in_batches
from shoppulse.recommender.models import (
    Direction,
    SeasonalPattern,
    TrendAnalysis,
    TrendType,
    WindowMetrics,
    utcnow,
)
from shoppulse.recommender.store import EventStore

# Configure module logger
logger = logging.getLogger(__name__)

# Window lengths in days: (recent, historical); None means the whole series
HORIZONS = {
    "short": (1, 7),
    "medium": (7, 30),
    "long": (30, None),
}

VOLATILE_THRESHOLD = 0.5
SLOPE_THRESHOLD = 0.1
MOMENTUM_PERIOD = 3
MOMENTUM_THRESHOLD = 0.1
STABLE_CONFIDENCE = 0.5
VIRAL_SPIKE_RATIO = 1.5
WEEKEND_RATIO = 1.3
PEAK_RATIO = 1.2

SEASONAL_ENTITY_TYPES = ("product", "category", "brand")
# pattern -> (bucket count, retention threshold)
SEASONAL_PATTERNS = {
    "weekly": (7, 0.3),
    "monthly": (31, 0.3),
    "quarterly": (4, 0.4),
}


def window_metrics(recent: np.ndarray, historical: np.ndarray) -> WindowMetrics:
    """Slope, R² and volatility of a recent window against a historical one.

    ``slope`` is the difference of the window means divided by the
    historical length; ``r2`` is the coefficient of determination of a
    least-squares line fitted over the historical window; ``volatility`` is
    the coefficient of variation of the recent window.
    """
    if len(recent) == 0 or len(historical) == 0:
        return WindowMetrics()

    slope = (recent.mean() - historical.mean()) / len(historical)

    r2 = 0.0
    if len(historical) >= 2 and np.ptp(historical) > 0:
        regression = stats.linregress(np.arange(len(historical)), historical)
        r2 = float(regression.rvalue ** 2)

    volatility = 0.0
    if len(recent) >= 2 and recent.mean() > 0:
        volatility = float(recent.std() / recent.mean())

    return WindowMetrics(slope=float(slope), r2=r2, volatility=volatility)


def classify_trend(horizons: Dict[str, WindowMetrics]) -> TrendType:
    metrics = list(horizons.values())
    avg_volatility = sum(m.volatility for m in metrics) / len(metrics)
    if avg_volatility > VOLATILE_THRESHOLD:
        return TrendType.VOLATILE

    avg_slope = sum(m.slope for m in metrics) / len(metrics)
    if avg_slope > SLOPE_THRESHOLD:
        return TrendType.RISING
    if avg_slope < -SLOPE_THRESHOLD:
        return TrendType.FALLING
    return TrendType.STABLE


def trend_strength(horizons: Dict[str, WindowMetrics]) -> float:
    metrics = list(horizons.values())
    avg_slope = abs(sum(m.slope for m in metrics) / len(metrics))
    avg_r2 = sum(m.r2 for m in metrics) / len(metrics)
    return min(1.0, avg_slope * avg_r2)


def predict_direction(counts: np.ndarray) -> tuple:
    """Momentum of the last three days against the three before them.

    Returns:
        ``(Direction, confidence)``. Confidence is 0 when there is no data.
    """
    if len(counts) < 2 * MOMENTUM_PERIOD or counts.sum() == 0:
        return Direction.STABLE, 0.0

    recent_avg = counts[-MOMENTUM_PERIOD:].mean()
    older_avg = counts[-2 * MOMENTUM_PERIOD : -MOMENTUM_PERIOD].mean()

    if older_avg == 0:
        change = float("inf") if recent_avg > 0 else 0.0
    else:
        change = (recent_avg - older_avg) / older_avg

    if change > MOMENTUM_THRESHOLD:
        return Direction.UP, min(1.0, abs(change))
    if change < -MOMENTUM_THRESHOLD:
        return Direction.DOWN, min(1.0, abs(change))
    return Direction.STABLE, STABLE_CONFIDENCE


def identify_factors(series: pd.Series) -> List[str]:
    """Qualitative tags explaining the recent movement of a daily series."""
    factors = []
    recent = series.iloc[-7:]
    older = series.iloc[-14:-7]

    recent_peak = recent.max() if len(recent) else 0
    older_peak = older.max() if len(older) else 0
    if recent_peak > 0 and recent_peak >= older_peak * VIRAL_SPIKE_RATIO:
        factors.append("viral_spike")

    is_weekend = recent.index.dayofweek >= 5
    weekend = recent[is_weekend]
    weekday = recent[~is_weekend]
    if len(weekend) and len(weekday):
        weekend_avg = weekend.mean()
        if weekend_avg > 0 and weekend_avg >= weekday.mean() * WEEKEND_RATIO:
            factors.append("weekend_popularity")

    return factors


def bucket_pattern(counts: np.ndarray) -> Dict[str, Any]:
    """Amplitude, peaks and phase of a bucketed activity histogram."""
    peak = counts.max() if len(counts) else 0
    amplitude = float((peak - counts.min()) / peak) if peak > 0 else 0.0
    mean = counts.mean() if len(counts) else 0
    peak_periods = [int(i) for i in np.flatnonzero(counts > mean * PEAK_RATIO)]
    return {
        "peak_periods": peak_periods,
        "amplitude": amplitude,
        "phase": peak_periods[0] if peak_periods else 0,
    }


class TrendEngine:
    """Computes and caches product trends and seasonal patterns."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.trends: StateCache[TrendAnalysis] = StateCache(
            "trends", ttl_seconds=settings.trend_cache_ttl, clock=clock
        )
        self.seasonal: StateCache[SeasonalPattern] = StateCache(
            "seasonal", ttl_seconds=settings.trend_cache_ttl, clock=clock
        )
        self.predictions: List[Dict[str, Any]] = []

    async def daily_series(self, product_id: str, days: Optional[int] = None) -> pd.Series:
        """Dense daily activity counts for a product, oldest day first."""
        days = days or self.settings.trend_window_days
        today = pd.Timestamp(self.clock()).normalize()
        index = pd.date_range(end=today, periods=days, freq="D")

        events = await self.store.find_activities(
            entity_id=product_id,
            entity_type="product",
            since=index[0].to_pydatetime(),
        )
        if not events:
            return pd.Series(0, index=index, dtype=float)

        stamps = pd.to_datetime([e.timestamp for e in events], utc=True).normalize()
        counts = pd.Series(1, index=stamps).groupby(level=0).sum()
        return counts.reindex(index, fill_value=0).astype(float)

    async def analyze_product_trend(self, product_id: str) -> TrendAnalysis:
        series = await self.daily_series(product_id)
        counts = series.to_numpy()

        horizons = {}
        for name, (recent_days, historical_days) in HORIZONS.items():
            historical = counts if historical_days is None else counts[-historical_days:]
            horizons[name] = window_metrics(counts[-recent_days:], historical)

        direction, confidence = predict_direction(counts)
        product = await self.store.get_product(product_id)

        return TrendAnalysis(
            product_id=product_id,
            trend_type=classify_trend(horizons),
            trend_strength=trend_strength(horizons),
            predicted_direction=direction,
            confidence=confidence,
            factors=identify_factors(series),
            last_calculated=self.clock(),
            horizons=horizons,
            category_id=product.category_id if product else None,
        )

    async def detect_trends(self) -> int:
        """Recompute trends for every product active in the trailing window."""
        since = self.clock() - timedelta(days=self.settings.trend_window_days)
        product_ids = await self.store.distinct_entities("product", since)
        logger.info(f"Detecting trends for {len(product_ids)} products")

        async def analyze(product_id: str) -> None:
            self.trends.set(product_id, await self.analyze_product_trend(product_id))

        analyzed = await run_in_batches(
            product_ids, analyze, self.settings.profile_batch_size, label="trend detection"
        )
        await self.detect_seasonal_patterns()
        self.predict_future_trends()
        return analyzed

    async def analyze_seasonal_patterns(
        self, entity_id: str, entity_type: str
    ) -> List[SeasonalPattern]:
        since = self.clock() - timedelta(days=self.settings.seasonal_window_days)
        events = await self.store.find_activities(
            entity_id=entity_id, entity_type=entity_type, since=since
        )
        if not events:
            return []

        stamps = pd.DatetimeIndex(pd.to_datetime([e.timestamp for e in events], utc=True))
        buckets = {
            "weekly": stamps.dayofweek,
            "monthly": stamps.day - 1,
            "quarterly": stamps.quarter - 1,
        }

        patterns = []
        for name, (size, threshold) in SEASONAL_PATTERNS.items():
            counts = np.bincount(np.asarray(buckets[name]), minlength=size)[:size]
            shape = bucket_pattern(counts.astype(float))
            if shape["amplitude"] > threshold:
                patterns.append(
                    SeasonalPattern(
                        entity_id=entity_id,
                        entity_type=entity_type,
                        pattern=name,
                        confidence=shape["amplitude"],
                        **shape,
                    )
                )
        return patterns

    async def detect_seasonal_patterns(self) -> int:
        since = self.clock() - timedelta(days=self.settings.seasonal_window_days)
        detected = 0
        for entity_type in SEASONAL_ENTITY_TYPES:
            entity_ids = await self.store.distinct_entities(entity_type, since)

            async def analyze(entity_id: str, entity_type: str = entity_type) -> None:
                for pattern in await self.analyze_seasonal_patterns(entity_id, entity_type):
                    key = f"{entity_type}:{entity_id}:{pattern.pattern}"
                    self.seasonal.set(key, pattern)

            detected += await run_in_batches(
                entity_ids,
                analyze,
                self.settings.profile_batch_size,
                label=f"{entity_type} seasonality",
            )
        logger.debug(f"Seasonal analysis covered {detected} entities")
        return detected

    def predict_future_trends(self) -> List[Dict[str, Any]]:
        """Keep forward-looking predictions for confidently classified trends."""
        self.predictions = [
            {
                "product_id": trend.product_id,
                "predicted_trend": trend.predicted_direction.value,
                "confidence": trend.confidence,
                "time_horizon": "7d",
                "factors": list(trend.factors),
            }
            for trend in self.trends.values()
            if trend.confidence > self.settings.prediction_confidence_threshold
        ]
        logger.debug(f"Generated {len(self.predictions)} trend predictions")
        return self.predictions

    # Public reads

    async def get_product_trend(self, product_id: str) -> Optional[TrendAnalysis]:
        """Cached trend, computed on demand when absent.

        Products without activity get a stable, zero-confidence trend. Returns
        None only when the store cannot be read.
        """
        cached = self.trends.get(product_id)
        if cached is not None:
            return cached
        try:
            return await self.recalculate_product_trend(product_id)
        except PersistenceError as e:
            logger.warning(
                "Trend unavailable", extra={"product_id": product_id, "error": e.message}
            )
            return None

    async def recalculate_product_trend(self, product_id: str) -> TrendAnalysis:
        trend = await self.analyze_product_trend(product_id)
        self.trends.set(product_id, trend)
        return trend

    def get_seasonal_patterns(self, entity_id: str, entity_type: str) -> List[SeasonalPattern]:
        patterns = []
        for name in SEASONAL_PATTERNS:
            pattern = self.seasonal.get(f"{entity_type}:{entity_id}:{name}")
            if pattern is not None:
                patterns.append(pattern)
        return patterns

    def get_trending_products_ml(self, limit: int = 20) -> List[TrendAnalysis]:
        rising = [t for t in self.trends.values() if t.trend_type == TrendType.RISING]
        rising.sort(key=lambda t: t.trend_strength, reverse=True)
        return rising[:limit]

    def get_predictions(self) -> List[Dict[str, Any]]:
        return list(self.predictions)
