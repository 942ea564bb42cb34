"""Application settings for ShopPulse.

All settings can be overridden through environment variables prefixed with
``SHOPPULSE_`` (for example ``SHOPPULSE_LOG_LEVEL=DEBUG``). Business tunables
such as the activity weight table and the price-range boundaries live here
rather than in the engines so they can be adjusted per deployment.

Example:
    >>> from shoppulse.config import get_settings
    >>> settings = get_settings()
    >>> settings.profile_batch_size
    100
"""

from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the recommendation pipeline."""

    model_config = SettingsConfigDict(env_prefix="SHOPPULSE_", extra="ignore")

    # Application
    app_name: str = "ShopPulse"
    log_level: str = "INFO"
    data_dir: Optional[str] = None  # CSV seed data loaded on startup
    model_dir: Optional[str] = None  # joblib artifacts for trained models

    # Preference vectors
    activity_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            "product_view": 1.0,
            "add_to_cart": 3.0,
            "add_to_wishlist": 2.0,
            "checkout_complete": 5.0,
            "search": 0.5,
            "category_view": 0.3,
        }
    )
    default_activity_weight: float = 0.1
    # (upper bound, label); prices at or above the last bound fall in the fallback label
    price_ranges: List[Tuple[float, str]] = Field(
        default_factory=lambda: [(50.0, "low"), (200.0, "medium"), (500.0, "high")]
    )
    price_range_fallback: str = "premium"
    time_slots: List[Tuple[int, str]] = Field(
        default_factory=lambda: [(6, "late-night"), (12, "morning"), (18, "afternoon")]
    )
    time_slot_fallback: str = "evening"
    preference_persist_probability: float = 0.3

    # Caches (seconds, None disables expiry)
    trend_cache_ttl: Optional[float] = 2 * 3600
    profile_cache_ttl: Optional[float] = 4 * 3600
    preference_cache_ttl: Optional[float] = 24 * 3600

    # Trend detection
    trend_window_days: int = 30
    seasonal_window_days: int = 365
    prediction_confidence_threshold: float = 0.5

    # Profiling
    profile_window_days: int = 30
    profile_batch_size: int = 100
    max_profiled_users: int = 1000

    # Strategies
    default_limit: int = 10
    max_limit: int = 50
    trending_window_days: int = 7
    trending_min_events: int = 5
    bestseller_window_days: int = 30
    bestseller_min_quantity: int = 2
    min_co_occurrence: int = 2
    top_rated_min_rating: float = 4.0
    top_rated_min_reviews: int = 5
    recommendation_ttl_hours: int = 24

    # Jobs
    hot_users_limit: int = 50
    hot_users_window_minutes: int = 30
    batch_size: int = 1000
    backoff_base_seconds: float = 2.0
    batch_stagger_seconds: float = 5.0
    training_stagger_seconds: float = 10.0
    retention_days: int = 90
    job_timeout_seconds: Optional[float] = 300.0
    queue_workers: int = 2
    scheduler_enabled: bool = True

    # Cron expressions
    hot_recommendations_cron: str = "*/15 * * * *"
    trend_detection_cron: str = "0 * * * *"
    profiling_cron: str = "0 */2 * * *"
    daily_batch_cron: str = "0 2 * * *"
    weekly_training_cron: str = "0 0 * * 0"
    cleanup_cron: str = "0 3 * * *"

    # Models
    svd_components: int = 20
    svd_iterations: int = 10
    similar_top_k: int = 10
    cf_weight: float = 0.7
    preference_weight: float = 0.3
    random_state: int = 42


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
