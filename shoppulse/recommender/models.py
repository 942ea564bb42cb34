"""Domain records shared across the recommendation pipeline.

Activity events, catalog and order snapshots come from the event store;
preference vectors, trend analyses, seasonal patterns and user profiles are
derived state held in the pipeline caches; recommendations are either
persisted by batch jobs or synthesized on demand by the strategies.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ActivityType(str, Enum):
    PRODUCT_VIEW = "product_view"
    ADD_TO_CART = "add_to_cart"
    ADD_TO_WISHLIST = "add_to_wishlist"
    CHECKOUT_START = "checkout_start"
    CHECKOUT_COMPLETE = "checkout_complete"
    SEARCH = "search"
    CATEGORY_VIEW = "category_view"
    PRODUCT_CLICK = "product_click"


class RecommendationType(str, Enum):
    PERSONALIZED = "personalized"
    SIMILAR_PRODUCTS = "similar_products"
    FREQUENTLY_BOUGHT_TOGETHER = "frequently_bought_together"
    TRENDING = "trending"
    RECENTLY_VIEWED = "recently_viewed"
    TOP_RATED = "top_rated"
    BESTSELLERS = "bestsellers"
    NEW_ARRIVALS = "new_arrivals"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TrendType(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"
    VOLATILE = "volatile"


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class BehavioralSegment(str, Enum):
    BROWSER = "browser"
    BUYER = "buyer"
    RESEARCHER = "researcher"
    IMPULSE_BUYER = "impulse_buyer"
    LOYAL_CUSTOMER = "loyal_customer"
    PRICE_SENSITIVE = "price_sensitive"


@dataclass(frozen=True)
class ActivityEvent:
    """A single tracked shopper interaction. Never mutated once recorded."""

    activity_type: ActivityType
    session_id: str
    timestamp: datetime
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    device_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: Optional[float] = None
    id: str = field(default_factory=new_id)

    @property
    def actor_id(self) -> str:
        """The user id for authenticated shoppers, otherwise the session id."""
        return self.user_id or self.session_id

    @property
    def is_product_event(self) -> bool:
        return self.entity_type == "product" and self.entity_id is not None


@dataclass
class Product:
    id: str
    title: str
    price: float
    slug: str = ""
    discount_price: Optional[float] = None
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    average_rating: float = 0.0
    review_count: int = 0
    is_active: bool = True
    visibility: str = "public"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_listed(self) -> bool:
        """Active and publicly visible, i.e. eligible for recommendation."""
        return self.is_active and self.visibility == "public"

    def summary(self) -> Dict[str, Any]:
        """Product details attached to recommendations on request."""
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "price": float(self.price),
            "discount_price": float(self.discount_price) if self.discount_price else None,
            "average_rating": self.average_rating,
            "review_count": self.review_count,
            "brand_id": self.brand_id,
            "category_id": self.category_id,
        }


@dataclass
class OrderItem:
    product_id: str
    quantity: int = 1
    total_price: float = 0.0


@dataclass
class Order:
    id: str
    user_id: str
    status: OrderStatus
    total: float
    placed_at: datetime
    items: List[OrderItem] = field(default_factory=list)


@dataclass
class BrowsingHistoryEntry:
    session_id: str
    product_id: str
    user_id: Optional[str] = None
    view_count: int = 1
    time_spent: float = 0.0
    source: Optional[str] = None
    device_type: Optional[str] = None
    last_viewed_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    conversion: bool = False
    conversion_at: Optional[datetime] = None


PREFERENCE_DIMENSIONS: Tuple[str, ...] = (
    "categories",
    "brands",
    "price_ranges",
    "time_slots",
    "devices",
)


@dataclass
class PreferenceVector:
    """Weighted preference tallies for one actor.

    ``tallies`` holds the raw accumulated weights per dimension; ``weights()``
    exposes them normalized so each non-empty dimension sums to 1.
    """

    actor_id: str
    tallies: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {dim: {} for dim in PREFERENCE_DIMENSIONS}
    )
    last_updated: datetime = field(default_factory=utcnow)

    def add(self, dimension: str, key: str, weight: float) -> None:
        bucket = self.tallies.setdefault(dimension, {})
        bucket[key] = bucket.get(key, 0.0) + weight

    def weights(self) -> Dict[str, Dict[str, float]]:
        normalized = {}
        for dimension in PREFERENCE_DIMENSIONS:
            bucket = self.tallies.get(dimension, {})
            total = sum(bucket.values())
            if total > 0:
                normalized[dimension] = {k: v / total for k, v in bucket.items()}
            else:
                normalized[dimension] = {}
        return normalized

    def is_empty(self) -> bool:
        return not any(self.tallies.get(dim) for dim in PREFERENCE_DIMENSIONS)


@dataclass
class WindowMetrics:
    slope: float = 0.0
    r2: float = 0.0
    volatility: float = 0.0


@dataclass
class TrendAnalysis:
    product_id: str
    trend_type: TrendType
    trend_strength: float
    predicted_direction: Direction
    confidence: float
    factors: List[str]
    last_calculated: datetime
    time_horizon: str = "medium"
    horizons: Dict[str, WindowMetrics] = field(default_factory=dict)
    category_id: Optional[str] = None


@dataclass
class SeasonalPattern:
    entity_id: str
    entity_type: str
    pattern: str
    peak_periods: List[int]
    amplitude: float
    phase: int
    confidence: float


@dataclass
class SessionMetrics:
    average_session_duration: float = 0.0
    pages_per_session: float = 0.0
    bounce_rate: float = 0.0


@dataclass
class UserProfile:
    user_id: str
    behavioral_segment: BehavioralSegment
    preference_vector: Dict[str, Dict[str, float]]
    engagement_score: float
    lifetime_value: float
    churn_risk: float
    purchase_frequency: float
    average_order_value: float
    session_metrics: SessionMetrics
    next_best_actions: List[str]
    last_updated: datetime
    behavioral_patterns: List[str] = field(default_factory=list)


@dataclass
class Recommendation:
    recommended_product_id: str
    recommendation_type: RecommendationType
    score: float
    position: int = 0
    id: str = field(default_factory=new_id)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    product_id: Optional[str] = None
    algorithm_version: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    viewed: bool = False
    clicked: bool = False
    converted: bool = False
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    recommended_product: Optional[Dict[str, Any]] = None

    @property
    def is_ephemeral(self) -> bool:
        return self.id.startswith("temp-")


@dataclass
class RecommendationBatch:
    batch_type: RecommendationType
    algorithm_version: str
    status: str = "running"
    total_generated: int = 0
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
