"""Recommendation strategy resolver.

Every recommendation type maps to an ordered chain of attempts. The first
attempt of most chains reads persisted, non-expired records for the request
scope; later attempts compute results on demand from catalog, activity and
order data. An attempt that lacks data raises ``ComputationError`` and the
resolver moves on to the next one. Whatever wins is passed through a final
ranking step that clamps scores, orders them and renumbers positions.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from shoppulse.config import Settings
from shoppulse.exceptions import ComputationError, NotFoundError, PersistenceError, ValidationError
from shoppulse.recommender.models import (
    ActivityType,
    OrderStatus,
    Product,
    Recommendation,
    RecommendationType,
    utcnow,
)
from shoppulse.recommender.store import EventStore
from shoppulse.recommender.utils import clamp

# Configure module logger
logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"
SIMILAR_BASE_SCORE = 0.8
RANK_DECAY = 0.05
TRENDING_ACTIVITY_TYPES = (
    ActivityType.PRODUCT_VIEW,
    ActivityType.PRODUCT_CLICK,
    ActivityType.ADD_TO_CART,
)
EXCLUDED_SALE_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
INTERACTION_KINDS = ("viewed", "clicked", "converted")


@dataclass
class RecommendationRequest:
    recommendation_type: RecommendationType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    product_id: Optional[str] = None
    category_id: Optional[str] = None
    limit: int = 10
    include_product_details: bool = True


@dataclass
class Resolution:
    """Outcome of resolving a request: the ranked list and the attempt that produced it."""

    recommendations: List[Recommendation]
    strategy: Optional[str]
    fallback: bool


Attempt = Callable[[RecommendationRequest], Awaitable[List[Recommendation]]]


def rank(recommendations: List[Recommendation], limit: Optional[int] = None) -> List[Recommendation]:
    """Clamp scores to [0, 1], sort descending (stable) and renumber positions from 1."""
    for rec in recommendations:
        rec.score = clamp(rec.score)
    ordered = sorted(recommendations, key=lambda r: r.score, reverse=True)
    if limit is not None:
        ordered = ordered[:limit]
    for position, rec in enumerate(ordered, start=1):
        rec.position = position
    return ordered


def parse_type(value: Union[str, RecommendationType]) -> RecommendationType:
    try:
        return RecommendationType(value)
    except ValueError:
        raise ValidationError(
            f"Unsupported recommendation type: {value}",
            details={"supported": [t.value for t in RecommendationType]},
        )


class StrategyResolver:
    """Resolves recommendation requests through their fallback chains."""

    def __init__(
        self,
        store: EventStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self._chains: Dict[RecommendationType, List[Tuple[str, Attempt]]] = self._build_chains()

    def _build_chains(self) -> Dict[RecommendationType, List[Tuple[str, Attempt]]]:
        T = RecommendationType
        top_rated = [
            ("stored_top_rated", self._stored(T.TOP_RATED)),
            ("rating_filter", self._rating_filter),
        ]
        bestsellers = [
            ("stored_bestsellers", self._stored(T.BESTSELLERS)),
            ("sales", self._sales),
        ] + top_rated
        trending = [
            ("stored_trending", self._stored(T.TRENDING)),
            ("velocity", self._velocity),
        ] + bestsellers
        similar = [
            ("stored_similar", self._stored(T.SIMILAR_PRODUCTS)),
            ("category_brand_similarity", self._similar),
        ]
        return {
            T.PERSONALIZED: [("stored_personalized", self._stored(T.PERSONALIZED))] + trending,
            T.SIMILAR_PRODUCTS: similar,
            T.FREQUENTLY_BOUGHT_TOGETHER: [
                ("stored_frequently_bought_together", self._stored(T.FREQUENTLY_BOUGHT_TOGETHER)),
                ("market_basket", self._market_basket),
            ]
            + similar,
            T.TRENDING: trending,
            T.BESTSELLERS: bestsellers,
            T.TOP_RATED: top_rated,
            T.NEW_ARRIVALS: [
                ("stored_new_arrivals", self._stored(T.NEW_ARRIVALS)),
                ("newest_first", self._newest_first),
            ],
            T.RECENTLY_VIEWED: [("browsing_history", self._recently_viewed)],
        }

    def chain(self, recommendation_type: RecommendationType) -> List[str]:
        """Attempt names tried, in order, for a recommendation type."""
        return [name for name, _ in self._chains[recommendation_type]]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def validate(self, request: RecommendationRequest) -> None:
        """Raises ValidationError or NotFoundError for unusable requests."""
        if not 1 <= request.limit <= self.settings.max_limit:
            raise ValidationError(
                f"limit must be between 1 and {self.settings.max_limit}",
                details={"limit": request.limit},
            )

        T = RecommendationType
        if request.recommendation_type in (T.PERSONALIZED, T.RECENTLY_VIEWED):
            if not request.user_id and not request.session_id:
                raise ValidationError(
                    f"Either user_id or session_id must be provided for "
                    f"{request.recommendation_type.value} recommendations"
                )

        if request.recommendation_type in (T.SIMILAR_PRODUCTS, T.FREQUENTLY_BOUGHT_TOGETHER):
            if not request.product_id:
                raise ValidationError(
                    f"product_id is required for {request.recommendation_type.value} recommendations"
                )
            if await self.store.get_product(request.product_id) is None:
                raise NotFoundError("product", request.product_id)

    async def resolve(self, request: RecommendationRequest) -> Resolution:
        await self.validate(request)

        for index, (name, attempt) in enumerate(self._chains[request.recommendation_type]):
            try:
                results = await attempt(request)
            except ComputationError as e:
                logger.debug(
                    f"Strategy '{name}' had insufficient data",
                    extra={"type": request.recommendation_type.value, "reason": e.message},
                )
                continue
            except PersistenceError as e:
                logger.warning(
                    f"Strategy '{name}' could not read the store",
                    extra={"type": request.recommendation_type.value, "error": e.message},
                )
                continue

            ranked = rank(results, request.limit)
            if request.include_product_details:
                await self._attach_products(ranked)
            if index > 0:
                logger.info(
                    f"Resolved {request.recommendation_type.value} via fallback '{name}'",
                    extra={"user_id": request.user_id, "product_id": request.product_id},
                )
            return Resolution(recommendations=ranked, strategy=name, fallback=index > 0)

        logger.info(
            "All strategies exhausted",
            extra={"type": request.recommendation_type.value},
        )
        return Resolution(recommendations=[], strategy=None, fallback=True)

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
        request = RecommendationRequest(
            recommendation_type=parse_type(recommendation_type),
            user_id=user_id,
            session_id=session_id,
            product_id=product_id,
            category_id=category_id,
            limit=self.settings.default_limit if limit is None else limit,
            include_product_details=include_product_details,
        )
        resolution = await self.resolve(request)
        return resolution.recommendations

    async def mark_interaction(self, recommendation_id: str, kind: str) -> Recommendation:
        """Flag a persisted recommendation as viewed, clicked or converted."""
        if kind not in INTERACTION_KINDS:
            raise ValidationError(
                f"Unknown interaction '{kind}'", details={"supported": list(INTERACTION_KINDS)}
            )
        record = await self.store.get_recommendation(recommendation_id)
        if record is None:
            raise NotFoundError("recommendation", recommendation_id)
        setattr(record, kind, True)
        await self.store.update_recommendation(record)
        return record

    async def _attach_products(self, recommendations: List[Recommendation]) -> None:
        ids = [r.recommended_product_id for r in recommendations]
        products = {p.id: p for p in await self.store.find_products(ids=ids, listed_only=False)}
        for rec in recommendations:
            product = products.get(rec.recommended_product_id)
            rec.recommended_product = product.summary() if product else None

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _stored(self, recommendation_type: RecommendationType) -> Attempt:
        T = RecommendationType

        async def attempt(request: RecommendationRequest) -> List[Recommendation]:
            scope: Dict[str, Optional[str]] = {}
            if recommendation_type == T.PERSONALIZED:
                if request.user_id:
                    scope["user_id"] = request.user_id
                else:
                    scope["session_id"] = request.session_id
            elif recommendation_type in (T.SIMILAR_PRODUCTS, T.FREQUENTLY_BOUGHT_TOGETHER):
                scope["product_id"] = request.product_id
            else:
                scope["category_id"] = request.category_id

            records = await self.store.find_recommendations(
                recommendation_type, now=self.clock(), limit=request.limit, **scope
            )
            if not records:
                raise ComputationError(f"No stored {recommendation_type.value} recommendations")
            return records

        return attempt

    def _ephemeral(
        self,
        product: Product,
        recommendation_type: RecommendationType,
        score: float,
        algorithm_version: str,
        metadata: Dict,
        **fields,
    ) -> Recommendation:
        return Recommendation(
            id=f"{TEMP_ID_PREFIX}{product.id}",
            recommended_product_id=product.id,
            recommendation_type=recommendation_type,
            score=score,
            algorithm_version=algorithm_version,
            metadata=metadata,
            created_at=self.clock(),
            **fields,
        )

    async def _similar(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_similar(request.product_id, request.limit)

    async def compute_similar(self, product_id: str, limit: int) -> List[Recommendation]:
        """Listed products sharing the category or brand, best rated first."""
        base = await self.store.get_product(product_id)
        if base is None:
            raise NotFoundError("product", product_id)

        candidates = [
            p
            for p in await self.store.find_products()
            if p.id != base.id
            and (
                (base.category_id is not None and p.category_id == base.category_id)
                or (base.brand_id is not None and p.brand_id == base.brand_id)
            )
        ]
        if not candidates:
            raise ComputationError("No products share the category or brand")

        candidates.sort(key=lambda p: (-p.average_rating, -p.review_count))
        return [
            self._ephemeral(
                p,
                RecommendationType.SIMILAR_PRODUCTS,
                score=SIMILAR_BASE_SCORE - i * RANK_DECAY,
                algorithm_version="fallback-v1.0",
                metadata={"similarity_type": "category_brand", "fallback": True},
                product_id=product_id,
            )
            for i, p in enumerate(candidates[:limit])
        ]

    async def _market_basket(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_market_basket(request.product_id, request.limit)

    async def compute_market_basket(self, product_id: str, limit: int) -> List[Recommendation]:
        """Products co-purchased with ``product_id`` in at least N orders.

        Confidence is the co-occurrence count divided by the number of orders
        containing the base product.
        """
        pairs = await self.store.order_product_pairs()
        if pairs.empty or product_id not in set(pairs["product_id"]):
            raise ComputationError("Product has no order history")

        order_ids = {oid: i for i, oid in enumerate(pairs["order_id"].unique())}
        product_ids = {pid: i for i, pid in enumerate(pairs["product_id"].unique())}
        basket = csr_matrix(
            (
                np.ones(len(pairs), dtype=np.float32),
                (pairs["order_id"].map(order_ids).values, pairs["product_id"].map(product_ids).values),
            ),
            shape=(len(order_ids), len(product_ids)),
        )

        base_idx = product_ids[product_id]
        co_counts = np.asarray((basket.T @ basket[:, base_idx]).todense()).ravel()
        base_orders = float(co_counts[base_idx])

        idx_to_product = {i: pid for pid, i in product_ids.items()}
        frequent = [
            (idx_to_product[i], int(count))
            for i, count in enumerate(co_counts)
            if i != base_idx and count >= self.settings.min_co_occurrence
        ]
        if not frequent:
            raise ComputationError("No products co-purchased often enough")

        listed = {
            p.id: p
            for p in await self.store.find_products(ids=[pid for pid, _ in frequent])
        }
        frequent = [(pid, count) for pid, count in frequent if pid in listed]
        if not frequent:
            raise ComputationError("Co-purchased products are not listed")

        frequent.sort(key=lambda item: (-item[1], item[0]))
        results = []
        for pid, count in frequent[:limit]:
            confidence = count / base_orders
            results.append(
                self._ephemeral(
                    listed[pid],
                    RecommendationType.FREQUENTLY_BOUGHT_TOGETHER,
                    score=min(confidence, 1.0),
                    algorithm_version="market-basket-v1.0",
                    metadata={
                        "frequency": count,
                        "confidence": confidence,
                        "algorithm": "market_basket_analysis",
                    },
                    product_id=product_id,
                )
            )
        return results

    async def _velocity(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_trending(request.category_id, request.limit)

    async def compute_trending(self, category_id: Optional[str], limit: int) -> List[Recommendation]:
        """Rank recently active products by activity velocity, then activity count."""
        now = self.clock()
        stats = await self.store.activity_stats_by_entity(
            since=now - timedelta(days=self.settings.trending_window_days),
            entity_type="product",
            activity_types=TRENDING_ACTIVITY_TYPES,
        )
        stats = stats[stats["activity_count"] >= self.settings.trending_min_events]
        if stats.empty:
            raise ComputationError("Not enough recent activity for trending")

        listed = {
            p.id: p
            for p in await self.store.find_products(
                ids=stats["entity_id"].tolist(), category_id=category_id
            )
        }
        trending = []
        for row in stats.itertuples(index=False):
            if row.entity_id not in listed:
                continue
            first_seen = pd.Timestamp(row.first_seen).to_pydatetime()
            days = int((now - first_seen).total_seconds() // 86400)
            velocity = float(row.activity_count) / max(1, days)
            trending.append((row.entity_id, int(row.activity_count), velocity))
        if not trending:
            raise ComputationError("No listed trending products")

        trending.sort(key=lambda t: (-t[2], -t[1]))
        return [
            self._ephemeral(
                listed[pid],
                RecommendationType.TRENDING,
                score=min(velocity, 1.0),
                algorithm_version="velocity-v1.0",
                metadata={
                    "activity_count": count,
                    "velocity": velocity,
                    "algorithm": "velocity_based_trending",
                },
            )
            for pid, count, velocity in trending[:limit]
        ]

    async def _sales(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_bestsellers(request.category_id, request.limit)

    async def compute_bestsellers(
        self, category_id: Optional[str], limit: int
    ) -> List[Recommendation]:
        stats = await self.store.order_item_stats(
            since=self.clock() - timedelta(days=self.settings.bestseller_window_days),
            exclude_statuses=EXCLUDED_SALE_STATUSES,
        )
        stats = stats[stats["quantity"] >= self.settings.bestseller_min_quantity]
        if stats.empty:
            raise ComputationError("No qualifying sales in the bestseller window")

        listed = {
            p.id: p
            for p in await self.store.find_products(
                ids=stats["product_id"].tolist(), category_id=category_id
            )
        }
        stats = stats[stats["product_id"].isin(list(listed))]
        if stats.empty:
            raise ComputationError("No listed bestsellers")

        stats = stats.sort_values(["quantity", "order_count"], ascending=False, kind="stable")
        top = stats.head(limit)
        max_sold = float(top["quantity"].max())
        return [
            self._ephemeral(
                listed[row.product_id],
                RecommendationType.BESTSELLERS,
                score=float(row.quantity) / max_sold,
                algorithm_version="sales-v1.0",
                metadata={
                    "total_sold": int(row.quantity),
                    "order_count": int(row.order_count),
                    "total_revenue": float(row.total_price),
                    "algorithm": "sales_based",
                },
            )
            for row in top.itertuples(index=False)
        ]

    async def _rating_filter(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_top_rated(request.category_id, request.limit)

    async def compute_top_rated(
        self, category_id: Optional[str], limit: int
    ) -> List[Recommendation]:
        products = [
            p
            for p in await self.store.find_products(category_id=category_id)
            if p.average_rating >= self.settings.top_rated_min_rating
            and p.review_count >= self.settings.top_rated_min_reviews
        ]
        if not products:
            raise ComputationError("No products meet the rating threshold")

        products.sort(key=lambda p: (-p.average_rating, -p.review_count))
        return [
            self._ephemeral(
                p,
                RecommendationType.TOP_RATED,
                score=p.average_rating / 5.0,
                algorithm_version="rating-v1.0",
                metadata={
                    "average_rating": p.average_rating,
                    "review_count": p.review_count,
                    "algorithm": "top_rated",
                },
            )
            for p in products[:limit]
        ]

    async def _newest_first(self, request: RecommendationRequest) -> List[Recommendation]:
        return await self.compute_new_arrivals(request.category_id, request.limit)

    async def compute_new_arrivals(
        self, category_id: Optional[str], limit: int
    ) -> List[Recommendation]:
        products = await self.store.find_products(category_id=category_id)
        if not products:
            raise ComputationError("Catalog has no listed products")

        products.sort(key=lambda p: p.created_at, reverse=True)
        return [
            self._ephemeral(
                p,
                RecommendationType.NEW_ARRIVALS,
                score=1.0 - i * RANK_DECAY,
                algorithm_version="newness-v1.0",
                metadata={"created_at": p.created_at.isoformat(), "algorithm": "newest_first"},
            )
            for i, p in enumerate(products[:limit])
        ]

    async def _recently_viewed(self, request: RecommendationRequest) -> List[Recommendation]:
        if request.user_id:
            history = await self.store.browsing_history(user_id=request.user_id)
        else:
            history = await self.store.browsing_history(session_id=request.session_id)

        listed = {
            p.id: p for p in await self.store.find_products(ids=[h.product_id for h in history])
        }
        unique = []
        seen = set()
        for entry in history:
            if entry.product_id in listed and entry.product_id not in seen:
                seen.add(entry.product_id)
                unique.append(entry)
        if not unique:
            raise ComputationError("No browsing history")

        return [
            self._ephemeral(
                listed[entry.product_id],
                RecommendationType.RECENTLY_VIEWED,
                score=1.0 - i * RANK_DECAY,
                algorithm_version="recency-v1.0",
                metadata={
                    "last_viewed": entry.last_viewed_at.isoformat(),
                    "view_count": entry.view_count,
                    "time_spent": entry.time_spent,
                    "source": entry.source,
                },
                user_id=entry.user_id,
                session_id=entry.session_id,
                viewed=True,
                clicked=True,
                converted=entry.conversion,
            )
            for i, entry in enumerate(unique[: request.limit])
        ]
