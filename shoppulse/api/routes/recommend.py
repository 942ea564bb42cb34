"""Recommendation endpoints for the ShopPulse API.

Serves ranked recommendation lists for every strategy type and records
shopper interactions with persisted recommendations.
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from shoppulse.api.metrics import metrics_service
from shoppulse.engine import RecommendationEngine
from shoppulse.recommender.models import Recommendation, RecommendationType
from shoppulse.recommender.strategies import RecommendationRequest, parse_type

# Configure module logger
logger = logging.getLogger(__name__)

# Create API router
router = APIRouter(
    prefix="/recommendations",
    tags=["recommendations"],
)


class RecommendationItem(BaseModel):
    """A single ranked recommendation."""

    id: str
    recommended_product_id: str
    recommendation_type: RecommendationType
    score: float = Field(..., ge=0.0, le=1.0)
    position: int = Field(..., ge=1)
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    product_id: Optional[str] = None
    algorithm_version: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    viewed: bool = False
    clicked: bool = False
    converted: bool = False
    expires_at: Optional[datetime] = None
    created_at: datetime
    recommended_product: Optional[Dict[str, Any]] = None

    @classmethod
    def from_record(cls, record: Recommendation) -> "RecommendationItem":
        return cls(
            id=record.id,
            recommended_product_id=record.recommended_product_id,
            recommendation_type=record.recommendation_type,
            score=record.score,
            position=max(1, record.position),
            user_id=record.user_id,
            session_id=record.session_id,
            product_id=record.product_id,
            algorithm_version=record.algorithm_version,
            metadata=record.metadata,
            viewed=record.viewed,
            clicked=record.clicked,
            converted=record.converted,
            expires_at=record.expires_at,
            created_at=record.created_at,
            recommended_product=record.recommended_product,
        )


class RecommendationResponse(BaseModel):
    """Response model for recommendation requests.

    Attributes:
        type: The requested recommendation type.
        strategy: Name of the strategy that produced the list, if any.
        fallback: Whether a fallback strategy produced the list.
        count: Number of recommendations returned.
        recommendations: Ranked recommendations, best first.
    """

    type: RecommendationType
    strategy: Optional[str] = None
    fallback: bool = False
    count: int
    recommendations: List[RecommendationItem]


class InteractionRequest(BaseModel):
    interaction: str = Field(..., description="One of viewed, clicked, converted")


def get_engine(request: Request) -> RecommendationEngine:
    return request.app.state.engine


@router.get("", response_model=RecommendationResponse)
async def get_recommendations(
    request: Request,
    type: str,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    product_id: Optional[str] = None,
    category_id: Optional[str] = None,
    limit: Optional[int] = None,
    include_product_details: bool = True,
) -> RecommendationResponse:
    """Get ranked recommendations of one type.

    Args:
        type: Recommendation type (personalized, similar_products, ...).
        user_id: Authenticated shopper, for personalized and recently viewed.
        session_id: Anonymous session, used when there is no user_id.
        product_id: Base product for similar and frequently bought together.
        category_id: Optional category filter for catalog-wide types.
        limit: Maximum number of results (defaults to the configured limit).
        include_product_details: Attach product summaries to each item.

    Raises:
        ValidationError: Unknown type, missing identifier or limit out of range.
        NotFoundError: The base product does not exist.

    Example:
        GET /recommendations?type=similar_products&product_id=p-1&limit=5
    """
    engine = get_engine(request)
    started = time.time()

    recommendation_type = parse_type(type)
    resolution = await engine.resolve(
        RecommendationRequest(
            recommendation_type=recommendation_type,
            user_id=user_id,
            session_id=session_id,
            product_id=product_id,
            category_id=category_id,
            limit=engine.settings.default_limit if limit is None else limit,
            include_product_details=include_product_details,
        )
    )

    latency_ms = (time.time() - started) * 1000
    metrics_service.record_request(
        recommendation_type.value,
        latency_ms,
        fallback=resolution.fallback,
        empty=not resolution.recommendations,
    )
    logger.info(
        f"Served {len(resolution.recommendations)} {recommendation_type.value} recommendations",
        extra={
            "strategy": resolution.strategy,
            "fallback": resolution.fallback,
            "latency_ms": round(latency_ms, 2),
        },
    )

    return RecommendationResponse(
        type=recommendation_type,
        strategy=resolution.strategy,
        fallback=resolution.fallback,
        count=len(resolution.recommendations),
        recommendations=[RecommendationItem.from_record(r) for r in resolution.recommendations],
    )


@router.post("/{recommendation_id}/interactions", response_model=RecommendationItem)
async def record_interaction(
    recommendation_id: str, body: InteractionRequest, request: Request
) -> RecommendationItem:
    """Mark a persisted recommendation as viewed, clicked or converted."""
    record = await get_engine(request).mark_interaction(recommendation_id, body.interaction)
    return RecommendationItem.from_record(record)
