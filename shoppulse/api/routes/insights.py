"""Read-only insight endpoints over the pipeline caches.

Profiles, segments, trend analyses, seasonal patterns, predictions and
recent anomalies. Responses are dataclasses serialized by FastAPI.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Query, Request

from shoppulse.exceptions import ShopPulseException

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/insights",
    tags=["insights"],
)


@router.get("/users/{user_id}/profile")
async def user_profile(user_id: str, request: Request):
    return await request.app.state.engine.get_user_profile(user_id)


@router.get("/segments")
def segments(request: Request):
    return request.app.state.engine.get_user_segments()


@router.get("/segments/{segment_id}/users")
def segment_users(segment_id: str, request: Request):
    """Cached profiles matching a segment; unknown segments have no users."""
    profiles = request.app.state.engine.get_users_in_segment(segment_id)
    return {"segment_id": segment_id, "count": len(profiles), "users": profiles}


@router.get("/profiling")
def profiling_analytics(request: Request) -> Dict[str, Any]:
    return request.app.state.engine.get_profiling_analytics()


@router.get("/products/{product_id}/trend")
async def product_trend(product_id: str, request: Request):
    trend = await request.app.state.engine.get_product_trend(product_id)
    if trend is None:
        raise ShopPulseException(
            "Trend data is temporarily unavailable",
            status_code=503,
            details={"product_id": product_id},
        )
    return trend


@router.get("/seasonal/{entity_type}/{entity_id}")
def seasonal_patterns(entity_type: str, entity_id: str, request: Request):
    patterns = request.app.state.engine.get_seasonal_patterns(entity_id, entity_type)
    return {"entity_id": entity_id, "entity_type": entity_type, "patterns": patterns}


@router.get("/trending")
def trending_products(request: Request, limit: int = Query(20, ge=1, le=100)):
    """Rising trends ranked by strength, from the last detection pass."""
    return request.app.state.engine.get_trending_products_ml(limit)


@router.get("/predictions")
def predictions(request: Request) -> List[Dict[str, Any]]:
    return request.app.state.engine.get_predictions()


@router.get("/anomalies")
def anomalies(request: Request, limit: int = Query(50, ge=1, le=1000)):
    return request.app.state.engine.get_recent_anomalies(limit)
