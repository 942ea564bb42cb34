"""Activity ingestion endpoint.

Shopper events are recorded synchronously; preference, trending, anomaly
and recommendation updates happen on the job queue.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field, field_validator

from shoppulse.recommender.models import ActivityEvent, ActivityType

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/analytics",
    tags=["analytics"],
)


class ActivityRequest(BaseModel):
    activity_type: ActivityType
    session_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    device_type: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = Field(
        default=None, description="Defaults to the time the event is received"
    )

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC; aware ones are converted to UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ActivityResponse(BaseModel):
    status: str = "accepted"
    activity_id: str
    queued_jobs: List[str]


@router.post("/activity", response_model=ActivityResponse, status_code=status.HTTP_202_ACCEPTED)
async def track_activity(body: ActivityRequest, request: Request) -> ActivityResponse:
    """Record a shopper activity event and queue its processing."""
    engine = request.app.state.engine
    event = ActivityEvent(
        activity_type=body.activity_type,
        session_id=body.session_id,
        timestamp=body.timestamp or engine.clock(),
        user_id=body.user_id,
        entity_id=body.entity_id,
        entity_type=body.entity_type,
        device_type=body.device_type,
        metadata=body.metadata,
        duration_seconds=body.duration_seconds,
    )
    jobs = await engine.on_activity(event)
    return ActivityResponse(activity_id=event.id, queued_jobs=[job.name for job in jobs])
