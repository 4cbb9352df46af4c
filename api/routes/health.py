"""
Relationship health API endpoints.
"""
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.routes._utils import get_current_user_id
from api.services.attention import get_health_summary
from api.services.health_alerts import process_health_alerts
from api.services.weekly_digest import generate_weekly_digest
from config.settings import settings

router = APIRouter(prefix="/api/health", tags=["health"])


class HealthResponse(BaseModel):
    score: int
    status: str
    needs_attention: bool
    days_since_interaction: int
    threshold_days: int
    days_remaining: int


class AttentionEntityResponse(BaseModel):
    id: str
    name: str
    type: str
    last_interaction_at: str | None


class AttentionItemResponse(BaseModel):
    entity: AttentionEntityResponse
    relationship: dict | None
    health: HealthResponse
    suggested_action: str


class HealthBreakdownResponse(BaseModel):
    healthy: int
    warning: int
    critical: int


class HealthSummaryResponse(BaseModel):
    total_relationships: int
    health_breakdown: HealthBreakdownResponse
    average_health_score: int
    needs_attention: list[AttentionItemResponse]


class HealthAlertsResponse(BaseModel):
    processed: int
    created: int
    skipped: int


@router.get("/summary", response_model=HealthSummaryResponse)
async def get_summary(
    limit: int = Query(
        default=settings.attention_default_limit,
        ge=1,
        le=100,
        description="Max relationships in the needs-attention list",
    ),
    user_id: str = Depends(get_current_user_id),
):
    """Health breakdown, average score and who needs attention."""
    return get_health_summary(user_id, limit=limit)


@router.get("/digest")
async def get_digest(
    end: date | None = Query(default=None, description="Last day of the week (YYYY-MM-DD). Defaults to today"),
    user_id: str = Depends(get_current_user_id),
):
    """Return the weekly relationship digest."""
    return generate_weekly_digest(user_id, today=end).to_dict()


@router.post("/alerts", response_model=HealthAlertsResponse)
async def run_health_alerts(user_id: str = Depends(get_current_user_id)):
    """Create reconnect reminders for relationships needing attention."""
    return process_health_alerts(user_id)
