"""
Entity health API endpoints.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.routes._utils import get_current_user_id, get_owned_entity
from api.services.crm_store import Interaction, get_crm_store
from api.services.health import calculate_entity_health, suggest_action
from api.services.health_alerts import create_health_alert
from config.health_weights import MAX_THRESHOLD_DAYS, MIN_THRESHOLD_DAYS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entities", tags=["entities"])


class HealthThresholdRequest(BaseModel):
    health_threshold_days: int = Field(ge=MIN_THRESHOLD_DAYS, le=MAX_THRESHOLD_DAYS)


class InteractionRequest(BaseModel):
    title: str = ""
    type: str = "other"
    occurred_at: datetime | None = None


@router.put("/{entity_id}/health-threshold")
async def set_health_threshold(
    entity_id: str,
    request: HealthThresholdRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Set how many days of silence the relationship tolerates."""
    store = get_crm_store()
    entity = get_owned_entity(store, entity_id, user_id)
    relationship = store.update_health_threshold(user_id, entity.id, request.health_threshold_days)
    logger.info(f"Set health threshold for {entity.id} to {relationship.health_threshold_days} days")
    return {
        "entity_id": entity.id,
        "relationship": relationship.to_dict(),
        "health": calculate_entity_health(entity, relationship).to_dict(),
    }


@router.get("/{entity_id}/health")
async def get_entity_health(entity_id: str, user_id: str = Depends(get_current_user_id)):
    """Current health of the user's relationship with an entity."""
    store = get_crm_store()
    entity = get_owned_entity(store, entity_id, user_id)
    relationship = store.get_relationship(user_id, entity.id)
    health = calculate_entity_health(entity, relationship)
    return {
        "entity": entity.to_dict(),
        "relationship": relationship.to_dict() if relationship else None,
        "health": health.to_dict(),
        "suggested_action": suggest_action(health),
    }


@router.post("/{entity_id}/interactions", status_code=201)
async def log_interaction(
    entity_id: str,
    request: InteractionRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Log an interaction; refreshes health and evicts cached smart groups."""
    store = get_crm_store()
    entity = get_owned_entity(store, entity_id, user_id)
    interaction = store.record_interaction(Interaction(
        entity_id=entity.id,
        occurred_at=request.occurred_at or datetime.now(timezone.utc),
        title=request.title,
        type=request.type,
    ))
    entity = store.get_entity(entity.id)
    return {
        "interaction": interaction.to_dict(),
        "health": calculate_entity_health(entity, store.get_relationship(user_id, entity.id)).to_dict(),
    }


@router.post("/{entity_id}/health-alert")
async def create_entity_health_alert(entity_id: str, user_id: str = Depends(get_current_user_id)):
    """Create a reconnect reminder for one entity if its health needs attention."""
    get_owned_entity(get_crm_store(), entity_id, user_id)
    return create_health_alert(user_id, entity_id).to_dict()
