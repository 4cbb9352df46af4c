"""
Health alerts - turn unhealthy relationships into reconnect reminders.

One open "health_alert" reminder per (user, entity): while an alert is
pending, further runs skip that entity.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from api.services.attention import list_entities_needing_attention
from api.services.crm_store import CrmStore, Reminder, get_crm_store
from api.services.errors import NotFoundError
from api.services.health import calculate_entity_health, suggest_action
from config.health_weights import (
    HEALTH_ALERT_BATCH_LIMIT,
    HEALTH_ALERT_CHANNELS,
    HEALTH_ALERT_DUE_HOURS,
    HEALTH_ALERT_REMINDER_TYPE,
)

logger = logging.getLogger(__name__)

ALERT_CREATED = "created"
ALERT_ALREADY_EXISTS = "alert_already_exists"
ENTITY_IS_HEALTHY = "entity_is_healthy"


@dataclass
class HealthAlertResult:
    entity_id: str
    status: str
    reminder: Optional[Reminder] = None

    @property
    def created(self) -> bool:
        return self.status == ALERT_CREATED

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "status": self.status,
            "reminder": self.reminder.to_dict() if self.reminder else None,
        }


def create_health_alert(
    user_id: str,
    entity_id: str,
    store: Optional[CrmStore] = None,
    now: Optional[datetime] = None,
) -> HealthAlertResult:
    """
    Create a reconnect reminder for an entity whose health needs attention.

    Args:
        user_id: Owner of the relationship
        entity_id: Entity to check
        store: CRM store (default: process-wide store)
        now: Evaluation time (default: current UTC time)

    Returns:
        HealthAlertResult with status created, alert_already_exists or
        entity_is_healthy

    Raises:
        NotFoundError: entity missing or owned by another user
    """
    store = store or get_crm_store()
    now = now or datetime.now(timezone.utc)

    entity = store.get_entity(entity_id)
    if entity.owner_id != user_id:
        raise NotFoundError("entity", entity_id)

    health = calculate_entity_health(entity, store.get_relationship(user_id, entity_id), now=now)
    if not health.needs_attention:
        return HealthAlertResult(entity_id=entity_id, status=ENTITY_IS_HEALTHY)

    if store.has_pending_reminder(user_id, entity_id, HEALTH_ALERT_REMINDER_TYPE):
        return HealthAlertResult(entity_id=entity_id, status=ALERT_ALREADY_EXISTS)

    reminder = store.add_reminder(Reminder(
        user_id=user_id,
        entity_id=entity_id,
        type=HEALTH_ALERT_REMINDER_TYPE,
        title=f"Reconnect with {entity.name}",
        description=(
            f"It's been {health.days_since_interaction} days since your last interaction. "
            f"{suggest_action(health)}"
        ),
        due_at=now + timedelta(hours=HEALTH_ALERT_DUE_HOURS),
        notification_channels=list(HEALTH_ALERT_CHANNELS),
    ))
    logger.info(f"Created health alert for {entity.name} ({entity_id}), score {health.score}")
    return HealthAlertResult(entity_id=entity_id, status=ALERT_CREATED, reminder=reminder)


def process_health_alerts(
    user_id: str,
    store: Optional[CrmStore] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Create alerts for everything on the user's attention list.

    Returns:
        {"processed": n, "created": n, "skipped": n}
    """
    store = store or get_crm_store()
    items = list_entities_needing_attention(user_id, limit=HEALTH_ALERT_BATCH_LIMIT, store=store, now=now)

    created = 0
    skipped = 0
    for item in items:
        result = create_health_alert(user_id, item.entity.id, store=store, now=now)
        if result.created:
            created += 1
        else:
            skipped += 1

    logger.info(f"Processed health alerts for {user_id}: {created} created, {skipped} skipped")
    return {"processed": len(items), "created": created, "skipped": skipped}
