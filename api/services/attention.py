"""
Attention service.

Finds the relationships whose health has slipped below "healthy" and
summarizes health across all of a user's active relationships.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from api.services.crm_store import CrmStore, Entity, Relationship, get_crm_store
from api.services.health import HealthResult, calculate_entity_health, round_half_up, suggest_action
from config.health_weights import HEALTH_STATUSES

logger = logging.getLogger(__name__)


@dataclass
class AttentionItem:
    entity: Entity
    relationship: Optional[Relationship]
    health: HealthResult

    def to_dict(self) -> dict:
        return {
            "entity": {
                "id": self.entity.id,
                "name": self.entity.name,
                "type": self.entity.type,
                "last_interaction_at": (
                    self.entity.last_interaction_at.isoformat()
                    if self.entity.last_interaction_at else None
                ),
            },
            "relationship": self.relationship.to_dict() if self.relationship else None,
            "health": self.health.to_dict(),
            "suggested_action": suggest_action(self.health),
        }


def _attention_sort_key(item: AttentionItem):
    # Worst score first, then longest silence, then name for a stable order
    return (
        item.health.score,
        -item.health.days_since_interaction,
        item.entity.name.casefold(),
        item.entity.id,
    )


def score_active_relationships(
    user_id: str,
    store: Optional[CrmStore] = None,
    now: Optional[datetime] = None,
) -> list[AttentionItem]:
    """Compute health for every active relationship of a user."""
    store = store or get_crm_store()
    now = now or datetime.now(timezone.utc)
    return [
        AttentionItem(entity=entity, relationship=relationship, health=calculate_entity_health(entity, relationship, now=now))
        for relationship, entity in store.list_active_relationships(user_id)
    ]


def list_entities_needing_attention(
    user_id: str,
    limit: Optional[int] = None,
    store: Optional[CrmStore] = None,
    now: Optional[datetime] = None,
) -> list[AttentionItem]:
    """
    List active relationships whose health is warning or critical.

    Args:
        user_id: Owner of the relationships
        limit: Max items to return (None for all)
        store: CRM store (default: process-wide store)
        now: Evaluation time (default: current UTC time)

    Returns:
        Items ordered worst health first
    """
    items = [item for item in score_active_relationships(user_id, store, now) if item.health.needs_attention]
    items.sort(key=_attention_sort_key)

    if limit is not None:
        items = items[:max(limit, 0)]

    logger.debug(f"{len(items)} relationships need attention for user {user_id}")
    return items


def health_breakdown(items: list[AttentionItem]) -> dict[str, int]:
    """Tally items by health status."""
    counts = {status: 0 for status in HEALTH_STATUSES}
    for item in items:
        counts[item.health.status] += 1
    return counts


def average_health_score(items: list[AttentionItem]) -> int:
    """Rounded mean score, 0 when there are no relationships."""
    if not items:
        return 0
    return round_half_up(sum(item.health.score for item in items) / len(items))


def get_health_summary(
    user_id: str,
    limit: Optional[int] = None,
    store: Optional[CrmStore] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Summarize relationship health for a user.

    Returns:
        Dict with status breakdown, average score and the needs-attention list
    """
    items = score_active_relationships(user_id, store, now)
    needs_attention = sorted(
        (item for item in items if item.health.needs_attention),
        key=_attention_sort_key,
    )
    if limit is not None:
        needs_attention = needs_attention[:max(limit, 0)]

    return {
        "total_relationships": len(items),
        "health_breakdown": health_breakdown(items),
        "average_health_score": average_health_score(items),
        "needs_attention": [item.to_dict() for item in needs_attention],
    }
