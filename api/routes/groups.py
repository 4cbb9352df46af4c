"""
Group membership API endpoints.
"""
from fastapi import APIRouter, Depends, Query

from api.routes._utils import get_current_user_id, get_owned_group
from api.services.crm_store import get_crm_store
from api.services.smart_groups import Strategy, get_smart_group_evaluator

router = APIRouter(prefix="/api/groups", tags=["groups"])


@router.get("/{group_id}/entities")
async def list_group_entities(
    group_id: str,
    strategy: Strategy = Query(
        default=Strategy.CACHED,
        description="Smart groups only: 'lazy' recomputes, 'cached' reads through the cache",
    ),
    user_id: str = Depends(get_current_user_id),
):
    """
    List the members of a group.

    Smart groups with invalid rules answer 422 with an empty, flagged result
    rather than an empty or complete member list.
    """
    group = get_owned_group(get_crm_store(), group_id, user_id)
    return get_smart_group_evaluator().list_group_entities(group, strategy)
