"""
Shared helpers for route modules.
"""
from fastapi import Header, HTTPException

from api.services.crm_store import CrmStore, Entity, Group
from api.services.errors import NotFoundError


async def get_current_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    """
    Resolve the acting user from the X-User-Id header.

    Authentication happens upstream; this service trusts the header.
    """
    return x_user_id


def get_owned_entity(store: CrmStore, entity_id: str, user_id: str) -> Entity:
    """Load an entity, answering 404 for missing or foreign entities alike."""
    try:
        entity = store.get_entity(entity_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Entity '{entity_id}' not found")
    if entity.owner_id != user_id:
        raise HTTPException(status_code=404, detail=f"Entity '{entity_id}' not found")
    return entity


def get_owned_group(store: CrmStore, group_id: str, user_id: str) -> Group:
    """Load a group, answering 404 for missing or foreign groups alike."""
    try:
        group = store.get_group(group_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Group '{group_id}' not found")
    if group.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Group '{group_id}' not found")
    return group
