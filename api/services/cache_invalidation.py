"""
Smart group cache invalidation.

Mutations that can change smart group membership call
invalidate_smart_groups_for_user() before returning to their caller:
- entity created, updated, archived or deleted
- tag added to or removed from an entity
- relationship status changed
- interaction recorded (moves last_interaction_at)

Eviction is synchronous, so the next cached read always recomputes.
"""
import logging
from typing import Optional

from api.services.cache import SmartGroupCache, get_cache, user_smart_group_pattern

logger = logging.getLogger(__name__)


class CacheInvalidator:
    """Evicts cached smart group memberships scoped to one user."""

    def __init__(self, cache: SmartGroupCache):
        self.cache = cache

    def invalidate_smart_groups_for_user(self, user_id: str) -> int:
        """
        Evict every cached smart group entry for a user.

        Raises:
            CacheUnavailableError: eviction could not be confirmed

        Returns:
            Number of entries evicted
        """
        evicted = self.cache.delete_matching(user_smart_group_pattern(user_id))
        logger.debug(f"Invalidated {evicted} smart group cache entries for user {user_id}")
        return evicted


# Singleton instance
_invalidator: Optional[CacheInvalidator] = None


def get_cache_invalidator() -> CacheInvalidator:
    """Get or create the process-wide invalidator bound to get_cache()."""
    global _invalidator
    if _invalidator is None:
        _invalidator = CacheInvalidator(get_cache())
    return _invalidator


def invalidate_smart_groups_for_user(user_id: str) -> int:
    """Evict a user's cached smart groups using the process-wide invalidator."""
    return get_cache_invalidator().invalidate_smart_groups_for_user(user_id)
