"""
Pytest configuration and shared fixtures for Rapport tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- slow: Tests that drive the full FastAPI app through TestClient
- integration: Tests requiring a running Redis server

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not integration" # Skip tests that need Redis
- pytest                      # All tests
"""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from api.services.cache import MemoryCache
from api.services.cache_invalidation import CacheInvalidator
from api.services.crm_store import CrmStore, Entity, Relationship


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Full app tests (TestClient)")
    config.addinivalue_line("markers", "integration: Integration tests (Redis required)")


# Fixed evaluation time so day arithmetic never depends on when tests run
FIXED_NOW = datetime(2024, 7, 15, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield f.name
    Path(f.name).unlink(missing_ok=True)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def store(temp_db, cache):
    """CrmStore on a temp database whose mutations evict from `cache`."""
    return CrmStore(db_path=temp_db, invalidator=CacheInvalidator(cache))


@pytest.fixture
def add_contact(store, now):
    """
    Factory: add an entity with an active relationship.

    days_ago=None means the entity was never contacted.
    """
    def _add(
        name: str,
        days_ago: int | None = 0,
        user_id: str = "user-1",
        threshold: int = 30,
        entity_type: str = "person",
        relationship_type: str | None = "friend",
        status: str = "active",
        tags: list[str] | None = None,
    ) -> Entity:
        entity = Entity(
            owner_id=user_id,
            name=name,
            type=entity_type,
            last_interaction_at=None if days_ago is None else now - timedelta(days=days_ago),
        )
        store.add_entity(entity)
        store.upsert_relationship(Relationship(
            user_id=user_id,
            entity_id=entity.id,
            type=relationship_type,
            status=status,
            health_threshold_days=threshold,
        ))
        for tag in tags or []:
            store.add_tag_to_entity(entity.id, tag)
        return store.get_entity(entity.id)

    return _add
