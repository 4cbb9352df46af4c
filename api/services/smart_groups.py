"""
Smart Groups - rule-based group membership.

A smart group stores its rules as a JSON map, for example:

    {"type": "person", "tags": ["climbing"], "last_interaction_days": 30}

The map is parsed into typed rule variants and evaluated as a conjunction
(every present rule must match; absent rules impose no filter):

- type                   -> TypeRule              entity type equals
- tags                   -> TagRule               entity carries every tag
- relationship_type      -> RelationshipTypeRule  user's relationship type equals
- relationship_status    -> RelationshipStatusRule
- last_interaction_days  -> LastInteractionDaysRule  no contact in N days
                            (entities never contacted always match)

Membership is computed live (Strategy.LAZY) or read through the cache
(Strategy.CACHED). The cache is an optimization only: when it is unreachable
the evaluator computes live instead of failing the request.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from api.services.cache import SmartGroupCache, get_cache, smart_group_key
from api.services.crm_store import CrmStore, EntitySnapshot, Group, get_crm_store
from api.services.errors import CacheUnavailableError, ConfigurationError
from config.health_weights import MAX_LAST_INTERACTION_DAYS
from config.settings import settings

logger = logging.getLogger(__name__)

EntityType = Literal["person", "organization", "service", "thing", "animal", "abstract"]
RelationshipType = Literal[
    "friend", "family", "colleague", "client", "vendor",
    "acquaintance", "service_provider", "other",
]
RelationshipStatus = Literal["active", "inactive", "archived"]


class Strategy(str, Enum):
    """How membership is obtained."""

    LAZY = "lazy"
    CACHED = "cached"


class TypeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType

    def matches(self, snapshot: EntitySnapshot, now: datetime) -> bool:
        return snapshot.entity.type == self.entity_type


class TagRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    tags: frozenset[str] = Field(min_length=1)

    @field_validator("tags")
    @classmethod
    def _normalize(cls, tags: frozenset[str]) -> frozenset[str]:
        normalized = frozenset(tag.strip().lower() for tag in tags)
        if "" in normalized:
            raise ValueError("tag names cannot be blank")
        return normalized

    def matches(self, snapshot: EntitySnapshot, now: datetime) -> bool:
        entity_tags = {tag.lower() for tag in snapshot.entity.tags}
        return self.tags <= entity_tags


class RelationshipTypeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    relationship_type: RelationshipType

    def matches(self, snapshot: EntitySnapshot, now: datetime) -> bool:
        return snapshot.relationship is not None and snapshot.relationship.type == self.relationship_type


class RelationshipStatusRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: RelationshipStatus

    def matches(self, snapshot: EntitySnapshot, now: datetime) -> bool:
        return snapshot.relationship is not None and snapshot.relationship.status == self.status


class LastInteractionDaysRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int = Field(ge=1, le=MAX_LAST_INTERACTION_DAYS, strict=True)

    def matches(self, snapshot: EntitySnapshot, now: datetime) -> bool:
        last = snapshot.entity.last_interaction_at
        if last is None:
            return True
        return last < now - timedelta(days=self.days)


Rule = Union[TypeRule, TagRule, RelationshipTypeRule, RelationshipStatusRule, LastInteractionDaysRule]

_RULE_BUILDERS = {
    "type": lambda value: TypeRule(entity_type=value),
    "tags": lambda value: TagRule(tags=value),
    "relationship_type": lambda value: RelationshipTypeRule(relationship_type=value),
    "relationship_status": lambda value: RelationshipStatusRule(status=value),
    "last_interaction_days": lambda value: LastInteractionDaysRule(days=value),
}

VALID_RULE_FIELDS = tuple(_RULE_BUILDERS)


def parse_rules(group: Group, strict: bool = False) -> list[Rule]:
    """
    Parse and validate a smart group's rule map.

    Args:
        group: Group whose rules to parse
        strict: Reject unknown rule keys (write-time validation). When False,
            unknown keys are logged and skipped so older readers tolerate
            rules written by newer ones.

    Raises:
        ConfigurationError: not a smart group, missing/empty rules, a rule
            value of the wrong shape, or no recognised rule at all. Never
            degrades to "match nothing" or "match everything".
    """
    if not group.is_smart:
        raise ConfigurationError("Group is not a smart group", group_id=group.id)

    rules = group.rules
    if not isinstance(rules, dict) or not rules:
        raise ConfigurationError("rules is required for smart groups", group_id=group.id)

    parsed: list[Rule] = []
    problems: list[str] = []

    for key, value in rules.items():
        builder = _RULE_BUILDERS.get(key)
        if builder is None:
            if strict:
                problems.append(f"contains invalid field: {key}")
            else:
                logger.warning(f"Ignoring unknown smart group rule '{key}' on group {group.id}")
            continue
        if key == "tags" and value == []:
            continue
        try:
            parsed.append(builder(value))
        except ValidationError as e:
            for error in e.errors():
                problems.append(f"{key}: {error['msg']}")

    if problems:
        raise ConfigurationError(
            f"Invalid rules for smart group {group.id}: {'; '.join(problems)}",
            group_id=group.id,
            problems=problems,
        )
    if not parsed:
        raise ConfigurationError(
            "Smart group rules contain no recognised filters",
            group_id=group.id,
        )
    return parsed


@dataclass
class SmartGroupMembership:
    group_id: str
    user_id: str
    entity_ids: list[str]
    computed_at: datetime
    from_cache: bool = False
    strategy: Strategy = Strategy.LAZY

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "entity_ids": self.entity_ids,
            "computed_at": self.computed_at.isoformat(),
            "from_cache": self.from_cache,
            "strategy": self.strategy.value,
        }

    def to_cache_bytes(self) -> bytes:
        return json.dumps({
            "group_id": self.group_id,
            "user_id": self.user_id,
            "entity_ids": self.entity_ids,
            "computed_at": self.computed_at.isoformat(),
        }).encode("utf-8")

    @classmethod
    def from_cache_bytes(cls, payload: bytes) -> "SmartGroupMembership":
        data = json.loads(payload)
        return cls(
            group_id=data["group_id"],
            user_id=data["user_id"],
            entity_ids=list(data["entity_ids"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            from_cache=True,
            strategy=Strategy.CACHED,
        )


@dataclass
class SmartGroupEvaluator:
    """
    Computes smart group membership over a CRM store.

    The cache is injected so tests (and deployments) choose the backend.
    """

    store: CrmStore
    cache: SmartGroupCache
    ttl_seconds: int = field(default_factory=lambda: settings.cache_ttl_seconds)

    def evaluate(self, group: Group, now: Optional[datetime] = None) -> list[EntitySnapshot]:
        """Entities (with relationships) matching every rule of a smart group."""
        rules = parse_rules(group)
        now = now or datetime.now(timezone.utc)
        return self.store.query_entities_by_predicate(
            group.user_id,
            lambda snapshot: all(rule.matches(snapshot, now) for rule in rules),
        )

    def compute_members(self, group: Group, now: Optional[datetime] = None) -> SmartGroupMembership:
        """Compute membership live, bypassing the cache."""
        snapshots = self.evaluate(group, now)
        return SmartGroupMembership(
            group_id=group.id,
            user_id=group.user_id,
            entity_ids=sorted(snapshot.entity.id for snapshot in snapshots),
            computed_at=datetime.now(timezone.utc),
        )

    def get_members(
        self,
        group: Group,
        strategy: Strategy = Strategy.CACHED,
        now: Optional[datetime] = None,
    ) -> SmartGroupMembership:
        """
        Membership of a smart group.

        Strategy.LAZY always recomputes. Strategy.CACHED serves
        smart_group:<group>:<user>:members when present, otherwise computes
        and stores the result with the configured TTL.
        """
        if strategy is Strategy.LAZY:
            return self.compute_members(group, now)

        # Validate before touching the cache so bad rules never hide behind a hit
        parse_rules(group)
        key = smart_group_key(group.id, group.user_id)

        try:
            cached = self.cache.get(key)
        except CacheUnavailableError as e:
            logger.warning(f"Smart group cache unavailable, computing {group.id} live: {e}")
            return self.compute_members(group, now)

        if cached is not None:
            try:
                membership = SmartGroupMembership.from_cache_bytes(cached)
                logger.debug(f"Smart group cache hit: {key}")
                return membership
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable cache entry {key}: {e}")

        logger.debug(f"Smart group cache miss: {key}")
        membership = self.compute_members(group, now)
        membership.strategy = Strategy.CACHED
        try:
            self.cache.set(key, membership.to_cache_bytes(), self.ttl_seconds)
        except CacheUnavailableError as e:
            logger.warning(f"Could not store smart group {group.id} in cache: {e}")
        return membership

    def list_group_entities(self, group: Group, strategy: Strategy = Strategy.CACHED) -> dict:
        """
        Members of any group with entity details.

        Smart groups go through get_members(); manual groups list their
        explicit members.
        """
        if not group.is_smart:
            entities = self.store.list_group_members(group)
            return {
                "group_id": group.id,
                "is_smart": False,
                "entity_ids": [entity.id for entity in entities],
                "entities": [entity.to_dict() for entity in entities],
            }

        membership = self.get_members(group, strategy)
        member_ids = set(membership.entity_ids)
        snapshots = self.store.query_entities_by_predicate(
            group.user_id, lambda snapshot: snapshot.entity.id in member_ids
        )
        return {
            "group_id": group.id,
            "is_smart": True,
            **membership.to_dict(),
            "entities": [snapshot.entity.to_dict() for snapshot in snapshots],
        }


# Singleton instance
_evaluator: Optional[SmartGroupEvaluator] = None


def get_smart_group_evaluator() -> SmartGroupEvaluator:
    """Get or create the evaluator bound to the process-wide store and cache."""
    global _evaluator
    if _evaluator is None:
        _evaluator = SmartGroupEvaluator(store=get_crm_store(), cache=get_cache())
    return _evaluator
