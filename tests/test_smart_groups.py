"""
Tests for smart group rule parsing and membership evaluation.
"""
import pytest

from api.services.cache import smart_group_key
from api.services.crm_store import Group
from api.services.errors import CacheUnavailableError, ConfigurationError
from api.services.smart_groups import (
    LastInteractionDaysRule,
    SmartGroupEvaluator,
    Strategy,
    TagRule,
    TypeRule,
    parse_rules,
)

pytestmark = pytest.mark.unit


class UnavailableCache:
    """Cache double whose backend is always down."""

    def get(self, key):
        raise CacheUnavailableError("connection refused")

    def set(self, key, value, ttl_seconds):
        raise CacheUnavailableError("connection refused")

    def delete_matching(self, pattern):
        raise CacheUnavailableError("connection refused")


def smart_group(rules, user_id="user-1") -> Group:
    return Group(user_id=user_id, name="Smart", is_smart=True, rules=rules)


@pytest.fixture
def evaluator(store, cache):
    return SmartGroupEvaluator(store=store, cache=cache, ttl_seconds=300)


class TestParseRules:

    def test_parses_every_rule_kind(self):
        rules = parse_rules(smart_group({
            "type": "person",
            "tags": ["Climbing", "work"],
            "relationship_type": "friend",
            "relationship_status": "active",
            "last_interaction_days": 30,
        }))

        assert len(rules) == 5
        assert TypeRule(entity_type="person") in rules
        assert TagRule(tags=frozenset({"climbing", "work"})) in rules
        assert LastInteractionDaysRule(days=30) in rules

    def test_empty_rules_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules(smart_group({}))

    def test_non_list_tags_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_rules(smart_group({"tags": "climbing"}))
        assert exc_info.value.problems[0].startswith("tags:")

    @pytest.mark.parametrize("days", [0, 366, "30", True])
    def test_bad_last_interaction_days_rejected(self, days):
        with pytest.raises(ConfigurationError):
            parse_rules(smart_group({"last_interaction_days": days}))

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules(smart_group({"type": "spaceship"}))

    def test_every_problem_is_reported(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_rules(smart_group({"type": "spaceship", "last_interaction_days": 0}))
        assert len(exc_info.value.problems) == 2

    def test_unknown_key_ignored_when_lenient(self):
        rules = parse_rules(smart_group({"type": "person", "favorite_color": "blue"}))
        assert rules == [TypeRule(entity_type="person")]

    def test_unknown_key_rejected_when_strict(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_rules(smart_group({"type": "person", "favorite_color": "blue"}), strict=True)
        assert exc_info.value.problems == ["contains invalid field: favorite_color"]

    def test_only_unknown_keys_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_rules(smart_group({"favorite_color": "blue"}))

    def test_manual_group_has_no_rules_to_parse(self):
        with pytest.raises(ConfigurationError):
            parse_rules(Group(user_id="user-1", name="Manual"))

    def test_error_payload_is_empty_but_flagged(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_rules(smart_group({}))
        payload = exc_info.value.to_dict()
        assert payload["error"] == "configuration_error"
        assert payload["entity_ids"] == []


class TestEvaluation:

    def test_type_rule(self, evaluator, add_contact, now):
        person = add_contact("Ada")
        add_contact("Acme", entity_type="organization")

        members = evaluator.compute_members(smart_group({"type": "person"}), now=now)

        assert members.entity_ids == [person.id]

    def test_tags_require_every_tag(self, evaluator, add_contact, now):
        both = add_contact("Both", tags=["climbing", "work"])
        add_contact("One", tags=["climbing"])

        members = evaluator.compute_members(smart_group({"tags": ["Climbing", "WORK"]}), now=now)

        assert members.entity_ids == [both.id]

    def test_relationship_rules(self, evaluator, add_contact, now):
        colleague = add_contact("Colleague", relationship_type="colleague")
        add_contact("Friend", relationship_type="friend")
        add_contact("Old Colleague", relationship_type="colleague", status="inactive")

        group = smart_group({"relationship_type": "colleague", "relationship_status": "active"})
        members = evaluator.compute_members(group, now=now)

        assert members.entity_ids == [colleague.id]

    def test_last_interaction_days_includes_never_contacted(self, evaluator, add_contact, now):
        stale = add_contact("Stale", days_ago=31)
        never = add_contact("Never", days_ago=None)
        add_contact("Exactly Thirty", days_ago=30)
        add_contact("Recent", days_ago=3)

        members = evaluator.compute_members(smart_group({"last_interaction_days": 30}), now=now)

        assert members.entity_ids == sorted([stale.id, never.id])

    def test_rules_are_a_conjunction(self, evaluator, add_contact, now):
        match = add_contact("Match", days_ago=60, tags=["climbing"])
        add_contact("Recent Climber", days_ago=1, tags=["climbing"])
        add_contact("Stale Non-Climber", days_ago=60)

        group = smart_group({"tags": ["climbing"], "last_interaction_days": 30})
        members = evaluator.compute_members(group, now=now)

        assert members.entity_ids == [match.id]

    def test_archived_entities_never_match(self, evaluator, store, add_contact, now):
        archived = add_contact("Archived", entity_type="person")
        store.archive_entity(archived.id)

        members = evaluator.compute_members(smart_group({"type": "person"}), now=now)

        assert members.entity_ids == []

    def test_stored_bad_rules_fail_loudly(self, evaluator):
        group = smart_group({"tags": "climbing"})
        for strategy in Strategy:
            with pytest.raises(ConfigurationError):
                evaluator.get_members(group, strategy)


class TestCaching:

    def test_lazy_and_cached_agree(self, evaluator, add_contact, now):
        add_contact("Ada", tags=["climbing"])
        add_contact("Grace", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})

        lazy = evaluator.get_members(group, Strategy.LAZY, now=now)
        cached = evaluator.get_members(group, Strategy.CACHED, now=now)

        assert lazy.entity_ids == cached.entity_ids
        assert lazy.from_cache is False

    def test_second_cached_read_hits_cache(self, evaluator, cache, add_contact, now):
        add_contact("Ada", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})

        first = evaluator.get_members(group, Strategy.CACHED, now=now)
        second = evaluator.get_members(group, Strategy.CACHED, now=now)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.entity_ids == first.entity_ids
        assert cache.get(smart_group_key(group.id, "user-1")) is not None

    def test_mutation_invalidates_cached_membership(self, evaluator, add_contact, now):
        ada = add_contact("Ada", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})
        evaluator.get_members(group, Strategy.CACHED, now=now)

        grace = add_contact("Grace", tags=["climbing"])
        after = evaluator.get_members(group, Strategy.CACHED, now=now)

        assert after.from_cache is False
        assert after.entity_ids == sorted([ada.id, grace.id])

    def test_tag_removal_invalidates(self, evaluator, store, add_contact, now):
        ada = add_contact("Ada", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})
        evaluator.get_members(group, Strategy.CACHED, now=now)

        store.remove_tag_from_entity(ada.id, "climbing")

        assert evaluator.get_members(group, Strategy.CACHED, now=now).entity_ids == []

    def test_invalidation_is_scoped_to_the_user(self, evaluator, cache, add_contact, now):
        add_contact("Ada", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})
        evaluator.get_members(group, Strategy.CACHED, now=now)

        add_contact("Someone Else", user_id="user-2", tags=["climbing"])

        assert cache.get(smart_group_key(group.id, "user-1")) is not None

    def test_invalidation_with_glob_characters_in_user_id(self, evaluator, add_contact, now):
        ada = add_contact("Ada", user_id="team[1]", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]}, user_id="team[1]")
        evaluator.get_members(group, Strategy.CACHED, now=now)

        grace = add_contact("Grace", user_id="team[1]", tags=["climbing"])
        after = evaluator.get_members(group, Strategy.CACHED, now=now)

        assert after.from_cache is False
        assert after.entity_ids == sorted([ada.id, grace.id])

    def test_unavailable_cache_degrades_to_lazy(self, store, add_contact, now):
        ada = add_contact("Ada", tags=["climbing"])
        evaluator = SmartGroupEvaluator(store=store, cache=UnavailableCache(), ttl_seconds=300)

        members = evaluator.get_members(smart_group({"tags": ["climbing"]}), Strategy.CACHED, now=now)

        assert members.entity_ids == [ada.id]
        assert members.from_cache is False

    def test_unreadable_cache_entry_is_recomputed(self, evaluator, cache, add_contact, now):
        ada = add_contact("Ada", tags=["climbing"])
        group = smart_group({"tags": ["climbing"]})
        cache.set(smart_group_key(group.id, "user-1"), b"not json", 300)

        members = evaluator.get_members(group, Strategy.CACHED, now=now)

        assert members.entity_ids == [ada.id]
        assert members.from_cache is False


class TestListGroupEntities:

    def test_manual_group_lists_explicit_members(self, evaluator, store, add_contact):
        ada = add_contact("Ada")
        add_contact("Grace")
        group = store.add_group(Group(user_id="user-1", name="Book club"))
        store.add_entities_to_group(group, [ada.id])

        result = evaluator.list_group_entities(group)

        assert result["is_smart"] is False
        assert result["entity_ids"] == [ada.id]

    def test_smart_group_includes_entity_details(self, evaluator, store, add_contact):
        ada = add_contact("Ada", tags=["climbing"])
        group = store.add_group(smart_group({"tags": ["climbing"]}))

        result = evaluator.list_group_entities(group, Strategy.LAZY)

        assert result["is_smart"] is True
        assert result["strategy"] == "lazy"
        assert [entity["name"] for entity in result["entities"]] == ["Ada"]
        assert result["entity_ids"] == [ada.id]
