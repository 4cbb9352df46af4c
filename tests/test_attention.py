"""
Tests for the attention list and health summary.
"""
import pytest

from api.services.attention import (
    average_health_score,
    get_health_summary,
    list_entities_needing_attention,
    score_active_relationships,
)

pytestmark = pytest.mark.unit


def test_orders_worst_health_first(store, add_contact, now):
    add_contact("Warning Wendy", days_ago=20)       # 70
    add_contact("Critical Carl", days_ago=40)       # 0
    add_contact("Healthy Hank", days_ago=1)         # 100
    add_contact("Borderline Bea", days_ago=29)      # 52

    items = list_entities_needing_attention("user-1", store=store, now=now)

    assert [item.entity.name for item in items] == ["Critical Carl", "Borderline Bea", "Warning Wendy"]
    assert [item.health.score for item in items] == [0, 52, 70]


def test_ties_break_on_longest_silence_then_name(store, add_contact, now):
    add_contact("Zed", days_ago=40)
    add_contact("Never Nora", days_ago=None)
    add_contact("Amy", days_ago=40)

    items = list_entities_needing_attention("user-1", store=store, now=now)

    assert [item.entity.name for item in items] == ["Never Nora", "Amy", "Zed"]


def test_limit_truncates(store, add_contact, now):
    for i, days in enumerate([20, 25, 35, 40, 50]):
        add_contact(f"Contact {i}", days_ago=days)

    items = list_entities_needing_attention("user-1", limit=3, store=store, now=now)

    assert len(items) == 3
    assert all(item.health.needs_attention for item in items)


def test_zero_limit_returns_nothing(store, add_contact, now):
    add_contact("Critical Carl", days_ago=40)
    assert list_entities_needing_attention("user-1", limit=0, store=store, now=now) == []


def test_only_active_relationships_count(store, add_contact, now):
    add_contact("Inactive Ian", days_ago=90, status="inactive")
    add_contact("Active Ann", days_ago=90)

    items = list_entities_needing_attention("user-1", store=store, now=now)

    assert [item.entity.name for item in items] == ["Active Ann"]


def test_archived_entities_are_excluded(store, add_contact, now):
    archived = add_contact("Archived Al", days_ago=90)
    store.archive_entity(archived.id)

    assert list_entities_needing_attention("user-1", store=store, now=now) == []


def test_other_users_are_invisible(store, add_contact, now):
    add_contact("Mine", days_ago=90)
    add_contact("Theirs", days_ago=90, user_id="user-2")

    items = list_entities_needing_attention("user-1", store=store, now=now)

    assert [item.entity.name for item in items] == ["Mine"]


def test_attention_item_to_dict_carries_suggestion(store, add_contact, now):
    add_contact("Critical Carl", days_ago=90)

    item = list_entities_needing_attention("user-1", store=store, now=now)[0].to_dict()

    assert item["entity"]["name"] == "Critical Carl"
    assert item["health"]["status"] == "critical"
    assert item["suggested_action"].startswith("It's been a while")


def test_average_of_nothing_is_zero():
    assert average_health_score([]) == 0


def test_average_rounds_half_up(store, add_contact, now):
    add_contact("Hank", days_ago=10)    # 87
    add_contact("Wendy", days_ago=20)   # 70

    scored = score_active_relationships("user-1", store, now)

    assert sorted(item.health.score for item in scored) == [70, 87]
    assert average_health_score(scored) == 79


def test_health_summary(store, add_contact, now):
    add_contact("Healthy Hank", days_ago=1)       # 100
    add_contact("Warning Wendy", days_ago=20)     # 70
    add_contact("Critical Carl", days_ago=40)     # 0

    summary = get_health_summary("user-1", store=store, now=now)

    assert summary["total_relationships"] == 3
    assert summary["health_breakdown"] == {"healthy": 1, "warning": 1, "critical": 1}
    assert summary["average_health_score"] == 57
    assert [item["entity"]["name"] for item in summary["needs_attention"]] == ["Critical Carl", "Warning Wendy"]


def test_breakdown_covers_every_active_relationship(store, add_contact, now):
    for days in [0, 5, 16, 22, 31, None]:
        add_contact(f"Contact {days}", days_ago=days)

    summary = get_health_summary("user-1", store=store, now=now)

    assert sum(summary["health_breakdown"].values()) == len(score_active_relationships("user-1", store, now))
