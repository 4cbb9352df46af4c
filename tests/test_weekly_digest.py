"""
Tests for weekly digest service helpers.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from api.services.crm_store import Entity, Interaction, Relationship, Reminder
from api.services.weekly_digest import (
    digest_period,
    find_anniversaries,
    find_birthdays,
    generate_weekly_digest,
    parse_birthday,
)

pytestmark = pytest.mark.unit

TODAY = date(2024, 7, 15)


def test_period_spans_seven_days():
    start, end = digest_period(TODAY)

    assert end == TODAY
    assert start == date(2024, 7, 8)
    assert (end - start).days == 7


def test_empty_account(store, now):
    digest = generate_weekly_digest("user-1", store=store, today=TODAY, now=now).to_dict()

    assert digest["period"] == {"start": "2024-07-08", "end": "2024-07-15"}
    assert digest["summary"]["total_entities"] == 0
    assert digest["summary"]["average_health_score"] == 0
    assert digest["summary"]["health_breakdown"] == {"healthy": 0, "warning": 0, "critical": 0}
    assert digest["needs_attention"] == []
    assert digest["highlights"] == []


def test_summary_counts(store, add_contact, now):
    add_contact("Healthy Hank", days_ago=1)
    add_contact("Warning Wendy", days_ago=20)
    add_contact("Critical Carl", days_ago=40)
    store.add_entity(Entity(owner_id="user-1", name="No Relationship"))

    digest = generate_weekly_digest("user-1", store=store, today=TODAY, now=now)

    assert digest.total_entities == 4
    assert digest.health_breakdown == {"healthy": 1, "warning": 1, "critical": 1}
    assert sum(digest.health_breakdown.values()) == 3
    assert digest.average_health_score == 57
    assert [item["entity"]["name"] for item in digest.needs_attention] == ["Critical Carl", "Warning Wendy"]
    assert digest.needs_attention[0]["suggested_action"]


def test_health_is_scored_at_the_end_of_the_period(store, add_contact):
    add_contact("Healthy Hank", days_ago=1)
    add_contact("Warning Wendy", days_ago=20)
    add_contact("Critical Carl", days_ago=40)

    digest = generate_weekly_digest("user-1", store=store, today=TODAY)

    assert digest.health_breakdown == {"healthy": 1, "warning": 1, "critical": 1}
    assert [item["entity"]["name"] for item in digest.needs_attention] == ["Critical Carl", "Warning Wendy"]


def test_interactions_counted_on_both_boundary_days(store, now):
    entity = store.add_entity(Entity(owner_id="user-1", name="Ada"))
    for occurred_at in [
        datetime(2024, 7, 7, 23, 59, tzinfo=timezone.utc),   # day before the period
        datetime(2024, 7, 8, 0, 0, tzinfo=timezone.utc),     # first day
        datetime(2024, 7, 12, 9, 30, tzinfo=timezone.utc),
        datetime(2024, 7, 15, 23, 59, tzinfo=timezone.utc),  # last day
    ]:
        store.record_interaction(Interaction(entity_id=entity.id, occurred_at=occurred_at))

    digest = generate_weekly_digest("user-1", store=store, today=TODAY, now=now)

    assert digest.interactions_this_week == 3
    assert digest.top_interactions == [{"entity_id": entity.id, "entity_name": "Ada", "count": 3}]


def test_new_entities_and_completed_reminders(store, now):
    store.add_entity(Entity(owner_id="user-1", name="Old", inserted_at=now - timedelta(days=30)))
    fresh = store.add_entity(Entity(owner_id="user-1", name="New", inserted_at=now - timedelta(days=2)))
    reminder = store.add_reminder(Reminder(user_id="user-1", entity_id=fresh.id, title="Say hi"))
    store.complete_reminder(reminder.id, completed_at=now - timedelta(days=1))

    digest = generate_weekly_digest("user-1", store=store, today=TODAY, now=now)

    assert digest.new_entities == 1
    assert digest.reminders_completed == 1


def test_highlights_include_birthdays_and_anniversaries(store, add_contact, now):
    ada = add_contact("Ada", days_ago=1)
    ada.metadata = {"birthday": "1990-07-10"}
    store.update_entity(ada)
    grace = add_contact("Grace", days_ago=1)
    store.upsert_relationship(Relationship(
        user_id="user-1", entity_id=grace.id, type="friend", started_at=date(2019, 7, 12),
    ))

    highlights = generate_weekly_digest("user-1", store=store, today=TODAY, now=now).highlights

    assert [(h["type"], h["date"], h["entity"]["name"]) for h in highlights] == [
        ("birthday", "2024-07-10", "Ada"),
        ("anniversary", "2024-07-12", "Grace"),
    ]
    assert highlights[1]["years"] == 5
    assert highlights[1]["milestone"] is True


class TestBirthdays:

    @pytest.mark.parametrize("value,expected", [
        ("1990-07-10", (7, 10)),
        ("07-10", (7, 10)),
        ("--07-10", (7, 10)),
        ("02-29", (2, 29)),
        ("not a date", None),
        ("", None),
        (None, None),
    ])
    def test_parse_birthday(self, value, expected):
        assert parse_birthday(value) == expected

    def test_leap_day_observed_on_feb_28(self):
        entity = Entity(owner_id="user-1", name="Leap", metadata={"birthday": "2000-02-29"})

        highlights = find_birthdays([entity], date(2023, 2, 25), date(2023, 3, 4))

        assert [h["date"] for h in highlights] == ["2023-02-28"]

    def test_outside_period_is_ignored(self):
        entity = Entity(owner_id="user-1", name="Later", metadata={"birthday": "08-01"})
        assert find_birthdays([entity], date(2024, 7, 8), date(2024, 7, 15)) == []


class TestAnniversaries:

    def test_first_year_not_yet_reached(self):
        entity = Entity(owner_id="user-1", name="New Friend")
        relationship = Relationship(user_id="user-1", entity_id=entity.id, started_at=date(2024, 7, 10))

        assert find_anniversaries([(relationship, entity)], date(2024, 7, 8), date(2024, 7, 15)) == []

    def test_non_milestone_year(self):
        entity = Entity(owner_id="user-1", name="Pal")
        relationship = Relationship(user_id="user-1", entity_id=entity.id, started_at=date(2021, 7, 9))

        highlights = find_anniversaries([(relationship, entity)], date(2024, 7, 8), date(2024, 7, 15))

        assert highlights[0]["years"] == 3
        assert highlights[0]["milestone"] is False
        assert highlights[0]["message"] == "3 years since you met Pal"
