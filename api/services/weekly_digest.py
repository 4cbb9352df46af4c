"""
Weekly digest service.

Builds a weekly summary of relationship activity and health from CRM store
data: interaction and entity counts, a health breakdown across active
relationships, highlights (birthdays, relationship anniversaries), the
busiest relationships of the week, and who needs attention.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from api.services.attention import (
    average_health_score,
    health_breakdown,
    list_entities_needing_attention,
    score_active_relationships,
)
from api.services.crm_store import CrmStore, Entity, get_crm_store
from api.services.health import suggest_action
from config.health_weights import DIGEST_PERIOD_DAYS, MILESTONE_YEARS, TOP_INTERACTIONS_LIMIT
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class WeeklyDigest:
    start_date: date
    end_date: date
    total_entities: int
    health_breakdown: dict[str, int]
    interactions_this_week: int
    average_health_score: int
    new_entities: int = 0
    reminders_completed: int = 0
    highlights: list[dict] = field(default_factory=list)
    top_interactions: list[dict] = field(default_factory=list)
    needs_attention: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "period": {
                "start": self.start_date.isoformat(),
                "end": self.end_date.isoformat(),
            },
            "summary": {
                "total_entities": self.total_entities,
                "health_breakdown": self.health_breakdown,
                "interactions_this_week": self.interactions_this_week,
                "average_health_score": self.average_health_score,
                "new_entities": self.new_entities,
                "reminders_completed": self.reminders_completed,
            },
            "highlights": self.highlights,
            "top_interactions": self.top_interactions,
            "needs_attention": self.needs_attention,
        }


def digest_period(today: Optional[date] = None) -> tuple[date, date]:
    """Return (start, end) where end is today and start is exactly 7 days earlier."""
    end = today or datetime.now(timezone.utc).date()
    return end - timedelta(days=DIGEST_PERIOD_DAYS), end


def _period_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    # Both boundary days count: [start 00:00, day after end 00:00)
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc),
    )


def _days_in(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _matches_month_day(day: date, month: int, dom: int) -> bool:
    if (day.month, day.day) == (month, dom):
        return True
    # Feb 29 birthdays are observed on Feb 28 in non-leap years
    return (
        (month, dom) == (2, 29)
        and (day.month, day.day) == (2, 28)
        and not calendar.isleap(day.year)
    )


def parse_birthday(value) -> Optional[tuple[int, int]]:
    """
    Parse a birthday into (month, day).

    Accepts "YYYY-MM-DD", "MM-DD" and "--MM-DD".
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().lstrip("-")
    try:
        if len(text) == 5:
            parsed = date(2000, int(text[:2]), int(text[3:]))  # leap year so 02-29 is valid
        else:
            parsed = date.fromisoformat(text)
    except ValueError:
        return None
    return parsed.month, parsed.day


def find_birthdays(entities: list[Entity], start: date, end: date) -> list[dict]:
    """Highlights for entities whose birthday falls within [start, end]."""
    highlights = []
    days = _days_in(start, end)
    for entity in entities:
        birthday = parse_birthday(entity.metadata.get("birthday"))
        if birthday is None:
            if entity.metadata.get("birthday"):
                logger.debug(f"Skipping unparseable birthday for {entity.id}: {entity.metadata['birthday']!r}")
            continue
        for day in days:
            if _matches_month_day(day, *birthday):
                highlights.append({
                    "type": "birthday",
                    "date": day.isoformat(),
                    "entity": {"id": entity.id, "name": entity.name},
                    "milestone": False,
                    "message": f"{entity.name}'s birthday",
                })
                break
    return highlights


def find_anniversaries(relationships, start: date, end: date) -> list[dict]:
    """Highlights for relationships that turn a whole number of years old within [start, end]."""
    highlights = []
    days = _days_in(start, end)
    for relationship, entity in relationships:
        started_at = relationship.started_at
        if started_at is None or relationship.status == "archived":
            continue
        for day in days:
            years = day.year - started_at.year
            if years >= 1 and _matches_month_day(day, started_at.month, started_at.day):
                unit = "year" if years == 1 else "years"
                highlights.append({
                    "type": "anniversary",
                    "date": day.isoformat(),
                    "entity": {"id": entity.id, "name": entity.name},
                    "years": years,
                    "milestone": years in MILESTONE_YEARS,
                    "message": f"{years} {unit} since you met {entity.name}",
                })
                break
    return highlights


def generate_weekly_digest(
    user_id: str,
    store: Optional[CrmStore] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> WeeklyDigest:
    """
    Build the weekly digest for a user.

    Args:
        user_id: Owner of the data
        store: CRM store (default: process-wide store)
        today: Last day of the period (default: today in UTC)
        now: Evaluation time for health scores (default: end of `today`, or
            the current UTC time when neither is given)

    Returns:
        WeeklyDigest covering [today - 7 days, today]
    """
    store = store or get_crm_store()
    if now is None:
        # Score health as of the end of the requested period
        now = datetime.combine(today, time.max, tzinfo=timezone.utc) if today else datetime.now(timezone.utc)
    start_date, end_date = digest_period(today or now.date())
    start_dt, end_dt = _period_bounds(start_date, end_date)

    scored = score_active_relationships(user_id, store, now)

    highlights = find_birthdays(store.list_entities(user_id), start_date, end_date)
    highlights.extend(find_anniversaries(store.list_relationships(user_id), start_date, end_date))
    highlights.sort(key=lambda h: (h["date"], h["entity"]["name"].casefold(), h["type"]))

    needs_attention = [
        {
            "entity": {"id": item.entity.id, "name": item.entity.name},
            "health": item.health.to_dict(),
            "health_score": item.health.score,
            "days_since_interaction": item.health.days_since_interaction,
            "suggested_action": suggest_action(item.health),
        }
        for item in list_entities_needing_attention(
            user_id, limit=settings.digest_attention_limit, store=store, now=now
        )
    ]

    digest = WeeklyDigest(
        start_date=start_date,
        end_date=end_date,
        total_entities=store.count_entities(user_id),
        health_breakdown=health_breakdown(scored),
        interactions_this_week=store.count_interactions(user_id, start_dt, end_dt),
        average_health_score=average_health_score(scored),
        new_entities=store.count_entities(user_id, created_since=start_dt, created_before=end_dt),
        reminders_completed=store.count_completed_reminders(user_id, start_dt, end_dt),
        highlights=highlights,
        top_interactions=store.top_interacted_entities(user_id, start_dt, end_dt, limit=TOP_INTERACTIONS_LIMIT),
        needs_attention=needs_attention,
    )
    logger.info(
        f"Built weekly digest for {user_id}: {digest.interactions_this_week} interactions, "
        f"{len(needs_attention)} need attention"
    )
    return digest
