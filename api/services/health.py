"""
Relationship Health - Compute health scores from interaction recency.

Health is computed from the ratio of days since the last interaction to the
relationship's threshold:

    ratio = days_since_interaction / threshold_days

Score ranges from 0-100:
- 80-100: Healthy
- 50-79:  Warning
- 0-49:   Critical

The score is a pure function of (last_interaction_at, threshold_days, now)
and is recomputed on every query; it is never cached.
See config/health_weights.py for the curve constants.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from config.health_weights import (
    FULL_SCORE_RATIO,
    HEALTHY_RATIO,
    HEALTHY_BAND_SLOPE,
    WARNING_BAND_SLOPE,
    HEALTHY_MIN_SCORE,
    WARNING_MIN_SCORE,
    MAX_SCORE,
    MIN_SCORE,
    NEVER_INTERACTED_DAYS,
    MIN_THRESHOLD_DAYS,
    MAX_THRESHOLD_DAYS,
    LONG_SILENCE_DAYS,
    STATUS_HEALTHY,
    STATUS_WARNING,
    STATUS_CRITICAL,
)
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthResult:
    """Derived health of one relationship."""

    score: int
    status: str
    needs_attention: bool
    days_since_interaction: int
    threshold_days: int
    days_remaining: int

    def to_dict(self) -> dict:
        return asdict(self)


def round_half_up(value: float) -> int:
    # round() is banker's rounding; scores round .5 upward
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def compute_days_since(last_interaction_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """
    Whole days elapsed since the last interaction.

    Partial days truncate (a 2-hour-old interaction is 0 days). Naive
    datetimes are treated as UTC and future timestamps count as today.

    Returns:
        Days since interaction, or NEVER_INTERACTED_DAYS when there is none
    """
    if last_interaction_at is None:
        return NEVER_INTERACTED_DAYS

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if last_interaction_at.tzinfo is None:
        last_interaction_at = last_interaction_at.replace(tzinfo=timezone.utc)

    # Cap future dates at now (e.g., from scheduled calendar events)
    if last_interaction_at > now:
        return 0

    return (now - last_interaction_at).days


def compute_score(days_since: int, threshold_days: int) -> int:
    """
    Compute the 0-100 health score.

    Args:
        days_since: Whole days since last interaction
        threshold_days: Days of silence at which the relationship is at its edge

    Returns:
        Integer score between 0 and 100
    """
    ratio = days_since / threshold_days

    if ratio <= FULL_SCORE_RATIO:
        score = MAX_SCORE
    elif ratio <= HEALTHY_RATIO:
        score = round_half_up(MAX_SCORE - ratio * HEALTHY_BAND_SLOPE)
    elif ratio < 1.0:
        score = round_half_up(HEALTHY_MIN_SCORE - (ratio - HEALTHY_RATIO) * WARNING_BAND_SLOPE)
    else:
        score = MIN_SCORE

    return max(MIN_SCORE, min(MAX_SCORE, score))


def determine_status(score: int) -> str:
    """Map a score onto healthy / warning / critical."""
    if score >= HEALTHY_MIN_SCORE:
        return STATUS_HEALTHY
    if score >= WARNING_MIN_SCORE:
        return STATUS_WARNING
    return STATUS_CRITICAL


def calculate_health_score(
    last_interaction_at: Optional[datetime],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> HealthResult:
    """
    Calculate the health of a relationship.

    Total over every input: entities that were never contacted score as
    critical, and a non-positive threshold is clamped to 1 day.

    Args:
        last_interaction_at: Most recent interaction, or None if never
        threshold_days: Configured threshold for the relationship
        now: Evaluation time (default: current UTC time)

    Returns:
        HealthResult with score, status and attention flag
    """
    if threshold_days < MIN_THRESHOLD_DAYS:
        logger.warning(f"Clamping invalid health threshold {threshold_days} to {MIN_THRESHOLD_DAYS}")
        threshold_days = MIN_THRESHOLD_DAYS

    days_since = compute_days_since(last_interaction_at, now)
    score = compute_score(days_since, threshold_days)
    status = determine_status(score)

    return HealthResult(
        score=score,
        status=status,
        needs_attention=status != STATUS_HEALTHY,
        days_since_interaction=days_since,
        threshold_days=threshold_days,
        days_remaining=threshold_days - days_since,
    )


def resolve_threshold(relationship=None) -> int:
    """
    Threshold for a relationship, falling back to the configured default.

    Args:
        relationship: Relationship (or None when the entity has none)
    """
    threshold = getattr(relationship, "health_threshold_days", None)
    if isinstance(threshold, int) and MIN_THRESHOLD_DAYS <= threshold <= MAX_THRESHOLD_DAYS:
        return threshold
    return settings.default_health_threshold_days


def calculate_entity_health(entity, relationship=None, now: Optional[datetime] = None) -> HealthResult:
    """Health for an entity using its relationship's threshold."""
    return calculate_health_score(entity.last_interaction_at, resolve_threshold(relationship), now=now)


def suggest_action(health: HealthResult) -> str:
    """Human prompt for what to do about a relationship's health."""
    if health.status == STATUS_CRITICAL and health.days_since_interaction > LONG_SILENCE_DAYS:
        return "It's been a while! Consider reaching out to reconnect."
    if health.status == STATUS_CRITICAL:
        return "Send a quick check-in message or schedule a call."
    if health.status == STATUS_WARNING:
        return "Consider dropping a quick note or message."
    return "Relationship is healthy!"
