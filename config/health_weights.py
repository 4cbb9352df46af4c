"""
Relationship Health Scoring Configuration.

Central configuration for all constants used in:
- Relationship health scoring (score curve and status tiers)
- Smart group rule validation
- Weekly digest highlights

Edit this file to tune health scoring behavior.
"""

# =============================================================================
# HEALTH STATUS TIERS
# =============================================================================
# Score ranges from 0-100:
# - 80-100: Healthy
# - 50-79:  Warning
# - 0-49:   Critical

HEALTHY_MIN_SCORE = 80
WARNING_MIN_SCORE = 50

STATUS_HEALTHY = "healthy"
STATUS_WARNING = "warning"
STATUS_CRITICAL = "critical"

HEALTH_STATUSES = (STATUS_HEALTHY, STATUS_WARNING, STATUS_CRITICAL)


# =============================================================================
# SCORE CURVE
# =============================================================================
# The score decays with ratio = days_since_interaction / threshold_days.
#
#   ratio <= FULL_SCORE_RATIO        -> 100
#   ratio <= HEALTHY_RATIO           -> 100 down to 80   (healthy)
#   ratio <  1.0                     -> 80 down to 50    (warning)
#   ratio >= 1.0                     -> 0                (critical)
#
# Reaching the threshold means the relationship is past its edge of
# acceptable health, so the score drops straight to the floor.

FULL_SCORE_RATIO = 0.25
HEALTHY_RATIO = 0.5

HEALTHY_BAND_SLOPE = 40   # points lost per unit of ratio between 0.25 and 0.5
WARNING_BAND_SLOPE = 60   # points lost per unit of ratio between 0.5 and 1.0

MAX_SCORE = 100
MIN_SCORE = 0


# =============================================================================
# THRESHOLDS
# =============================================================================

# Stand-in for "never interacted" so the entity always scores as critical
NEVER_INTERACTED_DAYS = 999

MIN_THRESHOLD_DAYS = 1
MAX_THRESHOLD_DAYS = 365

# Silence beyond this many days gets the stronger reconnect prompt
LONG_SILENCE_DAYS = 60


# =============================================================================
# ALERTS
# =============================================================================

HEALTH_ALERT_REMINDER_TYPE = "health_alert"
HEALTH_ALERT_DUE_HOURS = 24
HEALTH_ALERT_BATCH_LIMIT = 50
HEALTH_ALERT_CHANNELS = ["in_app", "email"]


# =============================================================================
# SMART GROUPS
# =============================================================================

MAX_LAST_INTERACTION_DAYS = 365
MAX_GROUPS_PER_USER = 50


# =============================================================================
# DIGEST
# =============================================================================

DIGEST_PERIOD_DAYS = 7
TOP_INTERACTIONS_LIMIT = 5

# Relationship anniversaries (in years) called out as milestones
MILESTONE_YEARS = (1, 5, 10, 15, 20, 25, 30, 40, 50)
