#!/usr/bin/env python3
"""
Create reconnect reminders for relationships that need attention.

Meant to run daily from cron. For each user (or the one given with --user)
this walks the attention list and creates a "health_alert" reminder per
entity, skipping entities that already have an open alert.
"""
import logging

from api.services.attention import list_entities_needing_attention
from api.services.crm_store import get_crm_store
from api.services.health_alerts import process_health_alerts
from config.health_weights import HEALTH_ALERT_BATCH_LIMIT

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


def run_health_alerts(user_id: str | None = None, dry_run: bool = True) -> dict:
    """
    Process health alerts for one user or every user.

    Args:
        user_id: Only process this user (default: all users with relationships)
        dry_run: If True, only report who would be alerted

    Returns:
        Stats dict
    """
    store = get_crm_store()
    user_ids = [user_id] if user_id else store.list_user_ids()

    stats = {'users': 0, 'processed': 0, 'created': 0, 'skipped': 0}

    for uid in user_ids:
        stats['users'] += 1
        if dry_run:
            items = list_entities_needing_attention(uid, limit=HEALTH_ALERT_BATCH_LIMIT, store=store)
            stats['processed'] += len(items)
            for item in items:
                logger.info(f"Would alert {uid} about {item.entity.name}: score={item.health.score}, status={item.health.status}")
            continue

        result = process_health_alerts(uid, store=store)
        for key in ('processed', 'created', 'skipped'):
            stats[key] += result[key]

    logger.info(f"\n=== Health Alert Summary ===")
    logger.info(f"Users: {stats['users']}")
    logger.info(f"Relationships needing attention: {stats['processed']}")
    logger.info(f"Alerts created: {stats['created']}")
    logger.info(f"Skipped (open alert or healthy): {stats['skipped']}")

    if dry_run:
        logger.info("DRY RUN - no reminders created")

    return stats


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Create health alert reminders')
    parser.add_argument('--user', help='Only process this user ID')
    parser.add_argument('--execute', action='store_true', help='Actually create reminders')
    args = parser.parse_args()

    run_health_alerts(user_id=args.user, dry_run=not args.execute)
