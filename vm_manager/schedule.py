"""Next-run evaluation for cron-style server schedules."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from vm_manager.errors import InvalidSchedule

logger = logging.getLogger(__name__)


def parse_cron(cron_expression: str) -> CronTrigger:
    """Build a UTC trigger from a standard 5-field crontab expression.

    Raises:
        InvalidSchedule: If the expression is malformed.
    """
    cron_parts = (cron_expression or "").split()
    if len(cron_parts) != 5:
        raise InvalidSchedule(f"Invalid cron expression: {cron_expression}")
    try:
        return CronTrigger.from_crontab(" ".join(cron_parts), timezone="UTC")
    except ValueError as e:
        raise InvalidSchedule(f"Invalid cron expression: {cron_expression} ({e})")


def next_run(cron_expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time strictly after ``now`` (UTC), or None if it never fires again."""
    trigger = parse_cron(cron_expression)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    # cron resolution is one second; skip the current second
    after = now.replace(microsecond=0) + timedelta(seconds=1)
    fire_time = trigger.get_next_fire_time(None, after)
    logger.debug(f"Next run of '{cron_expression}' after {now.isoformat()}: {fire_time}")
    return fire_time
