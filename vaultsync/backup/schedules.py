"""
Backup schedule policy - due-schedule selection and next-run computation.

Frequencies are standard 5-field cron expressions evaluated in UTC, or one
of the aliases below. All datetimes stored on schedules are naive UTC.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from apscheduler.triggers.cron import CronTrigger

from vaultsync import db
from vaultsync.models import BackupSchedule

logger = logging.getLogger(__name__)

FREQUENCY_ALIASES = {
    'daily': '0 2 * * *',
    'weekly': '0 2 * * sun',
    'monthly': '0 2 1 * *',
}

POLICY_FIELDS = (
    'backup_type',
    'secondary_owner_id',
    'is_enabled',
    'frequency',
    'retention_days',
    'min_backups_to_keep',
    'auto_mirror',
)


def resolve_frequency(frequency: str) -> str:
    """Expand an alias to its cron expression."""
    frequency = (frequency or '').strip()
    return FREQUENCY_ALIASES.get(frequency.lower(), frequency)


def build_trigger(frequency: str) -> CronTrigger:
    """
    Build an APScheduler CronTrigger for a frequency.

    Raises:
        ValueError: If the expression is not a valid 5-field cron expression
    """
    expression = resolve_frequency(frequency)
    if len(expression.split()) != 5:
        raise ValueError(f"Invalid frequency '{frequency}': expected a 5-field cron expression or one of "
                         f"{', '.join(FREQUENCY_ALIASES)}")
    return CronTrigger.from_crontab(expression, timezone='UTC')


def compute_next_run(frequency: str, after: datetime) -> datetime:
    """
    Next cron slot strictly after the given (naive UTC) time.

    Returns:
        Naive UTC datetime
    """
    trigger = build_trigger(frequency)
    base = after.replace(tzinfo=timezone.utc) + timedelta(seconds=1)
    next_fire = trigger.get_next_fire_time(None, base)
    if next_fire is None:
        raise ValueError(f"Frequency '{frequency}' has no future run time")
    return next_fire.astimezone(timezone.utc).replace(tzinfo=None)


def get_due_schedules(now: Optional[datetime] = None) -> List[BackupSchedule]:
    """Enabled schedules whose next_run_at is at or before now."""
    now = now or datetime.utcnow()
    return BackupSchedule.query.filter(
        BackupSchedule.is_enabled.is_(True),
        BackupSchedule.next_run_at.isnot(None),
        BackupSchedule.next_run_at <= now,
    ).order_by(BackupSchedule.next_run_at, BackupSchedule.id).all()


def update_schedule_after_run(schedule: BackupSchedule, now: Optional[datetime] = None,
                              error: Optional[str] = None, commit: bool = True) -> BackupSchedule:
    """
    Record a run and advance next_run_at to the next normal slot.

    Applied whether or not the run succeeded, so a failing owner is retried
    at its next slot instead of on every tick.
    """
    now = now or datetime.utcnow()
    base = max(now, schedule.next_run_at) if schedule.next_run_at else now

    schedule.last_run_at = now
    schedule.next_run_at = compute_next_run(schedule.frequency, base)
    if error is not None:
        schedule.last_error = error

    if commit:
        db.session.commit()

    logger.debug(f"Schedule for owner {schedule.owner_id} next runs at {schedule.next_run_at}")
    return schedule


def create_default_schedule(owner_id: str, frequency: str, retention_days: int,
                            backup_type: str = 'full', now: Optional[datetime] = None) -> BackupSchedule:
    now = now or datetime.utcnow()
    schedule = BackupSchedule(
        owner_id=owner_id,
        backup_type=backup_type,
        is_enabled=True,
        frequency=frequency,
        retention_days=retention_days,
        min_backups_to_keep=0,
        auto_mirror=False,
        next_run_at=compute_next_run(frequency, now),
    )
    db.session.add(schedule)
    db.session.commit()
    logger.info(f"Created default backup schedule for owner {owner_id} ({frequency})")
    return schedule


def apply_policy(schedule: BackupSchedule, policy: Dict[str, Any], backup_types: Iterable[str],
                 now: Optional[datetime] = None) -> BackupSchedule:
    """
    Validate and apply an owner's policy changes.

    Raises:
        ValueError: On unknown fields or invalid values (nothing is changed)
    """
    now = now or datetime.utcnow()

    unknown = set(policy) - set(POLICY_FIELDS)
    if unknown:
        raise ValueError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")

    if 'frequency' in policy:
        build_trigger(policy['frequency'])

    if 'retention_days' in policy:
        retention_days = policy['retention_days']
        if not isinstance(retention_days, int) or isinstance(retention_days, bool) or retention_days < 1:
            raise ValueError("retention_days must be a positive integer")

    if 'min_backups_to_keep' in policy:
        keep = policy['min_backups_to_keep']
        if not isinstance(keep, int) or isinstance(keep, bool) or keep < 0:
            raise ValueError("min_backups_to_keep must be a non-negative integer")

    if 'backup_type' in policy and policy['backup_type'] not in set(backup_types):
        raise ValueError(f"Unknown backup type: {policy['backup_type']}")

    frequency_changed = 'frequency' in policy and policy['frequency'] != schedule.frequency
    was_enabled = schedule.is_enabled

    for name, value in policy.items():
        setattr(schedule, name, value)

    if frequency_changed or (schedule.is_enabled and not was_enabled) or schedule.next_run_at is None:
        schedule.next_run_at = compute_next_run(schedule.frequency, now)

    db.session.commit()
    logger.info(f"Updated backup schedule for owner {schedule.owner_id}")
    return schedule
