"""
Unit tests for schedule policy (vaultsync/backup/schedules.py).
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from vaultsync.backup.schedules import (
    resolve_frequency,
    build_trigger,
    compute_next_run,
    get_due_schedules,
    update_schedule_after_run,
    create_default_schedule,
    apply_policy,
)
from vaultsync.models import BackupSchedule


BACKUP_TYPES = ('full', 'tenant-subset', 'user-subset')

# 2024-01-15 is a Monday
MONDAY = datetime(2024, 1, 15, 10, 7, 0)


def make_schedule(db, owner_id='U1', frequency='daily', next_run_at=None, is_enabled=True):
    schedule = BackupSchedule(
        owner_id=owner_id,
        frequency=frequency,
        retention_days=30,
        is_enabled=is_enabled,
        next_run_at=next_run_at,
    )
    db.session.add(schedule)
    db.session.commit()
    return schedule


class TestFrequencies:
    """Test cron expressions and aliases."""

    def test_aliases(self):
        """Test aliases resolve to cron expressions."""
        assert resolve_frequency('daily') == '0 2 * * *'
        assert resolve_frequency('Monthly') == '0 2 1 * *'
        assert resolve_frequency('*/5 * * * *') == '*/5 * * * *'

    def test_daily_next_run(self):
        """Test daily runs at 02:00 UTC."""
        assert compute_next_run('daily', MONDAY) == datetime(2024, 1, 16, 2, 0)
        assert compute_next_run('daily', datetime(2024, 1, 15, 1, 0)) == datetime(2024, 1, 15, 2, 0)

    def test_next_run_is_strictly_after(self):
        """Test a run exactly on a slot moves to the following slot."""
        assert compute_next_run('daily', datetime(2024, 1, 15, 2, 0)) == datetime(2024, 1, 16, 2, 0)

    def test_weekly_runs_on_sunday(self):
        """Test weekly runs on Sunday."""
        assert compute_next_run('weekly', MONDAY) == datetime(2024, 1, 21, 2, 0)

    def test_monthly(self):
        """Test monthly runs on the first of the month."""
        assert compute_next_run('monthly', MONDAY) == datetime(2024, 2, 1, 2, 0)

    def test_cron_expression(self):
        """Test arbitrary cron expressions."""
        assert compute_next_run('*/15 * * * *', MONDAY) == datetime(2024, 1, 15, 10, 15)

    def test_next_run_is_naive_utc(self):
        """Test computed times carry no tzinfo."""
        assert compute_next_run('daily', MONDAY).tzinfo is None

    @pytest.mark.parametrize('frequency', ['every day', '', '61 * * * *', '* * * *'])
    def test_invalid_frequency(self, frequency):
        """Test invalid expressions raise ValueError."""
        with pytest.raises(ValueError):
            build_trigger(frequency)


class TestDueSchedules:
    """Test selecting schedules that should run."""

    def test_due_schedules(self, db):
        """Test enabled schedules at or past next_run_at are due."""
        due = make_schedule(db, 'U1', next_run_at=datetime(2024, 1, 15, 2, 0))
        make_schedule(db, 'U2', next_run_at=datetime(2024, 1, 16, 2, 0))
        make_schedule(db, 'U3', next_run_at=datetime(2024, 1, 15, 2, 0), is_enabled=False)
        make_schedule(db, 'U4', next_run_at=None)

        result = get_due_schedules(datetime(2024, 1, 15, 2, 0))

        assert [s.id for s in result] == [due.id]

    @freeze_time('2024-01-15 02:00:30')
    def test_defaults_to_now(self, db):
        """Test now defaults to the current UTC time."""
        make_schedule(db, 'U1', next_run_at=datetime(2024, 1, 15, 2, 0))

        assert len(get_due_schedules()) == 1


class TestAfterRun:
    """Test advancing schedules after a run."""

    def test_advances_to_next_slot(self, db):
        """Test next_run_at moves to the next slot and last_run_at is set."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 15, 2, 0))
        ran_at = datetime(2024, 1, 15, 2, 0, 20)

        update_schedule_after_run(schedule, now=ran_at)

        assert schedule.last_run_at == ran_at
        assert schedule.next_run_at == datetime(2024, 1, 16, 2, 0)

    def test_missed_runs_are_not_replayed(self, db):
        """Test a schedule behind by days jumps to the next future slot."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 10, 2, 0))

        update_schedule_after_run(schedule, now=MONDAY)

        assert schedule.next_run_at == datetime(2024, 1, 16, 2, 0)

    def test_records_error(self, db):
        """Test a failed run records the error but still advances."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 15, 2, 0))

        update_schedule_after_run(schedule, now=datetime(2024, 1, 15, 2, 1), error='export failed')

        assert schedule.last_error == 'export failed'
        assert schedule.next_run_at == datetime(2024, 1, 16, 2, 0)


class TestDefaultSchedule:
    """Test lazily created schedules."""

    def test_create_default(self, db):
        """Test the default schedule is enabled with a next run."""
        schedule = create_default_schedule('U1', 'daily', 30, now=MONDAY)

        assert schedule.id is not None
        assert schedule.is_enabled is True
        assert schedule.backup_type == 'full'
        assert schedule.retention_days == 30
        assert schedule.next_run_at == datetime(2024, 1, 16, 2, 0)


class TestApplyPolicy:
    """Test validating and applying policy changes."""

    def test_change_frequency_recomputes_next_run(self, db):
        """Test a new frequency moves next_run_at."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 16, 2, 0))

        apply_policy(schedule, {'frequency': '0 */6 * * *'}, BACKUP_TYPES, now=MONDAY)

        assert schedule.frequency == '0 */6 * * *'
        assert schedule.next_run_at == datetime(2024, 1, 15, 12, 0)

    def test_same_frequency_keeps_next_run(self, db):
        """Test unrelated changes leave next_run_at alone."""
        next_run = datetime(2024, 1, 16, 2, 0)
        schedule = make_schedule(db, next_run_at=next_run)

        apply_policy(schedule, {'retention_days': 7, 'auto_mirror': True}, BACKUP_TYPES, now=MONDAY)

        assert schedule.retention_days == 7
        assert schedule.auto_mirror is True
        assert schedule.next_run_at == next_run

    def test_reenable_recomputes_next_run(self, db):
        """Test re-enabling a schedule skips slots missed while disabled."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 1, 2, 0), is_enabled=False)

        apply_policy(schedule, {'is_enabled': True}, BACKUP_TYPES, now=MONDAY)

        assert schedule.next_run_at == datetime(2024, 1, 16, 2, 0)

    @pytest.mark.parametrize('policy', [
        {'retention_days': 0},
        {'retention_days': -5},
        {'retention_days': True},
        {'retention_days': '30'},
        {'min_backups_to_keep': -1},
        {'frequency': 'sometimes'},
        {'backup_type': 'everything'},
        {'colour': 'blue'},
    ])
    def test_invalid_policy_rejected(self, db, policy):
        """Test invalid values raise ValueError and change nothing."""
        schedule = make_schedule(db, next_run_at=datetime(2024, 1, 16, 2, 0))

        with pytest.raises(ValueError):
            apply_policy(schedule, policy, BACKUP_TYPES, now=MONDAY)

        db.session.refresh(schedule)
        assert schedule.retention_days == 30
        assert schedule.frequency == 'daily'
        assert schedule.backup_type == 'full'
