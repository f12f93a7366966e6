"""
Retention policy enforcement for backups.

All decisions are read from the Backup Registry:
1. Expire active backups whose expires_at has passed (never pinned ones,
   never the newest min_backups_to_keep of an owner)
2. Purge expired backups from every backend holding a copy, then mark deleted
3. Evict Local Store copies over the configured cap
4. Remove old finished job rows
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from vaultsync import db
from vaultsync.models import BackupJob, BackupRecord, BackupSchedule
from .errors import StorageError

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = ('succeeded', 'failed', 'cancelled')


def select_local_evictions(
    records: Iterable[BackupRecord],
    max_backups: Optional[int] = None,
    max_bytes: Optional[int] = None,
    extra_bytes: int = 0,
    now: Optional[datetime] = None,
) -> List[BackupRecord]:
    """
    Choose which local copies to drop to get under the cap.

    Eviction order is expired backups first, then oldest created. Pinned
    backups and backups whose only copy is local are never evicted.

    Args:
        records: Records that currently have a local copy
        max_backups: Maximum number of local copies (None = unlimited)
        max_bytes: Maximum total local bytes (None = unlimited)
        extra_bytes: Bytes about to be written that must also fit
        now: Reference time for expiry

    Returns:
        Records to evict, in eviction order
    """
    now = now or datetime.utcnow()
    records = [record for record in records if record.local_path]

    count = len(records)
    used = sum(record.file_size_bytes for record in records) + extra_bytes

    def is_expired(record):
        return record.status == 'expired' or (record.expires_at is not None and record.expires_at <= now)

    candidates = sorted(
        (record for record in records if not record.is_pinned and not record.is_local_only),
        key=lambda record: (0 if is_expired(record) else 1, record.created_at, record.id),
    )

    evictions = []
    for record in candidates:
        over_count = max_backups is not None and count > max_backups
        over_bytes = max_bytes is not None and used > max_bytes
        if not over_count and not over_bytes:
            break
        evictions.append(record)
        count -= 1
        used -= record.file_size_bytes

    return evictions


def enforce_local_cap(services, extra_bytes: int = 0, now: Optional[datetime] = None) -> int:
    """
    Evict local copies until the Local Store fits its caps.

    Returns:
        Number of local copies removed
    """
    if services.local is None:
        return 0

    evictions = select_local_evictions(
        services.registry.with_local_copies(),
        max_backups=services.local_max_backups,
        max_bytes=services.local_max_bytes,
        extra_bytes=extra_bytes,
        now=now,
    )

    evicted = 0
    for record in evictions:
        try:
            services.local.delete(record.local_path)
        except StorageError as e:
            logger.error(f"Failed to evict local copy {record.local_path}: {e}")
            continue
        logger.info(f"Evicted local copy of {record.filename}")
        services.registry.update(record, local_path=None)
        evicted += 1

    return evicted


def purge_record(services, record: BackupRecord, skip_primary: bool = False) -> List[str]:
    """
    Remove a backup's bytes from every backend that holds a copy, then mark it deleted.

    Primary and local deletes must succeed. When only the cloud mirror delete
    fails, the record keeps its mirror_file_id, is stamped purged_at and left
    'expired' so the next retention pass retries the mirror delete.
    skip_primary is used when the primary delete has been queued instead.

    Returns:
        Warnings (mirror failures)

    Raises:
        StorageError: If the primary or local copy could not be removed
    """
    warnings = []

    if record.purged_at is None:
        if not record.is_local_only and not skip_primary:
            services.primary.delete(record.storage_path)

        if record.local_path and services.local is not None:
            services.local.delete(record.local_path)

        services.registry.update(record, local_path=None, purged_at=datetime.utcnow())

    if record.mirror_file_id:
        mirror = services.mirror_factory.for_owner(record.owner_id)
        try:
            mirror.delete(record.mirror_file_id)
        except Exception as e:
            logger.warning(f"Failed to delete mirror copy of {record.filename}, will retry: {e}")
            services.registry.update(record, status='expired', mirror_error=f"Delete failed: {e}")
            warnings.append(str(e))
            return warnings
        record.mirror_file_id = None
        record.mirror_error = None

    services.registry.set_status(record, 'deleted')
    return warnings


class RetentionManager:
    """
    Runs the expiry reaper, purge and Local Store cap.
    """

    def __init__(self, services):
        """Initialize retention manager."""
        self.services = services
        self.logs = []

    def enforce_all_policies(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce retention for all owners.

        Returns:
            Dict with summary of cleanup operations:
            {
                'expired': int,
                'purged': int,
                'local_evicted': int,
                'jobs_removed': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        now = now or datetime.utcnow()
        self._log("Starting retention policy enforcement")

        summary = {
            'expired': self.expire_due(now),
            'purged': 0,
            'local_evicted': 0,
            'jobs_removed': 0,
            'errors': []
        }

        purged, errors = self.purge_expired()
        summary['purged'] = purged
        summary['errors'].extend(errors)

        try:
            summary['local_evicted'] = enforce_local_cap(self.services, now=now)
        except Exception as e:
            error_msg = f"Local store eviction failed: {e}"
            self._log(error_msg)
            summary['errors'].append(error_msg)

        summary['jobs_removed'] = cleanup_old_jobs(now=now)

        self._log(
            f"Retention enforcement complete. "
            f"Expired: {summary['expired']}, "
            f"Purged: {summary['purged']}, "
            f"Local evicted: {summary['local_evicted']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def expire_due(self, now: datetime) -> int:
        """Mark due backups expired, keeping each owner's newest min_backups_to_keep."""
        registry = self.services.registry
        protected = {}
        expired = 0

        for record in registry.due_for_expiry(now):
            if record.owner_id not in protected:
                schedule = BackupSchedule.query.filter_by(owner_id=record.owner_id).first()
                keep = schedule.min_backups_to_keep if schedule else 0
                protected[record.owner_id] = registry.newest_active_ids(record.owner_id, keep)

            if record.id in protected[record.owner_id]:
                continue

            registry.set_status(record, 'expired')
            expired += 1
            self._log(f"Expired backup {record.filename} (owner {record.owner_id})")

        return expired

    def purge_expired(self):
        """
        Remove bytes of expired backups.

        Returns:
            (number purged, list of error messages)
        """
        purged = 0
        errors = []

        for record in self.services.registry.expired():
            try:
                warnings = purge_record(self.services, record)
                if warnings:
                    error_msg = f"Mirror copy of {record.filename} not deleted yet: {'; '.join(warnings)}"
                    self._log(error_msg)
                    errors.append(error_msg)
                    continue
                purged += 1
                self._log(f"Purged backup {record.filename}")
            except StorageError as e:
                db.session.rollback()
                error_msg = f"Failed to purge backup {record.filename}: {e}"
                self._log(error_msg)
                errors.append(error_msg)

        return purged, errors

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def cleanup_old_jobs(older_than_days: int = 30, now: Optional[datetime] = None) -> int:
    """Delete finished BackupJob rows older than the cutoff."""
    cutoff = (now or datetime.utcnow()) - timedelta(days=older_than_days)

    removed = BackupJob.query.filter(
        BackupJob.status.in_(TERMINAL_JOB_STATUSES),
        BackupJob.completed_at.isnot(None),
        BackupJob.completed_at < cutoff,
    ).delete(synchronize_session=False)
    db.session.commit()

    if removed:
        logger.info(f"Removed {removed} finished backup jobs older than {older_than_days} days")
    return removed


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention policies for all owners.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    from vaultsync import get_services

    manager = RetentionManager(get_services())
    return manager.enforce_all_policies()
