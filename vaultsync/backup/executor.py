"""
Backup executor - runs one backup job end-to-end.

Workflow:
1. Mark BackupJob running (per-owner lock held for the whole run)
2. export: build the BackupData bundle from the domain data provider
3. encrypt: AES-256-GCM artifact under the master key
4. write-primary: store the artifact in the Primary Store
5. register: create the active BackupRecord
6. Local copy and Cloud Mirror (warnings only, never fail the job)
7. Update BackupJob (status: succeeded/failed/cancelled, failed_step)

Cancellation is checked before each stage; a started storage write is
always allowed to complete.
"""

import time
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from vaultsync import db
from vaultsync.models import BackupJob, BackupSchedule
from . import codec
from .storage import build_storage_path, generate_backup_filename
from .errors import (
    BackupError,
    StorageError,
    TransientError,
    QuotaExceededError,
    JobCancelled,
)

logger = logging.getLogger(__name__)

STAGES = ('export', 'encrypt', 'write-primary', 'register')

# Job options that steer the runner rather than the exporter
CONTROL_OPTIONS = ('mirror', 'local_copy', 'pinned')


class OwnerLockTimeout(BackupError):
    """Raised when another backup for the same owner holds the lock too long"""
    pass


class OwnerLocks:
    """At most one in-flight backup per owner within this process."""

    def __init__(self):
        self._locks = {}
        self._guard = threading.Lock()

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._guard:
            if owner_id not in self._locks:
                self._locks[owner_id] = threading.Lock()
            return self._locks[owner_id]

    def is_locked(self, owner_id: str) -> bool:
        return self._lock_for(owner_id).locked()

    @contextmanager
    def hold(self, owner_id: str, timeout: float):
        lock = self._lock_for(owner_id)
        if not lock.acquire(timeout=timeout):
            raise OwnerLockTimeout(f"Another backup is already running for owner {owner_id}")
        try:
            yield
        finally:
            lock.release()


class BackupExecutor:
    """
    Orchestrates the backup pipeline for one BackupJob.
    """

    def __init__(self, job: BackupJob, services):
        """
        Initialize backup executor.

        Args:
            job: BackupJob instance to execute
            services: BackupServices bundle (exporter, storage backends, registry, settings)
        """
        self.job = job
        self.services = services
        self.current_step = None
        self.record = None
        self.warnings = []
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupJob:
        """
        Execute the backup job.

        Returns:
            BackupJob with its terminal status
        """
        self.job.status = 'running'
        self.job.attempted_at = datetime.utcnow()
        db.session.commit()

        self._log(f"Starting {self.job.backup_type} backup for owner {self.job.owner_id}")

        try:
            with self.services.owner_locks.hold(self.job.owner_id, self.services.owner_lock_timeout):
                self._execute_workflow()

            self.job.status = 'succeeded'
            self._log("Backup completed successfully")

        except JobCancelled:
            self.job.status = 'cancelled'
            self._log(f"Backup cancelled before stage: {self.current_step}")

        except BackupError as e:
            self.job.status = 'failed'
            self.job.failed_step = self.current_step
            self.job.error_message = str(e)
            self._log(f"Backup failed at step {self.current_step}: {e}")

        except Exception as e:
            logger.exception(f"Unexpected error in backup job {self.job.id}")
            self.job.status = 'failed'
            self.job.failed_step = self.current_step
            self.job.error_message = f"Unexpected error: {e}"
            self._log(f"Backup failed at step {self.current_step}: {e}")

        finally:
            self.job.completed_at = datetime.utcnow()
            if self.warnings:
                self.job.mirror_warning = '; '.join(self.warnings)
            self.job.logs = '\n'.join(self.logs)
            self._record_on_schedule()
            db.session.commit()

        return self.job

    def _execute_workflow(self):
        """Execute the pipeline stages in order."""
        options = dict(self.job.options or {})
        scope_options = {k: v for k, v in options.items() if k not in CONTROL_OPTIONS}
        secondary_owner_id = scope_options.get('secondary_owner_id')

        # Stage 1: export
        data = self._run_stage(
            'export',
            lambda: self.services.exporter.export(self.job.owner_id, self.job.backup_type, scope_options),
            retries=self.services.stage_retries,
        )
        self._log(f"Exported {len(data.sections)} sections")

        # Stage 2: encrypt
        master_key = self.services.master_key
        if master_key is None:
            self.current_step = 'encrypt'
            raise BackupError("BACKUP_MASTER_KEY not configured - cannot encrypt backups")
        artifact = self._run_stage('encrypt', lambda: codec.encrypt(data, master_key))
        self._log(f"Encrypted bundle ({artifact.size / 1024:.1f} KB, checksum {artifact.checksum[:12]})")

        filename = generate_backup_filename(self.job.backup_type, secondary_owner_id)
        key = build_storage_path(self.job.owner_id, filename)

        # Stage 3: write-primary (no retry: an outage must surface)
        self._run_stage('write-primary', lambda: self.services.primary.write(key, artifact))
        self._log(f"Uploaded to primary store: {key}")

        # Stage 4: register
        try:
            self.record = self._run_stage('register', lambda: self.services.registry.register(
                owner_id=self.job.owner_id,
                backup_type=self.job.backup_type,
                filename=filename,
                storage_path=key,
                artifact=artifact,
                retention_days=self._retention_days(),
                secondary_owner_id=secondary_owner_id,
                is_pinned=bool(options.get('pinned', False)),
            ))
        except BackupError:
            self._remove_orphan(key)
            raise

        self.job.record_id = self.record.id
        self._log(f"Registered backup record {self.record.id}")
        self._flush_logs_to_db()

        # Optional copies: the backup already exists, failures are warnings
        if options.get('local_copy', self.services.local_copy_enabled):
            self._store_local_copy(key, artifact)

        if options.get('mirror', self._auto_mirror()):
            self._mirror(key, artifact)

    def _run_stage(self, name: str, func: Callable[[], Any], retries: int = 0):
        """
        Run one stage, retrying transient failures.

        Raises:
            JobCancelled: If cancellation was requested before the stage started
        """
        self._check_cancelled()
        self.current_step = name

        attempt = 0
        while True:
            try:
                return func()
            except TransientError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                self._log(f"Stage {name} failed transiently ({e}), retry {attempt}/{retries}")
                time.sleep(self.services.retry_delay * attempt)

    def _check_cancelled(self):
        db.session.refresh(self.job)
        if self.job.cancellation_requested:
            raise JobCancelled(f"Backup job {self.job.id} was cancelled")

    def _remove_orphan(self, key: str):
        try:
            self.services.primary.delete(key)
            self._log(f"Removed unregistered primary object: {key}")
        except StorageError as e:
            logger.error(f"Failed to remove orphaned primary object {key}: {e}")
            self._log(f"Warning: failed to remove orphaned primary object {key}: {e}")

    def _store_local_copy(self, key: str, artifact):
        local = self.services.local
        if local is None:
            return

        from .retention import enforce_local_cap

        try:
            try:
                local.write(key, artifact, confirmed=True)
            except QuotaExceededError:
                self._log("Local store full, evicting old copies")
                enforce_local_cap(self.services, extra_bytes=artifact.size)
                local.write(key, artifact, confirmed=True)

            self.services.registry.update(self.record, local_path=key)
            self._log(f"Stored local copy: {key}")
            enforce_local_cap(self.services)
        except Exception as e:
            self._warn(f"Local copy failed: {e}")

    def _mirror(self, key: str, artifact):
        mirror = self.services.mirror_factory.for_owner(self.job.owner_id)
        if not mirror.is_connected:
            self._log("No cloud mirror connected, skipping")
            return

        attempts = self.services.stage_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                file_id = mirror.write(key, artifact)
                self.services.registry.update(
                    self.record,
                    mirror_file_id=file_id,
                    mirror_synced_at=datetime.utcnow(),
                    mirror_error=None,
                )
                self._log(f"Mirrored to cloud: {file_id}")
                return
            except TransientError as e:
                if attempt < attempts:
                    self._log(f"Mirror upload failed transiently ({e}), retry {attempt}/{attempts - 1}")
                    time.sleep(self.services.retry_delay * attempt)
                    continue
                error = e
            except Exception as e:
                error = e
            break

        self.services.registry.update(self.record, mirror_error=str(error))
        self._warn(f"Cloud mirror failed: {error}")

    def _warn(self, message: str):
        logger.warning(f"Backup job {self.job.id}: {message}")
        self.warnings.append(message)
        self._log(f"Warning: {message}")

    def _retention_days(self) -> int:
        schedule = self._owner_schedule()
        if schedule is not None:
            return schedule.retention_days
        return self.services.default_retention_days

    def _auto_mirror(self) -> bool:
        schedule = self._owner_schedule()
        return bool(schedule and schedule.auto_mirror)

    def _owner_schedule(self) -> Optional[BackupSchedule]:
        if self.job.schedule is not None:
            return self.job.schedule
        return BackupSchedule.query.filter_by(owner_id=self.job.owner_id).first()

    def _record_on_schedule(self):
        if self.job.schedule is None:
            return
        if self.job.status == 'failed':
            self.job.schedule.last_error = f"{self.job.failed_step or 'setup'}: {self.job.error_message}"
        elif self.job.status == 'succeeded':
            self.job.schedule.last_error = None

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[job {self.job.id}] {message}")

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        self.job.logs = '\n'.join(self.logs)
        db.session.commit()
        self._log_flush_counter = 0


def create_job(owner_id: str, backup_type: str, options: Optional[Dict[str, Any]] = None,
               schedule: Optional[BackupSchedule] = None) -> BackupJob:
    """Create a pending BackupJob."""
    job = BackupJob(
        owner_id=owner_id,
        backup_type=backup_type,
        options=dict(options or {}),
        schedule_id=schedule.id if schedule is not None else None,
        status='pending',
    )
    db.session.add(job)
    db.session.commit()
    return job


def execute_backup_job(job_id: int, services=None) -> BackupJob:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        services: BackupServices (defaults to the current app's)

    Returns:
        BackupJob with its terminal status

    Raises:
        ValueError: If job not found or not pending
    """
    if services is None:
        from vaultsync import get_services
        services = get_services()

    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if job.status != 'pending':
        raise ValueError(f"Backup job {job_id} is not pending (status: {job.status})")

    if job.cancellation_requested:
        job.status = 'cancelled'
        job.completed_at = datetime.utcnow()
        db.session.commit()
        return job

    executor = BackupExecutor(job, services)
    return executor.execute()
