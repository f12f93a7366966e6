"""
Public backup operations.

These are the functions the surrounding application calls. Each takes an
optional BackupServices bundle and defaults to the one registered on the
current Flask app.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from vaultsync import db
from vaultsync.models import BackupJob, BackupRecord, BackupSchedule, CloudConnection
from . import codec
from .codec import BackupData
from .executor import OwnerLocks, create_job, BackupExecutor
from .exporter import Exporter
from .mirror import MirrorFactory, build_authorization_url
from .registry import BackupRegistry, compute_expires_at
from .retention import enforce_local_cap, purge_record
from .schedules import apply_policy, create_default_schedule
from .storage import StorageBackend, LocalStorage, build_storage_path, generate_backup_filename
from .sync_queue import SyncQueue, build_replay_handlers
from .errors import (
    BackupError,
    BackupJobError,
    IntegrityError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    TransientStorageError,
)

logger = logging.getLogger(__name__)


@dataclass
class BackupServices:
    """Everything the pipeline needs, wired once at startup."""

    exporter: Exporter
    primary: StorageBackend
    registry: BackupRegistry
    mirror_factory: MirrorFactory
    owner_locks: OwnerLocks = field(default_factory=OwnerLocks)
    local: Optional[LocalStorage] = None
    sync_queue: Optional[SyncQueue] = None
    sync_probe: Optional[Callable[[], bool]] = None
    metadata_handler: Optional[Callable[[Dict[str, Any]], Any]] = None
    master_key: Optional[bytes] = None
    google_client_id: Optional[str] = None
    local_copy_enabled: bool = False
    local_max_backups: Optional[int] = None
    local_max_bytes: Optional[int] = None
    default_retention_days: int = 30
    default_schedule: str = 'daily'
    stage_retries: int = 2
    retry_delay: float = 1.0
    owner_lock_timeout: float = 300


def _services(services: Optional[BackupServices]) -> BackupServices:
    if services is not None:
        return services
    from vaultsync import get_services
    return get_services()


def _validate_backup_type(services: BackupServices, backup_type: str):
    if backup_type not in services.exporter.backup_types:
        raise ValueError(
            f"Invalid backup type: {backup_type}. "
            f"Must be one of: {', '.join(sorted(services.exporter.backup_types))}"
        )


def create_backup(owner_id: str, backup_type: str = 'full', options: Optional[Dict[str, Any]] = None,
                  services: Optional[BackupServices] = None) -> BackupRecord:
    """
    Run an on-demand backup synchronously.

    Args:
        owner_id: Tenant / owner identifier
        backup_type: One of the configured backup types
        options: Scope options for the exporter plus 'mirror', 'local_copy', 'pinned'

    Returns:
        The active BackupRecord

    Raises:
        ValueError: If backup_type is unknown
        BackupJobError: If the job did not succeed (carries failed step and job)
    """
    services = _services(services)
    _validate_backup_type(services, backup_type)

    job = create_job(owner_id, backup_type, options)
    job = BackupExecutor(job, services).execute()

    if job.status != 'succeeded':
        step = job.failed_step
        message = job.error_message or f"Backup {job.status}"
        if step:
            message = f"Backup failed at step {step}: {message}"
        raise BackupJobError(message, step=step, job=job)

    return job.record


def queue_backup(owner_id: str, backup_type: str = 'full', options: Optional[Dict[str, Any]] = None,
                 services: Optional[BackupServices] = None) -> BackupJob:
    """Create a pending job and hand it to the scheduler's backup pool."""
    services = _services(services)
    _validate_backup_type(services, backup_type)

    from vaultsync.scheduler import enqueue_backup_job

    job = create_job(owner_id, backup_type, options)
    enqueue_backup_job(job.id)
    return job


def create_local_backup(owner_id: str, backup_type: str = 'full', options: Optional[Dict[str, Any]] = None,
                        services: Optional[BackupServices] = None) -> BackupRecord:
    """
    Offline-first backup: write to the Local Store only and queue the upload.

    The record is flagged is_local_only until the sync queue confirms the
    Primary Store copy.

    Raises:
        BackupError: If no Local Store / sync queue is configured
    """
    services = _services(services)
    _validate_backup_type(services, backup_type)

    if services.local is None or services.sync_queue is None:
        raise BackupError("Local backups require LOCAL_BACKUP_DIR and SYNC_QUEUE_URL")
    if services.master_key is None:
        raise BackupError("BACKUP_MASTER_KEY not configured - cannot encrypt backups")

    options = dict(options or {})
    secondary_owner_id = options.get('secondary_owner_id')

    with services.owner_locks.hold(owner_id, services.owner_lock_timeout):
        data = services.exporter.export(owner_id, backup_type, options)
        artifact = codec.encrypt(data, services.master_key)

        filename = generate_backup_filename(backup_type, secondary_owner_id)
        key = build_storage_path(owner_id, filename)
        try:
            services.local.write(key, artifact)
        except QuotaExceededError:
            logger.info("Local store full, evicting old copies before local-only backup")
            enforce_local_cap(services, extra_bytes=artifact.size)
            services.local.write(key, artifact)

        record = services.registry.register(
            owner_id=owner_id,
            backup_type=backup_type,
            filename=filename,
            storage_path=key,
            artifact=artifact,
            retention_days=_retention_days(services, owner_id),
            secondary_owner_id=secondary_owner_id,
            is_local_only=True,
        )
        services.registry.update(record, local_path=key)

    logger.info(f"Created local-only backup {filename} for owner {owner_id}")
    return record


def list_backups(owner_id: str, backup_type: Optional[str] = None, status: Optional[str] = None,
                 include_expired: bool = False, limit: Optional[int] = None, offset: int = 0,
                 services: Optional[BackupServices] = None) -> List[BackupRecord]:
    services = _services(services)
    return services.registry.list(
        owner_id,
        backup_type=backup_type,
        status=status,
        include_expired=include_expired,
        limit=limit,
        offset=offset,
    )


def get_backup(backup_id: int, services: Optional[BackupServices] = None) -> BackupRecord:
    return _services(services).registry.get(backup_id)


def delete_backup(backup_id: int, services: Optional[BackupServices] = None) -> List[str]:
    """
    Delete a backup from every backend and mark it deleted.

    When the Primary Store is unreachable and a sync queue is configured,
    the primary delete is queued and the rest proceeds. If the mirror copy
    cannot be removed the backup stays expired until retention retries it.

    Returns:
        Warnings (cloud mirror failures)

    Raises:
        NotFoundError: If the backup does not exist
        StorageError: If a required delete fails
    """
    services = _services(services)
    record = services.registry.get(backup_id)

    if record.status == 'deleted':
        return []

    if record.is_local_only and services.sync_queue is not None:
        services.sync_queue.discard_pending('storage_write', record.storage_path)

    try:
        warnings = purge_record(services, record)
    except TransientStorageError as e:
        if services.sync_queue is None:
            raise
        logger.warning(f"Primary store unreachable, queueing delete of {record.storage_path}: {e}")
        services.sync_queue.enqueue('storage_delete', {'key': record.storage_path})
        warnings = purge_record(services, record, skip_primary=True)

    logger.info(f"Deleted backup {record.filename} (owner {record.owner_id})")
    return warnings


def restore_backup(backup_id: int, master_key=None, sections: Optional[List[str]] = None,
                   services: Optional[BackupServices] = None) -> BackupData:
    """
    Fetch, verify and decrypt a backup.

    Args:
        backup_id: BackupRecord id
        master_key: Key to decrypt with (defaults to the configured master key)
        sections: Only return these sections (missing ones are empty)

    Returns:
        The original BackupData

    Raises:
        NotFoundError: If the record is deleted or no copy can be read
        AuthenticationError: If the key is wrong or the artifact was tampered with
        IntegrityError: If the checksum does not match
    """
    services = _services(services)
    record = services.registry.get(backup_id)

    _require_live(record)

    key = master_key if master_key is not None else services.master_key
    if key is None:
        raise BackupError("No master key available for restore")

    artifact = _read_artifact(services, record)

    if artifact.checksum != record.checksum:
        raise IntegrityError(f"Stored artifact for backup {backup_id} does not match its registry checksum")

    data = codec.decrypt(artifact, key)

    if sections is not None:
        data.sections = {name: data.section(name) for name in sections}

    logger.info(f"Restored backup {record.filename} for owner {record.owner_id}")
    return data


def _require_live(record: BackupRecord):
    if record.status == 'deleted' or record.purged_at is not None:
        raise NotFoundError(f"Backup {record.id} has been deleted")


def _read_artifact(services: BackupServices, record: BackupRecord):
    if not record.is_local_only:
        try:
            return services.primary.read(record.storage_path)
        except (NotFoundError, TransientStorageError) as e:
            if not (record.local_path and services.local is not None):
                raise
            logger.warning(f"Primary copy of {record.filename} unavailable ({e}), using local copy")

    if record.local_path and services.local is not None:
        return services.local.read(record.local_path)

    raise NotFoundError(f"No readable copy of backup {record.id}")


def pin_backup(backup_id: int, pinned: bool = True, services: Optional[BackupServices] = None) -> BackupRecord:
    """Pin (never expires) or unpin (expiry recomputed from retention)."""
    services = _services(services)
    record = services.registry.get(backup_id)

    _require_live(record)

    record = services.registry.set_pinned(record, pinned, _retention_days(services, record.owner_id))
    if pinned and record.status == 'expired':
        services.registry.set_status(record, 'active')
    return record


def get_schedule(owner_id: str, services: Optional[BackupServices] = None) -> BackupSchedule:
    """Return the owner's schedule, creating the default one on first access."""
    services = _services(services)
    schedule = BackupSchedule.query.filter_by(owner_id=owner_id).first()
    if schedule is None:
        schedule = create_default_schedule(owner_id, services.default_schedule, services.default_retention_days)
    return schedule


def update_schedule(owner_id: str, policy: Dict[str, Any],
                    services: Optional[BackupServices] = None) -> BackupSchedule:
    """
    Apply an owner's policy changes.

    A changed retention_days also recomputes expires_at of the owner's
    active, unpinned backups.

    Raises:
        ValueError: On invalid policy values
    """
    services = _services(services)
    schedule = get_schedule(owner_id, services)
    old_retention = schedule.retention_days

    schedule = apply_policy(schedule, policy, services.exporter.backup_types)

    if schedule.retention_days != old_retention:
        for record in services.registry.list(owner_id):
            if not record.is_pinned:
                record.expires_at = compute_expires_at(record.created_at, schedule.retention_days)
        db.session.commit()

    return schedule


def get_storage_summary(owner_id: str, services: Optional[BackupServices] = None) -> Dict[str, Any]:
    services = _services(services)
    summary = services.registry.usage_summary(owner_id)

    try:
        summary['primary'] = services.primary.usage()
    except StorageError as e:
        logger.warning(f"Primary store usage unavailable: {e}")
        summary['primary'] = None

    summary['local'] = services.local.usage() if services.local is not None else None

    connection = CloudConnection.query.filter_by(owner_id=owner_id).first()
    summary['mirror'] = {
        'connected': bool(connection and connection.is_active),
        'email': connection.email if connection else None,
        'last_sync_at': connection.last_sync_at if connection else None,
        'last_error': connection.last_error if connection else None,
    }

    summary['sync_queue'] = services.sync_queue.summary() if services.sync_queue is not None else None
    return summary


def get_job(job_id: int) -> BackupJob:
    job = db.session.get(BackupJob, job_id)
    if job is None:
        raise NotFoundError(f"Backup job {job_id} not found")
    return job


def cancel_backup_job(job_id: int) -> BackupJob:
    """
    Request cancellation. Pending jobs are cancelled at once; running jobs
    stop before their next stage.

    Raises:
        ValueError: If the job already finished
    """
    job = get_job(job_id)

    if job.status == 'pending':
        job.cancellation_requested = True
        job.status = 'cancelled'
        job.completed_at = datetime.utcnow()
    elif job.status == 'running':
        job.cancellation_requested = True
    else:
        raise ValueError(f"Backup job {job_id} already finished (status: {job.status})")

    db.session.commit()
    logger.info(f"Cancellation requested for backup job {job_id}")
    return job


def mirror_backup(backup_id: int, overwrite: bool = False, services: Optional[BackupServices] = None) -> str:
    """
    Upload an existing backup to the owner's cloud mirror.

    Returns:
        Mirror file id

    Raises:
        StorageError: If no mirror is connected or the upload fails
    """
    services = _services(services)
    record = services.registry.get(backup_id)

    _require_live(record)
    mirror = services.mirror_factory.for_owner(record.owner_id)
    if not mirror.is_connected:
        raise StorageError(f"No cloud mirror connected for owner {record.owner_id}")

    artifact = _read_artifact(services, record)
    try:
        file_id = mirror.write(record.storage_path, artifact, overwrite=overwrite)
    except StorageError as e:
        services.registry.update(record, mirror_error=str(e))
        raise

    services.registry.update(record, mirror_file_id=file_id, mirror_synced_at=datetime.utcnow(), mirror_error=None)
    return file_id


def get_authorization_url(redirect_uri: str, state: Optional[str] = None,
                          services: Optional[BackupServices] = None) -> str:
    services = _services(services)
    if not services.google_client_id:
        raise StorageError("Cloud mirror is not configured (GOOGLE_CLIENT_ID)")
    return build_authorization_url(services.google_client_id, redirect_uri, state)


def connect_cloud_mirror(owner_id: str, code: str, redirect_uri: str,
                         services: Optional[BackupServices] = None) -> CloudConnection:
    return _services(services).mirror_factory.connect(owner_id, code, redirect_uri)


def disconnect_cloud_mirror(owner_id: str, services: Optional[BackupServices] = None) -> bool:
    return _services(services).mirror_factory.disconnect(owner_id)


def replay_sync_queue(probe: Optional[Callable[[], bool]] = None,
                      services: Optional[BackupServices] = None) -> Dict[str, Any]:
    """
    Push queued Local Store actions to the Primary Store.

    Returns:
        Replay stats from SyncQueue.replay()
    """
    services = _services(services)
    if services.sync_queue is None or services.local is None:
        return {'succeeded': 0, 'retrying': 0, 'dead': 0, 'blocked': False, 'offline': False, 'busy': False}

    def confirm(key):
        record = services.registry.find_by_path(key)
        if record is not None and record.purged_at is not None:
            # Deleted while its upload was in flight
            services.sync_queue.enqueue('storage_delete', {'key': key})
        elif record is not None and record.is_local_only:
            services.registry.update(record, is_local_only=False)

    handlers = build_replay_handlers(
        services.local,
        services.primary,
        confirm=confirm,
        metadata_handler=services.metadata_handler,
    )
    return services.sync_queue.replay(handlers, probe=probe or services.sync_probe)


def _retention_days(services: BackupServices, owner_id: str) -> int:
    schedule = BackupSchedule.query.filter_by(owner_id=owner_id).first()
    return schedule.retention_days if schedule else services.default_retention_days
