"""
Backup Registry - durable metadata for every backup.

The registry is the single source of truth for whether an active backup
exists and when it expires. Expiry, purge and local eviction decisions are
made from these rows, never from a storage backend's own listing.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from vaultsync import db
from vaultsync.models import BackupRecord
from .codec import EncryptedBackup
from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

RECORD_STATUSES = ('active', 'expired', 'deleted')


def compute_expires_at(created_at: datetime, retention_days: int, is_pinned: bool = False) -> Optional[datetime]:
    """Pinned backups never expire; otherwise created_at + retention_days."""
    if is_pinned:
        return None
    return created_at + timedelta(days=retention_days)


class BackupRegistry:
    """Reads and writes BackupRecord rows through the Flask-SQLAlchemy session."""

    def __init__(self, session=None):
        self.session = session or db.session

    def register(
        self,
        owner_id: str,
        backup_type: str,
        filename: str,
        storage_path: str,
        artifact: EncryptedBackup,
        retention_days: int,
        secondary_owner_id: Optional[str] = None,
        is_pinned: bool = False,
        is_local_only: bool = False,
        created_at: Optional[datetime] = None,
    ) -> BackupRecord:
        """
        Create an active record for an artifact already written to storage.

        Raises:
            StorageError: If the row cannot be committed
        """
        created_at = created_at or datetime.utcnow()

        record = BackupRecord(
            owner_id=owner_id,
            secondary_owner_id=secondary_owner_id,
            filename=filename,
            storage_path=storage_path,
            file_size_bytes=artifact.size,
            backup_type=backup_type,
            checksum=artifact.checksum,
            format_version=artifact.format_version,
            is_pinned=is_pinned,
            status='active',
            is_local_only=is_local_only,
            expires_at=compute_expires_at(created_at, retention_days, is_pinned),
            created_at=created_at,
        )

        try:
            self.session.add(record)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to register backup {filename}: {e}")

        logger.info(f"Registered backup {filename} for owner {owner_id} (record {record.id})")
        return record

    def get(self, record_id: int) -> BackupRecord:
        """
        Raises:
            NotFoundError: If no record has this id
        """
        record = self.session.get(BackupRecord, record_id)
        if record is None:
            raise NotFoundError(f"Backup {record_id} not found")
        return record

    def find_by_path(self, storage_path: str) -> Optional[BackupRecord]:
        return BackupRecord.query.filter_by(storage_path=storage_path).first()

    def list(
        self,
        owner_id: str,
        backup_type: Optional[str] = None,
        status: Optional[str] = None,
        include_expired: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[BackupRecord]:
        """
        List an owner's backups, newest first.

        Without a status filter only active backups are returned
        (plus expired ones when include_expired is set).
        """
        query = BackupRecord.query.filter_by(owner_id=owner_id)

        if backup_type:
            query = query.filter_by(backup_type=backup_type)

        if status:
            if status not in RECORD_STATUSES:
                raise ValueError(f"Invalid status: {status}. Must be one of: {', '.join(RECORD_STATUSES)}")
            query = query.filter_by(status=status)
        elif include_expired:
            query = query.filter(BackupRecord.status.in_(('active', 'expired')))
        else:
            query = query.filter_by(status='active')

        query = query.order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc())

        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        return query.all()

    def set_pinned(self, record: BackupRecord, pinned: bool, retention_days: int) -> BackupRecord:
        """Pin clears expires_at; unpin recomputes it from created_at."""
        record.is_pinned = pinned
        record.expires_at = compute_expires_at(record.created_at, retention_days, pinned)
        self.session.commit()
        return record

    def set_status(self, record: BackupRecord, status: str) -> BackupRecord:
        if status not in RECORD_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        record.status = status
        self.session.commit()
        return record

    def update(self, record: BackupRecord, **fields) -> BackupRecord:
        for name, value in fields.items():
            if not hasattr(BackupRecord, name):
                raise ValueError(f"Unknown backup record field: {name}")
            setattr(record, name, value)
        self.session.commit()
        return record

    def due_for_expiry(self, now: datetime) -> List[BackupRecord]:
        return BackupRecord.query.filter(
            BackupRecord.status == 'active',
            BackupRecord.is_pinned.is_(False),
            BackupRecord.expires_at.isnot(None),
            BackupRecord.expires_at <= now,
        ).order_by(BackupRecord.owner_id, BackupRecord.created_at).all()

    def expired(self) -> List[BackupRecord]:
        return BackupRecord.query.filter_by(status='expired').order_by(BackupRecord.created_at).all()

    def newest_active_ids(self, owner_id: str, count: int) -> set:
        if count <= 0:
            return set()
        rows = BackupRecord.query.with_entities(BackupRecord.id).filter_by(
            owner_id=owner_id, status='active'
        ).order_by(BackupRecord.created_at.desc(), BackupRecord.id.desc()).limit(count).all()
        return {row.id for row in rows}

    def with_local_copies(self) -> List[BackupRecord]:
        return BackupRecord.query.filter(
            BackupRecord.local_path.isnot(None),
            BackupRecord.status != 'deleted',
        ).all()

    def usage_summary(self, owner_id: str) -> dict:
        records = self.list(owner_id, include_expired=True)
        return {
            'backup_count': len(records),
            'used_bytes': sum(record.file_size_bytes for record in records),
            'pinned_count': sum(1 for record in records if record.is_pinned),
            'latest_backup_at': records[0].created_at if records else None,
        }
