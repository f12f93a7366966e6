from datetime import datetime
from vaultsync import db


class BackupRecord(db.Model):
    """Registry row for one backup, independent of where the bytes live"""
    __tablename__ = 'backup_records'

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    secondary_owner_id = db.Column(db.String(64))
    filename = db.Column(db.String(255), nullable=False)
    storage_path = db.Column(db.String(500), unique=True, nullable=False)
    file_size_bytes = db.Column(db.BigInteger, nullable=False)
    backup_type = db.Column(db.String(32), nullable=False)
    checksum = db.Column(db.String(64), nullable=False)
    format_version = db.Column(db.String(16), nullable=False)
    is_pinned = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False, index=True)  # active, expired, deleted
    is_local_only = db.Column(db.Boolean, default=False, nullable=False)
    expires_at = db.Column(db.DateTime)  # NULL when pinned
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    purged_at = db.Column(db.DateTime)  # Primary and local bytes removed, mirror delete pending

    # Copies outside the primary store
    local_path = db.Column(db.String(500))
    mirror_file_id = db.Column(db.String(255))
    mirror_synced_at = db.Column(db.DateTime)
    mirror_error = db.Column(db.Text)

    def __repr__(self):
        return f'<BackupRecord {self.filename} owner={self.owner_id} status={self.status}>'


class BackupSchedule(db.Model):
    """Automatic backup policy, one per owner"""
    __tablename__ = 'backup_schedules'

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), unique=True, nullable=False)
    secondary_owner_id = db.Column(db.String(64))
    backup_type = db.Column(db.String(32), default='full', nullable=False)
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)
    frequency = db.Column(db.String(100), nullable=False)  # Cron expression or daily/weekly/monthly
    retention_days = db.Column(db.Integer, nullable=False)
    min_backups_to_keep = db.Column(db.Integer, default=0, nullable=False)
    auto_mirror = db.Column(db.Boolean, default=False, nullable=False)
    next_run_at = db.Column(db.DateTime, index=True)
    last_run_at = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    jobs = db.relationship('BackupJob', back_populates='schedule', lazy='dynamic')

    def __repr__(self):
        return f'<BackupSchedule owner={self.owner_id} frequency={self.frequency} enabled={self.is_enabled}>'


class BackupJob(db.Model):
    """One execution of the backup pipeline, with logs"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('backup_schedules.id'))  # NULL for on-demand
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    backup_type = db.Column(db.String(32), nullable=False)
    options = db.Column(db.JSON)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, running, succeeded, failed, cancelled
    attempted_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    failed_step = db.Column(db.String(32))  # export, encrypt, write-primary, register
    error_message = db.Column(db.Text)
    record_id = db.Column(db.Integer, db.ForeignKey('backup_records.id'))
    mirror_warning = db.Column(db.Text)
    cancellation_requested = db.Column(db.Boolean, default=False, nullable=False)
    logs = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    schedule = db.relationship('BackupSchedule', back_populates='jobs')
    record = db.relationship('BackupRecord')

    def __repr__(self):
        return f'<BackupJob id={self.id} owner={self.owner_id} status={self.status}>'


class CloudConnection(db.Model):
    """Per-owner Google Drive authorization (tokens stored encrypted)"""
    __tablename__ = 'cloud_connections'

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), unique=True, nullable=False)
    access_token_encrypted = db.Column(db.Text, nullable=False)
    refresh_token_encrypted = db.Column(db.Text, nullable=False)
    token_expires_at = db.Column(db.DateTime)
    folder_id = db.Column(db.String(255))
    folder_name = db.Column(db.String(255))
    email = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_sync_at = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<CloudConnection owner={self.owner_id} active={self.is_active}>'
