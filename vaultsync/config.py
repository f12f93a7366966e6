import os


def _env_int(name, default=None):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or generate a persistent one in development
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        # Try to read from persistent file in /data directory
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Fallback for development mode - this will cause issues in production
            import secrets
            SECRET_KEY = secrets.token_hex(32)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/vaultsync.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Encryption (base64-encoded 32-byte key)
    BACKUP_MASTER_KEY = os.environ.get('BACKUP_MASTER_KEY')

    # Primary store (S3)
    BACKUP_BUCKET = os.environ.get('BACKUP_BUCKET') or 'vaultsync-backups'
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    PRIMARY_QUOTA_BYTES = _env_int('PRIMARY_QUOTA_BYTES')
    STORAGE_USAGE_TTL_SECONDS = _env_int('STORAGE_USAGE_TTL_SECONDS', 60)

    # Local store
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    LOCAL_COPY_ENABLED = _env_bool('LOCAL_COPY_ENABLED', False)
    LOCAL_MAX_BACKUPS = _env_int('LOCAL_MAX_BACKUPS', 7)
    LOCAL_MAX_BYTES = _env_int('LOCAL_MAX_BYTES', 500 * 1024 * 1024)

    # Sync queue (offline-first clients)
    SYNC_QUEUE_URL = os.environ.get('SYNC_QUEUE_URL')
    SYNC_MAX_RETRIES = _env_int('SYNC_MAX_RETRIES', 5)
    SYNC_BACKOFF_BASE_SECONDS = _env_int('SYNC_BACKOFF_BASE_SECONDS', 30)
    SYNC_BACKOFF_MAX_SECONDS = _env_int('SYNC_BACKOFF_MAX_SECONDS', 3600)
    SYNC_PROBE_URL = os.environ.get('SYNC_PROBE_URL')
    SYNC_METADATA_URL = os.environ.get('SYNC_METADATA_URL')
    SYNC_REPLAY_INTERVAL_SECONDS = _env_int('SYNC_REPLAY_INTERVAL_SECONDS', 60)

    # Cloud mirror (Google Drive)
    GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID')
    GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET')

    # Backup policy
    DEFAULT_RETENTION_DAYS = _env_int('DEFAULT_RETENTION_DAYS', 30)
    DEFAULT_SCHEDULE = os.environ.get('DEFAULT_SCHEDULE') or 'daily'

    # Job runner
    BACKUP_WORKERS = _env_int('BACKUP_WORKERS', 4)
    EXPORT_TIMEOUT_SECONDS = _env_int('EXPORT_TIMEOUT_SECONDS', 60)
    STORAGE_TIMEOUT_SECONDS = _env_int('STORAGE_TIMEOUT_SECONDS', 30)
    JOB_STAGE_RETRIES = _env_int('JOB_STAGE_RETRIES', 2)
    JOB_RETRY_DELAY_SECONDS = _env_int('JOB_RETRY_DELAY_SECONDS', 5)
    OWNER_LOCK_TIMEOUT_SECONDS = _env_int('OWNER_LOCK_TIMEOUT_SECONDS', 300)

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TICK_SECONDS = 60
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "vaultsync.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration (in-memory database, no scheduler)"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    LOG_DIR = None
    BACKUP_BUCKET = 'vaultsync-test-backups'
    AWS_ACCESS_KEY_ID = 'testing'
    AWS_SECRET_ACCESS_KEY = 'testing'
    AWS_REGION = 'us-east-1'
    S3_ENDPOINT_URL = None
    LOCAL_COPY_ENABLED = False
    SYNC_QUEUE_URL = None
    SYNC_PROBE_URL = None
    SYNC_METADATA_URL = None
    GOOGLE_CLIENT_ID = None
    GOOGLE_CLIENT_SECRET = None
    DEFAULT_RETENTION_DAYS = 30
    DEFAULT_SCHEDULE = 'daily'
    JOB_STAGE_RETRIES = 2
    JOB_RETRY_DELAY_SECONDS = 0
    EXPORT_TIMEOUT_SECONDS = 5
    OWNER_LOCK_TIMEOUT_SECONDS = 1


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
