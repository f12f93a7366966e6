import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (disabled when LOG_DIR is unset, e.g. in tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'vaultsync.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger (module loggers propagate to it)
    logging.basicConfig(level=log_level, handlers=handlers)
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, data_provider=None, test_config=None):
    """
    Flask application factory.

    Args:
        config_name: Key of vaultsync.config.config (defaults to FLASK_ENV)
        data_provider: Domain data provider used by the exporter
        test_config: Mapping applied over the selected configuration
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from vaultsync.config import config
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Ensure the SQLite directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from vaultsync import models
    from vaultsync.migrations import init_database_schema

    init_database_schema(app)

    # Wire storage backends, registry and exporter
    services = init_backup_services(app, data_provider)

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
        return app

    # Initialize and start scheduler (only in designated worker or development child process)
    from vaultsync.scheduler import init_scheduler, start_scheduler, stop_scheduler, schedule_sync_replay
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        if services.sync_queue is not None:
            schedule_sync_replay(app.config['SYNC_REPLAY_INTERVAL_SECONDS'])
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app


def init_backup_services(app, data_provider=None):
    """
    Build the BackupServices bundle from configuration and register it on the app.

    Returns:
        BackupServices
    """
    from vaultsync.backup.exporter import Exporter, DomainDataProvider
    from vaultsync.backup.storage import S3Storage, LocalStorage
    from vaultsync.backup.mirror import MirrorFactory
    from vaultsync.backup.registry import BackupRegistry
    from vaultsync.backup.sync_queue import (
        SyncQueue,
        HttpConnectivityProbe,
        StoreConnectivityProbe,
        HttpMetadataSync,
    )
    from vaultsync.backup.service import BackupServices
    from vaultsync.utils.crypto import TokenCipher
    from vaultsync.utils.master_key import get_master_key

    cfg = app.config

    try:
        master_key = get_master_key(app)
    except RuntimeError as e:
        app.logger.warning(f"{e}. Backups and restores will fail until it is set.")
        master_key = None

    if data_provider is None:
        app.logger.warning("No domain data provider configured - exports will fail")
        data_provider = DomainDataProvider()

    exporter = Exporter(data_provider, timeout=cfg['EXPORT_TIMEOUT_SECONDS'])

    primary = S3Storage(
        bucket_name=cfg['BACKUP_BUCKET'],
        access_key=cfg['AWS_ACCESS_KEY_ID'],
        secret_key=cfg['AWS_SECRET_ACCESS_KEY'],
        region=cfg['AWS_REGION'],
        endpoint_url=cfg['S3_ENDPOINT_URL'],
        timeout=cfg['STORAGE_TIMEOUT_SECONDS'],
        quota_bytes=cfg['PRIMARY_QUOTA_BYTES'],
        usage_ttl=cfg['STORAGE_USAGE_TTL_SECONDS'],
    )

    sync_queue = None
    sync_probe = None
    if cfg['SYNC_QUEUE_URL']:
        sync_queue = SyncQueue(
            cfg['SYNC_QUEUE_URL'],
            max_retries=cfg['SYNC_MAX_RETRIES'],
            backoff_base=cfg['SYNC_BACKOFF_BASE_SECONDS'],
            backoff_max=cfg['SYNC_BACKOFF_MAX_SECONDS'],
        )
        if cfg['SYNC_PROBE_URL']:
            sync_probe = HttpConnectivityProbe(cfg['SYNC_PROBE_URL'])
        else:
            sync_probe = StoreConnectivityProbe(primary)

    local = None
    if cfg['LOCAL_COPY_ENABLED'] or sync_queue is not None:
        local = LocalStorage(cfg['LOCAL_BACKUP_DIR'], max_bytes=cfg['LOCAL_MAX_BYTES'], sync_queue=sync_queue)

    mirror_factory = MirrorFactory(
        cfg['GOOGLE_CLIENT_ID'],
        cfg['GOOGLE_CLIENT_SECRET'],
        cipher=TokenCipher(master_key) if master_key else None,
        timeout=cfg['STORAGE_TIMEOUT_SECONDS'],
    )

    services = BackupServices(
        exporter=exporter,
        primary=primary,
        registry=BackupRegistry(),
        mirror_factory=mirror_factory,
        local=local,
        sync_queue=sync_queue,
        sync_probe=sync_probe,
        metadata_handler=HttpMetadataSync(cfg['SYNC_METADATA_URL']) if cfg['SYNC_METADATA_URL'] else None,
        master_key=master_key,
        google_client_id=cfg['GOOGLE_CLIENT_ID'],
        local_copy_enabled=cfg['LOCAL_COPY_ENABLED'],
        local_max_backups=cfg['LOCAL_MAX_BACKUPS'],
        local_max_bytes=cfg['LOCAL_MAX_BYTES'],
        default_retention_days=cfg['DEFAULT_RETENTION_DAYS'],
        default_schedule=cfg['DEFAULT_SCHEDULE'],
        stage_retries=cfg['JOB_STAGE_RETRIES'],
        retry_delay=cfg['JOB_RETRY_DELAY_SECONDS'],
        owner_lock_timeout=cfg['OWNER_LOCK_TIMEOUT_SECONDS'],
    )

    app.extensions['vaultsync'] = services
    app.logger.info(
        f"Backup services ready (bucket={cfg['BACKUP_BUCKET']}, local={'on' if local else 'off'}, "
        f"sync_queue={'on' if sync_queue else 'off'}, mirror={'on' if mirror_factory.enabled else 'off'})"
    )
    return services


def get_services(app=None):
    """Return the BackupServices registered on the (current) app."""
    app = app or current_app
    return app.extensions['vaultsync']
