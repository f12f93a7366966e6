"""
Shared pytest fixtures for vaultsync tests.

This module provides fixtures for:
- Flask app with the testing configuration and mocked S3 (moto)
- Database setup with in-memory SQLite
- A fake domain data provider
- Backup bundles, artifacts and storage backends
- Mock fixtures for the scheduler
"""

import base64
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from moto import mock_aws

from vaultsync import create_app, db as _db
from vaultsync.backup.codec import BackupData, encrypt
from vaultsync.backup.storage import LocalStorage
from vaultsync.backup.sync_queue import SyncQueue


MASTER_KEY = base64.b64encode(b'k' * 32).decode()
MASTER_KEY_BYTES = b'k' * 32
OTHER_KEY_BYTES = b'x' * 32


APPOINTMENTS = [
    {'id': 'a3', 'created_at': '2024-01-03T09:00:00', 'patient': 'P-3', 'notes': 'follow-up'},
    {'id': 'a1', 'created_at': '2024-01-01T09:00:00', 'patient': 'P-1', 'notes': None},
    {'id': 'a2', 'created_at': '2024-01-02T09:00:00', 'patient': 'P-2', 'notes': 'ünïcode'},
]

SETTINGS = [
    {'id': 's1', 'created_at': '2023-12-01T00:00:00', 'language': 'fr', 'currency': 'DZD'},
]


class FakeDomainProvider:
    """Returns canned sections and records every call."""

    def __init__(self, sections=None):
        self.sections = sections if sections is not None else {
            'appointments': APPOINTMENTS,
            'settings': SETTINGS,
        }
        self.calls = []
        self.failures = {}

    def provide_section(self, owner_id, section_name, scope_options):
        self.calls.append((owner_id, section_name, dict(scope_options)))
        if section_name in self.failures:
            raise self.failures[section_name]
        return [dict(record) for record in self.sections.get(section_name, [])]


@pytest.fixture(scope='function')
def provider():
    return FakeDomainProvider()


@pytest.fixture(scope='function')
def app(tmp_path, provider):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and a moto-backed S3 for fast, isolated tests.
    """
    with mock_aws():
        app = create_app('testing', data_provider=provider, test_config={
            'SECRET_KEY': 'test-secret-key',
            'BACKUP_MASTER_KEY': MASTER_KEY,
            'LOCAL_BACKUP_DIR': str(tmp_path / 'local_backups'),
        })
        yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def services(app, db):
    """BackupServices registered on the test app."""
    return app.extensions['vaultsync']


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def bundle():
    """A small BackupData bundle."""
    return BackupData(
        scope='full',
        subject_id='U1',
        backup_type='full',
        generated_at=datetime(2024, 1, 15, 12, 0, 0),
        sections={
            'appointments': sorted(APPOINTMENTS, key=lambda r: r['created_at']),
            'settings': SETTINGS,
        },
    )


@pytest.fixture
def artifact(bundle):
    """The bundle encrypted under the test master key."""
    return encrypt(bundle, MASTER_KEY_BYTES)


@pytest.fixture
def other_artifact(bundle):
    """A different artifact (fresh IV) for conflict tests."""
    return encrypt(bundle, MASTER_KEY_BYTES)


@pytest.fixture
def sync_queue():
    """In-memory sync queue with short backoff."""
    queue = SyncQueue('sqlite://', max_retries=5, backoff_base=10, backoff_max=300)
    yield queue
    queue.close()


@pytest.fixture
def local_store(tmp_path):
    return LocalStorage(str(tmp_path / 'device'))


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('vaultsync.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
