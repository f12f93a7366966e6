"""
Backup module for vaultsync.

This module handles the core backup functionality including:
- Export of domain data into versioned bundles
- Authenticated encryption (codec)
- Storage (S3 primary store, local store, Google Drive mirror)
- Backup registry, schedules and job execution
- Offline sync queue replay
- Retention policy enforcement
"""

from .codec import BackupData, EncryptedBackup, encrypt, decrypt, validate_format
from .exporter import Exporter, DomainDataProvider
from .storage import S3Storage, LocalStorage
from .mirror import GoogleDriveMirror, NullMirror, MirrorFactory
from .registry import BackupRegistry
from .executor import BackupExecutor
from .sync_queue import SyncQueue
from .retention import RetentionManager
from .service import BackupServices

__all__ = [
    'BackupData',
    'EncryptedBackup',
    'encrypt',
    'decrypt',
    'validate_format',
    'Exporter',
    'DomainDataProvider',
    'S3Storage',
    'LocalStorage',
    'GoogleDriveMirror',
    'NullMirror',
    'MirrorFactory',
    'BackupRegistry',
    'BackupExecutor',
    'SyncQueue',
    'RetentionManager',
    'BackupServices'
]
