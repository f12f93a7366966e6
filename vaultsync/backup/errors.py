"""
Exception hierarchy for the backup subsystem.

Every error raised by the pipeline, the storage backends and the sync queue
derives from BackupError so callers can report failures uniformly.
Retryable failures additionally carry the TransientError marker.
"""


class BackupError(Exception):
    """Base exception for all backup errors"""
    pass


class TransientError(Exception):
    """Marker for failures that may succeed when retried (timeouts, network)"""
    pass


class ExportError(BackupError):
    """Raised when a domain section fails to produce data"""
    pass


class ExportTimeoutError(ExportError, TransientError):
    """Raised when a domain section provider exceeds its timeout"""
    pass


class EncodingError(BackupError):
    """Raised when a backup bundle cannot be serialized deterministically"""
    pass


class AuthenticationError(BackupError):
    """Raised when the AEAD tag does not verify (tampering or wrong key)"""
    pass


class IntegrityError(BackupError):
    """Raised when the plaintext checksum does not match after decryption"""
    pass


class StorageError(BackupError):
    """Raised when a storage operation fails"""
    pass


class ConflictError(StorageError):
    """Raised when a key already holds different content"""
    pass


class NotFoundError(StorageError):
    """Raised when a stored artifact or registry record does not exist"""
    pass


class TransientStorageError(StorageError, TransientError):
    """Raised on storage timeouts and network failures"""
    pass


class QuotaExceededError(StorageError):
    """Raised when a backend is out of space"""
    pass


class MirrorAuthError(StorageError):
    """Raised when the cloud mirror rejects credentials after a token refresh"""
    pass


class JobCancelled(BackupError):
    """Raised between pipeline stages when cancellation was requested"""
    pass


class BackupJobError(BackupError):
    """
    Raised by create_backup when a job does not succeed.

    Carries the pipeline step that failed so "never created" can be told
    apart from "created but not mirrored".
    """

    def __init__(self, message: str, step: str = None, job=None):
        super().__init__(message)
        self.step = step
        self.job = job
