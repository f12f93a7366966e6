"""
Master key loading.

The backup master key is provided through process configuration
(BACKUP_MASTER_KEY, base64-encoded 32 bytes) and is never embedded in code.
"""

from vaultsync.backup.codec import coerce_master_key


def get_master_key(app) -> bytes:
    """
    Read and validate the master key from Flask app config.

    Args:
        app: Flask application instance

    Returns:
        32-byte master key

    Raises:
        RuntimeError: If BACKUP_MASTER_KEY is not configured or invalid
    """
    configured = app.config.get('BACKUP_MASTER_KEY')

    if not configured:
        raise RuntimeError("BACKUP_MASTER_KEY not configured - cannot encrypt or restore backups")

    try:
        return coerce_master_key(configured)
    except ValueError as e:
        raise RuntimeError(f"BACKUP_MASTER_KEY is invalid: {e}")
