"""
Storage backends for encrypted backup artifacts.

Supports:
- S3Storage: Primary Store on S3-compatible object storage (source of truth)
- LocalStorage: Local filesystem store for offline-first clients

Every backend implements the StorageBackend contract:
- write(key, artifact, overwrite=False) -> ref (idempotent for identical content)
- read(ref) -> EncryptedBackup
- delete(ref) (already-absent objects count as deleted)
- usage() -> {'used_bytes': int, 'quota_bytes': Optional[int]}
"""

import os
import uuid
import logging
import threading
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    BotoCoreError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)

from vaultsync.utils.cache import CachedValue
from .codec import EncryptedBackup
from .errors import (
    StorageError,
    ConflictError,
    NotFoundError,
    TransientStorageError,
    QuotaExceededError,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound', 'NoSuchBucket'}
TRANSIENT_CODES = {'500', '502', '503', '504', 'InternalError', 'ServiceUnavailable', 'SlowDown', 'RequestTimeout'}
TRANSIENT_BOTO_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)


class StorageBackend:
    """Interface shared by the primary store, local store and cloud mirror."""

    name = 'backend'

    def write(self, key: str, artifact: EncryptedBackup, overwrite: bool = False) -> str:
        raise NotImplementedError

    def read(self, ref: str) -> EncryptedBackup:
        raise NotImplementedError

    def delete(self, ref: str):
        raise NotImplementedError

    def usage(self) -> Dict[str, Any]:
        raise NotImplementedError


def build_storage_path(owner_id: str, filename: str) -> str:
    """Storage key layout shared by all backends: backups/{owner_id}/{filename}"""
    return f"backups/{owner_id}/{filename}"


def generate_backup_filename(backup_type: str, secondary_owner_id: Optional[str] = None,
                             now: Optional[datetime] = None) -> str:
    """
    Generate a standardized backup filename.

    Format: {YYYYMMDDTHHMMSSffffff}-{backup_type}[-{secondary_owner_id[:8]}].vsbackup
    """
    timestamp = (now or datetime.utcnow()).strftime('%Y%m%dT%H%M%S%f')
    suffix = f"-{secondary_owner_id[:8]}" if secondary_owner_id else ''
    return f"{timestamp}-{backup_type}{suffix}.vsbackup"


class S3Storage(StorageBackend):
    """
    Primary Store backed by S3.

    Objects are stored under their storage key, serialized in the canonical
    artifact format. The bucket is created lazily on first use.
    """

    name = 'primary'

    def __init__(self, bucket_name: str, access_key: str = None, secret_key: str = None,
                 region: str = 'us-east-1', endpoint_url: str = None, timeout: float = 30,
                 quota_bytes: Optional[int] = None, usage_ttl: float = 60, prefix: str = 'backups/'):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (None uses the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            timeout: Connect/read timeout in seconds
            quota_bytes: Reported quota, if the deployment has one
            usage_ttl: Seconds to cache usage() results
            prefix: Key prefix summed by usage()
        """
        self.bucket_name = bucket_name
        self.region = region
        self.quota_bytes = quota_bytes
        self.prefix = prefix

        self._bucket_ready = False
        self._bucket_lock = threading.Lock()
        self._usage_cache = CachedValue(ttl=usage_ttl)

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=BotoConfig(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={'max_attempts': 2, 'mode': 'standard'}
                )
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def ensure_bucket(self):
        """
        Create the bucket if it does not exist.

        Safe to call repeatedly and from concurrent callers; a bucket created
        by a racing process counts as success.
        """
        if self._bucket_ready:
            return

        with self._bucket_lock:
            if self._bucket_ready:
                return

            try:
                self.s3_client.head_bucket(Bucket=self.bucket_name)
            except ClientError as e:
                if _error_code(e) not in NOT_FOUND_CODES:
                    raise self._translate(e, 'head bucket')
                self._create_bucket()
            except BotoCoreError as e:
                raise self._translate(e, 'head bucket')

            self._bucket_ready = True

    def _create_bucket(self):
        params = {'Bucket': self.bucket_name}
        if self.region and self.region != 'us-east-1':
            params['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3_client.create_bucket(**params)
            logger.info(f"Created backup bucket: {self.bucket_name}")
        except ClientError as e:
            if _error_code(e) == 'BucketAlreadyOwnedByYou':
                logger.info(f"Bucket {self.bucket_name} already exists, continuing")
                return
            raise self._translate(e, 'create bucket')

    def write(self, key: str, artifact: EncryptedBackup, overwrite: bool = False) -> str:
        """
        Upload an artifact.

        Returns:
            The storage key

        Raises:
            ConflictError: If the key holds different content and overwrite is False
            TransientStorageError: On timeouts and network failures
            StorageError: If upload fails otherwise
        """
        self.ensure_bucket()
        body = artifact.to_bytes()

        if not overwrite:
            existing = self._get_bytes(key, missing_ok=True)
            if existing is not None:
                return self._existing_matches(key, existing, body)

        put_args = {}
        if not overwrite:
            # Conditional create; a concurrent writer surfaces as PreconditionFailed
            put_args['IfNoneMatch'] = '*'

        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=body,
                ContentType='application/json',
                Metadata={
                    'checksum': artifact.checksum,
                    'format-version': artifact.format_version,
                },
                **put_args
            )
        except ClientError as e:
            if not overwrite and _error_code(e) == 'PreconditionFailed':
                return self._existing_matches(key, self._get_bytes(key), body)
            raise self._translate(e, 'upload')
        except BotoCoreError as e:
            raise self._translate(e, 'upload')

        self._usage_cache.invalidate()
        return key

    def _existing_matches(self, key: str, existing: bytes, body: bytes) -> str:
        if existing != body:
            raise ConflictError(f"Key already holds different content: {key}")
        logger.debug(f"Identical artifact already stored at {key}")
        return key

    def read(self, ref: str) -> EncryptedBackup:
        """
        Download an artifact.

        Raises:
            NotFoundError: If the object does not exist
        """
        self.ensure_bucket()
        return EncryptedBackup.from_bytes(self._get_bytes(ref))

    def delete(self, ref: str):
        """
        Delete an object from S3. Missing objects are ignored.

        Raises:
            StorageError: If deletion fails
        """
        self.ensure_bucket()

        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=ref)
        except (ClientError, BotoCoreError) as e:
            error = self._translate(e, 'delete')
            if not isinstance(error, NotFoundError):
                raise error

        self._usage_cache.invalidate()

    def usage(self) -> Dict[str, Any]:
        """Total size of stored backups (cached for usage_ttl seconds)."""
        used = self._usage_cache.get(self._sum_object_sizes)
        return {'used_bytes': used, 'quota_bytes': self.quota_bytes}

    def _sum_object_sizes(self) -> int:
        self.ensure_bucket()

        try:
            total = 0
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get('Contents', []):
                    total += obj['Size']
            return total
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'list')

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in NOT_FOUND_CODES:
                raise NotFoundError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise self._translate(e, 'connection test')
        except BotoCoreError as e:
            raise self._translate(e, 'connection test')

    def _get_bytes(self, key: str, missing_ok: bool = False) -> Optional[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            error = self._translate(e, 'download')
            if missing_ok and isinstance(error, NotFoundError):
                return None
            raise error

    def _translate(self, error: Exception, action: str) -> StorageError:
        if isinstance(error, ClientError):
            error_code = _error_code(error)
            if error_code in NOT_FOUND_CODES:
                return NotFoundError(f"S3 {action} failed, object not found ({error_code})")
            if error_code in TRANSIENT_CODES:
                return TransientStorageError(f"S3 {action} failed ({error_code}): {error}")
            return StorageError(f"S3 {action} failed ({error_code}): {error}")

        if isinstance(error, TRANSIENT_BOTO_ERRORS):
            return TransientStorageError(f"S3 {action} failed: {error}")

        return StorageError(f"S3 {action} failed: {error}")


class LocalStorage(StorageBackend):
    """
    Local filesystem store.

    Stores artifacts under {base_path}/{key}. Writes that are not yet
    confirmed present in the Primary Store are appended to the sync queue.
    """

    name = 'local'

    def __init__(self, base_path: str, max_bytes: Optional[int] = None, sync_queue=None):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
            max_bytes: Byte quota for this store (None = unlimited)
            sync_queue: SyncQueue receiving unconfirmed writes
        """
        self.base_path = Path(base_path)
        self.max_bytes = max_bytes
        self.sync_queue = sync_queue

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def write(self, key: str, artifact: EncryptedBackup, overwrite: bool = False,
              confirmed: bool = False) -> str:
        """
        Store an artifact locally.

        Args:
            key: Storage key (relative path)
            artifact: Artifact to store
            overwrite: Replace differing content at the key
            confirmed: True when the Primary Store already holds this artifact

        Returns:
            The storage key

        Raises:
            ConflictError: If the key holds different content and overwrite is False
            QuotaExceededError: If the write would exceed max_bytes
            StorageError: If storage fails
        """
        dest_path = self._resolve(key)
        body = artifact.to_bytes()
        existing_size = 0

        if dest_path.exists():
            if not overwrite:
                if dest_path.read_bytes() != body:
                    raise ConflictError(f"Key already holds different content: {key}")
                self._queue_write(key, artifact, confirmed)
                return key
            existing_size = dest_path.stat().st_size

        if self.max_bytes is not None:
            used = self._used_bytes() - existing_size
            if used + len(body) > self.max_bytes:
                raise QuotaExceededError(
                    f"Local store quota exceeded: {used + len(body)} > {self.max_bytes} bytes"
                )

        temp_path = dest_path.with_name(f".{dest_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'wb') as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")
        finally:
            if temp_path.exists():
                temp_path.unlink()

        self._queue_write(key, artifact, confirmed)
        return key

    def read(self, ref: str) -> EncryptedBackup:
        full_path = self._resolve(ref)

        if not full_path.is_file():
            raise NotFoundError(f"Local backup not found: {ref}")

        try:
            return EncryptedBackup.from_bytes(full_path.read_bytes())
        except OSError as e:
            raise StorageError(f"Failed to read local file: {e}")

    def delete(self, ref: str):
        """
        Delete a file from local storage. Missing files are ignored.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self._resolve(ref)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def usage(self) -> Dict[str, Any]:
        return {'used_bytes': self._used_bytes(), 'quota_bytes': self.max_bytes}

    def _queue_write(self, key: str, artifact: EncryptedBackup, confirmed: bool):
        if self.sync_queue is not None and not confirmed:
            self.sync_queue.enqueue('storage_write', {'key': key, 'checksum': artifact.checksum})

    def _used_bytes(self) -> int:
        return sum(
            path.stat().st_size
            for path in self.base_path.rglob('*')
            if path.is_file() and not path.name.endswith('.tmp')
        )

    def _resolve(self, key: str) -> Path:
        full_path = (self.base_path / key).resolve()
        base = self.base_path.resolve()
        if full_path != base and base not in full_path.parents:
            raise StorageError(f"Storage key escapes the local store: {key}")
        return full_path


def _error_code(error: ClientError) -> str:
    return str(error.response.get('Error', {}).get('Code', 'Unknown'))
