"""
Backup codec - authenticated encryption and checksum verification.

Artifacts are encrypted with AES-256-GCM under the platform master key:
- A fresh 96-bit IV is drawn from os.urandom for every encryption
- The format version is bound to the ciphertext as associated data
- A SHA-256 checksum of the plaintext bundle is stored alongside the
  ciphertext and re-verified after decryption, independently of the GCM tag

This module performs no I/O.
"""

import os
import json
import base64
import hashlib
import binascii
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationError, EncodingError, IntegrityError


FORMAT_VERSION = '1.0'
SUPPORTED_FORMAT_VERSIONS = ('1.0',)
SCHEMA_VERSION = '1.0'

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # 96 bits recommended for GCM
TAG_LENGTH = 16  # 128-bit auth tag

SCOPES = ('full', 'tenant-subset', 'user-subset')

REQUIRED_ARTIFACT_FIELDS = ('format_version', 'iv', 'auth_tag', 'ciphertext', 'checksum')


@dataclass
class BackupData:
    """Structured, versioned bundle produced by the exporter."""

    scope: str
    subject_id: str
    backup_type: str
    generated_at: datetime
    schema_version: str = SCHEMA_VERSION
    secondary_owner_id: Optional[str] = None
    sections: Dict[str, Any] = field(default_factory=dict)

    def section(self, name: str):
        """Return a section's records; missing sections are empty."""
        return self.sections.get(name, [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope': self.scope,
            'subject_id': self.subject_id,
            'backup_type': self.backup_type,
            'generated_at': self.generated_at.isoformat(),
            'schema_version': self.schema_version,
            'secondary_owner_id': self.secondary_owner_id,
            'sections': self.sections,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupData':
        return cls(
            scope=data['scope'],
            subject_id=data['subject_id'],
            backup_type=data['backup_type'],
            generated_at=datetime.fromisoformat(data['generated_at']),
            schema_version=data.get('schema_version', SCHEMA_VERSION),
            secondary_owner_id=data.get('secondary_owner_id'),
            sections=data.get('sections') or {},
        )


@dataclass
class EncryptedBackup:
    """On-the-wire / at-rest backup artifact."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    checksum: str
    format_version: str = FORMAT_VERSION
    created_at: str = ''
    backup_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format_version': self.format_version,
            'created_at': self.created_at,
            'backup_type': self.backup_type,
            'iv': _b64encode(self.iv),
            'auth_tag': _b64encode(self.auth_tag),
            'checksum': self.checksum,
            'ciphertext': _b64encode(self.ciphertext),
        }

    def to_bytes(self) -> bytes:
        """Canonical serialized form written to every storage backend."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':')).encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EncryptedBackup':
        missing = [name for name in REQUIRED_ARTIFACT_FIELDS if name not in data]
        if missing:
            raise EncodingError(f"Backup artifact is missing fields: {', '.join(missing)}")

        try:
            return cls(
                ciphertext=_b64decode(data['ciphertext']),
                iv=_b64decode(data['iv']),
                auth_tag=_b64decode(data['auth_tag']),
                checksum=data['checksum'],
                format_version=data['format_version'],
                created_at=data.get('created_at', ''),
                backup_type=data.get('backup_type'),
            )
        except (binascii.Error, AttributeError, TypeError, ValueError) as e:
            raise EncodingError(f"Backup artifact has malformed binary fields: {e}")

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'EncryptedBackup':
        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise EncodingError(f"Backup artifact is not valid JSON: {e}")

        if not isinstance(data, dict):
            raise EncodingError("Backup artifact must be a JSON object")

        return cls.from_dict(data)

    @property
    def size(self) -> int:
        return len(self.to_bytes())


def generate_master_key() -> str:
    """
    Generate a new base64-encoded 256-bit master key.

    Run once and store the result in BACKUP_MASTER_KEY.
    """
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def coerce_master_key(master_key: Union[str, bytes]) -> bytes:
    """
    Normalize a master key given as raw bytes or a base64 string.

    Raises:
        ValueError: If the key is not 256 bits
    """
    if isinstance(master_key, str):
        try:
            key_bytes = base64.b64decode(master_key.encode(), validate=True)
        except binascii.Error:
            try:
                key_bytes = base64.urlsafe_b64decode(master_key.encode())
            except binascii.Error as e:
                raise ValueError(f"Master key is not valid base64: {e}")
    else:
        key_bytes = bytes(master_key)

    if len(key_bytes) != KEY_LENGTH:
        raise ValueError("Master key must be 256 bits (32 bytes)")

    return key_bytes


def encode_bundle(data: BackupData) -> bytes:
    """
    Serialize a bundle to canonical JSON bytes.

    Raises:
        EncodingError: If the bundle contains values that cannot be serialized
    """
    try:
        return json.dumps(
            data.to_dict(),
            sort_keys=True,
            separators=(',', ':'),
            ensure_ascii=False,
            allow_nan=False,
            default=_json_default,
        ).encode('utf-8')
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Backup bundle is not serializable: {e}")


def compute_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def encrypt(data: BackupData, master_key: Union[str, bytes]) -> EncryptedBackup:
    """
    Encrypt a backup bundle.

    Args:
        data: Bundle to encrypt
        master_key: 256-bit key (bytes or base64 string)

    Returns:
        EncryptedBackup artifact

    Raises:
        EncodingError: If the bundle cannot be serialized
    """
    key = coerce_master_key(master_key)
    plaintext = encode_bundle(data)
    checksum = compute_checksum(plaintext)

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext, FORMAT_VERSION.encode())

    return EncryptedBackup(
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        auth_tag=sealed[-TAG_LENGTH:],
        checksum=checksum,
        format_version=FORMAT_VERSION,
        created_at=datetime.now(timezone.utc).isoformat(),
        backup_type=data.backup_type,
    )


def decrypt(artifact: EncryptedBackup, master_key: Union[str, bytes]) -> BackupData:
    """
    Decrypt and verify a backup artifact.

    Raises:
        EncodingError: If the artifact is structurally invalid
        AuthenticationError: If the GCM tag does not verify
        IntegrityError: If the plaintext checksum does not match
    """
    if not validate_format(artifact):
        raise EncodingError(f"Unsupported or malformed backup format (version {artifact.format_version!r})")

    key = coerce_master_key(master_key)

    try:
        plaintext = AESGCM(key).decrypt(
            artifact.iv,
            artifact.ciphertext + artifact.auth_tag,
            artifact.format_version.encode(),
        )
    except InvalidTag:
        raise AuthenticationError("Decryption failed - backup was tampered with or the key is wrong")

    if compute_checksum(plaintext) != artifact.checksum:
        raise IntegrityError(
            "Checksum mismatch after decryption - backup may be from an incompatible format version"
        )

    try:
        return BackupData.from_dict(json.loads(plaintext.decode('utf-8')))
    except (UnicodeDecodeError, ValueError, KeyError) as e:
        raise IntegrityError(f"Decrypted bundle is not a valid backup: {e}")


def validate_format(artifact: Union[EncryptedBackup, Dict[str, Any]]) -> bool:
    """Structural check of an artifact without attempting decryption."""
    if isinstance(artifact, dict):
        try:
            artifact = EncryptedBackup.from_dict(artifact)
        except EncodingError:
            return False

    if not isinstance(artifact, EncryptedBackup):
        return False

    return (
        artifact.format_version in SUPPORTED_FORMAT_VERSIONS
        and isinstance(artifact.ciphertext, bytes)
        and isinstance(artifact.iv, bytes) and len(artifact.iv) == IV_LENGTH
        and isinstance(artifact.auth_tag, bytes) and len(artifact.auth_tag) == TAG_LENGTH
        and isinstance(artifact.checksum, str) and len(artifact.checksum) == 64
    )


def reencrypt(artifact: EncryptedBackup, old_key, new_key) -> EncryptedBackup:
    """Re-encrypt an artifact under a rotated master key."""
    data = decrypt(artifact, old_key)
    rotated = encrypt(data, new_key)
    rotated.created_at = artifact.created_at
    return rotated


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode('ascii')


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode('ascii'), validate=True)
