"""
Encryption utilities for OAuth tokens stored in the database.

Uses Fernet symmetric encryption with a key derived from the backup master key.
This is separate from the backup codec, which encrypts backup payloads with
AES-256-GCM directly under the master key.
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class TokenCipher:
    """Handles encryption and decryption of stored cloud mirror tokens."""

    def __init__(self, master_key: bytes):
        """
        Initialize the cipher from the master key.

        Args:
            master_key: 32-byte backup master key
        """
        # Fixed salt: the master key itself is the secret. Version tagged for rotation.
        fixed_salt = b'vaultsync_token_key_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(master_key))

        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a token.

        Args:
            plaintext: Token to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a token.

        Args:
            encrypted: Base64-encoded encrypted string

        Returns:
            Decrypted token

        Raises:
            cryptography.fernet.InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        decrypted_bytes = self._fernet.decrypt(encrypted_bytes)
        return decrypted_bytes.decode()


__all__ = ['TokenCipher', 'InvalidToken']
