"""
Unit tests for utilities (vaultsync/utils/).

Tests TokenCipher for stored OAuth tokens, master key loading and the
usage cache.
"""

import base64
from unittest.mock import MagicMock

import pytest
from cryptography.fernet import InvalidToken

from vaultsync.utils.cache import CachedValue
from vaultsync.utils.crypto import TokenCipher
from vaultsync.utils.master_key import get_master_key

from conftest import MASTER_KEY, MASTER_KEY_BYTES, OTHER_KEY_BYTES


@pytest.fixture(scope='module')
def cipher():
    return TokenCipher(MASTER_KEY_BYTES)


class TestTokenCipher:
    """Test encrypting stored tokens."""

    def test_encrypt_decrypt_roundtrip(self, cipher):
        """Test tokens survive encryption."""
        token = 'ya29.a0AfH6SMBx-refresh/token=='

        encrypted = cipher.encrypt(token)

        assert encrypted != token
        assert cipher.decrypt(encrypted) == token

    def test_encrypt_is_randomized(self, cipher):
        """Test the same token encrypts differently each time."""
        assert cipher.encrypt('token') != cipher.encrypt('token')

    def test_same_key_decrypts(self, cipher):
        """Test a cipher rebuilt from the same key decrypts old tokens."""
        encrypted = cipher.encrypt('token')

        assert TokenCipher(MASTER_KEY_BYTES).decrypt(encrypted) == 'token'

    def test_wrong_key(self, cipher):
        """Test another master key cannot decrypt tokens."""
        encrypted = cipher.encrypt('token')

        with pytest.raises(InvalidToken):
            TokenCipher(OTHER_KEY_BYTES).decrypt(encrypted)

    def test_corrupted_token(self, cipher):
        """Test corrupted ciphertext raises InvalidToken."""
        encrypted = base64.urlsafe_b64encode(b'not a fernet token').decode()

        with pytest.raises(InvalidToken):
            cipher.decrypt(encrypted)


class TestGetMasterKey:
    """Test loading the master key from config."""

    def make_app(self, value):
        app = MagicMock()
        app.config = {'BACKUP_MASTER_KEY': value}
        return app

    def test_valid_key(self):
        """Test a base64 key decodes to 32 bytes."""
        assert get_master_key(self.make_app(MASTER_KEY)) == MASTER_KEY_BYTES

    def test_missing_key(self):
        """Test a missing key raises RuntimeError."""
        with pytest.raises(RuntimeError, match="not configured"):
            get_master_key(self.make_app(None))

    @pytest.mark.parametrize('value', [
        base64.b64encode(b'short').decode(),
        '!!not base64!!',
    ])
    def test_invalid_key(self, value):
        """Test keys that are not 256 bits raise RuntimeError."""
        with pytest.raises(RuntimeError, match="invalid"):
            get_master_key(self.make_app(value))


class TestCachedValue:
    """Test the usage cache."""

    def test_loads_once_while_fresh(self):
        """Test the loader is only called when the value is stale."""
        now = [100.0]
        cache = CachedValue(ttl=60, clock=lambda: now[0])
        loader = MagicMock(side_effect=[1, 2])

        assert cache.get(loader) == 1
        now[0] += 30
        assert cache.get(loader) == 1
        now[0] += 31
        assert cache.get(loader) == 2
        assert loader.call_count == 2

    def test_invalidate(self):
        """Test invalidation forces a reload."""
        cache = CachedValue(ttl=60)
        loader = MagicMock(side_effect=['a', 'b'])

        cache.get(loader)
        cache.invalidate()

        assert cache.is_fresh is False
        assert cache.get(loader) == 'b'
