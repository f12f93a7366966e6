"""
Cloud Mirror - optional, per-owner copy of backups in the owner's Google Drive.

Supports:
- OAuth authorization code flow (authorization URL, code exchange, revocation)
- Encrypted token storage with proactive refresh
- Idempotent uploads into a dedicated Drive folder

Callers depend on the CloudMirror interface only. MirrorFactory returns a
GoogleDriveMirror when the owner has an active connection and a NullMirror
otherwise.
"""

import json
import uuid
import hashlib
import logging
from datetime import datetime, timedelta
from urllib.parse import urlencode
from typing import Optional, Dict, Any, Tuple

import requests

from vaultsync import db
from vaultsync.models import CloudConnection
from .codec import EncryptedBackup
from .storage import StorageBackend
from .errors import (
    StorageError,
    ConflictError,
    NotFoundError,
    TransientStorageError,
    QuotaExceededError,
    MirrorAuthError,
)

logger = logging.getLogger(__name__)

AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
TOKEN_URL = 'https://oauth2.googleapis.com/token'
REVOKE_URL = 'https://oauth2.googleapis.com/revoke'
USERINFO_URL = 'https://www.googleapis.com/oauth2/v2/userinfo'
FILES_URL = 'https://www.googleapis.com/drive/v3/files'
UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files'
ABOUT_URL = 'https://www.googleapis.com/drive/v3/about'

SCOPES = [
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/userinfo.email',
]

FOLDER_NAME = 'VaultSync-Backups'
FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
REFRESH_MARGIN = timedelta(minutes=5)


def build_authorization_url(client_id: str, redirect_uri: str, state: Optional[str] = None) -> str:
    """
    Build the Google consent screen URL.

    Offline access with forced consent so a refresh token is always returned.
    """
    params = {
        'client_id': client_id,
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'scope': ' '.join(SCOPES),
        'access_type': 'offline',
        'prompt': 'consent',
    }
    if state:
        params['state'] = state
    return f"{AUTH_URL}?{urlencode(params)}"


def exchange_code_for_tokens(code: str, client_id: str, client_secret: str, redirect_uri: str,
                             timeout: float = 30, http=None) -> Dict[str, Any]:
    """
    Exchange an authorization code for an access/refresh token pair.

    Returns:
        Token response dict ('access_token', 'refresh_token', 'expires_in', ...)

    Raises:
        MirrorAuthError: If Google rejects the code
        TransientStorageError: On network failures
    """
    return _token_request({
        'code': code,
        'client_id': client_id,
        'client_secret': client_secret,
        'redirect_uri': redirect_uri,
        'grant_type': 'authorization_code',
    }, timeout, http or requests)


def refresh_access_token(refresh_token: str, client_id: str, client_secret: str,
                         timeout: float = 30, http=None) -> Dict[str, Any]:
    """Obtain a new access token from a refresh token."""
    return _token_request({
        'refresh_token': refresh_token,
        'client_id': client_id,
        'client_secret': client_secret,
        'grant_type': 'refresh_token',
    }, timeout, http or requests)


def revoke_token(token: str, timeout: float = 30, http=None) -> bool:
    """Revoke a token. Returns False if Google did not accept the revocation."""
    http = http or requests
    try:
        response = http.post(REVOKE_URL, params={'token': token}, timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"Token revocation request failed: {e}")
        return False
    return response.ok


def fetch_account_email(access_token: str, timeout: float = 30, http=None) -> Optional[str]:
    http = http or requests
    try:
        response = http.get(
            USERINFO_URL,
            headers={'Authorization': f'Bearer {access_token}'},
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.warning(f"Failed to fetch Google account email: {e}")
        return None
    if not response.ok:
        return None
    return response.json().get('email')


def _token_request(data: Dict[str, str], timeout: float, http) -> Dict[str, Any]:
    try:
        response = http.post(TOKEN_URL, data=data, timeout=timeout)
    except (requests.Timeout, requests.ConnectionError) as e:
        raise TransientStorageError(f"Token endpoint unreachable: {e}")
    except requests.RequestException as e:
        raise StorageError(f"Token request failed: {e}")

    if response.status_code in (400, 401):
        raise MirrorAuthError(f"Token request rejected: {_error_reason(response) or response.status_code}")
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientStorageError(f"Token endpoint returned {response.status_code}")
    if not response.ok:
        raise StorageError(f"Token request failed with status {response.status_code}")

    return response.json()


class CloudMirror(StorageBackend):
    """Capability interface for the optional cloud copy."""

    name = 'mirror'
    is_connected = False


class NullMirror(CloudMirror):
    """Registered when an owner has no cloud connection. Writes are skipped."""

    def write(self, key: str, artifact: EncryptedBackup, overwrite: bool = False) -> Optional[str]:
        return None

    def read(self, ref: str) -> EncryptedBackup:
        raise NotFoundError("No cloud mirror connected")

    def delete(self, ref: str):
        pass

    def usage(self) -> Dict[str, Any]:
        return {'used_bytes': 0, 'quota_bytes': None}


class GoogleDriveMirror(CloudMirror):
    """
    Google Drive backend for one owner's CloudConnection.

    Token changes, folder creation and deactivation are persisted through
    the save callback (a database commit in the application).
    """

    is_connected = True

    def __init__(self, connection: CloudConnection, cipher, client_id: str, client_secret: str,
                 save=None, timeout: float = 30, http=None):
        self.connection = connection
        self.cipher = cipher
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.http = http or requests.Session()
        self._save = save or (lambda: None)

    # -- storage contract --------------------------------------------------

    def write(self, key: str, artifact: EncryptedBackup, overwrite: bool = False) -> str:
        """
        Upload an artifact into the backup folder.

        Returns:
            Drive file id

        Raises:
            ConflictError: If a file with the same name holds different content
            QuotaExceededError: If the owner's Drive is full
            MirrorAuthError: If credentials are rejected after a refresh
        """
        folder_id = self.ensure_folder()
        filename = key.rsplit('/', 1)[-1]
        body = artifact.to_bytes()

        existing = self._find_file(filename, folder_id)
        if existing is not None:
            if existing.get('md5Checksum') == hashlib.md5(body).hexdigest():
                logger.debug(f"Identical file already mirrored: {filename}")
                return existing['id']
            if not overwrite:
                raise ConflictError(f"Mirror already holds different content for {filename}")

            response = self._request(
                'PATCH', f"{UPLOAD_URL}/{existing['id']}",
                params={'uploadType': 'media'},
                data=body,
                headers={'Content-Type': 'application/json'},
            )
        else:
            metadata = {'name': filename, 'parents': [folder_id], 'mimeType': 'application/json'}
            content, content_type = _multipart_related(metadata, body)
            response = self._request(
                'POST', UPLOAD_URL,
                params={'uploadType': 'multipart', 'fields': 'id'},
                data=content,
                headers={'Content-Type': content_type},
            )

        file_id = response.json()['id']
        self.connection.last_sync_at = datetime.utcnow()
        self.connection.last_error = None
        self._save()

        logger.info(f"Mirrored {filename} to Google Drive (file id {file_id})")
        return file_id

    def read(self, ref: str) -> EncryptedBackup:
        response = self._request('GET', f"{FILES_URL}/{ref}", params={'alt': 'media'})
        return EncryptedBackup.from_bytes(response.content)

    def delete(self, ref: str):
        try:
            self._request('DELETE', f"{FILES_URL}/{ref}")
        except NotFoundError:
            logger.debug(f"Mirror file {ref} already absent")

    def usage(self) -> Dict[str, Any]:
        response = self._request('GET', ABOUT_URL, params={'fields': 'storageQuota'})
        quota = response.json().get('storageQuota', {})
        limit = quota.get('limit')
        return {
            'used_bytes': int(quota.get('usage', 0)),
            'quota_bytes': int(limit) if limit is not None else None,
        }

    # -- folder ------------------------------------------------------------

    def ensure_folder(self) -> str:
        """Find or create the backup folder and remember its id."""
        if self.connection.folder_id:
            return self.connection.folder_id

        folder_name = self.connection.folder_name or FOLDER_NAME
        response = self._request('GET', FILES_URL, params={
            'q': f"name='{folder_name}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false",
            'fields': 'files(id,name)',
        })
        files = response.json().get('files', [])

        if files:
            folder_id = files[0]['id']
        else:
            response = self._request(
                'POST', FILES_URL,
                params={'fields': 'id'},
                json={'name': folder_name, 'mimeType': FOLDER_MIME_TYPE},
            )
            folder_id = response.json()['id']
            logger.info(f"Created Drive folder '{folder_name}' for owner {self.connection.owner_id}")

        self.connection.folder_id = folder_id
        self.connection.folder_name = folder_name
        self._save()
        return folder_id

    def _find_file(self, filename: str, folder_id: str) -> Optional[Dict[str, Any]]:
        response = self._request('GET', FILES_URL, params={
            'q': f"name='{filename}' and '{folder_id}' in parents and trashed=false",
            'fields': 'files(id,name,md5Checksum,size)',
        })
        files = response.json().get('files', [])
        return files[0] if files else None

    # -- auth + transport --------------------------------------------------

    def _access_token(self) -> Tuple[str, bool]:
        """Current access token, and whether it was refreshed to get it."""
        expires_at = self.connection.token_expires_at
        refreshed = False
        if expires_at is None or expires_at - REFRESH_MARGIN <= datetime.utcnow():
            self._refresh()
            refreshed = True
        return self.cipher.decrypt(self.connection.access_token_encrypted), refreshed

    def _refresh(self):
        refresh_token = self.cipher.decrypt(self.connection.refresh_token_encrypted)
        try:
            tokens = refresh_access_token(
                refresh_token, self.client_id, self.client_secret,
                timeout=self.timeout, http=self.http,
            )
        except MirrorAuthError as e:
            self._deactivate(str(e))
            raise

        self.connection.access_token_encrypted = self.cipher.encrypt(tokens['access_token'])
        self.connection.token_expires_at = datetime.utcnow() + timedelta(seconds=tokens.get('expires_in', 3600))
        if tokens.get('refresh_token'):
            self.connection.refresh_token_encrypted = self.cipher.encrypt(tokens['refresh_token'])
        self._save()
        logger.debug(f"Refreshed Drive access token for owner {self.connection.owner_id}")

    def _deactivate(self, reason: str):
        logger.warning(f"Deactivating cloud mirror for owner {self.connection.owner_id}: {reason}")
        self.connection.is_active = False
        self.connection.last_error = reason
        self._save()

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        token, refreshed = self._access_token()
        response = self._send(method, url, token, **kwargs)

        if response.status_code == 401:
            # At most one refresh per call; a rejection after it means the grant is gone
            if not refreshed:
                self._refresh()
                token = self.cipher.decrypt(self.connection.access_token_encrypted)
                response = self._send(method, url, token, **kwargs)
            if response.status_code == 401:
                self._deactivate('Access token rejected after refresh')
                raise MirrorAuthError("Google Drive rejected credentials after token refresh")

        _raise_for_status(response)
        return response

    def _send(self, method: str, url: str, token: str, headers=None, **kwargs) -> requests.Response:
        request_headers = {'Authorization': f'Bearer {token}'}
        request_headers.update(headers or {})
        try:
            return self.http.request(method, url, headers=request_headers, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientStorageError(f"Google Drive unreachable: {e}")
        except requests.RequestException as e:
            raise StorageError(f"Google Drive request failed: {e}")


class MirrorFactory:
    """Chooses the mirror implementation for an owner at call time."""

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], cipher=None,
                 timeout: float = 30, http=None, folder_name: str = FOLDER_NAME):
        self.client_id = client_id
        self.client_secret = client_secret
        self.cipher = cipher
        self.timeout = timeout
        self.http = http
        self.folder_name = folder_name

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret and self.cipher)

    def for_owner(self, owner_id: str) -> CloudMirror:
        if not self.enabled:
            return NullMirror()

        connection = CloudConnection.query.filter_by(owner_id=owner_id, is_active=True).first()
        if connection is None:
            return NullMirror()

        return self._drive(connection)

    def connect(self, owner_id: str, code: str, redirect_uri: str) -> CloudConnection:
        """
        Complete the OAuth flow and store the encrypted token pair.

        Raises:
            StorageError: If the mirror is not configured
            MirrorAuthError: If the code exchange is rejected
        """
        if not self.enabled:
            raise StorageError("Cloud mirror is not configured (GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)")

        tokens = exchange_code_for_tokens(
            code, self.client_id, self.client_secret, redirect_uri,
            timeout=self.timeout, http=self.http,
        )
        if not tokens.get('refresh_token'):
            raise MirrorAuthError("Google did not return a refresh token")

        connection = CloudConnection.query.filter_by(owner_id=owner_id).first()
        if connection is None:
            connection = CloudConnection(owner_id=owner_id)
            db.session.add(connection)

        connection.access_token_encrypted = self.cipher.encrypt(tokens['access_token'])
        connection.refresh_token_encrypted = self.cipher.encrypt(tokens['refresh_token'])
        connection.token_expires_at = datetime.utcnow() + timedelta(seconds=tokens.get('expires_in', 3600))
        connection.email = fetch_account_email(tokens['access_token'], timeout=self.timeout, http=self.http)
        connection.folder_id = None
        connection.folder_name = self.folder_name
        connection.is_active = True
        connection.last_error = None
        db.session.commit()

        try:
            self._drive(connection).ensure_folder()
        except StorageError as e:
            logger.warning(f"Failed to create backup folder for owner {owner_id}: {e}")
            connection.last_error = str(e)
            db.session.commit()

        logger.info(f"Connected Google Drive mirror for owner {owner_id} ({connection.email})")
        return connection

    def disconnect(self, owner_id: str) -> bool:
        """Revoke tokens and remove the connection. Returns False if none existed."""
        connection = CloudConnection.query.filter_by(owner_id=owner_id).first()
        if connection is None:
            return False

        if self.cipher is not None:
            try:
                token = self.cipher.decrypt(connection.refresh_token_encrypted)
                if not revoke_token(token, timeout=self.timeout, http=self.http):
                    logger.warning(f"Google did not accept token revocation for owner {owner_id}")
            except Exception as e:
                logger.warning(f"Could not revoke Drive token for owner {owner_id}: {e}")

        db.session.delete(connection)
        db.session.commit()
        logger.info(f"Disconnected Google Drive mirror for owner {owner_id}")
        return True

    def _drive(self, connection: CloudConnection) -> GoogleDriveMirror:
        return GoogleDriveMirror(
            connection, self.cipher, self.client_id, self.client_secret,
            save=db.session.commit, timeout=self.timeout, http=self.http,
        )


def _raise_for_status(response: requests.Response):
    if response.ok:
        return

    status = response.status_code
    reason = _error_reason(response)

    if status == 404:
        raise NotFoundError(f"Google Drive object not found ({reason or status})")
    if status == 403 and reason == 'storageQuotaExceeded':
        raise QuotaExceededError("Google Drive storage quota exceeded")
    if status == 429 or status >= 500 or reason in ('rateLimitExceeded', 'userRateLimitExceeded'):
        raise TransientStorageError(f"Google Drive temporarily unavailable ({reason or status})")

    raise StorageError(f"Google Drive request failed with status {status}: {reason or response.text[:200]}")


def _error_reason(response: requests.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None

    error = payload.get('error') if isinstance(payload, dict) else None
    if isinstance(error, dict):
        errors = error.get('errors') or []
        if errors and isinstance(errors[0], dict) and errors[0].get('reason'):
            return errors[0]['reason']
        return error.get('status') or error.get('message')
    if isinstance(error, str):
        return error
    return None


def _multipart_related(metadata: Dict[str, Any], body: bytes):
    boundary = f"vaultsync-{uuid.uuid4().hex}"
    parts = [
        f"--{boundary}\r\n".encode(),
        b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
        json.dumps(metadata).encode('utf-8'),
        f"\r\n--{boundary}\r\n".encode(),
        b"Content-Type: application/json\r\n\r\n",
        body,
        f"\r\n--{boundary}--".encode(),
    ]
    return b''.join(parts), f"multipart/related; boundary={boundary}"
