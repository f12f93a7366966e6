"""
Sync Queue - durable, ordered record of storage actions awaiting the Primary Store.

Items are stored in an embedded SQLite database (SQLAlchemy Core) and
replayed strictly in creation order once a real connectivity probe succeeds.
A dead item holds back later items for the same storage key until the
user retries or discards it.

Item states:
    queued -> in_flight -> done (row removed)
                        -> retrying -> in_flight ...
                        -> dead (kept until retried or discarded by the user)
"""

import os
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    and_,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.pool import StaticPool

from .errors import BackupError, StorageError, TransientError, TransientStorageError

logger = logging.getLogger(__name__)

ACTION_TYPES = ('storage_write', 'storage_delete', 'metadata_update')
ACTIVE_STATUSES = ('queued', 'in_flight', 'retrying')
MAX_RETRY_ATTEMPTS = 5

metadata = MetaData()

sync_queue_items = Table(
    'sync_queue_items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action_type', String(32), nullable=False),
    Column('payload', JSON, nullable=False),
    Column('dedupe_key', String(512), nullable=False, index=True),
    Column('subject_key', String(500), index=True),
    Column('status', String(16), nullable=False, default='queued', index=True),
    Column('created_at', DateTime, nullable=False),
    Column('retries', Integer, nullable=False, default=0),
    Column('last_error', Text),
    Column('next_attempt_at', DateTime),
)


class SyncActionError(BackupError):
    """Raised when a queued action cannot be replayed at all"""
    pass


@dataclass
class SyncQueueItem:
    id: int
    action_type: str
    payload: Dict[str, Any]
    status: str
    created_at: datetime
    retries: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> 'SyncQueueItem':
        return cls(
            id=row.id,
            action_type=row.action_type,
            payload=row.payload,
            status=row.status,
            created_at=row.created_at,
            retries=row.retries,
            last_error=row.last_error,
            next_attempt_at=row.next_attempt_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'action_type': self.action_type,
            'payload': self.payload,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'retries': self.retries,
            'last_error': self.last_error,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }


class SyncQueue:
    """
    Durable FIFO of pending storage actions.

    Replay is serial: a transient failure at the head of the queue stops the
    pass, so later actions never overtake an earlier one.
    """

    def __init__(self, url: str = 'sqlite:///sync_queue.db', max_retries: int = MAX_RETRY_ATTEMPTS,
                 backoff_base: float = 30, backoff_max: float = 3600,
                 clock: Callable[[], datetime] = datetime.utcnow):
        """
        Initialize the queue and recover items interrupted by a crash.

        Args:
            url: SQLAlchemy URL of the embedded queue database
            max_retries: Failures before an item becomes dead
            backoff_base: Seconds before the first retry (doubles per failure)
            backoff_max: Upper bound on the retry delay in seconds
            clock: Returns the current naive UTC time
        """
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._replay_lock = threading.Lock()

        self.engine = _create_queue_engine(url)
        metadata.create_all(self.engine)

        recovered = self.recover_in_flight()
        if recovered:
            logger.warning(f"Recovered {recovered} sync queue items left in flight")

    def enqueue(self, action_type: str, payload: Dict[str, Any]) -> SyncQueueItem:
        """
        Append an action.

        An identical action is collapsed only when it is the latest item for
        the same storage key and has not started replaying yet. Anything
        queued after it for that key (a delete between two writes, say) keeps
        the new action as a separate item at the tail.

        Raises:
            ValueError: On unknown action types
        """
        if action_type not in ACTION_TYPES:
            raise ValueError(f"Unknown sync action: {action_type}. Must be one of: {', '.join(ACTION_TYPES)}")

        dedupe_key = f"{action_type}:{json.dumps(payload, sort_keys=True, default=str)}"
        subject_key = payload.get('key')

        with self.engine.begin() as conn:
            if subject_key is None:
                same_subject = sync_queue_items.c.subject_key.is_(None)
            else:
                same_subject = sync_queue_items.c.subject_key == subject_key
            tail = conn.execute(
                select(sync_queue_items)
                .where(same_subject)
                .order_by(sync_queue_items.c.id.desc())
                .limit(1)
            ).first()
            if tail is not None and tail.dedupe_key == dedupe_key and tail.status in ('queued', 'retrying'):
                logger.debug(f"Sync action already queued as item {tail.id}")
                return SyncQueueItem.from_row(tail)

            result = conn.execute(sync_queue_items.insert().values(
                action_type=action_type,
                payload=payload,
                dedupe_key=dedupe_key,
                subject_key=subject_key,
                status='queued',
                created_at=self._clock(),
                retries=0,
            ))
            item_id = result.inserted_primary_key[0]

        logger.info(f"Queued {action_type} (item {item_id})")
        return self.get_item(item_id)

    def replay(self, handlers: Dict[str, Callable[[Dict[str, Any]], Any]],
               probe: Optional[Callable[[], bool]] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Replay pending items in creation order.

        Args:
            handlers: action_type -> callable(payload)
            probe: Connectivity check; nothing is replayed unless it returns True
            now: Current time (defaults to the queue clock)

        Returns:
            Stats dict ('succeeded', 'retrying', 'dead', 'blocked', 'offline', 'busy')
        """
        stats = {'succeeded': 0, 'retrying': 0, 'dead': 0, 'blocked': False, 'offline': False, 'busy': False}

        if not self._replay_lock.acquire(blocking=False):
            stats['busy'] = True
            return stats

        try:
            if probe is not None and not probe():
                logger.info("Connectivity probe failed, sync replay postponed")
                stats['offline'] = True
                return stats

            now = now or self._clock()

            while True:
                item = self._head()
                if item is None:
                    break

                if item.next_attempt_at is not None and item.next_attempt_at > now:
                    stats['blocked'] = True
                    break

                self._set_status(item.id, 'in_flight')

                try:
                    handler = handlers.get(item.action_type)
                    if handler is None:
                        raise SyncActionError(f"No handler registered for {item.action_type}")
                    handler(item.payload)

                except TransientError as e:
                    if self._record_failure(item, e, now) == 'dead':
                        stats['dead'] += 1
                    else:
                        stats['retrying'] += 1
                    stats['blocked'] = True
                    break

                except Exception as e:
                    self._mark_dead(item, e)
                    stats['dead'] += 1

                else:
                    self._remove(item.id)
                    stats['succeeded'] += 1
                    logger.info(f"Replayed {item.action_type} (item {item.id})")

            return stats

        finally:
            self._replay_lock.release()

    def backoff_delay(self, retries: int) -> float:
        """Seconds to wait after the given number of failures."""
        return min(self.backoff_base * (2 ** max(retries - 1, 0)), self.backoff_max)

    def recover_in_flight(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(sync_queue_items)
                .where(sync_queue_items.c.status == 'in_flight')
                .values(status='retrying')
            )
        return result.rowcount

    def get_item(self, item_id: int) -> Optional[SyncQueueItem]:
        with self.engine.connect() as conn:
            row = conn.execute(select(sync_queue_items).where(sync_queue_items.c.id == item_id)).first()
        return SyncQueueItem.from_row(row) if row is not None else None

    def list_items(self, status: Optional[str] = None) -> List[SyncQueueItem]:
        query = select(sync_queue_items).order_by(sync_queue_items.c.created_at, sync_queue_items.c.id)
        if status:
            query = query.where(sync_queue_items.c.status == status)
        with self.engine.connect() as conn:
            return [SyncQueueItem.from_row(row) for row in conn.execute(query)]

    def dead_items(self) -> List[SyncQueueItem]:
        return self.list_items(status='dead')

    def retry_item(self, item_id: int) -> SyncQueueItem:
        """
        Return a dead item to the queue at its original position.

        Raises:
            ValueError: If the item does not exist or is not dead
        """
        item = self.get_item(item_id)
        if item is None:
            raise ValueError(f"Sync queue item not found: {item_id}")
        if item.status != 'dead':
            raise ValueError(f"Sync queue item {item_id} is not dead (status: {item.status})")

        with self.engine.begin() as conn:
            conn.execute(
                update(sync_queue_items)
                .where(sync_queue_items.c.id == item_id)
                .values(status='queued', retries=0, next_attempt_at=None)
            )

        logger.info(f"Sync queue item {item_id} requeued by user")
        return self.get_item(item_id)

    def discard_item(self, item_id: int) -> bool:
        """Delete an item that is not currently being replayed."""
        item = self.get_item(item_id)
        if item is None:
            return False
        if item.status == 'in_flight':
            raise ValueError(f"Sync queue item {item_id} is being replayed")

        self._remove(item_id)
        logger.info(f"Sync queue item {item_id} ({item.action_type}) discarded by user")
        return True

    def discard_pending(self, action_type: str, key: str) -> int:
        """Drop every queued or dead action of a type for one storage key."""
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(sync_queue_items)
                .where(sync_queue_items.c.action_type == action_type)
                .where(sync_queue_items.c.subject_key == key)
                .where(sync_queue_items.c.status != 'in_flight')
            )
        if result.rowcount:
            logger.info(f"Discarded {result.rowcount} pending {action_type} actions for {key}")
        return result.rowcount

    def summary(self) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            counts = dict(conn.execute(
                select(sync_queue_items.c.status, func.count()).group_by(sync_queue_items.c.status)
            ).all())
            last_error = conn.execute(
                select(sync_queue_items.c.last_error)
                .where(sync_queue_items.c.last_error.isnot(None))
                .order_by(sync_queue_items.c.id.desc())
                .limit(1)
            ).scalar()

        return {
            'pending': sum(counts.get(status, 0) for status in ACTIVE_STATUSES),
            'dead': counts.get('dead', 0),
            'last_error': last_error,
        }

    def close(self):
        self.engine.dispose()

    def _head(self) -> Optional[SyncQueueItem]:
        # Items behind a dead item for the same key wait until it is retried or discarded
        dead = sync_queue_items.alias('dead')
        held_back = (
            select(dead.c.id)
            .where(and_(
                dead.c.status == 'dead',
                dead.c.subject_key == sync_queue_items.c.subject_key,
                dead.c.id < sync_queue_items.c.id,
            ))
            .exists()
        )
        with self.engine.connect() as conn:
            row = conn.execute(
                select(sync_queue_items)
                .where(sync_queue_items.c.status.in_(('queued', 'retrying')))
                .where(~held_back)
                .order_by(sync_queue_items.c.created_at, sync_queue_items.c.id)
                .limit(1)
            ).first()
        return SyncQueueItem.from_row(row) if row is not None else None

    def _set_status(self, item_id: int, status: str):
        with self.engine.begin() as conn:
            conn.execute(update(sync_queue_items).where(sync_queue_items.c.id == item_id).values(status=status))

    def _record_failure(self, item: SyncQueueItem, error: Exception, now: datetime) -> str:
        retries = item.retries + 1

        if retries >= self.max_retries:
            status, next_attempt_at = 'dead', None
            logger.error(f"Sync item {item.id} ({item.action_type}) failed {retries} times, marked dead: {error}")
        else:
            status = 'retrying'
            next_attempt_at = now + timedelta(seconds=self.backoff_delay(retries))
            logger.warning(f"Sync item {item.id} failed (attempt {retries}/{self.max_retries}): {error}")

        with self.engine.begin() as conn:
            conn.execute(
                update(sync_queue_items)
                .where(sync_queue_items.c.id == item.id)
                .values(status=status, retries=retries, last_error=str(error), next_attempt_at=next_attempt_at)
            )
        return status

    def _mark_dead(self, item: SyncQueueItem, error: Exception):
        logger.error(f"Sync item {item.id} ({item.action_type}) cannot be replayed: {error}")
        with self.engine.begin() as conn:
            conn.execute(
                update(sync_queue_items)
                .where(sync_queue_items.c.id == item.id)
                .values(status='dead', retries=item.retries + 1, last_error=str(error), next_attempt_at=None)
            )

    def _remove(self, item_id: int):
        with self.engine.begin() as conn:
            conn.execute(delete(sync_queue_items).where(sync_queue_items.c.id == item_id))


def _create_queue_engine(url: str):
    if url in ('sqlite://', 'sqlite:///:memory:'):
        return create_engine(url, connect_args={'check_same_thread': False}, poolclass=StaticPool)

    if url.startswith('sqlite:///'):
        directory = os.path.dirname(url[len('sqlite:///'):])
        if directory:
            os.makedirs(directory, exist_ok=True)

    return create_engine(url)


class HttpConnectivityProbe:
    """Real request to a known endpoint; only a 2xx response counts as online."""

    def __init__(self, url: str, timeout: float = 5, http=None):
        self.url = url
        self.timeout = timeout
        self.http = http or requests

    def __call__(self) -> bool:
        try:
            response = self.http.get(self.url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as e:
            logger.debug(f"Connectivity probe to {self.url} failed: {e}")
            return False
        return 200 <= response.status_code < 300


class StoreConnectivityProbe:
    """Probe that asks the Primary Store itself."""

    def __init__(self, store):
        self.store = store

    def __call__(self) -> bool:
        try:
            return bool(self.store.test_connection())
        except StorageError as e:
            logger.debug(f"Primary store unreachable: {e}")
            return False


class HttpMetadataSync:
    """Replays metadata_update actions by POSTing them to the server."""

    def __init__(self, url: str, timeout: float = 30, http=None, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout = timeout
        self.http = http or requests
        self.headers = headers or {}

    def __call__(self, payload: Dict[str, Any]):
        try:
            response = self.http.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientStorageError(f"Metadata sync unreachable: {e}")
        except requests.RequestException as e:
            raise StorageError(f"Metadata sync failed: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientStorageError(f"Metadata sync returned {response.status_code}")
        if not response.ok:
            raise StorageError(f"Metadata sync rejected with status {response.status_code}")


def build_replay_handlers(local, primary, confirm: Optional[Callable[[str], Any]] = None,
                          metadata_handler: Optional[Callable[[Dict[str, Any]], Any]] = None):
    """
    Handlers that push queued Local Store actions to the Primary Store.

    Args:
        local: LocalStorage holding the bytes to upload
        primary: Primary Store backend
        confirm: Called with the storage key once the primary copy exists
        metadata_handler: Applies metadata_update payloads
    """

    def storage_write(payload):
        artifact = local.read(payload['key'])
        if payload.get('checksum') and artifact.checksum != payload['checksum']:
            raise SyncActionError(f"Local copy of {payload['key']} changed since it was queued")
        primary.write(payload['key'], artifact)
        if confirm is not None:
            confirm(payload['key'])

    def storage_delete(payload):
        primary.delete(payload['key'])

    def metadata_update(payload):
        if metadata_handler is None:
            raise SyncActionError("No metadata handler configured")
        metadata_handler(payload)

    return {
        'storage_write': storage_write,
        'storage_delete': storage_delete,
        'metadata_update': metadata_update,
    }
