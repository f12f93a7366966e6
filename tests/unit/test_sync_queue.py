"""
Unit tests for the sync queue (vaultsync/backup/sync_queue.py).

Tests ordering, de-duplication, head-of-line blocking, backoff,
dead items and the replay handlers.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import requests
import responses

from vaultsync.backup.errors import StorageError, TransientStorageError
from vaultsync.backup.sync_queue import (
    SyncQueue,
    SyncActionError,
    HttpConnectivityProbe,
    StoreConnectivityProbe,
    HttpMetadataSync,
    build_replay_handlers,
)


T0 = datetime(2024, 1, 15, 12, 0, 0)


class Clock:
    """Manually advanced clock for the queue."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(clock):
    queue = SyncQueue('sqlite://', max_retries=5, backoff_base=10, backoff_max=300, clock=clock)
    yield queue
    queue.close()


def recording_handlers(calls, failures=None):
    """Handlers that record payload keys and raise queued failures per key."""
    failures = failures or {}

    def handle(payload):
        calls.append(payload['key'])
        pending = failures.get(payload['key'])
        if pending:
            raise pending.pop(0)

    return {'storage_write': handle, 'storage_delete': handle}


class TestEnqueue:
    """Test appending actions."""

    def test_enqueue_returns_item(self, queue):
        """Test a new item is queued with zero retries."""
        item = queue.enqueue('storage_write', {'key': 'backups/U1/a', 'checksum': 'abc'})

        assert item.id is not None
        assert item.status == 'queued'
        assert item.retries == 0
        assert item.created_at == T0

    def test_unknown_action_rejected(self, queue):
        """Test unknown action types raise ValueError."""
        with pytest.raises(ValueError):
            queue.enqueue('format_disk', {})

    def test_duplicate_pending_action_deduplicated(self, queue):
        """Test enqueuing the same pending action twice keeps one item."""
        first = queue.enqueue('storage_write', {'key': 'backups/U1/a', 'checksum': 'abc'})
        second = queue.enqueue('storage_write', {'checksum': 'abc', 'key': 'backups/U1/a'})

        assert first.id == second.id
        assert len(queue.list_items()) == 1

    def test_write_delete_write_keeps_order(self, queue):
        """Test a repeated write after a delete is queued behind the delete."""
        first = queue.enqueue('storage_write', {'key': 'k', 'checksum': 'abc'})
        queue.enqueue('storage_delete', {'key': 'k'})
        last = queue.enqueue('storage_write', {'key': 'k', 'checksum': 'abc'})
        calls = []

        def record(name):
            return lambda payload: calls.append(name)

        queue.replay({'storage_write': record('write'), 'storage_delete': record('delete')})

        assert last.id != first.id
        assert calls == ['write', 'delete', 'write']

    def test_duplicate_of_other_key_still_collapses(self, queue):
        """Test actions for other keys in between do not prevent de-duplication."""
        first = queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_write', {'key': 'b'})

        assert queue.enqueue('storage_write', {'key': 'a'}).id == first.id
        assert len(queue.list_items()) == 2

    def test_dead_action_does_not_block_new_enqueue(self, queue):
        """Test a dead item does not swallow a fresh request."""
        first = queue.enqueue('storage_delete', {'key': 'k'})
        queue.replay({'storage_delete': MagicMock(side_effect=StorageError('gone'))})

        second = queue.enqueue('storage_delete', {'key': 'k'})

        assert second.id != first.id
        assert queue.get_item(first.id).status == 'dead'


class TestReplay:
    """Test replaying queued actions."""

    def test_replays_in_creation_order(self, queue, clock):
        """Test items replay in FIFO order and are removed."""
        for key in ('a', 'b', 'c'):
            queue.enqueue('storage_write', {'key': key})
            clock.advance(1)
        calls = []

        stats = queue.replay(recording_handlers(calls))

        assert calls == ['a', 'b', 'c']
        assert stats['succeeded'] == 3
        assert queue.list_items() == []

    def test_same_timestamp_ordered_by_id(self, queue):
        """Test items created in the same instant keep insertion order."""
        for key in ('a', 'b', 'c'):
            queue.enqueue('storage_write', {'key': key})
        calls = []

        queue.replay(recording_handlers(calls))

        assert calls == ['a', 'b', 'c']

    def test_offline_probe_postpones_replay(self, queue):
        """Test nothing replays when the probe says offline."""
        queue.enqueue('storage_write', {'key': 'a'})
        calls = []

        stats = queue.replay(recording_handlers(calls), probe=lambda: False)

        assert stats['offline'] is True
        assert calls == []
        assert len(queue.list_items()) == 1

    def test_online_probe_allows_replay(self, queue):
        """Test a passing probe lets replay proceed."""
        queue.enqueue('storage_write', {'key': 'a'})
        calls = []

        queue.replay(recording_handlers(calls), probe=lambda: True)

        assert calls == ['a']

    def test_transient_failure_blocks_later_items(self, queue, clock):
        """Test a transient failure at the head stops the pass."""
        queue.enqueue('storage_write', {'key': 'a'})
        clock.advance(1)
        queue.enqueue('storage_write', {'key': 'b'})
        calls = []
        failures = {'a': [TransientStorageError('timeout')]}

        stats = queue.replay(recording_handlers(calls, failures))

        assert calls == ['a']
        assert stats['retrying'] == 1
        assert stats['blocked'] is True

        head = queue.list_items()[0]
        assert head.status == 'retrying'
        assert head.retries == 1
        assert head.last_error == 'timeout'
        assert head.next_attempt_at == clock.now + timedelta(seconds=10)

    def test_backoff_respected(self, queue, clock):
        """Test a retrying head is not attempted before its backoff expires."""
        queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_write', {'key': 'b'})
        calls = []
        handlers = recording_handlers(calls, {'a': [TransientStorageError('timeout')]})
        queue.replay(handlers)

        clock.advance(5)
        stats = queue.replay(handlers)
        assert calls == ['a']
        assert stats['blocked'] is True

        clock.advance(6)
        stats = queue.replay(handlers)
        assert calls == ['a', 'a', 'b']
        assert stats['succeeded'] == 2

    def test_dead_after_max_failures(self, queue, clock):
        """Test five consecutive failures mark the item dead."""
        queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_write', {'key': 'b'})
        calls = []
        failures = {'a': [TransientStorageError(f'attempt {n}') for n in range(5)]}
        handlers = recording_handlers(calls, failures)

        for _ in range(5):
            queue.replay(handlers)
            clock.advance(300)

        dead = queue.dead_items()
        assert len(dead) == 1
        assert dead[0].payload == {'key': 'a'}
        assert dead[0].retries == 5
        assert calls.count('a') == 5

        queue.replay(handlers)
        assert calls[-1] == 'b'
        assert queue.dead_items()[0].payload == {'key': 'a'}

    def test_permanent_failure_goes_dead_and_replay_continues(self, queue):
        """Test non-transient errors mark the item dead without blocking."""
        queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_write', {'key': 'b'})
        calls = []
        failures = {'a': [StorageError('access denied')]}

        stats = queue.replay(recording_handlers(calls, failures))

        assert calls == ['a', 'b']
        assert stats['dead'] == 1
        assert stats['succeeded'] == 1
        assert queue.dead_items()[0].last_error == 'access denied'

    def test_dead_item_holds_back_same_key(self, queue):
        """Test later actions for a key wait behind its dead item while other keys replay."""
        queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_delete', {'key': 'a'})
        queue.enqueue('storage_write', {'key': 'b'})
        calls = []
        failures = {'a': [StorageError('access denied')]}

        stats = queue.replay(recording_handlers(calls, failures))

        assert calls == ['a', 'b']
        assert stats['dead'] == 1
        assert [item.action_type for item in queue.list_items()] == ['storage_write', 'storage_delete']
        assert queue.list_items()[1].status == 'queued'

    def test_retry_releases_held_items(self, queue):
        """Test retrying the dead item replays it before the actions behind it."""
        dead = queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_delete', {'key': 'a'})
        calls = []
        queue.replay(recording_handlers(calls, {'a': [StorageError('access denied')]}))

        queue.retry_item(dead.id)
        stats = queue.replay(recording_handlers(calls))

        assert calls == ['a', 'a', 'a']
        assert stats['succeeded'] == 2
        assert queue.list_items() == []

    def test_discard_releases_held_items(self, queue):
        """Test discarding the dead item lets the actions behind it replay."""
        dead = queue.enqueue('storage_write', {'key': 'a'})
        queue.enqueue('storage_delete', {'key': 'a'})
        queue.replay(recording_handlers([], {'a': [StorageError('access denied')]}))

        queue.discard_item(dead.id)
        calls = []
        stats = queue.replay(recording_handlers(calls))

        assert calls == ['a']
        assert stats['succeeded'] == 1

    def test_missing_handler_goes_dead(self, queue):
        """Test actions without a handler are marked dead."""
        queue.enqueue('metadata_update', {'key': 'm'})

        stats = queue.replay({})

        assert stats['dead'] == 1

    def test_concurrent_replay_is_busy(self, queue):
        """Test a second replay while one is running returns immediately."""
        queue.enqueue('storage_write', {'key': 'a'})
        queue._replay_lock.acquire()
        try:
            stats = queue.replay(recording_handlers([]))
        finally:
            queue._replay_lock.release()

        assert stats['busy'] is True
        assert len(queue.list_items()) == 1


class TestBackoff:
    """Test exponential backoff."""

    def test_backoff_doubles_and_caps(self, queue):
        """Test the delay doubles per failure up to the cap."""
        assert [queue.backoff_delay(n) for n in range(1, 7)] == [10, 20, 40, 80, 160, 300]


class TestUserActions:
    """Test retry, discard and summary."""

    def test_retry_dead_item(self, queue):
        """Test a dead item can be returned to the queue."""
        item = queue.enqueue('storage_delete', {'key': 'k'})
        queue.replay({'storage_delete': MagicMock(side_effect=StorageError('nope'))})

        retried = queue.retry_item(item.id)

        assert retried.status == 'queued'
        assert retried.retries == 0

    def test_retry_live_item_rejected(self, queue):
        """Test only dead items can be retried."""
        item = queue.enqueue('storage_delete', {'key': 'k'})

        with pytest.raises(ValueError):
            queue.retry_item(item.id)

        with pytest.raises(ValueError):
            queue.retry_item(9999)

    def test_discard_item(self, queue):
        """Test items can be discarded."""
        item = queue.enqueue('storage_delete', {'key': 'k'})

        assert queue.discard_item(item.id) is True
        assert queue.discard_item(item.id) is False

    def test_discard_in_flight_rejected(self, queue):
        """Test an item being replayed cannot be discarded."""
        item = queue.enqueue('storage_delete', {'key': 'k'})
        queue._set_status(item.id, 'in_flight')

        with pytest.raises(ValueError):
            queue.discard_item(item.id)

    def test_discard_pending_for_key(self, queue):
        """Test pending and dead actions of one type are dropped for a single key."""
        queue.enqueue('storage_write', {'key': 'dead'})
        queue.replay({'storage_write': MagicMock(side_effect=StorageError('denied'))})
        queue.enqueue('storage_write', {'key': 'dead', 'checksum': 'new'})
        queue.enqueue('storage_delete', {'key': 'dead'})
        queue.enqueue('storage_write', {'key': 'other'})

        assert queue.discard_pending('storage_write', 'dead') == 2
        assert [(item.action_type, item.payload['key']) for item in queue.list_items()] == [
            ('storage_delete', 'dead'),
            ('storage_write', 'other'),
        ]

    def test_summary(self, queue):
        """Test summary counts pending and dead items."""
        queue.enqueue('storage_delete', {'key': 'dead'})
        queue.replay({'storage_delete': MagicMock(side_effect=StorageError('denied'))})
        queue.enqueue('storage_delete', {'key': 'pending'})

        assert queue.summary() == {'pending': 1, 'dead': 1, 'last_error': 'denied'}


class TestDurability:
    """Test the queue survives restarts."""

    def test_items_persist_across_instances(self, tmp_path):
        """Test items written to a file database survive a restart."""
        url = f"sqlite:///{tmp_path / 'queue' / 'sync.db'}"
        first = SyncQueue(url)
        first.enqueue('storage_write', {'key': 'a'})
        first.close()

        second = SyncQueue(url)
        try:
            assert [item.payload['key'] for item in second.list_items()] == ['a']
        finally:
            second.close()

    def test_in_flight_items_recovered(self, tmp_path):
        """Test items interrupted mid-replay are retried after restart."""
        url = f"sqlite:///{tmp_path / 'sync.db'}"
        first = SyncQueue(url)
        item = first.enqueue('storage_write', {'key': 'a'})
        first._set_status(item.id, 'in_flight')
        first.close()

        second = SyncQueue(url)
        try:
            assert second.get_item(item.id).status == 'retrying'
        finally:
            second.close()


class TestProbes:
    """Test connectivity probes."""

    @responses.activate
    def test_http_probe_online(self):
        """Test a 2xx response counts as online."""
        responses.add(responses.GET, 'https://api.example.com/health', status=204)

        assert HttpConnectivityProbe('https://api.example.com/health')() is True

    @responses.activate
    def test_http_probe_captive_portal(self):
        """Test redirects (captive portals) count as offline."""
        responses.add(responses.GET, 'https://api.example.com/health', status=302,
                      headers={'Location': 'https://portal.example.net/login'})

        assert HttpConnectivityProbe('https://api.example.com/health')() is False

    @responses.activate
    def test_http_probe_network_error(self):
        """Test connection errors count as offline."""
        responses.add(responses.GET, 'https://api.example.com/health',
                      body=requests.ConnectionError('no route'))

        assert HttpConnectivityProbe('https://api.example.com/health')() is False

    def test_store_probe(self):
        """Test store probe reflects test_connection."""
        store = MagicMock()
        store.test_connection.return_value = True
        assert StoreConnectivityProbe(store)() is True

        store.test_connection.side_effect = StorageError('down')
        assert StoreConnectivityProbe(store)() is False


class TestMetadataSync:
    """Test the metadata_update handler."""

    @responses.activate
    def test_posts_payload(self):
        """Test payload is POSTed as JSON."""
        responses.add(responses.POST, 'https://api.example.com/sync', status=200)

        HttpMetadataSync('https://api.example.com/sync')({'record': 1})

        assert responses.calls[0].request.body == b'{"record": 1}'

    @responses.activate
    def test_server_error_is_transient(self):
        """Test 5xx responses raise TransientStorageError."""
        responses.add(responses.POST, 'https://api.example.com/sync', status=503)

        with pytest.raises(TransientStorageError):
            HttpMetadataSync('https://api.example.com/sync')({'record': 1})

    @responses.activate
    def test_rejection_is_permanent(self):
        """Test 4xx responses raise StorageError."""
        responses.add(responses.POST, 'https://api.example.com/sync', status=422)

        with pytest.raises(StorageError) as exc_info:
            HttpMetadataSync('https://api.example.com/sync')({'record': 1})

        assert not isinstance(exc_info.value, TransientStorageError)


class TestReplayHandlers:
    """Test handlers pushing local actions to the primary store."""

    def test_storage_write_uploads_and_confirms(self, local_store, artifact):
        """Test queued writes are uploaded from the local copy."""
        local_store.write('backups/U1/a.vsbackup', artifact)
        primary = MagicMock()
        confirm = MagicMock()
        handlers = build_replay_handlers(local_store, primary, confirm=confirm)

        handlers['storage_write']({'key': 'backups/U1/a.vsbackup', 'checksum': artifact.checksum})

        primary.write.assert_called_once_with('backups/U1/a.vsbackup', artifact)
        confirm.assert_called_once_with('backups/U1/a.vsbackup')

    def test_storage_write_rejects_changed_local_copy(self, local_store, artifact):
        """Test a checksum mismatch fails the action permanently."""
        local_store.write('backups/U1/a.vsbackup', artifact)
        primary = MagicMock()
        handlers = build_replay_handlers(local_store, primary)

        with pytest.raises(SyncActionError):
            handlers['storage_write']({'key': 'backups/U1/a.vsbackup', 'checksum': '0' * 64})

        primary.write.assert_not_called()

    def test_storage_delete(self, local_store):
        """Test queued deletes reach the primary store."""
        primary = MagicMock()

        build_replay_handlers(local_store, primary)['storage_delete']({'key': 'backups/U1/a.vsbackup'})

        primary.delete.assert_called_once_with('backups/U1/a.vsbackup')

    def test_end_to_end_replay(self, sync_queue, tmp_path, artifact):
        """Test offline writes reach the primary store once replayed."""
        from vaultsync.backup.storage import LocalStorage

        device = LocalStorage(str(tmp_path / 'device'), sync_queue=sync_queue)
        primary = LocalStorage(str(tmp_path / 'primary'))
        device.write('backups/U1/a.vsbackup', artifact)

        stats = sync_queue.replay(build_replay_handlers(device, primary), probe=lambda: True)

        assert stats['succeeded'] == 1
        assert primary.read('backups/U1/a.vsbackup') == artifact
        assert sync_queue.list_items() == []
