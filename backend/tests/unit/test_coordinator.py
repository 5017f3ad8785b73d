"""Tests for the sync coordinator and network monitor."""

import asyncio
import logging

import pytest

from face_attendance.errors import StorageCorruption
from face_attendance.storage import Database
from face_attendance.storage.database import QueueItemRecord
from face_attendance.sync import (
    InMemoryRemoteStore,
    NetworkMonitor,
    Operation,
    QueueStatus,
    SyncCoordinator,
    SyncQueue,
)


class GatedRemote(InMemoryRemoteStore):
    """Remote whose upserts wait until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def upsert(self, collection, record_id, payload):
        self.started.set()
        await self.gate.wait()
        await super().upsert(collection, record_id, payload)


class SlowRemote(InMemoryRemoteStore):
    async def upsert(self, collection, record_id, payload):
        await asyncio.sleep(5)


class UnreachableRemote(InMemoryRemoteStore):
    async def upsert(self, collection, record_id, payload):
        raise ConnectionRefusedError("connection refused")


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "attendance.db")
    yield database
    database.dispose()


@pytest.fixture
def queue(db):
    return SyncQueue(db)


def fill(queue, n=3):
    for i in range(n):
        queue.enqueue('attendance_records', Operation.INSERT, {'id': f"r{i}"})


class TestNetworkMonitor:
    """Tests for NetworkMonitor."""

    def test_emits_only_on_transition(self):
        events = []
        monitor = NetworkMonitor(online=False)
        monitor.subscribe(events.append)

        assert monitor.set_online(True)
        assert not monitor.set_online(True)
        assert monitor.set_online(False)
        assert events == [True, False]

    def test_unsubscribe(self):
        events = []
        monitor = NetworkMonitor()
        unsubscribe = monitor.subscribe(events.append)
        unsubscribe()

        monitor.set_online(False)
        assert events == []

    def test_async_listener(self):
        events = []
        monitor = NetworkMonitor(online=False)

        async def listener(online):
            events.append(online)

        monitor.subscribe(listener)

        async def main():
            monitor.set_online(True)
            await asyncio.sleep(0)

        asyncio.run(main())
        assert events == [True]


class TestRequestSync:
    """Tests for explicit sync requests."""

    def test_drains_queue(self, queue):
        fill(queue)
        remote = InMemoryRemoteStore()
        coordinator = SyncCoordinator(queue, remote)

        session = asyncio.run(coordinator.request_sync())

        assert session.synced == 3
        assert remote.count() == 3
        assert coordinator.last_session is session

    def test_concurrent_requests_coalesce(self, queue):
        fill(queue)
        remote = GatedRemote()
        coordinator = SyncCoordinator(queue, remote)

        async def main():
            first = asyncio.ensure_future(coordinator.request_sync())
            await remote.started.wait()
            assert coordinator.is_syncing

            second = asyncio.ensure_future(coordinator.request_sync())
            await asyncio.sleep(0)
            remote.gate.set()
            return await asyncio.gather(first, second)

        first, second = asyncio.run(main())

        assert first is second
        assert coordinator.drain_count == 1
        assert first.synced == 3

    def test_offline_request_is_deferred(self, queue):
        fill(queue, 2)
        remote = InMemoryRemoteStore()
        coordinator = SyncCoordinator(queue, remote, monitor=NetworkMonitor(online=False))

        session = asyncio.run(coordinator.request_sync())

        assert session.attempted == 0
        assert session.skipped == 2
        assert remote.calls == []
        assert coordinator.drain_count == 0

    def test_force_drains_while_offline(self, queue):
        fill(queue, 2)
        coordinator = SyncCoordinator(queue, InMemoryRemoteStore(), monitor=NetworkMonitor(online=False))

        session = asyncio.run(coordinator.request_sync(force=True))
        assert session.synced == 2

    def test_last_session_survives_restart(self, queue, db):
        fill(queue, 1)
        asyncio.run(SyncCoordinator(queue, InMemoryRemoteStore()).request_sync())

        restarted = SyncCoordinator(SyncQueue(db), InMemoryRemoteStore())
        assert restarted.last_session is not None
        assert restarted.last_session.synced == 1
        assert restarted.status()['last_session']['synced'] == 1


class TestNetworkTrigger:
    """Tests for drains triggered by connectivity changes."""

    def test_online_transition_triggers_one_drain(self, queue):
        fill(queue)
        monitor = NetworkMonitor(online=False)
        remote = InMemoryRemoteStore()
        coordinator = SyncCoordinator(queue, remote, monitor=monitor)

        async def main():
            monitor.set_online(True)
            monitor.set_online(True)
            await asyncio.sleep(0)
            await coordinator.wait_idle()

        asyncio.run(main())

        assert coordinator.drain_count == 1
        assert remote.count() == 3
        assert queue.pending_count() == 0

    def test_going_offline_does_not_drain(self, queue):
        fill(queue)
        monitor = NetworkMonitor(online=True)
        coordinator = SyncCoordinator(queue, InMemoryRemoteStore(), monitor=monitor)

        async def main():
            monitor.set_online(False)
            await asyncio.sleep(0)
            await coordinator.wait_idle()

        asyncio.run(main())
        assert coordinator.drain_count == 0

    def test_close_unsubscribes(self, queue):
        monitor = NetworkMonitor(online=False)
        coordinator = SyncCoordinator(queue, InMemoryRemoteStore(), monitor=monitor)
        coordinator.close()

        async def main():
            monitor.set_online(True)
            await asyncio.sleep(0)

        asyncio.run(main())
        assert coordinator.drain_count == 0


class TestFailures:
    """Tests for timeouts, connectivity errors and corruption."""

    def test_timeout_is_transient(self, queue):
        fill(queue, 1)
        coordinator = SyncCoordinator(queue, SlowRemote(), delivery_timeout=0.05)

        session = asyncio.run(coordinator.request_sync())

        item = queue.items()[0]
        assert session.deferred == 1
        assert item.status is QueueStatus.PENDING
        assert item.attempt_count == 1
        assert "timed out" in item.last_error

    def test_connection_error_is_transient(self, queue):
        fill(queue, 1)
        coordinator = SyncCoordinator(queue, UnreachableRemote())

        session = asyncio.run(coordinator.request_sync())

        assert session.deferred == 1
        assert queue.items()[0].status is QueueStatus.PENDING

    def test_storage_corruption_propagates(self, queue, db):
        fill(queue, 1)
        with db.session_scope() as session:
            session.query(QueueItemRecord).update({'payload': 'not json'})

        coordinator = SyncCoordinator(queue, InMemoryRemoteStore())
        with pytest.raises(StorageCorruption):
            asyncio.run(coordinator.request_sync())

        with db.session_scope() as session:
            assert session.query(QueueItemRecord).count() == 1

    def test_unreadable_database_file_propagates(self, queue, db, caplog):
        """Test a store file corrupted after opening surfaces as StorageCorruption."""
        fill(queue, 2)
        coordinator = SyncCoordinator(queue, InMemoryRemoteStore())

        db.dispose()
        db.db_path.write_bytes(b"this is no longer a sqlite database" * 200)
        with caplog.at_level(logging.CRITICAL, logger="face_attendance.sync.coordinator"):
            with pytest.raises(StorageCorruption):
                asyncio.run(coordinator.request_sync())

        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


class TestCancellation:
    """Tests for cancel() and abort()."""

    def test_cancel_at_item_boundary(self, queue):
        fill(queue, 3)
        remote = GatedRemote()
        coordinator = SyncCoordinator(queue, remote)

        async def main():
            task = asyncio.ensure_future(coordinator.request_sync())
            await remote.started.wait()
            assert coordinator.cancel()
            remote.gate.set()
            return await task

        session = asyncio.run(main())

        assert session.cancelled
        assert session.synced == 1
        assert queue.pending_count() == 2

    def test_cancel_when_idle(self, queue):
        assert not SyncCoordinator(queue, InMemoryRemoteStore()).cancel()

    def test_abort_releases_in_flight_item(self, queue):
        fill(queue, 1)
        remote = GatedRemote()
        coordinator = SyncCoordinator(queue, remote)

        async def main():
            task = asyncio.ensure_future(coordinator.request_sync())
            await remote.started.wait()
            await coordinator.abort()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(main())

        item = queue.items()[0]
        assert item.status is QueueStatus.PENDING
        assert item.attempt_count == 1
        assert "possibly delivered" in item.last_error
        assert not coordinator.is_syncing
