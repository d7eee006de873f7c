"""Tests for the offline queue, connectivity monitor and sync coordinator."""

import asyncio

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cloud_session.services.connectivity import ConnectivityMonitor
from cloud_session.services.sync import LAST_SYNC_KEY, SyncCoordinator
from cloud_session.storage.offline_queue import OFFLINE_QUEUE_KEY, OfflineQueue
from tests.helpers import FillableKeyValueStore


class TestOfflineQueue:
    @pytest.mark.asyncio
    async def test_enqueue_preserves_order(self, queue, clock):
        first = await queue.enqueue("send-message", {"text": "one"})
        clock.advance(10)
        second = await queue.enqueue("send-message", {"text": "two"})

        items = await queue.list()
        assert [i.id for i in items] == [first, second]
        assert items[0].enqueued_at < items[1].enqueued_at
        assert await queue.length() == 2

    @pytest.mark.asyncio
    async def test_remove_and_record_failure(self, queue):
        item_id = await queue.enqueue("send-message", {"text": "one"})
        assert await queue.record_failure(item_id) == 1
        assert await queue.record_failure(item_id) == 2
        assert await queue.record_failure("missing") == 0
        assert (await queue.list())[0].retry_count == 2

        assert await queue.remove(item_id) is True
        assert await queue.remove(item_id) is False

    @pytest.mark.asyncio
    async def test_corrupt_queue_reads_empty(self, queue, kv):
        await kv.set(OFFLINE_QUEUE_KEY, "[[[")
        assert await queue.list() == []
        assert await kv.get(OFFLINE_QUEUE_KEY + ".corrupt-backup") == "[[["

    @pytest.mark.asyncio
    async def test_clear(self, queue):
        await queue.enqueue("send-message", {})
        await queue.clear()
        assert await queue.length() == 0

    @pytest.mark.asyncio
    async def test_writes_over_quota_leave_queue_unchanged(self, clock):
        kv = FillableKeyValueStore()
        queue = OfflineQueue(kv, clock=clock)
        kept = await queue.enqueue("send-message", {"text": "one"})

        kv.full = True
        assert await queue.enqueue("send-message", {"text": "two"}) is None
        assert await queue.record_failure(kept) == 1
        assert await queue.remove(kept) is False

        (item,) = await queue.list()
        assert item.id == kept and item.retry_count == 0

    @pytest.mark.asyncio
    async def test_corrupt_queue_with_full_storage_reads_empty(self, clock):
        kv = FillableKeyValueStore()
        await kv.set(OFFLINE_QUEUE_KEY, "[[[")
        kv.full = True
        assert await OfflineQueue(kv, clock=clock).list() == []
        assert await kv.get(OFFLINE_QUEUE_KEY + ".corrupt-backup") is None


class TestConnectivity:
    def test_listeners_fire_on_flip_only(self):
        monitor = ConnectivityMonitor(initially_online=True)
        seen = []
        monitor.on_connection_change(seen.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)
        assert seen == [False, True]

    def test_unsubscribe_stops_delivery(self):
        monitor = ConnectivityMonitor()
        seen = []
        unsubscribe = monitor.on_connection_change(seen.append)
        unsubscribe()
        monitor.set_online(False)
        assert seen == []
        unsubscribe()

    def test_failing_listener_does_not_block_others(self):
        monitor = ConnectivityMonitor()
        seen = []

        def _broken(online):
            raise RuntimeError("listener bug")

        monitor.on_connection_change(_broken)
        monitor.on_connection_change(seen.append)
        monitor.set_online(False)
        assert seen == [False]

    @pytest.mark.asyncio
    async def test_probe_failure_counts_as_offline(self):
        async def _probe():
            raise ConnectionError("no route to host")

        monitor = ConnectivityMonitor(probe=_probe)
        assert await monitor.poll() is False
        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_probe_result_published(self):
        async def _probe():
            return True

        monitor = ConnectivityMonitor(probe=_probe, initially_online=False)
        assert await monitor.poll() is True
        assert monitor.is_online


class TestSyncCoordinator:
    @pytest.mark.asyncio
    async def test_failed_item_stays_queued(self, queue, kv, clock):
        connectivity = ConnectivityMonitor()
        sync = SyncCoordinator(queue, connectivity, kv, sync_on_reconnect=False, clock=clock)
        replayed = []

        async def _handler(item):
            if item.payload["n"] == 2:
                raise RuntimeError("server rejected")
            replayed.append(item.payload["n"])

        sync.register_handler("test-action", _handler)
        for n in (1, 2, 3):
            await queue.enqueue("test-action", {"n": n})

        result = await sync.sync()
        assert (result.success, result.processed, result.failed) == (False, 2, 1)
        assert replayed == [1, 3]

        (remaining,) = await queue.list()
        assert remaining.payload == {"n": 2}
        assert remaining.retry_count == 1
        assert result.errors == [(remaining.id, "server rejected")]
        assert await sync.last_sync() is None

    @pytest.mark.asyncio
    async def test_successful_sync_records_last_sync(self, queue, kv, clock):
        sync = SyncCoordinator(queue, ConnectivityMonitor(), kv, sync_on_reconnect=False, clock=clock)
        completed = []

        async def _handler(item):
            return None

        async def _listener(result):
            completed.append(result)

        sync.register_handler("test-action", _handler)
        sync.on_sync_complete(_listener)
        await queue.enqueue("test-action", {})

        result = await sync.sync()
        assert result.success and result.processed == 1
        assert await sync.last_sync() == clock.now
        assert await kv.get(LAST_SYNC_KEY) is not None
        assert completed == [result]
        assert sync.status().queue_length == 0

    @pytest.mark.asyncio
    async def test_missing_handler_counts_as_failure(self, queue, kv, clock):
        sync = SyncCoordinator(queue, ConnectivityMonitor(), kv, sync_on_reconnect=False, clock=clock)
        await queue.enqueue("unknown-action", {})
        result = await sync.sync()
        assert result.failed == 1
        assert await queue.length() == 1

    @pytest.mark.asyncio
    async def test_sync_is_noop_when_offline(self, queue, kv, clock):
        sync = SyncCoordinator(
            queue, ConnectivityMonitor(initially_online=False), kv, sync_on_reconnect=False, clock=clock
        )
        await queue.enqueue("test-action", {})
        result = await sync.sync()
        assert result.success is False and result.processed == 0
        assert await queue.length() == 1

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, queue, kv, clock):
        sync = SyncCoordinator(queue, ConnectivityMonitor(), kv, sync_on_reconnect=False, clock=clock)
        release = asyncio.Event()

        async def _slow(item):
            await release.wait()

        sync.register_handler("test-action", _slow)
        await queue.enqueue("test-action", {})

        first = asyncio.create_task(sync.sync())
        await asyncio.sleep(0)
        assert sync.is_syncing
        second = await sync.sync()
        assert second.success is False and second.processed == 0

        release.set()
        assert (await first).processed == 1


    @pytest.mark.asyncio
    async def test_failure_bookkeeping_survives_full_storage(self, clock):
        kv = FillableKeyValueStore()
        queue = OfflineQueue(kv, clock=clock)
        sync = SyncCoordinator(queue, ConnectivityMonitor(), kv, sync_on_reconnect=False, clock=clock)

        async def _handler(item):
            raise RuntimeError("server rejected")

        sync.register_handler("test-action", _handler)
        await queue.enqueue("test-action", {})
        kv.full = True

        result = await sync.sync()
        assert (result.success, result.processed, result.failed) == (False, 0, 1)
        assert await queue.length() == 1
        assert not sync.is_syncing

    @pytest.mark.asyncio
    async def test_poll_replays_non_empty_queue(self, queue, kv, clock):
        sync = SyncCoordinator(queue, ConnectivityMonitor(), kv, sync_on_reconnect=False, clock=clock)
        replayed = []

        async def _handler(item):
            replayed.append(item.payload["n"])

        sync.register_handler("test-action", _handler)
        assert await sync.poll() == 0
        await queue.enqueue("test-action", {"n": 1})

        assert await sync.poll() == 0
        assert replayed == [1]
        assert await sync.last_sync() == clock.now

    @pytest.mark.asyncio
    async def test_poll_only_counts_when_deferred_offline_or_disabled(self, queue, kv, clock):
        connectivity = ConnectivityMonitor()
        busy = [True]
        sync = SyncCoordinator(queue, connectivity, kv, sync_on_reconnect=False, clock=clock)
        manual = SyncCoordinator(queue, connectivity, kv, sync_on_reconnect=False, auto_sync=False, clock=clock)
        replayed = []

        async def _handler(item):
            replayed.append(item.id)

        sync.register_handler("test-action", _handler)
        manual.register_handler("test-action", _handler)
        sync.defer_while(lambda: busy[0])
        await queue.enqueue("test-action", {})

        assert await sync.poll() == 1
        busy[0] = False
        connectivity.set_online(False)
        assert await sync.poll() == 1
        connectivity.set_online(True)
        assert await manual.poll() == 1
        assert replayed == []
        assert manual.status().queue_length == 1
    @pytest.mark.asyncio
    async def test_reconnect_triggers_sync(self, queue, kv, clock):
        connectivity = ConnectivityMonitor(initially_online=False)
        sync = SyncCoordinator(queue, connectivity, kv, clock=clock)
        done = asyncio.Event()

        async def _handler(item):
            done.set()

        sync.register_handler("test-action", _handler)
        await queue.enqueue("test-action", {})

        connectivity.set_online(True)
        await asyncio.wait_for(done.wait(), timeout=1)
        await sync.stop()
        assert await queue.length() == 0


@pytest.mark.asyncio
async def test_poll_jobs_follow_service_lifecycle(queue, kv, clock):
    scheduler = AsyncIOScheduler()

    async def _probe():
        return True

    monitor = ConnectivityMonitor(probe=_probe, scheduler=scheduler, poll_seconds=30)
    sync = SyncCoordinator(queue, monitor, kv, scheduler=scheduler, clock=clock)
    await monitor.start()
    await sync.start()
    assert scheduler.get_job("connectivity_poll") is not None
    assert scheduler.get_job("queue_length_poll") is not None

    await sync.stop()
    await monitor.stop()
    assert scheduler.get_job("connectivity_poll") is None
    assert scheduler.get_job("queue_length_poll") is None
