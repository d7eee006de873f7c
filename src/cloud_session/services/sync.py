"""Replays the offline queue when connectivity returns or on demand."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cloud_session.core.errors import StorageParseError, StorageQuotaError
from cloud_session.log import get_logger
from cloud_session.services.base import PollingService
from cloud_session.services.connectivity import ConnectivityMonitor
from cloud_session.storage.database import KeyValueStore, decode_envelope, encode_envelope
from cloud_session.storage.models import QueueItem, SyncResult, SyncStatus, now_ms
from cloud_session.storage.offline_queue import OfflineQueue

logger = get_logger(__name__)

LAST_SYNC_KEY = "last-sync"

ReplayHandler = Callable[[QueueItem], Awaitable[None]]
SyncListener = Callable[[SyncResult], Awaitable[None]]


class SyncCoordinator(PollingService):
    """Best-effort replay of queued actions in enqueue order.

    A handler signals failure by raising; the item then stays queued with
    its retry count bumped and the next item is tried.

    With ``auto_sync`` the queue poll also replays a non-empty queue while
    online, unless a ``defer_while`` predicate reports the caller is busy.
    """

    job_id = "queue_length_poll"

    def __init__(
        self,
        queue: OfflineQueue,
        connectivity: ConnectivityMonitor,
        kv: KeyValueStore,
        scheduler: Optional[AsyncIOScheduler] = None,
        queue_poll_seconds: float = 5,
        sync_on_reconnect: bool = True,
        auto_sync: bool = True,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(scheduler, queue_poll_seconds)
        self._queue = queue
        self._connectivity = connectivity
        self._kv = kv
        self._clock = clock
        self._auto_sync = auto_sync
        self._handlers: dict[str, ReplayHandler] = {}
        self._busy_checks: list[Callable[[], bool]] = []
        self._sync_listeners: list[SyncListener] = []
        self._syncing = False
        self._queue_length = 0
        self._last_sync: Optional[int] = None
        self._reconnect_task: Optional[asyncio.Task[SyncResult]] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        if sync_on_reconnect:
            self._unsubscribe = connectivity.on_connection_change(self._on_connection_change)

    @property
    def service_name(self) -> str:
        return "sync"

    @property
    def is_offline(self) -> bool:
        return not self._connectivity.is_online

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def register_handler(self, kind: str, handler: ReplayHandler) -> None:
        self._handlers[str(kind)] = handler
        logger.debug("replay_handler_registered", kind=kind)

    def defer_while(self, busy: Callable[[], bool]) -> None:
        """Skip polled syncs while *busy()* is true."""
        self._busy_checks.append(busy)

    def on_sync_complete(self, callback: SyncListener) -> Callable[[], None]:
        """Called after a sync that replayed at least one item."""
        self._sync_listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._sync_listeners:
                self._sync_listeners.remove(callback)

        return _unsubscribe

    def _on_connection_change(self, online: bool) -> None:
        if online and not self._syncing:
            self._reconnect_task = asyncio.get_running_loop().create_task(self.sync())

    async def sync(self) -> SyncResult:
        if self._syncing or not self._connectivity.is_online:
            return SyncResult(success=False)

        self._syncing = True
        processed = 0
        failed = 0
        errors: list[tuple[str, str]] = []
        try:
            items = await self._queue.list()
            logger.info("sync_started", queue_length=len(items))
            for item in items:
                handler = self._handlers.get(item.action_kind)
                try:
                    if handler is None:
                        raise LookupError(f"No replay handler for '{item.action_kind}'")
                    await handler(item)
                except Exception as e:
                    failed += 1
                    errors.append((item.id, str(e)))
                    retries = await self._queue.record_failure(item.id)
                    logger.warning("replay_failed", item_id=item.id, kind=item.action_kind,
                                   retry_count=retries, error=str(e))
                    continue
                if not await self._queue.remove(item.id):
                    logger.warning("replayed_item_not_dequeued", item_id=item.id, kind=item.action_kind)
                processed += 1

            if failed == 0:
                await self._record_last_sync()
            self._queue_length = await self._queue.length()
        finally:
            self._syncing = False

        result = SyncResult(success=failed == 0, processed=processed, failed=failed, errors=errors)
        logger.info("sync_finished", processed=processed, failed=failed)
        if processed:
            for listener in list(self._sync_listeners):
                await listener(result)
        return result

    async def _record_last_sync(self) -> None:
        self._last_sync = self._clock()
        try:
            await self._kv.set(LAST_SYNC_KEY, encode_envelope(self._last_sync, self._last_sync))
        except StorageQuotaError as e:
            logger.warning("last_sync_not_saved", error=str(e), error_class=e.error_class)

    async def last_sync(self) -> Optional[int]:
        if self._last_sync is None:
            raw = await self._kv.get(LAST_SYNC_KEY)
            if raw is not None:
                try:
                    self._last_sync = int(decode_envelope(raw))
                except (StorageParseError, TypeError, ValueError):
                    logger.warning("last_sync_unreadable")
        return self._last_sync

    async def refresh_queue_length(self) -> int:
        self._queue_length = await self._queue.length()
        return self._queue_length

    async def poll(self) -> int:
        length = await self.refresh_queue_length()
        if not length or not self._auto_sync or self._syncing or self.is_offline:
            return length
        if any(busy() for busy in self._busy_checks):
            logger.debug("polled_sync_deferred", queue_length=length)
            return length
        await self.sync()
        return self._queue_length

    def status(self) -> SyncStatus:
        """Snapshot for the offline banner; queue length is as of the last poll."""
        return SyncStatus(
            is_online=self._connectivity.is_online,
            is_syncing=self._syncing,
            queue_length=self._queue_length,
            last_sync=self._last_sync,
        )

    async def start(self) -> None:
        await self.refresh_queue_length()
        await self.last_sync()
        self._schedule()
        logger.info("sync_coordinator_started", queue_length=self._queue_length)

    async def stop(self) -> None:
        self._unschedule()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._reconnect_task is not None and not self._reconnect_task.done():
            await self._reconnect_task

    async def health_check(self) -> bool:
        return not self._syncing
