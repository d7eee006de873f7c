"""Append-only queue of actions recorded while offline."""

from __future__ import annotations

from typing import Any, Callable, Optional

from cloud_session.core.errors import StorageParseError, StorageQuotaError
from cloud_session.log import get_logger
from cloud_session.storage.database import KeyValueStore, decode_envelope, encode_envelope
from cloud_session.storage.models import QueueItem, now_ms

logger = get_logger(__name__)

OFFLINE_QUEUE_KEY = "offline-queue"


class OfflineQueue:
    """FIFO list of QueueItems. Retries are scheduled by the sync coordinator.

    Writes that hit the storage quota are logged and reported through the
    return value; the previously stored queue is left as it was.
    """

    def __init__(self, kv: KeyValueStore, clock: Callable[[], int] = now_ms):
        self._kv = kv
        self._clock = clock

    async def list(self) -> list[QueueItem]:
        raw = await self._kv.get(OFFLINE_QUEUE_KEY)
        if raw is None:
            return []
        try:
            data = decode_envelope(raw)
            return [QueueItem.from_dict(item) for item in data]
        except (StorageParseError, KeyError, TypeError, ValueError) as e:
            logger.error("offline_queue_unreadable", error=str(e))
            backup_key = OFFLINE_QUEUE_KEY + ".corrupt-backup"
            try:
                await self._kv.set(backup_key, raw)
            except StorageQuotaError as quota:
                logger.error("corrupt_backup_failed", key=backup_key, error=str(quota))
            return []

    async def _save(self, items: list[QueueItem]) -> bool:
        try:
            await self._kv.set(OFFLINE_QUEUE_KEY, encode_envelope([i.to_dict() for i in items], self._clock()))
            return True
        except StorageQuotaError as e:
            logger.warning("offline_queue_write_skipped", queue_length=len(items), error=str(e),
                           error_class=e.error_class)
            return False

    async def enqueue(self, kind: str, payload: Any) -> Optional[str]:
        """Append an action; returns its id, or None when it could not be stored."""
        items = await self.list()
        item = QueueItem(action_kind=str(kind), payload=payload, enqueued_at=self._clock())
        items.append(item)
        if not await self._save(items):
            return None
        logger.info("action_queued", item_id=item.id, kind=kind, queue_length=len(items))
        return item.id

    async def remove(self, item_id: str) -> bool:
        items = await self.list()
        remaining = [i for i in items if i.id != item_id]
        if len(remaining) == len(items):
            return False
        if not await self._save(remaining):
            return False
        logger.info("action_dequeued", item_id=item_id)
        return True

    async def record_failure(self, item_id: str) -> int:
        """Bump the retry count of *item_id*; returns the new count (0 if absent).

        The bumped count is returned even if it could not be written back.
        """
        items = await self.list()
        for item in items:
            if item.id == item_id:
                item.retry_count += 1
                await self._save(items)
                return item.retry_count
        return 0

    async def clear(self) -> None:
        await self._kv.remove(OFFLINE_QUEUE_KEY)
        logger.info("offline_queue_cleared")

    async def length(self) -> int:
        return len(await self.list())
