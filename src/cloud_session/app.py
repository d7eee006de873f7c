"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

import httpx

from cloud_session.api.client import InteractiveClient
from cloud_session.config import AppConfig
from cloud_session.core.session import AccessGate, SessionController, allow_all
from cloud_session.log import get_logger
from cloud_session.services.connectivity import ConnectivityMonitor
from cloud_session.services.service_manager import ServiceManager
from cloud_session.services.sync import SyncCoordinator
from cloud_session.storage.database import KeyValueStore, SQLiteKeyValueStore
from cloud_session.storage.offline_queue import OfflineQueue
from cloud_session.storage.session_store import SessionStore

logger = get_logger(__name__)


class CloudSessionApp:
    """Top-level application orchestrator.

    Must be constructed inside a running event loop; the poll scheduler
    binds to it.
    """

    def __init__(
        self,
        config: AppConfig,
        kv: KeyValueStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        access_gate: AccessGate = allow_all,
    ):
        self.config = config
        self.kv = kv or SQLiteKeyValueStore(config.storage.db_path)
        self.client = InteractiveClient(config.api, config.session, transport=transport)
        self.store = SessionStore(
            self.kv,
            retention_hours=config.storage.retention_hours,
            history_limit=config.storage.history_limit,
            title_max_length=config.session.title_max_length,
        )
        self.queue = OfflineQueue(self.kv)
        self.service_manager = ServiceManager()
        self.connectivity = ConnectivityMonitor(
            probe=self._probe,
            scheduler=self.service_manager.scheduler,
            poll_seconds=config.sync.connectivity_poll_seconds,
        )
        self.sync = SyncCoordinator(
            self.queue,
            self.connectivity,
            self.kv,
            scheduler=self.service_manager.scheduler,
            queue_poll_seconds=config.sync.queue_poll_seconds,
            sync_on_reconnect=config.sync.sync_on_reconnect,
            auto_sync=config.sync.auto_sync,
        )
        self.service_manager.register(self.connectivity)
        self.service_manager.register(self.sync)
        self.controller = SessionController(
            self.client,
            self.store,
            self.queue,
            self.sync,
            request_timeout=config.session.request_timeout,
            access_gate=access_gate,
        )

    async def _probe(self) -> bool:
        return await self.client.ping(self.config.sync.health_path)

    async def start(self, sync_queued: bool = True) -> None:
        """Initialize storage, restore the last conversation, start polling.

        With *sync_queued*, actions left queued by an earlier run are replayed
        right away when the backend is reachable.
        """
        if isinstance(self.kv, SQLiteKeyValueStore):
            await self.kv.initialize()

        await self.connectivity.poll()
        await self.service_manager.start_all()
        resumed = await self.controller.resume()
        if sync_queued and self.connectivity.is_online and self.sync.status().queue_length:
            await self.sync.sync()
        logger.info(
            "cloud_session_started",
            online=self.connectivity.is_online,
            resumed=resumed,
            queue_length=self.sync.status().queue_length,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        self.controller.cancel()
        await self.service_manager.stop_all()
        await self.client.aclose()
        if isinstance(self.kv, SQLiteKeyValueStore):
            await self.kv.close()
        logger.info("cloud_session_stopped")
