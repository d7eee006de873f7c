"""Online/offline tracking with a periodic probe."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cloud_session.log import get_logger
from cloud_session.services.base import PollingService

logger = get_logger(__name__)

ConnectionListener = Callable[[bool], None]
Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor(PollingService):
    """Observable connectivity state.

    Listeners fire only when the state flips. The probe runs on an interval
    job and never touches an in-flight exchange.
    """

    job_id = "connectivity_poll"

    def __init__(
        self,
        probe: Optional[Probe] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        poll_seconds: float = 15,
        initially_online: bool = True,
    ):
        super().__init__(scheduler, poll_seconds)
        self._probe = probe
        self._online = initially_online
        self._listeners: list[ConnectionListener] = []

    @property
    def service_name(self) -> str:
        return "connectivity"

    @property
    def is_online(self) -> bool:
        return self._online

    def on_connection_change(self, callback: ConnectionListener) -> Callable[[], None]:
        """Register *callback*; the returned function unregisters it."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error("connectivity_listener_error", error=str(e))

    async def poll(self) -> bool:
        """Run the probe once and publish the result."""
        if self._probe is None:
            return self._online
        try:
            online = await self._probe()
        except Exception as e:
            logger.warning("connectivity_probe_failed", error=str(e))
            online = False
        self.set_online(online)
        return online

    async def start(self) -> None:
        if self._probe is not None and self._schedule():
            logger.info("connectivity_poll_started", interval=self._interval_seconds)

    async def stop(self) -> None:
        self._unschedule()
        self._listeners.clear()

    async def health_check(self) -> bool:
        return self._online
