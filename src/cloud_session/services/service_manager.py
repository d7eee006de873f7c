"""Service lifecycle manager."""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from cloud_session.log import get_logger
from cloud_session.services.base import PollingService

logger = get_logger(__name__)


class ServiceManager:
    """Owns the shared poll scheduler and starts/stops background services."""

    def __init__(self) -> None:
        self.scheduler = AsyncIOScheduler()
        self._services: list[PollingService] = []

    def register(self, service: PollingService) -> None:
        self._services.append(service)

    async def start_all(self) -> None:
        """Start all services. A service that fails to start is logged and skipped."""
        for service in self._services:
            try:
                await service.start()
            except Exception as e:
                logger.warning("service_start_failed", service=service.service_name, error=str(e))
        self.scheduler.start()
        logger.info("all_services_started", services=[s.service_name for s in self._services])

    async def stop_all(self) -> None:
        """Stop all services gracefully, in reverse start order."""
        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception as e:
                logger.error("service_stop_error", service=service.service_name, error=str(e))
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("all_services_stopped")

    async def health_check_all(self) -> dict[str, bool]:
        return {s.service_name: await s.health_check() for s in self._services}
