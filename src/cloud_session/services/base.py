"""Base class for services driven by an interval job on the shared scheduler."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


class PollingService(ABC):
    """Runs :meth:`poll` every ``interval_seconds`` once started.

    Without a scheduler the service is inert: ``poll`` can still be called
    directly, which is how tests and one-shot CLI commands use it.
    """

    job_id: str

    def __init__(self, scheduler: Optional[AsyncIOScheduler], interval_seconds: float):
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def poll(self) -> Any:
        ...

    def _schedule(self) -> bool:
        if self._scheduler is None:
            return False
        self._scheduler.add_job(
            self.poll,
            IntervalTrigger(seconds=self._interval_seconds),
            id=self.job_id,
            replace_existing=True,
        )
        return True

    def _unschedule(self) -> None:
        if self._scheduler is not None and self._scheduler.get_job(self.job_id):
            self._scheduler.remove_job(self.job_id)

    async def start(self) -> None:
        self._schedule()

    async def stop(self) -> None:
        self._unschedule()

    async def health_check(self) -> bool:
        return True
