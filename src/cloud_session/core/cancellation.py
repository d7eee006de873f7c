"""Cooperative cancellation for one outbound exchange."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, TypeVar

from cloud_session.core.types import CancellationReason, ErrorClass

T = TypeVar("T")


class CancellationToken:
    """Signal checked at every suspension point of an exchange.

    The first call to :meth:`cancel` wins: a deadline firing after a user
    cancel keeps ``USER_CANCELLED`` as the reason.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = CancellationReason.NONE
        self._deadline: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancellationReason:
        return self._reason

    def cancel(self, reason: CancellationReason = CancellationReason.USER_CANCELLED) -> bool:
        """Trip the token. Returns False if it was already tripped."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        self.clear_deadline()
        return True

    def arm_deadline(self, seconds: float) -> None:
        """Cancel with ``TIMED_OUT`` after *seconds* of wall-clock time."""
        self.clear_deadline()
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(seconds, self.cancel, CancellationReason.TIMED_OUT)

    def clear_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    async def wait(self) -> CancellationReason:
        await self._event.wait()
        return self._reason

    async def race(self, awaitable: Awaitable[T]) -> tuple[bool, Optional[T]]:
        """Await *awaitable* unless the token trips first.

        Returns ``(True, result)`` when the awaitable finished, or
        ``(False, None)`` when the token won; the loser is cancelled.
        Exceptions raised by the awaitable propagate.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return False, None

        work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        done, pending = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if work in done:
            return True, work.result()
        # Let the abandoned read unwind before the response is closed.
        await asyncio.gather(work, return_exceptions=True)
        return False, None


@dataclass
class ExchangeResult:
    """How one exchange ended. Cancellation is reported here, never raised."""

    completed: bool
    cancellation: CancellationReason = CancellationReason.NONE
    error_class: Optional[ErrorClass] = None
    error_message: Optional[str] = None
    remote_session_id: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error_class is not None
