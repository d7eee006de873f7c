"""Test doubles shared across test modules."""

import asyncio
import json

import httpx

from cloud_session.core.errors import StorageQuotaError
from cloud_session.storage.database import MemoryKeyValueStore

BASE_MS = 1_736_935_200_000  # 2025-01-15 10:00:00 UTC
HOUR_MS = 60 * 60 * 1000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = BASE_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def sse(event: str, data) -> bytes:
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"event: {event}\ndata: {payload}\n\n".encode()


def stream_body(*chunks: bytes, gate: asyncio.Event | None = None, hold_after: int | None = None):
    """Async response body; blocks on *gate* before chunk number *hold_after*."""

    async def _gen():
        for idx, chunk in enumerate(chunks):
            if gate is not None and idx == hold_after:
                await gate.wait()
            yield chunk
        if gate is not None and hold_after is not None and hold_after >= len(chunks):
            await gate.wait()

    return _gen()


def streaming_response(*chunks: bytes, session_id: str | None = None, **kwargs):
    """Factory for FakeBackend.queue returning a 200 event-stream response."""
    headers = {"Content-Type": "text/event-stream"}
    if session_id:
        headers["X-Session-Id"] = session_id

    def _factory(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=headers, content=stream_body(*chunks, **kwargs))

    return _factory


def json_response(status_code: int, body: dict):
    def _factory(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    return _factory


async def wait_until(predicate, attempts: int = 1000) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.001)
    raise AssertionError("condition never became true")


class FakeBackend:
    """Serves canned responses in order and records every request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responses: list = []

    def queue(self, factory) -> None:
        self.responses.append(factory)

    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.posts()]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "DELETE":
            return httpx.Response(200, json={"success": True, "message": "Session ended"})
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if not self.responses:
            return httpx.Response(500, json={"message": "no canned response"})
        return self.responses.pop(0)(request)


class FillableKeyValueStore(MemoryKeyValueStore):
    """Memory store that rejects every write while ``full`` is set."""

    def __init__(self):
        super().__init__()
        self.full = False

    async def set(self, key: str, value: str) -> None:
        if self.full:
            raise StorageQuotaError(f"Storage quota exceeded while writing '{key}'")
        await super().set(key, value)
