"""HTTP surface of the interactive backend, built on httpx."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from cloud_session.config import ApiConfig, SessionConfig
from cloud_session.core.errors import ApiError, NetworkError
from cloud_session.log import get_logger

logger = get_logger(__name__)


@dataclass
class StreamResponse:
    """An open event-stream response. Callers must ``aclose()`` it."""

    status_code: int
    session_id: Optional[str]
    _response: httpx.Response

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise NetworkError(f"Connection lost while streaming: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


class InteractiveClient:
    """Starts and continues interactive sessions over HTTP."""

    def __init__(
        self,
        api: ApiConfig,
        session: SessionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api = api
        self._session = session
        headers = {"Content-Type": "application/json"}
        if api.auth_token:
            headers["Authorization"] = f"Bearer {api.auth_token}"
        # No read timeout: the session deadline governs how long a stream may run.
        self._client = httpx.AsyncClient(
            base_url=api.base_url,
            headers=headers,
            timeout=httpx.Timeout(None, connect=api.connect_timeout),
            transport=transport,
        )

    def target_descriptor(self, name: str) -> dict[str, str]:
        return {"url": f"{self._api.github_base_url.rstrip('/')}/{name}", "name": name}

    def _with_targets(self, body: dict[str, Any], targets: list[str]) -> dict[str, Any]:
        if len(targets) == 1:
            body["repository"] = self.target_descriptor(targets[0])
        elif len(targets) > 1:
            body["repositories"] = [self.target_descriptor(t) for t in targets]
        return body

    async def start(self, prompt: str, targets: list[str]) -> StreamResponse:
        """POST /interactive/start; the response names the new remote session."""
        body = self._with_targets({"prompt": prompt}, targets)
        body["options"] = {
            "maxTurns": self._session.max_turns,
            "permissionMode": self._session.permission_mode,
            "createPR": self._session.create_pr,
        }
        return await self._open_stream("/interactive/start", body)

    async def send_message(self, remote_session_id: str, message: str, targets: list[str]) -> StreamResponse:
        """POST /interactive/{id}/message against an existing remote session."""
        body = self._with_targets({"message": message}, targets)
        return await self._open_stream(f"/interactive/{remote_session_id}/message", body)

    async def end_session(self, remote_session_id: str) -> bool:
        """DELETE /interactive/{id}. Returns the backend's success flag."""
        try:
            response = await self._client.delete(f"/interactive/{remote_session_id}")
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach server: {e}") from e
        if response.is_error:
            raise _api_error(response)
        return bool(response.json().get("success", True))

    async def ping(self, path: str = "/health") -> bool:
        try:
            response = await self._client.get(path, timeout=self._api.connect_timeout)
        except httpx.TransportError:
            return False
        return response.is_success

    async def _open_stream(self, path: str, body: dict[str, Any]) -> StreamResponse:
        request = self._client.build_request("POST", path, json=body)
        logger.debug("stream_request", path=path)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach server: {e}") from e

        if response.is_error:
            try:
                await response.aread()
            finally:
                await response.aclose()
            logger.warning("stream_request_rejected", path=path, status=response.status_code)
            raise _api_error(response)

        return StreamResponse(
            status_code=response.status_code,
            session_id=response.headers.get(self._api.session_header),
            _response=response,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_text(response: httpx.Response) -> tuple[str, bool]:
    """The body's ``message`` (or ``error``) verbatim when present, else a status line.

    The flag says whether the text came from the body.
    """
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        message = data.get("message") or data.get("error")
        if isinstance(message, str) and message:
            return message, True
    return f"Server error ({response.status_code} {response.reason_phrase})".strip(), False


def _api_error(response: httpx.Response) -> ApiError:
    text, from_body = _error_text(response)
    return ApiError(response.status_code, text, from_body=from_body)
