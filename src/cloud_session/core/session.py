"""Session controller: one conversation's request/stream state machine."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from cloud_session.api.client import InteractiveClient, StreamResponse
from cloud_session.core.cancellation import CancellationToken, ExchangeResult
from cloud_session.core.conversation import Conversation
from cloud_session.core.errors import (
    AccessDeniedError,
    ApiError,
    CloudSessionError,
    ReplayError,
    SessionExpiredError,
    SessionNotFoundError,
)
from cloud_session.core.types import ActionKind, CancellationReason, ErrorClass, ExchangeState, Role
from cloud_session.log import bind_session, get_logger
from cloud_session.services.sync import SyncCoordinator
from cloud_session.storage.models import Message, QueueItem, SessionSummary, SyncResult, now_ms
from cloud_session.storage.offline_queue import OfflineQueue
from cloud_session.storage.session_store import SessionContext, SessionStore
from cloud_session.stream.events import StreamEvent
from cloud_session.stream.parser import EventStreamParser

logger = get_logger(__name__)

CANCELLED_NOTICE = "Request cancelled"
QUEUED_NOTICE = "You're offline. Message queued and will be sent when you're back online."
QUEUE_FULL_NOTICE = "Couldn't queue this message: device storage is full. Free up space and try again."

ERROR_MESSAGES: dict[ErrorClass, str] = {
    ErrorClass.NETWORK: "Network error. Check your connection and try again.",
    ErrorClass.AUTH: "Authentication failed. Please sign in again.",
    ErrorClass.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorClass.SERVER: "The server could not process the request.",
    ErrorClass.PARSE_MALFORMED: "Received an unreadable response from the server.",
}

StateListener = Callable[["SessionController"], None]
AccessGate = Callable[[], Awaitable[bool]]


async def allow_all() -> bool:
    return True


class SessionController:
    """Drives one logical conversation.

    ``Idle -> AwaitingFirstResponse -> Streaming -> Idle`` on success, or
    into Cancelled / TimedOut / Failed and back to Idle. Only one exchange
    is open at a time; ``send`` while one is open does nothing.
    """

    def __init__(
        self,
        client: InteractiveClient,
        store: SessionStore,
        queue: OfflineQueue,
        sync: SyncCoordinator,
        request_timeout: float = 30.0,
        access_gate: AccessGate = allow_all,
        clock: Callable[[], int] = now_ms,
    ):
        self._client = client
        self._store = store
        self._queue = queue
        self._sync = sync
        self._request_timeout = request_timeout
        self._access_gate = access_gate
        self._clock = clock

        self.context = SessionContext()
        self.conversation = Conversation(clock=clock)
        self.remote_session_id: Optional[str] = None
        self.selected_targets: set[str] = set()
        self.state = ExchangeState.IDLE
        self.last_cancellation = CancellationReason.NONE

        self._token: Optional[CancellationToken] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._listeners: list[StateListener] = []

        sync.register_handler(ActionKind.SEND_MESSAGE, self._replay_send)
        sync.defer_while(lambda: self.is_busy)
        sync.on_sync_complete(self._on_synced)

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages

    @property
    def is_streaming(self) -> bool:
        return self.conversation.is_streaming

    @property
    def is_busy(self) -> bool:
        return not self._idle.is_set()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("state_listener_error", error=str(e))

    async def _persist(self) -> None:
        await self._store.save_current(
            self.context, self.conversation.messages, self.remote_session_id, self.selected_targets
        )
        bind_session(self.context.session_id)
        self._notify()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def resume(self) -> bool:
        """Load the persisted current session, if it is still within retention."""
        session = await self._store.load_current()
        if session is None:
            return False
        self.context.adopt(session)
        self.conversation.reset(session.messages)
        self.remote_session_id = session.remote_session_id
        self.selected_targets = set(session.selected_targets)
        bind_session(session.id)
        logger.info("session_resumed", message_count=len(session.messages))
        self._notify()
        return True

    async def send(self, text: str) -> Optional[ExchangeResult]:
        """Send a prompt. Returns None when nothing was sent (empty, busy, or queued)."""
        text = text.strip()
        if not text or self.is_busy:
            return None

        if self._sync.is_offline:
            await self._enqueue_offline(text)
            return None

        self.conversation.add_user(text)
        return await self._exchange(text)

    def cancel(self) -> bool:
        """Abort the open exchange without an error. Returns False if idle."""
        token = self._token
        if token is None or not token.cancel(CancellationReason.USER_CANCELLED):
            return False
        self.conversation.add_system(CANCELLED_NOTICE)
        logger.info("exchange_cancel_requested")
        self._notify()
        return True

    async def retry_last(self) -> Optional[ExchangeResult]:
        """Drop the trailing failed/notice message and resend the last prompt."""
        if self.is_busy:
            return None
        text = self.conversation.last_user_text()
        if text is None:
            return None
        last = self.messages[-1]
        if last.role != Role.USER:
            self.conversation.pop_last()
        if self._sync.is_offline:
            await self._enqueue_offline(text, add_user=False)
            return None
        return await self._exchange(text)

    async def new_conversation(self) -> None:
        """Forget the current conversation in memory and on disk.

        An open exchange is cancelled and allowed to finish its last write
        (to the old session) before anything is cleared.
        """
        if self._token is not None:
            self._token.cancel(CancellationReason.USER_CANCELLED)
        await self._idle.wait()
        previous_remote = self.remote_session_id
        self.conversation.reset()
        self.remote_session_id = None
        self.state = ExchangeState.IDLE
        await self._store.clear_current(self.context)
        bind_session(None)
        if previous_remote and not self._sync.is_offline:
            try:
                await self._client.end_session(previous_remote)
            except CloudSessionError as e:
                logger.warning("remote_session_end_failed", remote_session_id=previous_remote,
                               error=e.message, error_class=e.error_class)
        logger.info("conversation_reset")
        self._notify()

    def set_targets(self, targets: set[str] | list[str]) -> None:
        self.selected_targets = set(targets)

    async def list_history(self) -> list[SessionSummary]:
        if not await self._access_gate():
            raise AccessDeniedError("History access was not granted")
        return await self._store.list_history()

    async def restore(self, session_id: str) -> None:
        """Reopen a conversation from history as the current one."""
        if self.is_busy:
            raise CloudSessionError("Cannot switch conversations during a request")
        try:
            session = await self._store.require_from_history(session_id)
        except (SessionNotFoundError, SessionExpiredError) as e:
            logger.info("history_restore_failed", target=session_id, error_class=e.error_class)
            raise
        self.context.adopt(session)
        self.conversation.reset(session.messages)
        self.remote_session_id = session.remote_session_id
        self.selected_targets = set(session.selected_targets)
        await self._persist()

    async def delete_history(self, session_id: str) -> bool:
        return await self._store.delete_from_history(session_id)

    async def discard_queued(self, item_id: str) -> bool:
        removed = await self._queue.remove(item_id)
        if removed:
            await self._sync.refresh_queue_length()
        return removed

    async def sync(self) -> SyncResult:
        return await self._sync.sync()

    # ------------------------------------------------------------------
    # Offline path
    # ------------------------------------------------------------------

    async def _enqueue_offline(self, text: str, add_user: bool = True) -> None:
        if add_user:
            message = self.conversation.add_user(text, metadata={"queued": True})
        else:
            message = next(m for m in reversed(self.messages) if m.role == Role.USER)
            message.metadata["queued"] = True
        payload: dict[str, Any] = {
            "text": text,
            "targets": sorted(self.selected_targets),
            "message_id": message.id,
        }
        if await self._queue.enqueue(ActionKind.SEND_MESSAGE, payload) is None:
            message.metadata.pop("queued", None)
            self.conversation.add_system(QUEUE_FULL_NOTICE)
            logger.warning("offline_send_not_queued", message_id=message.id, error_class=ErrorClass.STORAGE_QUOTA)
        else:
            await self._sync.refresh_queue_length()
            self.conversation.add_system(QUEUED_NOTICE, metadata={"queued": True})
        await self._persist()

    async def _replay_send(self, item: QueueItem) -> None:
        if self.is_busy:
            raise ReplayError("Another request is in progress")
        text = item.payload["text"]
        message = self.conversation.find(item.payload.get("message_id", ""))
        if message is None:
            self.conversation.add_user(text)
        result = await self._exchange(text, targets=item.payload.get("targets"))
        if not result.completed:
            raise ReplayError(result.error_message or "Replay did not complete")
        if message is not None:
            message.metadata.pop("queued", None)

    async def _on_synced(self, result: SyncResult) -> None:
        still_queued = any(m.role == Role.USER and m.metadata.get("queued") for m in self.messages)
        if not still_queued:
            for message in self.messages:
                if message.role == Role.SYSTEM and message.metadata.get("queued"):
                    message.metadata.pop("queued")
                    message.content = "Queued message sent."
        await self._persist()

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def _exchange(self, text: str, targets: Optional[list[str]] = None) -> ExchangeResult:
        self._idle.clear()
        try:
            return await self._exchange_once(text, targets)
        finally:
            self._idle.set()

    async def _exchange_once(self, text: str, targets: Optional[list[str]]) -> ExchangeResult:
        token = CancellationToken()
        self._token = token
        self.state = ExchangeState.AWAITING_FIRST_RESPONSE
        self.last_cancellation = CancellationReason.NONE
        self.conversation.begin_exchange()
        await self._persist()

        token.arm_deadline(self._request_timeout)
        try:
            result = await self._run(text, token, targets)
        finally:
            token.clear_deadline()
            self._token = None

        self.last_cancellation = result.cancellation
        if result.cancellation == CancellationReason.USER_CANCELLED:
            self.state = ExchangeState.CANCELLED
        elif result.cancellation == CancellationReason.TIMED_OUT:
            self.state = ExchangeState.TIMED_OUT
        elif result.failed:
            self.state = ExchangeState.FAILED
        await self._persist()
        logger.info(
            "exchange_finished",
            state=self.state,
            completed=result.completed,
            error_class=result.error_class,
        )
        self.state = ExchangeState.IDLE
        return result

    async def _run(self, text: str, token: CancellationToken, targets: Optional[list[str]]) -> ExchangeResult:
        if targets is None:
            targets = sorted(self.selected_targets)
        try:
            if self.remote_session_id is None:
                opened, response = await token.race(self._client.start(text, targets))
            else:
                opened, response = await token.race(
                    self._client.send_message(self.remote_session_id, text, targets)
                )
        except CloudSessionError as e:
            return self._failed(e)

        if not opened or response is None:
            return self._interrupted(token)

        if response.session_id and response.session_id != self.remote_session_id:
            self.remote_session_id = response.session_id
            logger.info("remote_session_adopted", remote_session_id=response.session_id)

        try:
            return await self._consume(response, token)
        except CloudSessionError as e:
            return self._failed(e)
        finally:
            await response.aclose()

    async def _consume(self, response: StreamResponse, token: CancellationToken) -> ExchangeResult:
        parser = EventStreamParser()
        chunks = response.chunks()
        try:
            while True:
                read, chunk = await token.race(anext(chunks, None))
                if not read:
                    return self._interrupted(token)
                if chunk is None:
                    break
                if self.state == ExchangeState.AWAITING_FIRST_RESPONSE:
                    self.state = ExchangeState.STREAMING
                if await self._apply_all(parser.feed(chunk)):
                    return self._ended()
            await self._apply_all(parser.flush())
        finally:
            await chunks.aclose()
        return self._ended()

    async def _apply_all(self, events: list[StreamEvent]) -> bool:
        finished = False
        for event in events:
            if self.conversation.apply(event):
                finished = True
                break
        if events:
            await self._persist()
        return finished

    def _ended(self) -> ExchangeResult:
        assistant = self.conversation.assistant
        self.conversation.finish()
        if assistant is not None and assistant.error:
            return ExchangeResult(
                completed=False,
                error_class=assistant.error_class or ErrorClass.SERVER,
                error_message=assistant.content,
                remote_session_id=self.remote_session_id,
            )
        return ExchangeResult(completed=True, remote_session_id=self.remote_session_id)

    def _interrupted(self, token: CancellationToken) -> ExchangeResult:
        if token.reason == CancellationReason.TIMED_OUT:
            message = f"Request timed out after {self._request_timeout:g} seconds. Please try again."
            self.conversation.fail(message, ErrorClass.TIMEOUT)
            logger.warning("exchange_timed_out", timeout=self._request_timeout, error_class=ErrorClass.TIMEOUT)
            return ExchangeResult(
                completed=False,
                cancellation=CancellationReason.TIMED_OUT,
                error_class=ErrorClass.TIMEOUT,
                error_message=message,
                remote_session_id=self.remote_session_id,
            )
        self.conversation.finish()
        return ExchangeResult(
            completed=False,
            cancellation=CancellationReason.USER_CANCELLED,
            remote_session_id=self.remote_session_id,
        )

    def _failed(self, error: CloudSessionError) -> ExchangeResult:
        """Backend-supplied text is shown as-is; otherwise a fixed sentence per class."""
        error_class = error.error_class
        from_body = isinstance(error, ApiError) and error.from_body
        if error.message and (from_body or error_class == ErrorClass.SERVER):
            text = error.message
        else:
            text = ERROR_MESSAGES.get(error_class, error.message)
        self.conversation.fail(f"Sorry, something went wrong. {text}", error_class)
        logger.warning("exchange_failed", error_class=error_class, error=error.message)
        return ExchangeResult(
            completed=False,
            error_class=error_class,
            error_message=text,
            remote_session_id=self.remote_session_id,
        )
