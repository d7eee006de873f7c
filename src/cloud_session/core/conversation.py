"""In-memory message list and the rules for applying stream events to it."""

from __future__ import annotations

from typing import Any, Callable, Optional

from cloud_session.core.types import ErrorClass, Role
from cloud_session.log import get_logger
from cloud_session.storage.models import Message, now_ms
from cloud_session.stream.events import (
    CompleteEvent,
    DeltaEvent,
    EndEvent,
    ErrorEvent,
    MalformedPayload,
    RepoResult,
    StartEvent,
    StatusEvent,
    StreamEvent,
)

logger = get_logger(__name__)


def format_results_summary(results: list[RepoResult]) -> str:
    """Per-repository outcome lines followed by an aggregate count."""
    lines = ["**Results:**"]
    for result in results:
        if result.success:
            detail = f"PR created: {result.pr_url}" if result.pr_url else "completed"
            lines.append(f"✓ {result.repository}: {detail}")
        else:
            lines.append(f"✗ {result.repository}: {result.error or 'failed'}")
    succeeded = sum(1 for r in results if r.success)
    lines.append("")
    lines.append(f"{succeeded}/{len(results)} repositories succeeded")
    return "\n".join(lines)


class Conversation:
    """Ordered messages of one session plus the in-flight assistant turn.

    At most one assistant message streams at a time and it is always the
    newest assistant message. A status line is a system message that is
    replaced in place while it is still marked streaming.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.messages: list[Message] = []
        self._clock = clock
        self._assistant: Optional[Message] = None
        self._status: Optional[Message] = None

    @property
    def is_streaming(self) -> bool:
        return self._assistant is not None and self._assistant.streaming

    @property
    def assistant(self) -> Optional[Message]:
        return self._assistant

    def reset(self, messages: Optional[list[Message]] = None) -> None:
        self.messages = list(messages or [])
        self._assistant = None
        self._status = None

    def _append(self, role: Role, content: str, **kwargs: Any) -> Message:
        message = Message(role=role, content=content, timestamp=self._clock(), **kwargs)
        self.messages.append(message)
        return message

    def add_user(self, text: str, metadata: Optional[dict[str, Any]] = None) -> Message:
        return self._append(Role.USER, text, metadata=dict(metadata or {}))

    def add_system(self, text: str, metadata: Optional[dict[str, Any]] = None) -> Message:
        return self._append(Role.SYSTEM, text, metadata=dict(metadata or {}))

    def find(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def pop_last(self) -> Optional[Message]:
        if not self.messages:
            return None
        message = self.messages.pop()
        if message is self._assistant:
            self._assistant = None
        if message is self._status:
            self._status = None
        return message

    def last_user_text(self) -> Optional[str]:
        for message in reversed(self.messages):
            if message.role == Role.USER:
                return message.content
        return None

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def begin_exchange(self) -> None:
        self._assistant = None
        self._status = None

    def _ensure_assistant(self) -> Message:
        if self._assistant is None or not self._assistant.streaming:
            self._assistant = self._append(Role.ASSISTANT, "", streaming=True)
        return self._assistant

    def _settle_status(self) -> None:
        if self._status is not None:
            self._status.streaming = False
            self._status = None

    def finish(self) -> None:
        """Normal end of an exchange: nothing streams any more."""
        if self._assistant is not None:
            self._assistant.streaming = False
        self._settle_status()

    def fail(self, text: str, error_class: ErrorClass) -> Message:
        """End the exchange abnormally, keeping any partial content."""
        message = self._assistant
        if message is None:
            message = self._append(Role.ASSISTANT, text)
            self._assistant = message
        elif message.content:
            message.content += f"\n\n{text}"
        else:
            message.content = text
        message.streaming = False
        message.error = True
        message.error_class = error_class
        self._settle_status()
        return message

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    def apply(self, event: StreamEvent) -> bool:
        """Apply one decoded event. Returns True when the exchange is over."""
        if isinstance(event, StartEvent):
            self._ensure_assistant()
        elif isinstance(event, DeltaEvent):
            message = self._ensure_assistant()
            message.content += event.content
        elif isinstance(event, EndEvent):
            if self._assistant is not None:
                self._assistant.streaming = False
        elif isinstance(event, StatusEvent):
            self._apply_status(event)
        elif isinstance(event, CompleteEvent):
            if event.multi_repo_results:
                message = self._assistant or self._append(Role.ASSISTANT, "")
                self._assistant = message
                summary = format_results_summary(event.multi_repo_results)
                message.content = f"{message.content}\n\n{summary}" if message.content else summary
            self.finish()
            return True
        elif isinstance(event, ErrorEvent):
            self.fail(f"Error: {event.text}", ErrorClass.SERVER)
            return True
        elif isinstance(event, MalformedPayload):
            logger.warning("stream_event_skipped", event_type=event.event_type, error_class=event.error_class)
        return False

    def _apply_status(self, event: StatusEvent) -> None:
        if self._status is not None and self._status.streaming:
            self._status.content = event.text
            self._status.timestamp = self._clock()
            return
        metadata = {"status": True}
        if event.repository:
            metadata["repository"] = event.repository
        self._status = self._append(Role.SYSTEM, event.text, streaming=True, metadata=metadata)
