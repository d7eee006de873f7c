"""Data models for storage layer."""

from __future__ import annotations

import itertools
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from cloud_session.core.types import ErrorClass, Role

_message_seq = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id(timestamp: int) -> str:
    """Ids sort in creation order within one process."""
    return f"msg-{timestamp:013d}-{next(_message_seq):06d}"


def new_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:12]}"


@dataclass
class Message:
    role: Role
    content: str
    timestamp: int = field(default_factory=now_ms)
    id: str = ""
    streaming: bool = False
    error: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    error_class: Optional[ErrorClass] = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_message_id(self.timestamp)

    def to_dict(self) -> dict[str, Any]:
        """Persisted form; the transient ``streaming`` flag is dropped."""
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "error": self.error,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        if self.error_class is not None:
            data["error_class"] = self.error_class.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        error_class = data.get("error_class")
        return cls(
            id=data["id"],
            role=Role(data["role"]),
            content=data.get("content", ""),
            timestamp=int(data["timestamp"]),
            error=bool(data.get("error", False)),
            metadata=dict(data.get("metadata") or {}),
            error_class=ErrorClass(error_class) if error_class else None,
        )


@dataclass
class Session:
    id: str
    title: str
    messages: list[Message]
    created_at: int
    updated_at: int
    remote_session_id: Optional[str] = None
    selected_targets: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "remote_session_id": self.remote_session_id,
            "selected_targets": list(self.selected_targets),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            remote_session_id=data.get("remote_session_id"),
            selected_targets=list(data.get("selected_targets", [])),
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]),
        )


@dataclass(frozen=True, slots=True)
class SessionSummary:
    id: str
    title: str
    created_at: int
    updated_at: int
    message_count: int
    estimated_tokens: int

    @classmethod
    def of(cls, session: Session) -> SessionSummary:
        chars = sum(len(m.content) for m in session.messages)
        return cls(
            id=session.id,
            title=session.title,
            created_at=session.created_at,
            updated_at=session.updated_at,
            message_count=len(session.messages),
            estimated_tokens=math.ceil(chars / 4),
        )


@dataclass
class QueueItem:
    action_kind: str
    payload: Any
    enqueued_at: int = field(default_factory=now_ms)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action_kind": self.action_kind,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueItem:
        return cls(
            id=data["id"],
            action_kind=data["action_kind"],
            payload=data.get("payload"),
            enqueued_at=int(data["enqueued_at"]),
            retry_count=int(data.get("retry_count", 0)),
        )


@dataclass(frozen=True, slots=True)
class SyncResult:
    success: bool
    processed: int = 0
    failed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)  # (item id, message)


@dataclass(frozen=True, slots=True)
class SyncStatus:
    is_online: bool
    is_syncing: bool
    queue_length: int
    last_sync: Optional[int] = None
