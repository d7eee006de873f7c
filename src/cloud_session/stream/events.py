"""Typed protocol events, one payload model per event type."""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from cloud_session.core.types import ErrorClass


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class StartEvent(_Event):
    kind: Literal["start"] = "start"
    turn: Optional[int] = None
    repository: Optional[str] = None


class DeltaEvent(_Event):
    kind: Literal["delta"] = "delta"
    content: str = ""
    repository: Optional[str] = None


class EndEvent(_Event):
    kind: Literal["end"] = "end"
    turn: Optional[int] = None


class StatusEvent(_Event):
    kind: Literal["status"] = "status"
    message: Optional[str] = None
    status: Optional[str] = None
    repository: Optional[str] = None

    @property
    def text(self) -> str:
        text = self.message or self.status or "Working..."
        if self.repository:
            return f"[{self.repository}] {text}"
        return text


class RepoResult(_Event):
    repository: str
    success: bool
    pr_url: Optional[str] = Field(default=None, alias="prUrl")
    error: Optional[str] = None


class CompleteEvent(_Event):
    kind: Literal["complete"] = "complete"
    multi_repo_results: Optional[list[RepoResult]] = Field(default=None, alias="multiRepoResults")


class ErrorEvent(_Event):
    kind: Literal["error"] = "error"
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return self.message or self.error or "Unknown error"


class MalformedPayload(_Event):
    """A complete payload that could not be decoded; reported, not fatal."""

    kind: Literal["malformed"] = "malformed"
    event_type: Optional[str] = None
    raw: str
    reason: str
    error_class: ErrorClass = ErrorClass.PARSE_MALFORMED


StreamEvent = Union[StartEvent, DeltaEvent, EndEvent, StatusEvent, CompleteEvent, ErrorEvent, MalformedPayload]

# Wire event-type names mapped to payload models.
EVENT_MODELS: dict[str, type[_Event]] = {
    "claude_start": StartEvent,
    "claude_delta": DeltaEvent,
    "claude_end": EndEvent,
    "status": StatusEvent,
    "complete": CompleteEvent,
    "error": ErrorEvent,
}
