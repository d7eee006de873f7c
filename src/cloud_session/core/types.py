"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ErrorClass(StrEnum):
    """Diagnostic taxonomy attached to failed turns and log lines."""

    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    USER_CANCELLED = "user_cancelled"
    SERVER = "server"
    PARSE_MALFORMED = "parse_malformed"
    STORAGE_QUOTA = "storage_quota"
    STORAGE_PARSE = "storage_parse"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"


class CancellationReason(StrEnum):
    NONE = "none"
    USER_CANCELLED = "user_cancelled"
    TIMED_OUT = "timed_out"


class ExchangeState(StrEnum):
    IDLE = "idle"
    AWAITING_FIRST_RESPONSE = "awaiting_first_response"
    STREAMING = "streaming"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class ActionKind(StrEnum):
    SEND_MESSAGE = "send-message"
