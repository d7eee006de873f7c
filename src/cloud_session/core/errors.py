"""Exception hierarchy for transport, storage and session lookups."""

from __future__ import annotations

from typing import Optional

from cloud_session.core.types import ErrorClass


class CloudSessionError(Exception):
    """Base error; ``error_class`` tags it for diagnostics."""

    error_class: ErrorClass = ErrorClass.SERVER

    def __init__(self, message: str, error_class: Optional[ErrorClass] = None):
        super().__init__(message)
        self.message = message
        if error_class is not None:
            self.error_class = error_class


class NetworkError(CloudSessionError):
    error_class = ErrorClass.NETWORK


class ApiError(CloudSessionError):
    """Non-2xx response from the backend.

    ``from_body`` is True when ``message`` is the backend's own text rather
    than a generic status line.
    """

    def __init__(self, status_code: int, message: str, from_body: bool = False):
        super().__init__(message, classify_status(status_code))
        self.status_code = status_code
        self.from_body = from_body


class StorageQuotaError(CloudSessionError):
    error_class = ErrorClass.STORAGE_QUOTA


class StorageParseError(CloudSessionError):
    error_class = ErrorClass.STORAGE_PARSE


class SessionNotFoundError(CloudSessionError):
    error_class = ErrorClass.SESSION_NOT_FOUND


class SessionExpiredError(CloudSessionError):
    error_class = ErrorClass.SESSION_EXPIRED


class AccessDeniedError(CloudSessionError):
    error_class = ErrorClass.AUTH


class ReplayError(CloudSessionError):
    """A queued action could not be replayed; it stays queued."""


def classify_status(status_code: int) -> ErrorClass:
    if status_code in (401, 403):
        return ErrorClass.AUTH
    if status_code == 429:
        return ErrorClass.RATE_LIMIT
    return ErrorClass.SERVER
