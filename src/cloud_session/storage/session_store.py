"""Durable store for the current conversation and a bounded, time-boxed history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from cloud_session.core.errors import (
    SessionExpiredError,
    SessionNotFoundError,
    StorageParseError,
    StorageQuotaError,
)
from cloud_session.core.types import ErrorClass, Role
from cloud_session.log import get_logger
from cloud_session.storage.database import KeyValueStore, decode_envelope, encode_envelope
from cloud_session.storage.models import Message, Session, SessionSummary, new_session_id, now_ms

logger = get_logger(__name__)

CURRENT_SESSION_KEY = "current-session"
SESSION_HISTORY_KEY = "session-history"
CORRUPT_BACKUP_SUFFIX = ".corrupt-backup"

DEFAULT_TITLE = "New conversation"
HOUR_MS = 60 * 60 * 1000


@dataclass
class SessionContext:
    """Identity of the conversation being saved.

    Owned by the session controller and handed to every store call, so one
    conversation saved repeatedly always lands on the same history row.
    """

    session_id: Optional[str] = None
    created_at: Optional[int] = None

    def ensure(self, now: int) -> str:
        if self.session_id is None:
            self.session_id = new_session_id()
            self.created_at = now
            logger.info("session_created", session_id=self.session_id)
        return self.session_id

    def adopt(self, session: Session) -> None:
        self.session_id = session.id
        self.created_at = session.created_at

    def invalidate(self) -> None:
        self.session_id = None
        self.created_at = None


def derive_title(messages: Iterable[Message], max_length: int = 50) -> str:
    for message in messages:
        if message.role == Role.USER and message.content.strip():
            text = message.content.strip()
            if len(text) > max_length:
                return text[:max_length] + "..."
            return text
    return DEFAULT_TITLE


class SessionStore:
    """Persists Session records under the current/history keys."""

    def __init__(
        self,
        kv: KeyValueStore,
        retention_hours: float = 24,
        history_limit: int = 50,
        title_max_length: int = 50,
        clock: Callable[[], int] = now_ms,
    ):
        self._kv = kv
        self._retention_ms = int(retention_hours * HOUR_MS)
        self._history_limit = history_limit
        self._title_max_length = title_max_length
        self._clock = clock

    def _is_expired(self, session: Session, now: int) -> bool:
        return now - session.updated_at > self._retention_ms

    # ------------------------------------------------------------------
    # Raw access with corruption recovery
    # ------------------------------------------------------------------

    async def _backup_corrupt(self, key: str, raw: str, error: Exception) -> None:
        backup_key = key + CORRUPT_BACKUP_SUFFIX
        logger.warning(
            "stored_value_corrupt",
            key=key,
            backup_key=backup_key,
            error=str(error),
            error_class=ErrorClass.STORAGE_PARSE,
        )
        try:
            await self._kv.set(backup_key, raw)
        except StorageQuotaError as e:
            logger.error("corrupt_backup_failed", key=backup_key, error=str(e))

    async def _read_history(self) -> list[Session]:
        """All readable history rows; unreadable data counts as empty."""
        raw = await self._kv.get(SESSION_HISTORY_KEY)
        if raw is None:
            return []
        try:
            data = decode_envelope(raw)
            if not isinstance(data, list):
                raise StorageParseError("History is not a list")
            return [Session.from_dict(item) for item in data]
        except (StorageParseError, KeyError, TypeError, ValueError) as e:
            await self._backup_corrupt(SESSION_HISTORY_KEY, raw, e)
            return []

    async def _read_live_history(self) -> list[Session]:
        now = self._clock()
        return [s for s in await self._read_history() if not self._is_expired(s, now)]

    async def _write(self, key: str, data: Any) -> bool:
        try:
            await self._kv.set(key, encode_envelope(data, self._clock()))
            return True
        except StorageQuotaError as e:
            logger.warning("storage_write_skipped", key=key, error=str(e), error_class=e.error_class)
            return False

    # ------------------------------------------------------------------
    # Current session
    # ------------------------------------------------------------------

    async def save_current(
        self,
        context: SessionContext,
        messages: list[Message],
        remote_session_id: Optional[str],
        targets: Iterable[str],
    ) -> bool:
        """Write the current session and upsert it into history.

        Returns False if either write was skipped for lack of space.
        """
        now = self._clock()
        session_id = context.ensure(now)
        session = Session(
            id=session_id,
            title=derive_title(messages, self._title_max_length),
            messages=list(messages),
            remote_session_id=remote_session_id,
            selected_targets=sorted(set(targets)),
            created_at=context.created_at or now,
            updated_at=now,
        )
        saved = await self._write(CURRENT_SESSION_KEY, session.to_dict())

        if session.messages:
            history = await self._read_live_history()
            for idx, existing in enumerate(history):
                if existing.id == session.id:
                    history[idx] = session
                    break
            else:
                history.insert(0, session)
            history = history[: self._history_limit]
            saved = await self._write(SESSION_HISTORY_KEY, [s.to_dict() for s in history]) and saved

        logger.debug("session_saved", session_id=session_id, message_count=len(messages), persisted=saved)
        return saved

    async def load_current(self) -> Optional[Session]:
        raw = await self._kv.get(CURRENT_SESSION_KEY)
        if raw is None:
            return None
        try:
            session = Session.from_dict(decode_envelope(raw))
        except (StorageParseError, KeyError, TypeError, ValueError) as e:
            await self._backup_corrupt(CURRENT_SESSION_KEY, raw, e)
            await self._kv.remove(CURRENT_SESSION_KEY)
            return None
        if self._is_expired(session, self._clock()):
            logger.info("current_session_expired", session_id=session.id)
            await self._kv.remove(CURRENT_SESSION_KEY)
            return None
        return session

    async def clear_current(self, context: SessionContext) -> None:
        context.invalidate()
        await self._kv.remove(CURRENT_SESSION_KEY)
        logger.info("current_session_cleared")

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_history(self) -> list[SessionSummary]:
        sessions = await self._read_live_history()
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return [SessionSummary.of(s) for s in sessions]

    async def load_from_history(self, session_id: str) -> Optional[Session]:
        try:
            return await self.require_from_history(session_id)
        except (SessionNotFoundError, SessionExpiredError):
            return None

    async def require_from_history(self, session_id: str) -> Session:
        """Like load_from_history but says why nothing came back."""
        for session in await self._read_history():
            if session.id != session_id:
                continue
            if self._is_expired(session, self._clock()):
                raise SessionExpiredError(f"Session {session_id} is older than the retention window")
            return session
        raise SessionNotFoundError(f"Session {session_id} not found")

    async def delete_from_history(self, session_id: str) -> bool:
        history = await self._read_live_history()
        remaining = [s for s in history if s.id != session_id]
        if len(remaining) == len(history):
            return False
        deleted = await self._write(SESSION_HISTORY_KEY, [s.to_dict() for s in remaining])
        if deleted:
            logger.info("history_entry_deleted", session_id=session_id)
        return deleted

    async def clear_history(self) -> None:
        await self._kv.remove(SESSION_HISTORY_KEY)
        logger.info("history_cleared")
