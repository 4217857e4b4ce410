"""Per-conversation event trail.

Events are accumulated in memory from the moment a conversation starts
(/start or a photo transcript) and written as one session_logs row when
the conversation ends. Event payloads are redacted before storage so
passwords and catalog tokens never reach the database.

Usage:
    log_service = SessionLogService(make_session_factory(engine))
    log_service.start_session("chat-1")
    log_service.log_user_message("chat-1", "200g de pollo")
    log_service.end_session("chat-1", SessionStatus.COMPLETED, items_logged=1)
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from meallog.db.models import SessionLog

logger = logging.getLogger(__name__)

REDACT_FIELDS = {
    "password",
    "token",
    "session_key",
    "sessionkey",
    "auth",
    "api_key",
}

REDACTED = "[REDACTED]"


class SessionStatus(str, Enum):
    """How a conversation ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EventType(str, Enum):
    SESSION_START = "session_start"
    USER_MESSAGE = "user_message"
    BOT_RESPONSE = "bot_response"
    STATE_CHANGE = "state_change"
    INTERPRETER_CALL = "interpreter_call"
    VALIDATION = "validation"
    ERROR = "error"


def redact_sensitive(data: Any, _depth: int = 0) -> Any:
    """Recursively replace credential-like fields with '[REDACTED]'.

    Example:
        >>> redact_sensitive({'auth': {'token': 'x'}, 'query': 'egg'})
        {'auth': '[REDACTED]', 'query': 'egg'}
    """
    if _depth > 10:
        return REDACTED
    if isinstance(data, list):
        return [redact_sensitive(item, _depth + 1) for item in data]
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower().replace("-", "_")
            if any(field in key_lower for field in REDACT_FIELDS):
                result[key] = REDACTED
            else:
                result[key] = redact_sensitive(value, _depth + 1)
        return result
    return data


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _ActiveSession:
    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        self.started_at = _utc_now_iso()
        self.original_description: str | None = None
        self.events: list[dict[str, Any]] = []


class SessionLogService:
    """Collects conversation events and persists them when it ends.

    Attributes:
        _active: Dict of chat_id -> in-flight session trail.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        """Initialize the service.

        Args:
            session_factory: Factory for the log database; None keeps
                trails in memory only and discards them on end.
        """
        self._session_factory = session_factory
        self._active: dict[str, _ActiveSession] = {}

    def start_session(self, chat_id: str) -> None:
        """Begin a trail for a chat, replacing any unfinished one."""
        self._active[chat_id] = _ActiveSession(chat_id)
        self._add_event(chat_id, EventType.SESSION_START, None)
        logger.debug("Started session log for chat %s", chat_id)

    def is_active(self, chat_id: str) -> bool:
        return chat_id in self._active

    def set_original_description(self, chat_id: str, description: str) -> None:
        session = self._active.get(chat_id)
        if session is not None and session.original_description is None:
            session.original_description = description

    def log_user_message(self, chat_id: str, message: str) -> None:
        self._add_event(chat_id, EventType.USER_MESSAGE, {"message": message})

    def log_bot_response(self, chat_id: str, message: str) -> None:
        self._add_event(chat_id, EventType.BOT_RESPONSE, {"message": message})

    def log_state_change(
        self, chat_id: str, from_state: str, to_state: str, trigger: str | None = None
    ) -> None:
        data = {"from_state": from_state, "to_state": to_state}
        if trigger:
            data["trigger"] = trigger
        self._add_event(chat_id, EventType.STATE_CHANGE, data)

    def log_interpreter_call(
        self, chat_id: str, user_input: str, duration_ms: int, success: bool
    ) -> None:
        self._add_event(
            chat_id,
            EventType.INTERPRETER_CALL,
            {"user_input": user_input, "duration_ms": duration_ms, "success": success},
        )

    def log_validation(
        self, chat_id: str, items_validated: int, not_found: list[str]
    ) -> None:
        self._add_event(
            chat_id,
            EventType.VALIDATION,
            {
                "items_validated": items_validated,
                "items_not_found": len(not_found),
                "not_found": list(not_found),
            },
        )

    def log_error(self, chat_id: str, error: BaseException, context: str) -> None:
        self._add_event(
            chat_id,
            EventType.ERROR,
            {"type": type(error).__name__, "message": str(error), "context": context},
        )

    def events_for(self, chat_id: str) -> list[dict[str, Any]]:
        """Events recorded so far for an in-flight trail."""
        session = self._active.get(chat_id)
        return list(session.events) if session else []

    def end_session(
        self, chat_id: str, status: SessionStatus, items_logged: int = 0
    ) -> SessionLog | None:
        """Close the trail for a chat and persist it.

        Args:
            chat_id: Chat identity.
            status: How the conversation ended.
            items_logged: Number of servings written, if any.

        Returns:
            The persisted SessionLog, or None when there was no trail or
            no database is configured.
        """
        session = self._active.pop(chat_id, None)
        if session is None:
            return None
        logger.info(
            "Session for chat %s ended: %s (%d events)",
            chat_id, status.value, len(session.events),
        )
        if self._session_factory is None:
            return None

        row = SessionLog(
            chat_id=chat_id,
            status=status.value,
            original_description=session.original_description,
            items_logged=items_logged,
            events=json.dumps(session.events, ensure_ascii=False),
            started_at=session.started_at,
            ended_at=_utc_now_iso(),
        )
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            db.refresh(row)
            db.expunge(row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Failed to persist session log for chat %s: %s", chat_id, e)
            return None
        finally:
            db.close()
        return row

    def _add_event(
        self, chat_id: str, event_type: EventType, data: dict[str, Any] | None
    ) -> None:
        session = self._active.get(chat_id)
        if session is None:
            return
        session.events.append({
            "timestamp": _utc_now_iso(),
            "type": event_type.value,
            "data": redact_sensitive(data) if data is not None else None,
        })
