"""SQLAlchemy ORM models for the alias/preference store.

This module defines the per-user memory documents (food aliases and
clarification preferences), saved catalog logins, and the persisted
session event logs. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

import json
from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class FoodAlias(Base):
    """Learned mapping from a user's own wording to a catalog food.

    At most one active alias exists per (user_id, input_term). Deleting
    an alias only clears is_active so usage history is kept.

    Attributes:
        user_id: Chat identity owning the alias.
        input_term: Trimmed, lowercased term as the user writes it.
        resolved_food_id: Catalog food id the term maps to.
        resolved_food_name: Catalog food name at the time of saving.
        source_tab: Catalog partition the food was found in.
        use_count: Times the mapping was confirmed or used.
        is_manual: Whether the alias was created from the preferences menu.
    """

    __tablename__ = "food_aliases"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    input_term: Mapped[str] = mapped_column(String(200), nullable=False)
    resolved_food_id: Mapped[int] = mapped_column(nullable=False)
    resolved_food_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_tab: Mapped[str] = mapped_column(String(30), nullable=False, default="")
    use_count: Mapped[int] = mapped_column(nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    is_manual: Mapped[bool] = mapped_column(nullable=False, default=False)
    last_used_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_food_aliases_user_term", "user_id", "input_term", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<FoodAlias(user={self.user_id!r}, term={self.input_term!r}, "
            f"food={self.resolved_food_id}, count={self.use_count})>"
        )


class ClarificationPreference(Base):
    """Remembered answer to a recurring clarification question.

    Only confirmed preferences (the same answer recorded at least twice
    in a row) are applied without asking.

    Attributes:
        food_term: Trimmed, lowercased food term the question was about.
        clarification_type: ClarificationType value (e.g. MissingSize).
        default_answer: Answer the user last gave.
        occurrence_count: Consecutive times default_answer was given.
        is_confirmed: Whether the answer may be applied silently.
    """

    __tablename__ = "clarification_preferences"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    food_term: Mapped[str] = mapped_column(String(200), nullable=False)
    clarification_type: Mapped[str] = mapped_column(String(30), nullable=False)
    default_answer: Mapped[str] = mapped_column(Text, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(nullable=False, default=1)
    is_confirmed: Mapped[bool] = mapped_column(nullable=False, default=False)
    last_used_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index(
            "idx_clarification_prefs_user_term_type",
            "user_id",
            "food_term",
            "clarification_type",
        ),
    )


class SessionLog(Base):
    """Persisted event trail for one finished conversation.

    Attributes:
        chat_id: Chat identity the conversation belonged to.
        status: How the conversation ended (completed, cancelled, expired).
        events: JSON-serialized list of {timestamp, type, data} dicts.
    """

    __tablename__ = "session_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    original_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    items_logged: Mapped[int] = mapped_column(nullable=False, default=0)
    events: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    started_at: Mapped[str] = mapped_column(String(50), nullable=False)
    ended_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (Index("idx_session_logs_chat_id", "chat_id"),)

    @property
    def event_list(self) -> list[dict]:
        """Deserialize the stored events."""
        return json.loads(self.events) if self.events else []


class CatalogSession(Base):
    """Saved catalog login for a chat, restored on startup.

    One row per chat; a new login overwrites the credential in place.

    Attributes:
        chat_id: Chat identity that logged in.
        catalog_user_id: Catalog user id returned by the login.
        session_key: Catalog session token.
        email: Login email, kept for reference.
        is_active: Cleared on logout.
    """

    __tablename__ = "catalog_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    catalog_user_id: Mapped[int] = mapped_column(nullable=False)
    session_key: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    last_updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<CatalogSession(chat={self.chat_id!r}, user={self.catalog_user_id}, "
            f"active={self.is_active})>"
        )
