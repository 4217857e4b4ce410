"""Tests for SessionRegistry and Conversation.

Covers session creation and lookup, removal, per-chat locks, and the
inactivity expiry rule.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from meallog.orchestrator.models import CatalogCredential
from meallog.services.session_registry import (
    DEFAULT_INACTIVITY_WINDOW,
    ChatSession,
    Conversation,
    ConversationState,
    SessionRegistry,
)

T0 = datetime(2026, 10, 17, 8, 0, tzinfo=timezone.utc)

# =========================================================================
# Registry
# =========================================================================


def test_get_or_create_creates_session():
    """get_or_create builds an unauthenticated session with no conversation."""
    registry = SessionRegistry()
    session = registry.get_or_create("chat-1")
    assert isinstance(session, ChatSession)
    assert session.chat_id == "chat-1"
    assert session.conversation is None
    assert not session.is_authenticated


def test_get_or_create_returns_same_session():
    """Repeated calls return the one live record for a chat."""
    registry = SessionRegistry()
    assert registry.get_or_create("chat-1") is registry.get_or_create("chat-1")


def test_get_does_not_create():
    """get returns None for unknown chats."""
    registry = SessionRegistry()
    assert registry.get("missing") is None


def test_remove_is_idempotent():
    """remove forgets a chat and tolerates unknown ids."""
    registry = SessionRegistry()
    registry.get_or_create("chat-1")
    registry.remove("chat-1")
    registry.remove("chat-1")
    assert registry.get("chat-1") is None


def test_credential_marks_session_authenticated():
    """Setting a credential authenticates the session."""
    session = SessionRegistry().get_or_create("chat-1")
    session.credential = CatalogCredential(user_id=7, token="t")
    assert session.is_authenticated


def test_lock_is_per_chat():
    """Each chat has its own lock."""
    registry = SessionRegistry()
    assert registry.get_or_create("a").lock is registry.get_or_create("a").lock
    assert registry.get_or_create("a").lock is not registry.get_or_create("b").lock


@pytest.mark.asyncio
async def test_lock_serializes_handlers_for_one_chat():
    """Two handlers for the same chat never interleave."""
    registry = SessionRegistry()
    order: list[str] = []

    async def handler(name: str) -> None:
        async with registry.get_or_create("chat-1").lock:
            order.append(f"{name}-start")
            await asyncio.sleep(0)
            order.append(f"{name}-end")

    await asyncio.gather(handler("first"), handler("second"))
    assert order == ["first-start", "first-end", "second-start", "second-end"]


# =========================================================================
# Conversation
# =========================================================================


def test_conversation_defaults():
    """A new conversation is Idle with empty working data."""
    conversation = Conversation(now=T0)
    assert conversation.state == ConversationState.IDLE
    assert conversation.started_at == T0
    assert conversation.last_activity_at == T0
    assert conversation.message_history == []
    assert conversation.pending_clarifications == []
    assert conversation.validated_foods == []
    assert conversation.search_item_index is None


def test_add_message_appends_in_order():
    """add_message records role and content in order."""
    conversation = Conversation()
    conversation.add_message("user", "2 huevos")
    conversation.add_message("assistant", "¿Qué tamaño?")
    assert [m["role"] for m in conversation.message_history] == ["user", "assistant"]
    assert conversation.message_history[0]["content"] == "2 huevos"
    assert "timestamp" in conversation.message_history[0]


def test_not_expired_within_window():
    """A conversation is alive right up to the window boundary."""
    conversation = Conversation(now=T0)
    assert not conversation.is_expired(T0 + DEFAULT_INACTIVITY_WINDOW)


def test_expired_after_window():
    """Inactivity beyond the window expires the conversation."""
    conversation = Conversation(now=T0)
    assert conversation.is_expired(T0 + DEFAULT_INACTIVITY_WINDOW + timedelta(seconds=1))


def test_touch_extends_lifetime():
    """Activity resets the inactivity clock."""
    conversation = Conversation(now=T0)
    conversation.touch(T0 + timedelta(minutes=9))
    assert not conversation.is_expired(T0 + timedelta(minutes=15))


def test_custom_window():
    """The window is configurable."""
    conversation = Conversation(now=T0)
    assert conversation.is_expired(T0 + timedelta(minutes=2), timedelta(minutes=1))


def test_clear_search():
    """clear_search drops the selection context."""
    conversation = Conversation()
    conversation.search_item_index = 2
    conversation.search_results = ["x"]
    conversation.clear_search()
    assert conversation.search_results == []
    assert conversation.search_item_index is None
