"""Session registry for per-chat conversation state.

Holds one ChatSession per chat identity. A session carries the optional
catalog credential and at most one active Conversation. The registry is
a plain key->record store; all conversation logic lives in the state
machine.

Example:
    registry = SessionRegistry()
    session = registry.get_or_create("chat-123")
    session.conversation = Conversation(ConversationState.AWAITING_MEAL_DESCRIPTION)
    async with session.lock:
        ...
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

from meallog.orchestrator.models import (
    CatalogCredential,
    ClarificationItem,
    DetectedAlias,
    MealRequest,
    PendingLearning,
    SearchCandidate,
    ValidatedMealItem,
)

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_WINDOW = timedelta(minutes=10)


class ConversationState(str, Enum):
    """States of the meal logging dialogue."""

    IDLE = "Idle"
    AWAITING_MEAL_DESCRIPTION = "AwaitingMealDescription"
    PROCESSING = "Processing"
    AWAITING_CLARIFICATION = "AwaitingClarification"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    AWAITING_OCR_CORRECTION = "AwaitingOCRCorrection"
    AWAITING_MEMORY_CONFIRMATION = "AwaitingMemoryConfirmation"
    AWAITING_PREFERENCE_ACTION = "AwaitingPreferenceAction"
    AWAITING_ALIAS_INPUT = "AwaitingAliasInput"
    AWAITING_FOOD_SEARCH = "AwaitingFoodSearch"
    AWAITING_FOOD_SELECTION = "AwaitingFoodSelection"
    AWAITING_FOOD_SEARCH_SELECTION = "AwaitingFoodSearchSelection"
    AWAITING_ALIAS_DELETE_CONFIRM = "AwaitingAliasDeleteConfirm"


class Conversation:
    """One in-flight meal logging dialogue.

    Mutated only by the handler currently processing a message for its
    chat.

    Attributes:
        state: Current dialogue state.
        started_at: When the conversation began.
        last_activity_at: Last inbound message time (drives expiry).
        message_history: Append-only list of {role, content, timestamp}.
        original_description: First meal description (or OCR text).
        pending_clarifications: Questions awaiting an answer.
        pending_meal_request: Structured meal once fully specified.
        validated_foods: Resolved items awaiting confirmation.
        pending_learnings: Alias candidates awaiting consent.
        detected_aliases: Aliases found in the latest description.
        search_results: Candidate list for the current selection step.
        search_item_index: Validated item being replaced, if any.
        alias_term: Term being taught in the preferences wizard.
        ocr_text: Raw photo transcript awaiting correction.
    """

    def __init__(
        self,
        state: ConversationState = ConversationState.IDLE,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self.state = state
        self.started_at = now
        self.last_activity_at = now
        self.message_history: list[dict] = []
        self.original_description: str | None = None
        self.pending_clarifications: list[ClarificationItem] = []
        self.pending_meal_request: MealRequest | None = None
        self.validated_foods: list[ValidatedMealItem] = []
        self.pending_learnings: list[PendingLearning] = []
        self.detected_aliases: list[DetectedAlias] = []
        self.search_results: list[SearchCandidate] = []
        self.search_item_index: int | None = None
        self.alias_term: str | None = None
        self.ocr_text: str | None = None

    def add_message(self, role: str, content: str) -> None:
        """Append a message to the conversation history.

        Args:
            role: Message role ('user' or 'assistant').
            content: Message content text.
        """
        self.message_history.append({
            "role": role,
            "content": content,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    def touch(self, now: datetime | None = None) -> None:
        """Record activity at ``now``."""
        self.last_activity_at = now or datetime.now(timezone.utc)

    def is_expired(
        self,
        now: datetime | None = None,
        window: timedelta = DEFAULT_INACTIVITY_WINDOW,
    ) -> bool:
        """Whether the inactivity window has elapsed since last activity."""
        now = now or datetime.now(timezone.utc)
        return now - self.last_activity_at > window

    def clear_search(self) -> None:
        """Drop the transient search-selection context."""
        self.search_results = []
        self.search_item_index = None


class ChatSession:
    """Per-chat record: credential plus the active conversation.

    Attributes:
        chat_id: Chat identity.
        credential: Catalog credential, set on successful login.
        conversation: Active conversation, None when idle.
        lock: Serializes message handling for this chat.
    """

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        self.credential: CatalogCredential | None = None
        self.conversation: Conversation | None = None
        self.created_at = datetime.now(timezone.utc)
        self.lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self.credential is not None


class SessionRegistry:
    """Key->record store of chat sessions.

    Safe for single-process asyncio usage. Not designed for multi-process
    deployment.

    Attributes:
        _sessions: Dict of chat_id -> ChatSession.
    """

    def __init__(self) -> None:
        """Initialize with no sessions."""
        self._sessions: dict[str, ChatSession] = {}

    def get(self, chat_id: str) -> ChatSession | None:
        """Get a session without auto-creating. Returns None if not found."""
        return self._sessions.get(chat_id)

    def get_or_create(self, chat_id: str) -> ChatSession:
        """Get an existing session or create a new one.

        Args:
            chat_id: Chat identity.

        Returns:
            The ChatSession for this chat.
        """
        if chat_id not in self._sessions:
            self._sessions[chat_id] = ChatSession(chat_id)
            logger.info("Created chat session: %s", chat_id)
        return self._sessions[chat_id]

    def remove(self, chat_id: str) -> None:
        """Forget a chat entirely (explicit logout). Idempotent."""
        session = self._sessions.pop(chat_id, None)
        if session is not None:
            logger.info("Removed chat session: %s", chat_id)
