"""Conversation state machine: the single entry point for inbound messages.

Every message for a chat is handled under that chat's lock, in order:

1. Expiry: a conversation idle for longer than the inactivity window is
   discarded (the user is told) before anything else happens.
2. Commands (/start, /cancel, /save, ...) by literal prefix.
3. Login messages.
4. The processor registered for the conversation's current state.

A handler crash never leaves a conversation stuck in Processing: the
prior state is restored and a generic apology is returned.

Example:
    machine = ConversationStateMachine(registry, catalog, interpreter, memory)
    replies = await machine.handle_message("chat-1", "/login me@x.com secret")
    replies = await machine.handle_message("chat-1", "/start")
    replies = await machine.handle_message("chat-1", "2 huevos grandes en el desayuno")
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from meallog.errors import MemoryUnavailableError
from meallog.orchestrator import messages
from meallog.orchestrator.commands import CommandRouter, is_login_message
from meallog.orchestrator.meal_flow import MealFlow
from meallog.orchestrator.nl_engine import MealTextInterpreter
from meallog.orchestrator.preferences import PreferenceWizard
from meallog.orchestrator.processors import MealProcessors
from meallog.orchestrator.turn import TurnContext
from meallog.services.catalog_client import CatalogClient
from meallog.services.food_resolution import FoodResolutionEngine, ResolutionSettings
from meallog.services.meal_commit import MealCommitOrchestrator
from meallog.services.memory_service import NullMemoryService, UserMemoryService
from meallog.services.session_log_service import SessionLogService, SessionStatus
from meallog.services.session_registry import (
    DEFAULT_INACTIVITY_WINDOW,
    Conversation,
    ConversationState,
    SessionRegistry,
)

logger = logging.getLogger(__name__)

StateHandler = Callable[[TurnContext], Awaitable[None]]

# States a photo transcript may replace
PHOTO_ENTRY_STATES = frozenset({
    ConversationState.IDLE,
    ConversationState.AWAITING_MEAL_DESCRIPTION,
    ConversationState.AWAITING_OCR_CORRECTION,
})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStateMachine:
    """Routes inbound messages to commands and per-state processors."""

    def __init__(
        self,
        registry: SessionRegistry,
        catalog: CatalogClient,
        interpreter: MealTextInterpreter,
        memory: UserMemoryService | None = None,
        session_log: SessionLogService | None = None,
        settings: ResolutionSettings | None = None,
        inactivity_window: timedelta = DEFAULT_INACTIVITY_WINDOW,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Wire the dialogue components together.

        Args:
            registry: Per-chat session store.
            catalog: Catalog client (search, details, writes, login).
            interpreter: Text interpretation boundary.
            memory: Alias/preference store; the null store when omitted.
            session_log: Conversation event trail; in-memory when omitted.
            settings: Food matching constants.
            inactivity_window: Idle time after which a conversation expires.
            clock: UTC clock (injectable for expiry tests).
        """
        self._registry = registry
        self._memory = memory or NullMemoryService()
        self._inactivity_window = inactivity_window
        self._clock = clock

        engine = FoodResolutionEngine(catalog, self._memory, settings)
        self._flow = MealFlow(
            interpreter=interpreter,
            engine=engine,
            orchestrator=MealCommitOrchestrator(catalog, engine),
            memory=self._memory,
            session_log=session_log or SessionLogService(),
        )
        meal = MealProcessors(self._flow)
        wizard = PreferenceWizard(self._flow, clock)
        self._commands = CommandRouter(self._flow, wizard, catalog, registry, clock)

        self._handlers: dict[ConversationState, StateHandler] = {
            ConversationState.AWAITING_MEAL_DESCRIPTION: meal.meal_description,
            ConversationState.AWAITING_CLARIFICATION: meal.clarification,
            ConversationState.AWAITING_CONFIRMATION: meal.confirmation,
            ConversationState.AWAITING_OCR_CORRECTION: meal.transcript_correction,
            ConversationState.AWAITING_MEMORY_CONFIRMATION: meal.memory_confirmation,
            ConversationState.AWAITING_FOOD_SEARCH_SELECTION: meal.food_search_selection,
            ConversationState.AWAITING_PREFERENCE_ACTION: wizard.action,
            ConversationState.AWAITING_ALIAS_INPUT: wizard.alias_input,
            ConversationState.AWAITING_FOOD_SEARCH: wizard.food_search,
            ConversationState.AWAITING_FOOD_SELECTION: wizard.food_selection,
            ConversationState.AWAITING_ALIAS_DELETE_CONFIRM: wizard.alias_delete_confirm,
        }

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def session_log(self) -> SessionLogService:
        return self._flow.session_log

    def restore_sessions(self) -> int:
        """Load saved catalog logins into the registry.

        Returns:
            Number of chats whose login was restored.
        """
        try:
            saved = self._memory.list_active_sessions()
        except MemoryUnavailableError as e:
            logger.error("Could not restore saved logins: %s", e)
            return 0
        for entry in saved:
            self._registry.get_or_create(entry.chat_id).credential = entry.to_credential()
            logger.info("Restored login for chat %s", entry.chat_id)
        logger.info("Restored %d saved logins", len(saved))
        return len(saved)

    async def handle_message(self, chat_id: str, text: str) -> list[str]:
        """Handle one inbound text message for a chat.

        Args:
            chat_id: Chat identity.
            text: Message text.

        Returns:
            Outbound messages, in order (possibly empty).
        """
        session = self._registry.get_or_create(chat_id)
        async with session.lock:
            ctx = TurnContext(chat_id=chat_id, session=session, text=(text or "").strip())
            prior_state = session.conversation.state if session.conversation else None
            try:
                await self._dispatch(ctx)
            except Exception as e:
                logger.error("Error handling message for chat %s", chat_id, exc_info=True)
                self._flow.session_log.log_error(chat_id, e, "handle_message")
                self._restore(ctx, prior_state)
                ctx.reply(messages.PROCESSING_ERROR)
            self._log_replies(ctx)
            return ctx.replies

    async def handle_photo_text(self, chat_id: str, transcript: str) -> list[str]:
        """Accept the text extracted from a meal photo.

        The transcript is echoed back and held in AwaitingOCRCorrection
        until the user confirms (/continue) or sends corrections.
        """
        session = self._registry.get_or_create(chat_id)
        async with session.lock:
            ctx = TurnContext(chat_id=chat_id, session=session, text="")
            self._expire_if_idle(ctx)
            transcript = (transcript or "").strip()

            if not session.is_authenticated:
                ctx.reply(messages.LOGIN_REQUIRED)
            elif not transcript:
                ctx.reply(messages.NO_TEXT_DETECTED)
            elif (
                session.conversation is not None
                and session.conversation.state not in PHOTO_ENTRY_STATES
            ):
                ctx.reply(messages.SESSION_ALREADY_ACTIVE)
            else:
                if session.conversation is None:
                    session.conversation = Conversation(now=self._clock())
                    self._flow.session_log.start_session(chat_id)
                session.conversation.ocr_text = transcript
                session.conversation.touch(self._clock())
                self._flow.transition(ctx, ConversationState.AWAITING_OCR_CORRECTION, "photo")
                ctx.reply(messages.format_detected_text(transcript))
                ctx.reply(messages.TEXT_DETECTED_INSTRUCTIONS)
                logger.info("Stored photo transcript for chat %s", chat_id)

            self._log_replies(ctx)
            return ctx.replies

    async def _dispatch(self, ctx: TurnContext) -> None:
        self._expire_if_idle(ctx)

        command = self._commands.match(ctx.text)
        if command is not None:
            self._flow.session_log.log_user_message(ctx.chat_id, ctx.text)
            await command(ctx)
            return

        if is_login_message(ctx.text):
            await self._commands.login(ctx)
            return

        conversation = ctx.conversation
        if conversation is None:
            ctx.reply(
                messages.USE_START_TO_BEGIN
                if ctx.session.is_authenticated
                else messages.LOGIN_REQUIRED
            )
            return

        self._flow.session_log.log_user_message(ctx.chat_id, ctx.text)
        if conversation.state == ConversationState.PROCESSING:
            ctx.reply(messages.STILL_PROCESSING)
            return

        handler = self._handlers.get(conversation.state)
        if handler is None:
            ctx.reply(messages.USE_START_TO_BEGIN)
            return
        await handler(ctx)

    def _expire_if_idle(self, ctx: TurnContext) -> None:
        """Discard an expired conversation; otherwise record activity."""
        conversation = ctx.conversation
        if conversation is None:
            return
        now = self._clock()
        if conversation.is_expired(now, self._inactivity_window):
            logger.info(
                "Conversation for chat %s expired in state %s",
                ctx.chat_id, conversation.state.value,
            )
            self._flow.finish(ctx, SessionStatus.EXPIRED)
            ctx.reply(messages.SESSION_EXPIRED)
            return
        conversation.touch(now)

    @staticmethod
    def _restore(ctx: TurnContext, prior_state: ConversationState | None) -> None:
        """Never leave a conversation in Processing after a crash."""
        conversation = ctx.conversation
        if conversation is None or conversation.state != ConversationState.PROCESSING:
            return
        if prior_state is None or prior_state == ConversationState.PROCESSING:
            prior_state = ConversationState.AWAITING_MEAL_DESCRIPTION
        conversation.state = prior_state
        logger.info("Restored chat %s to %s", ctx.chat_id, prior_state.value)

    def _log_replies(self, ctx: TurnContext) -> None:
        for reply in ctx.replies:
            self._flow.session_log.log_bot_response(ctx.chat_id, reply)
