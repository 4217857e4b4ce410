"""Slash commands and login handling.

Commands are matched by case-insensitive literal prefix and take
priority over state routing. Each accepts its English and Spanish
spelling.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from meallog.errors import AuthenticationError, CatalogError, MemoryUnavailableError
from meallog.orchestrator import messages
from meallog.orchestrator.meal_flow import MealFlow
from meallog.orchestrator.preferences import PreferenceWizard
from meallog.orchestrator.turn import TurnContext
from meallog.services.catalog_client import CatalogClient
from meallog.services.session_log_service import SessionStatus
from meallog.services.session_registry import (
    Conversation,
    ConversationState,
    SessionRegistry,
)

logger = logging.getLogger(__name__)

LOGIN_KEYWORDS = ("login", "log in", "sign in")
LOGIN_MIN_TOKENS = 3
SEARCH_RESULTS_LIMIT = 10

CommandHandler = Callable[[TurnContext], Awaitable[None]]


def is_login_message(text: str) -> bool:
    """Whether a message is a login attempt.

    Either an explicit /login command, or a message containing a login
    keyword with at least LOGIN_MIN_TOKENS space-separated tokens.
    """
    lowered = (text or "").strip().lower()
    if lowered.startswith("/login"):
        return True
    if not any(keyword in lowered for keyword in LOGIN_KEYWORDS):
        return False
    return len(lowered.split(" ")) >= LOGIN_MIN_TOKENS


def parse_login(text: str) -> tuple[str, str] | None:
    """Extract (email, password) from "/login <email> <password>".

    The email is the last token containing "@" (else the second token);
    the password is the third token.
    """
    parts = (text or "").strip().split(" ")
    if len(parts) < LOGIN_MIN_TOKENS:
        return None
    email = next((p for p in reversed(parts) if "@" in p), parts[1]).strip()
    password = parts[2].strip()
    if not email or not password:
        return None
    return email, password


class CommandRouter:
    """Matches and runs slash commands."""

    def __init__(
        self,
        flow: MealFlow,
        wizard: PreferenceWizard,
        catalog: CatalogClient,
        registry: SessionRegistry,
        clock: Callable[[], datetime],
    ) -> None:
        """Initialize the router.

        Args:
            flow: Shared meal logging flow.
            wizard: Alias-management wizard (for /preferences).
            catalog: Catalog client (for login).
            registry: Session store (for logout).
            clock: UTC clock used to stamp new conversations.
        """
        self._flow = flow
        self._wizard = wizard
        self._catalog = catalog
        self._registry = registry
        self._clock = clock
        self._commands: list[tuple[tuple[str, ...], CommandHandler]] = [
            (("/start", "/iniciar"), self.start),
            (("/cancel", "/cancelar"), self.cancel),
            (("/save", "/guardar"), self.save),
            (("/continue", "/continuar"), self.continue_transcript),
            (("/search", "/buscar"), self.search),
            (("/preferences", "/preferencias"), self._wizard.open_menu),
            (("/logout", "/salir"), self.logout),
        ]

    def match(self, text: str) -> CommandHandler | None:
        lowered = (text or "").strip().lower()
        for prefixes, handler in self._commands:
            if lowered.startswith(prefixes):
                return handler
        return None

    async def start(self, ctx: TurnContext) -> None:
        if not ctx.session.is_authenticated:
            ctx.reply(messages.LOGIN_REQUIRED)
            return
        conversation = ctx.conversation
        if conversation is not None and conversation.state != ConversationState.IDLE:
            ctx.reply(messages.SESSION_ALREADY_ACTIVE)
            return

        ctx.session.conversation = Conversation(
            ConversationState.AWAITING_MEAL_DESCRIPTION, now=self._clock()
        )
        self._flow.session_log.start_session(ctx.chat_id)
        ctx.reply(messages.NEW_SESSION_STARTED)
        logger.info("Started new meal session for chat %s", ctx.chat_id)

    async def cancel(self, ctx: TurnContext) -> None:
        conversation = ctx.conversation
        if conversation is None or conversation.state == ConversationState.IDLE:
            ctx.reply(messages.NO_ACTIVE_SESSION)
            return
        self._flow.finish(ctx, SessionStatus.CANCELLED)
        ctx.reply(messages.SESSION_CANCELLED)
        logger.info("Cancelled session for chat %s", ctx.chat_id)

    async def save(self, ctx: TurnContext) -> None:
        await self._flow.save(ctx)

    async def continue_transcript(self, ctx: TurnContext) -> None:
        conversation = ctx.conversation
        if conversation is None:
            ctx.reply(messages.USE_START_TO_BEGIN)
            return
        if conversation.state != ConversationState.AWAITING_OCR_CORRECTION:
            ctx.reply(messages.CONTINUE_ONLY_AFTER_PHOTO)
            return
        await self._flow.reprocess_transcript(ctx)

    async def search(self, ctx: TurnContext) -> None:
        """Manual catalog search: ranked top results with partition and score."""
        if not ctx.session.is_authenticated:
            ctx.reply(messages.LOGIN_REQUIRED)
            return
        parts = ctx.text.strip().split(maxsplit=1)
        query = parts[1].strip() if len(parts) > 1 else ""
        if not query:
            ctx.reply(messages.SEARCH_USAGE)
            return

        candidates = await self._flow.engine.search(query, ctx.session.credential)
        if not candidates:
            ctx.reply(messages.format_no_results(query))
            return
        ctx.reply(messages.format_results(query, candidates[:SEARCH_RESULTS_LIMIT]))

    async def login(self, ctx: TurnContext) -> None:
        """Exchange "/login <email> <password>" for a catalog credential."""
        parsed = parse_login(ctx.text)
        if parsed is None:
            ctx.reply(messages.INVALID_LOGIN_FORMAT)
            return
        email, password = parsed

        try:
            credential = await self._catalog.login(email, password)
        except AuthenticationError:
            logger.info("Login rejected for chat %s", ctx.chat_id)
            ctx.reply(messages.LOGIN_FAILED)
            return
        except CatalogError as e:
            logger.error("Login failed for chat %s: %s", ctx.chat_id, e)
            ctx.reply(messages.LOGIN_FAILED)
            return

        ctx.session.credential = credential
        try:
            self._flow.memory.save_session(ctx.chat_id, credential, email)
        except MemoryUnavailableError as e:
            logger.error("Failed to save login for chat %s: %s", ctx.chat_id, e)
        ctx.reply(messages.LOGIN_SUCCESS)
        logger.info("Chat %s logged in as catalog user %s", ctx.chat_id, credential.user_id)

    async def logout(self, ctx: TurnContext) -> None:
        """Forget the chat: its conversation, credential and saved login."""
        if not ctx.session.is_authenticated:
            ctx.reply(messages.NOT_LOGGED_IN)
            return
        if ctx.conversation is not None:
            self._flow.finish(ctx, SessionStatus.CANCELLED)
        try:
            self._flow.memory.deactivate_session(ctx.chat_id)
        except MemoryUnavailableError as e:
            logger.error("Failed to forget saved login for chat %s: %s", ctx.chat_id, e)
        ctx.session.credential = None
        self._registry.remove(ctx.chat_id)
        ctx.reply(messages.LOGOUT_SUCCESS)
        logger.info("Chat %s logged out", ctx.chat_id)
