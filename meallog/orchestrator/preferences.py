"""Guided wizard for managing food aliases.

Menu flow:

    /preferences -> AwaitingPreferenceAction
        1 (crear)    -> AwaitingAliasInput -> AwaitingFoodSearch
                        -> AwaitingFoodSelection -> alias saved
        2 (eliminar) -> AwaitingAliasDeleteConfirm -> alias deactivated
        3 (salir)    -> conversation closed

Every step re-prompts on a malformed reply instead of failing.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from meallog.errors import MemoryUnavailableError
from meallog.orchestrator import messages
from meallog.orchestrator.meal_flow import MealFlow
from meallog.orchestrator.processors import parse_selection
from meallog.orchestrator.turn import TurnContext
from meallog.services.session_registry import Conversation, ConversationState

logger = logging.getLogger(__name__)

SEARCH_RESULTS_LIMIT = 10

CREATE_REPLIES = frozenset({"1", "crear", "nuevo"})
DELETE_REPLIES = frozenset({"2", "eliminar", "borrar"})
EXIT_REPLIES = frozenset({"3", "salir", "cancelar"})

# States from which /preferences may (re)open the menu
WIZARD_STATES = frozenset({
    ConversationState.IDLE,
    ConversationState.AWAITING_PREFERENCE_ACTION,
    ConversationState.AWAITING_ALIAS_INPUT,
    ConversationState.AWAITING_FOOD_SEARCH,
    ConversationState.AWAITING_FOOD_SELECTION,
    ConversationState.AWAITING_ALIAS_DELETE_CONFIRM,
})


class PreferenceWizard:
    """Handlers for the alias-management states."""

    def __init__(self, flow: MealFlow, clock: Callable[[], datetime]) -> None:
        self._flow = flow
        self._clock = clock

    async def open_menu(self, ctx: TurnContext) -> None:
        """Show the alias menu (the /preferences command)."""
        if not self._flow.memory.is_available:
            ctx.reply(messages.MEMORY_NOT_AVAILABLE)
            return
        if not ctx.session.is_authenticated:
            ctx.reply(messages.LOGIN_REQUIRED)
            return
        if ctx.conversation is not None and ctx.conversation.state not in WIZARD_STATES:
            ctx.reply(messages.SESSION_ALREADY_ACTIVE)
            return

        try:
            aliases = self._flow.memory.list_aliases(ctx.chat_id)
        except MemoryUnavailableError as e:
            logger.warning("Preferences menu unavailable for chat %s: %s", ctx.chat_id, e)
            ctx.reply(messages.MEMORY_NOT_AVAILABLE)
            return

        if ctx.conversation is None:
            ctx.session.conversation = Conversation(now=self._clock())
        ctx.conversation.clear_search()
        self._flow.transition(ctx, ConversationState.AWAITING_PREFERENCE_ACTION, "preferences")
        ctx.reply(messages.format_preferences_menu(aliases))
        logger.info("Opened preferences menu for chat %s", ctx.chat_id)

    async def action(self, ctx: TurnContext) -> None:
        choice = ctx.text.strip().lower()
        if choice in CREATE_REPLIES:
            self._flow.transition(ctx, ConversationState.AWAITING_ALIAS_INPUT)
            ctx.reply(messages.CREATE_ALIAS_PROMPT)
        elif choice in DELETE_REPLIES:
            aliases = self._flow.list_aliases(ctx.chat_id)
            if not aliases:
                ctx.end_conversation()
                ctx.reply(messages.NO_ALIASES_TO_DELETE)
                return
            self._flow.transition(ctx, ConversationState.AWAITING_ALIAS_DELETE_CONFIRM)
            ctx.reply(messages.format_delete_alias_menu(aliases))
        elif choice in EXIT_REPLIES:
            ctx.end_conversation()
            ctx.reply(messages.EXITED_PREFERENCES)
        else:
            ctx.reply(messages.INVALID_OPTION)

    async def alias_input(self, ctx: TurnContext) -> None:
        term = ctx.text.strip()
        if not term:
            ctx.reply(messages.CREATE_ALIAS_PROMPT)
            return
        ctx.conversation.alias_term = term
        self._flow.transition(ctx, ConversationState.AWAITING_FOOD_SEARCH)
        ctx.reply(messages.format_term_saved(term))

    async def food_search(self, ctx: TurnContext) -> None:
        """Search the catalog for the food the new alias should point to."""
        query = ctx.text.strip()
        candidates = (
            await self._flow.engine.search(query, ctx.session.credential) if query else []
        )
        if not candidates:
            ctx.reply(messages.NO_SEARCH_RESULTS)
            return
        conversation = ctx.conversation
        conversation.search_results = candidates[:SEARCH_RESULTS_LIMIT]
        self._flow.transition(ctx, ConversationState.AWAITING_FOOD_SELECTION)
        ctx.reply(messages.format_search_results(conversation.search_results))

    async def food_selection(self, ctx: TurnContext) -> None:
        """A number saves the alias; any other text searches again."""
        conversation = ctx.conversation
        if not ctx.text.strip().isdigit():
            await self.food_search(ctx)
            return

        index = parse_selection(ctx.text, len(conversation.search_results))
        if index is None:
            ctx.reply(messages.INVALID_NUMBER)
            return

        candidate = conversation.search_results[index]
        term = conversation.alias_term or ""
        try:
            saved = self._flow.memory.save_alias(
                ctx.chat_id,
                term,
                candidate.food.name,
                candidate.food.id,
                candidate.source_tab,
                is_manual=True,
            )
        except MemoryUnavailableError as e:
            logger.warning("Could not save alias for chat %s: %s", ctx.chat_id, e)
            ctx.end_conversation()
            ctx.reply(messages.MEMORY_NOT_AVAILABLE)
            return
        ctx.end_conversation()
        input_term = saved.input_term if saved is not None else term
        ctx.reply(messages.format_alias_saved(input_term, candidate.food.name))

    async def alias_delete_confirm(self, ctx: TurnContext) -> None:
        aliases = self._flow.list_aliases(ctx.chat_id)[: messages.DELETE_MENU_LIMIT]
        index = parse_selection(ctx.text, len(aliases))
        if index is None:
            ctx.reply(messages.INVALID_NUMBER)
            return
        alias = aliases[index]
        try:
            self._flow.memory.delete_alias(alias.id)
        except MemoryUnavailableError as e:
            logger.warning("Could not delete alias for chat %s: %s", ctx.chat_id, e)
            ctx.end_conversation()
            ctx.reply(messages.MEMORY_NOT_AVAILABLE)
            return
        ctx.end_conversation()
        ctx.reply(messages.format_alias_deleted(alias.input_term, alias.resolved_food_name))
