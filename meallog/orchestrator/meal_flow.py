"""Meal logging flow shared by the state processors and commands.

Owns the interpret -> clarify -> validate -> confirm -> save loop:

1. The conversation history (with known aliases substituted into the
   user's text) is flattened and sent to the interpreter.
2. Clarifications matching a confirmed preference are answered
   automatically and the interpreter is invoked once more; anything
   still open is asked to the user.
3. A fully specified meal is validated against the catalog. Misses come
   back as one FoodNotFound clarification per item; otherwise the user
   is shown a confirmation summary.
4. /save writes the servings and offers to remember new aliases.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime

from meallog.errors import CatalogError, InterpretationError, MemoryUnavailableError
from meallog.orchestrator import messages
from meallog.orchestrator.models import (
    AliasRecord,
    ClarificationItem,
    DetectedAlias,
    InterpreterResult,
    MealItem,
    MealRequest,
    PreferenceRecord,
    ValidatedMealItem,
)
from meallog.orchestrator.nl_engine import (
    MealTextInterpreter,
    build_interpreter_context,
    format_clarification_prompt,
    not_found_clarification,
    to_clarification_items,
)
from meallog.orchestrator.turn import TurnContext
from meallog.services.food_resolution import FoodResolutionEngine
from meallog.services.meal_commit import (
    MealCommitOrchestrator,
    build_learnings,
    build_validated_item,
    normalize_category,
)
from meallog.services.memory_service import (
    UserMemoryService,
    detect_aliases,
    format_preferences_for_prompt,
    substitute_aliases,
)
from meallog.services.session_log_service import SessionLogService, SessionStatus
from meallog.services.session_registry import ConversationState

logger = logging.getLogger(__name__)

ALTERNATIVES_LIMIT = 10

TRANSCRIPT_CORRECTION_TEMPLATE = "{transcript}\n\nCORRECCIONES DEL USUARIO: {correction}"


def format_display_time(date: datetime) -> str:
    """12-hour clock time, e.g. "1:05 PM"."""
    return date.strftime("%I:%M %p").lstrip("0")


class MealFlow:
    """Drives a conversation from description to committed meal."""

    def __init__(
        self,
        interpreter: MealTextInterpreter,
        engine: FoodResolutionEngine,
        orchestrator: MealCommitOrchestrator,
        memory: UserMemoryService,
        session_log: SessionLogService,
        local_now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the flow.

        Args:
            interpreter: Text interpretation boundary.
            engine: Food resolution engine.
            orchestrator: Meal validation/commit orchestrator.
            memory: Alias/preference store (possibly the null store).
            session_log: Conversation event trail.
            local_now: Local clock used for meal dates.
        """
        self.interpreter = interpreter
        self.engine = engine
        self.orchestrator = orchestrator
        self.memory = memory
        self.session_log = session_log
        self._local_now = local_now

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def transition(
        self, ctx: TurnContext, state: ConversationState, trigger: str | None = None
    ) -> None:
        """Move the conversation to ``state`` and record the change."""
        conversation = ctx.conversation
        previous = conversation.state
        conversation.state = state
        if previous != state:
            logger.debug(
                "Chat %s: %s -> %s", ctx.chat_id, previous.value, state.value
            )
            self.session_log.log_state_change(
                ctx.chat_id, previous.value, state.value, trigger
            )

    def finish(
        self, ctx: TurnContext, status: SessionStatus, items_logged: int = 0
    ) -> None:
        """Discard the conversation and close its event trail."""
        ctx.end_conversation()
        self.session_log.end_session(ctx.chat_id, status, items_logged=items_logged)

    # ------------------------------------------------------------------
    # Memory access (failures degrade to "no memory")
    # ------------------------------------------------------------------

    def list_aliases(self, user_id: str) -> list[AliasRecord]:
        try:
            return self.memory.list_aliases(user_id)
        except MemoryUnavailableError as e:
            logger.warning("Alias list unavailable for %s: %s", user_id, e)
            return []

    def _list_preferences(self, user_id: str) -> list[PreferenceRecord]:
        try:
            return self.memory.list_clarification_preferences(user_id)
        except MemoryUnavailableError as e:
            logger.warning("Preferences unavailable for %s: %s", user_id, e)
            return []

    def _find_preference(
        self, user_id: str, item: ClarificationItem
    ) -> PreferenceRecord | None:
        try:
            return self.memory.find_confirmed_preference(
                user_id, item.memory_term, item.type.value
            )
        except MemoryUnavailableError as e:
            logger.warning("Preference lookup unavailable for %s: %s", user_id, e)
            return None

    def record_answer(self, user_id: str, item: ClarificationItem, answer: str) -> None:
        """Record a clarification answer for preference learning."""
        try:
            pref = self.memory.record_clarification_answer(
                user_id, item.memory_term, item.type.value, answer
            )
        except MemoryUnavailableError as e:
            logger.warning("Could not record answer for '%s': %s", item.memory_term, e)
            return
        if pref is not None and pref.is_confirmed and pref.occurrence_count == 2:
            logger.info(
                "Preference confirmed: '%s' + %s -> '%s'",
                pref.food_term, pref.clarification_type, pref.default_answer,
            )

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    async def process_description(self, ctx: TurnContext, text: str) -> None:
        """Start a fresh interpretation round from a meal description."""
        conversation = ctx.conversation
        conversation.message_history = []
        conversation.pending_clarifications = []
        conversation.original_description = text
        self.session_log.set_original_description(ctx.chat_id, text)
        conversation.add_message("user", text)
        await self.interpret_conversation(ctx)

    async def reprocess_transcript(
        self, ctx: TurnContext, correction: str | None = None
    ) -> None:
        """Run a stored photo transcript (plus correction) as a description."""
        conversation = ctx.conversation
        transcript = conversation.ocr_text
        if not transcript:
            ctx.reply(messages.NO_TRANSCRIPT_SAVED)
            self.finish(ctx, SessionStatus.CANCELLED)
            return
        text = (
            TRANSCRIPT_CORRECTION_TEMPLATE.format(
                transcript=transcript, correction=correction
            )
            if correction
            else transcript
        )
        conversation.ocr_text = None
        await self.process_description(ctx, text)

    async def interpret_conversation(
        self,
        ctx: TurnContext,
        prefix: str = messages.NEEDS_CLARIFICATION_PREFIX,
    ) -> None:
        """Interpret the whole history and route the outcome.

        An unusable interpreter reply sends the conversation back to
        AwaitingMealDescription with a retry prompt.
        """
        self.transition(ctx, ConversationState.PROCESSING)
        aliases = self.list_aliases(ctx.chat_id)
        preferences = format_preferences_for_prompt(
            aliases, self._list_preferences(ctx.chat_id)
        )
        try:
            result = await self._interpret_history(ctx, aliases, preferences)
            await self._route(ctx, result, aliases, preferences, prefix)
        except InterpretationError as e:
            logger.warning("Interpretation failed for chat %s: %s", ctx.chat_id, e.message)
            self.transition(
                ctx, ConversationState.AWAITING_MEAL_DESCRIPTION, "interpretation_error"
            )
            ctx.reply(messages.format_description_error(e.message))

    async def _interpret_history(
        self, ctx: TurnContext, aliases: list[AliasRecord], preferences: str
    ) -> InterpreterResult:
        conversation = ctx.conversation
        history, detected = _substitute_history(conversation.message_history, aliases)
        conversation.detected_aliases = detected
        text = build_interpreter_context(history)

        started = time.monotonic()
        try:
            result = await self.interpreter.interpret(text, preferences)
        except InterpretationError:
            self.session_log.log_interpreter_call(
                ctx.chat_id, text, _elapsed_ms(started), False
            )
            raise
        self.session_log.log_interpreter_call(ctx.chat_id, text, _elapsed_ms(started), True)
        return result

    async def _route(
        self,
        ctx: TurnContext,
        result: InterpreterResult,
        aliases: list[AliasRecord],
        preferences: str,
        prefix: str,
    ) -> None:
        pending = _open_clarifications(result)
        if pending:
            remaining, applied = self._auto_apply(ctx, pending)
            if applied:
                ctx.reply(messages.format_auto_applied_preferences(applied))
                result = await self._interpret_history(ctx, aliases, preferences)
                remaining = _open_clarifications(result)
            if remaining:
                self._ask(ctx, remaining, result, prefix)
                return

        if not result.items:
            raise InterpretationError(messages.NO_FOOD_ITEMS)

        await self.validate_and_confirm(ctx, result.to_meal_request(self._local_now()))

    def _auto_apply(
        self, ctx: TurnContext, items: list[ClarificationItem]
    ) -> tuple[list[ClarificationItem], list[str]]:
        """Answer clarifications that match a confirmed preference.

        Each applied answer is appended to the history as a question and
        user reply pair.

        Returns:
            (clarifications still open, descriptions of applied answers)
        """
        conversation = ctx.conversation
        remaining: list[ClarificationItem] = []
        applied: list[str] = []
        for item in items:
            pref = self._find_preference(ctx.chat_id, item)
            if pref is None:
                remaining.append(item)
                continue
            conversation.add_message("assistant", item.question)
            conversation.add_message("user", pref.default_answer)
            applied.append(f"{item.memory_term} -> {pref.default_answer}")
        if applied:
            logger.info("Auto-applied %d preference(s) for chat %s", len(applied), ctx.chat_id)
        return remaining, applied

    def _ask(
        self,
        ctx: TurnContext,
        items: list[ClarificationItem],
        result: InterpreterResult,
        prefix: str,
    ) -> None:
        conversation = ctx.conversation
        conversation.pending_clarifications = items
        conversation.pending_meal_request = (
            result.to_meal_request(self._local_now()) if result.items else None
        )
        prompt = format_clarification_prompt(items)
        conversation.add_message("assistant", prompt)
        self.transition(ctx, ConversationState.AWAITING_CLARIFICATION, "clarification")
        ctx.reply(prefix + prompt)

    # ------------------------------------------------------------------
    # Validation and commit
    # ------------------------------------------------------------------

    async def validate_and_confirm(self, ctx: TurnContext, request: MealRequest) -> None:
        """Validate a fully specified meal and ask for confirmation."""
        conversation = ctx.conversation
        outcome = await self.orchestrator.validate(
            request,
            ctx.session.credential,
            user_id=ctx.chat_id,
            detected_aliases=conversation.detected_aliases,
        )
        self.session_log.log_validation(
            ctx.chat_id, len(outcome.validated), outcome.not_found
        )

        conversation.pending_meal_request = request
        conversation.validated_foods = outcome.validated

        if outcome.not_found:
            items = [not_found_clarification(name) for name in outcome.not_found]
            conversation.pending_clarifications = items
            conversation.add_message("assistant", format_clarification_prompt(items))
            self.transition(ctx, ConversationState.AWAITING_CLARIFICATION, "food_not_found")
            ctx.reply(messages.format_not_found_items(outcome.not_found))
            return

        conversation.pending_clarifications = []
        conversation.pending_learnings = outcome.learnings
        self.transition(ctx, ConversationState.AWAITING_CONFIRMATION, "validated")
        ctx.reply(self.confirmation_message(request, outcome.validated))

    @staticmethod
    def confirmation_message(
        request: MealRequest, validated: list[ValidatedMealItem]
    ) -> str:
        return messages.format_confirmation(
            format_display_time(request.date),
            normalize_category(request.category),
            validated,
        )

    async def save(self, ctx: TurnContext) -> None:
        """Write the confirmed meal (the /save command)."""
        conversation = ctx.conversation
        if conversation is None:
            ctx.reply(messages.NO_SESSION_TO_SAVE)
            return
        if conversation.state != ConversationState.AWAITING_CONFIRMATION:
            ctx.reply(messages.NO_PENDING_CHANGES)
            return
        if conversation.pending_meal_request is None or not conversation.validated_foods:
            ctx.reply(messages.NO_VALIDATED_DATA)
            self.finish(ctx, SessionStatus.CANCELLED)
            return

        validated = conversation.validated_foods
        try:
            await self.orchestrator.commit(
                conversation.pending_meal_request, validated, ctx.session.credential
            )
        except CatalogError as e:
            logger.error("Saving meal failed for chat %s: %s", ctx.chat_id, e)
            self.session_log.log_error(ctx.chat_id, e, "save")
            ctx.reply(messages.SAVE_RETRY_ERROR)
            return

        if conversation.pending_learnings and self.memory.is_available:
            self.transition(ctx, ConversationState.AWAITING_MEMORY_CONFIRMATION, "saved")
            ctx.reply(messages.format_memory_confirmation(conversation.pending_learnings))
            return

        self.finish(ctx, SessionStatus.COMPLETED, items_logged=len(validated))
        ctx.reply(messages.SAVE_SUCCESS)

    # ------------------------------------------------------------------
    # Alternatives for a validated item
    # ------------------------------------------------------------------

    async def search_alternatives(self, ctx: TurnContext, index: int) -> None:
        """Offer ranked alternatives for one validated item."""
        conversation = ctx.conversation
        item = conversation.validated_foods[index]
        candidates = await self.engine.search(item.original_name, ctx.session.credential)
        if len(candidates) <= 1:
            ctx.reply(messages.NO_ALTERNATIVES)
            return

        conversation.search_results = candidates[:ALTERNATIVES_LIMIT]
        conversation.search_item_index = index
        self.transition(ctx, ConversationState.AWAITING_FOOD_SEARCH_SELECTION, "alternatives")
        ctx.reply(
            messages.format_alternatives(
                item.original_name, item.food_name, item.food_id, candidates
            )
        )

    async def replace_item(self, ctx: TurnContext, choice: int) -> None:
        """Swap the item under edit for the chosen alternative."""
        conversation = ctx.conversation
        index = conversation.search_item_index
        candidate = conversation.search_results[choice]
        current = conversation.validated_foods[index]

        food = await self.orchestrator.fetch_food(
            candidate.food.id, ctx.session.credential
        ) or candidate.food
        request = conversation.pending_meal_request
        unit = (
            request.items[index].unit
            if request is not None and index < len(request.items)
            else current.measure_name
        )
        replacement = build_validated_item(
            MealItem(quantity=current.quantity, unit=unit, name=current.original_name),
            food,
            source_tab=candidate.source_tab,
        )

        validated = list(conversation.validated_foods)
        validated[index] = replacement
        conversation.validated_foods = validated
        conversation.pending_learnings = build_learnings(validated)
        conversation.clear_search()
        logger.info(
            "Chat %s replaced '%s' with '%s' (%s)",
            ctx.chat_id, current.food_name, replacement.food_name, replacement.food_id,
        )
        self.transition(ctx, ConversationState.AWAITING_CONFIRMATION, "alternative_selected")
        ctx.reply(self.confirmation_message(request, validated))


def _open_clarifications(result: InterpreterResult) -> list[ClarificationItem]:
    if not result.needs_clarification:
        return []
    return to_clarification_items(result.clarifications)


def _substitute_history(
    history: list[dict], aliases: list[AliasRecord]
) -> tuple[list[dict], list[DetectedAlias]]:
    """Copy of the history with alias terms replaced in user messages."""
    if not aliases:
        return list(history), []
    prepared: list[dict] = []
    detected: list[DetectedAlias] = []
    seen: set[str] = set()
    for message in history:
        if message.get("role") == "user":
            hits = detect_aliases(message.get("content", ""), aliases)
            if hits:
                message = {
                    **message,
                    "content": substitute_aliases(message["content"], hits),
                }
                for hit in hits:
                    if hit.alias.id not in seen:
                        seen.add(hit.alias.id)
                        detected.append(hit)
        prepared.append(message)
    return prepared, detected


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
