"""Per-state processors for the meal logging dialogue.

Each processor handles free text for one conversation state. Commands
and login messages never reach them; the state machine routes those
first.
"""

import logging
import re

from meallog.errors import MemoryUnavailableError
from meallog.orchestrator import messages
from meallog.orchestrator.meal_flow import MealFlow
from meallog.orchestrator.nl_engine import (
    format_clarification_prompt,
    parse_clarification_reply,
)
from meallog.orchestrator.turn import TurnContext
from meallog.services.session_log_service import SessionStatus
from meallog.services.session_registry import ConversationState

logger = logging.getLogger(__name__)

AFFIRMATIVE_REPLIES = frozenset({"si", "sí", "yes", "s"})
NEGATIVE_REPLIES = frozenset({"no", "n"})

_NUMBER_LIST = re.compile(r"^\d+(?:\s*[,\s]\s*\d+)*$")


def parse_selection(text: str, count: int) -> int | None:
    """Zero-based index for a 1-based numeric reply, None if invalid."""
    text = text.strip()
    if not text.isdigit():
        return None
    index = int(text) - 1
    return index if 0 <= index < count else None


def parse_number_list(text: str, count: int) -> list[int] | None:
    """Zero-based indexes for replies like "1,3" or "1 3"; None if invalid."""
    text = text.strip()
    if not _NUMBER_LIST.match(text):
        return None
    indexes: list[int] = []
    for token in re.split(r"[,\s]+", text):
        index = int(token) - 1
        if not 0 <= index < count:
            return None
        if index not in indexes:
            indexes.append(index)
    return indexes


class MealProcessors:
    """Processors for the description/clarification/confirmation states."""

    def __init__(self, flow: MealFlow) -> None:
        self._flow = flow

    async def meal_description(self, ctx: TurnContext) -> None:
        await self._flow.process_description(ctx, ctx.text)

    async def clarification(self, ctx: TurnContext) -> None:
        """Record the user's answers, then re-interpret the whole dialogue.

        A reply that cannot be mapped onto the pending questions records
        nothing and asks again.
        """
        conversation = ctx.conversation
        pending = conversation.pending_clarifications
        if pending:
            answers = parse_clarification_reply(ctx.text, pending)
            if not answers:
                logger.info("Ambiguous clarification reply from chat %s", ctx.chat_id)
                ctx.reply(
                    f"{messages.CLARIFICATION_NOT_UNDERSTOOD}\n\n"
                    f"{format_clarification_prompt(pending)}"
                )
                return
            for index, answer in sorted(answers.items()):
                self._flow.record_answer(ctx.chat_id, pending[index], answer)

        conversation.add_message("user", ctx.text)
        await self._flow.interpret_conversation(
            ctx, prefix=messages.STILL_NEEDS_CLARIFICATION
        )

    async def confirmation(self, ctx: TurnContext) -> None:
        """A number opens alternatives for that item; other text is a correction."""
        conversation = ctx.conversation
        if ctx.text.isdigit():
            index = parse_selection(ctx.text, len(conversation.validated_foods))
            if index is None:
                ctx.reply(messages.INVALID_NUMBER)
                return
            await self._flow.search_alternatives(ctx, index)
            return

        ctx.reply(messages.PROCESSING_CHANGES)
        conversation.add_message("user", ctx.text)
        await self._flow.interpret_conversation(ctx)

    async def food_search_selection(self, ctx: TurnContext) -> None:
        """Pick an alternative for the item under edit; 0 keeps the current one."""
        conversation = ctx.conversation
        if ctx.text.strip() == "0":
            conversation.clear_search()
            self._flow.transition(ctx, ConversationState.AWAITING_CONFIRMATION, "kept")
            ctx.reply(
                self._flow.confirmation_message(
                    conversation.pending_meal_request, conversation.validated_foods
                )
            )
            return

        choice = parse_selection(ctx.text, len(conversation.search_results))
        if choice is None or conversation.search_item_index is None:
            ctx.reply(messages.INVALID_NUMBER)
            return
        await self._flow.replace_item(ctx, choice)

    async def transcript_correction(self, ctx: TurnContext) -> None:
        await self._flow.reprocess_transcript(ctx, correction=ctx.text)

    async def memory_confirmation(self, ctx: TurnContext) -> None:
        """Persist all, none or some of the pending alias learnings."""
        conversation = ctx.conversation
        learnings = conversation.pending_learnings
        reply = ctx.text.strip().lower()

        if reply in AFFIRMATIVE_REPLIES:
            selected = list(learnings)
        elif reply in NEGATIVE_REPLIES:
            selected = []
        else:
            indexes = parse_number_list(reply, len(learnings))
            if indexes is None:
                ctx.reply(messages.INVALID_MEMORY_RESPONSE)
                return
            selected = [learnings[i] for i in indexes]

        saved = 0
        for learning in selected:
            try:
                self._flow.memory.save_alias(
                    ctx.chat_id,
                    learning.original_term,
                    learning.resolved_food_name,
                    learning.resolved_food_id,
                    learning.source_tab,
                )
            except MemoryUnavailableError as e:
                logger.warning(
                    "Could not save alias '%s': %s", learning.original_term, e
                )
                continue
            saved += 1

        self._flow.finish(
            ctx, SessionStatus.COMPLETED, items_logged=len(conversation.validated_foods)
        )
        if saved:
            ctx.reply(messages.format_preferences_saved(saved))
        else:
            ctx.reply(messages.NO_PREFERENCES_SAVED)
