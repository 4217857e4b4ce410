"""Clarification interpreter.

Converts the interpreter's raw clarification output into typed
ClarificationItems, formats them as a single user-facing prompt, and
parses the user's free-form reply back into per-item answers.

Reply parsing runs an ordered chain of named strategies. Each strategy
returns a mapping of item index -> answer, or None when it does not
apply; the first mapping wins. An empty result means the reply was
ambiguous and nothing must be recorded.

Example:
    items = to_clarification_items(result.clarifications)
    prompt = format_clarification_prompt(items)
    answers = parse_clarification_reply("1. grande\\n2. 200g", items)
    # {0: "grande", 1: "200g"}
"""

import logging
import re
from collections import Counter
from collections.abc import Callable

from meallog.orchestrator.models import (
    ClarificationItem,
    ClarificationType,
    RawClarification,
)

logger = logging.getLogger(__name__)

# Type labels after stripping separators and uppercasing
_TYPE_LABELS = {
    "MISSINGSIZE": ClarificationType.MISSING_SIZE,
    "MISSINGWEIGHT": ClarificationType.MISSING_WEIGHT,
    "AMBIGUOUSUNIT": ClarificationType.AMBIGUOUS_UNIT,
    "UNCLEARFOOD": ClarificationType.FOOD_NOT_FOUND,
    "FOODNOTFOUND": ClarificationType.FOOD_NOT_FOUND,
}

SIZE_KEYWORDS = (
    "extra grande", "pequeño", "pequeña", "chico", "chica",
    "mediano", "mediana", "regular", "grande", "xl",
    "small", "medium", "large",
)

UNIT_KEYWORDS = (
    "cucharada grande", "cucharadita", "sopera", "postre", "café",
    "tablespoon", "teaspoon", "tbsp", "tsp",
)

WEIGHT_PATTERN = re.compile(
    r"\d+(?:[.,]\d+)?\s*(?:g|gr|gramos?|kg|ml|l|litros?|oz|onzas?|lb|libras?"
    r"|tazas?|cucharadas?|cdas?|cups?|tbsp|tsp)\b",
    re.IGNORECASE,
)

_LINE_NUMBER_PREFIX = re.compile(r"^\d+[.):]\s*")
_INLINE_NUMBERED = re.compile(r"(\d+)[.):]\s*(.+?)(?=\s+\d+[.):]|$)")
_LIST_SEPARATORS = re.compile(r"[,;]")


def normalize_clarification_type(label: str | None) -> ClarificationType:
    """Map a free-form type label onto ClarificationType.

    Separators are stripped and the label uppercased, so "MISSING_SIZE",
    "missing-size" and "MissingSize" all match. Unknown labels default to
    MissingWeight.
    """
    key = re.sub(r"[\s_\-]", "", label or "").upper()
    return _TYPE_LABELS.get(key, ClarificationType.MISSING_WEIGHT)


def to_clarification_items(raw: list[RawClarification]) -> list[ClarificationItem]:
    """Type the interpreter's raw clarifications."""
    return [
        ClarificationItem(
            type=normalize_clarification_type(c.type),
            item_name=c.item_name,
            question=c.question,
        )
        for c in raw
    ]


def not_found_clarification(item_name: str) -> ClarificationItem:
    """Clarification raised when an item has no acceptable catalog match."""
    return ClarificationItem(
        type=ClarificationType.FOOD_NOT_FOUND,
        item_name=item_name,
        question=f'¿Podrías darme un nombre alternativo para "{item_name}"?',
        original_term=item_name,
    )


def format_clarification_prompt(items: list[ClarificationItem]) -> str:
    """Build the question text: verbatim for one item, numbered for several."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0].question
    return "\n".join(f"{i}. {item.question}" for i, item in enumerate(items, start=1))


# ============================================================================
# Reply parsing strategies
# ============================================================================

Answers = dict[int, str]
ParseStrategy = Callable[[str, list[ClarificationItem]], Answers | None]


def parse_single_item(reply: str, items: list[ClarificationItem]) -> Answers | None:
    """One pending item: the whole reply is its answer."""
    if len(items) != 1:
        return None
    return {0: reply}


def parse_lines(reply: str, items: list[ClarificationItem]) -> Answers | None:
    """One answer per line, optional "N." / "N)" / "N:" prefixes."""
    lines = [line.strip() for line in reply.splitlines() if line.strip()]
    if len(lines) < len(items):
        return None
    answers: Answers = {}
    for index in range(len(items)):
        cleaned = _LINE_NUMBER_PREFIX.sub("", lines[index]).strip()
        if not cleaned:
            return None
        answers[index] = cleaned
    return answers


def parse_inline_numbered(reply: str, items: list[ClarificationItem]) -> Answers | None:
    """Single-line "1. answer 2. answer" replies; every item must be covered."""
    answers: Answers = {}
    for match in _INLINE_NUMBERED.finditer(reply):
        number = int(match.group(1))
        answer = match.group(2).strip()
        if 1 <= number <= len(items) and answer:
            answers[number - 1] = answer
    if len(answers) != len(items):
        return None
    return answers


def parse_separated_list(reply: str, items: list[ClarificationItem]) -> Answers | None:
    """Comma/semicolon separated answers; the count must match exactly."""
    parts = [part.strip() for part in _LIST_SEPARATORS.split(reply) if part.strip()]
    if len(parts) != len(items):
        return None
    return dict(enumerate(parts))


def _extract_by_type(reply: str, clarification_type: ClarificationType) -> str | None:
    lowered = reply.lower()
    if clarification_type == ClarificationType.MISSING_SIZE:
        return next((k for k in SIZE_KEYWORDS if k in lowered), None)
    if clarification_type == ClarificationType.MISSING_WEIGHT:
        match = WEIGHT_PATTERN.search(reply)
        return match.group(0).strip() if match else None
    if clarification_type == ClarificationType.AMBIGUOUS_UNIT:
        return next((k for k in UNIT_KEYWORDS if k in lowered), None)
    return None


def parse_by_keywords(reply: str, items: list[ClarificationItem]) -> Answers | None:
    """Pick answers out of free text by clarification type.

    Types shared by several pending items are skipped, since a keyword
    cannot tell those items apart.
    """
    type_counts = Counter(item.type for item in items)
    answers: Answers = {}
    for index, item in enumerate(items):
        if type_counts[item.type] > 1:
            continue
        answer = _extract_by_type(reply, item.type)
        if answer:
            answers[index] = answer
    return answers or None


REPLY_STRATEGIES: tuple[ParseStrategy, ...] = (
    parse_single_item,
    parse_lines,
    parse_inline_numbered,
    parse_separated_list,
    parse_by_keywords,
)


def parse_clarification_reply(
    reply: str, items: list[ClarificationItem]
) -> Answers:
    """Map a free-form reply onto the pending clarifications.

    Args:
        reply: The user's reply text.
        items: Pending clarifications, in prompt order.

    Returns:
        Dict of item index -> answer. Empty when the reply is ambiguous.
    """
    reply = (reply or "").strip()
    if not reply or not items:
        return {}
    for strategy in REPLY_STRATEGIES:
        answers = strategy(reply, items)
        if answers:
            logger.debug("Clarification reply parsed by %s", strategy.__name__)
            return answers
    return {}
