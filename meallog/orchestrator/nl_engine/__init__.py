"""Natural language components: meal interpreter and clarification handling."""

from meallog.orchestrator.nl_engine.clarification import (
    format_clarification_prompt,
    normalize_clarification_type,
    not_found_clarification,
    parse_clarification_reply,
    to_clarification_items,
)
from meallog.orchestrator.nl_engine.context import build_interpreter_context
from meallog.orchestrator.nl_engine.meal_interpreter import (
    MealInterpreter,
    MealTextInterpreter,
    parse_interpreter_output,
    strip_markdown,
)

__all__ = [
    "MealInterpreter",
    "MealTextInterpreter",
    "build_interpreter_context",
    "format_clarification_prompt",
    "normalize_clarification_type",
    "not_found_clarification",
    "parse_clarification_reply",
    "parse_interpreter_output",
    "strip_markdown",
    "to_clarification_items",
]
