"""Meal interpreter: free text -> structured meal via Claude.

The model is asked for a single JSON object (category, date, logTime,
items, needsClarification, clarifications, or an error key). Replies
wrapped in markdown fences or sprinkled with emphasis markers are
cleaned before parsing. Any unusable reply raises InterpretationError,
which the conversation treats as recoverable.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Protocol

from anthropic import AsyncAnthropic, RateLimitError
from pydantic import ValidationError

from meallog.errors import InterpretationError
from meallog.orchestrator.models import InterpreterResult
from meallog.orchestrator.nl_engine.config import DEFAULT_MAX_TOKENS, get_model

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_MESSAGE = "No se pudo procesar el mensaje."

MAX_ATTEMPTS = 3
BASE_RETRY_DELAY = 1.0

SYSTEM_PROMPT = """You are an API service that turns a natural language meal description into structured JSON.
Reply with the JSON object only: no greetings, no explanations, no markdown.

Output structure:
{
  "category": "string",
  "date": "yyyy-MM-ddTHH:mm:ss",
  "logTime": boolean,
  "items": [{"quantity": number, "unit": "string", "name": "string"}],
  "needsClarification": boolean,
  "clarifications": [{"type": "string", "itemName": "string", "question": "string"}]
}

CLARIFICATION RULES (set needsClarification=true and add an entry when):
1. MISSING_SIZE: eggs, fruits or vegetables without a size ("4 huevos" -> pequeño/mediano/grande).
2. MISSING_WEIGHT: items without quantity or weight when weight matters ("arroz", "pollo").
3. AMBIGUOUS_UNIT: spoon measures that could be tbsp or tsp ("una cucharada de aceite").
   "cucharadita" is always tsp and "cucharada grande" is always tbsp.
4. UNCLEAR_FOOD: the food itself is too vague ("carne", "queso").
Write each question in Spanish. Otherwise set needsClarification=false and clarifications=[].

FIELD RULES:
- category: BREAKFAST (desayuno), LUNCH (almuerzo), DINNER (cena), SNACKS (merienda/snack), else UNCATEGORIZED.
- date: from context. Use the stated time if given; current time for today without a time;
  00:00:00 for another day without a time.
- logTime: true if the log is for today or a time of day is stated; false otherwise.
- quantity: always a number (convert words to numbers).
- unit: gramos/gr/g -> "grams"; cucharada -> "tbsp"; cucharadita -> "tsp"; unidad -> "unit";
  pequeño -> "small"; mediano -> "medium"; grande -> "large"; taza -> "cup"; mililitros/ml -> "ml";
  cabeza de ajo -> "clove".
- name: the food in English, first letter capitalized.

If no food can be extracted, reply with {"error": "No food information could be extracted from the message."}

Known preferences of this user:
{preferences}
"""


class MealTextInterpreter(Protocol):
    """The text interpretation boundary."""

    async def interpret(
        self, text: str, preferences: str | None = None
    ) -> InterpreterResult: ...


def strip_markdown(text: str) -> str:
    """Remove code fences and inline emphasis markers around a reply."""
    if not text:
        return ""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    if cleaned.startswith("```"):
        cleaned = cleaned[len("```"):]
    if cleaned.endswith("```"):
        cleaned = cleaned[: -len("```")]
    for marker in ("**", "__", "*", "_", "`"):
        cleaned = cleaned.replace(marker, "")
    return cleaned.strip()


def parse_interpreter_output(raw: str | None) -> InterpreterResult:
    """Parse the interpreter's reply into an InterpreterResult.

    Args:
        raw: Raw model text.

    Returns:
        The parsed result.

    Raises:
        InterpretationError: If the reply is empty, not valid JSON, does not
            match the contract, or carries an error key.
    """
    cleaned = strip_markdown(raw or "")
    if not cleaned:
        raise InterpretationError(EMPTY_OUTPUT_MESSAGE, raw_output=raw)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise InterpretationError(
            f"La respuesta del intérprete no es JSON válido: {e.msg}", raw_output=raw
        ) from e

    if not isinstance(data, dict):
        raise InterpretationError(EMPTY_OUTPUT_MESSAGE, raw_output=raw)
    if data.get("error"):
        raise InterpretationError(str(data["error"]), raw_output=raw)

    try:
        return InterpreterResult.model_validate(data)
    except ValidationError as e:
        raise InterpretationError(
            f"La respuesta del intérprete no tiene el formato esperado "
            f"({e.error_count()} errores)",
            raw_output=raw,
        ) from e


class MealInterpreter:
    """Claude-backed MealTextInterpreter."""

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        model: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """Initialize the interpreter.

        Args:
            client: Anthropic client; created from the environment if None.
            model: Model override; see get_model().
            max_tokens: Completion token limit.
        """
        self._client = client
        self._model = get_model(model)
        self._max_tokens = max_tokens

    async def interpret(
        self,
        text: str,
        preferences: str | None = None,
        now: datetime | None = None,
    ) -> InterpreterResult:
        """Interpret a meal description (or flattened dialogue).

        Args:
            text: User text or build_interpreter_context() output.
            preferences: format_preferences_for_prompt() output.
            now: Local time used to resolve relative dates.

        Returns:
            The parsed InterpreterResult.

        Raises:
            InterpretationError: If the reply cannot be used.
        """
        if not text or not text.strip():
            raise InterpretationError(EMPTY_OUTPUT_MESSAGE)

        now = now or datetime.now()
        system_prompt = SYSTEM_PROMPT.replace(
            "{preferences}", preferences or "No saved preferences for this user."
        )
        user_prompt = (
            f"Current local time: {now.strftime('%Y-%m-%dT%H:%M:%S')}\n\n"
            f"User input:\n{text}"
        )

        raw = await self._create(system_prompt, user_prompt)
        logger.debug("Interpreter raw output: %s", raw)
        return parse_interpreter_output(raw)

    async def _create(self, system_prompt: str, user_prompt: str) -> str:
        """Call the model, retrying rate-limit errors with backoff."""
        if self._client is None:
            self._client = AsyncAnthropic()

        for attempt in range(MAX_ATTEMPTS):
            try:
                response = await self._client.messages.create(
                    model=self._model,
                    max_tokens=self._max_tokens,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_prompt}],
                )
                break
            except RateLimitError:
                if attempt == MAX_ATTEMPTS - 1:
                    raise
                delay = BASE_RETRY_DELAY * (2 ** attempt)
                logger.warning(
                    "Interpreter rate limited, retrying in %.1fs (attempt %d/%d)",
                    delay, attempt + 1, MAX_ATTEMPTS,
                )
                await asyncio.sleep(delay)

        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
