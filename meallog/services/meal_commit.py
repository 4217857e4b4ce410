"""Meal commit orchestrator.

Turns a fully specified MealRequest into validated items and, after the
user confirms, into a catalog write.

Validation resolves every item before reporting anything: items with no
acceptable catalog match are collected so the user can correct all of
them in one clarification round, while the items that did resolve keep
their data.

Example:
    orchestrator = MealCommitOrchestrator(catalog, engine)
    outcome = await orchestrator.validate(request, credential, user_id="chat-1")
    if outcome.not_found:
        ...  # ask for alternative names
    else:
        await orchestrator.commit(request, outcome.validated, credential)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from meallog.orchestrator.models import (
    CatalogCredential,
    DetectedAlias,
    Food,
    MealItem,
    MealRequest,
    PendingLearning,
    ValidatedMealItem,
)
from meallog.services.food_resolution import (
    CatalogSearcher,
    FoodResolutionEngine,
    normalize_query,
)
from meallog.services.measure_resolver import resolve_measure

logger = logging.getLogger(__name__)

# Meal-order codes the catalog uses to sort diary groups
MEAL_ORDER_CODES = {
    "BREAKFAST": 65537,
    "LUNCH": 131073,
    "DINNER": 196609,
    "SNACKS": 262145,
}
DEFAULT_MEAL_ORDER = 1

_CATEGORY_ALIASES = {
    "DESAYUNO": "BREAKFAST",
    "ALMUERZO": "LUNCH",
    "CENA": "DINNER",
    "MERIENDA": "SNACKS",
    "SNACK": "SNACKS",
}


class CatalogGateway(CatalogSearcher, Protocol):
    """Catalog operations needed to validate and write a meal."""

    async def get_foods(
        self, ids: list[int], credential: CatalogCredential
    ) -> list[Food]: ...

    async def add_servings(
        self, servings: list[dict[str, Any]], credential: CatalogCredential
    ) -> dict[str, Any]: ...


def normalize_category(category: str | None) -> str:
    """Map Spanish category names onto the catalog's English ones."""
    upper = (category or "").strip().upper()
    return _CATEGORY_ALIASES.get(upper, upper)


def meal_order_code(category: str | None) -> int:
    return MEAL_ORDER_CODES.get(normalize_category(category), DEFAULT_MEAL_ORDER)


def build_serving_payload(
    request: MealRequest,
    validated: list[ValidatedMealItem],
    credential: CatalogCredential,
) -> list[dict[str, Any]]:
    """Build the serving batch for the catalog write API.

    Args:
        request: The confirmed meal request (date, category, log_time).
        validated: Validated items to write.
        credential: Owner of the diary.

    Returns:
        One serving dict per item, grams already totalled.
    """
    order = meal_order_code(request.category)
    day = request.date.strftime("%Y-%m-%d")
    time = request.date.strftime("%H:%M:%S") if request.log_time else ""
    return [
        {
            "order": order,
            "day": day,
            "time": time,
            "userId": credential.user_id,
            "type": "Serving",
            "foodId": item.food_id,
            "measureId": item.measure_id,
            "grams": item.total_grams,
        }
        for item in validated
    ]


def differs_materially(original: str, resolved: str) -> bool:
    """Whether neither normalized name contains the other."""
    a, b = normalize_query(original), normalize_query(resolved)
    if not a or not b:
        return False
    return a not in b and b not in a


@dataclass
class ValidationOutcome:
    """Result of validating a meal request.

    Attributes:
        validated: Items resolved to a food and measure, in request order.
        not_found: Item names with no acceptable catalog match.
        learnings: Alias candidates for items whose resolved name differs
            from the user's wording.
    """

    validated: list[ValidatedMealItem] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)
    learnings: list[PendingLearning] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.not_found


class MealCommitOrchestrator:
    """Validates meal items against the catalog and writes confirmed meals."""

    def __init__(self, catalog: CatalogGateway, engine: FoodResolutionEngine) -> None:
        """Initialize the orchestrator.

        Args:
            catalog: Catalog gateway used for food details and writes.
            engine: Resolution engine (aliases first, then fuzzy search).
        """
        self._catalog = catalog
        self._engine = engine

    async def validate(
        self,
        request: MealRequest,
        credential: CatalogCredential,
        user_id: str | None = None,
        detected_aliases: list[DetectedAlias] | None = None,
    ) -> ValidationOutcome:
        """Resolve every item of a meal request.

        Args:
            request: The fully specified meal.
            credential: Catalog credential.
            user_id: Chat identity owning the aliases.
            detected_aliases: Aliases detected in the raw description.

        Returns:
            ValidationOutcome with validated items, misses and learnings.
        """
        outcome = ValidationOutcome()
        for item in request.items:
            validated = await self._validate_item(
                item, credential, user_id, detected_aliases or []
            )
            if validated is None:
                outcome.not_found.append(item.name)
                continue
            outcome.validated.append(validated)

        outcome.learnings = build_learnings(outcome.validated)
        logger.info(
            "Validated %d/%d items (%d not found)",
            len(outcome.validated), len(request.items), len(outcome.not_found),
        )
        return outcome

    async def _validate_item(
        self,
        item: MealItem,
        credential: CatalogCredential,
        user_id: str | None,
        detected_aliases: list[DetectedAlias],
    ) -> ValidatedMealItem | None:
        resolution = await self._engine.resolve(
            item.name, credential, user_id=user_id, detected_aliases=detected_aliases
        )
        if not resolution.found:
            return None

        food = await self.fetch_food(resolution.food_id, credential)
        if food is None:
            logger.warning(
                "Food %s for '%s' has no catalog record", resolution.food_id, item.name
            )
            return None

        return build_validated_item(
            item,
            food,
            source_tab=resolution.source_tab,
            alias_id=resolution.alias.id if resolution.alias else None,
        )

    async def fetch_food(
        self, food_id: int | None, credential: CatalogCredential
    ) -> Food | None:
        """Fetch the full food record (with measures) for an id."""
        if not food_id:
            return None
        foods = await self._catalog.get_foods([food_id], credential)
        return foods[0] if foods else None

    async def commit(
        self,
        request: MealRequest,
        validated: list[ValidatedMealItem],
        credential: CatalogCredential,
    ) -> dict[str, Any]:
        """Write the validated items to the catalog.

        Raises:
            CatalogWriteError: If the catalog reports a failed write.
            CatalogError: On transport or HTTP failures.
        """
        servings = build_serving_payload(request, validated, credential)
        result = await self._catalog.add_servings(servings, credential)
        logger.info(
            "Committed %d servings for user %s (%s)",
            len(servings), credential.user_id, normalize_category(request.category),
        )
        return result


def build_validated_item(
    item: MealItem,
    food: Food,
    source_tab: str = "",
    alias_id: str | None = None,
) -> ValidatedMealItem:
    """Combine a requested item with its resolved food and measure."""
    measure, is_raw_grams = resolve_measure(food.measures, item.unit)
    return ValidatedMealItem(
        original_name=item.name,
        food_name=food.name,
        food_id=food.id,
        quantity=item.quantity,
        measure_name="g" if is_raw_grams else measure.name,
        measure_id=measure.id,
        measure_grams=measure.value,
        is_raw_grams=is_raw_grams,
        source_tab=source_tab,
        was_resolved_from_alias=alias_id is not None,
        alias_id=alias_id,
    )


def build_learnings(validated: list[ValidatedMealItem]) -> list[PendingLearning]:
    """Alias candidates for items not already known from memory."""
    learnings: list[PendingLearning] = []
    seen: set[str] = set()
    for item in validated:
        if item.was_resolved_from_alias:
            continue
        if not differs_materially(item.original_name, item.food_name):
            continue
        key = item.original_name.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        learnings.append(
            PendingLearning(
                original_term=item.original_name,
                resolved_food_name=item.food_name,
                resolved_food_id=item.food_id,
                source_tab=item.source_tab,
            )
        )
    return learnings
