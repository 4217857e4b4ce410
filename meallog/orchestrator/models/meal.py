"""Meal request and validated item models.

MealRequest mirrors the interpreter's JSON contract (camelCase aliases
accepted on input). ValidatedMealItem is the immutable result of
resolving one item against the catalog.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meallog.orchestrator.models.clarification import RawClarification


class MealItem(BaseModel):
    """One food item as described by the user."""

    model_config = ConfigDict(populate_by_name=True)

    quantity: float = Field(default=0.0, description="Amount in the given unit")
    unit: str = Field(default="", description="Standardized unit, may be empty")
    name: str = Field(..., description="Food name in catalog language")

    @field_validator("unit", mode="before")
    @classmethod
    def null_unit_is_empty(cls, v):
        """The interpreter may send null when no unit was given."""
        return "" if v is None else v


class MealRequest(BaseModel):
    """A structured, fully specified meal ready for resolution."""

    model_config = ConfigDict(populate_by_name=True)

    category: str = Field(default="UNCATEGORIZED")
    date: datetime
    log_time: bool = Field(default=False, alias="logTime")
    items: list[MealItem] = Field(default_factory=list)


class InterpreterResult(BaseModel):
    """Parsed output of the text interpreter.

    Attributes:
        needs_clarification: Whether clarifications must be asked first.
        clarifications: Raw clarifications, typed later by the
            clarification interpreter.
        error: Set when the interpreter could not extract any food.
    """

    model_config = ConfigDict(populate_by_name=True)

    category: str = Field(default="UNCATEGORIZED")
    date: datetime | None = None
    log_time: bool = Field(default=False, alias="logTime")
    items: list[MealItem] = Field(default_factory=list)
    needs_clarification: bool = Field(default=False, alias="needsClarification")
    clarifications: list[RawClarification] = Field(default_factory=list)
    error: str | None = None

    def to_meal_request(self, fallback_date: datetime) -> MealRequest:
        """Build the meal request, using fallback_date when none was given."""
        return MealRequest(
            category=self.category,
            date=self.date or fallback_date,
            log_time=self.log_time,
            items=list(self.items),
        )


class ValidatedMealItem(BaseModel):
    """An item resolved to a catalog food and measure.

    Immutable once produced; replaced wholesale when the user picks an
    alternative food.

    Attributes:
        original_name: Item name as the interpreter produced it.
        food_name: Resolved catalog food name.
        food_id: Resolved catalog food id.
        quantity: Requested amount.
        measure_name: "g" for raw-gram items, else the measure name.
        measure_id: Catalog measure id.
        measure_grams: Gram value of one unit of the measure.
        is_raw_grams: Quantity is already a gram total.
        source_tab: Partition the food was found in ("ALIAS" for aliases).
        was_resolved_from_alias: Food came from a stored alias.
        alias_id: Alias record id when resolved from an alias.
    """

    model_config = ConfigDict(frozen=True)

    original_name: str
    food_name: str
    food_id: int
    quantity: float
    measure_name: str
    measure_id: int
    measure_grams: float
    is_raw_grams: bool = False
    source_tab: str = ""
    was_resolved_from_alias: bool = False
    alias_id: str | None = None

    @property
    def display_quantity(self) -> str:
        """Quantity with its unit, e.g. "150 g" or "2 large"."""
        quantity = f"{self.quantity:g}"
        if self.is_raw_grams:
            return f"{quantity} g"
        return f"{quantity} {self.measure_name}"

    @property
    def total_grams(self) -> float:
        """Gram total sent to the catalog write API."""
        if self.is_raw_grams:
            return self.quantity
        return self.quantity * self.measure_grams


class PendingLearning(BaseModel):
    """A candidate alias awaiting the user's consent after a save."""

    original_term: str
    resolved_food_name: str
    resolved_food_id: int
    source_tab: str = ""
