"""Clarification models for ambiguous meal descriptions.

A clarification is raised either by the interpreter (missing size,
weight, ambiguous spoon unit, unclear food) or by a catalog miss, and is
consumed once the user's reply has been parsed.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ClarificationType(str, Enum):
    """Kinds of ambiguity that can be asked about."""

    MISSING_SIZE = "MissingSize"
    MISSING_WEIGHT = "MissingWeight"
    AMBIGUOUS_UNIT = "AmbiguousUnit"
    FOOD_NOT_FOUND = "FoodNotFound"


class RawClarification(BaseModel):
    """Clarification exactly as emitted by the interpreter."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(default="", description="Free-form type label")
    item_name: str = Field(default="", alias="itemName")
    question: str = Field(default="")


class ClarificationItem(BaseModel):
    """A typed, user-facing question about one meal item.

    Attributes:
        type: Normalized clarification type.
        item_name: Item the question is about (interpreter wording).
        question: Question text shown to the user.
        original_term: Source-language substring the item maps back to,
            used as the preference memory key when present.
    """

    model_config = ConfigDict(from_attributes=True)

    type: ClarificationType
    item_name: str
    question: str
    original_term: str | None = None

    @property
    def memory_term(self) -> str:
        """Key used for preference learning (trimmed, lowercased)."""
        return (self.original_term or self.item_name).strip().lower()
