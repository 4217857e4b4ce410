"""Pydantic models for the conversation orchestrator.

This module exports models for catalog foods and measures, meal requests,
validated items, and clarification questions.
"""

from meallog.orchestrator.models.catalog import (
    CatalogCredential,
    CatalogTab,
    Food,
    Measure,
    SearchCandidate,
)
from meallog.orchestrator.models.clarification import (
    ClarificationItem,
    ClarificationType,
    RawClarification,
)
from meallog.orchestrator.models.memory import (
    AliasRecord,
    DetectedAlias,
    PreferenceRecord,
    SavedSession,
)
from meallog.orchestrator.models.meal import (
    InterpreterResult,
    MealItem,
    MealRequest,
    PendingLearning,
    ValidatedMealItem,
)

__all__ = [
    # Catalog
    "CatalogCredential",
    "CatalogTab",
    "Food",
    "Measure",
    "SearchCandidate",
    # Clarification
    "ClarificationItem",
    "ClarificationType",
    "RawClarification",
    # Memory
    "AliasRecord",
    "DetectedAlias",
    "PreferenceRecord",
    "SavedSession",
    # Meal
    "InterpreterResult",
    "MealItem",
    "MealRequest",
    "PendingLearning",
    "ValidatedMealItem",
]
