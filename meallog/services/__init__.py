"""Service layer for the meal logging agent.

Provides catalog access, food and measure resolution, per-user memory,
meal validation/commit and session bookkeeping.
"""

from meallog.services.catalog_client import CatalogClient
from meallog.services.food_resolution import (
    FoodResolution,
    FoodResolutionEngine,
    ResolutionSettings,
)
from meallog.services.meal_commit import MealCommitOrchestrator, ValidationOutcome
from meallog.services.measure_resolver import MeasureResolution, resolve_measure
from meallog.services.memory_service import (
    NullMemoryService,
    SqlUserMemoryService,
    UserMemoryService,
)
from meallog.services.session_log_service import SessionLogService, SessionStatus
from meallog.services.session_registry import (
    ChatSession,
    Conversation,
    ConversationState,
    SessionRegistry,
)

__all__ = [
    "CatalogClient",
    "ChatSession",
    "Conversation",
    "ConversationState",
    "FoodResolution",
    "FoodResolutionEngine",
    "MealCommitOrchestrator",
    "MeasureResolution",
    "NullMemoryService",
    "ResolutionSettings",
    "SessionLogService",
    "SessionRegistry",
    "SessionStatus",
    "SqlUserMemoryService",
    "UserMemoryService",
    "ValidationOutcome",
    "resolve_measure",
]
