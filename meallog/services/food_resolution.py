"""Food resolution engine: fuzzy catalog matching across partitions.

A query is searched concurrently in every catalog partition. Hits are
merged and ranked by a composite score:

    composite = similarity * partition_priority
                + exact_bonus + normalized_exact_bonus
                + starts_with_bonus + contains_bonus

where similarity is the best bigram (Sorensen-Dice) similarity between
the food name and the query, computed on both normalized and lowercased
forms. The top candidate is accepted only if it clears the acceptance
threshold; the full ranked list is always returned so a later
"pick an alternative" step can reuse it without re-querying.

Before searching, a stored user alias for the query short-circuits the
whole process.

Example:
    engine = FoodResolutionEngine(catalog, memory)
    result = await engine.resolve("pechuga de pollo", credential, user_id="chat-1")
    if result.found:
        print(result.food_id, result.food_name)
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from pydantic import BaseModel, Field

from meallog.errors import MemoryUnavailableError
from meallog.orchestrator.models import (
    AliasRecord,
    CatalogCredential,
    CatalogTab,
    DetectedAlias,
    Food,
    SearchCandidate,
)
from meallog.services.memory_service import (
    NullMemoryService,
    UserMemoryService,
    match_alias_for_item,
)

logger = logging.getLogger(__name__)

ALIAS_SOURCE_TAB = "ALIAS"

STOP_WORDS = ("de", "con", "the", "a", "an", "and", "y", "or", "o", "en", "in")

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]|_")
_STOP_WORD_PATTERN = re.compile(
    r"\b(?:" + "|".join(STOP_WORDS) + r")\b", re.IGNORECASE
)
_WHITESPACE_PATTERN = re.compile(r"\s+")


class ResolutionSettings(BaseModel):
    """Tunable constants for catalog matching.

    The defaults are empirically chosen values; keep them unless a
    measured regression says otherwise.
    """

    partition_priorities: dict[str, float] = Field(
        default_factory=lambda: {
            CatalogTab.CUSTOM.value: 3.0,
            CatalogTab.FAVOURITES.value: 2.5,
            CatalogTab.COMMON_FOODS.value: 1.0,
            CatalogTab.SUPPLEMENTS.value: 0.5,
            CatalogTab.ALL.value: 0.4,
        }
    )
    top_n_per_partition: int = 5
    acceptance_threshold: float = 0.2
    exact_match_bonus: float = 10.0
    normalized_exact_bonus: float = 5.0
    starts_with_bonus: float = 2.0
    contains_bonus: float = 1.0


class CatalogSearcher(Protocol):
    """The catalog search boundary."""

    async def find_food(
        self, query: str, tab: str, credential: CatalogCredential
    ) -> list[Food]: ...


# ============================================================================
# Pure scoring functions
# ============================================================================


def normalize_query(text: str | None) -> str:
    """Normalize a query or food name for matching.

    Lowercases, replaces punctuation with spaces, removes connective stop
    words (English and Spanish), and collapses whitespace.
    """
    if not text or not text.strip():
        return ""
    normalized = text.strip().lower()
    normalized = _PUNCTUATION_PATTERN.sub(" ", normalized)
    normalized = _STOP_WORD_PATTERN.sub(" ", normalized)
    return _WHITESPACE_PATTERN.sub(" ", normalized).strip()


def _bigrams(text: str) -> set[str]:
    return {text[i : i + 2] for i in range(len(text) - 1)}


def dice_similarity(a: str, b: str) -> float:
    """Sorensen-Dice coefficient over character bigrams (0.0 - 1.0)."""
    if a == b:
        return 1.0
    first, second = _bigrams(a), _bigrams(b)
    if not first or not second:
        return 0.0
    return 2.0 * len(first & second) / (len(first) + len(second))


def compute_composite_score(
    similarity: float,
    partition_priority: float,
    exact_match: bool,
    normalized_exact_match: bool,
    starts_with: bool,
    contains: bool,
    settings: ResolutionSettings | None = None,
) -> float:
    """Combine similarity, partition weight and match bonuses.

    Args:
        similarity: Best bigram similarity for the hit.
        partition_priority: Weight of the partition the hit came from.
        exact_match: Name equals query (case-insensitive).
        normalized_exact_match: Normalized name equals normalized query.
        starts_with: Name starts with query (case-insensitive).
        contains: Name contains query (case-insensitive).
        settings: Bonus constants; defaults when omitted.

    Returns:
        The composite score.
    """
    settings = settings or ResolutionSettings()
    score = similarity * partition_priority
    if exact_match:
        score += settings.exact_match_bonus
    if normalized_exact_match:
        score += settings.normalized_exact_bonus
    if starts_with:
        score += settings.starts_with_bonus
    if contains:
        score += settings.contains_bonus
    return score


def score_candidate(
    food: Food,
    source_tab: str,
    query: str,
    settings: ResolutionSettings,
) -> SearchCandidate:
    """Score one catalog hit against the query."""
    normalized_query = normalize_query(query)
    normalized_name = normalize_query(food.name)
    lower_name = food.name.lower()
    lower_query = query.strip().lower()

    similarity = max(
        dice_similarity(normalized_name, normalized_query),
        dice_similarity(lower_name, lower_query),
    )
    priority = settings.partition_priorities.get(source_tab, 0.0)
    composite = compute_composite_score(
        similarity,
        priority,
        exact_match=lower_name == lower_query,
        normalized_exact_match=normalized_name == normalized_query,
        starts_with=lower_name.startswith(lower_query),
        contains=lower_query in lower_name,
        settings=settings,
    )
    return SearchCandidate(
        food=food,
        source_tab=source_tab,
        composite_score=composite,
        similarity_score=similarity,
    )


def rank_candidates(candidates: list[SearchCandidate]) -> list[SearchCandidate]:
    """Sort by composite score, then raw similarity, both descending."""
    return sorted(
        candidates,
        key=lambda c: (c.composite_score, c.similarity_score),
        reverse=True,
    )


# ============================================================================
# Engine
# ============================================================================


@dataclass
class FoodResolution:
    """Outcome of resolving one food name.

    Attributes:
        query: The name that was resolved.
        best: Accepted top candidate, None when not found.
        candidates: Full ranked candidate list (may be non-empty even when
            not found).
        alias: Alias that short-circuited the search, if any.
    """

    query: str
    best: SearchCandidate | None = None
    candidates: list[SearchCandidate] = field(default_factory=list)
    alias: AliasRecord | None = None

    @property
    def found(self) -> bool:
        return self.alias is not None or self.best is not None

    @property
    def food_id(self) -> int | None:
        if self.alias is not None:
            return self.alias.resolved_food_id
        return self.best.food.id if self.best else None

    @property
    def food_name(self) -> str | None:
        if self.alias is not None:
            return self.alias.resolved_food_name
        return self.best.food.name if self.best else None

    @property
    def source_tab(self) -> str:
        if self.alias is not None:
            return ALIAS_SOURCE_TAB
        return self.best.source_tab if self.best else ""


class FoodResolutionEngine:
    """Resolves food names against the catalog, aliases first."""

    def __init__(
        self,
        catalog: CatalogSearcher,
        memory: UserMemoryService | None = None,
        settings: ResolutionSettings | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            catalog: Catalog search boundary.
            memory: Alias store; NullMemoryService when omitted.
            settings: Matching constants.
        """
        self._catalog = catalog
        self._memory = memory or NullMemoryService()
        self._settings = settings or ResolutionSettings()

    @property
    def settings(self) -> ResolutionSettings:
        return self._settings

    async def resolve(
        self,
        query: str,
        credential: CatalogCredential,
        user_id: str | None = None,
        detected_aliases: list[DetectedAlias] | None = None,
    ) -> FoodResolution:
        """Resolve a food name to a catalog food.

        A matching alias (from the detected list, else a direct lookup)
        returns immediately and increments its usage. Otherwise the
        catalog partitions are searched and scored.

        Args:
            query: Food name to resolve.
            credential: Catalog credential.
            user_id: Chat identity owning the aliases.
            detected_aliases: Aliases found in the raw description.

        Returns:
            FoodResolution with the accepted match and ranked candidates.
        """
        if not query or not query.strip():
            return FoodResolution(query=query)

        if user_id is not None:
            alias = self._lookup_alias(query, user_id, detected_aliases or [])
            if alias is not None:
                logger.info(
                    "Resolved '%s' from alias -> '%s' (%s)",
                    query, alias.resolved_food_name, alias.resolved_food_id,
                )
                try:
                    self._memory.increment_alias_usage(alias.id)
                except MemoryUnavailableError as e:
                    logger.warning("Could not bump alias usage for %s: %s", alias.id, e)
                return FoodResolution(query=query, alias=alias)

        candidates = await self.search(query, credential)
        if not candidates:
            logger.warning("No catalog hits for '%s'", query)
            return FoodResolution(query=query)

        top = candidates[0]
        if top.composite_score < self._settings.acceptance_threshold:
            logger.warning(
                "Best match for '%s' scored %.3f, below threshold",
                query, top.composite_score,
            )
            return FoodResolution(query=query, candidates=candidates)

        logger.info(
            "Selected '%s' (%s) from %s with score %.3f",
            top.food.name, top.food.id, top.source_tab, top.composite_score,
        )
        return FoodResolution(query=query, best=top, candidates=candidates)

    async def search(
        self, query: str, credential: CatalogCredential
    ) -> list[SearchCandidate]:
        """Search every partition concurrently and rank the merged hits.

        A failing partition contributes no hits instead of failing the
        whole search.
        """
        tabs = list(self._settings.partition_priorities.keys())
        results = await asyncio.gather(
            *(self._search_tab(query, tab, credential) for tab in tabs)
        )

        scored = [
            score_candidate(food, tab, query, self._settings)
            for tab, foods in zip(tabs, results)
            for food in foods
        ]
        ranked = rank_candidates(scored)
        for candidate in ranked[:5]:
            logger.debug(
                "  [%s] '%s' score=%.2f sim=%.2f",
                candidate.source_tab, candidate.food.name,
                candidate.composite_score, candidate.similarity_score,
            )
        return ranked

    async def _search_tab(
        self, query: str, tab: str, credential: CatalogCredential
    ) -> list[Food]:
        try:
            foods = await self._catalog.find_food(query, tab, credential)
        except Exception as e:
            logger.warning("Search in tab %s failed for '%s': %s", tab, query, e)
            return []
        foods = foods[: self._settings.top_n_per_partition]
        logger.debug("Tab %s: %d results for '%s'", tab, len(foods), query)
        return foods

    def _lookup_alias(
        self, query: str, user_id: str, detected: list[DetectedAlias]
    ) -> AliasRecord | None:
        hit = match_alias_for_item(query, detected)
        if hit is not None:
            return hit.alias
        try:
            return self._memory.find_alias(user_id, query)
        except MemoryUnavailableError as e:
            logger.warning("Alias lookup unavailable for '%s': %s", query, e)
            return None
