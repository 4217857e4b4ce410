"""Catalog-side models: foods, serving measures, credentials, and scored hits."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CatalogTab(str, Enum):
    """Catalog partitions searched independently."""

    CUSTOM = "CUSTOM"
    FAVOURITES = "FAVOURITES"
    COMMON_FOODS = "COMMON_FOODS"
    SUPPLEMENTS = "SUPPLEMENTS"
    ALL = "ALL"


class Measure(BaseModel):
    """A named serving unit for a food.

    Attributes:
        id: Catalog measure id.
        name: Display name (e.g. "g", "1 large", "100 g", "serving").
        value: Gram equivalent of one unit of this measure.
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int = Field(default=0, description="Catalog measure id")
    name: str = Field(..., description="Measure display name")
    value: float = Field(default=0.0, description="Grams per unit")


class Food(BaseModel):
    """A catalog food record."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(..., description="Catalog food id")
    name: str = Field(..., description="Catalog food name")
    measures: list[Measure] = Field(default_factory=list)


class SearchCandidate(BaseModel):
    """A scored catalog hit, produced fresh per search call.

    Attributes:
        food: The matching catalog food.
        source_tab: Partition the hit came from.
        composite_score: Weighted similarity plus match bonuses.
        similarity_score: Raw bigram similarity (tie-breaker).
    """

    model_config = ConfigDict(from_attributes=True)

    food: Food
    source_tab: str
    composite_score: float
    similarity_score: float


class CatalogCredential(BaseModel):
    """Opaque credential pair passed through to the catalog."""

    model_config = ConfigDict(frozen=True)

    user_id: int = Field(..., description="Catalog user id")
    token: str = Field(..., description="Catalog session key")

    def to_auth_payload(self) -> dict:
        """Serialize as the catalog's auth object."""
        return {"userId": self.user_id, "token": self.token}
