"""Read models for the alias/preference memory.

Detached snapshots of the ORM rows so callers never hold a live
database session.
"""

from pydantic import BaseModel, ConfigDict

from meallog.orchestrator.models.catalog import CatalogCredential


class AliasRecord(BaseModel):
    """Snapshot of a FoodAlias row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    input_term: str
    resolved_food_id: int
    resolved_food_name: str
    source_tab: str = ""
    use_count: int = 1
    is_active: bool = True
    is_manual: bool = False


class PreferenceRecord(BaseModel):
    """Snapshot of a ClarificationPreference row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    food_term: str
    clarification_type: str
    default_answer: str
    occurrence_count: int = 1
    is_confirmed: bool = False


class DetectedAlias(BaseModel):
    """An alias term found inside raw user text.

    Attributes:
        term: The alias term as matched in the text.
        start: Index where the match starts.
        length: Length of the matched text.
        alias: The alias record that matched.
    """

    term: str
    start: int
    length: int
    alias: AliasRecord

    @property
    def end(self) -> int:
        return self.start + self.length


class SavedSession(BaseModel):
    """Snapshot of a CatalogSession row."""

    model_config = ConfigDict(from_attributes=True)

    chat_id: str
    catalog_user_id: int
    session_key: str
    email: str = ""
    is_active: bool = True

    def to_credential(self) -> CatalogCredential:
        return CatalogCredential(user_id=self.catalog_user_id, token=self.session_key)
