"""Per-user alias and clarification-preference memory.

Three kinds of memory are kept per chat identity:

- Food aliases: the user's own wording mapped to a specific catalog food.
  At most one active alias exists per (user, normalized term). Saving a
  different food for the same term overwrites it and resets its usage
  counter; saving the same food increments the counter.
- Clarification preferences: answers to recurring clarification
  questions. A preference becomes confirmed (auto-applied) only after the
  same answer is recorded twice in a row; a different answer resets it.
- Saved logins: the catalog credential of each chat, restored on startup
  so users stay logged in across restarts.

The memory collaborator is optional. Call sites depend on the
UserMemoryService protocol; NullMemoryService stands in when no store is
configured, which silently disables alias short-circuiting and
preference auto-application.

Example:
    memory = SqlUserMemoryService(make_session_factory(engine))
    memory.save_alias("chat-1", "Pollo", "Chicken Breast, Raw", 42, "COMMON_FOODS")
    hits = detect_aliases("200g de pollo", memory.list_aliases("chat-1"))
"""

import logging
import re
from collections.abc import Generator
from contextlib import contextmanager
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from meallog.db.models import (
    CatalogSession,
    ClarificationPreference,
    FoodAlias,
    utc_now_iso,
)
from meallog.errors import MemoryUnavailableError
from meallog.orchestrator.models import (
    AliasRecord,
    CatalogCredential,
    ClarificationType,
    DetectedAlias,
    PreferenceRecord,
    SavedSession,
)

logger = logging.getLogger(__name__)

CONFIRMATION_THRESHOLD = 2
PROMPT_PREFERENCE_LIMIT = 20
MIN_SIGNIFICANT_WORD_LENGTH = 3

_TYPE_DESCRIPTIONS = {
    ClarificationType.MISSING_SIZE.value: "size",
    ClarificationType.MISSING_WEIGHT.value: "weight",
    ClarificationType.AMBIGUOUS_UNIT.value: "unit type",
    ClarificationType.FOOD_NOT_FOUND.value: "food type",
}


def normalize_term(term: str | None) -> str:
    """Trim and lowercase a memory key."""
    if not term:
        return ""
    return term.strip().lower()


# ============================================================================
# Service interface
# ============================================================================


class UserMemoryService(Protocol):
    """Interface of the alias/preference store."""

    @property
    def is_available(self) -> bool: ...

    def find_alias(self, user_id: str, term: str) -> AliasRecord | None: ...

    def list_aliases(self, user_id: str) -> list[AliasRecord]: ...

    def save_alias(
        self,
        user_id: str,
        term: str,
        food_name: str,
        food_id: int,
        source_tab: str,
        is_manual: bool = False,
    ) -> AliasRecord | None: ...

    def increment_alias_usage(self, alias_id: str) -> None: ...

    def delete_alias(self, alias_id: str) -> None: ...

    def record_clarification_answer(
        self, user_id: str, term: str, clarification_type: str, answer: str
    ) -> PreferenceRecord | None: ...

    def find_confirmed_preference(
        self, user_id: str, term: str, clarification_type: str
    ) -> PreferenceRecord | None: ...

    def list_clarification_preferences(
        self, user_id: str, confirmed_only: bool = True
    ) -> list[PreferenceRecord]: ...

    def save_session(
        self, chat_id: str, credential: CatalogCredential, email: str
    ) -> None: ...

    def list_active_sessions(self) -> list[SavedSession]: ...

    def deactivate_session(self, chat_id: str) -> None: ...


class NullMemoryService:
    """No-op memory used when no store is configured."""

    @property
    def is_available(self) -> bool:
        return False

    def find_alias(self, user_id: str, term: str) -> AliasRecord | None:
        return None

    def list_aliases(self, user_id: str) -> list[AliasRecord]:
        return []

    def save_alias(
        self,
        user_id: str,
        term: str,
        food_name: str,
        food_id: int,
        source_tab: str,
        is_manual: bool = False,
    ) -> AliasRecord | None:
        return None

    def increment_alias_usage(self, alias_id: str) -> None:
        return None

    def delete_alias(self, alias_id: str) -> None:
        return None

    def record_clarification_answer(
        self, user_id: str, term: str, clarification_type: str, answer: str
    ) -> PreferenceRecord | None:
        return None

    def find_confirmed_preference(
        self, user_id: str, term: str, clarification_type: str
    ) -> PreferenceRecord | None:
        return None

    def list_clarification_preferences(
        self, user_id: str, confirmed_only: bool = True
    ) -> list[PreferenceRecord]:
        return []

    def save_session(
        self, chat_id: str, credential: CatalogCredential, email: str
    ) -> None:
        return None

    def list_active_sessions(self) -> list[SavedSession]:
        return []

    def deactivate_session(self, chat_id: str) -> None:
        return None


# ============================================================================
# SQLAlchemy implementation
# ============================================================================


class SqlUserMemoryService:
    """UserMemoryService backed by SQLAlchemy.

    Each call runs in its own committed session. Store failures surface
    as MemoryUnavailableError so callers can degrade gracefully.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        """Initialize with a session factory.

        Args:
            session_factory: Factory bound to an engine whose tables exist.
        """
        self._session_factory = session_factory

    @property
    def is_available(self) -> bool:
        return True

    @contextmanager
    def _scope(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise MemoryUnavailableError(f"Memory store error: {e}") from e
        finally:
            db.close()

    @staticmethod
    def _active_alias(db: Session, user_id: str, term: str) -> FoodAlias | None:
        return db.execute(
            select(FoodAlias)
            .where(
                FoodAlias.user_id == user_id,
                FoodAlias.input_term == term,
                FoodAlias.is_active.is_(True),
            )
            .limit(1)
        ).scalar_one_or_none()

    def find_alias(self, user_id: str, term: str) -> AliasRecord | None:
        """Find the active alias for a term.

        Args:
            user_id: Chat identity.
            term: Raw term; normalized before lookup.

        Returns:
            The alias snapshot, or None.
        """
        normalized = normalize_term(term)
        if not normalized:
            return None
        with self._scope() as db:
            alias = self._active_alias(db, user_id, normalized)
            if alias is None:
                logger.debug("No alias for user %s, term '%s'", user_id, normalized)
                return None
            return AliasRecord.model_validate(alias)

    def list_aliases(self, user_id: str) -> list[AliasRecord]:
        """List active aliases, most used first."""
        with self._scope() as db:
            rows = db.execute(
                select(FoodAlias)
                .where(FoodAlias.user_id == user_id, FoodAlias.is_active.is_(True))
                .order_by(FoodAlias.use_count.desc(), FoodAlias.created_at)
            ).scalars()
            return [AliasRecord.model_validate(row) for row in rows]

    def save_alias(
        self,
        user_id: str,
        term: str,
        food_name: str,
        food_id: int,
        source_tab: str,
        is_manual: bool = False,
    ) -> AliasRecord | None:
        """Create or update the alias for a term.

        An existing active alias for the same term keeps its row: the same
        food increments use_count, a different food replaces the mapping
        and resets use_count to 1.

        Returns:
            The saved alias snapshot.
        """
        normalized = normalize_term(term)
        with self._scope() as db:
            alias = self._active_alias(db, user_id, normalized)
            if alias is not None:
                if alias.resolved_food_id != food_id:
                    logger.info(
                        "Alias competition: '%s' changing from '%s' to '%s'",
                        normalized, alias.resolved_food_name, food_name,
                    )
                    alias.resolved_food_id = food_id
                    alias.resolved_food_name = food_name
                    alias.source_tab = source_tab
                    alias.use_count = 1
                    alias.is_manual = is_manual
                else:
                    alias.use_count += 1
                alias.last_used_at = utc_now_iso()
            else:
                alias = FoodAlias(
                    user_id=user_id,
                    input_term=normalized,
                    resolved_food_id=food_id,
                    resolved_food_name=food_name,
                    source_tab=source_tab,
                    use_count=1,
                    is_active=True,
                    is_manual=is_manual,
                )
                db.add(alias)
                logger.info("Created alias: '%s' -> '%s'", normalized, food_name)
            db.flush()
            return AliasRecord.model_validate(alias)

    def increment_alias_usage(self, alias_id: str) -> None:
        """Bump use_count and last_used_at for an alias."""
        with self._scope() as db:
            alias = db.get(FoodAlias, alias_id)
            if alias is None:
                return
            alias.use_count += 1
            alias.last_used_at = utc_now_iso()

    def delete_alias(self, alias_id: str) -> None:
        """Soft-delete an alias (is_active=False)."""
        with self._scope() as db:
            alias = db.get(FoodAlias, alias_id)
            if alias is None:
                return
            alias.is_active = False
            logger.info("Deactivated alias %s ('%s')", alias_id, alias.input_term)

    def record_clarification_answer(
        self, user_id: str, term: str, clarification_type: str, answer: str
    ) -> PreferenceRecord | None:
        """Record an answer for (term, type) and update confirmation.

        The same answer increments occurrence_count and confirms the
        preference once it reaches CONFIRMATION_THRESHOLD. A different
        answer replaces it, resets the count to 1 and un-confirms it.

        Returns:
            The updated preference snapshot, or None for blank input.
        """
        normalized = normalize_term(term)
        answer = answer.strip()
        if not normalized or not answer:
            return None
        with self._scope() as db:
            pref = db.execute(
                select(ClarificationPreference)
                .where(
                    ClarificationPreference.user_id == user_id,
                    ClarificationPreference.food_term == normalized,
                    ClarificationPreference.clarification_type == clarification_type,
                )
                .limit(1)
            ).scalar_one_or_none()
            if pref is None:
                pref = ClarificationPreference(
                    user_id=user_id,
                    food_term=normalized,
                    clarification_type=clarification_type,
                    default_answer=answer,
                    occurrence_count=1,
                    is_confirmed=False,
                )
                db.add(pref)
            elif pref.default_answer.strip().lower() == answer.lower():
                pref.occurrence_count += 1
                if pref.occurrence_count >= CONFIRMATION_THRESHOLD:
                    pref.is_confirmed = True
            else:
                pref.default_answer = answer
                pref.occurrence_count = 1
                pref.is_confirmed = False
            pref.last_used_at = utc_now_iso()
            db.flush()
            logger.debug(
                "Preference '%s'/%s -> '%s' (count=%d, confirmed=%s)",
                normalized, clarification_type, pref.default_answer,
                pref.occurrence_count, pref.is_confirmed,
            )
            return PreferenceRecord.model_validate(pref)

    def find_confirmed_preference(
        self, user_id: str, term: str, clarification_type: str
    ) -> PreferenceRecord | None:
        """Find a confirmed preference for (term, type)."""
        normalized = normalize_term(term)
        if not normalized:
            return None
        with self._scope() as db:
            pref = db.execute(
                select(ClarificationPreference)
                .where(
                    ClarificationPreference.user_id == user_id,
                    ClarificationPreference.food_term == normalized,
                    ClarificationPreference.clarification_type == clarification_type,
                    ClarificationPreference.is_confirmed.is_(True),
                )
                .limit(1)
            ).scalar_one_or_none()
            return PreferenceRecord.model_validate(pref) if pref else None

    def list_clarification_preferences(
        self, user_id: str, confirmed_only: bool = True
    ) -> list[PreferenceRecord]:
        """List clarification preferences, highest count first."""
        with self._scope() as db:
            stmt = select(ClarificationPreference).where(
                ClarificationPreference.user_id == user_id
            )
            if confirmed_only:
                stmt = stmt.where(ClarificationPreference.is_confirmed.is_(True))
            rows = db.execute(
                stmt.order_by(ClarificationPreference.occurrence_count.desc())
            ).scalars()
            return [PreferenceRecord.model_validate(row) for row in rows]

    def save_session(
        self, chat_id: str, credential: CatalogCredential, email: str
    ) -> None:
        """Save (or refresh) the catalog login for a chat.

        Args:
            chat_id: Chat identity that logged in.
            credential: Credential returned by the catalog login.
            email: Login email.
        """
        with self._scope() as db:
            row = db.execute(
                select(CatalogSession).where(CatalogSession.chat_id == chat_id)
            ).scalar_one_or_none()
            if row is None:
                row = CatalogSession(chat_id=chat_id)
                db.add(row)
            row.catalog_user_id = credential.user_id
            row.session_key = credential.token
            row.email = email
            row.is_active = True
            row.last_updated_at = utc_now_iso()
            logger.info("Saved catalog session for chat %s", chat_id)

    def list_active_sessions(self) -> list[SavedSession]:
        """List every saved login that has not been logged out."""
        with self._scope() as db:
            rows = db.execute(
                select(CatalogSession)
                .where(CatalogSession.is_active.is_(True))
                .order_by(CatalogSession.created_at)
            ).scalars()
            return [SavedSession.model_validate(row) for row in rows]

    def deactivate_session(self, chat_id: str) -> None:
        """Mark the saved login for a chat as logged out. Idempotent."""
        with self._scope() as db:
            row = db.execute(
                select(CatalogSession).where(CatalogSession.chat_id == chat_id)
            ).scalar_one_or_none()
            if row is None:
                return
            row.is_active = False
            row.last_updated_at = utc_now_iso()
            logger.info("Deactivated catalog session for chat %s", chat_id)


# ============================================================================
# Alias detection and matching
# ============================================================================


def detect_aliases(text: str, aliases: list[AliasRecord]) -> list[DetectedAlias]:
    """Find alias terms inside raw user text.

    Terms are tried longest first so a short alias never shadows a longer
    one, matches must sit on word boundaries, and a match overlapping an
    already accepted one is skipped.

    Args:
        text: Raw user text.
        aliases: The user's active aliases.

    Returns:
        Non-overlapping hits ordered by position in the text.
    """
    if not text or not aliases:
        return []

    accepted: list[DetectedAlias] = []
    for alias in sorted(aliases, key=lambda a: len(a.input_term), reverse=True):
        term = normalize_term(alias.input_term)
        if not term:
            continue
        pattern = re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < hit.end and hit.start < end for hit in accepted):
                continue
            accepted.append(
                DetectedAlias(
                    term=match.group(0),
                    start=start,
                    length=end - start,
                    alias=alias,
                )
            )

    return sorted(accepted, key=lambda hit: hit.start)


def substitute_aliases(text: str, detected: list[DetectedAlias]) -> str:
    """Replace each detected alias span with its resolved food name."""
    result = text
    for hit in sorted(detected, key=lambda h: h.start, reverse=True):
        result = result[: hit.start] + hit.alias.resolved_food_name + result[hit.end :]
    return result


def _significant_words(text: str) -> set[str]:
    return {
        word
        for word in re.findall(r"\w+", text.lower())
        if len(word) >= MIN_SIGNIFICANT_WORD_LENGTH
    }


def match_alias_for_item(
    item_name: str, detected: list[DetectedAlias]
) -> DetectedAlias | None:
    """Map an interpreter item name back to a detected alias.

    Tries, in order: substring match against the alias term, substring
    match against the alias's resolved food name, then overlap of
    significant words (longer than two characters).
    """
    name = normalize_term(item_name)
    if not name or not detected:
        return None

    for hit in detected:
        term = normalize_term(hit.alias.input_term)
        if term and (term in name or name in term):
            return hit

    for hit in detected:
        resolved = normalize_term(hit.alias.resolved_food_name)
        if resolved and (resolved in name or name in resolved):
            return hit

    item_words = _significant_words(name)
    if item_words:
        for hit in detected:
            alias_words = _significant_words(
                f"{hit.alias.input_term} {hit.alias.resolved_food_name}"
            )
            if item_words & alias_words:
                return hit

    return None


# ============================================================================
# Prompt formatting
# ============================================================================


def format_preferences_for_prompt(
    aliases: list[AliasRecord], preferences: list[PreferenceRecord]
) -> str:
    """Render the user's memory as interpreter prompt context.

    Args:
        aliases: Active aliases (most used first).
        preferences: Confirmed clarification preferences.

    Returns:
        Sectioned text, or a fixed sentence when nothing is stored.
    """
    lines: list[str] = []

    if aliases:
        lines.append(
            "FOOD ALIASES (use the resolved name when the user mentions the input term):"
        )
        for alias in aliases[:PROMPT_PREFERENCE_LIMIT]:
            lines.append(f'  - "{alias.input_term}" → "{alias.resolved_food_name}"')
        lines.append("")

    if preferences:
        lines.append(
            "CLARIFICATION PREFERENCES (apply these defaults, do NOT ask again):"
        )
        for pref in preferences[:PROMPT_PREFERENCE_LIMIT]:
            description = _TYPE_DESCRIPTIONS.get(pref.clarification_type, "default")
            lines.append(
                f'  - When "{pref.food_term}" {description} is unclear → '
                f'use "{pref.default_answer}"'
            )
        lines.append("")

    if not lines:
        return "No saved preferences for this user."
    return "\n".join(lines).rstrip()
