"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./meallog.yaml or ./meallog.yml (working directory)
3. ~/.meallog/config.yaml or ~/.meallog/config.yml (user home)

Environment variables override YAML: MEALLOG_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
No config file means all defaults.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from meallog.services.catalog_client import DEFAULT_BASE_URL
from meallog.services.food_resolution import ResolutionSettings

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
ENV_PREFIX = "MEALLOG_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class CatalogConfig(BaseModel):
    """Remote nutrition catalog connection."""

    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 30.0


class SessionConfig(BaseModel):
    """Conversation lifetime."""

    inactivity_minutes: int = Field(default=10, gt=0)


class MemoryConfig(BaseModel):
    """Alias/preference store.

    When ``database_url`` is empty the DATABASE_URL / MEALLOG_DB_PATH
    environment variables (then ./meallog.db) are used.
    """

    enabled: bool = True
    database_url: str | None = None


class InterpreterConfig(BaseModel):
    """Meal text interpreter settings.

    ``model`` falls back to ANTHROPIC_MODEL, then the built-in default.
    """

    model: str | None = None
    max_tokens: int = 2048


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        """Accept lowercase level names."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level


class MeallogConfig(BaseModel):
    """Top-level configuration for the meal logging agent."""

    catalog: CatalogConfig = CatalogConfig()
    resolution: ResolutionSettings = ResolutionSettings()
    session: SessionConfig = SessionConfig()
    memory: MemoryConfig = MemoryConfig()
    interpreter: InterpreterConfig = InterpreterConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "meallog.yaml",
        Path.cwd() / "meallog.yml",
        Path.home() / ".meallog" / "config.yaml",
        Path.home() / ".meallog" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    """Coerce an env override to int, float, or bool; else keep the string."""
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply MEALLOG_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix, so
    ``MEALLOG_RESOLUTION_ACCEPTANCE_THRESHOLD`` maps to section
    ``resolution``, field ``acceptance_threshold``.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    known_sections = sorted(MeallogConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if isinstance(section_data, dict):
            section_data[matched_field] = _coerce(value)
    return data


def load_config(config_path: str | None = None) -> MeallogConfig:
    """Load configuration from YAML with env var resolution and overrides.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.meallog/).

    Returns:
        Parsed and validated MeallogConfig (defaults if no file found).

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file found, using defaults")

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return MeallogConfig(**data)
