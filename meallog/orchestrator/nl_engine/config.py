"""Configuration for the meal interpreter.

Environment Variables:
    ANTHROPIC_MODEL: Claude model used to interpret meal descriptions.
        Defaults to "claude-sonnet-4-20250514".
"""

import os

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 2048


def get_model(override: str | None = None) -> str:
    """Get the Claude model to use for meal interpretation.

    Args:
        override: Model from configuration, used when set.

    Returns:
        Claude model identifier string.
    """
    if override:
        return override
    return os.environ.get("ANTHROPIC_MODEL", DEFAULT_MODEL)
