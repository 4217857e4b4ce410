"""Test doubles shared across the suite."""

from tests.helpers.fake_catalog import FakeCatalog, make_food
from tests.helpers.scripted_interpreter import (
    ScriptedInterpreter,
    clarification_output,
    meal_output,
)

__all__ = [
    "FakeCatalog",
    "ScriptedInterpreter",
    "clarification_output",
    "make_food",
    "meal_output",
]
