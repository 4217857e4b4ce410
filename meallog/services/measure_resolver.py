"""Resolve a requested unit against a food's declared serving measures.

The catalog write API always takes a gram total. A resolution therefore
returns both the measure and an ``is_raw_grams`` flag: when set, the
user's quantity is already grams; otherwise it is multiplied by the
measure's gram value.

Example:
    resolution = resolve_measure(food.measures, "grams")
    grams = quantity if resolution.is_raw_grams else quantity * resolution.measure.value
"""

import re
from typing import NamedTuple

from meallog.orchestrator.models import Measure

DEFAULT_MEASURE = Measure(id=1074000, name="g", value=1.0)

GRAM_SYNONYMS = frozenset({"grams", "gram", "gms", "gm", "g"})

_NUMERIC_GRAM_PATTERN = re.compile(r"^\d+\s*g$", re.IGNORECASE)


class MeasureResolution(NamedTuple):
    measure: Measure
    is_raw_grams: bool


def is_gram_unit(unit: str) -> bool:
    """Whether ``unit`` is one of the gram-family synonyms."""
    return unit.strip().lower() in GRAM_SYNONYMS


def resolve_measure(measures: list[Measure] | None, unit: str | None) -> MeasureResolution:
    """Pick the measure for ``unit`` among ``measures``.

    Order of attempts:
    1. Exact case-insensitive name match.
    2. For gram requests, a measure literally named "g".
    3. For gram requests, a "<number> g" measure, then any measure ending
       in "g" that is not a serving (raw grams).
    4. For gram requests, the first measure (raw grams).
    5. Substring containment in either direction.
    6. The synthetic 1-gram default.

    Args:
        measures: Measures declared by the catalog food.
        unit: Unit string from the meal request.

    Returns:
        MeasureResolution with the chosen measure and raw-gram flag.
    """
    if not measures or not unit or not unit.strip():
        return MeasureResolution(DEFAULT_MEASURE, False)

    requested = unit.strip().lower()

    for measure in measures:
        if measure.name.lower() == requested:
            return MeasureResolution(measure, False)

    if requested in GRAM_SYNONYMS:
        for measure in measures:
            if measure.name.lower() == "g":
                return MeasureResolution(measure, False)

        for measure in measures:
            if _NUMERIC_GRAM_PATTERN.match(measure.name):
                return MeasureResolution(measure, True)

        for measure in measures:
            name = measure.name.lower()
            if name.endswith("g") and "serving" not in name:
                return MeasureResolution(measure, True)

        return MeasureResolution(measures[0], True)

    for measure in measures:
        if requested in measure.name.lower():
            return MeasureResolution(measure, False)

    for measure in measures:
        if measure.name and measure.name.lower() in requested:
            return MeasureResolution(measure, False)

    return MeasureResolution(DEFAULT_MEASURE, False)
