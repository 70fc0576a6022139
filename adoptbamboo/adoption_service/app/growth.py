"""Deterministic bamboo growth model and weekly timeline sampler."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Final, Literal

GrowthStage = Literal["seedling", "juvenile", "mature", "full-grown"]

INITIAL_HEIGHT_M: Final = 0.1
MAX_HEIGHT_M: Final = 25.0
MIN_DIAMETER_CM: Final = 2.0
CARBON_FRACTION: Final = 0.47
CO2_PER_CARBON: Final = 3.67
TIMELINE_STEP_DAYS: Final = 7

# (upper bound in days, height at the segment start, segment start day, metres per day)
_HEIGHT_SEGMENTS: Final = (
    (30, INITIAL_HEIGHT_M, 0, 0.3),
    (90, 9.1, 30, 0.15),
    (180, 18.1, 90, 0.08),
    (365, 25.3, 180, 0.03),
)
_LATE_SEGMENT: Final = (30.85, 365, 0.01)

_STAGE_NOTES: Final[dict[str, tuple[str, ...]]] = {
    "seedling": (
        "New shoots emerging with fresh green leaves",
        "Strong root development",
        "Young culm starting to harden",
        "First leaves fully developed",
    ),
    "juvenile": (
        "Rapid growth with the culm getting taller",
        "Root system spreading wider",
        "New leaves growing densely",
        "Culm starting to show bamboo segments",
        "Green colour deepening",
    ),
    "mature": (
        "Bamboo has reached a stable height",
        "Culm getting harder and stronger",
        "Adult leaves with dark green colour",
        "Root system has matured",
        "Showing the traits of adult bamboo",
    ),
    "full-grown": (
        "Bamboo has reached full maturity",
        "Culm very strong and hard",
        "Dense, deep green foliage",
        "Ready for sustainable harvesting",
        "CO2 absorption at its optimum",
    ),
}


@dataclass(frozen=True, slots=True)
class GrowthSnapshot:
    height: float
    diameter: float
    co2_absorbed: float
    days_since_planting: int
    stage: GrowthStage


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    days_since_planting: int
    height: float
    diameter: float
    co2_absorbed: float
    stage: GrowthStage
    notes: str


def _round_half_up(value: float, places: int = 2) -> float:
    factor = 10**places
    return math.floor(value * factor + 0.5) / factor


def _raw_height(days: int) -> float:
    if days <= 0:
        return INITIAL_HEIGHT_M
    for upper, base, start, rate in _HEIGHT_SEGMENTS:
        if days <= upper:
            return base + (days - start) * rate
    base, start, rate = _LATE_SEGMENT
    return base + (days - start) * rate


def growth_stage(days: int) -> GrowthStage:
    if days <= 30:
        return "seedling"
    if days <= 180:
        return "juvenile"
    if days <= 365:
        return "mature"
    return "full-grown"


def growth_at(days: int) -> GrowthSnapshot:
    """Return the modelled size of a plant ``days`` after planting.

    Height follows a piecewise linear curve capped at 25 m. Diameter (cm) and
    absorbed CO2 (kg) are derived from the unrounded height, and every value
    is rounded half-up to two decimals.
    """

    height = min(_raw_height(days), MAX_HEIGHT_M)
    diameter = max(MIN_DIAMETER_CM, height * 0.8 + 2)
    co2 = math.pow(height, 1.5) * diameter * CARBON_FRACTION * CO2_PER_CARBON
    return GrowthSnapshot(
        height=_round_half_up(height),
        diameter=_round_half_up(diameter),
        co2_absorbed=_round_half_up(co2),
        days_since_planting=days,
        stage=growth_stage(days),
    )


def growth_note(days: int, stage: str, rng: random.Random | None = None) -> str:
    notes = _STAGE_NOTES.get(stage, _STAGE_NOTES["seedling"])
    chooser = rng or random
    return f"Day {days}: {chooser.choice(notes)}"


def timeline(days: int, rng: random.Random | None = None) -> list[TimelineEntry]:
    """Sample the growth curve weekly up to ``days``.

    A trailing entry for ``days`` itself is appended when it does not fall on
    a weekly boundary.
    """

    sample_days = list(range(TIMELINE_STEP_DAYS, days + 1, TIMELINE_STEP_DAYS))
    if days > 0 and days % TIMELINE_STEP_DAYS != 0:
        sample_days.append(days)

    entries: list[TimelineEntry] = []
    for day in sample_days:
        snapshot = growth_at(day)
        entries.append(
            TimelineEntry(
                days_since_planting=day,
                height=snapshot.height,
                diameter=snapshot.diameter,
                co2_absorbed=snapshot.co2_absorbed,
                stage=snapshot.stage,
                notes=growth_note(day, snapshot.stage, rng),
            )
        )
    return entries


def projected_growth(current_days: int, projection_days: int) -> GrowthSnapshot:
    return growth_at(current_days + projection_days)


def growth_rate(days: int) -> tuple[float, float]:
    """Average height (m/day) and CO2 (kg/day) gained since planting."""

    if days <= 0:
        return 0.0, 0.0
    snapshot = growth_at(days)
    return (
        _round_half_up(snapshot.height / days, 3),
        _round_half_up(snapshot.co2_absorbed / days, 3),
    )
