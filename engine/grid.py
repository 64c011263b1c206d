"""Grid distance, range validation, and positional advantage rules."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel

from config import DEFAULT_MELEE_REACH, FEET_PER_CELL
from models.combatants import AbilityRange
from models.encounter import GridPosition

_RANGE_PROPERTY_RE = re.compile(r"(?:thrown|ammunition)\s*\(range\s+(\d+)/(\d+)\)")
_FEET_RE = re.compile(r"^(\d+)\s*(?:feet|foot|ft)")
_MILE_RE = re.compile(r"^(\d+)\s*mile")

_ADVANTAGE_TARGET_CONDITIONS = ("restrained", "stunned", "paralyzed", "unconscious")
_DISADVANTAGE_ATTACKER_CONDITIONS = ("blinded", "frightened", "poisoned", "prone", "restrained")


class RangeCheck(BaseModel):
    """Whether a target is reachable by an attack."""
    in_range: bool
    distance: int                   # Feet
    disadvantage: bool = False      # Long range
    reason: str | None = None


class CombatModifier(BaseModel):
    """A single source of advantage or disadvantage."""
    type: Literal["advantage", "disadvantage"]
    source: str


def grid_distance(a: GridPosition, b: GridPosition) -> int:
    """Chebyshev distance in squares (5e grid rules: diagonals cost 1)."""
    return max(abs(a.row - b.row), abs(a.col - b.col))


def feet_distance(a: GridPosition, b: GridPosition) -> int:
    """Distance in feet between two cells."""
    return grid_distance(a, b) * FEET_PER_CELL


def is_adjacent(a: GridPosition, b: GridPosition) -> bool:
    """Check if two cells are within 5ft of each other, diagonals included."""
    return feet_distance(a, b) <= FEET_PER_CELL


def in_bounds(row: int, col: int, grid_size: int) -> bool:
    """Check if coordinates are within a square grid."""
    return 0 <= row < grid_size and 0 <= col < grid_size


def cells_in_range(
    origin: GridPosition,
    range_feet: int,
    grid_size: int,
    include_origin: bool = False,
) -> list[GridPosition]:
    """All in-bounds cells within range_feet of origin (Chebyshev), row-major."""
    squares = range_feet // FEET_PER_CELL
    cells = []
    for row in range(origin.row - squares, origin.row + squares + 1):
        for col in range(origin.col - squares, origin.col + squares + 1):
            if not in_bounds(row, col, grid_size):
                continue
            if not include_origin and row == origin.row and col == origin.col:
                continue
            cells.append(GridPosition(row=row, col=col))
    return cells


# ---------------------------------------------------------------------------
# SRD range parsing
# ---------------------------------------------------------------------------


def parse_weapon_range(category: str, properties: list[str]) -> AbilityRange:
    """Parse weapon range from an SRD category and its properties.

    Args:
        category: e.g. "Simple Melee Weapons", "Martial Ranged Weapons".
        properties: e.g. ["reach"], ["thrown (range 20/60)"].

    Returns:
        The parsed AbilityRange. Unknown categories fall back to melee.
    """
    lower_category = category.lower()
    is_melee = "melee" in lower_category
    is_ranged = "ranged" in lower_category
    has_reach = any(p.lower() == "reach" for p in properties)
    reach = 10 if has_reach else DEFAULT_MELEE_REACH

    short_range = long_range = None
    has_thrown = False
    for prop in properties:
        lower = prop.lower()
        match = _RANGE_PROPERTY_RE.search(lower)
        if match:
            short_range, long_range = int(match.group(1)), int(match.group(2))
            if lower.startswith("thrown"):
                has_thrown = True

    if is_melee and has_thrown:
        return AbilityRange(type="both", reach=reach, short_range=short_range, long_range=long_range)
    if is_melee and not is_ranged:
        return AbilityRange(type="melee", reach=reach)
    if is_ranged:
        return AbilityRange(type="ranged", short_range=short_range, long_range=long_range)
    return AbilityRange(type="melee", reach=DEFAULT_MELEE_REACH)


def parse_spell_range(range_text: str) -> AbilityRange:
    """Parse an SRD spell range string ("30 feet", "Touch", "Self", "1 mile")."""
    lower = range_text.lower().strip()

    if lower == "self" or lower.startswith("self "):
        return AbilityRange(type="self")
    if lower == "touch":
        return AbilityRange(type="touch", reach=DEFAULT_MELEE_REACH)

    match = _FEET_RE.match(lower)
    if match:
        return AbilityRange(type="ranged", short_range=int(match.group(1)))
    match = _MILE_RE.match(lower)
    if match:
        return AbilityRange(type="ranged", short_range=int(match.group(1)) * 5280)

    return AbilityRange(type="ranged")


# ---------------------------------------------------------------------------
# Range validation
# ---------------------------------------------------------------------------


def check_melee_range(
    attacker: GridPosition,
    target: GridPosition,
    reach: int | None = None,
) -> RangeCheck:
    """Check whether the target is within melee reach."""
    dist = feet_distance(attacker, target)
    reach = reach or DEFAULT_MELEE_REACH
    if dist <= reach:
        return RangeCheck(in_range=True, distance=dist)
    return RangeCheck(
        in_range=False,
        distance=dist,
        reason=f"Target is {dist} ft away (melee reach: {reach} ft)",
    )


def check_ranged_range(
    attacker: GridPosition,
    target: GridPosition,
    short_range: int,
    long_range: int,
) -> RangeCheck:
    """Check a ranged attack; beyond short range attacks have disadvantage."""
    dist = feet_distance(attacker, target)
    if dist <= short_range:
        return RangeCheck(in_range=True, distance=dist)
    if dist <= long_range:
        return RangeCheck(
            in_range=True,
            distance=dist,
            disadvantage=True,
            reason=f"Target is {dist} ft away (beyond normal range of {short_range} ft, disadvantage)",
        )
    return RangeCheck(
        in_range=False,
        distance=dist,
        reason=f"Target is {dist} ft away (max range: {long_range} ft)",
    )


def validate_attack_range(
    attacker: GridPosition,
    target: GridPosition,
    ability_range: AbilityRange | None = None,
) -> RangeCheck:
    """Check range for any ability. Missing range data means a 5ft melee attack."""
    if ability_range is None:
        return check_melee_range(attacker, target, DEFAULT_MELEE_REACH)

    if ability_range.type == "self":
        return RangeCheck(in_range=True, distance=0)
    if ability_range.type in ("touch", "melee"):
        return check_melee_range(attacker, target, ability_range.reach)
    if ability_range.type == "ranged":
        short = ability_range.short_range or 30
        return check_ranged_range(attacker, target, short, ability_range.long_range or short)

    # Thrown weapons: melee first, then ranged
    melee = check_melee_range(attacker, target, ability_range.reach)
    if melee.in_range:
        return melee
    return check_ranged_range(
        attacker,
        target,
        ability_range.short_range or 20,
        ability_range.long_range or 60,
    )


def validate_movement(
    start: GridPosition,
    end: GridPosition,
    speed_feet: int,
) -> RangeCheck:
    """Check a move against a walking speed."""
    dist = feet_distance(start, end)
    if dist <= speed_feet:
        return RangeCheck(in_range=True, distance=dist)
    return RangeCheck(
        in_range=False,
        distance=dist,
        reason=f"{dist} ft exceeds movement speed of {speed_feet} ft",
    )


# ---------------------------------------------------------------------------
# Advantage / disadvantage from position and conditions
# ---------------------------------------------------------------------------


def get_positional_modifiers(
    attacker: GridPosition,
    target: GridPosition,
    attack_type: Literal["melee", "ranged"],
    target_conditions: list[str],
    attacker_conditions: list[str],
    positions: dict[str, GridPosition],
    attacker_id: str,
) -> list[CombatModifier]:
    """Collect advantage/disadvantage sources for one attack.

    Args:
        attacker: Attacker's cell.
        target: Target's cell.
        attack_type: "melee" or "ranged".
        target_conditions: Conditions on the target.
        attacker_conditions: Conditions on the attacker.
        positions: Every token on the grid, keyed by id.
        attacker_id: Skipped when looking for adjacent hostiles.

    Returns:
        Every applicable modifier, in rule order.
    """
    mods: list[CombatModifier] = []
    target_lower = {c.lower() for c in target_conditions}
    attacker_lower = {c.lower() for c in attacker_conditions}

    if attack_type == "ranged":
        for token_id, pos in positions.items():
            if token_id == attacker_id:
                continue
            if is_adjacent(attacker, pos):
                mods.append(CombatModifier(type="disadvantage", source="hostile within 5 ft (ranged)"))
                break

    for condition in _ADVANTAGE_TARGET_CONDITIONS:
        if condition in target_lower:
            mods.append(CombatModifier(type="advantage", source=f"target is {condition}"))

    if "prone" in target_lower:
        if attack_type == "melee" and is_adjacent(attacker, target):
            mods.append(CombatModifier(type="advantage", source="target is prone (melee)"))
        else:
            mods.append(CombatModifier(type="disadvantage", source="target is prone (ranged/distant)"))

    for condition in _DISADVANTAGE_ATTACKER_CONDITIONS:
        if condition in attacker_lower:
            mods.append(CombatModifier(type="disadvantage", source=f"attacker is {condition}"))

    return mods


def resolve_advantage(mods: list[CombatModifier]) -> Literal["advantage", "disadvantage", "normal"]:
    """Collapse modifiers into a single roll mode. Both present cancel out."""
    has_adv = any(m.type == "advantage" for m in mods)
    has_disadv = any(m.type == "disadvantage" for m in mods)
    if has_adv and has_disadv:
        return "normal"
    if has_adv:
        return "advantage"
    if has_disadv:
        return "disadvantage"
    return "normal"
