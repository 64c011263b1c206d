"""Area-of-effect geometry: parsing SRD text and resolving affected cells."""

from __future__ import annotations

import math
import re

from config import CONE_DOT_THRESHOLD, FEET_PER_CELL, LINE_WIDTH_FT
from engine.grid import cells_in_range, in_bounds, parse_spell_range
from models.combatants import AOEData, Ability
from models.encounter import ConeShape, GridPosition, LineShape, RadialShape

_SHAPES = r"(sphere|cube|cylinder|cone|line)"
_SELF_RE = re.compile(rf"^\s*self\s*\(\s*(\d+)-foot(?:-radius)?\s+{_SHAPES}\s*\)", re.IGNORECASE)
_RANGED_RE = re.compile(rf"\(\s*(\d+)-foot(?:-radius)?\s+{_SHAPES}\s*\)", re.IGNORECASE)
_DESCRIPTION_RE = re.compile(rf"\b(\d+)-foot(?:-radius)?\s+{_SHAPES}\b", re.IGNORECASE)


def _make_aoe(size: str, shape: str, origin: str) -> AOEData:
    shape = shape.lower()
    return AOEData(
        shape=shape,
        size=int(size),
        origin=origin,
        width=LINE_WIDTH_FT if shape == "line" else None,
    )


def parse_aoe_from_range(range_text: str) -> AOEData | None:
    """Extract an AOE from an SRD range string.

    "Self (15-foot cone)" gives a self-origin cone; "150 feet (20-foot-radius
    sphere)" gives a target-origin sphere. Plain ranges such as "30 feet",
    "Touch" or "Self" are single-target and return None.
    """
    if not range_text:
        return None
    match = _SELF_RE.match(range_text)
    if match:
        return _make_aoe(match.group(1), match.group(2), "self")
    match = _RANGED_RE.search(range_text)
    if match:
        return _make_aoe(match.group(1), match.group(2), "target")
    return None


def parse_aoe_from_description(text: str) -> AOEData | None:
    """Extract an AOE from spell description prose ("...a 20-foot-radius sphere of flame").

    Description-derived areas always originate at a chosen target point.
    """
    if not text:
        return None
    match = _DESCRIPTION_RE.search(text)
    if match is None:
        return None
    return _make_aoe(match.group(1), match.group(2), "target")


def complete_ability(ability: Ability) -> Ability:
    """Fill in a missing range or area from the ability's raw SRD range text.

    "Self (15-foot cone)" on an ability without aoe data turns it into a
    self-origin cone that needs no single target.
    """
    if not ability.srd_range:
        return ability
    update = {}
    if ability.range is None:
        update["range"] = parse_spell_range(ability.srd_range)
    if ability.aoe is None:
        aoe = parse_aoe_from_range(ability.srd_range)
        if aoe is not None:
            update["aoe"] = aoe
            update["requires_target"] = False
    return ability.model_copy(update=update) if update else ability


def build_aoe_shape(
    aoe: AOEData,
    caster_pos: GridPosition,
    aoe_origin: GridPosition | None = None,
    aoe_direction: GridPosition | None = None,
) -> RadialShape | ConeShape | LineShape:
    """Turn parsed AOE data into a concrete shape on the grid.

    Cones and lines always start at the caster. Spheres, cubes and cylinders
    centre on the chosen point, or on the caster when none is given. Without
    a direction, cones and lines point north.
    """
    origin = aoe_origin or caster_pos
    if aoe.shape in ("sphere", "cube", "cylinder"):
        return RadialShape(type=aoe.shape, origin=origin, radius_feet=aoe.size)

    direction = aoe_direction or GridPosition(row=caster_pos.row - 1, col=caster_pos.col)
    if aoe.shape == "cone":
        return ConeShape(origin=caster_pos, direction=direction, length_feet=aoe.size)
    return LineShape(
        origin=caster_pos,
        direction=direction,
        length_feet=aoe.size,
        width_feet=aoe.width or LINE_WIDTH_FT,
    )


def _unit_direction(origin: GridPosition, direction: GridPosition) -> tuple[float, float] | None:
    dx = direction.col - origin.col
    dy = direction.row - origin.row
    length = math.hypot(dx, dy)
    if length == 0:
        return None
    return dx / length, dy / length


def _cone_cells(shape: ConeShape, grid_size: int) -> list[GridPosition]:
    unit = _unit_direction(shape.origin, shape.direction)
    if unit is None:
        return []
    ndx, ndy = unit
    length = shape.length_feet // FEET_PER_CELL
    cells = []
    for row in range(shape.origin.row - length, shape.origin.row + length + 1):
        for col in range(shape.origin.col - length, shape.origin.col + length + 1):
            if not in_bounds(row, col, grid_size):
                continue
            cdx = col - shape.origin.col
            cdy = row - shape.origin.row
            if cdx == 0 and cdy == 0:
                continue
            dot = (cdx * ndx + cdy * ndy) / math.hypot(cdx, cdy)
            if dot >= CONE_DOT_THRESHOLD:
                cells.append(GridPosition(row=row, col=col))
    return cells


def _line_cells(shape: LineShape, grid_size: int) -> list[GridPosition]:
    unit = _unit_direction(shape.origin, shape.direction)
    if unit is None:
        return []
    ndx, ndy = unit
    length = shape.length_feet // FEET_PER_CELL
    width = max(1, shape.width_feet // FEET_PER_CELL)
    cells = []
    for row in range(shape.origin.row - length, shape.origin.row + length + 1):
        for col in range(shape.origin.col - length, shape.origin.col + length + 1):
            if not in_bounds(row, col, grid_size):
                continue
            cdx = col - shape.origin.col
            cdy = row - shape.origin.row
            if cdx == 0 and cdy == 0:
                continue
            projection = cdx * ndx + cdy * ndy
            if projection < 0 or projection > length:
                continue
            perpendicular = abs(-cdx * ndy + cdy * ndx)
            if perpendicular <= width / 2:
                cells.append(GridPosition(row=row, col=col))
    return cells


def get_aoe_cells(
    shape: RadialShape | ConeShape | LineShape,
    grid_size: int,
) -> list[GridPosition]:
    """Every in-bounds cell covered by an AOE shape, row-major.

    Spheres, cubes and cylinders are Chebyshev balls that include their
    origin cell. Cones and lines never include their origin and are empty
    when the direction cell equals the origin.
    """
    if isinstance(shape, RadialShape):
        return cells_in_range(shape.origin, shape.radius_feet, grid_size, include_origin=True)
    if isinstance(shape, ConeShape):
        return _cone_cells(shape, grid_size)
    if isinstance(shape, LineShape):
        return _line_cells(shape, grid_size)
    raise TypeError(f"Unknown AOE shape: {shape!r}")


def get_aoe_targets(
    shape: RadialShape | ConeShape | LineShape,
    positions: dict[str, GridPosition],
    grid_size: int,
) -> list[str]:
    """Ids of every token standing in an AOE, in position-map order."""
    covered = {cell.as_tuple() for cell in get_aoe_cells(shape, grid_size)}
    return [token_id for token_id, pos in positions.items() if pos.as_tuple() in covered]
