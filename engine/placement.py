"""Initial grid placement for a new encounter's combatants."""

from __future__ import annotations

import logging

from config import GRID_SIZE, PLAYER_ID
from engine.grid import in_bounds
from models.combatants import NPC
from models.encounter import GridPosition, MapRegion

logger = logging.getLogger(__name__)

Occupied = set[tuple[int, int]]


def find_edge_slot(occupied: Occupied, grid_size: int = GRID_SIZE) -> GridPosition:
    """Find a free cell near the top edge for an NPC.

    Scans a staging band (rows 1-3, every other column from 3) first, then
    any cell in rows 0-5, then the rest of the grid. Returns (0, 0) only
    when the whole grid is occupied.
    """
    for row in range(1, 4):
        for col in range(3, grid_size - 3, 2):
            if in_bounds(row, col, grid_size) and (row, col) not in occupied:
                return GridPosition(row=row, col=col)
    for row in range(0, min(6, grid_size)):
        for col in range(grid_size):
            if (row, col) not in occupied:
                return GridPosition(row=row, col=col)
    for row in range(6, grid_size):
        for col in range(grid_size):
            if (row, col) not in occupied:
                return GridPosition(row=row, col=col)
    logger.warning("Grid is full, stacking NPC at (0, 0)")
    return GridPosition(row=0, col=0)


def find_region_slot(
    region: MapRegion,
    occupied: Occupied,
    grid_size: int = GRID_SIZE,
) -> GridPosition | None:
    """First free cell inside a region's bounds (row-major), or None if full."""
    bounds = region.bounds
    for row in range(max(0, bounds.row_start), min(grid_size - 1, bounds.row_end) + 1):
        for col in range(max(0, bounds.col_start), min(grid_size - 1, bounds.col_end) + 1):
            if (row, col) not in occupied:
                return GridPosition(row=row, col=col)
    return None


def _nearest_free(center: GridPosition, occupied: Occupied, grid_size: int) -> GridPosition | None:
    for radius in range(grid_size):
        for row in range(center.row - radius, center.row + radius + 1):
            for col in range(center.col - radius, center.col + radius + 1):
                if max(abs(row - center.row), abs(col - center.col)) != radius:
                    continue
                if in_bounds(row, col, grid_size) and (row, col) not in occupied:
                    return GridPosition(row=row, col=col)
    return None


def _regions_for(npc: NPC, regions: list[MapRegion]) -> list[MapRegion]:
    if not npc.slug:
        return []
    slug = npc.slug.lower()
    return [r for r in regions if slug in {s.lower() for s in r.npc_slugs}]


def compute_initial_positions(
    npcs: list[NPC],
    regions: list[MapRegion] | None = None,
    seed_positions: dict[str, GridPosition] | None = None,
    grid_size: int = GRID_SIZE,
) -> dict[str, GridPosition]:
    """Compute starting cells for the player and every NPC.

    Deterministic for identical inputs and never puts two tokens on the
    same cell while free cells remain.

    Args:
        npcs: The encounter roster.
        regions: Named map regions; an NPC whose SRD slug is listed in a
            region is placed inside it when there is room.
        seed_positions: Positions carried over from exploration mode.
        grid_size: Side length of the square grid.

    Returns:
        Mapping of "player" and each NPC id to a cell.
    """
    regions = regions or []
    positions: dict[str, GridPosition] = {}
    occupied: Occupied = set()
    known_ids = {PLAYER_ID, *(npc.id for npc in npcs)}

    for token_id, pos in (seed_positions or {}).items():
        if token_id not in known_ids:
            continue
        if not in_bounds(pos.row, pos.col, grid_size) or pos.as_tuple() in occupied:
            logger.info("Ignoring seed position %s for %s", pos.as_tuple(), token_id)
            continue
        positions[token_id] = pos
        occupied.add(pos.as_tuple())

    if PLAYER_ID not in positions:
        center = GridPosition(row=grid_size // 2, col=grid_size // 2)
        pos = _nearest_free(center, occupied, grid_size) or center
        positions[PLAYER_ID] = pos
        occupied.add(pos.as_tuple())

    for npc in npcs:
        if npc.id in positions:
            continue
        pos = None
        for region in _regions_for(npc, regions):
            pos = find_region_slot(region, occupied, grid_size)
            if pos is not None:
                break
        if pos is None:
            pos = find_edge_slot(occupied, grid_size)
        positions[npc.id] = pos
        occupied.add(pos.as_tuple())

    return positions


def place_reinforcement(
    npc: NPC,
    positions: dict[str, GridPosition],
    regions: list[MapRegion] | None = None,
    grid_size: int = GRID_SIZE,
) -> GridPosition:
    """Pick a cell for an NPC joining an encounter already in progress."""
    occupied = {pos.as_tuple() for pos in positions.values()}
    for region in _regions_for(npc, regions or []):
        pos = find_region_slot(region, occupied, grid_size)
        if pos is not None:
            return pos
    return find_edge_slot(occupied, grid_size)
