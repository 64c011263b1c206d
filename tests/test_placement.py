"""Tests for initial combat placement."""

import pytest

from engine.placement import compute_initial_positions, find_edge_slot, place_reinforcement
from models.combatants import NPC
from models.encounter import GridPosition, MapRegion, RegionBounds


def _make_npcs(count: int, slug: str | None = None) -> list[NPC]:
    return [
        NPC(id=f"npc-{i}", name=f"Bandit {i}", slug=slug, ac=12, current_hp=11, max_hp=11)
        for i in range(count)
    ]


def _tavern(npc_slugs: list[str]) -> MapRegion:
    return MapRegion(
        id="tavern",
        name="The Rusty Flagon",
        type="tavern",
        bounds=RegionBounds(row_start=12, col_start=2, row_end=14, col_end=4),
        npc_slugs=npc_slugs,
    )


class TestComputeInitialPositions:
    """Tests for compute_initial_positions()."""

    def test_player_at_center(self):
        positions = compute_initial_positions(_make_npcs(1))
        assert positions["player"] == GridPosition(row=10, col=10)

    def test_edge_band_first(self):
        positions = compute_initial_positions(_make_npcs(3))
        assert positions["npc-0"] == GridPosition(row=1, col=3)
        assert positions["npc-1"] == GridPosition(row=1, col=5)
        assert positions["npc-2"] == GridPosition(row=1, col=7)

    def test_deterministic(self):
        npcs = _make_npcs(12)
        assert compute_initial_positions(npcs) == compute_initial_positions(npcs)

    @pytest.mark.parametrize("count", [0, 1, 25, 100, 399])
    def test_no_shared_cells_up_to_capacity(self, count):
        positions = compute_initial_positions(_make_npcs(count))
        cells = [p.as_tuple() for p in positions.values()]
        assert len(cells) == count + 1
        assert len(set(cells)) == len(cells)

    def test_small_grid_capacity(self):
        positions = compute_initial_positions(_make_npcs(24), grid_size=5)
        cells = [p.as_tuple() for p in positions.values()]
        assert len(set(cells)) == 25

    def test_seed_positions_win(self):
        seeds = {"player": GridPosition(row=2, col=2), "npc-0": GridPosition(row=1, col=3)}
        positions = compute_initial_positions(_make_npcs(2), seed_positions=seeds)
        assert positions["player"] == GridPosition(row=2, col=2)
        assert positions["npc-0"] == GridPosition(row=1, col=3)
        assert positions["npc-1"] == GridPosition(row=1, col=5)

    def test_bad_seeds_ignored(self):
        seeds = {
            "stranger": GridPosition(row=0, col=0),
            "npc-0": GridPosition(row=50, col=50),
            "npc-1": GridPosition(row=10, col=10),
            "player": GridPosition(row=10, col=10),
        }
        positions = compute_initial_positions(_make_npcs(2), seed_positions=seeds)
        assert "stranger" not in positions
        assert positions["npc-1"] == GridPosition(row=10, col=10)
        assert positions["player"] != GridPosition(row=10, col=10)
        assert len({p.as_tuple() for p in positions.values()}) == 3

    def test_region_by_slug(self):
        positions = compute_initial_positions(_make_npcs(2, slug="Bandit"), regions=[_tavern(["bandit"])])
        assert positions["npc-0"] == GridPosition(row=12, col=2)
        assert positions["npc-1"] == GridPosition(row=12, col=3)

    def test_full_region_falls_back_to_edge(self):
        positions = compute_initial_positions(_make_npcs(10, slug="bandit"), regions=[_tavern(["bandit"])])
        assert positions["npc-9"] == GridPosition(row=1, col=3)

    def test_unmatched_slug_uses_edge(self):
        positions = compute_initial_positions(_make_npcs(1, slug="goblin"), regions=[_tavern(["bandit"])])
        assert positions["npc-0"] == GridPosition(row=1, col=3)


class TestEdgeSlot:

    def test_widens_after_band(self):
        band = {(row, col) for row in range(1, 4) for col in range(3, 17, 2)}
        assert find_edge_slot(band, 20) == GridPosition(row=0, col=0)

    def test_full_grid_falls_back_to_origin(self):
        occupied = {(r, c) for r in range(3) for c in range(3)}
        assert find_edge_slot(occupied, 3) == GridPosition(row=0, col=0)

    def test_reinforcement_avoids_tokens(self):
        positions = compute_initial_positions(_make_npcs(3))
        npc = NPC(id="late", name="Late Bandit", ac=12, current_hp=11, max_hp=11)
        pos = place_reinforcement(npc, positions)
        assert pos.as_tuple() not in {p.as_tuple() for p in positions.values()}
