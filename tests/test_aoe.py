"""Tests for AOE parsing, shape construction, covered cells, and targets."""

import pytest

from engine.aoe import (
    build_aoe_shape,
    get_aoe_cells,
    get_aoe_targets,
    parse_aoe_from_description,
    parse_aoe_from_range,
)
from models.combatants import AOEData
from models.encounter import ConeShape, GridPosition, LineShape, RadialShape

GRID = 20


def _pos(row: int, col: int) -> GridPosition:
    return GridPosition(row=row, col=col)


def _cells(shape) -> set[tuple[int, int]]:
    return {c.as_tuple() for c in get_aoe_cells(shape, GRID)}


class TestParseRange:
    """Tests for parse_aoe_from_range()."""

    def test_self_sphere(self):
        aoe = parse_aoe_from_range("Self (20-foot-radius sphere)")
        assert (aoe.shape, aoe.size, aoe.origin) == ("sphere", 20, "self")

    def test_self_cone(self):
        aoe = parse_aoe_from_range("Self (15-foot cone)")
        assert (aoe.shape, aoe.size, aoe.origin) == ("cone", 15, "self")
        assert aoe.width is None

    def test_self_line_gets_width(self):
        aoe = parse_aoe_from_range("Self (100-foot line)")
        assert (aoe.shape, aoe.size, aoe.width) == ("line", 100, 5)

    def test_self_cube_and_cylinder(self):
        assert parse_aoe_from_range("Self (15-foot cube)").shape == "cube"
        assert parse_aoe_from_range("Self (10-foot-radius cylinder)").shape == "cylinder"

    def test_ranged_sphere_originates_at_target(self):
        aoe = parse_aoe_from_range("150 feet (20-foot-radius sphere)")
        assert (aoe.shape, aoe.size, aoe.origin) == ("sphere", 20, "target")

    @pytest.mark.parametrize("text", ["30 feet", "Touch", "Self", "", "1 mile"])
    def test_single_target_ranges(self, text):
        assert parse_aoe_from_range(text) is None


class TestParseDescription:
    """Tests for parse_aoe_from_description()."""

    def test_sphere_in_prose(self):
        aoe = parse_aoe_from_description("A 20-foot-radius sphere of flame blossoms")
        assert (aoe.shape, aoe.size, aoe.origin) == ("sphere", 20, "target")

    def test_no_area(self):
        assert parse_aoe_from_description("You touch a willing creature.") is None


class TestBuildShape:
    """Tests for build_aoe_shape()."""

    def test_radial_defaults_to_caster(self):
        shape = build_aoe_shape(AOEData(shape="sphere", size=10, origin="self"), _pos(4, 4))
        assert isinstance(shape, RadialShape)
        assert shape.origin == _pos(4, 4)
        assert shape.radius_feet == 10

    def test_radial_at_chosen_point(self):
        shape = build_aoe_shape(
            AOEData(shape="sphere", size=20, origin="target"), _pos(4, 4), aoe_origin=_pos(12, 12),
        )
        assert shape.origin == _pos(12, 12)

    def test_cone_points_north_without_direction(self):
        shape = build_aoe_shape(AOEData(shape="cone", size=15, origin="self"), _pos(10, 10))
        assert isinstance(shape, ConeShape)
        assert shape.origin == _pos(10, 10)
        assert shape.direction == _pos(9, 10)

    def test_line_starts_at_caster(self):
        shape = build_aoe_shape(
            AOEData(shape="line", size=30, origin="self", width=5),
            _pos(10, 10),
            aoe_origin=_pos(0, 0),
            aoe_direction=_pos(10, 15),
        )
        assert isinstance(shape, LineShape)
        assert shape.origin == _pos(10, 10)


class TestAOECells:
    """Tests for get_aoe_cells()."""

    @pytest.mark.parametrize("kind", ["sphere", "cube", "cylinder"])
    def test_radial_is_chebyshev_ball_with_origin(self, kind):
        cells = _cells(RadialShape(type=kind, origin=_pos(10, 10), radius_feet=10))
        assert (10, 10) in cells
        assert len(cells) == 25
        for row, col in cells:
            assert (20 - row, 20 - col) in cells

    def test_radial_clipped_to_grid(self):
        cells = _cells(RadialShape(type="sphere", origin=_pos(0, 0), radius_feet=10))
        assert len(cells) == 9
        assert all(r >= 0 and c >= 0 for r, c in cells)

    def test_cone_excludes_origin(self):
        cells = _cells(ConeShape(origin=_pos(10, 10), direction=_pos(10, 13), length_feet=15))
        assert (10, 10) not in cells
        assert (10, 11) in cells
        assert (11, 11) in cells
        assert (12, 11) not in cells
        assert (10, 9) not in cells

    def test_cone_zero_direction_is_empty(self):
        assert _cells(ConeShape(origin=_pos(5, 5), direction=_pos(5, 5), length_feet=30)) == set()

    def test_line_cells(self):
        cells = _cells(LineShape(origin=_pos(10, 10), direction=_pos(10, 15), length_feet=30))
        assert cells == {(10, c) for c in range(11, 17)}

    def test_line_clipped_at_edge(self):
        cells = _cells(LineShape(origin=_pos(10, 17), direction=_pos(10, 18), length_feet=30))
        assert cells == {(10, 18), (10, 19)}

    def test_line_zero_direction_is_empty(self):
        assert _cells(LineShape(origin=_pos(5, 5), direction=_pos(5, 5), length_feet=30)) == set()

    def test_unknown_shape_raises(self):
        with pytest.raises(TypeError):
            get_aoe_cells(object(), GRID)


class TestAOETargets:
    """get_aoe_targets() returns exactly the tokens on covered cells."""

    def test_sphere_targets(self):
        shape = RadialShape(type="sphere", origin=_pos(10, 10), radius_feet=10)
        positions = {
            "at_origin": _pos(10, 10),
            "in_range": _pos(12, 8),
            "out_of_range": _pos(13, 10),
            "player": _pos(0, 0),
        }
        assert get_aoe_targets(shape, positions, GRID) == ["at_origin", "in_range"]

    def test_cone_never_hits_caster(self):
        shape = ConeShape(origin=_pos(10, 10), direction=_pos(10, 13), length_feet=15)
        positions = {"player": _pos(10, 10), "goblin": _pos(10, 12), "orc": _pos(10, 7)}
        assert get_aoe_targets(shape, positions, GRID) == ["goblin"]

    def test_matches_cells_exactly(self):
        shape = LineShape(origin=_pos(3, 3), direction=_pos(8, 8), length_feet=30)
        covered = _cells(shape)
        positions = {f"t{r}_{c}": _pos(r, c) for r in range(0, 12) for c in range(0, 12)}
        targets = get_aoe_targets(shape, positions, GRID)
        assert {positions[t].as_tuple() for t in targets} == covered
