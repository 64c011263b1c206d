"""Stateless dice and area-of-effect helper endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from config import GRID_SIZE
from engine.aoe import (
    build_aoe_shape,
    get_aoe_cells,
    get_aoe_targets,
    parse_aoe_from_description,
    parse_aoe_from_range,
)
from engine.dice import DiceResult, roll, roll_d20_detailed
from models.combatants import AOEData
from models.encounter import GridPosition

router = APIRouter()


class RollRequest(BaseModel):
    """A dice expression such as "2d6+3" or "1d8-1+1d4"."""
    notation: str


class D20Request(BaseModel):
    """A d20 roll with optional advantage or disadvantage."""
    advantage: bool = False
    disadvantage: bool = False


class AOEPreviewRequest(BaseModel):
    """Where an area effect would land, given either parsed data or SRD text."""
    aoe: AOEData | None = None
    range_text: str | None = None       # e.g. "Self (15-foot cone)"
    description: str | None = None      # Spell description prose
    caster: GridPosition
    origin: GridPosition | None = None
    direction: GridPosition | None = None
    positions: dict[str, GridPosition] = {}
    grid_size: int = GRID_SIZE


class AOEPreviewResponse(BaseModel):
    aoe: AOEData
    cells: list[GridPosition]
    target_ids: list[str]


@router.post("/roll", response_model=DiceResult)
def roll_dice(body: RollRequest) -> DiceResult:
    """Roll a dice expression. Malformed input rolls 1d4 and sets fallback."""
    return roll(body.notation)


@router.post("/roll/d20")
def roll_twenty(body: D20Request) -> dict:
    """Roll a d20, keeping the better or worse of two when asked."""
    kept, rolls = roll_d20_detailed(body.advantage, body.disadvantage)
    return {"result": kept, "rolls": rolls}


@router.post("/aoe/preview", response_model=AOEPreviewResponse)
def preview_aoe(body: AOEPreviewRequest) -> AOEPreviewResponse:
    """List the cells and tokens an area effect would cover."""
    aoe = body.aoe
    if aoe is None and body.range_text:
        aoe = parse_aoe_from_range(body.range_text)
    if aoe is None and body.description:
        aoe = parse_aoe_from_description(body.description)
    if aoe is None:
        raise HTTPException(status_code=400, detail="No area of effect could be determined")

    shape = build_aoe_shape(aoe, body.caster, body.origin, body.direction)
    return AOEPreviewResponse(
        aoe=aoe,
        cells=get_aoe_cells(shape, body.grid_size),
        target_ids=get_aoe_targets(shape, body.positions, body.grid_size),
    )
