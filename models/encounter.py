"""Encounter, grid, and area-of-effect shape models."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from config import GRID_SIZE
from models.combatants import NPC


class EncounterStatus(str, Enum):
    """Lifecycle states of an encounter. Only ACTIVE accepts mutations."""
    ACTIVE = "active"
    COMPLETED = "completed"         # No living hostile NPCs remain
    DEFEATED = "defeated"           # The player dropped to 0 HP


class GridPosition(BaseModel):
    """A cell on the square combat grid."""
    model_config = ConfigDict(frozen=True)

    row: int
    col: int

    def as_tuple(self) -> tuple[int, int]:
        return (self.row, self.col)


class RadialShape(BaseModel):
    """Sphere, cube, or cylinder centred on an origin cell."""
    type: Literal["sphere", "cube", "cylinder"]
    origin: GridPosition
    radius_feet: int


class ConeShape(BaseModel):
    """Cone spreading from an origin toward a direction cell."""
    type: Literal["cone"] = "cone"
    origin: GridPosition
    direction: GridPosition         # A cell the cone points at
    length_feet: int


class LineShape(BaseModel):
    """Line extending from an origin toward a direction cell."""
    type: Literal["line"] = "line"
    origin: GridPosition
    direction: GridPosition
    length_feet: int
    width_feet: int = 5


AOEShape = Annotated[
    Union[RadialShape, ConeShape, LineShape],
    Field(discriminator="type"),
]


class RegionBounds(BaseModel):
    """Inclusive bounding box of a map region."""
    row_start: int
    col_start: int
    row_end: int
    col_end: int

    def contains(self, pos: GridPosition) -> bool:
        return (
            self.row_start <= pos.row <= self.row_end
            and self.col_start <= pos.col <= self.col_end
        )


class MapRegion(BaseModel):
    """A named area of the exploration map carried into combat placement."""
    id: str
    name: str
    type: str = "custom"            # e.g. "tavern", "guard_post", "camp"
    bounds: RegionBounds
    npc_slugs: list[str] = []       # SRD slugs of creatures that belong here


class EncounterEvent(BaseModel):
    """A logged mechanical event from the encounter."""
    round: int
    actor_id: str
    kind: str                       # "npc_attack", "damage", "condition", ...
    description: str
    details: dict = {}
    timestamp: datetime


class Encounter(BaseModel):
    """The full state of one combat encounter."""
    id: str
    session_id: str = ""
    character_id: str = ""
    status: EncounterStatus = EncounterStatus.ACTIVE
    active_npcs: list[NPC] = []
    positions: dict[str, GridPosition] = {}  # "player" or NPC id -> cell
    grid_size: int = GRID_SIZE
    round: int = 1
    turn_order: list[str] = []
    current_turn_index: int = 0
    location: str = ""              # Snapshot for narration context
    scene: str = ""
    defeated_npcs: list[NPC] = []   # Snapshots taken at the killing blow
    total_xp_awarded: int = 0       # Deferred until the encounter ends
    event_log: list[EncounterEvent] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == EncounterStatus.ACTIVE
