"""Resolved roll, attack, and turn result models.

Every model here is produced once by the resolver and then only read:
narration describes these values and persistence stores them, neither
re-derives them.
"""

from pydantic import BaseModel

from models.encounter import EncounterStatus, GridPosition


class DamageBreakdown(BaseModel):
    """One damage component of a hit."""
    label: str                      # "Shortsword", "Fireball"
    dice: str                       # "1d6", "8d6"
    rolls: list[int]                # Individual die results
    flat_bonus: int = 0             # Stat mod + magic bonus
    subtotal: int                   # Sum of rolls + flat_bonus
    damage_type: str | None = None  # "piercing"


class DamageResult(BaseModel):
    """All damage dealt by a single resolved action."""
    breakdown: list[DamageBreakdown]
    total_damage: int
    is_crit: bool = False


class RollResult(BaseModel):
    """A fully resolved check: attack roll, save, or no-check action."""
    check_type: str                 # "Longsword Attack", "Sacred Flame (dexterity save)"
    components: str = ""            # "STR +3, Prof +2 = +5"
    die_result: int = 0
    total_modifier: str = "+0"
    total: int = 0
    dc_or_ac: str = "N/A"
    success: bool
    notes: str = ""
    impossible: bool = False        # Action cannot be performed at all
    no_check: bool = False          # Purely narrative, no roll needed
    damage: DamageResult | None = None


class NPCTurnResult(BaseModel):
    """A single NPC attack against the player, resolved before narration."""
    npc_id: str
    npc_name: str
    d20: int
    attack_bonus: int
    attack_total: int
    player_ac: int
    hit: bool
    damage: int
    trace: str                      # One-line summary for narration context


class NPCDamage(BaseModel):
    """Damage a single NPC would deal this turn."""
    id: str
    damage: int


class NPCRollContext(BaseModel):
    """Pre-rolled attacks of every surviving hostile NPC."""
    context: str
    total_damage: int
    per_npc: list[NPCDamage] = []


class AOETargetResult(BaseModel):
    """One creature's saving throw against an area effect."""
    npc_id: str
    npc_name: str
    saved: bool
    save_roll: int
    save_total: int
    damage_taken: int


class AOEResult(BaseModel):
    """An area effect resolved against every creature inside it."""
    check_type: str                 # "Fireball (dexterity save)"
    spell_dc: int
    damage_roll: str                # "8d6"
    total_rolled: int               # Rolled once, shared by all targets
    damage_type: str
    targets: list[AOETargetResult] = []
    affected_cells: list[GridPosition] = []


class UpdateNPCResult(BaseModel):
    """Outcome of an HP/condition change applied to an NPC."""
    found: bool
    name: str
    died: bool = False              # At 0 HP after the update
    just_died: bool = False         # This update was the killing blow
    removed: bool = False
    new_hp: int = 0
    xp_awarded: int = 0


class NarrationResult(BaseModel):
    """Prose returned by a narrator plus its token/cost accounting."""
    narrative: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class TurnStep(BaseModel):
    """One NPC turn in the sequential turn loop."""
    npc_id: str
    result: NPCTurnResult
    narrative: str | None = None    # None when narration failed or timed out
    player_hp_remaining: int


class TurnLoopResult(BaseModel):
    """Everything that happened between the player's action and their next turn."""
    encounter_id: str
    round: int
    status: EncounterStatus
    player_narrative: str | None = None
    steps: list[TurnStep] = []
    player_defeated: bool = False
    tokens_used: int = 0
    cost_usd: float = 0.0
