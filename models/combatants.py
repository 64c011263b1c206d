"""Combatant data models: NPCs, the player, and their abilities."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, model_validator

from config import DEFAULT_SPEED


class Disposition(str, Enum):
    """A combatant's stance toward the player."""
    HOSTILE = "hostile"
    NEUTRAL = "neutral"
    FRIENDLY = "friendly"


class CharacterStats(BaseModel):
    """The six core ability scores."""
    strength: int = 10
    dexterity: int = 10
    constitution: int = 10
    intelligence: int = 10
    wisdom: int = 10
    charisma: int = 10


class AbilityRange(BaseModel):
    """Parsed reach/range of a weapon or spell."""
    type: Literal["melee", "ranged", "both", "self", "touch"]
    reach: int | None = None        # Melee reach in feet
    short_range: int | None = None  # Normal range in feet
    long_range: int | None = None   # Max range (disadvantage beyond short)


class AOEData(BaseModel):
    """Area-of-effect parameters parsed from SRD range/description text."""
    shape: Literal["sphere", "cube", "cylinder", "cone", "line"]
    size: int                       # Radius or length in feet
    origin: Literal["self", "target"]
    width: int | None = None        # Lines only


class Ability(BaseModel):
    """A weapon, spell, or action the player can use in combat."""
    id: str                         # e.g. "weapon:rapier", "cantrip:fire-bolt"
    name: str
    type: Literal["weapon", "cantrip", "spell", "action", "racial"] = "weapon"
    damage_roll: str | None = None  # e.g. "1d8"
    damage_type: str | None = None  # e.g. "piercing"
    weapon_stat: Literal["str", "dex", "finesse", "none"] = "str"
    weapon_bonus: int = 0           # Magic weapon bonus to attack and damage
    attack_type: Literal["ranged", "melee", "save", "auto", "none"] | None = None
    save_ability: str | None = None      # Ability the target saves with
    save_dc_ability: str | None = None   # Ability used to compute the save DC
    requires_target: bool = True
    range: AbilityRange | None = None
    srd_range: str | None = None    # Raw SRD range string, e.g. "Self (15-foot cone)"
    aoe: AOEData | None = None


class NPC(BaseModel):
    """A non-player combatant in an encounter roster."""
    id: str                         # Unique within the encounter
    name: str
    slug: str | None = None         # SRD monster slug, e.g. "goblin"
    ac: int
    current_hp: int
    max_hp: int
    attack_bonus: int = 0
    damage_dice: str = "1d4"
    damage_bonus: int = 0
    saving_throw_bonus: int = 0
    xp_value: int = 0
    disposition: Disposition = Disposition.HOSTILE
    conditions: list[str] = []
    notes: str = ""
    speed: int = DEFAULT_SPEED

    @model_validator(mode="after")
    def _clamp_hp(self) -> "NPC":
        self.max_hp = max(0, self.max_hp)
        self.current_hp = max(0, min(self.max_hp, self.current_hp))
        return self

    @property
    def is_alive(self) -> bool:
        return self.current_hp > 0

    @property
    def is_hostile(self) -> bool:
        return self.disposition == Disposition.HOSTILE


class PlayerState(BaseModel):
    """The player's combat-relevant character state."""
    name: str
    level: int = 1
    current_hp: int
    max_hp: int
    armor_class: int
    stats: CharacterStats = CharacterStats()
    conditions: list[str] = []
    weapon_proficiencies: list[str] = []
    spellcasting_ability: str | None = None  # e.g. "intelligence"
    abilities: list[Ability] = []
    inventory: list[str] = []
    xp: int = 0
    gold: int = 0
    speed: int = DEFAULT_SPEED

    @model_validator(mode="after")
    def _clamp_hp(self) -> "PlayerState":
        self.max_hp = max(0, self.max_hp)
        self.current_hp = max(0, min(self.max_hp, self.current_hp))
        return self

    @property
    def is_alive(self) -> bool:
        return self.current_hp > 0

    def find_ability(self, name_or_id: str) -> Ability | None:
        """Look up an ability by id or case-insensitive name."""
        needle = name_or_id.lower()
        for ability in self.abilities:
            if ability.id == name_or_id or ability.name.lower() == needle:
                return ability
        return None
