"""D&D 5e SRD rule math: modifiers, proficiency, challenge rating, XP."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from models.combatants import CharacterStats, PlayerState

# XP required to reach each level (index 0 = level 1)
XP_THRESHOLDS = [
    0, 300, 900, 2700, 6500, 14000, 23000, 34000, 48000, 64000,
    85000, 100000, 120000, 140000, 165000, 195000, 225000, 265000, 305000, 355000,
]

CR_TO_XP = {
    "0": 10, "0.125": 25, "0.25": 50, "0.5": 100,
    "1": 200, "2": 450, "3": 700, "4": 1100, "5": 1800,
    "6": 2300, "7": 2900, "8": 3900, "9": 5000, "10": 5900,
    "11": 7200, "12": 8400, "13": 10000, "14": 11500, "15": 13000,
    "16": 15000, "17": 18000, "18": 20000, "19": 22000, "20": 25000,
    "21": 33000, "22": 41000, "23": 50000, "24": 62000, "25": 75000,
    "26": 90000, "27": 105000, "28": 120000, "29": 135000, "30": 155000,
}

_ABILITY_ALIASES = {
    "str": "strength",
    "dex": "dexterity",
    "con": "constitution",
    "int": "intelligence",
    "wis": "wisdom",
    "cha": "charisma",
}


def calculate_ability_modifier(score: int) -> int:
    """Calculate ability modifier from a score using the 5e formula.

    Args:
        score: The ability score (e.g. 16).

    Returns:
        The modifier (e.g. +3 for score 16).
    """
    return (score - 10) // 2


def proficiency_bonus(level: int) -> int:
    """Proficiency bonus for a character level (+2 at 1-4, +6 at 17-20)."""
    return (max(1, level) - 1) // 4 + 2


def format_modifier(value: int) -> str:
    """Format a signed modifier for display (3 -> "+3", -1 -> "-1")."""
    return f"+{value}" if value >= 0 else str(value)


def ability_score(stats: CharacterStats, ability: str) -> int:
    """Look up a score by full name or three-letter abbreviation."""
    name = _ABILITY_ALIASES.get(ability.lower(), ability.lower())
    return getattr(stats, name, 10)


def weapon_ability_modifier(stat: str, stats: CharacterStats) -> tuple[int, str]:
    """Resolve the ability modifier a weapon attacks with.

    Finesse weapons use the better of STR and DEX; "none" adds nothing.

    Returns:
        (modifier, label) tuple, e.g. (3, "DEX").
    """
    str_mod = calculate_ability_modifier(stats.strength)
    dex_mod = calculate_ability_modifier(stats.dexterity)
    if stat == "str":
        return str_mod, "STR"
    if stat == "dex":
        return dex_mod, "DEX"
    if stat == "finesse":
        return (str_mod, "STR") if str_mod >= dex_mod else (dex_mod, "DEX")
    return 0, "NONE"


def spell_save_dc(player: PlayerState, ability: str | None = None) -> tuple[int, int, str]:
    """Spell save DC = 8 + ability modifier + proficiency bonus.

    Returns:
        (dc, ability_modifier, ability_name) tuple.
    """
    name = ability or player.spellcasting_ability or "intelligence"
    mod = calculate_ability_modifier(ability_score(player.stats, name))
    return 8 + mod + proficiency_bonus(player.level), mod, name


def cr_to_xp(cr: float | int | str) -> int:
    """Convert a challenge rating (number or "1/4" style string) to XP."""
    if isinstance(cr, str):
        if "/" in cr:
            numerator, _, denominator = cr.partition("/")
            try:
                value = float(numerator) / float(denominator)
            except (ValueError, ZeroDivisionError):
                return 0
        else:
            try:
                value = float(cr)
            except ValueError:
                return 0
    else:
        value = float(cr)
    key = str(int(value)) if value.is_integer() else str(value)
    return CR_TO_XP.get(key, 0)


def level_for_xp(xp: int) -> int:
    """Highest level whose XP threshold has been reached, capped at 20."""
    level = 1
    for index, threshold in enumerate(XP_THRESHOLDS):
        if xp >= threshold:
            level = index + 1
        else:
            break
    return min(level, 20)
