"""Deterministic combat resolution: NPC attacks, player attacks, saves, and AOE.

Every resolver rolls its dice exactly once and returns a frozen result.
Narration is produced afterwards from these results and never decides
an outcome.
"""

from __future__ import annotations

import logging
import random
from typing import Literal

from config import PLAYER_ID
from engine.dice import double_dice, roll, roll_d20, roll_d20_detailed
from engine.grid import get_positional_modifiers, resolve_advantage
from engine.rules import (
    format_modifier,
    proficiency_bonus,
    spell_save_dc,
    weapon_ability_modifier,
)
from models.combatants import NPC, Ability, PlayerState
from models.encounter import GridPosition
from models.results import (
    AOEResult,
    AOETargetResult,
    DamageBreakdown,
    DamageResult,
    NPCDamage,
    NPCRollContext,
    NPCTurnResult,
    RollResult,
)

logger = logging.getLogger(__name__)

NO_HOSTILES_CONTEXT = "No hostile NPCs remain to attack."
PRE_ROLL_HEADER = "[PRE-ROLLED NPC attacks; ignore any NPC killed by the player this turn]"

SIMPLE_WEAPONS = {
    "club", "dagger", "greatclub", "handaxe", "javelin", "light hammer", "mace",
    "quarterstaff", "sickle", "spear", "light crossbow", "dart", "shortbow", "sling",
}

RollMode = Literal["advantage", "disadvantage", "normal"]


# ---------------------------------------------------------------------------
# NPC turns
# ---------------------------------------------------------------------------


def resolve_npc_turn(
    npc: NPC,
    player_ac: int,
    rng: random.Random | None = None,
) -> NPCTurnResult:
    """Resolve a single NPC's attack against the player.

    d20 + attack bonus hits when the total meets or beats the player's AC.
    A hit rolls the NPC's damage dice plus its flat bonus (never below 0);
    a miss deals nothing.

    Args:
        npc: The attacking NPC.
        player_ac: The player's armor class.
        rng: Optional Random instance for seeded/testing rolls.

    Returns:
        NPCTurnResult with the roll, outcome, damage, and a one-line trace.
    """
    d20 = roll_d20(rng=rng)
    attack_total = d20 + npc.attack_bonus
    hit = attack_total >= player_ac

    damage = 0
    if hit:
        damage = max(0, roll(npc.damage_dice, rng=rng).total + npc.damage_bonus)

    outcome = "HIT" if hit else "MISS"
    trace = (
        f"{npc.name}: d20={d20}{format_modifier(npc.attack_bonus)}={attack_total} "
        f"vs AC {player_ac} → {outcome} — {damage} damage"
    )
    return NPCTurnResult(
        npc_id=npc.id,
        npc_name=npc.name,
        d20=d20,
        attack_bonus=npc.attack_bonus,
        attack_total=attack_total,
        player_ac=player_ac,
        hit=hit,
        damage=damage,
        trace=trace,
    )


def resolve_npc_turns(
    npcs: list[NPC],
    player_ac: int,
    rng: random.Random | None = None,
) -> list[NPCTurnResult]:
    """Resolve every surviving hostile NPC's attack, in roster order."""
    return [
        resolve_npc_turn(npc, player_ac, rng=rng)
        for npc in npcs
        if npc.is_hostile and npc.is_alive
    ]


def build_npc_roll_context(
    npcs: list[NPC],
    player_ac: int,
    rng: random.Random | None = None,
) -> NPCRollContext:
    """Pre-roll all hostile attacks for the narrative (non-grid) combat path.

    The per-NPC list lets the caller drop NPCs the player kills this same
    turn before any damage is applied.
    """
    results = resolve_npc_turns(npcs, player_ac, rng=rng)
    if not results:
        return NPCRollContext(context=NO_HOSTILES_CONTEXT, total_damage=0, per_npc=[])

    lines = [f"  [id={r.npc_id}] {r.trace}" for r in results]
    return NPCRollContext(
        context="\n".join([PRE_ROLL_HEADER, *lines]),
        total_damage=sum(r.damage for r in results if r.hit),
        per_npc=[NPCDamage(id=r.npc_id, damage=r.damage) for r in results],
    )


# ---------------------------------------------------------------------------
# Player attacks
# ---------------------------------------------------------------------------


def is_weapon_proficient(weapon_name: str, proficiencies: list[str]) -> bool:
    """Check a weapon against proficiency entries ("Longswords", "Simple Weapons")."""
    name = weapon_name.lower().rstrip("s")
    for prof in proficiencies:
        lower = prof.lower()
        if lower == "martial weapons":
            return True
        if lower == "simple weapons" and name in SIMPLE_WEAPONS:
            return True
        if lower.rstrip("s") == name:
            return True
    return False


def _roll_mode(
    player: PlayerState,
    target: NPC,
    attack_type: Literal["melee", "ranged"],
    positions: dict[str, GridPosition] | None,
) -> tuple[RollMode, list[str]]:
    if not positions:
        return "normal", []
    player_pos = positions.get(PLAYER_ID)
    target_pos = positions.get(target.id)
    if player_pos is None or target_pos is None:
        return "normal", []
    mods = get_positional_modifiers(
        player_pos,
        target_pos,
        attack_type,
        target.conditions,
        player.conditions,
        positions,
        PLAYER_ID,
    )
    mode = resolve_advantage(mods)
    if mode == "normal":
        return mode, []
    return mode, [f"{m.type}: {m.source}" for m in mods]


def _attack_notes(
    hit: bool,
    d20: int,
    mode: RollMode,
    all_rolls: list[int],
    extra: list[str],
    label: str,
) -> str:
    if d20 == 20:
        parts = ["Natural 20, critical hit!"]
    elif d20 == 1:
        parts = ["Natural 1, automatic miss"]
    else:
        parts = [f"{label} hits" if hit else f"{label} misses"]
    if mode != "normal" and len(all_rolls) == 2:
        parts.append(f"{mode} (rolled {all_rolls[0]}, {all_rolls[1]})")
    parts.extend(extra)
    return ". ".join(parts)


def _damage(
    label: str,
    dice: str,
    flat_bonus: int,
    damage_type: str,
    is_crit: bool,
    rng: random.Random | None,
) -> DamageResult:
    if is_crit:
        dice = double_dice(dice)
    rolled = roll(dice, rng=rng)
    subtotal = max(0, rolled.total + flat_bonus)
    return DamageResult(
        breakdown=[
            DamageBreakdown(
                label=label,
                dice=rolled.notation,
                rolls=rolled.rolls,
                flat_bonus=flat_bonus,
                subtotal=subtotal,
                damage_type=damage_type,
            )
        ],
        total_damage=subtotal,
        is_crit=is_crit,
    )


def resolve_weapon_attack(
    player: PlayerState,
    ability: Ability,
    target: NPC,
    positions: dict[str, GridPosition] | None = None,
    rng: random.Random | None = None,
) -> RollResult:
    """Resolve a weapon attack: d20 + ability mod + proficiency + weapon bonus vs AC.

    A natural 1 always misses; a natural 20 always hits and doubles the
    damage dice.
    """
    attack_type = "ranged" if ability.range and ability.range.type == "ranged" else "melee"
    mode, mode_notes = _roll_mode(player, target, attack_type, positions)
    d20, all_rolls = roll_d20_detailed(mode == "advantage", mode == "disadvantage", rng=rng)

    ability_mod, ability_label = weapon_ability_modifier(ability.weapon_stat, player.stats)
    proficient = is_weapon_proficient(ability.name, player.weapon_proficiencies)
    prof = proficiency_bonus(player.level) if proficient else 0
    total_mod = ability_mod + prof + ability.weapon_bonus
    total = d20 + total_mod

    parts = [f"{ability_label} {format_modifier(ability_mod)}"]
    if proficient:
        parts.append(f"Prof {format_modifier(prof)}")
    if ability.weapon_bonus:
        parts.append(f"Bonus {format_modifier(ability.weapon_bonus)}")

    hit = d20 != 1 and (d20 == 20 or total >= target.ac)
    damage = None
    if hit:
        damage = _damage(
            ability.name,
            ability.damage_roll or "1d4",
            ability_mod + ability.weapon_bonus,
            ability.damage_type or "piercing",
            d20 == 20,
            rng,
        )

    return RollResult(
        check_type=f"{ability.name} Attack",
        components=f"{', '.join(parts)} = {format_modifier(total_mod)}",
        die_result=d20,
        total_modifier=format_modifier(total_mod),
        total=total,
        dc_or_ac=str(target.ac),
        success=hit,
        notes=_attack_notes(hit, d20, mode, all_rolls, mode_notes, "Attack"),
        damage=damage,
    )


def resolve_spell_attack(
    player: PlayerState,
    ability: Ability,
    target: NPC,
    positions: dict[str, GridPosition] | None = None,
    rng: random.Random | None = None,
) -> RollResult:
    """Resolve a spell attack roll: d20 + spellcasting mod + proficiency vs AC."""
    _, ability_mod, spell_ability = spell_save_dc(player)
    prof = proficiency_bonus(player.level)
    total_mod = ability_mod + prof

    attack_type = "melee" if ability.attack_type == "melee" else "ranged"
    mode, mode_notes = _roll_mode(player, target, attack_type, positions)
    d20, all_rolls = roll_d20_detailed(mode == "advantage", mode == "disadvantage", rng=rng)
    total = d20 + total_mod

    hit = d20 != 1 and (d20 == 20 or total >= target.ac)
    damage = None
    if hit and ability.damage_roll:
        damage = _damage(
            ability.name,
            ability.damage_roll,
            0,
            ability.damage_type or "magical",
            d20 == 20,
            rng,
        )

    label = spell_ability[:3].upper()
    return RollResult(
        check_type=f"{ability.name} Spell Attack",
        components=(
            f"{label} {format_modifier(ability_mod)}, Prof {format_modifier(prof)} "
            f"= {format_modifier(total_mod)}"
        ),
        die_result=d20,
        total_modifier=format_modifier(total_mod),
        total=total,
        dc_or_ac=str(target.ac),
        success=hit,
        notes=_attack_notes(hit, d20, mode, all_rolls, mode_notes, "Spell attack"),
        damage=damage,
    )


def resolve_spell_save(
    player: PlayerState,
    ability: Ability,
    target: NPC,
    rng: random.Random | None = None,
) -> RollResult:
    """Resolve a save-based spell against one target.

    The target rolls d20 + saving throw bonus against the spell DC.
    success means the target failed its save and the spell lands.
    """
    dc, ability_mod, dc_ability = spell_save_dc(player, ability.save_dc_ability)
    prof = proficiency_bonus(player.level)

    target_d20 = roll_d20(rng=rng)
    save_total = target_d20 + target.saving_throw_bonus
    saved = save_total >= dc
    lands = not saved

    damage = None
    if lands and ability.damage_roll:
        damage = _damage(ability.name, ability.damage_roll, 0, ability.damage_type or "magical", False, rng)

    save_name = ability.save_ability or "dexterity"
    verdict = "Target saves" if saved else "Target fails save"
    dc_label = "DC" if ability.type == "racial" else "Spell DC"
    return RollResult(
        check_type=f"{ability.name} ({save_name} save)",
        components=(
            f"{dc_label}: 8 + {dc_ability[:3].upper()} {format_modifier(ability_mod)} "
            f"+ Prof {format_modifier(prof)} = {dc}"
        ),
        die_result=target_d20,
        total_modifier=format_modifier(target.saving_throw_bonus),
        total=save_total,
        dc_or_ac=f"DC {dc}",
        success=lands,
        notes=(
            f"{verdict} ({save_name} save: {target_d20}"
            f"{format_modifier(target.saving_throw_bonus)}={save_total} vs DC {dc})"
        ),
        damage=damage,
    )


def resolve_aoe_action(
    player: PlayerState,
    ability: Ability,
    targets: list[NPC],
    affected_cells: list[GridPosition],
    rng: random.Random | None = None,
) -> AOEResult:
    """Resolve an area effect: damage is rolled once, each target saves on its own.

    A failed save takes full damage; a successful save takes half, rounded down.
    """
    dc, _, _ = spell_save_dc(player, ability.save_dc_ability)
    damage_expr = ability.damage_roll or "1d6"
    total_rolled = max(0, roll(damage_expr, rng=rng).total)
    half = total_rolled // 2
    save_name = ability.save_ability or "dexterity"

    results = []
    for npc in targets:
        save_roll = roll_d20(rng=rng)
        save_total = save_roll + npc.saving_throw_bonus
        saved = save_total >= dc
        results.append(
            AOETargetResult(
                npc_id=npc.id,
                npc_name=npc.name,
                saved=saved,
                save_roll=save_roll,
                save_total=save_total,
                damage_taken=half if saved else total_rolled,
            )
        )

    logger.info(
        "%s: %s=%d vs DC %d across %d target(s)",
        ability.name, damage_expr, total_rolled, dc, len(results),
    )
    return AOEResult(
        check_type=f"{ability.name} ({save_name} save)",
        spell_dc=dc,
        damage_roll=damage_expr,
        total_rolled=total_rolled,
        damage_type=ability.damage_type or "magical",
        targets=results,
        affected_cells=affected_cells,
    )


def _no_check(ability: Ability, notes: str) -> RollResult:
    return RollResult(check_type=ability.name, success=True, notes=notes, no_check=True)


def _impossible(notes: str) -> RollResult:
    return RollResult(check_type="IMPOSSIBLE", success=False, notes=notes, impossible=True)


def resolve_player_action(
    player: PlayerState,
    ability: Ability,
    target: NPC | None,
    positions: dict[str, GridPosition] | None = None,
    rng: random.Random | None = None,
) -> RollResult:
    """Route a player ability to the right resolver.

    AOE abilities are resolved separately through resolve_aoe_action, and
    untargeted actions (Dodge, Dash, Disengage) need no roll.
    """
    if ability.aoe is not None:
        return _no_check(ability, f"{ability.name}: AOE resolved separately")
    if not ability.requires_target:
        return _no_check(ability, f"{ability.name} action taken")
    if target is None:
        return _impossible("No target specified for targeted ability")
    if not target.is_alive:
        return _impossible(f"{target.name} is already defeated")

    if ability.type == "weapon":
        if not ability.damage_roll:
            return _impossible(f'Weapon "{ability.name}" has no damage data')
        return resolve_weapon_attack(player, ability, target, positions, rng=rng)

    if ability.type in ("cantrip", "spell", "racial"):
        if ability.attack_type == "save":
            return resolve_spell_save(player, ability, target, rng=rng)
        return resolve_spell_attack(player, ability, target, positions, rng=rng)

    return _no_check(ability, f"{ability.name} used")


def total_player_damage(result: RollResult) -> int:
    """Damage a resolved player action deals to its single target."""
    if not result.success or result.damage is None:
        return 0
    return result.damage.total_damage
