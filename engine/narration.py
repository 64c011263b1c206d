"""Narrator interface and the built-in template narrator.

The combat engine resolves every roll before anything is narrated. A
narrator only receives the frozen facts of a turn and returns prose; it
never changes HP, conditions, or turn order.
"""

from __future__ import annotations

from typing import Literal, Protocol

from pydantic import BaseModel

from config import RECENT_EVENTS_LIMIT
from engine.encounter import surviving_hostiles
from models.combatants import NPC, PlayerState
from models.encounter import Encounter
from models.results import AOEResult, NarrationResult, NPCTurnResult, RollResult


class NarrationFacts(BaseModel):
    """Everything a narrator may describe about one turn."""
    kind: Literal["player_turn", "npc_turn"]
    actor_name: str
    action_summary: str             # Mechanical one-liner, e.g. the NPC trace
    hit: bool | None = None         # None for no-check and impossible actions
    damage: int = 0
    is_crit: bool = False
    target_name: str | None = None
    target_killed: bool = False
    npc_attacks: list[NPCTurnResult] = []
    player_name: str
    player_hp: int
    player_max_hp: int
    surviving_hostiles: list[str] = []
    defeated: list[str] = []
    location: str = ""
    scene: str = ""
    recent_events: list[str] = []


class Narrator(Protocol):
    """Turns resolved combat facts into prose."""

    async def narrate(self, facts: NarrationFacts) -> NarrationResult:
        ...


def _scene_fields(encounter: Encounter) -> dict:
    return {
        "surviving_hostiles": [npc.name for npc in surviving_hostiles(encounter)],
        "defeated": [npc.name for npc in encounter.defeated_npcs],
        "location": encounter.location,
        "scene": encounter.scene,
        "recent_events": [e.description for e in encounter.event_log[-RECENT_EVENTS_LIMIT:]],
    }


def player_turn_facts(
    encounter: Encounter,
    player: PlayerState,
    result: RollResult | AOEResult,
    target: NPC | None = None,
) -> NarrationFacts:
    """Collect the facts of the player's resolved action."""
    if isinstance(result, AOEResult):
        return _aoe_facts(encounter, player, result)
    if result.no_check:
        summary = f"{result.check_type}: {result.notes}".rstrip(": ")
        hit = None
    elif result.impossible:
        summary = f"Action failed: {result.notes}"
        hit = None
    else:
        summary = (
            f"{result.check_type}, rolled {result.die_result}{result.total_modifier}="
            f"{result.total} vs {result.dc_or_ac} → {'HIT' if result.success else 'MISS'}"
        )
        hit = result.success

    damage = result.damage.total_damage if result.damage else 0
    return NarrationFacts(
        kind="player_turn",
        actor_name=player.name,
        action_summary=summary,
        hit=hit,
        damage=damage,
        is_crit=bool(result.damage and result.damage.is_crit),
        target_name=target.name if target else None,
        target_killed=target is not None and not target.is_alive,
        player_name=player.name,
        player_hp=player.current_hp,
        player_max_hp=player.max_hp,
        **_scene_fields(encounter),
    )


def _aoe_facts(encounter: Encounter, player: PlayerState, result: AOEResult) -> NarrationFacts:
    outcomes = ", ".join(
        f"{t.npc_name} {'saves' if t.saved else 'fails'} ({t.save_total}) and takes {t.damage_taken}"
        for t in result.targets
    ) or "no creatures caught"
    killed = [
        t.npc_name for t in result.targets
        if t.damage_taken > 0 and any(n.id == t.npc_id for n in encounter.defeated_npcs)
    ]
    return NarrationFacts(
        kind="player_turn",
        actor_name=player.name,
        action_summary=(
            f"{result.check_type} vs DC {result.spell_dc}: {result.damage_roll}="
            f"{result.total_rolled} {result.damage_type}; {outcomes}"
        ),
        hit=any(not t.saved for t in result.targets),
        damage=result.total_rolled,
        target_name=", ".join(t.npc_name for t in result.targets) or None,
        target_killed=bool(killed),
        player_name=player.name,
        player_hp=player.current_hp,
        player_max_hp=player.max_hp,
        **_scene_fields(encounter),
    )


def npc_turn_facts(
    encounter: Encounter,
    player: PlayerState,
    npc: NPC,
    result: NPCTurnResult,
) -> NarrationFacts:
    """Collect the facts of one NPC's resolved attack."""
    return NarrationFacts(
        kind="npc_turn",
        actor_name=npc.name,
        action_summary=result.trace,
        hit=result.hit,
        damage=result.damage,
        target_name=player.name,
        target_killed=not player.is_alive,
        npc_attacks=[result],
        player_name=player.name,
        player_hp=player.current_hp,
        player_max_hp=player.max_hp,
        **_scene_fields(encounter),
    )


class TemplateNarrator:
    """Deterministic narrator that renders facts with fixed sentence templates.

    Used when no language model is configured and in tests. It reports zero
    tokens and zero cost.
    """

    async def narrate(self, facts: NarrationFacts) -> NarrationResult:
        return NarrationResult(narrative=self.render(facts))

    def render(self, facts: NarrationFacts) -> str:
        if facts.kind == "npc_turn":
            text = self._render_npc(facts)
        else:
            text = self._render_player(facts)
        if facts.location:
            text = f"[{facts.location}] {text}"
        return text

    def _render_player(self, facts: NarrationFacts) -> str:
        if facts.hit is None:
            return f"{facts.actor_name} acts. {facts.action_summary.rstrip('.')}."
        target = facts.target_name or "the foe"
        if not facts.hit:
            return f"{facts.actor_name} attacks {target} but misses."
        text = f"{facts.actor_name} strikes {target} for **{facts.damage}** damage"
        text += " with a critical hit!" if facts.is_crit else "."
        if facts.target_killed:
            text += f" {target} falls."
        if facts.target_killed and not facts.surviving_hostiles:
            text += " No enemies remain standing."
        return text

    def _render_npc(self, facts: NarrationFacts) -> str:
        if not facts.hit:
            return f"{facts.actor_name} attacks {facts.player_name} but misses."
        text = (
            f"{facts.actor_name} hits {facts.player_name} for **{facts.damage}** damage "
            f"({facts.player_hp}/{facts.player_max_hp} HP left)."
        )
        if facts.player_hp <= 0:
            text += f" {facts.player_name} collapses."
        return text
