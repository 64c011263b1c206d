"""Encounter state machine: roster, HP/conditions, turn order, termination.

An encounter is ACTIVE until either no living hostile NPC remains
(COMPLETED) or the player drops to 0 HP (DEFEATED). Both end states are
terminal and reject further mutation. Defeated NPCs stay in the roster at
0 HP; every "who is still fighting" query filters on current_hp > 0.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from config import GRID_SIZE, PLAYER_ID
from engine.errors import EncounterClosedError
from engine.grid import in_bounds
from engine.placement import compute_initial_positions, place_reinforcement
from engine.rules import level_for_xp
from models.combatants import NPC, PlayerState
from models.encounter import (
    Encounter,
    EncounterEvent,
    EncounterStatus,
    GridPosition,
    MapRegion,
)
from models.results import NPCRollContext, UpdateNPCResult

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_active(encounter: Encounter) -> None:
    if encounter.status != EncounterStatus.ACTIVE:
        raise EncounterClosedError(
            f"Encounter {encounter.id} is {encounter.status.value}; no further changes allowed"
        )


def log_event(
    encounter: Encounter,
    actor_id: str,
    kind: str,
    description: str,
    details: dict | None = None,
) -> EncounterEvent:
    """Append an event to the encounter log and return it."""
    event = EncounterEvent(
        round=encounter.round,
        actor_id=actor_id,
        kind=kind,
        description=description,
        details=details or {},
        timestamp=_now(),
    )
    encounter.event_log.append(event)
    encounter.updated_at = event.timestamp
    return event


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def build_turn_order(encounter: Encounter) -> list[str]:
    """Player first, then every living hostile NPC in roster order."""
    return [PLAYER_ID] + [npc.id for npc in surviving_hostiles(encounter)]


def create_encounter(
    npcs: list[NPC],
    location: str = "",
    scene: str = "",
    regions: list[MapRegion] | None = None,
    seed_positions: dict[str, GridPosition] | None = None,
    *,
    encounter_id: str | None = None,
    session_id: str = "",
    character_id: str = "",
    grid_size: int = GRID_SIZE,
) -> Encounter:
    """Start a new encounter with the given roster.

    Args:
        npcs: Creatures taking part; ids must be unique.
        location: Location text kept for narration context.
        scene: Scene text kept for narration context.
        regions: Map regions used for slug-aware placement.
        seed_positions: Positions carried over from the exploration map.
        encounter_id: Fixed id, generated when omitted.
        session_id: Owning session.
        character_id: The player's character document id.
        grid_size: Side length of the square grid.

    Returns:
        An ACTIVE encounter at round 1 with the player's turn up.

    Raises:
        ValueError: If two NPCs share an id or an NPC uses the player id.
    """
    ids = [npc.id for npc in npcs]
    if len(ids) != len(set(ids)):
        raise ValueError("NPC ids must be unique within an encounter")
    if PLAYER_ID in ids:
        raise ValueError(f"'{PLAYER_ID}' is reserved for the player token")

    now = _now()
    encounter = Encounter(
        id=encounter_id or str(uuid4()),
        session_id=session_id,
        character_id=character_id,
        active_npcs=[npc.model_copy(deep=True) for npc in npcs],
        positions=compute_initial_positions(npcs, regions, seed_positions, grid_size),
        grid_size=grid_size,
        location=location,
        scene=scene,
        created_at=now,
        updated_at=now,
    )
    encounter.turn_order = build_turn_order(encounter)
    logger.info(
        "Encounter %s created with %d NPC(s) at %s",
        encounter.id, len(npcs), location or "unknown location",
    )
    return encounter


# ---------------------------------------------------------------------------
# Roster queries
# ---------------------------------------------------------------------------


def get_npc(encounter: Encounter, npc_id: str) -> NPC | None:
    """Look up an NPC in the roster, dead or alive."""
    for npc in encounter.active_npcs:
        if npc.id == npc_id:
            return npc
    return None


def surviving_hostiles(encounter: Encounter) -> list[NPC]:
    """Hostile NPCs still above 0 HP, in roster order."""
    return [npc for npc in encounter.active_npcs if npc.is_hostile and npc.is_alive]


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def add_conditions(current: list[str], added: list[str]) -> list[str]:
    """Add conditions, ignoring any already present (case-insensitive)."""
    result = list(current)
    seen = {c.lower() for c in result}
    for condition in added:
        if condition.lower() not in seen:
            result.append(condition)
            seen.add(condition.lower())
    return result


def remove_conditions(current: list[str], removed: list[str]) -> list[str]:
    """Remove conditions by case-insensitive name; absent ones are ignored."""
    drop = {c.lower() for c in removed}
    return [c for c in current if c.lower() not in drop]


def add_condition(encounter: Encounter, npc_id: str, condition: str) -> bool:
    """Add one condition to an NPC. Returns False if the NPC is unknown."""
    return update_npc(encounter, npc_id, conditions_added=[condition]).found


def remove_condition(encounter: Encounter, npc_id: str, condition: str) -> bool:
    """Remove one condition from an NPC. Returns False if the NPC is unknown."""
    return update_npc(encounter, npc_id, conditions_removed=[condition]).found


# ---------------------------------------------------------------------------
# HP changes
# ---------------------------------------------------------------------------


def apply_damage(encounter: Encounter, npc_id: str, delta: int) -> UpdateNPCResult:
    """Change an NPC's HP by delta (negative = damage), clamped to [0, max_hp]."""
    return update_npc(encounter, npc_id, hp_delta=delta)


def update_npc(
    encounter: Encounter,
    npc_id: str,
    hp_delta: int = 0,
    conditions_added: list[str] | None = None,
    conditions_removed: list[str] | None = None,
    remove_from_scene: bool = False,
) -> UpdateNPCResult:
    """Apply an HP change and condition changes to one NPC.

    The killing blow snapshots the NPC into defeated_npcs and, for hostile
    NPCs, defers its XP onto the encounter. A dead NPC is never removed;
    remove_from_scene only takes living NPCs off the grid (fleeing, story
    exits).

    Returns:
        UpdateNPCResult; found is False, and nothing changes, for unknown ids.

    Raises:
        EncounterClosedError: If the encounter has already ended.
    """
    _require_active(encounter)
    npc = get_npc(encounter, npc_id)
    if npc is None:
        logger.warning("update_npc: no NPC %r in encounter %s", npc_id, encounter.id)
        return UpdateNPCResult(found=False, name=npc_id)

    was_alive = npc.is_alive
    if hp_delta:
        npc.current_hp = max(0, min(npc.max_hp, npc.current_hp + hp_delta))
        log_event(
            encounter, npc.id, "hp_change",
            f"{npc.name} {'takes' if hp_delta < 0 else 'regains'} {abs(hp_delta)} HP "
            f"({npc.current_hp}/{npc.max_hp})",
            {"delta": hp_delta, "current_hp": npc.current_hp},
        )
    if conditions_added:
        npc.conditions = add_conditions(npc.conditions, conditions_added)
    if conditions_removed:
        npc.conditions = remove_conditions(npc.conditions, conditions_removed)

    just_died = was_alive and not npc.is_alive
    xp_awarded = 0
    if just_died:
        encounter.defeated_npcs.append(npc.model_copy(deep=True))
        if npc.is_hostile and npc.xp_value > 0:
            xp_awarded = npc.xp_value
            encounter.total_xp_awarded += xp_awarded
        log_event(
            encounter, npc.id, "defeated",
            f"{npc.name} is defeated" + (f" ({xp_awarded} XP)" if xp_awarded else ""),
            {"xp_awarded": xp_awarded},
        )
        logger.info("%s defeated in encounter %s", npc.name, encounter.id)

    removed = False
    if remove_from_scene and npc.is_alive:
        _remove_npc(encounter, npc.id)
        log_event(encounter, npc.id, "removed", f"{npc.name} leaves the fight")
        removed = True

    return UpdateNPCResult(
        found=True,
        name=npc.name,
        died=not npc.is_alive,
        just_died=just_died,
        removed=removed,
        new_hp=npc.current_hp,
        xp_awarded=xp_awarded,
    )


def _remove_npc(encounter: Encounter, npc_id: str) -> None:
    encounter.active_npcs = [n for n in encounter.active_npcs if n.id != npc_id]
    encounter.positions.pop(npc_id, None)
    if npc_id in encounter.turn_order:
        index = encounter.turn_order.index(npc_id)
        encounter.turn_order.pop(index)
        if index < encounter.current_turn_index:
            encounter.current_turn_index -= 1
        encounter.current_turn_index = min(
            encounter.current_turn_index, max(0, len(encounter.turn_order) - 1)
        )


def add_npc(
    encounter: Encounter,
    npc: NPC,
    regions: list[MapRegion] | None = None,
) -> GridPosition:
    """Bring a reinforcement into an encounter in progress.

    Hostile NPCs act this round, after everyone already in the turn order.

    Raises:
        ValueError: If the id is already used in this encounter.
        EncounterClosedError: If the encounter has already ended.
    """
    _require_active(encounter)
    if npc.id == PLAYER_ID or get_npc(encounter, npc.id) is not None:
        raise ValueError(f"Combatant id '{npc.id}' is already in use")

    pos = place_reinforcement(npc, encounter.positions, regions, encounter.grid_size)
    encounter.active_npcs.append(npc)
    encounter.positions[npc.id] = pos
    if npc.is_hostile and npc.is_alive:
        encounter.turn_order.append(npc.id)
    log_event(encounter, npc.id, "joined", f"{npc.name} joins the fight", {"position": pos.as_tuple()})
    return pos


def move_token(encounter: Encounter, token_id: str, target: GridPosition) -> bool:
    """Move a token to a free cell.

    Returns:
        False if no token with that id exists.

    Raises:
        ValueError: If the target is off the grid or held by another token.
    """
    _require_active(encounter)
    if token_id not in encounter.positions:
        return False
    if not in_bounds(target.row, target.col, encounter.grid_size):
        raise ValueError(f"Target position ({target.row}, {target.col}) is out of bounds")
    for other_id, pos in encounter.positions.items():
        if other_id != token_id and pos == target:
            raise ValueError("Target square is occupied")
    encounter.positions[token_id] = target
    encounter.updated_at = _now()
    return True


# ---------------------------------------------------------------------------
# Player
# ---------------------------------------------------------------------------


def apply_player_damage(player: PlayerState, delta: int) -> int:
    """Change the player's HP by delta, clamped to [0, max_hp]. Returns the new HP."""
    player.current_hp = max(0, min(player.max_hp, player.current_hp + delta))
    return player.current_hp


def apply_player_conditions(
    player: PlayerState,
    added: list[str] | None = None,
    removed: list[str] | None = None,
) -> list[str]:
    """Add and remove player conditions with the same rules as NPCs."""
    if added:
        player.conditions = add_conditions(player.conditions, added)
    if removed:
        player.conditions = remove_conditions(player.conditions, removed)
    return player.conditions


def apply_pre_rolled_damage(
    encounter: Encounter,
    player: PlayerState,
    context: NPCRollContext,
) -> int:
    """Apply a pre-rolled NPC attack bundle to the player.

    Only NPCs that are still alive and hostile count, so attackers the
    player killed after the pre-roll deal nothing. Use this only when the
    turn loop is not applying damage for the same turn.

    Returns:
        The damage actually applied.
    """
    _require_active(encounter)
    total = 0
    for entry in context.per_npc:
        npc = get_npc(encounter, entry.id)
        if npc is not None and npc.is_alive and npc.is_hostile:
            total += entry.damage
    if total:
        apply_player_damage(player, -total)
        log_event(encounter, PLAYER_ID, "hp_change", f"{player.name} takes {total} damage", {"delta": -total})
    return total


# ---------------------------------------------------------------------------
# Turn order and termination
# ---------------------------------------------------------------------------


def current_turn_id(encounter: Encounter) -> str | None:
    """Id of the combatant whose turn it is, or None once the encounter has ended."""
    if encounter.status != EncounterStatus.ACTIVE or not encounter.turn_order:
        return None
    return encounter.turn_order[encounter.current_turn_index]


def start_next_round(encounter: Encounter) -> None:
    """Begin a new round: rebuild the turn order from living hostiles, player first."""
    _require_active(encounter)
    encounter.round += 1
    encounter.turn_order = build_turn_order(encounter)
    encounter.current_turn_index = 0
    encounter.updated_at = _now()
    logger.debug("Encounter %s starts round %d", encounter.id, encounter.round)


def advance_turn(encounter: Encounter) -> str:
    """Move to the next combatant that can act.

    Dead and non-hostile NPCs are skipped. Passing the end of the order
    starts a new round: the round counter goes up by one, the order is
    rebuilt from living hostiles and the player acts first.

    Returns:
        Id of the combatant now acting.
    """
    _require_active(encounter)
    while True:
        encounter.current_turn_index += 1
        if encounter.current_turn_index >= len(encounter.turn_order):
            start_next_round(encounter)
            return PLAYER_ID

        token_id = encounter.turn_order[encounter.current_turn_index]
        npc = get_npc(encounter, token_id)
        if npc is not None and npc.is_alive and npc.is_hostile:
            encounter.updated_at = _now()
            return token_id


def check_termination(encounter: Encounter) -> EncounterStatus:
    """Complete the encounter once no living hostile NPC remains.

    Returns:
        The encounter's status after the check.
    """
    if encounter.status == EncounterStatus.ACTIVE and not surviving_hostiles(encounter):
        encounter.status = EncounterStatus.COMPLETED
        log_event(encounter, PLAYER_ID, "victory", "All hostile creatures are defeated")
        logger.info("Encounter %s completed after %d round(s)", encounter.id, encounter.round)
    return encounter.status


def mark_player_defeated(encounter: Encounter) -> EncounterStatus:
    """End the encounter because the player dropped to 0 HP."""
    if encounter.status == EncounterStatus.ACTIVE:
        encounter.status = EncounterStatus.DEFEATED
        log_event(encounter, PLAYER_ID, "defeat", "The player has fallen")
        logger.info("Player defeated in encounter %s", encounter.id)
    return encounter.status


def award_encounter_xp(encounter: Encounter, player: PlayerState) -> int:
    """Give the player the XP deferred during a completed encounter.

    Returns:
        The XP granted (0 unless the encounter was won).
    """
    if encounter.status != EncounterStatus.COMPLETED or encounter.total_xp_awarded <= 0:
        return 0
    granted = encounter.total_xp_awarded
    before = level_for_xp(player.xp)
    player.xp += granted
    encounter.total_xp_awarded = 0
    if level_for_xp(player.xp) > before:
        logger.info("%s reached enough XP for level %d", player.name, level_for_xp(player.xp))
    return granted
