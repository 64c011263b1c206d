"""Sequential combat round pipeline: resolve, narrate, persist, per turn.

Each NPC turn is fully resolved and applied before its narration is
awaited, and both documents are written before the next NPC acts. Only
one round runs per encounter at a time; separate encounters proceed in
parallel.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable

from config import NARRATION_TIMEOUT_SECONDS, PLAYER_ID, TURN_WATCHDOG_SECONDS
from engine.aoe import build_aoe_shape, complete_ability, get_aoe_cells, get_aoe_targets
from engine.combat import (
    resolve_aoe_action,
    resolve_npc_turn,
    resolve_player_action,
    total_player_damage,
)
from engine.encounter import (
    apply_player_damage,
    award_encounter_xp,
    check_termination,
    get_npc,
    log_event,
    mark_player_defeated,
    start_next_round,
    update_npc,
)
from engine.errors import EncounterClosedError, EncounterNotFoundError
from engine.grid import validate_attack_range
from engine.narration import NarrationFacts, Narrator, npc_turn_facts, player_turn_facts
from models.combatants import NPC, Ability, PlayerState
from models.encounter import Encounter, EncounterStatus, GridPosition
from models.results import AOEResult, NarrationResult, RollResult, TurnLoopResult, TurnStep
from persistence.documents import CharacterStore, EncounterStore

logger = logging.getLogger(__name__)

Emit = Callable[[dict[str, Any]], Awaitable[None]]


class TurnLocks:
    """One asyncio.Lock per encounter id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, encounter_id: str) -> asyncio.Lock:
        lock = self._locks.get(encounter_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[encounter_id] = lock
        return lock

    def is_locked(self, encounter_id: str) -> bool:
        lock = self._locks.get(encounter_id)
        return lock is not None and lock.locked()

    def discard(self, encounter_id: str) -> None:
        """Forget the lock of a finished encounter unless a round still holds it."""
        lock = self._locks.get(encounter_id)
        if lock is not None and not lock.locked():
            del self._locks[encounter_id]


class TurnWatchdog:
    """Per-encounter "processing" flag that clears itself when a round stalls.

    Clients poll is_processing() to decide whether to accept new input. A
    flag older than the timeout is released and logged, so a stuck round
    can never leave the encounter unresponsive forever.
    """

    def __init__(
        self,
        timeout: float = TURN_WATCHDOG_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.clock = clock
        self._started: dict[str, float] = {}

    def start(self, encounter_id: str) -> None:
        self._started[encounter_id] = self.clock()

    def finish(self, encounter_id: str) -> None:
        self._started.pop(encounter_id, None)

    def is_processing(self, encounter_id: str) -> bool:
        started = self._started.get(encounter_id)
        if started is None:
            return False
        if self.clock() - started > self.timeout:
            logger.warning(
                "Encounter %s stalled for more than %.0fs, releasing processing flag",
                encounter_id, self.timeout,
            )
            self.finish(encounter_id)
            return False
        return True


# ---------------------------------------------------------------------------
# Player action
# ---------------------------------------------------------------------------


def apply_player_action(
    encounter: Encounter,
    player: PlayerState,
    ability: Ability,
    target_id: str | None = None,
    aoe_origin: GridPosition | None = None,
    aoe_direction: GridPosition | None = None,
    rng: random.Random | None = None,
) -> tuple[RollResult | AOEResult, NPC | None]:
    """Resolve the player's action and apply its damage to the roster.

    Returns:
        (result, target) tuple; target is None for area effects and
        untargeted actions.

    Raises:
        EncounterClosedError: If the encounter has already ended.
    """
    if not encounter.is_active:
        raise EncounterClosedError(f"Encounter {encounter.id} is {encounter.status.value}")
    ability = complete_ability(ability)
    player_pos = encounter.positions.get(PLAYER_ID)

    if ability.aoe is not None and player_pos is not None:
        shape = build_aoe_shape(ability.aoe, player_pos, aoe_origin, aoe_direction)
        cells = get_aoe_cells(shape, encounter.grid_size)
        caught = []
        for token_id in get_aoe_targets(shape, encounter.positions, encounter.grid_size):
            npc = get_npc(encounter, token_id)
            if npc is not None and npc.is_alive:
                caught.append(npc)
        aoe_result = resolve_aoe_action(player, ability, caught, cells, rng=rng)
        for outcome in aoe_result.targets:
            if outcome.damage_taken > 0:
                update_npc(encounter, outcome.npc_id, hp_delta=-outcome.damage_taken)
        log_event(
            encounter, PLAYER_ID, "player_aoe",
            f"{player.name} uses {ability.name} ({len(caught)} caught)",
            aoe_result.model_dump(mode="json", exclude={"affected_cells"}),
        )
        return aoe_result, None

    target = get_npc(encounter, target_id) if target_id else None
    if target is not None and target.is_alive and player_pos is not None:
        target_pos = encounter.positions.get(target.id)
        if target_pos is not None:
            check = validate_attack_range(player_pos, target_pos, ability.range)
            if not check.in_range:
                result = RollResult(
                    check_type="IMPOSSIBLE", success=False, notes=check.reason or "", impossible=True,
                )
                log_event(encounter, PLAYER_ID, "player_action", f"{ability.name}: {result.notes}")
                return result, target

    result = resolve_player_action(player, ability, target, encounter.positions, rng=rng)
    damage = total_player_damage(result)
    if damage and target is not None:
        update_npc(encounter, target.id, hp_delta=-damage)
    log_event(
        encounter, PLAYER_ID, "player_action",
        f"{player.name}: {result.check_type} {'succeeds' if result.success else 'fails'}"
        + (f" for {damage} damage" if damage else ""),
        {"target_id": target.id if target else None, "damage": damage},
    )
    return result, target


# ---------------------------------------------------------------------------
# Round pipeline
# ---------------------------------------------------------------------------


async def _narrate(
    narrator: Narrator,
    facts: NarrationFacts,
    timeout: float,
) -> NarrationResult | None:
    try:
        return await asyncio.wait_for(narrator.narrate(facts), timeout)
    except asyncio.TimeoutError:
        logger.warning("Narration for %s timed out after %.0fs", facts.actor_name, timeout)
    except Exception:
        logger.exception("Narration for %s failed", facts.actor_name)
    return None


async def _persist(
    encounter: Encounter,
    player: PlayerState,
    character_id: str,
    characters: CharacterStore,
    encounters: EncounterStore,
) -> None:
    await asyncio.gather(
        characters.save_character_state(character_id, player),
        encounters.save_encounter_state(encounter),
    )


async def _no_emit(event: dict[str, Any]) -> None:
    return None


async def _send(emit: Emit, event: dict[str, Any]) -> None:
    try:
        await emit(event)
    except Exception:
        logger.exception("Could not deliver %s event for %s", event.get("type"), event.get("encounter_id"))


async def run_npc_turns(
    encounter: Encounter,
    player: PlayerState,
    *,
    character_id: str,
    narrator: Narrator,
    characters: CharacterStore,
    encounters: EncounterStore,
    player_result: RollResult | AOEResult | None = None,
    target: NPC | None = None,
    emit: Emit | None = None,
    rng: random.Random | None = None,
    narration_timeout: float = NARRATION_TIMEOUT_SECONDS,
) -> TurnLoopResult:
    """Play out the rest of the round after the player has acted.

    For the player's action and then each living hostile NPC in turn order:
    the mechanics are resolved and applied, narration is awaited, and the
    character and encounter documents are written before moving on. NPC
    damage is applied here and only here.

    A failed or slow narrator leaves that step's narrative as None; the
    mechanics still stand, and so does an event that cannot be delivered. A
    PersistenceError propagates immediately so no later NPC acts on state
    that was never saved.

    Returns:
        TurnLoopResult with one step per NPC that acted.

    Raises:
        EncounterClosedError: If the encounter has already ended.
        PersistenceError: If either document cannot be written.
    """
    if not encounter.is_active:
        raise EncounterClosedError(f"Encounter {encounter.id} is {encounter.status.value}")
    emit = emit or _no_emit
    loop_result = TurnLoopResult(
        encounter_id=encounter.id,
        round=encounter.round,
        status=encounter.status,
    )

    def _account(narration: NarrationResult | None) -> str | None:
        if narration is None:
            return None
        loop_result.tokens_used += narration.input_tokens + narration.output_tokens
        loop_result.cost_usd += narration.cost_usd
        return narration.narrative

    if player_result is not None:
        encounter.current_turn_index = 0
        facts = player_turn_facts(encounter, player, player_result, target)
        loop_result.player_narrative = _account(await _narrate(narrator, facts, narration_timeout))
        await _persist(encounter, player, character_id, characters, encounters)
        await _send(emit, {
            "type": "player_turn",
            "encounter_id": encounter.id,
            "result": player_result.model_dump(mode="json"),
            "narrative": loop_result.player_narrative,
        })

    for index, token_id in enumerate(list(encounter.turn_order)):
        if token_id == PLAYER_ID:
            continue
        npc = get_npc(encounter, token_id)
        if npc is None or not npc.is_alive or not npc.is_hostile:
            continue

        encounter.current_turn_index = index
        result = resolve_npc_turn(npc, player.armor_class, rng=rng)
        if result.hit and result.damage > 0:
            apply_player_damage(player, -result.damage)
        log_event(encounter, npc.id, "npc_attack", result.trace, result.model_dump(mode="json"))

        facts = npc_turn_facts(encounter, player, npc, result)
        narrative = _account(await _narrate(narrator, facts, narration_timeout))

        if not player.is_alive:
            mark_player_defeated(encounter)
        await _persist(encounter, player, character_id, characters, encounters)

        step = TurnStep(
            npc_id=npc.id,
            result=result,
            narrative=narrative,
            player_hp_remaining=player.current_hp,
        )
        loop_result.steps.append(step)
        await _send(emit, {"type": "npc_turn", "encounter_id": encounter.id, **step.model_dump(mode="json")})

        if not player.is_alive:
            logger.info("Player died during %s's turn in encounter %s", npc.name, encounter.id)
            loop_result.player_defeated = True
            loop_result.status = encounter.status
            await _send(emit, {"type": "player_defeated", "encounter_id": encounter.id})
            return loop_result

    if check_termination(encounter) == EncounterStatus.COMPLETED:
        xp = award_encounter_xp(encounter, player)
        await characters.save_character_state(character_id, player)
        await encounters.complete(encounter)
        await _send(emit, {
            "type": "encounter_completed",
            "encounter_id": encounter.id,
            "xp_awarded": xp,
            "defeated": [n.name for n in encounter.defeated_npcs],
            "rounds": encounter.round,
        })
    else:
        start_next_round(encounter)
        await encounters.save_encounter_state(
            encounter, fields=("round", "turn_order", "current_turn_index", "event_log"),
        )
        await _send(emit, {"type": "round_start", "encounter_id": encounter.id, "round": encounter.round})

    loop_result.round = encounter.round
    loop_result.status = encounter.status
    return loop_result


async def run_combat_round(
    encounter_id: str,
    character_id: str,
    ability_name: str,
    *,
    narrator: Narrator,
    characters: CharacterStore,
    encounters: EncounterStore,
    locks: TurnLocks,
    target_id: str | None = None,
    aoe_origin: GridPosition | None = None,
    aoe_direction: GridPosition | None = None,
    emit: Emit | None = None,
    rng: random.Random | None = None,
    watchdog: TurnWatchdog | None = None,
) -> TurnLoopResult:
    """Resolve the player's action and every NPC turn under the encounter lock.

    Both documents are loaded after the lock is acquired, so a queued
    request always sees the state the previous round left behind. Once the
    encounter is over its lock is dropped from locks.

    Raises:
        EncounterNotFoundError: If the encounter or character does not exist.
        ValueError: If the player has no ability with that name or id.
    """
    finished = False
    try:
        async with locks.lock_for(encounter_id):
            if watchdog is not None:
                watchdog.start(encounter_id)
            try:
                encounter = await encounters.load(encounter_id)
                if encounter is None:
                    finished = True
                    raise EncounterNotFoundError(f"Encounter {encounter_id} not found")
                player = await characters.load(character_id)
                if player is None:
                    raise EncounterNotFoundError(f"Character {character_id} not found")
                ability = player.find_ability(ability_name)
                if ability is None:
                    raise ValueError(f"{player.name} has no ability '{ability_name}'")
                if encounter.status != EncounterStatus.ACTIVE:
                    finished = True

                player_result, target = apply_player_action(
                    encounter, player, ability, target_id, aoe_origin, aoe_direction, rng=rng,
                )
                result = await run_npc_turns(
                    encounter,
                    player,
                    character_id=character_id,
                    narrator=narrator,
                    characters=characters,
                    encounters=encounters,
                    player_result=player_result,
                    target=target,
                    emit=emit,
                    rng=rng,
                )
                finished = result.status != EncounterStatus.ACTIVE
                return result
            finally:
                if watchdog is not None:
                    watchdog.finish(encounter_id)
    finally:
        # discard() keeps a lock that a queued round has already taken.
        if finished:
            locks.discard(encounter_id)
