"""Encounter lifecycle, roster, movement, and combat round endpoints."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from api.ws import emitter_for
from config import PLAYER_ID
from engine.encounter import (
    add_npc,
    advance_turn,
    award_encounter_xp,
    check_termination,
    create_encounter,
    current_turn_id,
    move_token,
    update_npc,
)
from engine.grid import validate_movement
from engine.turn_loop import run_combat_round
from models.combatants import NPC, Ability, Disposition, PlayerState
from models.encounter import Encounter, EncounterStatus, GridPosition, MapRegion
from models.results import TurnLoopResult, UpdateNPCResult
from persistence.documents import valid_doc_id
from persistence.srd import ability_from_spell, ability_from_weapon, npcs_from_srd

router = APIRouter()


class SRDCreatureRequest(BaseModel):
    """Creatures to build from an SRD monster entry."""
    name: str
    slug: str
    disposition: Disposition = Disposition.HOSTILE
    count: int = 1


class SRDAbilityRequest(BaseModel):
    """A spell or weapon from the SRD to add to the player's abilities."""
    category: Literal["spell", "equipment"]
    slug: str


class CreateEncounterRequest(BaseModel):
    """Request body for starting an encounter."""
    character_id: str
    session_id: str = ""
    player: PlayerState | None = None   # Creates/overwrites the character document
    npcs: list[NPC] = []
    srd_creatures: list[SRDCreatureRequest] = []
    srd_abilities: list[SRDAbilityRequest] = []
    location: str = ""
    scene: str = ""
    regions: list[MapRegion] = []
    seed_positions: dict[str, GridPosition] = {}


class AddNPCRequest(BaseModel):
    """Request body for a reinforcement joining mid-fight."""
    npc: NPC | None = None
    srd_creature: SRDCreatureRequest | None = None
    regions: list[MapRegion] = []


class UpdateNPCRequest(BaseModel):
    """HP and condition changes for one NPC."""
    hp_delta: int = 0
    conditions_added: list[str] = []
    conditions_removed: list[str] = []
    remove_from_scene: bool = False


class MoveRequest(BaseModel):
    """Move a token to a new cell."""
    token_id: str = PLAYER_ID
    row: int
    col: int


class ActionRequest(BaseModel):
    """The player's action for this turn."""
    character_id: str
    ability: str                        # Ability id or name
    target_id: str | None = None
    aoe_origin: GridPosition | None = None
    aoe_direction: GridPosition | None = None


def _state(request: Request):
    return request.app.state


async def _load_encounter(request: Request, encounter_id: str) -> Encounter:
    encounter = await _state(request).encounters.load(encounter_id)
    if encounter is None:
        raise HTTPException(status_code=404, detail=f"Encounter {encounter_id} not found")
    return encounter


async def _load_player(request: Request, character_id: str) -> PlayerState:
    player = await _state(request).characters.load(character_id)
    if player is None:
        raise HTTPException(status_code=404, detail=f"Character {character_id} not found")
    return player


def _srd_npcs(request: Request, creature: SRDCreatureRequest, taken: set[str]) -> list[NPC]:
    record = _state(request).srd.get("monster", creature.slug)
    prefix = creature.slug
    suffix = 2
    while any(i == prefix or i.startswith(f"{prefix}-") for i in taken):
        prefix = f"{creature.slug}{suffix}"
        suffix += 1
    return npcs_from_srd(
        record,
        creature.name,
        slug=creature.slug,
        disposition=creature.disposition,
        count=creature.count,
        id_prefix=prefix,
    )


def _srd_ability(request: Request, entry: SRDAbilityRequest) -> Ability:
    record = _state(request).srd.get(entry.category, entry.slug)
    if record is None:
        raise HTTPException(status_code=400, detail=f"No SRD {entry.category} '{entry.slug}'")
    if entry.category == "spell":
        return ability_from_spell(record, entry.slug)
    return ability_from_weapon(record, entry.slug)


def _view(request: Request, encounter: Encounter) -> dict:
    return {
        **encounter.model_dump(mode="json"),
        "current_turn_id": current_turn_id(encounter),
        "processing": _state(request).watchdog.is_processing(encounter.id),
    }


@router.post("/encounters", status_code=201)
async def start_encounter(body: CreateEncounterRequest, request: Request) -> dict:
    """Create an encounter for a character and persist it."""
    state = _state(request)
    if not valid_doc_id(body.character_id):
        raise HTTPException(status_code=400, detail=f"Invalid character id: {body.character_id}")
    player = body.player if body.player is not None else await _load_player(request, body.character_id)
    if body.srd_abilities:
        player = player.model_copy(update={
            "abilities": player.abilities + [_srd_ability(request, entry) for entry in body.srd_abilities],
        })
    if body.player is not None:
        await state.characters.create(body.character_id, player)
    elif body.srd_abilities:
        await state.characters.save_character_state(body.character_id, player, fields=("abilities",))

    npcs = list(body.npcs)
    for creature in body.srd_creatures:
        npcs.extend(_srd_npcs(request, creature, {n.id for n in npcs}))
    if not npcs:
        raise HTTPException(status_code=400, detail="An encounter needs at least one NPC")

    try:
        encounter = create_encounter(
            npcs,
            location=body.location,
            scene=body.scene,
            regions=body.regions,
            seed_positions=body.seed_positions,
            session_id=body.session_id,
            character_id=body.character_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await state.encounters.create(encounter)
    return _view(request, encounter)


@router.get("/encounters/{encounter_id}")
async def get_encounter(encounter_id: str, request: Request) -> dict:
    """Get the full encounter state plus whose turn it is."""
    return _view(request, await _load_encounter(request, encounter_id))


@router.post("/encounters/{encounter_id}/npcs", status_code=201)
async def add_reinforcement(encounter_id: str, body: AddNPCRequest, request: Request) -> dict:
    """Bring new NPCs into an encounter in progress."""
    async with _state(request).locks.lock_for(encounter_id):
        encounter = await _load_encounter(request, encounter_id)
        if body.npc is not None:
            npcs = [body.npc]
        elif body.srd_creature is not None:
            npcs = _srd_npcs(request, body.srd_creature, {n.id for n in encounter.active_npcs})
        else:
            raise HTTPException(status_code=400, detail="Provide either npc or srd_creature")

        placed = {}
        for npc in npcs:
            try:
                placed[npc.id] = add_npc(encounter, npc, body.regions)
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
        await _state(request).encounters.save_encounter_state(encounter)
    return {
        "positions": {k: v.model_dump() for k, v in placed.items()},
        "turn_order": encounter.turn_order,
    }


@router.post("/encounters/{encounter_id}/npcs/{npc_id}")
async def change_npc(
    encounter_id: str,
    npc_id: str,
    body: UpdateNPCRequest,
    request: Request,
) -> dict:
    """Apply HP and condition changes to an NPC.

    Killing the last hostile NPC completes the encounter and grants its XP.
    """
    state = _state(request)
    async with state.locks.lock_for(encounter_id):
        encounter = await _load_encounter(request, encounter_id)
        result: UpdateNPCResult = update_npc(
            encounter,
            npc_id,
            hp_delta=body.hp_delta,
            conditions_added=body.conditions_added,
            conditions_removed=body.conditions_removed,
            remove_from_scene=body.remove_from_scene,
        )
        if not result.found:
            raise HTTPException(status_code=404, detail=f"No NPC {npc_id} in this encounter")

        if check_termination(encounter) == EncounterStatus.COMPLETED:
            player = await _load_player(request, encounter.character_id)
            award_encounter_xp(encounter, player)
            await state.characters.save_character_state(encounter.character_id, player)
            await state.encounters.complete(encounter)
        else:
            await state.encounters.save_encounter_state(encounter)
    if encounter.status != EncounterStatus.ACTIVE:
        state.locks.discard(encounter_id)
    return {**result.model_dump(), "status": encounter.status.value}


@router.post("/encounters/{encounter_id}/move")
async def move(encounter_id: str, body: MoveRequest, request: Request) -> dict:
    """Move a token; the player is limited to their walking speed."""
    state = _state(request)
    async with state.locks.lock_for(encounter_id):
        encounter = await _load_encounter(request, encounter_id)
        target = GridPosition(row=body.row, col=body.col)
        start = encounter.positions.get(body.token_id)
        if start is None:
            raise HTTPException(status_code=404, detail=f"No token {body.token_id} on the grid")

        if body.token_id == PLAYER_ID:
            player = await _load_player(request, encounter.character_id)
            check = validate_movement(start, target, player.speed)
            if not check.in_range:
                raise HTTPException(status_code=400, detail=check.reason)

        try:
            move_token(encounter, body.token_id, target)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        await state.encounters.update_token_position(encounter_id, body.token_id, target)
    return {"token_id": body.token_id, "position": target.model_dump()}


@router.post("/encounters/{encounter_id}/advance")
async def advance(encounter_id: str, request: Request) -> dict:
    """Pass the turn to the next combatant that can act."""
    state = _state(request)
    async with state.locks.lock_for(encounter_id):
        encounter = await _load_encounter(request, encounter_id)
        acting = advance_turn(encounter)
        await state.encounters.save_encounter_state(
            encounter, fields=("round", "turn_order", "current_turn_index"),
        )
    return {"current_turn_id": acting, "round": encounter.round}


@router.post("/encounters/{encounter_id}/action", response_model=TurnLoopResult)
async def take_action(encounter_id: str, body: ActionRequest, request: Request) -> TurnLoopResult:
    """Resolve the player's action, then every NPC turn, narrating each in order."""
    state = _state(request)
    try:
        return await run_combat_round(
            encounter_id,
            body.character_id,
            body.ability,
            narrator=state.narrator,
            characters=state.characters,
            encounters=state.encounters,
            locks=state.locks,
            target_id=body.target_id,
            aoe_origin=body.aoe_origin,
            aoe_direction=body.aoe_direction,
            emit=emitter_for(encounter_id),
            watchdog=state.watchdog,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
