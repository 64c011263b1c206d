"""Tests for the sequential resolve -> narrate -> persist turn pipeline."""

import asyncio
import itertools
import random

import pytest

from engine.encounter import create_encounter, get_npc
from engine.errors import EncounterClosedError, EncounterNotFoundError, PersistenceError
from engine.narration import TemplateNarrator
from engine.turn_loop import (
    TurnLocks,
    TurnWatchdog,
    apply_player_action,
    run_combat_round,
    run_npc_turns,
)
from models.combatants import NPC, AOEData, Ability, CharacterStats, PlayerState
from models.encounter import EncounterStatus, GridPosition
from models.results import AOEResult, NarrationResult
from persistence.documents import CharacterStore, EncounterStore, JsonDocumentStore

LONGSWORD = Ability(
    id="weapon:longsword", name="Longsword", type="weapon",
    damage_roll="1d8", damage_type="slashing", weapon_stat="str",
)
FIREBALL = Ability(
    id="spell:fireball", name="Fireball", type="spell",
    damage_roll="8d6", damage_type="fire", attack_type="save", save_ability="dexterity",
    aoe=AOEData(shape="sphere", size=20, origin="target"),
)


class _ScriptedRandom:
    """d20 rolls follow a fixed cycle; all other dice use a seeded Random."""

    def __init__(self, d20_values, seed: int = 0):
        self._d20 = itertools.cycle(d20_values)
        self._rng = random.Random(seed)

    def randint(self, a, b):
        if (a, b) == (1, 20):
            return next(self._d20)
        return self._rng.randint(a, b)


class _FailingNarrator:
    async def narrate(self, facts):
        raise RuntimeError("model unavailable")


class _SlowNarrator:
    async def narrate(self, facts):
        await asyncio.sleep(5)
        return NarrationResult(narrative="too late")


class _CostingNarrator:
    async def narrate(self, facts):
        return NarrationResult(narrative="...", input_tokens=100, output_tokens=20, cost_usd=0.01)


class _ReadOnlyStore(JsonDocumentStore):
    """Document store whose updates always fail."""

    def update(self, collection, doc_id, partial):
        raise PersistenceError(f"disk full writing {collection}/{doc_id}")


def _make_goblin(npc_id: str, name: str, hp: int = 7) -> NPC:
    return NPC(
        id=npc_id, name=name, slug="goblin", ac=13, current_hp=hp, max_hp=7,
        attack_bonus=4, damage_dice="1d6", damage_bonus=2, xp_value=50,
    )


def _make_player(hp: int = 30) -> PlayerState:
    return PlayerState(
        name="Aria",
        current_hp=hp,
        max_hp=30,
        armor_class=15,
        stats=CharacterStats(strength=16, intelligence=16),
        weapon_proficiencies=["Martial Weapons"],
        spellcasting_ability="intelligence",
        abilities=[LONGSWORD, FIREBALL],
    )


def _make_encounter(goblin_hp: int = 7):
    seeds = {
        "player": GridPosition(row=10, col=10),
        "goblin-a": GridPosition(row=10, col=11),
        "goblin-b": GridPosition(row=11, col=11),
    }
    return create_encounter(
        [_make_goblin("goblin-a", "Goblin A", goblin_hp), _make_goblin("goblin-b", "Goblin B", goblin_hp)],
        location="Crypt",
        seed_positions=seeds,
        character_id="aria",
    )


def _setup(tmp_path, player=None, encounter=None, store_cls=JsonDocumentStore):
    """Create both documents and return (encounter, player, characters, encounters)."""
    seed_store = JsonDocumentStore(tmp_path)
    player = player or _make_player()
    encounter = encounter or _make_encounter()
    asyncio.run(CharacterStore(seed_store).create("aria", player))
    asyncio.run(EncounterStore(seed_store).create(encounter))
    store = store_cls(tmp_path)
    return encounter, player, CharacterStore(store), EncounterStore(store)


def _run_npc_turns(encounter, player, characters, encounters, narrator=None, rng=None, **kwargs):
    events = []

    async def emit(event):
        events.append(event)

    result = asyncio.run(run_npc_turns(
        encounter,
        player,
        character_id="aria",
        narrator=narrator or TemplateNarrator(),
        characters=characters,
        encounters=encounters,
        emit=emit,
        rng=rng,
        **kwargs,
    ))
    return result, events


class TestRunNPCTurns:
    """Tests for run_npc_turns()."""

    def test_misses_start_next_round(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        result, events = _run_npc_turns(enc, player, characters, encounters, rng=_ScriptedRandom([5]))

        assert [s.npc_id for s in result.steps] == ["goblin-a", "goblin-b"]
        assert result.steps[0].narrative == "[Crypt] Goblin A attacks Aria but misses."
        assert result.round == 2
        assert result.status == EncounterStatus.ACTIVE
        assert [e["type"] for e in events] == ["npc_turn", "npc_turn", "round_start"]

        stored = asyncio.run(encounters.load(enc.id))
        assert stored.round == 2
        assert stored.current_turn_index == 0
        assert stored.turn_order == ["player", "goblin-a", "goblin-b"]

    def test_hits_are_applied_and_persisted(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        result, _ = _run_npc_turns(enc, player, characters, encounters, rng=_ScriptedRandom([20], seed=4))

        dealt = sum(s.result.damage for s in result.steps)
        assert 6 <= dealt <= 16
        assert player.current_hp == 30 - dealt
        assert result.steps[-1].player_hp_remaining == player.current_hp
        assert asyncio.run(characters.load("aria")).current_hp == player.current_hp
        assert "**" in result.steps[0].narrative

    def test_failed_narration_keeps_mechanics(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        result, _ = _run_npc_turns(
            enc, player, characters, encounters, narrator=_FailingNarrator(), rng=_ScriptedRandom([20]),
        )
        assert len(result.steps) == 2
        assert all(step.narrative is None for step in result.steps)
        assert player.current_hp < 30
        assert asyncio.run(characters.load("aria")).current_hp == player.current_hp

    def test_slow_narration_times_out(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        result, _ = _run_npc_turns(
            enc, player, characters, encounters,
            narrator=_SlowNarrator(), rng=_ScriptedRandom([5]), narration_timeout=0.01,
        )
        assert [step.narrative for step in result.steps] == [None, None]
        assert result.round == 2

    def test_persistence_failure_stops_the_round(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path, store_cls=_ReadOnlyStore)
        events = []

        async def emit(event):
            events.append(event)

        with pytest.raises(PersistenceError):
            asyncio.run(run_npc_turns(
                enc, player,
                character_id="aria",
                narrator=TemplateNarrator(),
                characters=characters,
                encounters=encounters,
                emit=emit,
                rng=_ScriptedRandom([5]),
            ))
        attacks = [e for e in enc.event_log if e.kind == "npc_attack"]
        assert [e.actor_id for e in attacks] == ["goblin-a"]
        assert events == []

    def test_failed_event_delivery_keeps_round(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)

        async def emit(event):
            raise RuntimeError("socket closed")

        result = asyncio.run(run_npc_turns(
            enc,
            player,
            character_id="aria",
            narrator=TemplateNarrator(),
            characters=characters,
            encounters=encounters,
            emit=emit,
            rng=_ScriptedRandom([5]),
        ))
        assert len(result.steps) == 2
        assert result.round == 2
        assert asyncio.run(encounters.load(enc.id)).round == 2

    def test_player_death_ends_encounter(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path, player=_make_player(hp=1))
        result, events = _run_npc_turns(enc, player, characters, encounters, rng=_ScriptedRandom([20]))

        assert result.player_defeated
        assert result.status == EncounterStatus.DEFEATED
        assert [s.npc_id for s in result.steps] == ["goblin-a"]
        assert events[-1]["type"] == "player_defeated"
        assert asyncio.run(encounters.load(enc.id)).status == EncounterStatus.DEFEATED
        assert asyncio.run(characters.load("aria")).current_hp == 0

    def test_closed_encounter_rejected(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        enc.status = EncounterStatus.COMPLETED
        with pytest.raises(EncounterClosedError):
            _run_npc_turns(enc, player, characters, encounters)

    def test_usage_is_summed(self, tmp_path):
        enc, player, characters, encounters = _setup(tmp_path)
        result, _ = _run_npc_turns(
            enc, player, characters, encounters, narrator=_CostingNarrator(), rng=_ScriptedRandom([5]),
        )
        assert result.tokens_used == 240
        assert result.cost_usd == pytest.approx(0.02)


class TestRunCombatRound:
    """Tests for run_combat_round()."""

    def _round(self, characters, encounters, locks, encounter_id, ability="Longsword", **kwargs):
        return run_combat_round(
            encounter_id,
            "aria",
            ability,
            narrator=TemplateNarrator(),
            characters=characters,
            encounters=encounters,
            locks=locks,
            **kwargs,
        )

    def test_killing_last_goblin_completes(self, tmp_path):
        enc = create_encounter(
            [_make_goblin("goblin-a", "Goblin A", hp=1)],
            seed_positions={"player": GridPosition(row=10, col=10), "goblin-a": GridPosition(row=10, col=11)},
        )
        enc, player, characters, encounters = _setup(tmp_path, encounter=enc)
        events = []

        async def emit(event):
            events.append(event)

        result = asyncio.run(self._round(
            characters, encounters, TurnLocks(), enc.id,
            target_id="goblin-a", emit=emit, rng=_ScriptedRandom([15], seed=1),
        ))

        assert result.status == EncounterStatus.COMPLETED
        assert result.steps == []
        assert result.player_narrative.endswith("No enemies remain standing.")
        assert [e["type"] for e in events] == ["player_turn", "encounter_completed"]
        assert events[-1]["xp_awarded"] == 50
        assert asyncio.run(characters.load("aria")).xp == 50
        stored = asyncio.run(encounters.load(enc.id))
        assert stored.status == EncounterStatus.COMPLETED
        assert stored.total_xp_awarded == 0

    def test_queued_rounds_run_in_order(self, tmp_path):
        enc, _, characters, encounters = _setup(tmp_path)
        locks = TurnLocks()
        rng = _ScriptedRandom([5])

        async def both():
            return await asyncio.gather(
                self._round(characters, encounters, locks, enc.id, target_id="goblin-a", rng=rng),
                self._round(characters, encounters, locks, enc.id, target_id="goblin-a", rng=rng),
            )

        first, second = asyncio.run(both())
        assert sorted([first.round, second.round]) == [2, 3]
        assert asyncio.run(encounters.load(enc.id)).round == 3

    def test_unknown_encounter(self, tmp_path):
        _, _, characters, encounters = _setup(tmp_path)
        with pytest.raises(EncounterNotFoundError):
            asyncio.run(self._round(characters, encounters, TurnLocks(), "missing"))

    def test_finished_encounters_release_their_locks(self, tmp_path):
        locks = TurnLocks()
        for _ in range(5):
            enc = create_encounter(
                [_make_goblin("goblin-a", "Goblin A", hp=1)],
                seed_positions={"player": GridPosition(row=10, col=10), "goblin-a": GridPosition(row=10, col=11)},
            )
            enc, _, characters, encounters = _setup(tmp_path, encounter=enc)
            result = asyncio.run(self._round(
                characters, encounters, locks, enc.id, target_id="goblin-a", rng=_ScriptedRandom([15], seed=1),
            ))
            assert result.status == EncounterStatus.COMPLETED
        assert locks._locks == {}

    def test_active_encounter_keeps_its_lock(self, tmp_path):
        enc, _, characters, encounters = _setup(tmp_path)
        locks = TurnLocks()
        asyncio.run(self._round(characters, encounters, locks, enc.id, target_id="goblin-a", rng=_ScriptedRandom([5])))
        assert list(locks._locks) == [enc.id]

    def test_unknown_encounter_leaves_no_lock(self, tmp_path):
        _, _, characters, encounters = _setup(tmp_path)
        locks = TurnLocks()
        with pytest.raises(EncounterNotFoundError):
            asyncio.run(self._round(characters, encounters, locks, "missing"))
        assert locks._locks == {}

    def test_unknown_ability(self, tmp_path):
        enc, _, characters, encounters = _setup(tmp_path)
        with pytest.raises(ValueError):
            asyncio.run(self._round(characters, encounters, TurnLocks(), enc.id, ability="Wish"))

    def test_watchdog_cleared_after_failure(self, tmp_path):
        enc, _, characters, encounters = _setup(tmp_path)
        watchdog = TurnWatchdog()
        with pytest.raises(ValueError):
            asyncio.run(self._round(
                characters, encounters, TurnLocks(), enc.id, ability="Wish", watchdog=watchdog,
            ))
        assert not watchdog.is_processing(enc.id)


class TestApplyPlayerAction:
    """Tests for apply_player_action()."""

    def test_out_of_range_melee_is_impossible(self):
        enc = create_encounter(
            [_make_goblin("goblin-a", "Goblin A")],
            seed_positions={"player": GridPosition(row=10, col=10), "goblin-a": GridPosition(row=2, col=2)},
        )
        result, target = apply_player_action(enc, _make_player(), LONGSWORD, "goblin-a", rng=_ScriptedRandom([20]))
        assert result.impossible
        assert "melee reach" in result.notes
        assert target.current_hp == 7

    def test_fireball_hits_everything_in_the_sphere(self):
        enc = create_encounter(
            [_make_goblin("goblin-a", "Goblin A"), _make_goblin("goblin-b", "Goblin B")],
            seed_positions={
                "player": GridPosition(row=10, col=10),
                "goblin-a": GridPosition(row=5, col=5),
                "goblin-b": GridPosition(row=5, col=6),
            },
        )
        result, target = apply_player_action(
            enc, _make_player(), FIREBALL, aoe_origin=GridPosition(row=5, col=5), rng=_ScriptedRandom([1], seed=3),
        )
        assert isinstance(result, AOEResult)
        assert target is None
        assert {t.npc_id for t in result.targets} == {"goblin-a", "goblin-b"}
        assert get_npc(enc, "goblin-a").current_hp == 0
        assert enc.total_xp_awarded == 100

    def test_cone_from_range_text(self):
        burning_hands = Ability(
            id="spell:burning-hands", name="Burning Hands", type="spell",
            damage_roll="3d6", damage_type="fire", attack_type="save", save_ability="dexterity",
            srd_range="Self (15-foot cone)",
        )
        enc = create_encounter(
            [_make_goblin("goblin-a", "Goblin A"), _make_goblin("goblin-b", "Goblin B"),
             _make_goblin("goblin-c", "Goblin C")],
            seed_positions={
                "player": GridPosition(row=10, col=10),
                "goblin-a": GridPosition(row=10, col=11),
                "goblin-b": GridPosition(row=10, col=12),
                "goblin-c": GridPosition(row=10, col=7),
            },
        )
        result, target = apply_player_action(
            enc, _make_player(), burning_hands,
            aoe_direction=GridPosition(row=10, col=13), rng=_ScriptedRandom([1], seed=2),
        )
        assert isinstance(result, AOEResult)
        assert target is None
        assert {t.npc_id for t in result.targets} == {"goblin-a", "goblin-b"}
        assert get_npc(enc, "goblin-c").current_hp == 7


class TestTurnLocks:

    def test_one_lock_per_encounter(self):
        locks = TurnLocks()
        assert locks.lock_for("a") is locks.lock_for("a")
        assert locks.lock_for("a") is not locks.lock_for("b")

    def test_is_locked_and_discard(self):
        locks = TurnLocks()

        async def hold():
            async with locks.lock_for("a"):
                assert locks.is_locked("a")
                locks.discard("a")
            assert not locks.is_locked("a")

        asyncio.run(hold())
        locks.discard("a")
        assert not locks.is_locked("a")


class TestTurnWatchdog:

    def test_stale_flag_is_released(self):
        now = [100.0]
        watchdog = TurnWatchdog(timeout=30, clock=lambda: now[0])
        watchdog.start("enc")
        now[0] += 10
        assert watchdog.is_processing("enc")
        now[0] += 25
        assert not watchdog.is_processing("enc")

    def test_finish_clears(self):
        watchdog = TurnWatchdog()
        watchdog.start("enc")
        watchdog.finish("enc")
        assert not watchdog.is_processing("enc")
