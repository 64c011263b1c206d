"""Read-only SRD reference lookup (monsters, spells, equipment, conditions)."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from engine.aoe import parse_aoe_from_description, parse_aoe_from_range
from engine.grid import parse_spell_range, parse_weapon_range
from engine.rules import cr_to_xp
from models.combatants import NPC, AOEData, Ability, Disposition

logger = logging.getLogger(__name__)

SRD_CATEGORIES = ("monster", "spell", "equipment", "magic_item", "condition")


class SRDLoader(Protocol):
    """Fetches a single SRD record; returns None when it does not exist."""

    def load(self, category: str, slug: str) -> dict[str, Any] | None:
        ...


class SRDCache:
    """Read-through cache for SRD records.

    SRD content is static, so entries never expire. One instance is owned by
    the SRDReference it is passed to and lives as long as that owner.
    """

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], dict[str, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, category: str, slug: str) -> dict[str, Any] | None:
        entry = self._entries.get((category, slug))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, category: str, slug: str, record: dict[str, Any]) -> None:
        self._entries[(category, slug)] = record

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class JsonSRDLoader:
    """Loads SRD records from <root>/<category>.json files keyed by slug."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def load(self, category: str, slug: str) -> dict[str, Any] | None:
        path = self.root / f"{category}.json"
        if not path.exists():
            return None
        with open(path) as f:
            records = json.load(f)
        return records.get(slug)


class SRDReference:
    """SRD lookup keyed by (category, slug) with an injected cache."""

    def __init__(self, loader: SRDLoader, cache: SRDCache | None = None) -> None:
        self.loader = loader
        self.cache = cache if cache is not None else SRDCache()

    def get(self, category: str, slug: str) -> dict[str, Any] | None:
        """Return the SRD record, or None if the loader has no such entry.

        Raises:
            ValueError: If the category is not a known SRD category.
        """
        if category not in SRD_CATEGORIES:
            raise ValueError(f"Unknown SRD category: {category}")
        slug = slug.strip().lower()
        cached = self.cache.get(category, slug)
        if cached is not None:
            return cached

        record = self.loader.load(category, slug)
        if record is None:
            logger.info("SRD %s '%s' not found", category, slug)
            return None
        self.cache.put(category, slug, record)
        return record


def _first_action(record: dict[str, Any]) -> dict[str, Any]:
    actions = record.get("actions") or []
    return actions[0] if actions else {}


def npcs_from_srd(
    record: dict[str, Any] | None,
    name: str,
    slug: str | None = None,
    disposition: Disposition = Disposition.HOSTILE,
    count: int = 1,
    id_prefix: str | None = None,
) -> list[NPC]:
    """Build NPC stat blocks from an SRD monster record.

    Attack numbers come from the monster's first action. Without a record
    the NPCs get weak placeholder stats. With count > 1 the names get letter
    suffixes ("Bandit A", "Bandit B"), or numbers past 26 ("Rat 1" .. "Rat 30").
    """
    if record is not None:
        action = _first_action(record)
        base = {
            "ac": record.get("armor_class") or 10,
            "max_hp": record.get("hit_points") or 1,
            "attack_bonus": action.get("attack_bonus") or 0,
            "damage_dice": action.get("damage_dice") or "1d4",
            "damage_bonus": action.get("damage_bonus") or 0,
            "xp_value": record.get("xp") or cr_to_xp(record.get("challenge_rating", 0)),
            "notes": "",
        }
    else:
        base = {
            "ac": 10,
            "max_hp": 4,
            "attack_bonus": 2,
            "damage_dice": "1d6",
            "damage_bonus": 0,
            "xp_value": 10,
            "notes": "Stats estimated (SRD lookup failed).",
        }

    prefix = id_prefix or (slug or name).lower().replace(" ", "-")
    npcs = []
    for i in range(max(1, count)):
        if count > 26:
            suffix = str(i + 1)
        else:
            suffix = chr(65 + i) if count > 1 else ""
        npcs.append(NPC(
            id=f"{prefix}-{suffix.lower()}" if suffix else prefix,
            name=f"{name} {suffix}" if suffix else name,
            slug=slug,
            current_hp=base["max_hp"],
            disposition=disposition,
            **base,
        ))
    return npcs


def _slug_for(name: str) -> str:
    return name.strip().lower().replace(" ", "-")


def _spell_attack_type(record: dict[str, Any], range_text: str) -> str:
    if record.get("saving_throw_ability"):
        return "save"
    if record.get("attack_roll"):
        lower = range_text.lower().strip()
        reach = re.match(r"^(\d+)", lower)
        return "melee" if lower == "touch" or (reach and int(reach.group(1)) <= 5) else "ranged"
    if record.get("damage_roll"):
        return "auto"
    return "none"


def ability_from_spell(record: dict[str, Any], slug: str | None = None) -> Ability:
    """Build a combat-ready Ability from an SRD spell record.

    Saving throw spells resolve as saves, spells with an attack roll as melee
    (touch or 5 ft) or ranged spell attacks, and damage with neither as an
    automatic hit. An area from the record, its range text, or its
    description means the spell needs no single target.
    """
    name = record.get("name") or slug or "Unknown spell"
    slug = slug or _slug_for(name)
    range_text = record.get("range") or "Self"
    level = record.get("level") or 0
    attack_type = _spell_attack_type(record, range_text)
    spell_range = parse_spell_range(range_text)

    if record.get("aoe"):
        aoe = AOEData.model_validate(record["aoe"])
    else:
        aoe = parse_aoe_from_range(range_text) or parse_aoe_from_description(record.get("description") or "")

    damage_types = record.get("damage_types") or []
    return Ability(
        id=f"{'cantrip' if level == 0 else 'spell'}:{slug}",
        name=name,
        type="cantrip" if level == 0 else "spell",
        damage_roll=record.get("damage_roll"),
        damage_type=damage_types[0] if damage_types else None,
        weapon_stat="none",
        attack_type=attack_type,
        save_ability=record.get("saving_throw_ability"),
        requires_target=(
            aoe is None and attack_type not in ("none", "auto") and spell_range.type != "self"
        ),
        range=spell_range,
        srd_range=range_text,
        aoe=aoe,
    )


def ability_from_weapon(record: dict[str, Any], slug: str | None = None) -> Ability:
    """Build a weapon Ability from an SRD equipment record.

    Finesse weapons use the better of STR and DEX, other ranged weapons DEX,
    everything else STR.
    """
    name = record.get("name") or slug or "Unknown weapon"
    slug = slug or _slug_for(name)
    category = record.get("category") or ""
    properties = record.get("properties") or []
    weapon_range = parse_weapon_range(category, properties)

    if any(p.lower() == "finesse" for p in properties):
        weapon_stat = "finesse"
    elif weapon_range.type == "ranged":
        weapon_stat = "dex"
    else:
        weapon_stat = "str"
    return Ability(
        id=f"weapon:{slug}",
        name=name,
        type="weapon",
        damage_roll=record.get("damage_dice"),
        damage_type=record.get("damage_type"),
        weapon_stat=weapon_stat,
        attack_type="ranged" if weapon_range.type == "ranged" else "melee",
        range=weapon_range,
    )
