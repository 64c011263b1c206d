"""Partial-update document storage for character and encounter state.

Each document is one JSON file under <root>/<collection>/<id>.json. Writes
go to a temporary file first and are renamed into place, so a crash never
leaves a half-written document behind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from engine.errors import PersistenceError
from models.combatants import PlayerState
from models.encounter import Encounter, EncounterStatus, GridPosition

logger = logging.getLogger(__name__)

_DOC_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

CHARACTERS = "characters"
ENCOUNTERS = "encounters"

# Fields written after every turn; everything else changes only on create.
CHARACTER_STATE_FIELDS = ("current_hp", "conditions", "inventory", "xp", "gold", "abilities")
ENCOUNTER_STATE_FIELDS = (
    "active_npcs",
    "positions",
    "round",
    "turn_order",
    "current_turn_index",
    "status",
    "defeated_npcs",
    "total_xp_awarded",
    "event_log",
)


class DocumentStore(Protocol):
    """Keyed JSON documents with shallow partial updates."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        ...

    def update(self, collection: str, doc_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        ...


class JsonDocumentStore:
    """DocumentStore backed by one JSON file per document."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, collection: str, doc_id: str) -> Path:
        if not _DOC_ID_RE.match(doc_id) or not _DOC_ID_RE.match(collection):
            raise ValueError(f"Invalid document key: {collection}/{doc_id}")
        return self.root / collection / f"{doc_id}.json"

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Read a whole document, or None if it does not exist."""
        path = self._path(collection, doc_id)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read {collection}/{doc_id}: {e}") from e

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Write a new document, replacing any existing one with the same id."""
        now = datetime.now(timezone.utc).isoformat()
        document = {**data, "created_at": data.get("created_at") or now, "updated_at": now}
        self._write(self._path(collection, doc_id), document)

    def update(self, collection: str, doc_id: str, partial: dict[str, Any]) -> dict[str, Any]:
        """Merge the given top-level fields into an existing document.

        Returns:
            The merged document.

        Raises:
            PersistenceError: If the document does not exist or cannot be written.
        """
        current = self.get(collection, doc_id)
        if current is None:
            raise PersistenceError(f"No document {collection}/{doc_id} to update")
        current.update(partial)
        current["updated_at"] = datetime.now(timezone.utc).isoformat()
        self._write(self._path(collection, doc_id), current)
        return current

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, default=str)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error("Write to %s failed: %s", path, e)
            raise PersistenceError(f"Could not write {path.name}: {e}") from e


def valid_doc_id(doc_id: str) -> bool:
    """True if doc_id can name a stored document."""
    return bool(_DOC_ID_RE.match(doc_id))


class CharacterStore:
    """Player character documents.

    File I/O runs in a worker thread so a slow disk never stalls the event loop.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def load(self, character_id: str) -> PlayerState | None:
        if not valid_doc_id(character_id):
            return None
        data = await asyncio.to_thread(self.store.get, CHARACTERS, character_id)
        if data is None:
            return None
        return PlayerState.model_validate(data)

    async def create(self, character_id: str, player: PlayerState) -> None:
        await asyncio.to_thread(self.store.create, CHARACTERS, character_id, player.model_dump(mode="json"))

    async def save_character_state(
        self,
        character_id: str,
        player: PlayerState,
        fields: tuple[str, ...] = CHARACTER_STATE_FIELDS,
    ) -> None:
        """Write only the listed fields of the player's state."""
        partial = player.model_dump(mode="json", include=set(fields))
        await asyncio.to_thread(self.store.update, CHARACTERS, character_id, partial)


class EncounterStore:
    """Encounter documents."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def load(self, encounter_id: str) -> Encounter | None:
        if not valid_doc_id(encounter_id):
            return None
        data = await asyncio.to_thread(self.store.get, ENCOUNTERS, encounter_id)
        if data is None:
            return None
        return Encounter.model_validate(data)

    async def create(self, encounter: Encounter) -> None:
        await asyncio.to_thread(self.store.create, ENCOUNTERS, encounter.id, encounter.model_dump(mode="json"))
        logger.info("Stored encounter %s", encounter.id)

    async def save_encounter_state(
        self,
        encounter: Encounter,
        fields: tuple[str, ...] = ENCOUNTER_STATE_FIELDS,
    ) -> None:
        """Write only the listed fields of the encounter."""
        partial = encounter.model_dump(mode="json", include=set(fields))
        await asyncio.to_thread(self.store.update, ENCOUNTERS, encounter.id, partial)

    async def update_token_position(
        self,
        encounter_id: str,
        token_id: str,
        pos: GridPosition,
    ) -> None:
        """Move one token without touching the rest of the document."""
        current = await asyncio.to_thread(self.store.get, ENCOUNTERS, encounter_id)
        if current is None:
            raise PersistenceError(f"No encounter {encounter_id} to update")
        positions = dict(current.get("positions") or {})
        positions[token_id] = pos.model_dump()
        await asyncio.to_thread(self.store.update, ENCOUNTERS, encounter_id, {"positions": positions})

    async def complete(self, encounter: Encounter) -> None:
        """Persist an encounter's terminal status and final roster."""
        if encounter.status == EncounterStatus.ACTIVE:
            raise ValueError(f"Encounter {encounter.id} is still active")
        await self.save_encounter_state(encounter)
        logger.info("Encounter %s closed as %s", encounter.id, encounter.status.value)
