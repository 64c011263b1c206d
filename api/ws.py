"""WebSocket endpoint for real-time encounter events."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()

logger = logging.getLogger(__name__)

# Connected clients per encounter id
connections: dict[str, list[WebSocket]] = {}


async def broadcast(encounter_id: str, message: dict[str, Any]) -> None:
    """Send a message to every client watching an encounter.

    Args:
        encounter_id: The encounter whose watchers should receive it.
        message: The JSON-serializable message to send.
    """
    sockets = connections.get(encounter_id, [])
    disconnected = []
    # Sends yield, so a closing socket can leave the list mid-loop.
    for ws in list(sockets):
        try:
            await ws.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Dropping WebSocket for encounter %s: %s", encounter_id, e)
            disconnected.append(ws)
    # Clean up disconnected clients
    for ws in disconnected:
        if ws in sockets:
            sockets.remove(ws)


def emitter_for(encounter_id: str):
    """Return an emit callback that broadcasts turn events for one encounter."""
    async def emit(message: dict[str, Any]) -> None:
        await broadcast(encounter_id, message)
    return emit


@router.websocket("/encounters/{encounter_id}/ws")
async def encounter_websocket(websocket: WebSocket, encounter_id: str) -> None:
    """Stream turn events (player_turn, npc_turn, round_start, ...) for one encounter."""
    encounter = await websocket.app.state.encounters.load(encounter_id)
    if encounter is None:
        await websocket.close(code=4004, reason="Encounter not found")
        return

    await websocket.accept()
    sockets = connections.setdefault(encounter_id, [])
    sockets.append(websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "encounter_id": encounter_id,
            "round": encounter.round,
            "status": encounter.status.value,
        })

        # Keep connection alive, listen for client messages (optional)
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                break
    finally:
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            connections.pop(encounter_id, None)
