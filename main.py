"""FastAPI app entry point for the encounter combat server."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.encounters import router as encounters_router
from api.tools import router as tools_router
from api.ws import router as ws_router
from config import LOG_LEVEL, SRD_DIR, STORE_DIR
from engine.errors import EncounterClosedError, EncounterNotFoundError, PersistenceError
from engine.narration import TemplateNarrator
from engine.turn_loop import TurnLocks, TurnWatchdog
from persistence.documents import CharacterStore, EncounterStore, JsonDocumentStore
from persistence.srd import JsonSRDLoader, SRDCache, SRDReference

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Encounter Combat Server",
    description="Deterministic D&D 5e combat resolution with narrated turns",
    version="0.1.0",
)

store = JsonDocumentStore(STORE_DIR)
app.state.characters = CharacterStore(store)
app.state.encounters = EncounterStore(store)
app.state.srd = SRDReference(JsonSRDLoader(SRD_DIR), SRDCache())
app.state.narrator = TemplateNarrator()
app.state.locks = TurnLocks()
app.state.watchdog = TurnWatchdog()

app.include_router(encounters_router, tags=["Encounters"])
app.include_router(tools_router, tags=["Tools"])
app.include_router(ws_router, tags=["WebSocket"])


@app.exception_handler(EncounterNotFoundError)
async def not_found_handler(request: Request, exc: EncounterNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(EncounterClosedError)
async def closed_handler(request: Request, exc: EncounterClosedError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/")
def root() -> dict:
    """Root endpoint returning server info."""
    return {"name": "Encounter Combat Server", "version": "0.1.0", "status": "running"}


@app.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"healthy": True}
