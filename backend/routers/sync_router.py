"""
Sync relay endpoints — the Shared State Store contract over HTTP.

Routes:
  GET    /api/sessions/{session_id}/sync   — Latest SyncState document
  POST   /api/sessions/{session_id}/sync   — Atomic partial write {actor_id, fields}
  DELETE /api/sessions/{session_id}/sync   — Drop the document (session over)

The relay applies no game rules: ordering, phase ownership and merging are
the engine's and the store's business.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from models.game import SyncState, SyncWriteRequest, SyncWriteResponse
from services.state_store import StateStore, get_state_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])

# Stamped by the store on every write
RESERVED_FIELDS = {"updated_at", "updated_by", "session_id"}


@router.get("/sessions/{session_id}/sync", response_model=SyncState)
async def read_sync_state(session_id: str, store: StateStore = Depends(get_state_store)):
    state = await store.read(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session has no sync state")
    return state


@router.post("/sessions/{session_id}/sync", response_model=SyncWriteResponse)
async def write_sync_state(
    session_id: str,
    req: SyncWriteRequest,
    store: StateStore = Depends(get_state_store),
):
    if not req.fields:
        raise HTTPException(status_code=422, detail="Write has no fields")
    bad = [key for key in req.fields if not key or key.split(".")[0] in RESERVED_FIELDS or "" in key.split(".")]
    if bad:
        raise HTTPException(status_code=422, detail=f"Fields not writable: {bad}")

    updated_at = await store.write(session_id, req.fields, req.actor_id)
    logger.debug(f"[{session_id}] relay write by {req.actor_id}: {sorted(req.fields)}")
    return SyncWriteResponse(session_id=session_id, updated_at=updated_at)


@router.delete("/sessions/{session_id}/sync", status_code=204)
async def delete_sync_state(session_id: str, store: StateStore = Depends(get_state_store)):
    state = await store.read(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session has no sync state")
    await store.delete(session_id)
    logger.info(f"[{session_id}] Sync state deleted")
