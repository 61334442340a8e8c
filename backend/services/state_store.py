"""
Shared State Store — the contract every client polls.

  read(session_id)                         -> SyncState | None
  write(session_id, fields, actor_id)      -> updated_at

A write merges `fields` into the stored document atomically and stamps
`updated_at` (strictly increasing) and `updated_by`. Keys may be dotted field
paths ("turn_data.guesses.<player_id>"): those merge into nested maps instead
of replacing the enclosing sub-document, which is what lets several clients
append to the turn sub-document in the same tick without clobbering each other.
"""
import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from config import settings
from models.game import SyncState

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    async def read(self, session_id: str) -> Optional[SyncState]:
        ...

    async def write(self, session_id: str, fields: Dict[str, Any], actor_id: str) -> datetime:
        ...

    async def delete(self, session_id: str) -> None:
        ...


def merge_fields(doc: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial write into `doc` in place, honouring dotted field paths."""
    for key, value in fields.items():
        parts = key.split(".")
        target = doc
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = copy.deepcopy(value)
    return doc


class InMemoryStateStore:
    """
    Process-local store. One lock per store makes every write atomic; reads
    return a validated copy so callers never share mutable state with it.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._last_stamp: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def _next_stamp(self, session_id: str) -> datetime:
        now = datetime.now(timezone.utc)
        last = self._last_stamp.get(session_id)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        self._last_stamp[session_id] = now
        return now

    async def read(self, session_id: str) -> Optional[SyncState]:
        async with self._lock:
            raw = self._docs.get(session_id)
            if raw is None:
                return None
            data = copy.deepcopy(raw)
        return SyncState.model_validate(data)

    async def write(self, session_id: str, fields: Dict[str, Any], actor_id: str) -> datetime:
        async with self._lock:
            doc = self._docs.setdefault(session_id, {"session_id": session_id})
            merge_fields(doc, fields)
            stamp = self._next_stamp(session_id)
            doc["updated_at"] = stamp.isoformat()
            doc["updated_by"] = actor_id
        logger.debug(f"[{session_id}] write by {actor_id}: {sorted(fields)}")
        return stamp

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._docs.pop(session_id, None)
            self._last_stamp.pop(session_id, None)


_state_store: Optional[StateStore] = None


def get_state_store() -> StateStore:
    """Lazy singleton selected by settings.state_store_backend.
    Use as a FastAPI dependency: Depends(get_state_store)
    """
    global _state_store
    if _state_store is None:
        backend = settings.state_store_backend
        if backend == "firestore":
            from services.firestore_service import get_firestore_service
            _state_store = get_firestore_service()
        elif backend == "http":
            from services.http_store import HttpStateStore
            _state_store = HttpStateStore(settings.relay_url)
        elif backend == "memory":
            _state_store = InMemoryStateStore()
        else:
            raise ValueError(f"Unknown state store backend: {backend}")
        logger.info(f"State store backend: {backend}")
    return _state_store


def reset_state_store() -> None:
    """Drop the singleton (tests and app shutdown)."""
    global _state_store
    _state_store = None


async def close_state_store() -> None:
    """Release the singleton's connections, if it holds any (app shutdown)."""
    global _state_store
    store, _state_store = _state_store, None
    if store is not None and hasattr(store, "aclose"):
        await store.aclose()
