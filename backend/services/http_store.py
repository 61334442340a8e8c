"""
Shared state store over the HTTP sync relay (routers/sync_router.py).

Used by clients that are not co-located with the store backend: the relay
applies the same atomic merge + timestamp stamping server-side.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from config import settings
from models.game import SyncState, SyncWriteResponse

logger = logging.getLogger(__name__)


class HttpStateStore:

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=settings.relay_timeout_seconds,
        )

    def _path(self, session_id: str) -> str:
        return f"/api/sessions/{session_id}/sync"

    async def read(self, session_id: str) -> Optional[SyncState]:
        resp = await self._client.get(self._path(session_id))
        if resp.status_code == 404:
            logger.debug(f"[{session_id}] No sync state on the relay")
            return None
        resp.raise_for_status()
        return SyncState.model_validate(resp.json())

    async def write(self, session_id: str, fields: Dict[str, Any], actor_id: str) -> datetime:
        resp = await self._client.post(
            self._path(session_id),
            json={"actor_id": actor_id, "fields": fields},
        )
        resp.raise_for_status()
        return SyncWriteResponse.model_validate(resp.json()).updated_at

    async def delete(self, session_id: str) -> None:
        resp = await self._client.delete(self._path(session_id))
        if resp.status_code != 404:
            resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
