import asyncio
import os
from typing import Optional, Dict, Any
from datetime import datetime

from models.game import SyncState, SongRef
from services.state_store import merge_fields
from config import settings


class FirestoreService:
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop. Implements both the shared state store contract
    (one document per session in `game_sync_states`) and the song source
    contract (`user_song_stacks`, FIFO per player).
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        project = settings.google_cloud_project or None
        if settings.google_application_credentials:
            self.db = firestore.Client.from_service_account_json(
                settings.google_application_credentials, project=project,
            )
        else:
            self.db = firestore.Client(project=project)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    # ── Collection helpers ────────────────────────────────────────────────────

    def _sync_ref(self, session_id: str):
        return self.db.collection(settings.sync_collection).document(session_id)

    def _songs_ref(self):
        return self.db.collection(settings.song_collection)

    def _field_path(self, key: str) -> str:
        # Player ids are UUIDs; hyphens must be back-quoted in a field path.
        return self._firestore.FieldPath(*key.split(".")).to_api_repr()

    # ── Shared state store contract ───────────────────────────────────────────

    async def read(self, session_id: str) -> Optional[SyncState]:
        doc = await self._run(lambda: self._sync_ref(session_id).get())
        if doc.exists:
            return SyncState(**doc.to_dict())
        return None

    async def write(self, session_id: str, fields: Dict[str, Any], actor_id: str) -> datetime:
        """
        update() treats each key as a field path, so dotted keys merge into
        nested maps on the server. The first write for a session creates the
        document instead (update() refuses a missing document).
        """
        from google.api_core.exceptions import NotFound

        ref = self._sync_ref(session_id)
        updates: Dict[Any, Any] = {self._field_path(k): v for k, v in fields.items()}
        updates["updated_at"] = self._firestore.SERVER_TIMESTAMP
        updates["updated_by"] = actor_id
        try:
            result = await self._run(lambda: ref.update(updates))
        except NotFound:
            data = merge_fields({"session_id": session_id}, fields)
            data["updated_at"] = self._firestore.SERVER_TIMESTAMP
            data["updated_by"] = actor_id
            result = await self._run(lambda: ref.set(data))
        return result.update_time

    async def delete(self, session_id: str) -> None:
        await self._run(lambda: self._sync_ref(session_id).delete())

    # ── Song source contract ──────────────────────────────────────────────────

    async def next_song(self, player_id: str, session_id: str) -> Optional[SongRef]:
        """Oldest active song in the player's stack for this session; marks it played."""
        query = (
            self._songs_ref()
            .where("user_id", "==", player_id)
            .where("room_id", "==", session_id)
            .where("is_active", "==", True)
            .order_by("added_at")
            .limit(1)
        )
        docs = await self._run(lambda: list(query.stream()))
        if not docs:
            return None
        doc = docs[0]
        await self._run(lambda: doc.reference.update({"is_active": False}))
        return song_from_stack_entry(doc.id, doc.to_dict())


def song_from_stack_entry(entry_id: str, data: Dict[str, Any]) -> SongRef:
    """Map a song-stack row (Spotify track payload inside `track_data`) to a SongRef."""
    track = data.get("track_data") or {}
    artists = ", ".join(a.get("name", "") for a in track.get("artists", []) if a.get("name"))
    images = (track.get("album") or {}).get("images") or []
    return SongRef(
        id=data.get("spotify_track_id") or track.get("id") or entry_id,
        title=track.get("name", ""),
        artist=artists,
        preview_url=track.get("preview_url"),
        album_art_url=images[0].get("url") if images else None,
        added_by=data.get("user_id"),
    )


_firestore_service: Optional["FirestoreService"] = None


def get_firestore_service() -> "FirestoreService":
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService()
    return _firestore_service
