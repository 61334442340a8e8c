"""Pytest configuration and fixtures."""
import logging
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from models.game import Phase, Session, SongRef, SyncState
from services.song_source import InMemorySongSource
from services.state_store import InMemoryStateStore, reset_state_store
from engine.game_engine import GameEngine
from engine.phase_machine import PhaseDurations


def pytest_configure(config):
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


SESSION_ID = "room-1"


class RecordingMedia:
    """MediaProvider fake: remembers every play / stop request."""

    def __init__(self):
        self.played: List[str] = []
        self.stops = 0

    def play(self, song: SongRef) -> None:
        self.played.append(song.id)

    def stop(self) -> None:
        self.stops += 1


class Table:
    """One engine per player around a shared in-memory store."""

    def __init__(self, session: Session, store: InMemoryStateStore, songs: InMemorySongSource,
                 engines: Dict[str, GameEngine], media: Dict[str, RecordingMedia]):
        self.session = session
        self.store = store
        self.songs = songs
        self.engines = engines
        self.media = media

    def __getitem__(self, player_id: str) -> GameEngine:
        return self.engines[player_id]

    @property
    def owner(self) -> GameEngine:
        return self.engines[self.session.host_id]

    async def state(self) -> SyncState:
        return await self.store.read(self.session.id)

    async def tick_owner(self, times: int = 1) -> None:
        for _ in range(times):
            await self.owner.tick()

    async def tick_all(self) -> None:
        for engine in self.engines.values():
            await engine.tick()

    async def advance_until(self, predicate: Callable[[SyncState], bool], max_ticks: int = 30) -> SyncState:
        """Tick the owner until the shared document satisfies `predicate`."""
        for _ in range(max_ticks):
            state = await self.state()
            if predicate(state):
                return state
            await self.owner.tick()
        raise AssertionError(f"document never reached the expected state (phase={state.phase})")

    async def advance_to(self, phase: Phase, max_ticks: int = 30) -> SyncState:
        return await self.advance_until(lambda s: s.phase == phase, max_ticks)


@pytest.fixture(autouse=True)
def _reset_state_store():
    """Reset the store singleton between tests to prevent cross-test pollution."""
    yield
    reset_state_store()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def songs() -> InMemorySongSource:
    return InMemorySongSource()


@pytest.fixture
def fast_durations() -> PhaseDurations:
    """Every timed phase expires on the owner's next tick."""
    return PhaseDurations(pre_game_countdown=1, turn_countdown=1, audio=1, guessing=1, voting=1)


def song(player_id: str, n: int) -> SongRef:
    return SongRef(
        id=f"{player_id}-song-{n}",
        title=f"Track {n}",
        artist=f"Artist of {player_id}",
        preview_url=f"https://p.scdn.co/mp3-preview/{player_id}-{n}",
        album_art_url=f"https://i.scdn.co/image/{player_id}-{n}",
        added_by=player_id,
    )


@pytest.fixture
def make_table(store, songs, fast_durations):
    """Factory: make_table(["host", "bob"], song_counts={"host": 0}, win_score=3)."""

    def _make(
        players: Iterable[str],
        host: Optional[str] = None,
        song_counts: Optional[Dict[str, int]] = None,
        durations: Optional[PhaseDurations] = None,
        **engine_kwargs,
    ) -> Table:
        players = list(players)
        song_counts = song_counts or {}
        session = Session(
            id=SESSION_ID,
            host_id=host or players[0],
            player_order=players,
            display_names={pid: pid.title() for pid in players},
        )
        for pid in players:
            songs.add_songs(SESSION_ID, pid, [song(pid, n) for n in range(song_counts.get(pid, 5))])

        engines: Dict[str, GameEngine] = {}
        media: Dict[str, RecordingMedia] = {}
        for pid in players:
            media[pid] = RecordingMedia()
            # Each client holds its own copy of the session, as on separate devices
            engines[pid] = GameEngine(
                session.model_copy(deep=True), pid, store, songs, media[pid],
                durations=durations or fast_durations,
                **engine_kwargs,
            )
        return Table(session, store, songs, engines, media)

    return _make
