"""
Song Source — given a player and session, the player's next unplayed song (FIFO).
A None result means the player's stack is empty.
"""
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Protocol, Tuple

from models.game import SongRef


class SongSource(Protocol):
    async def next_song(self, player_id: str, session_id: str) -> Optional[SongRef]:
        ...


class InMemorySongSource:
    """Per-(session, player) FIFO queue. next_song() consumes the head."""

    def __init__(self):
        self._stacks: Dict[Tuple[str, str], Deque[SongRef]] = {}

    def add_songs(self, session_id: str, player_id: str, songs: Iterable[SongRef]) -> None:
        self._stacks.setdefault((session_id, player_id), deque()).extend(songs)

    def remaining(self, session_id: str, player_id: str) -> int:
        return len(self._stacks.get((session_id, player_id), ()))

    async def next_song(self, player_id: str, session_id: str) -> Optional[SongRef]:
        stack = self._stacks.get((session_id, player_id))
        if not stack:
            return None
        return stack.popleft()
