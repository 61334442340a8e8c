"""
Media Provider — plays/stops a track reference. Fire-and-forget: the engine
never waits for playback to finish, phase timers drive progression.
"""
from typing import Protocol

from models.game import SongRef


class MediaProvider(Protocol):
    def play(self, song: SongRef) -> None:
        ...

    def stop(self) -> None:
        ...
