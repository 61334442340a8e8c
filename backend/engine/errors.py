"""
Engine error taxonomy.

Only NoSongAvailable / NoSongsRemaining are meant for the user. Phase and
voting problems are corrected by the next reconciliation tick; lost concurrent
writes are repaired by re-sending (see GameEngine._repair_contributions).
"""
from typing import Optional

from models.game import Phase


class EngineError(Exception):
    pass


class NoSongAvailable(EngineError):
    """The attacker has no unplayed song; the turn cannot start."""

    def __init__(self, player_id: str, message: Optional[str] = None):
        self.player_id = player_id
        super().__init__(message or f"Player {player_id} has no songs left in their stack")


class NoSongsRemaining(NoSongAvailable):
    """No player in the session has a song left; the session is over."""

    def __init__(self, player_id: str):
        super().__init__(player_id, "None of the players have songs left in their stack")


class NotOwnerError(EngineError, PermissionError):
    """An owner-only operation was attempted by a non-owner client."""


class InvalidAction(EngineError, ValueError):
    """A player action that the current phase or role does not allow."""


class InvalidTransition(EngineError, ValueError):

    def __init__(self, current: Optional[Phase], target: Phase):
        self.current = current
        self.target = target
        name = current.value if current else "none"
        super().__init__(f"Cannot move from {name} to {target.value}")
