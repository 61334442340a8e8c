"""
Phase State Machine — owner-only advancement with two explicit clocks.

  pre_game_countdown → turn_countdown → audio_playing → guessing → voting
       → turn_results → turn_countdown (next attempt / next turn) … → game_finished

Only the owner holds an OwnerClock and ever writes `phase` / `time_remaining`.
Every other client holds a FollowerClock that copies the remote value on each
reconciliation tick and never counts down on its own.
"""
import logging
from typing import Dict, Optional, Set

from pydantic import BaseModel

from config import Settings
from models.game import Phase, PHASE_RANK
from engine.errors import InvalidTransition

logger = logging.getLogger(__name__)


class PhaseDurations(BaseModel):
    pre_game_countdown: int = 5
    turn_countdown: int = 3
    audio: int = 15
    guessing: int = 15
    voting: int = 30

    @classmethod
    def from_settings(cls, s: Settings) -> "PhaseDurations":
        return cls(
            pre_game_countdown=s.pre_game_countdown_seconds,
            turn_countdown=s.turn_countdown_seconds,
            audio=s.audio_seconds,
            guessing=s.guessing_seconds,
            voting=s.voting_seconds,
        )

    def for_phase(self, phase: Phase) -> int:
        """Seconds on the clock when `phase` is entered. 0 = untimed."""
        return {
            Phase.PRE_GAME_COUNTDOWN: self.pre_game_countdown,
            Phase.TURN_COUNTDOWN: self.turn_countdown,
            Phase.AUDIO_PLAYING: self.audio,
            Phase.GUESSING: self.guessing,
            Phase.VOTING: self.voting,
        }.get(phase, 0)


# turn_results → turn_countdown has no timer: it waits for the owner's
# "next turn" / "skip" action.
TIMED_PHASES: Set[Phase] = {
    Phase.PRE_GAME_COUNTDOWN,
    Phase.TURN_COUNTDOWN,
    Phase.AUDIO_PLAYING,
    Phase.GUESSING,
    Phase.VOTING,
}

# Legal single-step transitions. turn_countdown is reachable from every
# in-turn phase (next attempt, owner skip) and turn_results from every
# in-turn phase (resolution, owner "end turn"). Any phase may end the game.
ALLOWED_TRANSITIONS: Dict[Phase, Set[Phase]] = {
    Phase.PRE_GAME_COUNTDOWN: {Phase.TURN_COUNTDOWN},
    Phase.TURN_COUNTDOWN: {Phase.AUDIO_PLAYING, Phase.TURN_COUNTDOWN, Phase.TURN_RESULTS},
    Phase.AUDIO_PLAYING: {Phase.GUESSING, Phase.VOTING, Phase.TURN_COUNTDOWN, Phase.TURN_RESULTS},
    Phase.GUESSING: {Phase.VOTING, Phase.TURN_COUNTDOWN, Phase.TURN_RESULTS},
    Phase.VOTING: {Phase.TURN_RESULTS, Phase.TURN_COUNTDOWN},
    Phase.TURN_RESULTS: {Phase.TURN_COUNTDOWN},
    Phase.GAME_FINISHED: set(),
}


def can_transition(current: Optional[Phase], target: Phase) -> bool:
    if current is None:
        return target == Phase.PRE_GAME_COUNTDOWN
    if target == Phase.GAME_FINISHED:
        return current != Phase.GAME_FINISHED
    return target in ALLOWED_TRANSITIONS[current]


def is_far_behind(local: Optional[Phase], remote: Phase) -> bool:
    """
    True when the remote phase is ahead of the local one and cannot be reached
    from it in one legal step, i.e. this client missed an intermediate update
    (local still in turn_countdown while the owner is already in voting).
    """
    if local is None or local == remote:
        return False
    if PHASE_RANK[remote] <= PHASE_RANK[local]:
        return False
    return not can_transition(local, remote)


class OwnerClock:
    """The authoritative countdown. Decremented once per owner tick."""

    def __init__(self):
        self.time_remaining = 0

    def reset(self, seconds: int) -> None:
        self.time_remaining = max(0, seconds)

    def tick(self) -> bool:
        """Count down one second. Returns True when the clock has run out."""
        if self.time_remaining > 0:
            self.time_remaining -= 1
        return self.time_remaining == 0


class FollowerClock:
    """A non-owner's view of the countdown: whatever the document says."""

    def __init__(self):
        self.time_remaining = 0

    def adopt(self, remote_seconds: int) -> None:
        self.time_remaining = max(0, remote_seconds)


class PhaseStateMachine:
    """
    The owner's local phase + clock. transition() enforces the table above;
    the owner persists the result (phase + time_remaining) in the same write.
    """

    def __init__(self, durations: PhaseDurations):
        self.durations = durations
        self.phase: Optional[Phase] = None
        self.clock = OwnerClock()

    @property
    def time_remaining(self) -> int:
        return self.clock.time_remaining

    @property
    def is_timed(self) -> bool:
        return self.phase in TIMED_PHASES

    def transition(self, target: Phase) -> int:
        """Enter `target` with its full duration. Returns the new time_remaining."""
        if not can_transition(self.phase, target):
            raise InvalidTransition(self.phase, target)
        previous = self.phase
        self.phase = target
        self.clock.reset(self.durations.for_phase(target))
        logger.debug(f"Phase: {previous.value if previous else None} → {target.value} ({self.time_remaining}s)")
        return self.time_remaining

    def restore(self, phase: Phase, time_remaining: int) -> None:
        """Resume from a persisted document (owner restarted mid-game)."""
        self.phase = phase
        self.clock.reset(time_remaining)

    def tick(self) -> bool:
        """One owner second. Returns True when a timed phase has expired."""
        if not self.is_timed:
            return False
        return self.clock.tick()
