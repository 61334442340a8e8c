"""
Reconciliation Loop — runs on every client, owner included, once per tick.

Each tick the latest SyncState is read and:
  - discarded if its updated_at is not newer than the last adopted one
  - phase adopted from the document (non-owners also adopt time_remaining;
    the owner's clock is its own PhaseStateMachine)
  - phase-entry side effects fired at most once per (turn, attempt, phase)
  - local ephemeral input reset when the turn identity changes, otherwise
    preserved and only extended with what the document adds

Self-authored snapshots go through the same path: every side effect is keyed,
so re-reading our own write can never fire anything twice.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel

from models.game import (
    Challenge, Guess, Phase, SyncState, TurnData, VoteDecision, VoteRecord,
)
from services.media_provider import MediaProvider
from engine.phase_machine import FollowerClock, is_far_behind

logger = logging.getLogger(__name__)

TurnIdentity = Optional[Tuple[str, str]]
PhaseListener = Callable[[Phase, SyncState], None]


def turn_identity(turn: Optional[TurnData]) -> TurnIdentity:
    """(attacker, current guesser) — changes when a new turn or the challenger attempt starts."""
    if turn is None:
        return None
    return turn.identity


class LocalInputState(BaseModel):
    """What this client has typed / done in the current turn. Never written to the store as-is."""
    guess_text: str = ""
    has_submitted_guess: bool = False
    has_challenged: bool = False
    has_voted: bool = False
    votes: Dict[str, VoteDecision] = {}

    # Own contributions, kept so a write lost to a concurrent overwrite can be re-sent
    sent_guess: Optional[Guess] = None
    sent_challenge: Optional[Challenge] = None
    sent_vote: Optional[VoteRecord] = None

    def for_attempt(self, attempt_key: str) -> "LocalInputState":
        """
        A new attempt: drop per-attempt state that belongs to an older attempt.
        The typed text, the challenge and any contribution already tagged with
        `attempt_key` survive.
        """
        guess = self.sent_guess if self.sent_guess and self.sent_guess.attempt_key == attempt_key else None
        vote = self.sent_vote if self.sent_vote and self.sent_vote.attempt_key == attempt_key else None
        return self.model_copy(update={
            "has_submitted_guess": guess is not None,
            "has_voted": vote is not None,
            "votes": {},
            "sent_guess": guess,
            "sent_vote": vote,
        })

    def for_turn(self, turn: TurnData) -> "LocalInputState":
        """A different turn document (owner skip keeps the pairing but not the challenges)."""
        challenge = self.sent_challenge
        if challenge is None or challenge.turn_id != turn.turn_id:
            challenge = None
        return self.for_attempt(turn.attempt_key).model_copy(update={
            "has_challenged": challenge is not None,
            "sent_challenge": challenge,
        })


def reconcile_input(
    previous: TurnIdentity,
    current: TurnIdentity,
    local: LocalInputState,
    remote_turn: Optional[TurnData],
    player_id: str,
) -> LocalInputState:
    """
    Pure reset-vs-preserve decision for one tick.

    Different identity → start from a blank state (only contributions already
    sent for the remote attempt are kept, so they can still be repaired).
    Same identity → keep everything local (the typed text is never cleared
    here) and add what the document knows about this player: a challenge, a
    guess for the current attempt, other players' votes.
    """
    if remote_turn is None:
        return LocalInputState() if previous != current else local.model_copy(deep=True)
    if previous != current:
        kept = local.for_turn(remote_turn)
        challenge = None if remote_turn.is_in_challenger_phase else kept.sent_challenge
        state = LocalInputState(
            has_submitted_guess=kept.has_submitted_guess,
            has_challenged=challenge is not None,
            has_voted=kept.has_voted,
            sent_guess=kept.sent_guess,
            sent_challenge=challenge,
            sent_vote=kept.sent_vote,
        )
    else:
        state = local.model_copy(deep=True)

    remote_votes = remote_turn.current_votes()
    merged_votes = {**state.votes, **remote_votes}
    if player_id in state.votes:
        merged_votes[player_id] = state.votes[player_id]

    own_guess = remote_turn.guesses.get(player_id)
    return state.model_copy(update={
        "has_challenged": state.has_challenged or player_id in remote_turn.challenges,
        "has_submitted_guess": state.has_submitted_guess or (
            own_guess is not None and own_guess.attempt_key == remote_turn.attempt_key
        ),
        "has_voted": state.has_voted or player_id in remote_votes,
        "votes": merged_votes,
    })


class ReconciliationLoop:

    def __init__(
        self,
        session_id: str,
        player_id: str,
        media: MediaProvider,
        is_owner: bool = False,
    ):
        self.session_id = session_id
        self.player_id = player_id
        self.media = media
        self.is_owner = is_owner

        self.snapshot: Optional[SyncState] = None
        self.phase: Optional[Phase] = None
        self.clock = FollowerClock()
        self.input = LocalInputState()
        self.identity: TurnIdentity = None
        self.last_seen: Optional[datetime] = None
        self.divergence_count = 0

        self._turn_id: Optional[str] = None
        self._attempt_key: Optional[str] = None
        self._fired: Set[Tuple[str, int, Phase]] = set()
        self._audio_active = False
        self._listeners: List[PhaseListener] = []

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_listener(self, listener: PhaseListener) -> None:
        """Called once per phase entry (voting UI, results summary, …)."""
        self._listeners.append(listener)

    def _notify(self, phase: Phase, snapshot: SyncState) -> None:
        for listener in list(self._listeners):
            try:
                listener(phase, snapshot)
            except Exception:
                logger.exception(f"[{self.session_id}] Phase listener failed on {phase.value}")

    # ── Tick ──────────────────────────────────────────────────────────────────

    def is_newer(self, snapshot: SyncState) -> bool:
        if self.last_seen is None or snapshot.updated_at is None:
            return True
        return snapshot.updated_at > self.last_seen

    def apply(self, snapshot: SyncState) -> bool:
        """Adopt one remote snapshot. Returns False if it was stale and discarded."""
        if not self.is_newer(snapshot):
            return False
        self.last_seen = snapshot.updated_at
        self.snapshot = snapshot
        if snapshot.updated_by == self.player_id:
            logger.debug(f"[{self.session_id}] Adopting own write")

        self._adopt_attempt(snapshot)
        self._adopt_phase(snapshot)
        self._adopt_turn(snapshot)
        if not self.is_owner:
            self.clock.adopt(snapshot.time_remaining)
        return True

    def _adopt_attempt(self, snapshot: SyncState) -> None:
        """Per-attempt input belongs to one attempt key, whichever phase it is first seen in."""
        turn = snapshot.turn_data
        key = turn.attempt_key if turn is not None else None
        if key == self._attempt_key:
            return
        if key is not None:
            self.input = self.input.for_attempt(key)
        self._attempt_key = key

    def _adopt_turn(self, snapshot: SyncState) -> None:
        turn = snapshot.turn_data
        new_identity = turn_identity(turn)
        if new_identity != self.identity:
            logger.debug(f"[{self.session_id}] New turn identity {new_identity} (was {self.identity})")
        elif turn is not None and self._turn_id is not None and turn.turn_id != self._turn_id:
            self.input = self.input.for_turn(turn)
        self.input = reconcile_input(self.identity, new_identity, self.input, turn, self.player_id)
        self.identity = new_identity

        if turn is not None and turn.turn_id != self._turn_id:
            self._fired = {k for k in self._fired if k[0] == turn.turn_id}
            self._turn_id = turn.turn_id

    def _adopt_phase(self, snapshot: SyncState) -> None:
        remote = snapshot.phase
        if remote != self.phase:
            if not self.is_owner and is_far_behind(self.phase, remote):
                self.divergence_count += 1
                local = self.phase.value if self.phase else None
                logger.info(f"[{self.session_id}] Sync divergence: local {local}, remote {remote.value} — force-adopting")
            self.phase = remote
        self._enter(remote, snapshot)

    # ── Phase-entry side effects ──────────────────────────────────────────────

    @staticmethod
    def effect_key(phase: Phase, snapshot: SyncState) -> Tuple[str, int, Phase]:
        turn = snapshot.turn_data
        if turn is None:
            return ("", 0, phase)
        return (turn.turn_id, turn.attempt, phase)

    def _enter(self, phase: Phase, snapshot: SyncState) -> None:
        key = self.effect_key(phase, snapshot)
        if key in self._fired:
            return
        self._fired.add(key)
        logger.info(f"[{self.session_id}] {self.player_id} entered {phase.value}")

        turn = snapshot.turn_data
        if phase == Phase.AUDIO_PLAYING and turn is not None:
            self.media.play(turn.current_song)
            self._audio_active = True
        elif self._audio_active:
            self.media.stop()
            self._audio_active = False

        self._notify(phase, snapshot)

    def stop(self) -> None:
        if self._audio_active:
            self.media.stop()
            self._audio_active = False
