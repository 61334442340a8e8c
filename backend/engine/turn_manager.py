"""
Turn Manager — pairing, song retrieval, attempt sequencing and rotation.

Attempt sequencing for one turn (same attacker, same song):
  attempts 1..max  → defender guesses; a timeout / rejection costs one attempt
  defender out     → first registered challenger gets exactly one attempt
                     (no challenger: attacker +1, turn over)
  challenger fails → attacker −1, turn over

Rotation when the turn is over:
  guess accepted   → winner attacks next; defender = first player after the
                     current attacker, skipping the winner
  otherwise        → player after the current attacker attacks; defender is
                     the player after the new attacker
"""
import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from models.game import SongRef, TurnData, TurnOutcome, VotingResults
from services.song_source import SongSource
from engine.errors import NoSongAvailable, NoSongsRemaining

logger = logging.getLogger(__name__)


class AttemptStep(str, Enum):
    RETRY = "retry"                            # defender tries again, same song
    CHALLENGER = "challenger"                  # first challenger gets one attempt
    DEFENDER_EXHAUSTED = "defender_exhausted"  # turn over, attacker +1
    CHALLENGER_FAILED = "challenger_failed"    # turn over, attacker −1


class AttemptPlan(BaseModel):
    step: AttemptStep
    failed_attempts: int
    guesser_id: Optional[str] = None
    remaining_challengers: List[str] = []

    @property
    def ends_turn(self) -> bool:
        return self.step in (AttemptStep.DEFENDER_EXHAUSTED, AttemptStep.CHALLENGER_FAILED)

    @property
    def outcome(self) -> Optional[TurnOutcome]:
        if self.step == AttemptStep.DEFENDER_EXHAUSTED:
            return TurnOutcome.DEFENDER_EXHAUSTED
        if self.step == AttemptStep.CHALLENGER_FAILED:
            return TurnOutcome.CHALLENGER_FAILED
        return None


class TurnManager:

    def __init__(
        self,
        song_source: SongSource,
        session_id: str,
        player_order: Sequence[str],
        max_attempts: int = 3,
    ):
        if len(player_order) < 2:
            raise ValueError("A session needs at least 2 players")
        self.song_source = song_source
        self.session_id = session_id
        self.player_order = list(player_order)
        self.max_attempts = max_attempts

    # ── Pairing ───────────────────────────────────────────────────────────────

    def next_player(self, after_id: str, skip: Iterable[str] = ()) -> str:
        """First player after `after_id` in rotation order that is not in `skip`."""
        try:
            idx = self.player_order.index(after_id)
        except ValueError:
            raise ValueError(f"{after_id} is not in the player order")
        excluded = set(skip)
        n = len(self.player_order)
        for step in range(1, n + 1):
            candidate = self.player_order[(idx + step) % n]
            if candidate not in excluded:
                return candidate
        raise ValueError(f"No eligible player after {after_id}")

    def first_pairing(self, owner_id: str) -> Tuple[str, str]:
        """The owner attacks first; the next player in order defends."""
        return owner_id, self.next_player(owner_id)

    def rotation_after(self, outcome: TurnOutcome, turn: TurnData) -> Tuple[str, str]:
        if outcome in (TurnOutcome.DEFENDER_CORRECT, TurnOutcome.CHALLENGER_CORRECT):
            winner = turn.current_guesser_id
            return winner, self.next_player(turn.attacker_id, skip={winner})
        attacker = self.next_player(turn.attacker_id)
        return attacker, self.next_player(attacker)

    # ── Songs + turn start ────────────────────────────────────────────────────

    async def fetch_song(self, attacker_id: str) -> SongRef:
        song = await self.song_source.next_song(attacker_id, self.session_id)
        if song is None:
            logger.warning(f"[{self.session_id}] {attacker_id} has no songs available")
            raise NoSongAvailable(attacker_id)
        return song

    async def start_turn(self, attacker_id: str, defender_id: str) -> TurnData:
        """Fresh turn sub-document: attempt 1, defender guessing, no guesses/challenges."""
        song = await self.fetch_song(attacker_id)
        return TurnData(
            attacker_id=attacker_id,
            defender_id=defender_id,
            current_guesser_id=defender_id,
            current_song=song,
        )

    async def start_turn_with_available_attacker(self, blocked_attacker_id: str) -> TurnData:
        """
        Recovery for NoSongAvailable: walk the rotation after the blocked
        attacker (wrapping round to them last) for the first player with a song.
        Raises NoSongsRemaining when nobody has one.
        """
        idx = self.player_order.index(blocked_attacker_id)
        n = len(self.player_order)
        for step in range(1, n + 1):
            candidate = self.player_order[(idx + step) % n]
            song = await self.song_source.next_song(candidate, self.session_id)
            if song is None:
                continue
            defender = self.next_player(candidate)
            logger.info(
                f"[{self.session_id}] Skipping {blocked_attacker_id} (no songs) — {candidate} attacks {defender}"
            )
            return TurnData(
                attacker_id=candidate,
                defender_id=defender,
                current_guesser_id=defender,
                current_song=song,
            )
        raise NoSongsRemaining(blocked_attacker_id)

    # ── Attempts ──────────────────────────────────────────────────────────────

    def plan_after_failure(self, turn: TurnData) -> AttemptPlan:
        """What happens when the current attempt fails (timeout or rejection)."""
        if turn.is_in_challenger_phase:
            return AttemptPlan(step=AttemptStep.CHALLENGER_FAILED, failed_attempts=turn.failed_attempts)

        failed = turn.failed_attempts + 1
        if failed < self.max_attempts:
            return AttemptPlan(step=AttemptStep.RETRY, failed_attempts=failed, guesser_id=turn.defender_id)

        challengers = [
            pid for pid in turn.ordered_challengers()
            if pid not in (turn.attacker_id, turn.defender_id)
        ]
        if challengers:
            return AttemptPlan(
                step=AttemptStep.CHALLENGER,
                failed_attempts=failed,
                guesser_id=challengers[0],
                remaining_challengers=challengers[1:],
            )
        return AttemptPlan(step=AttemptStep.DEFENDER_EXHAUSTED, failed_attempts=failed)

    def attempt_reset_fields(self, turn: TurnData, plan: AttemptPlan) -> Dict[str, Any]:
        """
        Dotted-path write that starts the next attempt in place. `challenges`
        is only touched when a challenger is popped, so challenges registered
        concurrently with the reset survive.
        """
        fields: Dict[str, Any] = {
            "turn_data.failed_attempts": plan.failed_attempts,
            "turn_data.current_guesser_id": plan.guesser_id,
            "turn_data.is_in_challenger_phase": plan.step == AttemptStep.CHALLENGER,
            "turn_data.guesses": {},
            "turn_data.voting_results": VotingResults().model_dump(mode="json"),
        }
        if plan.step == AttemptStep.CHALLENGER:
            fields["turn_data.challenges"] = {
                pid: turn.challenges[pid].model_dump(mode="json")
                for pid in plan.remaining_challengers
                if pid in turn.challenges
            }
        return fields
