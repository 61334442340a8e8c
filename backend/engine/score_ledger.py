"""
Score Ledger — one delta per turn resolution, from a fixed table.

  defender / challenger guessed it   → guesser  +1
  defender exhausted, no challenger  → attacker +1
  challenger failed / owner ended it → attacker −1

Scores are unbounded and may go negative.
"""
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from models.game import PlayerScore, TurnData, TurnOutcome, TurnResult

logger = logging.getLogger(__name__)


# outcome → (who scores, delta). "guesser" = the current guesser of the turn.
SCORE_TABLE: Dict[TurnOutcome, Tuple[str, int]] = {
    TurnOutcome.DEFENDER_CORRECT: ("guesser", 1),
    TurnOutcome.CHALLENGER_CORRECT: ("guesser", 1),
    TurnOutcome.DEFENDER_EXHAUSTED: ("attacker", 1),
    TurnOutcome.CHALLENGER_FAILED: ("attacker", -1),
    TurnOutcome.ENDED_BY_OWNER: ("attacker", -1),
}


class ScoreDelta(BaseModel):
    player_id: str
    delta: int


class ScoreLedger:

    def delta_for(self, outcome: TurnOutcome, turn: TurnData) -> ScoreDelta:
        role, delta = SCORE_TABLE[outcome]
        player_id = turn.current_guesser_id if role == "guesser" else turn.attacker_id
        return ScoreDelta(player_id=player_id, delta=delta)

    def apply(self, scores: Sequence[PlayerScore], change: ScoreDelta) -> List[PlayerScore]:
        """Return a new score list with `change` applied (input is left untouched)."""
        updated = []
        found = False
        for entry in scores:
            if entry.user_id == change.player_id:
                found = True
                entry = entry.model_copy(update={"score": entry.score + change.delta})
            updated.append(entry)
        if not found:
            logger.warning(f"Score delta for unknown player {change.player_id} ignored")
        return updated

    @staticmethod
    def already_applied(turn: TurnData, previous: Optional[TurnResult]) -> bool:
        """A turn is resolved (and scored) at most once."""
        return previous is not None and previous.turn_id == turn.turn_id

    @staticmethod
    def leader(scores: Sequence[PlayerScore]) -> Optional[PlayerScore]:
        if not scores:
            return None
        return max(scores, key=lambda s: s.score)
