"""
Voting Subsystem — accept/reject consensus on the current guess.

Eligible voters are every player except the current guesser. The rule is
re-evaluated after every recorded vote (the owner does it once per tick):

  1. attacker voted accept                    → accepted (attacker has final authority)
  2. two-player game, the other player voted  → that vote is final
  3. ≥ votes_needed non-guesser accepts       → accepted
  4. every eligible voter has voted           → rejected
  5. otherwise                                → pending (timeout ⇒ rejected)
"""
import logging
from enum import Enum
from typing import Dict, List, Mapping, Sequence

from models.game import TurnData, VoteDecision
from engine.errors import InvalidAction

logger = logging.getLogger(__name__)


class VoteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def eligible_voters(player_ids: Sequence[str], guesser_id: str) -> List[str]:
    return [pid for pid in player_ids if pid != guesser_id]


def evaluate_votes(
    votes: Mapping[str, VoteDecision],
    *,
    attacker_id: str,
    guesser_id: str,
    player_ids: Sequence[str],
    votes_needed: int = 2,
) -> VoteStatus:
    """Pure consensus rule. Votes from the guesser or from non-players are ignored."""
    voters = eligible_voters(player_ids, guesser_id)
    counted: Dict[str, VoteDecision] = {v: votes[v] for v in voters if v in votes}

    if counted.get(attacker_id) == VoteDecision.ACCEPT:
        return VoteStatus.ACCEPTED

    if len(player_ids) == 2:
        sole_voter = voters[0]
        if sole_voter not in counted:
            return VoteStatus.PENDING
        if counted[sole_voter] == VoteDecision.ACCEPT:
            return VoteStatus.ACCEPTED
        return VoteStatus.REJECTED

    accepts = sum(1 for d in counted.values() if d == VoteDecision.ACCEPT)
    if accepts >= votes_needed:
        return VoteStatus.ACCEPTED
    if len(counted) >= len(voters):
        return VoteStatus.REJECTED
    return VoteStatus.PENDING


class VotingSubsystem:

    def __init__(self, votes_needed: int = 2):
        self.votes_needed = votes_needed

    def evaluate(self, turn: TurnData, player_ids: Sequence[str]) -> VoteStatus:
        return evaluate_votes(
            turn.current_votes(),
            attacker_id=turn.attacker_id,
            guesser_id=turn.current_guesser_id,
            player_ids=player_ids,
            votes_needed=self.votes_needed,
        )

    def evaluate_on_timeout(self, turn: TurnData, player_ids: Sequence[str]) -> VoteStatus:
        """The voting window closed: no consensus counts as a rejection."""
        status = self.evaluate(turn, player_ids)
        if status == VoteStatus.PENDING:
            logger.info("Voting window expired without consensus — rejecting")
            return VoteStatus.REJECTED
        return status

    def check_voter(self, turn: TurnData, voter_id: str, player_ids: Sequence[str]) -> None:
        """Raise InvalidAction unless voter_id may vote on the current guess."""
        if voter_id not in player_ids:
            raise InvalidAction(f"{voter_id} is not a player in this session")
        if voter_id == turn.current_guesser_id:
            raise InvalidAction("The guesser cannot vote on their own answer")
        if turn.current_guess() is None:
            raise InvalidAction("There is no guess to vote on")
