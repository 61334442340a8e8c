from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any, Tuple
from enum import Enum
from datetime import datetime, timezone
import uuid


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    PRE_GAME_COUNTDOWN = "pre_game_countdown"
    TURN_COUNTDOWN = "turn_countdown"
    AUDIO_PLAYING = "audio_playing"
    GUESSING = "guessing"
    VOTING = "voting"
    TURN_RESULTS = "turn_results"
    GAME_FINISHED = "game_finished"


# Position of each phase inside one attempt cycle. Used by the divergence
# guard to tell "one step behind" from "missed an intermediate update".
PHASE_RANK: Dict[Phase, int] = {
    Phase.PRE_GAME_COUNTDOWN: 0,
    Phase.TURN_COUNTDOWN: 1,
    Phase.AUDIO_PLAYING: 2,
    Phase.GUESSING: 3,
    Phase.VOTING: 4,
    Phase.TURN_RESULTS: 5,
    Phase.GAME_FINISHED: 6,
}


class SessionState(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class VoteDecision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class TurnOutcome(str, Enum):
    DEFENDER_CORRECT = "defender_correct"        # defender +1
    CHALLENGER_CORRECT = "challenger_correct"    # challenger +1
    DEFENDER_EXHAUSTED = "defender_exhausted"    # attacker +1 (no challenger registered)
    CHALLENGER_FAILED = "challenger_failed"      # attacker -1 (nobody guessed it)
    ENDED_BY_OWNER = "ended_by_owner"            # attacker -1 (owner forced the turn to end)


OUTCOME_REASONS: Dict[TurnOutcome, str] = {
    TurnOutcome.DEFENDER_CORRECT: "Answer accepted by voters",
    TurnOutcome.CHALLENGER_CORRECT: "Challenger guessed correctly",
    TurnOutcome.DEFENDER_EXHAUSTED: "Defender failed to guess correctly",
    TurnOutcome.CHALLENGER_FAILED: "Attacker failed - no correct guesses",
    TurnOutcome.ENDED_BY_OWNER: "Turn ended by the host",
}


class Session(BaseModel):
    id: str
    host_id: str
    player_order: List[str]
    state: SessionState = SessionState.WAITING
    display_names: Dict[str, str] = {}
    created_at: datetime = Field(default_factory=_utcnow)

    def display_name(self, player_id: str) -> str:
        return self.display_names.get(player_id, player_id)


class PlayerScore(BaseModel):
    user_id: str
    display_name: str
    score: int = 0  # unbounded, may go negative
    online: bool = True


class SongRef(BaseModel):
    """Opaque track reference plus the metadata shown on reveal."""
    id: str
    title: str = ""
    artist: str = ""
    preview_url: Optional[str] = None
    album_art_url: Optional[str] = None
    added_by: Optional[str] = None


class Guess(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    player_id: str
    text: str
    attempt_key: str  # "<turn_id>:<attempt>" — stale guesses from older attempts are ignored
    submitted_at: datetime = Field(default_factory=_utcnow)


class Challenge(BaseModel):
    player_id: str
    turn_id: Optional[str] = None
    registered_at: datetime = Field(default_factory=_utcnow)


class VoteRecord(BaseModel):
    decision: VoteDecision
    attempt_key: str
    cast_at: datetime = Field(default_factory=_utcnow)


class VotingResults(BaseModel):
    votes: Dict[str, VoteRecord] = {}  # voter_id → vote
    is_completed: bool = False


class TurnData(BaseModel):
    """
    Turn sub-document. Written wholesale by the owner at turn start; guesses,
    challenges and votes are maps keyed by player id so each client writes
    only its own key (no read-modify-write of a shared list).
    """
    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    attacker_id: str
    defender_id: str
    current_guesser_id: str
    current_song: SongRef
    guesses: Dict[str, Guess] = {}
    challenges: Dict[str, Challenge] = {}
    voting_results: VotingResults = Field(default_factory=VotingResults)
    failed_attempts: int = 0
    is_in_challenger_phase: bool = False

    @model_validator(mode="after")
    def _guesser_is_not_attacker(self) -> "TurnData":
        if self.attacker_id == self.current_guesser_id:
            raise ValueError("attacker_id must differ from current_guesser_id")
        return self

    @property
    def attempt(self) -> int:
        """1–3 for the defender, max_attempts + 1 for the challenger."""
        return self.failed_attempts + 1

    @property
    def attempt_key(self) -> str:
        return f"{self.turn_id}:{self.attempt}"

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.attacker_id, self.current_guesser_id)

    def ordered_challengers(self) -> List[str]:
        """Challenger ids, first-registered-first-served."""
        ordered = sorted(self.challenges.values(), key=lambda c: (c.registered_at, c.player_id))
        return [c.player_id for c in ordered]

    def current_guess(self) -> Optional[Guess]:
        """The current guesser's guess for this attempt, if one has landed."""
        guess = self.guesses.get(self.current_guesser_id)
        if guess and guess.attempt_key == self.attempt_key:
            return guess
        return None

    def current_votes(self) -> Dict[str, VoteDecision]:
        return {
            voter_id: record.decision
            for voter_id, record in self.voting_results.votes.items()
            if record.attempt_key == self.attempt_key
        }


class TurnResult(BaseModel):
    turn_id: str
    outcome: TurnOutcome
    winner_id: Optional[str] = None
    scored_player_id: Optional[str] = None
    delta: int = 0
    next_attacker_id: str
    next_defender_id: str
    song: Optional[SongRef] = None
    reason: str = ""


class SyncState(BaseModel):
    """The single shared document per session."""
    session_id: str
    phase: Phase = Phase.PRE_GAME_COUNTDOWN
    time_remaining: int = 0
    current_turn_index: int = 0
    player_scores: List[PlayerScore] = []
    player_order: List[str] = []
    turn_data: Optional[TurnData] = None
    show_album_art: bool = False
    turn_result: Optional[TurnResult] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def score_of(self, player_id: str) -> Optional[int]:
        for entry in self.player_scores:
            if entry.user_id == player_id:
                return entry.score
        return None


# ── HTTP request/response models ──────────────────────────────────────────────

class SyncWriteRequest(BaseModel):
    actor_id: str
    fields: Dict[str, Any]


class SyncWriteResponse(BaseModel):
    session_id: str
    updated_at: datetime
