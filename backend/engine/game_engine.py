"""
Game Engine — one per client. Wires the collaborators (store, song source,
media) into the core components and exposes the two surfaces a client uses:

  tick()               one reconciliation tick; on the owner also drives the
                       phase machine (early advance on a guess, vote consensus,
                       timer expiry)
  player actions       submit_guess / register_challenge / cast_vote write
                       only this player's key of the turn sub-document
  owner actions        start / next_turn / skip_turn / end_turn / end_game

Only the owner (session.host_id) ever writes phase, time_remaining,
current_turn_index, player_order, player_scores or turn_result.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import Settings
from models.game import (
    Challenge, Guess, OUTCOME_REASONS, Phase, PlayerScore, Session, SessionState,
    SyncState, TurnData, TurnOutcome, TurnResult, VoteDecision, VoteRecord,
)
from services.media_provider import MediaProvider
from services.song_source import SongSource
from services.state_store import StateStore
from engine.errors import (
    EngineError, InvalidAction, NoSongAvailable, NoSongsRemaining, NotOwnerError,
)
from engine.phase_machine import PhaseDurations, PhaseStateMachine
from engine.reconciliation import LocalInputState, PhaseListener, ReconciliationLoop
from engine.score_ledger import ScoreLedger
from engine.turn_manager import TurnManager
from engine.voting import VoteStatus, VotingSubsystem

logger = logging.getLogger(__name__)

ErrorListener = Callable[[EngineError], None]

GUESS_PHASES = (Phase.AUDIO_PLAYING, Phase.GUESSING)
IN_TURN_PHASES = (Phase.TURN_COUNTDOWN, Phase.AUDIO_PLAYING, Phase.GUESSING, Phase.VOTING)


def rotation_order(session: Session) -> List[str]:
    """Host first, then everyone else in join order."""
    others = [pid for pid in session.player_order if pid != session.host_id]
    return [session.host_id] + others


class GameEngine:
    """One client in a session: reconciles every tick, and drives the turn on the host."""

    def __init__(
        self,
        session: Session,
        player_id: str,
        store: StateStore,
        song_source: SongSource,
        media: MediaProvider,
        durations: Optional[PhaseDurations] = None,
        max_attempts: int = 3,
        votes_needed: int = 2,
        win_score: Optional[int] = None,
        tick_interval: float = 1.0,
    ):
        self.session = session
        self.player_id = player_id
        self.store = store
        self.is_owner = player_id == session.host_id
        self.win_score = win_score
        self.tick_interval = tick_interval

        self.turns = TurnManager(song_source, session.id, rotation_order(session), max_attempts)
        self.voting = VotingSubsystem(votes_needed)
        self.ledger = ScoreLedger()
        self.machine = PhaseStateMachine(durations or PhaseDurations())
        self.loop = ReconciliationLoop(session.id, player_id, media, is_owner=self.is_owner)

        # Set while the owner cannot start a pairing because the attacker has no song
        self.blocked: Optional[NoSongAvailable] = None
        self._blocked_pairing: Optional[Tuple[str, str, int]] = None
        self._error_listeners: List[ErrorListener] = []

    @classmethod
    def from_settings(
        cls,
        session: Session,
        player_id: str,
        store: StateStore,
        song_source: SongSource,
        media: MediaProvider,
        s: Settings,
    ) -> "GameEngine":
        return cls(
            session, player_id, store, song_source, media,
            durations=PhaseDurations.from_settings(s),
            max_attempts=s.max_defender_attempts,
            votes_needed=s.votes_needed,
            win_score=s.win_score,
            tick_interval=s.tick_interval_seconds,
        )

    # ── Views ─────────────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def player_order(self) -> List[str]:
        return self.turns.player_order

    @property
    def state(self) -> Optional[SyncState]:
        """Last adopted snapshot."""
        return self.loop.snapshot

    @property
    def phase(self) -> Optional[Phase]:
        return self.machine.phase if self.is_owner else self.loop.phase

    @property
    def time_remaining(self) -> int:
        return self.machine.time_remaining if self.is_owner else self.loop.clock.time_remaining

    @property
    def input(self) -> LocalInputState:
        return self.loop.input

    def add_phase_listener(self, listener: PhaseListener) -> None:
        self.loop.add_listener(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        """Receives the user-facing failures: NoSongAvailable / NoSongsRemaining."""
        self._error_listeners.append(listener)

    def _surface(self, error: EngineError) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception(f"[{self.session_id}] Error listener failed")

    # ── Store helpers ─────────────────────────────────────────────────────────

    async def _write(self, fields: Dict[str, Any]) -> None:
        await self.store.write(self.session_id, fields, self.player_id)

    async def _read(self) -> SyncState:
        state = await self.store.read(self.session_id)
        if state is None:
            raise EngineError(f"Session {self.session_id} has no sync state — has the host started it?")
        return state

    async def _refresh(self) -> SyncState:
        state = await self._read()
        self.loop.apply(state)
        return state

    def _require_owner(self) -> None:
        if not self.is_owner:
            raise NotOwnerError(f"Only the host of session {self.session_id} can do that")

    # ── Session lifecycle (owner) ─────────────────────────────────────────────

    async def start(self) -> SyncState:
        """Create the shared document and enter pre_game_countdown."""
        self._require_owner()
        order = self.player_order
        scores = [
            PlayerScore(user_id=pid, display_name=self.session.display_name(pid))
            for pid in order
        ]
        time_remaining = self.machine.transition(Phase.PRE_GAME_COUNTDOWN)
        await self._write({
            "phase": Phase.PRE_GAME_COUNTDOWN.value,
            "time_remaining": time_remaining,
            "current_turn_index": 0,
            "player_scores": [s.model_dump(mode="json") for s in scores],
            "player_order": order,
            "turn_data": None,
            "show_album_art": False,
            "turn_result": None,
        })
        self.session.player_order = list(order)
        self.session.state = SessionState.PLAYING
        logger.info(f"[{self.session_id}] Game started — order {order}")
        return await self._refresh()

    async def end_game(self) -> None:
        self._require_owner()
        if self.machine.phase == Phase.GAME_FINISHED:
            return
        self.blocked = None
        self._blocked_pairing = None
        await self._enter_phase(Phase.GAME_FINISHED)
        self.session.state = SessionState.FINISHED
        self.loop.stop()
        logger.info(f"[{self.session_id}] Game finished")

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def tick(self) -> Optional[SyncState]:
        """One reconciliation tick (plus one owner clock second on the host)."""
        state = await self.store.read(self.session_id)
        if state is None:
            return None
        self.loop.apply(state)
        if state.phase == Phase.GAME_FINISHED:
            self.session.state = SessionState.FINISHED
        elif self.session.state == SessionState.WAITING:
            self.session.state = SessionState.PLAYING

        await self._repair_contributions()
        if self.is_owner:
            await self._drive(state)
        return self.loop.snapshot

    async def run(self, stop: Optional[asyncio.Event] = None, interval: Optional[float] = None) -> None:
        """Tick until the game finishes or `stop` is set. A failed tick is logged and retried."""
        stop = stop or asyncio.Event()
        interval = self.tick_interval if interval is None else interval
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception(f"[{self.session_id}] Tick failed for {self.player_id} — retrying")
            if self.session.state == SessionState.FINISHED:
                break
            await asyncio.sleep(interval)

    # ── Owner: phase driving ──────────────────────────────────────────────────

    async def _enter_phase(self, phase: Phase, fields: Optional[Dict[str, Any]] = None) -> SyncState:
        """Transition the owner clock and persist phase + time + `fields` in one write."""
        time_remaining = self.machine.transition(phase)
        payload: Dict[str, Any] = {"phase": phase.value, "time_remaining": time_remaining}
        if fields:
            payload.update(fields)
        await self._write(payload)
        logger.info(f"[{self.session_id}] Phase → {phase.value} ({time_remaining}s)")
        return await self._refresh()

    async def _drive(self, state: SyncState) -> None:
        if self.machine.phase is None:
            # Host restarted mid-game: resume the persisted clock
            self.machine.restore(state.phase, state.time_remaining)
        phase = self.machine.phase
        if phase == Phase.GAME_FINISHED or self.blocked is not None:
            return

        turn = state.turn_data
        if phase in GUESS_PHASES and turn is not None and turn.current_guess() is not None:
            await self._enter_phase(Phase.VOTING)
            return
        if phase == Phase.VOTING and turn is not None:
            status = self.voting.evaluate(turn, self.player_order)
            if status != VoteStatus.PENDING:
                await self._settle_vote(state, status)
                return

        if not self.machine.tick():
            if self.machine.is_timed:
                await self._write({"time_remaining": self.machine.time_remaining})
            return
        await self._on_timer_expired(state)

    async def _on_timer_expired(self, state: SyncState) -> None:
        phase = self.machine.phase
        if phase == Phase.PRE_GAME_COUNTDOWN:
            attacker, defender = self.turns.first_pairing(self.session.host_id)
            try:
                await self._start_pairing(attacker, defender, state.current_turn_index + 1)
            except NoSongAvailable:
                return  # blocked until next_turn()
        elif phase == Phase.TURN_COUNTDOWN:
            await self._enter_phase(Phase.AUDIO_PLAYING)
        elif phase == Phase.AUDIO_PLAYING:
            await self._enter_phase(Phase.GUESSING)
        elif phase == Phase.GUESSING:
            fresh = await self._read()
            turn = fresh.turn_data
            if turn is not None and turn.current_guess() is not None:
                await self._enter_phase(Phase.VOTING)
            else:
                logger.info(f"[{self.session_id}] No guess before the guessing timer ran out")
                await self._fail_attempt(fresh)
        elif phase == Phase.VOTING:
            fresh = await self._read()
            status = self.voting.evaluate_on_timeout(fresh.turn_data, self.player_order)
            await self._settle_vote(fresh, status)

    async def _settle_vote(self, state: SyncState, status: VoteStatus) -> None:
        turn = state.turn_data
        if status == VoteStatus.ACCEPTED:
            guess = turn.current_guess()
            logger.info(f"[{self.session_id}] Guess '{guess.text if guess else ''}' by {turn.current_guesser_id} accepted")
            outcome = (
                TurnOutcome.CHALLENGER_CORRECT if turn.is_in_challenger_phase
                else TurnOutcome.DEFENDER_CORRECT
            )
            await self._resolve(state, outcome)
        else:
            logger.info(f"[{self.session_id}] Guess by {turn.current_guesser_id} rejected")
            await self._fail_attempt(state)

    async def _fail_attempt(self, state: SyncState) -> None:
        """Timeout or rejection: next attempt, the first challenger, or the end of the turn."""
        turn = state.turn_data
        plan = self.turns.plan_after_failure(turn)
        if plan.ends_turn:
            await self._resolve(state, plan.outcome, {"turn_data.failed_attempts": plan.failed_attempts})
            return
        logger.info(
            f"[{self.session_id}] Attempt failed ({plan.failed_attempts} so far) — "
            f"{plan.step.value}: {plan.guesser_id} guesses next"
        )
        await self._enter_phase(Phase.TURN_COUNTDOWN, self.turns.attempt_reset_fields(turn, plan))

    async def _resolve(
        self,
        state: SyncState,
        outcome: TurnOutcome,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Optional[TurnResult]:
        """Score the turn once, record the result, reveal the song."""
        turn = state.turn_data
        if self.ledger.already_applied(turn, state.turn_result):
            logger.warning(f"[{self.session_id}] Turn {turn.turn_id} already resolved — ignoring {outcome.value}")
            return None

        change = self.ledger.delta_for(outcome, turn)
        scores = self.ledger.apply(state.player_scores, change)
        next_attacker, next_defender = self.turns.rotation_after(outcome, turn)
        if outcome in (TurnOutcome.DEFENDER_CORRECT, TurnOutcome.CHALLENGER_CORRECT):
            winner = turn.current_guesser_id
        elif outcome == TurnOutcome.DEFENDER_EXHAUSTED:
            winner = turn.attacker_id
        else:
            winner = None

        result = TurnResult(
            turn_id=turn.turn_id,
            outcome=outcome,
            winner_id=winner,
            scored_player_id=change.player_id,
            delta=change.delta,
            next_attacker_id=next_attacker,
            next_defender_id=next_defender,
            song=turn.current_song,
            reason=OUTCOME_REASONS[outcome],
        )
        payload: Dict[str, Any] = {
            "player_scores": [s.model_dump(mode="json") for s in scores],
            "turn_result": result.model_dump(mode="json"),
            "show_album_art": True,
            "turn_data.voting_results.is_completed": True,
        }
        if fields:
            payload.update(fields)
        logger.info(
            f"[{self.session_id}] Turn {turn.turn_id} resolved: {outcome.value} "
            f"({change.player_id} {change.delta:+d}); next {next_attacker} vs {next_defender}"
        )
        await self._enter_phase(Phase.TURN_RESULTS, payload)
        return result

    async def _start_pairing(
        self,
        attacker_id: str,
        defender_id: str,
        turn_index: int,
        skip_unavailable: bool = False,
        reassigned_index: Optional[int] = None,
    ) -> TurnData:
        """
        Fetch the attacker's song and enter turn_countdown with a fresh turn
        sub-document. When the attacker has no song and `skip_unavailable` is
        set, the pairing moves on to another attacker at `reassigned_index`.
        """
        try:
            turn = await self.turns.start_turn(attacker_id, defender_id)
        except NoSongAvailable as exc:
            if not skip_unavailable:
                self.blocked = exc
                self._blocked_pairing = (attacker_id, defender_id, turn_index)
                self._surface(exc)
                raise
            try:
                turn = await self.turns.start_turn_with_available_attacker(attacker_id)
                if reassigned_index is not None and turn.attacker_id != attacker_id:
                    turn_index = reassigned_index
            except NoSongsRemaining as final:
                logger.warning(f"[{self.session_id}] {final} — ending the game")
                await self.end_game()
                self._surface(final)
                raise

        self.blocked = None
        self._blocked_pairing = None
        await self._enter_phase(Phase.TURN_COUNTDOWN, {
            "turn_data": turn.model_dump(mode="json"),
            "turn_result": None,
            "show_album_art": False,
            "current_turn_index": turn_index,
        })
        logger.info(
            f"[{self.session_id}] Turn {turn_index}: {turn.attacker_id} attacks "
            f"{turn.defender_id} with {turn.current_song.id}"
        )
        return turn

    # ── Owner controls ────────────────────────────────────────────────────────

    async def next_turn(self, skip_unavailable: bool = False) -> Optional[TurnData]:
        """
        Start the rotated pairing from turn_results, or retry the pairing that
        was blocked by NoSongAvailable. Returns None when the configured
        win_score ended the game instead.
        """
        self._require_owner()
        state = await self._read()

        reassigned_index = state.current_turn_index + 1
        if self._blocked_pairing is not None:
            attacker, defender, turn_index = self._blocked_pairing
        elif self.machine.phase == Phase.TURN_RESULTS and state.turn_result is not None:
            leader = self.ledger.leader(state.player_scores)
            if self.win_score is not None and leader is not None and leader.score >= self.win_score:
                logger.info(f"[{self.session_id}] {leader.user_id} reached {leader.score} points")
                await self.end_game()
                return None
            attacker = state.turn_result.next_attacker_id
            defender = state.turn_result.next_defender_id
            turn_index = reassigned_index
        else:
            phase = self.machine.phase.value if self.machine.phase else None
            raise InvalidAction(f"Next turn is only available from turn results (phase={phase})")

        return await self._start_pairing(
            attacker, defender, turn_index,
            skip_unavailable=skip_unavailable, reassigned_index=reassigned_index,
        )

    async def skip_turn(self) -> TurnData:
        """Same attacker and defender, the current song discarded, attempt 1 again."""
        self._require_owner()
        state = await self._read()
        turn = state.turn_data
        if turn is None or self.machine.phase not in IN_TURN_PHASES + (Phase.TURN_RESULTS,):
            raise InvalidAction("There is no turn to skip")
        logger.info(f"[{self.session_id}] Host skipped {turn.current_song.id}")
        return await self._start_pairing(turn.attacker_id, turn.defender_id, state.current_turn_index)

    async def end_turn(self) -> Optional[TurnResult]:
        """Force the turn to end now; counts as an attacker loss."""
        self._require_owner()
        state = await self._read()
        if state.turn_data is None or self.machine.phase not in IN_TURN_PHASES:
            raise InvalidAction("There is no turn in progress")
        return await self._resolve(state, TurnOutcome.ENDED_BY_OWNER)

    # ── Player actions ────────────────────────────────────────────────────────

    def set_guess_text(self, text: str) -> None:
        self.loop.input = self.loop.input.model_copy(update={"guess_text": text})

    async def submit_guess(self, text: Optional[str] = None) -> Guess:
        state = await self._read()
        turn = state.turn_data
        if turn is None or state.phase not in GUESS_PHASES:
            raise InvalidAction("Guesses are only taken while the song plays or during guessing")
        if turn.current_guesser_id != self.player_id:
            raise InvalidAction("It is not your turn to guess")
        if turn.current_guess() is not None:
            raise InvalidAction("You already guessed this attempt")
        text = (text if text is not None else self.input.guess_text).strip()
        if not text:
            raise InvalidAction("Guess cannot be empty")

        guess = Guess(player_id=self.player_id, text=text, attempt_key=turn.attempt_key)
        await self._write({f"turn_data.guesses.{self.player_id}": guess.model_dump(mode="json")})
        self.loop.input = self.loop.input.model_copy(update={
            "guess_text": "",
            "has_submitted_guess": True,
            "sent_guess": guess,
        })
        logger.info(f"[{self.session_id}] {self.player_id} guessed '{text}'")
        return guess

    async def register_challenge(self) -> Challenge:
        state = await self._read()
        turn = state.turn_data
        if turn is None or state.phase not in IN_TURN_PHASES or turn.is_in_challenger_phase:
            raise InvalidAction("Challenges are closed")
        if self.player_id in (turn.attacker_id, turn.defender_id):
            raise InvalidAction("The attacker and the defender cannot challenge")
        if self.player_id in turn.challenges:
            raise InvalidAction("You already challenged this turn")

        challenge = Challenge(player_id=self.player_id, turn_id=turn.turn_id)
        await self._write({f"turn_data.challenges.{self.player_id}": challenge.model_dump(mode="json")})
        self.loop.input = self.loop.input.model_copy(update={
            "has_challenged": True,
            "sent_challenge": challenge,
        })
        logger.info(f"[{self.session_id}] {self.player_id} registered a challenge")
        return challenge

    async def cast_vote(self, decision: VoteDecision) -> VoteRecord:
        state = await self._read()
        turn = state.turn_data
        if turn is None or state.phase != Phase.VOTING:
            raise InvalidAction("Voting is not open")
        self.voting.check_voter(turn, self.player_id, self.player_order)
        if self.player_id in turn.current_votes():
            raise InvalidAction("You already voted on this guess")

        record = VoteRecord(decision=VoteDecision(decision), attempt_key=turn.attempt_key)
        await self._write({f"turn_data.voting_results.votes.{self.player_id}": record.model_dump(mode="json")})
        votes = dict(self.input.votes)
        votes[self.player_id] = record.decision
        self.loop.input = self.loop.input.model_copy(update={
            "has_voted": True,
            "votes": votes,
            "sent_vote": record,
        })
        logger.info(f"[{self.session_id}] {self.player_id} voted {record.decision.value}")
        return record

    # ── Contribution repair ───────────────────────────────────────────────────

    async def _repair_contributions(self) -> None:
        """Re-send our own guess / challenge / vote if a concurrent write dropped it."""
        state = self.loop.snapshot
        turn = state.turn_data if state else None
        if turn is None:
            return
        local = self.loop.input
        pid = self.player_id
        fields: Dict[str, Any] = {}

        guess = local.sent_guess
        if (
            guess is not None
            and state.phase in GUESS_PHASES
            and guess.attempt_key == turn.attempt_key
            and turn.current_guesser_id == pid
            and turn.current_guess() is None
        ):
            fields[f"turn_data.guesses.{pid}"] = guess.model_dump(mode="json")

        challenge = local.sent_challenge
        if (
            challenge is not None
            and challenge.turn_id == turn.turn_id
            and state.phase in IN_TURN_PHASES
            and not turn.is_in_challenger_phase
            and pid not in turn.challenges
        ):
            fields[f"turn_data.challenges.{pid}"] = challenge.model_dump(mode="json")

        vote = local.sent_vote
        if (
            vote is not None
            and state.phase == Phase.VOTING
            and vote.attempt_key == turn.attempt_key
            and pid not in turn.current_votes()
        ):
            fields[f"turn_data.voting_results.votes.{pid}"] = vote.model_dump(mode="json")

        if fields:
            logger.warning(f"[{self.session_id}] {pid} contribution lost to a concurrent write — re-sending {sorted(fields)}")
            await self._write(fields)
