"""Tests for engine/reconciliation.py — reset-vs-preserve and once-only phase effects."""
from datetime import datetime, timedelta, timezone

import pytest

from models.game import (
    Challenge, Guess, Phase, SongRef, SyncState, TurnData, VoteDecision, VoteRecord,
)
from engine.reconciliation import (
    LocalInputState, ReconciliationLoop, reconcile_input, turn_identity,
)

from conftest import RecordingMedia

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _turn(**kwargs) -> TurnData:
    data = dict(attacker_id="a", defender_id="b", current_guesser_id="b", current_song=SongRef(id="track-1"))
    data.update(kwargs)
    return TurnData(**data)


class Feed:
    """Builds snapshots with strictly increasing updated_at, like the store."""

    def __init__(self):
        self.n = 0

    def __call__(self, phase: Phase, turn=None, by="a", time_remaining=3) -> SyncState:
        self.n += 1
        return SyncState(
            session_id="room-1",
            phase=phase,
            time_remaining=time_remaining,
            turn_data=turn,
            updated_at=T0 + timedelta(seconds=self.n),
            updated_by=by,
        )


@pytest.fixture
def feed() -> Feed:
    return Feed()


@pytest.fixture
def media() -> RecordingMedia:
    return RecordingMedia()


@pytest.fixture
def follower(media) -> ReconciliationLoop:
    return ReconciliationLoop("room-1", "c", media)


class TestReconcileInput:

    def test_identity(self):
        assert turn_identity(None) is None
        assert turn_identity(_turn()) == ("a", "b")

    def test_same_turn_preserves_typed_text(self):
        local = LocalInputState(guess_text="Hotel Cali")
        result = reconcile_input(("a", "b"), ("a", "b"), local, _turn(), "b")
        assert result.guess_text == "Hotel Cali"

    def test_new_turn_clears_everything(self):
        local = LocalInputState(guess_text="x", has_challenged=True, has_voted=True,
                                votes={"c": VoteDecision.ACCEPT})
        result = reconcile_input(("a", "b"), ("b", "c"), local, _turn(attacker_id="b", defender_id="c",
                                                                    current_guesser_id="c"), "d")
        assert result == LocalInputState()

    def test_challenger_taking_over_is_a_new_identity(self):
        local = LocalInputState(guess_text="x")
        result = reconcile_input(("a", "b"), ("a", "c"), local, _turn(current_guesser_id="c"), "c")
        assert result.guess_text == ""

    def test_remote_contributions_are_adopted_additively(self):
        turn = _turn()
        turn.challenges["c"] = Challenge(player_id="c")
        turn.voting_results.votes["d"] = VoteRecord(decision=VoteDecision.REJECT, attempt_key=turn.attempt_key)
        local = LocalInputState(guess_text="draft", votes={"c": VoteDecision.ACCEPT}, has_voted=True)
        result = reconcile_input(("a", "b"), ("a", "b"), local, turn, "c")
        assert result.has_challenged
        assert result.votes == {"c": VoteDecision.ACCEPT, "d": VoteDecision.REJECT}
        assert result.guess_text == "draft"

    def test_old_attempt_guess_is_not_adopted(self):
        turn = _turn(failed_attempts=1)
        turn.guesses["b"] = Guess(player_id="b", text="old", attempt_key=f"{turn.turn_id}:1")
        result = reconcile_input(("a", "b"), ("a", "b"), LocalInputState(), turn, "b")
        assert not result.has_submitted_guess

    def test_pure(self):
        local = LocalInputState(guess_text="x")
        reconcile_input(("a", "b"), ("b", "c"), local, None, "c")
        assert local.guess_text == "x"


class TestReconciliationLoop:

    def test_stale_snapshot_is_discarded(self, follower, feed):
        newer = feed(Phase.TURN_COUNTDOWN, _turn())
        older = newer.model_copy(update={"phase": Phase.PRE_GAME_COUNTDOWN,
                                         "updated_at": newer.updated_at - timedelta(seconds=5)})
        assert follower.apply(newer)
        assert not follower.apply(older)
        assert follower.phase == Phase.TURN_COUNTDOWN

    def test_same_snapshot_twice_fires_nothing_new(self, follower, feed, media):
        entered = []
        follower.add_listener(lambda phase, _: entered.append(phase))
        snap = feed(Phase.AUDIO_PLAYING, _turn())
        follower.apply(snap)
        follower.apply(snap)
        follower.apply(snap.model_copy(update={"updated_at": snap.updated_at + timedelta(seconds=1)}))
        assert entered == [Phase.AUDIO_PLAYING]
        assert media.played == ["track-1"]

    def test_audio_stops_when_phase_moves_on(self, follower, feed, media):
        turn = _turn()
        follower.apply(feed(Phase.AUDIO_PLAYING, turn))
        follower.apply(feed(Phase.VOTING, turn))
        assert media.stops == 1

    def test_follower_adopts_remote_time(self, follower, feed):
        follower.apply(feed(Phase.GUESSING, _turn(), time_remaining=9))
        assert follower.clock.time_remaining == 9
        follower.apply(feed(Phase.GUESSING, _turn(), time_remaining=8))
        assert follower.clock.time_remaining == 8

    def test_divergence_is_force_adopted_and_counted(self, follower, feed):
        turn = _turn()
        entered = []
        follower.add_listener(lambda phase, _: entered.append(phase))
        follower.apply(feed(Phase.TURN_COUNTDOWN, turn))
        follower.apply(feed(Phase.VOTING, turn))
        assert follower.phase == Phase.VOTING
        assert follower.divergence_count == 1
        assert entered == [Phase.TURN_COUNTDOWN, Phase.VOTING]

    def test_own_write_is_adopted_without_refiring(self, media, feed):
        loop = ReconciliationLoop("room-1", "a", media, is_owner=True)
        turn = _turn()
        loop.apply(feed(Phase.AUDIO_PLAYING, turn, by="a"))
        loop.apply(feed(Phase.AUDIO_PLAYING, turn, by="a", time_remaining=2))
        assert media.played == ["track-1"]
        assert loop.last_seen == T0 + timedelta(seconds=2)

    def test_new_attempt_replays_the_song(self, follower, feed, media):
        turn = _turn()
        follower.apply(feed(Phase.AUDIO_PLAYING, turn))
        retry = turn.model_copy(update={"failed_attempts": 1})
        follower.apply(feed(Phase.TURN_COUNTDOWN, retry))
        follower.apply(feed(Phase.AUDIO_PLAYING, retry))
        assert media.played == ["track-1", "track-1"]

    def test_new_attempt_resets_vote_flags(self, feed, media):
        loop = ReconciliationLoop("room-1", "c", media)
        turn = _turn()
        loop.apply(feed(Phase.VOTING, turn))
        loop.input = loop.input.model_copy(update={"has_voted": True, "votes": {"c": VoteDecision.REJECT}})

        retry = turn.model_copy(update={"failed_attempts": 1})
        loop.apply(feed(Phase.TURN_COUNTDOWN, retry))
        loop.apply(feed(Phase.VOTING, retry))
        assert not loop.input.has_voted
        assert loop.input.votes == {}

    def test_new_attempt_first_seen_mid_attempt_resets_guess(self, feed, media):
        loop = ReconciliationLoop("room-1", "b", media)
        turn = _turn()
        loop.apply(feed(Phase.GUESSING, turn))
        guess = Guess(player_id="b", text="Hotel California", attempt_key=turn.attempt_key)
        loop.input = loop.input.model_copy(update={"has_submitted_guess": True, "sent_guess": guess})

        retry = turn.model_copy(update={"failed_attempts": 1})
        loop.apply(feed(Phase.AUDIO_PLAYING, retry))
        assert not loop.input.has_submitted_guess
        assert loop.input.sent_guess is None


    def test_vote_sent_before_voting_was_observed_survives(self, feed, media):
        loop = ReconciliationLoop("room-1", "c", media)
        turn = _turn()
        loop.apply(feed(Phase.GUESSING, turn))
        record = VoteRecord(decision=VoteDecision.ACCEPT, attempt_key=turn.attempt_key)
        loop.input = loop.input.model_copy(update={"has_voted": True, "sent_vote": record})
        loop.apply(feed(Phase.VOTING, turn))
        assert loop.input.has_voted
        assert loop.input.sent_vote == record

    def test_skip_with_same_pairing_clears_challenge(self, follower, feed):
        turn = _turn()
        follower.apply(feed(Phase.AUDIO_PLAYING, turn))
        follower.input = follower.input.model_copy(update={"has_challenged": True, "guess_text": "draft"})
        fresh = _turn(current_song=SongRef(id="track-2"))
        follower.apply(feed(Phase.TURN_COUNTDOWN, fresh))
        assert not follower.input.has_challenged
        assert follower.input.guess_text == "draft"

    def test_listener_errors_do_not_break_the_loop(self, follower, feed):
        def boom(phase, snapshot):
            raise RuntimeError("ui gone")
        follower.add_listener(boom)
        assert follower.apply(feed(Phase.TURN_COUNTDOWN, _turn()))
        assert follower.phase == Phase.TURN_COUNTDOWN
