"""Tests for services/state_store.py — the in-memory store and dotted-path merges."""
import asyncio

import pytest

from config import settings
from models.game import Phase
from services import state_store
from services.state_store import InMemoryStateStore, get_state_store, merge_fields

SID = "room-1"


class TestMergeFields:

    def test_top_level_keys_replace(self):
        doc = {"phase": "voting", "time_remaining": 3}
        assert merge_fields(doc, {"time_remaining": 2}) == {"phase": "voting", "time_remaining": 2}

    def test_dotted_keys_merge_into_nested_maps(self):
        doc = {"turn_data": {"guesses": {"b": {"text": "x"}}, "failed_attempts": 1}}
        merge_fields(doc, {"turn_data.guesses.c": {"text": "y"}})
        assert doc["turn_data"]["guesses"] == {"b": {"text": "x"}, "c": {"text": "y"}}
        assert doc["turn_data"]["failed_attempts"] == 1

    def test_dotted_key_creates_missing_parents(self):
        doc = {"turn_data": None}
        merge_fields(doc, {"turn_data.voting_results.is_completed": True})
        assert doc == {"turn_data": {"voting_results": {"is_completed": True}}}

    def test_values_are_copied(self):
        value = {"a": 1}
        doc = merge_fields({}, {"x": value})
        value["a"] = 2
        assert doc["x"] == {"a": 1}


class TestInMemoryStateStore:

    async def test_read_missing_is_none(self, store):
        assert await store.read(SID) is None

    async def test_write_stamps_actor_and_time(self, store):
        stamp = await store.write(SID, {"phase": Phase.VOTING.value}, "host")
        state = await store.read(SID)
        assert state.session_id == SID
        assert state.phase == Phase.VOTING
        assert state.updated_by == "host"
        assert state.updated_at == stamp

    async def test_updated_at_strictly_increases(self, store):
        stamps = [await store.write(SID, {"time_remaining": n}, "host") for n in range(20)]
        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

    async def test_concurrent_per_key_writes_all_land(self, store):
        await store.write(SID, {"phase": Phase.TURN_COUNTDOWN.value}, "host")
        await asyncio.gather(*(
            store.write(SID, {f"scratch.challenges.{pid}": {"player_id": pid}}, pid)
            for pid in ("b", "c", "d", "e")
        ))
        doc = store._docs[SID]
        assert sorted(doc["scratch"]["challenges"]) == ["b", "c", "d", "e"]

    async def test_reads_do_not_share_state(self, store):
        await store.write(SID, {"player_order": ["a", "b"]}, "host")
        first = await store.read(SID)
        first.player_order.append("c")
        assert (await store.read(SID)).player_order == ["a", "b"]

    async def test_delete(self, store):
        await store.write(SID, {"time_remaining": 1}, "host")
        await store.delete(SID)
        assert await store.read(SID) is None


class TestFactory:

    def test_memory_backend_is_a_singleton(self, monkeypatch):
        monkeypatch.setattr(settings, "state_store_backend", "memory")
        assert isinstance(get_state_store(), InMemoryStateStore)
        assert get_state_store() is get_state_store()

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "state_store_backend", "redis")
        with pytest.raises(ValueError):
            get_state_store()

    def test_http_backend(self, monkeypatch):
        from services.http_store import HttpStateStore
        monkeypatch.setattr(settings, "state_store_backend", "http")
        assert isinstance(get_state_store(), HttpStateStore)
        state_store.reset_state_store()
