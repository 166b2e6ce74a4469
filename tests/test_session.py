"""Tests for codex_bridge.core.session."""

from __future__ import annotations

import json

from starlette.responses import JSONResponse, Response

from codex_bridge.core.fingerprint import compute_input_hash
from codex_bridge.core.session import (
    SessionManager,
    extract_conversation_id,
    is_response_payload,
    record_session_response,
    shares_prefix,
)

from conftest import message


def _body(conversation_id: str, *items) -> dict:
    return {"metadata": {"conversation_id": conversation_id}, "input": list(items)}


class TestSessionLookup:
    def test_conversation_id_sources(self):
        assert extract_conversation_id({"metadata": {"threadId": "t"}}) == "t"
        assert extract_conversation_id({"chat_id": "c"}) == "c"
        assert extract_conversation_id({"metadata": {"conversation_id": ""}}) is None

    def test_get_context_by_conversation_id(self, session_manager):
        context = session_manager.get_context(_body("c1"))
        assert context.session_id == "c1"
        assert context.is_new
        assert "c1" in session_manager

        again = session_manager.get_context(_body("c1"))
        assert not again.is_new
        assert again.memory is context.memory

    def test_get_context_by_host_cache_key(self, session_manager):
        context = session_manager.get_context({"prompt_cache_key": "host"})
        assert context.memory.prompt_cache_key == "host"

    def test_no_identifier(self, session_manager):
        assert session_manager.get_context({"input": []}) is None
        assert session_manager.get_context("not a body") is None


class TestCapacityAndTtl:
    def test_capacity_evicts_least_recently_used(self, session_manager):
        for key in ("a", "b", "c"):
            session_manager.get(key)
        session_manager.touch("a")
        session_manager.get("d")
        assert len(session_manager) == 3
        assert "b" not in session_manager
        assert session_manager.keys() == ["c", "a", "d"]

    def test_n_plus_one_keeps_max_entries(self, clock):
        manager = SessionManager(max_entries=5, clock=clock)
        for i in range(6):
            manager.get(f"s{i}")
        assert len(manager) == 5
        assert "s0" not in manager

    def test_ttl_expiry(self, session_manager, clock):
        session_manager.get("old")
        clock.advance(30)
        session_manager.get("fresh")
        clock.advance(31)
        assert session_manager.evict_expired() == 1
        assert "old" not in session_manager
        assert "fresh" in session_manager

    def test_expired_entry_recreated_on_access(self, session_manager, clock):
        first = session_manager.get("x")
        first.bridge_injected = True
        clock.advance(61)
        second = session_manager.get("x")
        assert second is not first
        assert not second.bridge_injected


class TestDisabled:
    def test_everything_is_a_no_op(self):
        manager = SessionManager(enabled=False)
        assert manager.get_context(_body("c1")) is None
        memory = manager.get("c1")
        assert memory.id == "c1"
        assert len(manager) == 0
        assert manager.reset_session("c1") is None
        assert manager.evict_expired() == 0

        body = _body("c1", message("user", "hi"))
        assert manager.apply_request(body, None) is None
        assert "prompt_cache_key" not in body


class TestApplyRequest:
    def test_attaches_cache_key_and_tracks_prefix(self, session_manager):
        body = _body("c1", message("user", "one"))
        context = session_manager.get_context(body)
        result = session_manager.apply_request(body, context)
        assert result is context
        assert body["prompt_cache_key"] == "c1"
        assert context.memory.entries == body["input"]
        assert context.memory.prefix_hash == compute_input_hash(body["input"])

    def test_identical_resend_keeps_stored_state(self, session_manager, clock):
        first = _body("c1", message("user", "one"), message("assistant", "ok"))
        context = session_manager.get_context(first)
        session_manager.apply_request(first, context)
        stored = context.memory.entries

        clock.advance(10)
        again = _body("c1", message("user", "one"), message("assistant", "ok"))
        resent = session_manager.get_context(again)
        result = session_manager.apply_request(again, resent)

        assert result is resent
        assert again["prompt_cache_key"] == "c1"
        assert resent.memory.entries is stored
        assert resent.memory.last_access == clock()

    def test_extending_history_keeps_key(self, session_manager):
        first = _body("c1", message("user", "one"))
        session_manager.apply_request(first, session_manager.get_context(first))

        second = _body("c1", message("user", "one"), message("assistant", "ok"), message("user", "two"))
        context = session_manager.get_context(second)
        session_manager.apply_request(second, context)
        assert second["prompt_cache_key"] == "c1"

    def test_prefix_mismatch_regenerates_key(self, session_manager):
        first = _body("c1", message("user", "one"), message("assistant", "ok"))
        context = session_manager.get_context(first)
        context.memory.bridge_injected = True
        session_manager.apply_request(first, context)

        edited = _body("c1", message("user", "edited"))
        refreshed = session_manager.apply_request(edited, session_manager.get_context(edited))
        assert refreshed is not context
        assert refreshed.is_new
        assert edited["prompt_cache_key"].startswith("cache_")
        assert edited["prompt_cache_key"] != "c1"
        assert refreshed.memory.bridge_injected
        assert refreshed.memory.entries == edited["input"]

    def test_force_store(self, clock):
        manager = SessionManager(force_store=True, clock=clock)
        body = _body("c1", message("user", "x"))
        manager.apply_request(body, manager.get_context(body))
        assert body["store"] is True

    def test_shares_prefix(self):
        a = message("user", "a")
        b = message("assistant", "b")
        assert shares_prefix([], [a])
        assert shares_prefix([a], [a, b])
        assert not shares_prefix([a, b], [a])
        assert not shares_prefix([b], [a])


class TestCompactedHistory:
    def _compacted(self, manager, client_item_count):
        body = _body("c1")
        context = manager.get_context(body)
        manager.apply_compaction_summary(
            context, [message("developer", "rules")], "SUMMARY", client_item_count,
        )
        return context

    def test_summary_replaces_history(self, session_manager):
        context = self._compacted(session_manager, 4)
        memory = context.memory
        assert memory.compaction_summary == {"type": "message", "role": "user", "content": "SUMMARY"}
        assert memory.compacted_item_count == 4
        assert memory.entries == []

    def test_tail_after_compaction_point(self, session_manager):
        self._compacted(session_manager, 4)
        items = [
            message("developer", "rules"),
            message("user", "old"),
            message("assistant", "old reply"),
            message("user", "/compact"),
            message("assistant", "summary shown"),
            message("user", "new question"),
            message("assistant", "new answer"),
            message("user", "follow up"),
        ]
        body = _body("c1", *items)
        context = session_manager.get_context(body)
        assert session_manager.apply_compacted_history(body, context)
        assert body["input"][0] == message("developer", "rules")
        assert body["input"][1]["content"] == "SUMMARY"
        assert body["input"][2:] == items[5:]
        assert context.is_compaction_continuation

    def test_shorter_history_falls_back_to_latest_user(self, session_manager):
        self._compacted(session_manager, 10)
        items = [message("user", "a"), message("assistant", "b"), message("user", "c")]
        body = _body("c1", *items)
        session_manager.apply_compacted_history(body, session_manager.get_context(body))
        assert body["input"][2:] == [items[2]]

    def test_no_summary_is_a_no_op(self, session_manager):
        body = _body("c1", message("user", "x"))
        assert not session_manager.apply_compacted_history(body, session_manager.get_context(body))
        assert len(body["input"]) == 1

    def test_reset_preserves_summary(self, session_manager):
        self._compacted(session_manager, 2)
        refreshed = session_manager.reset_session("c1", force_random_key=True)
        assert refreshed.compaction_summary["content"] == "SUMMARY"
        assert refreshed.compacted_item_count == 2


class TestRecordResponse:
    def test_cached_tokens_from_details(self, session_manager):
        context = session_manager.get_context(_body("c1"))
        session_manager.record_response(context, {
            "usage": {"input_tokens": 10, "input_tokens_details": {"cached_tokens": 7}},
        })
        assert context.memory.last_cached_tokens == 7
        assert context.memory.usage["input_tokens"] == 10

    def test_last_write_wins(self, session_manager):
        context = session_manager.get_context(_body("c1"))
        session_manager.record_response(context, {"usage": {"cached_tokens": 1}})
        session_manager.record_response(context, {"usage": {"cached_tokens": 2}})
        assert context.memory.last_cached_tokens == 2

    def test_record_session_response_json_only(self, session_manager):
        context = session_manager.get_context(_body("c1"))
        record_session_response(
            session_manager, context, Response(content="data: x", media_type="text/event-stream"),
        )
        assert context.memory.last_cached_tokens is None

        record_session_response(
            session_manager, context, JSONResponse({"id": "r", "usage": {"cached_tokens": 5}}),
        )
        assert context.memory.last_cached_tokens == 5

    def test_is_response_payload(self):
        assert is_response_payload({"id": "r"})
        assert is_response_payload({"usage": {"cached_tokens": 3}})
        assert not is_response_payload({"usage": "bad"})
        assert not is_response_payload({"usage": {"cached_tokens": "3"}})
        assert not is_response_payload([])


class TestMetrics:
    def test_recent_sessions(self, session_manager):
        context = session_manager.get_context(_body("c1"))
        session_manager.record_response(context, {"usage": {"cached_tokens": 9}})
        metrics = session_manager.get_metrics()
        assert metrics["total_sessions"] == 1
        assert metrics["recent_sessions"][0]["last_cached_tokens"] == 9
        json.dumps(metrics)
