"""Tests for codex_bridge.core.items and codex_bridge.core.clone."""

from __future__ import annotations

import pytest

from codex_bridge.core.clone import clone_input_items, deep_clone
from codex_bridge.core.items import (
    count_conversation_turns,
    extract_text,
    extract_text_from_item,
    get_last_user_message,
    get_role,
    input_text_message,
    is_system_message,
    latest_user_text,
    matches_command,
    normalize_command,
)

from conftest import message


class TestExtractText:
    def test_string_content(self):
        assert extract_text("hello") == "hello"

    def test_parts_joined_by_newline(self):
        content = [
            {"type": "input_text", "text": "one"},
            {"type": "output_text", "text": "two"},
            {"type": "text", "text": "three"},
        ]
        assert extract_text(content) == "one\ntwo\nthree"

    def test_non_text_parts_skipped(self):
        content = [
            {"type": "input_image", "image_url": "x"},
            {"type": "input_text", "text": ""},
            "stray",
            {"type": "input_text", "text": "kept"},
        ]
        assert extract_text(content) == "kept"

    @pytest.mark.parametrize("content", [None, 5, {"text": "x"}])
    def test_malformed_content(self, content):
        assert extract_text(content) == ""

    def test_item_without_content(self):
        assert extract_text_from_item({"role": "user"}) == ""
        assert extract_text_from_item("not an item") == ""


class TestRoles:
    def test_get_role(self):
        assert get_role(message("user", "x")) == "user"
        assert get_role({"role": 3}) == ""
        assert get_role(None) == ""

    def test_system_roles(self):
        assert is_system_message(message("developer", "x"))
        assert is_system_message(message("system", "x"))
        assert not is_system_message(message("user", "x"))

    def test_count_turns(self):
        items = [
            message("developer", "sys"),
            message("user", "a"),
            {"type": "function_call", "name": "f"},
            message("assistant", "b"),
        ]
        assert count_conversation_turns(items) == 2

    def test_last_user_message(self):
        items = [message("user", "first"), message("assistant", "x"), message("user", "second")]
        assert extract_text_from_item(get_last_user_message(items)) == "second"
        assert get_last_user_message([message("assistant", "x")]) is None

    def test_latest_user_text_skips_empty(self):
        items = [message("user", "real"), {"type": "message", "role": "user", "content": []}]
        assert latest_user_text(items) == "real"
        assert latest_user_text("nope") == ""


class TestCommands:
    def test_normalize(self):
        assert normalize_command("  /Compact  ") == "compact"
        assert normalize_command("?codex-metrics") == "codex-metrics"
        assert normalize_command("plain") == "plain"

    def test_matches_with_arguments(self):
        assert matches_command("compact now please", ("compact",))
        assert not matches_command("compaction", ("compact",))


class TestInputTextMessage:
    def test_shape(self):
        item = input_text_message("developer", "hi", metadata={"a": 1})
        assert item == {
            "type": "message",
            "role": "developer",
            "content": [{"type": "input_text", "text": "hi"}],
            "metadata": {"a": 1},
        }


class TestDeepClone:
    def test_independent_copy(self):
        original = {"a": [1, {"b": 2}], "c": (3, 4)}
        cloned = deep_clone(original)
        cloned["a"][1]["b"] = 99
        assert original["a"][1]["b"] == 2
        assert cloned["c"] == [3, 4]

    def test_shared_subtrees_are_not_cycles(self):
        shared = {"x": 1}
        cloned = deep_clone({"a": shared, "b": shared})
        assert cloned == {"a": {"x": 1}, "b": {"x": 1}}

    def test_cycle_rejected(self):
        cyclic: dict = {}
        cyclic["self"] = cyclic
        with pytest.raises(ValueError):
            deep_clone(cyclic)

    def test_clone_input_items(self):
        items = [message("user", "x")]
        cloned = clone_input_items(items)
        assert cloned == items
        assert cloned[0] is not items[0]
        assert clone_input_items(None) == []
        assert clone_input_items([]) == []
