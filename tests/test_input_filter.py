"""Tests for codex_bridge.core.input_filter."""

from __future__ import annotations

from codex_bridge.core.input_filter import (
    add_bridge_message,
    add_tool_remap_message,
    filter_client_system_prompts,
    filter_input,
    inject_instruction_message,
    is_client_system_prompt,
    is_stored_reference,
    strip_environment_blocks,
)
from codex_bridge.core.items import extract_text_from_item
from codex_bridge.core.prompts import BRIDGE_PROMPT, CLIENT_PROMPT_SIGNATURE, TOOL_REMAP_MESSAGE
from codex_bridge.core.session import SessionManager

from conftest import message


class TestFilterInput:
    def test_drops_stored_references_preserving_order(self):
        items = [
            message("user", "one", id="msg_1"),
            {"type": "item_reference", "id": "msg_2"},
            message("assistant", "two", id="resp_abc"),
            {"type": "function_call", "call_id": "c1", "id": "fc_3"},
            message("user", "three"),
        ]
        result = filter_input(items)
        assert [extract_text_from_item(i) or i.get("type") for i in result] == [
            "one", "function_call", "three",
        ]
        assert all("id" not in item for item in result)

    def test_preserve_ids(self):
        items = [message("user", "x", id="msg_1", metadata={"k": 1}), {"type": "item_reference", "id": "r"}]
        result = filter_input(items, preserve_ids=True)
        assert result == [items[0]]

    def test_metadata_stripped_unless_preserved(self):
        items = [message("user", "x", metadata={"k": 1})]
        assert "metadata" not in filter_input(items)[0]
        assert filter_input(items, preserve_metadata=True)[0]["metadata"] == {"k": 1}

    def test_input_not_mutated(self):
        item = message("user", "x", id="msg_1")
        filter_input([item])
        assert item["id"] == "msg_1"

    def test_non_list_returned_unchanged(self):
        assert filter_input("text") == "text"
        assert filter_input(None) is None

    def test_is_stored_reference(self):
        assert is_stored_reference({"type": "item_reference", "id": "x"})
        assert is_stored_reference({"id": "resp_1"})
        assert not is_stored_reference({"id": "msg_1"})
        assert not is_stored_reference("resp_1")


class TestClientPrompt:
    def test_signature_match(self):
        item = message("system", f"{CLIENT_PROMPT_SIGNATURE} a terminal.")
        assert is_client_system_prompt(item)

    def test_exact_and_prefix_match(self):
        prompt = "Custom client prompt " * 20
        assert is_client_system_prompt(message("developer", prompt), prompt)
        assert is_client_system_prompt(message("developer", prompt[:200] + " changed tail"), prompt)
        assert not is_client_system_prompt(message("developer", "something else"), prompt)

    def test_user_items_never_match(self):
        assert not is_client_system_prompt(message("user", f"{CLIENT_PROMPT_SIGNATURE} x"))

    def test_filter_removes_prompt_and_env_blocks(self):
        items = [
            message("system", f"{CLIENT_PROMPT_SIGNATURE} the harness."),
            message("system", "Keep this.\n<env>\ncwd: /x\n</env>"),
            message("system", "<files>\na.py\n</files>"),
            message("user", "<env>user text stays</env>"),
        ]
        result = filter_client_system_prompts(items)
        assert len(result) == 2
        assert result[0]["content"] == "Keep this."
        assert result[1] is items[3]

    def test_strip_environment_blocks(self):
        text = (
            "Here is some useful information about the environment you are running in:\n"
            "<env>os: linux</env>\nRest"
        )
        sanitized, removed = strip_environment_blocks(text)
        assert sanitized == "Rest"
        assert "<env>os: linux</env>" in removed


class TestBridgeInjection:
    def test_injected_with_tools(self):
        result = add_bridge_message([message("user", "hi")], has_tools=True)
        assert result[0]["role"] == "developer"
        assert extract_text_from_item(result[0]) == BRIDGE_PROMPT
        assert len(result) == 2

    def test_skipped_without_tools(self):
        items = [message("user", "hi")]
        assert add_bridge_message(items, has_tools=False) is items

    def test_not_duplicated(self):
        items = [message("developer", BRIDGE_PROMPT), message("user", "hi")]
        assert add_bridge_message(items, has_tools=True) == items

    def test_session_continuity_without_tools(self):
        manager = SessionManager()
        context = manager.get_context({"metadata": {"conversation_id": "c1"}})
        add_bridge_message([message("user", "hi")], has_tools=True, context=context)
        assert context.memory.bridge_injected

        result = add_bridge_message([message("user", "next")], has_tools=False, context=context)
        assert extract_text_from_item(result[0]) == BRIDGE_PROMPT

    def test_tool_remap_message(self):
        result = add_tool_remap_message([message("user", "hi")], has_tools=True)
        assert extract_text_from_item(result[0]) == TOOL_REMAP_MESSAGE
        again = add_tool_remap_message(result, has_tools=True)
        assert len(again) == 2

    def test_inject_dispatches_on_mode(self):
        items = [message("user", "hi")]
        bridge = inject_instruction_message(items, codex_mode=True, has_tools=True)
        remap = inject_instruction_message(items, codex_mode=False, has_tools=True)
        assert extract_text_from_item(bridge[0]) == BRIDGE_PROMPT
        assert extract_text_from_item(remap[0]) == TOOL_REMAP_MESSAGE
