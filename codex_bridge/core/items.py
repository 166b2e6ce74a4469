"""Helpers for reading Responses API input items.

Content can be:
- A plain string (simple user input)
- A list of content parts with ``type: "input_text"``, ``"output_text"``
  or ``"text"``

Malformed items (not a dict, no role, ``None`` or non-text content) are
never rejected here; they simply yield no text.
"""

from __future__ import annotations

from typing import Any

from ..types import InputItem

_TEXT_PART_TYPES = frozenset({"input_text", "output_text", "text"})
SYSTEM_ROLES = frozenset({"system", "developer"})
CONVERSATION_ROLES = frozenset({"user", "assistant"})


def extract_text(content: Any) -> str:
    """Extract plain text from a content union; parts are joined by newlines."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part["text"]
            for part in content
            if isinstance(part, dict)
            and part.get("type") in _TEXT_PART_TYPES
            and isinstance(part.get("text"), str)
            and part["text"]
        ]
        return "\n".join(texts)
    return ""


def extract_text_from_item(item: Any) -> str:
    if not isinstance(item, dict):
        return ""
    return extract_text(item.get("content"))


def get_role(item: Any) -> str:
    if not isinstance(item, dict):
        return ""
    role = item.get("role")
    return role if isinstance(role, str) else ""


def is_system_message(item: Any) -> bool:
    return get_role(item) in SYSTEM_ROLES


def is_user_message(item: Any) -> bool:
    return get_role(item) == "user"


def count_conversation_turns(items: list[InputItem]) -> int:
    """Number of user + assistant items."""
    return sum(1 for item in items if get_role(item) in CONVERSATION_ROLES)


def get_last_user_message(items: list[InputItem]) -> InputItem | None:
    for item in reversed(items):
        if is_user_message(item):
            return item
    return None


def latest_user_text(items: Any) -> str:
    """Text of the most recent user item that has any text, or ``""``."""
    if not isinstance(items, list):
        return ""
    for item in reversed(items):
        if not is_user_message(item):
            continue
        text = extract_text_from_item(item)
        if text:
            return text
    return ""


def input_text_message(role: str, text: str, **extra: Any) -> InputItem:
    """Build a ``message`` item carrying a single ``input_text`` part."""
    item: InputItem = {
        "type": "message",
        "role": role,
        "content": [{"type": "input_text", "text": text}],
    }
    item.update(extra)
    return item


def normalize_command(text: str) -> str:
    """Lowercase, trim, and drop a leading ``/`` or ``?`` command prefix."""
    trimmed = text.strip().lower()
    if trimmed.startswith(("/", "?")):
        return trimmed[1:].lstrip()
    return trimmed


def matches_command(normalized: str, triggers: tuple[str, ...] | list[str]) -> bool:
    return any(
        normalized == trigger or normalized.startswith(f"{trigger} ")
        for trigger in triggers
    )
