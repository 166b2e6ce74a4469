"""Input filtering for stateless operation and instruction injection.

Pure functions over lists of wire items.  Items coming from the client are
never mutated; every change produces a new dict.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from ..types import SessionContext
from .fingerprint import has_prompt_in_conversation
from .items import extract_text_from_item, get_role, input_text_message, is_system_message
from .prompts import (
    BRIDGE_PROMPT,
    CLIENT_PROMPT_PREFIX_CHARS,
    CLIENT_PROMPT_SIGNATURE,
    TOOL_REMAP_MESSAGE,
)

logger = logging.getLogger(__name__)

# Item ids that point at a stored response rather than carrying content.
_STORED_REFERENCE_ID_RE = re.compile(r"^resp_")

_ENV_HEADER_RE = re.compile(
    r"Here is some useful information about the environment you are running in:\s*",
    re.IGNORECASE,
)
_ENV_BLOCK_RES = (
    re.compile(r"<env>.*?</env>", re.DOTALL),
    re.compile(r"<files>.*?</files>", re.DOTALL),
)


# ---------------------------------------------------------------------------
# Stateless filtering
# ---------------------------------------------------------------------------

def is_stored_reference(item: Any) -> bool:
    """True for items that only make sense against server-stored state."""
    if not isinstance(item, dict):
        return False
    if item.get("type") == "item_reference":
        return True
    item_id = item.get("id")
    return isinstance(item_id, str) and bool(_STORED_REFERENCE_ID_RE.match(item_id))


def filter_input(
    items: Any,
    *,
    preserve_ids: bool = False,
    preserve_metadata: bool = False,
) -> Any:
    """Drop stored-state references and strip ``id``/``metadata`` fields.

    Non-list input is returned unchanged.  Relative order of the kept items
    is preserved.
    """
    if not isinstance(items, list):
        return items

    filtered: list[Any] = []
    for item in items:
        if is_stored_reference(item):
            continue
        if not isinstance(item, dict):
            filtered.append(item)
            continue
        drop = set()
        if not preserve_ids and "id" in item:
            drop.add("id")
        if not preserve_ids and not preserve_metadata and "metadata" in item:
            drop.add("metadata")
        filtered.append({k: v for k, v in item.items() if k not in drop} if drop else item)
    return filtered


# ---------------------------------------------------------------------------
# Client SDK prompt removal (bridge mode)
# ---------------------------------------------------------------------------

def is_client_system_prompt(item: Any, client_prompt: str | None = None) -> bool:
    """Recognize the client SDK's own system prompt by text or signature."""
    if not is_system_message(item):
        return False
    text = extract_text_from_item(item)
    if not text:
        return False
    if client_prompt:
        stripped = text.strip()
        cached = client_prompt.strip()
        if stripped == cached:
            return True
        if stripped[:CLIENT_PROMPT_PREFIX_CHARS] == cached[:CLIENT_PROMPT_PREFIX_CHARS]:
            return True
    return text.startswith(CLIENT_PROMPT_SIGNATURE)


def strip_environment_blocks(text: str) -> tuple[str, list[str]]:
    """Remove ``<env>``/``<files>`` blocks and their header.

    Returns ``(sanitized_text, removed_blocks)``; the header alone counts as
    a removal with no block text.
    """
    removed: list[str] = []
    sanitized, header_count = _ENV_HEADER_RE.subn("", text)
    if header_count:
        removed.append("")
    for pattern in _ENV_BLOCK_RES:
        matches = pattern.findall(sanitized)
        if matches:
            removed.extend(matches)
            sanitized = pattern.sub("", sanitized)
    return sanitized.strip(), removed


def filter_client_system_prompts(items: Any, client_prompt: str | None = None) -> Any:
    """Drop the client SDK system prompt and environment blocks from system items."""
    if not isinstance(items, list):
        return items

    filtered: list[Any] = []
    for item in items:
        if get_role(item) == "user" or not isinstance(item, dict):
            filtered.append(item)
            continue
        if is_client_system_prompt(item, client_prompt):
            logger.debug("Removed client system prompt from input")
            continue
        text = extract_text_from_item(item)
        if text:
            sanitized, removed = strip_environment_blocks(text)
            if removed and not sanitized:
                continue
            if removed:
                item = dict(item)
                item["content"] = sanitized
        filtered.append(item)
    return filtered


# ---------------------------------------------------------------------------
# Instruction injection
# ---------------------------------------------------------------------------

def add_bridge_message(
    items: Any,
    has_tools: bool,
    context: SessionContext | None = None,
    bridge_prompt: str = BRIDGE_PROMPT,
) -> Any:
    """Prepend the bridge prompt once per conversation.

    A session that already received the bridge keeps getting it even when a
    later request carries no tools, so the conversation prefix stays stable.
    """
    if not isinstance(items, list):
        return items

    already_present = has_prompt_in_conversation(items, bridge_prompt)
    session_injected = bool(context and context.memory.bridge_injected)

    if already_present:
        logger.debug("Bridge prompt already present; skipping injection")
        return items

    if not session_injected and not has_tools:
        logger.debug("Skipping bridge prompt: no tools in request")
        return items

    if context is not None:
        context.memory.bridge_injected = True
    return [input_text_message("developer", bridge_prompt), *items]


def add_tool_remap_message(items: Any, has_tools: bool) -> Any:
    """Prepend the tool-name remapping notice (non-bridge mode)."""
    if not has_tools or not isinstance(items, list):
        return items
    if has_prompt_in_conversation(items, TOOL_REMAP_MESSAGE):
        return items
    return [input_text_message("developer", TOOL_REMAP_MESSAGE), *items]


def inject_instruction_message(
    items: Any,
    *,
    codex_mode: bool,
    has_tools: bool,
    context: SessionContext | None = None,
    bridge_prompt: str = BRIDGE_PROMPT,
) -> Any:
    if codex_mode:
        return add_bridge_message(items, has_tools, context, bridge_prompt)
    return add_tool_remap_message(items, has_tools)
