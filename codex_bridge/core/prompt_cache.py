"""Guarantee every outgoing body carries a ``prompt_cache_key``.

Key sources, in priority order:

1. an existing ``prompt_cache_key`` / ``promptCacheKey`` on the body
2. a conversation identifier in ``metadata`` (or the body root), with an
   optional ``-fork-<id>`` suffix when a fork/branch identifier is present
3. a deterministic fallback derived from the model, metadata and the
   first few input items
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from typing import Any

from ..types import PromptCacheKeyResult, RequestBody
from .fingerprint import stable_dumps

logger = logging.getLogger(__name__)

CONVERSATION_ID_KEYS = (
    "conversation_id",
    "conversationId",
    "thread_id",
    "threadId",
    "session_id",
    "sessionId",
    "chat_id",
    "chatId",
)

FORK_ID_KEYS = (
    "forkId",
    "fork_id",
    "branchId",
    "branch_id",
    "parentConversationId",
    "parent_conversation_id",
)

CACHE_KEY_PREFIX = "cache_"
FALLBACK_HASH_CHARS = 12
FALLBACK_INPUT_ITEMS = 3

_WHITESPACE_RE = re.compile(r"\s+")


def _clean_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_cache_key_base(base: str) -> str:
    trimmed = base.strip()
    if not trimmed:
        return f"{CACHE_KEY_PREFIX}{uuid.uuid4()}"
    sanitized = _WHITESPACE_RE.sub("-", trimmed)
    return sanitized if sanitized.startswith(CACHE_KEY_PREFIX) else f"{CACHE_KEY_PREFIX}{sanitized}"


def _lookup(body: RequestBody, keys: tuple[str, ...]) -> tuple[str | None, str | None, list[str], list[str]]:
    """Find the first usable string among *keys* in metadata or the body root.

    Returns ``(value, source_key, hint_keys, unusable_keys)``.
    """
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    hints: list[str] = []
    unusable: list[str] = []
    for key in keys:
        raw = metadata.get(key)
        if raw is None:
            raw = body.get(key)
        if raw is not None:
            hints.append(key)
        value = _clean_string(raw)
        if value:
            return value, key, hints, unusable
        if raw is not None:
            unusable.append(key)
    return None, None, hints, unusable


def compute_fallback_hash(body: RequestBody) -> str:
    input_items = body.get("input")
    seed = stable_dumps({
        "model": body.get("model") if isinstance(body.get("model"), str) else None,
        "metadata": body.get("metadata"),
        "input": input_items[:FALLBACK_INPUT_ITEMS] if isinstance(input_items, list) else None,
    })
    return hashlib.sha1(seed.encode("utf-8")).hexdigest()[:FALLBACK_HASH_CHARS]


def ensure_prompt_cache_key(body: RequestBody) -> PromptCacheKeyResult:
    """Set ``body["prompt_cache_key"]`` in place and report where it came from."""
    existing = _clean_string(body.get("prompt_cache_key")) or _clean_string(body.get("promptCacheKey"))
    if existing:
        body["prompt_cache_key"] = existing
        return PromptCacheKeyResult(key=existing, source="existing")

    base, source_key, hints, unusable = _lookup(body, CONVERSATION_ID_KEYS)
    fork_id, fork_key, fork_hints, fork_unusable = _lookup(body, FORK_ID_KEYS)

    if base:
        key = normalize_cache_key_base(base)
        if fork_id:
            key = f"{key}-fork-{_WHITESPACE_RE.sub('-', fork_id)}"
        body["prompt_cache_key"] = key
        return PromptCacheKeyResult(
            key=key,
            source="metadata",
            source_key=source_key,
            fork_source_key=fork_key,
            hint_keys=hints,
            fork_hint_keys=fork_hints,
        )

    fallback = compute_fallback_hash(body)
    key = f"{CACHE_KEY_PREFIX}{fallback}"
    body["prompt_cache_key"] = key
    return PromptCacheKeyResult(
        key=key,
        source="generated",
        hint_keys=hints,
        unusable_keys=unusable,
        fork_hint_keys=fork_hints,
        fork_unusable_keys=fork_unusable,
        fallback_hash=fallback,
    )


def log_cache_key_decision(result: PromptCacheKeyResult, is_new_session: bool) -> None:
    if result.source == "existing":
        return
    if result.source == "metadata":
        logger.debug(
            "Prompt cache key derived from metadata: key=%s source=%s fork=%s",
            result.key, result.source_key, result.fork_source_key,
        )
        return

    has_hints = bool(result.hint_keys or result.fork_hint_keys)
    message = (
        "Prompt cache key hints detected but unusable; generated fallback cache key"
        if has_hints
        else "Prompt cache key missing; generated fallback cache key"
    )
    level = logging.INFO if not has_hints and is_new_session else logging.WARNING
    logger.log(
        level,
        "%s: key=%s hints=%s unusable=%s fork_hints=%s",
        message, result.key, result.hint_keys, result.unusable_keys, result.fork_hint_keys,
    )
