"""In-memory conversation state for a stateless backend.

One :class:`SessionManager` is built per process and passed to the request
pipeline explicitly.  Entries are kept in an ``OrderedDict`` ordered by
last access, so the least recently touched conversation is always first.
Expiry runs on access; there is no background timer.

Concurrent requests on the same conversation key are not serialized:
whichever response is recorded last wins.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable

from ..types import ConversationMemory, InputItem, RequestBody, SessionContext
from .clone import clone_input_items, deep_clone
from .compaction import extract_tail_after_summary
from .fingerprint import compute_input_hash, stable_dumps
from .items import extract_text_from_item, is_user_message
from .prompt_cache import CACHE_KEY_PREFIX, CONVERSATION_ID_KEYS

logger = logging.getLogger(__name__)

SESSION_IDLE_TTL_SECONDS = 30 * 60
SESSION_MAX_ENTRIES = 100


def _random_cache_key() -> str:
    return f"{CACHE_KEY_PREFIX}{uuid.uuid4()}"


def _sanitize_cache_key(candidate: str) -> str:
    trimmed = candidate.strip()
    return trimmed or _random_cache_key()


def extract_conversation_id(body: RequestBody) -> str | None:
    """First non-empty conversation identifier in ``metadata`` or the body root."""
    metadata = body.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    for key in CONVERSATION_ID_KEYS:
        for source in (metadata, body):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def shares_prefix(previous: list[InputItem], current: list[InputItem]) -> bool:
    """True when *current* starts with every item of *previous*."""
    if not previous:
        return True
    if len(current) < len(previous):
        return False
    return all(stable_dumps(a) == stable_dumps(b) for a, b in zip(previous, current))


class SessionManager:
    """Bounded, TTL-evicted map of conversation memory.

    When *enabled* is false every operation is a pass-through: nothing is
    stored and :meth:`get_context` always returns ``None``.
    """

    def __init__(
        self,
        enabled: bool = True,
        ttl_seconds: float = SESSION_IDLE_TTL_SECONDS,
        max_entries: int = SESSION_MAX_ENTRIES,
        force_store: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self.force_store = force_store
        self._clock = clock
        self._sessions: OrderedDict[str, ConversationMemory] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def keys(self) -> list[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Entry lifecycle
    # ------------------------------------------------------------------

    def _new_memory(self, key: str, prompt_cache_key: str | None = None) -> ConversationMemory:
        return ConversationMemory(
            id=key,
            prompt_cache_key=prompt_cache_key or _sanitize_cache_key(key),
            store=self.force_store,
            last_access=self._clock(),
        )

    def _admit(self, memory: ConversationMemory) -> None:
        while len(self._sessions) >= self.max_entries:
            victim, _ = self._sessions.popitem(last=False)
            logger.warning("Evicted session %s to enforce capacity (%d)", victim, self.max_entries)
        self._sessions[memory.id] = memory

    def get(self, key: str) -> ConversationMemory:
        """Return the memory for *key*, admitting a new entry when absent."""
        if not self.enabled:
            return self._new_memory(key)
        self.evict_expired()
        memory = self._sessions.get(key)
        if memory is not None:
            self.touch(key)
            return memory
        memory = self._new_memory(key)
        self._admit(memory)
        return memory

    def touch(self, key: str) -> None:
        memory = self._sessions.get(key)
        if memory is None:
            return
        memory.last_access = self._clock()
        self._sessions.move_to_end(key)

    def evict_expired(self, now: float | None = None) -> int:
        """Drop entries idle longer than the TTL; returns how many were removed."""
        if not self.enabled:
            return 0
        now = self._clock() if now is None else now
        expired = [
            key for key, memory in self._sessions.items()
            if now - memory.last_access > self.ttl_seconds
        ]
        for key in expired:
            del self._sessions[key]
            logger.debug("Evicted idle session %s", key)
        return len(expired)

    def reset_session(self, key: str, force_random_key: bool = False) -> ConversationMemory | None:
        """Start *key* over with an empty history.

        Conversation-level facts (bridge injection, compaction summary) survive
        the reset; only the cached prefix is discarded.
        """
        if not self.enabled:
            return None
        previous = self._sessions.pop(key, None)
        memory = self._new_memory(key, _random_cache_key() if force_random_key else None)
        if previous is not None:
            memory.bridge_injected = previous.bridge_injected
            memory.compaction_base_system = previous.compaction_base_system
            memory.compaction_summary = previous.compaction_summary
            memory.compacted_item_count = previous.compacted_item_count
        self._admit(memory)
        return memory

    # ------------------------------------------------------------------
    # Request/response hooks
    # ------------------------------------------------------------------

    def _context_for(self, key: str) -> SessionContext:
        is_new = key not in self._sessions
        memory = self.get(key)
        return SessionContext(session_id=key, memory=memory, is_new=is_new)

    def get_context(self, body: Any) -> SessionContext | None:
        """Resolve the conversation for *body* by conversation id or host cache key."""
        if not self.enabled or not isinstance(body, dict):
            return None
        self.evict_expired()

        conversation_id = extract_conversation_id(body)
        if conversation_id:
            return self._context_for(conversation_id)

        host_key = body.get("prompt_cache_key") or body.get("promptCacheKey")
        if isinstance(host_key, str) and host_key.strip():
            return self._context_for(host_key)
        return None

    def apply_request(self, body: RequestBody, context: SessionContext | None) -> SessionContext | None:
        """Attach the session cache key to *body* and track the input prefix.

        When the incoming input no longer extends the stored history the
        backend cache cannot be reused, so the session gets a fresh random
        key and a new context is returned.  An input whose content hash
        matches the stored one is an identical resend and leaves the session
        untouched apart from its access time.
        """
        if context is None or not context.enabled or not self.enabled:
            return context

        memory = context.memory
        body["prompt_cache_key"] = memory.prompt_cache_key
        if memory.store:
            body["store"] = True

        current = clone_input_items(body.get("input"))
        input_hash = compute_input_hash(current)

        if memory.entries and input_hash == memory.prefix_hash:
            logger.debug("Session %s resent an identical input (%s)", memory.id, input_hash)
            self.touch(memory.id)
            return context

        if memory.entries and not shares_prefix(memory.entries, current):
            logger.warning(
                "Prefix mismatch for session %s (%d stored, %d incoming); regenerating cache key",
                memory.id, len(memory.entries), len(current),
            )
            refreshed = self.reset_session(memory.id, force_random_key=True)
            if refreshed is None:
                return None
            body["prompt_cache_key"] = refreshed.prompt_cache_key
            if refreshed.store:
                body["store"] = True
            context = SessionContext(
                session_id=refreshed.id,
                memory=refreshed,
                enabled=True,
                preserve_ids=context.preserve_ids,
                is_new=True,
                is_compaction_continuation=context.is_compaction_continuation,
            )
            memory = refreshed
        elif not memory.entries:
            logger.debug(
                "Initialized session %s (key=%s, %d items)",
                memory.id, memory.prompt_cache_key, len(current),
            )

        memory.entries = current
        memory.prefix_hash = input_hash
        self.touch(memory.id)
        return context

    def apply_compacted_history(self, body: RequestBody, context: SessionContext | None) -> bool:
        """Replace the body input with the compacted history, if one exists.

        The new input is the preserved system items, the summary turn, and
        the client turns sent since the compaction, starting at the first
        user turn after it.  When the client history is shorter than at
        compaction time the tail starts at the latest user turn instead.
        Returns whether the body was rewritten.
        """
        if context is None or not self.enabled:
            return False
        memory = context.memory
        if memory.compaction_summary is None:
            return False
        items = body.get("input")
        if not isinstance(items, list):
            return False

        start = memory.compacted_item_count if 0 < memory.compacted_item_count < len(items) else None
        tail: list[InputItem] = []
        if start is not None:
            for index in range(start, len(items)):
                if is_user_message(items[index]) and extract_text_from_item(items[index]):
                    tail = clone_input_items(items[index:])
                    break
        if not tail:
            tail = extract_tail_after_summary(items)

        body["input"] = [
            *clone_input_items(memory.compaction_base_system),
            deep_clone(memory.compaction_summary),
            *tail,
        ]
        context.is_compaction_continuation = True
        logger.debug(
            "Applied compacted history for session %s (%d tail items)", memory.id, len(tail),
        )
        return True

    def record_response(self, context: SessionContext | None, payload: Any) -> None:
        """Store usage from a completed response.  Last write wins."""
        if context is None or not context.enabled or not self.enabled:
            return
        if not isinstance(payload, dict):
            return
        memory = context.memory
        usage = payload.get("usage")
        if isinstance(usage, dict):
            memory.usage = dict(usage)
            cached = usage.get("cached_tokens")
            if cached is None and isinstance(usage.get("input_tokens_details"), dict):
                cached = usage["input_tokens_details"].get("cached_tokens")
            if isinstance(cached, int) and not isinstance(cached, bool):
                memory.last_cached_tokens = cached
                logger.debug("Session %s response usage: cached_tokens=%d", memory.id, cached)
        self.touch(memory.id)

    def apply_compaction_summary(
        self,
        context: SessionContext | None,
        base_system: list[InputItem],
        summary: str,
        client_item_count: int = 0,
    ) -> None:
        """Replace the stored history with *base_system* plus one summary turn.

        *client_item_count* is the length of the client's input when the
        compaction was requested; later turns are read from that point on.
        """
        if context is None or not context.enabled or not self.enabled:
            return
        memory = context.memory
        summary_item: InputItem = {"type": "message", "role": "user", "content": summary}
        memory.compaction_base_system = clone_input_items(base_system)
        memory.compaction_summary = summary_item
        memory.compacted_item_count = max(0, client_item_count)
        # The next request starts a new prefix built from the compacted history
        memory.entries = []
        memory.prefix_hash = None
        self.touch(memory.id)
        logger.info(
            "Stored compaction summary for session %s (%d system items)",
            memory.id, len(base_system),
        )

    def get_metrics(self, limit: int = 5) -> dict[str, Any]:
        recent = sorted(self._sessions.values(), key=lambda m: m.last_access, reverse=True)
        return {
            "enabled": self.enabled,
            "total_sessions": len(self._sessions),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "recent_sessions": [
                {
                    "id": memory.id,
                    "prompt_cache_key": memory.prompt_cache_key,
                    "last_cached_tokens": memory.last_cached_tokens,
                    "entries": len(memory.entries),
                    "compacted": memory.compaction_summary is not None,
                    "idle_seconds": round(self._clock() - memory.last_access, 3),
                }
                for memory in recent[: max(0, limit)]
            ],
        }


# ---------------------------------------------------------------------------
# Response recording
# ---------------------------------------------------------------------------

def is_response_payload(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    usage = payload.get("usage")
    if usage is None:
        return "usage" not in payload
    if not isinstance(usage, dict):
        return False
    cached = usage.get("cached_tokens")
    return cached is None or (isinstance(cached, int) and not isinstance(cached, bool))


def record_session_response(
    manager: SessionManager | None,
    context: SessionContext | None,
    response: Any,
) -> None:
    """Forward a handled JSON response's payload to ``manager.record_response``.

    Streaming responses and non-JSON bodies are ignored.
    """
    if manager is None or context is None:
        return
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type:
        return
    body = getattr(response, "body", None)
    if not isinstance(body, (bytes, bytearray)):
        return
    try:
        payload = json.loads(body)
    except ValueError as exc:
        logger.debug("Could not parse response payload for session %s: %s", context.session_id, exc)
        return
    if is_response_payload(payload):
        manager.record_response(context, payload)
