"""Conversation compaction.

Two triggers replace a request's conversation with a summarization request:

- command: the latest user turn is ``/compact`` (or one of its aliases)
- auto: the approximate token count of the history is strictly greater
  than the configured limit and the history has enough turns

The summarization response is then folded back into the session so later
requests carry the summary instead of the full history.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from starlette.responses import Response

from ..token_counter import estimate_chars_tokens
from ..types import (
    CompactionDecision,
    CompactionOptions,
    CompactionSettings,
    ConversationSerialization,
    InputItem,
    RequestBody,
    SessionContext,
)
from .clone import clone_input_items, deep_clone
from .input_filter import filter_input
from .items import (
    count_conversation_turns,
    extract_text_from_item,
    get_role,
    is_system_message,
    is_user_message,
    matches_command,
    normalize_command,
)
from .prompts import (
    COMPACTION_PROMPT,
    EMPTY_CONVERSATION_PLACEHOLDER,
    NO_SUMMARY_PLACEHOLDER,
    SUMMARY_PREFIX,
)

logger = logging.getLogger(__name__)

COMMAND_TRIGGERS = ("codex-compact", "compact", "codexcompact", "compactnow")
DEFAULT_TRANSCRIPT_CHAR_LIMIT = 12_000
DEFAULT_AUTO_MIN_MESSAGES = 8

COMPACTION_METADATA = {"source": "codex-bridge-compaction", "codex_compaction": True}

AUTO_NOTE = (
    "Auto compaction triggered ({reason}). Review the summary below, "
    "then resend your last instruction.\n\n"
)
COMMAND_NOTE = (
    "Manual compaction complete. The summary below replaces the earlier "
    "conversation history.\n\n"
)

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}
_LABEL_ROLES = {label: role for role, label in _ROLE_LABELS.items()}


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

def detect_compaction_command(items: Any) -> str | None:
    """Return the normalized command if the latest user turn is a compaction trigger.

    Only the most recent user turn with text is inspected.
    """
    if not isinstance(items, list):
        return None
    for item in reversed(items):
        if not is_user_message(item):
            continue
        text = extract_text_from_item(item).strip()
        if not text:
            continue
        normalized = normalize_command(text)
        return normalized if matches_command(normalized, COMMAND_TRIGGERS) else None
    return None


def approximate_token_count(items: Any) -> int:
    if not isinstance(items, list):
        return 0
    return estimate_chars_tokens(sum(len(extract_text_from_item(item)) for item in items))


def should_auto_compact(approx_tokens: int, turn_count: int, settings: CompactionSettings) -> bool:
    limit = settings.auto_limit_tokens
    if not limit or limit <= 0:
        return False
    return approx_tokens > limit and turn_count >= settings.auto_min_messages


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

# A text line that reads like a turn header gets one extra leading backslash.
_HEADER_LIKE_RE = re.compile(r"^(\\*)## (User|Assistant)$")


def _escape_line(line: str) -> str:
    return f"\\{line}" if _HEADER_LIKE_RE.match(line) else line


def _unescape_line(line: str) -> str:
    match = _HEADER_LIKE_RE.match(line)
    return line[1:] if match and match.group(1) else line


def _format_entry(label: str, text: str) -> str:
    body = "\n".join(_escape_line(line) for line in text.split("\n"))
    return f"## {label}\n{body}\n"


def serialize_conversation(
    items: Any,
    limit: int = DEFAULT_TRANSCRIPT_CHAR_LIMIT,
) -> ConversationSerialization:
    """Render user/assistant turns as a markdown transcript.

    Turns are taken newest first until *limit* characters are reached (the
    turn that crosses the budget is kept), then put back in chronological
    order.
    """
    if not isinstance(items, list) or not items:
        return ConversationSerialization()

    conversation: list[tuple[str, str]] = []
    for item in items:
        label = _ROLE_LABELS.get(get_role(item).lower())
        text = extract_text_from_item(item)
        if label and text:
            conversation.append((label, text))

    selected: list[tuple[str, str]] = []
    total_chars = 0
    for label, text in reversed(conversation):
        selected.append((label, text))
        total_chars += len(_format_entry(label, text))
        if total_chars >= limit:
            break
    selected.reverse()

    return ConversationSerialization(
        transcript="\n".join(_format_entry(label, text) for label, text in selected),
        total_turns=len(conversation),
        dropped_turns=len(conversation) - len(selected),
    )


def parse_transcript(transcript: str) -> list[tuple[str, str]]:
    """Inverse of :func:`serialize_conversation`: ``(role, text)`` pairs.

    Turn text comes back exactly as serialized, including lines that look
    like turn headers and surrounding whitespace.
    """
    turns: list[tuple[str, str]] = []
    role: str | None = None
    lines: list[str] = []

    def flush() -> None:
        # Every entry ends with a newline, leaving one empty separator line
        body = lines[:-1] if lines and lines[-1] == "" else lines
        turns.append((role, "\n".join(body)))

    for line in transcript.split("\n"):
        if line.startswith("## ") and line[3:] in _LABEL_ROLES:
            if role is not None:
                flush()
            role = _LABEL_ROLES[line[3:]]
            lines = []
        elif role is not None:
            lines.append(_unescape_line(line))
    if role is not None:
        flush()
    return turns


# ---------------------------------------------------------------------------
# Building the compaction request
# ---------------------------------------------------------------------------

def build_compaction_prompt_items(transcript: str) -> list[InputItem]:
    return [
        {
            "type": "message",
            "role": "developer",
            "content": COMPACTION_PROMPT,
            "metadata": dict(COMPACTION_METADATA),
        },
        {
            "type": "message",
            "role": "user",
            "content": transcript or EMPTY_CONVERSATION_PLACEHOLDER,
            "metadata": dict(COMPACTION_METADATA),
        },
    ]


def collect_system_messages(items: Any) -> list[InputItem]:
    if not isinstance(items, list):
        return []
    return [deep_clone(item) for item in items if is_system_message(item)]


def create_summary_message(summary_text: str | None) -> InputItem:
    text = (summary_text or "").strip() or NO_SUMMARY_PLACEHOLDER
    if not text.startswith(SUMMARY_PREFIX):
        text = f"{SUMMARY_PREFIX}\n\n{text}"
    return {"type": "message", "role": "user", "content": text}


def extract_tail_after_summary(items: Any) -> list[InputItem]:
    """Clone of *items* from the latest user turn with text onward."""
    if not isinstance(items, list):
        return []
    for index in range(len(items) - 1, -1, -1):
        if is_user_message(items[index]) and extract_text_from_item(items[index]):
            return clone_input_items(items[index:])
    return []


def remove_last_user_message(items: Any) -> list[InputItem]:
    cloned = clone_input_items(items)
    for index in range(len(cloned) - 1, -1, -1):
        if is_user_message(cloned[index]):
            del cloned[index]
            break
    return cloned


def build_compaction_request(
    original_input: list[InputItem],
    command_text: str | None,
    settings: CompactionSettings,
) -> tuple[list[InputItem], CompactionDecision] | None:
    if not settings.enabled:
        return None

    # The command turn itself is not part of the conversation to summarize.
    source = remove_last_user_message(original_input) if command_text else clone_input_items(original_input)

    mode = None
    reason = None
    approx_tokens = None
    if command_text:
        mode = "command"
    elif settings.auto_limit_tokens and settings.auto_limit_tokens > 0:
        approx_tokens = approximate_token_count(source)
        if should_auto_compact(approx_tokens, count_conversation_turns(source), settings):
            mode = "auto"
            reason = f"~{approx_tokens} tokens > limit {settings.auto_limit_tokens}"

    if mode is None:
        return None

    serialization = serialize_conversation(source)
    decision = CompactionDecision(
        mode=mode,
        preserved_system=collect_system_messages(original_input),
        serialization=serialization,
        reason=reason,
        approx_tokens=approx_tokens,
    )
    return build_compaction_prompt_items(serialization.transcript), decision


def apply_compaction_if_needed(
    body: RequestBody,
    options: CompactionOptions | None = None,
) -> CompactionDecision | None:
    """Swap the body's input for a summarization request when triggered.

    Tool fields are removed from the body since the summarization call must
    produce plain text.
    """
    if options is None or not options.settings.enabled:
        return None

    built = build_compaction_request(options.original_input, options.command_text, options.settings)
    if built is None:
        return None

    items, decision = built
    decision.client_item_count = (
        options.client_item_count
        if options.client_item_count is not None
        else len(options.original_input)
    )
    body["input"] = filter_input(items, preserve_ids=options.preserve_ids)
    for key in ("tools", "tool_choice", "parallel_tool_calls"):
        body.pop(key, None)

    logger.info(
        "Compaction triggered (%s%s): %d turns, %d dropped from transcript",
        decision.mode,
        f", {decision.reason}" if decision.reason else "",
        decision.serialization.total_turns,
        decision.serialization.dropped_turns,
    )
    return decision


# ---------------------------------------------------------------------------
# Handling the compaction response
# ---------------------------------------------------------------------------

def extract_first_assistant_text(payload: Any) -> str | None:
    output = payload.get("output") if isinstance(payload, dict) else None
    if not isinstance(output, list):
        return None
    for item in output:
        if get_role(item) != "assistant":
            continue
        content = item.get("content")
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
                return part["text"]
    return None


def _rewrite_assistant_output(payload: dict[str, Any], text: str) -> None:
    output = payload.get("output")
    if not isinstance(output, list):
        output = payload["output"] = []
    for item in output:
        if get_role(item) != "assistant":
            continue
        content = item.get("content")
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "output_text":
                    part["text"] = text
                    return
        item["content"] = [{"type": "output_text", "text": text, "annotations": []}]
        return
    output.append({
        "type": "message",
        "role": "assistant",
        "content": [{"type": "output_text", "text": text, "annotations": []}],
    })


def finalize_compaction_payload(payload: dict[str, Any], decision: CompactionDecision) -> str:
    """Rewrite *payload* in place; returns the summary text to store."""
    summary = create_summary_message(extract_first_assistant_text(payload))["content"]
    if decision.mode == "auto":
        note = AUTO_NOTE.format(reason=decision.reason or "context limit")
    else:
        note = COMMAND_NOTE
    _rewrite_assistant_output(payload, f"{note}{summary}".strip())

    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    payload["metadata"] = {
        **metadata,
        "codex_compaction": {
            "mode": decision.mode,
            "reason": decision.reason,
            "dropped_turns": decision.serialization.dropped_turns,
            "total_turns": decision.serialization.total_turns,
        },
    }
    return summary


def finalize_compaction_response(
    response: Response,
    decision: CompactionDecision,
    session_manager: Any = None,
    session_context: SessionContext | None = None,
) -> Response:
    """Fold a summarization response back into the client response and session.

    A body that is not a JSON object is returned unchanged.
    """
    body = getattr(response, "body", None)
    if not isinstance(body, (bytes, bytearray)):
        return response
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Compaction response was not valid JSON; returning it unchanged")
        return response
    if not isinstance(payload, dict):
        return response

    summary = finalize_compaction_payload(payload, decision)
    if session_manager is not None and session_context is not None:
        session_manager.apply_compaction_summary(
            session_context, decision.preserved_system, summary, decision.client_item_count,
        )

    headers = {
        k: v for k, v in response.headers.items()
        if k.lower() not in ("content-length", "content-type")
    }
    return Response(
        content=json.dumps(payload),
        status_code=response.status_code,
        headers=headers,
        media_type=response.headers.get("content-type", "application/json; charset=utf-8"),
    )
