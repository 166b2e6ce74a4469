"""Local slash commands answered without contacting the backend.

``/codex-metrics`` reports session and pipeline counters; ``/codex-inspect``
describes the transformed request that would have been sent.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from starlette.responses import JSONResponse, Response

from ..core.items import latest_user_text, matches_command, normalize_command
from ..core.session import SessionManager
from ..token_counter import estimate_tokens
from ..types import RequestBody
from .helpers import JSON_CONTENT_TYPE, SSE_CONTENT_TYPE, build_text_response, response_as_sse
from .metrics import BridgeMetrics

logger = logging.getLogger(__name__)

METRICS_COMMAND = "codex-metrics"
INSPECT_COMMAND = "codex-inspect"
METRICS_TRIGGERS = (METRICS_COMMAND, "codexmetrics")
INSPECT_TRIGGERS = (INSPECT_COMMAND, "codexinspect")


def detect_command(body: RequestBody) -> str | None:
    """Name of the local command requested by the latest user turn, if any."""
    text = latest_user_text(body.get("input"))
    if not text:
        return None
    trigger = normalize_command(text)
    if matches_command(trigger, METRICS_TRIGGERS):
        return METRICS_COMMAND
    if matches_command(trigger, INSPECT_TRIGGERS):
        return INSPECT_COMMAND
    return None


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def metrics_report(
    session_manager: SessionManager | None,
    metrics: BridgeMetrics | None,
) -> tuple[str, dict[str, Any]]:
    sessions = session_manager.get_metrics() if session_manager is not None else {
        "enabled": False, "total_sessions": 0, "recent_sessions": [],
    }
    snapshot = metrics.snapshot() if metrics is not None else {}

    lines = [f"Codex Metrics -- {_timestamp()}", ""]
    lines.append("Pipeline")
    if snapshot:
        lines.append(f"- Requests: {snapshot['total_requests']}")
        lines.append(f"- Upstream errors: {snapshot['total_errors']}")
        lines.append(f"- Compactions: {snapshot['total_compactions']}")
        lines.append(f"- Average upstream latency: {snapshot['avg_upstream_ms']} ms")
        lines.append(f"- Cached tokens reported: {snapshot['total_cached_tokens']}")
    else:
        lines.append("- (no pipeline metrics collected)")

    lines.append("")
    lines.append("Prompt Cache")
    lines.append(f"- Enabled: {'yes' if sessions['enabled'] else 'no'}")
    lines.append(f"- Sessions tracked: {sessions['total_sessions']}")
    recent = sessions["recent_sessions"]
    if not recent:
        lines.append("- Recent sessions: none")
    else:
        lines.append("- Recent sessions:")
        for session in recent:
            lines.append(
                f"  - {session['id']} -> {session['prompt_cache_key']} "
                f"(cached={session['last_cached_tokens'] or 0}, idle={session['idle_seconds']}s)"
            )

    metadata = {"command": METRICS_COMMAND, "prompt_cache": sessions, "pipeline": snapshot}
    return "\n".join(lines), metadata


def inspect_report(body: RequestBody) -> tuple[str, dict[str, Any]]:
    tools = body.get("tools") if isinstance(body.get("tools"), list) else []
    reasoning = body.get("reasoning") if isinstance(body.get("reasoning"), dict) else None
    text_config = body.get("text") if isinstance(body.get("text"), dict) else {}
    include_raw = body.get("include")
    include = [v for v in include_raw if isinstance(v, str)] if isinstance(include_raw, list) else None
    prompt_cache_key = body.get("prompt_cache_key") or body.get("promptCacheKey")

    metadata = {
        "command": INSPECT_COMMAND,
        "model": body.get("model"),
        "prompt_cache_key": prompt_cache_key,
        "has_tools": bool(tools),
        "tool_count": len(tools),
        "has_reasoning": reasoning is not None,
        "reasoning_effort": reasoning.get("effort") if reasoning else None,
        "reasoning_summary": reasoning.get("summary") if reasoning else None,
        "text_verbosity": text_config.get("verbosity"),
        "include": include,
    }

    def show(value: Any) -> str:
        return "(unset)" if value is None else str(value)

    input_count = len(body["input"]) if isinstance(body.get("input"), list) else 0
    lines = [
        f"Codex Inspect -- {_timestamp()}",
        "",
        "Request",
        f"- Model: {show(metadata['model'])}",
        f"- Prompt cache key: {prompt_cache_key or '(none)'}",
        f"- Input messages: {input_count}",
        "",
        "Tools",
        f"- Has tools: {'yes' if tools else 'no'}",
        f"- Tool count: {len(tools)}",
        "",
        "Reasoning",
        f"- Has reasoning: {'yes' if reasoning is not None else 'no'}",
        f"- Effort: {show(metadata['reasoning_effort'])}",
        f"- Summary: {show(metadata['reasoning_summary'])}",
        "",
        "Text",
        f"- Verbosity: {show(metadata['text_verbosity'])}",
        "",
        "Include",
    ]
    if include:
        lines.append("- Include:")
        lines.extend(f"  - {value}" for value in include)
    else:
        lines.append("- Include: (none)")
    return "\n".join(lines), metadata


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def maybe_handle_command(
    body: RequestBody,
    *,
    session_manager: SessionManager | None = None,
    metrics: BridgeMetrics | None = None,
    stream: bool = True,
) -> Response | None:
    """Answer a local command, or return ``None`` to continue upstream.

    With *stream* the answer is a Responses event stream, otherwise the
    completed response as JSON, mirroring how upstream answers are shaped.
    """
    command = detect_command(body)
    if command is None:
        return None

    if command == METRICS_COMMAND:
        text, metadata = metrics_report(session_manager, metrics)
    else:
        text, metadata = inspect_report(body)

    output_tokens = max(1, estimate_tokens(text))
    payload = build_text_response(
        text,
        model=body.get("model") if isinstance(body.get("model"), str) else None,
        metadata=metadata,
        usage={
            "input_tokens": 0,
            "output_tokens": output_tokens,
            "reasoning_tokens": 0,
            "total_tokens": output_tokens,
        },
    )
    logger.info("Answered local command %s", command)
    if metrics is not None:
        metrics.record({"type": "command", "command": command})

    if stream:
        return Response(
            content=response_as_sse(payload),
            media_type=SSE_CONTENT_TYPE,
            headers={"cache-control": "no-cache"},
        )
    return JSONResponse(content=payload, media_type=JSON_CONTENT_TYPE)
