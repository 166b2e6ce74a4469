"""Turn upstream Codex responses into client-ready responses.

Requests with tools keep the live event stream.  Requests without tools
get the stream buffered and collapsed into the single JSON response
carried by its completion event.  Non-2xx responses are surfaced with
their status and an enriched JSON error body.
"""

from __future__ import annotations

import codecs
import json
import logging
import math
import re
import time
from typing import Any

import httpx
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, Response, StreamingResponse

from . import request_log as stages
from .helpers import JSON_CONTENT_TYPE, SSE_CONTENT_TYPE, forward_headers
from .request_log import RequestLog

logger = logging.getLogger(__name__)

COMPLETION_EVENTS = frozenset({"response.done", "response.completed"})

_USAGE_LIMIT_RE = re.compile(r"usage_limit_reached|usage_not_included|rate_limit_exceeded", re.IGNORECASE)

# Headers that no longer describe a body once it has been decoded or rebuilt.
_BODY_HEADERS = frozenset({"content-encoding", "content-type"})


def ensure_content_type(headers: Any) -> dict[str, str]:
    """Forwardable copy of *headers* with a default SSE content type."""
    result = forward_headers(headers)
    if not any(k.lower() == "content-type" for k in result):
        result["content-type"] = SSE_CONTENT_TYPE
    return result


def _without(headers: dict[str, str], names: frozenset[str]) -> dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() not in names}


# ---------------------------------------------------------------------------
# SSE → JSON
# ---------------------------------------------------------------------------

def parse_sse_stream(sse_text: str) -> dict[str, Any] | None:
    """Return the ``response`` of the first completion event, if any.

    Malformed ``data:`` lines are skipped.
    """
    for line in sse_text.split("\n"):
        line = line.rstrip("\r")
        if not line.startswith("data: "):
            continue
        try:
            data = json.loads(line[6:])
        except ValueError:
            continue
        if isinstance(data, dict) and data.get("type") in COMPLETION_EVENTS:
            response = data.get("response")
            return response if isinstance(response, dict) else None
    return None


async def read_text(upstream: httpx.Response) -> str:
    """Buffer the whole upstream body, decoding UTF-8 incrementally."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: list[str] = []
    try:
        async for chunk in upstream.aiter_bytes():
            parts.append(decoder.decode(chunk))
        parts.append(decoder.decode(b"", final=True))
    finally:
        await upstream.aclose()
    return "".join(parts)


async def convert_sse_to_json(
    upstream: httpx.Response,
    headers: dict[str, str],
    request_log: RequestLog | None = None,
) -> Response:
    full_text = await read_text(upstream)
    if request_log is not None:
        request_log.write(stages.STREAM_FULL, {"status": upstream.status_code, "full_content": full_text})

    final = parse_sse_stream(full_text)
    if final is None:
        logger.error("Could not find final response in SSE stream (status %d)", upstream.status_code)
        if request_log is not None:
            request_log.write(stages.STREAM_ERROR, {"error": "No response.done event found"})
        return Response(
            content=full_text,
            status_code=upstream.status_code,
            headers=_without(headers, frozenset({"content-encoding"})),
        )

    return JSONResponse(
        content=final,
        status_code=upstream.status_code,
        headers=_without(headers, _BODY_HEADERS),
        media_type=JSON_CONTENT_TYPE,
    )


async def handle_success_response(
    upstream: httpx.Response,
    has_tools: bool,
    request_log: RequestLog | None = None,
) -> Response:
    """Live passthrough when tools were requested, single JSON otherwise."""
    headers = ensure_content_type(upstream.headers)
    if not has_tools:
        return await convert_sse_to_json(upstream, headers, request_log)

    stream_headers = _without(headers, frozenset({"content-encoding"}))
    stream_headers.setdefault("cache-control", "no-cache")
    stream_headers.setdefault("x-accel-buffering", "no")
    return StreamingResponse(
        upstream.aiter_bytes(),
        status_code=upstream.status_code,
        headers=stream_headers,
        background=BackgroundTask(upstream.aclose),
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def _to_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _to_int(value: str | None) -> int | None:
    number = _to_number(value)
    return int(number) if number is not None else None


def parse_rate_limits(headers: Any) -> dict[str, dict[str, Any]] | None:
    """Read the ``x-codex-{primary,secondary}-*`` usage headers."""
    windows = {}
    for window in ("primary", "secondary"):
        windows[window] = {
            "used_percent": _to_number(headers.get(f"x-codex-{window}-used-percent")),
            "window_minutes": _to_int(headers.get(f"x-codex-{window}-window-minutes")),
            "resets_at": _to_int(headers.get(f"x-codex-{window}-reset-at")),
        }
    if windows["primary"]["used_percent"] is None and windows["secondary"]["used_percent"] is None:
        return None
    return windows


def enrich_error_body(
    parsed: Any,
    status: int,
    headers: Any,
    now: float | None = None,
) -> dict[str, Any]:
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if not isinstance(error, dict):
        error = {}
    rate_limits = parse_rate_limits(headers)
    code = str(error.get("code") or error.get("type") or "")

    friendly = None
    if _USAGE_LIMIT_RE.search(code):
        resets_at = error.get("resets_at")
        if resets_at is None and rate_limits:
            resets_at = rate_limits["primary"]["resets_at"] or rate_limits["secondary"]["resets_at"]
        now = time.time() if now is None else now
        plan = f" ({str(error['plan_type']).lower()} plan)" if error.get("plan_type") else ""
        when = ""
        if isinstance(resets_at, (int, float)):
            minutes = max(0, round((resets_at - now) / 60))
            when = f" Try again in ~{minutes} min."
        friendly = f"You have hit your ChatGPT usage limit{plan}.{when}".strip()
        message = error.get("message") or friendly
    else:
        message = error.get("message")
        if message is None and isinstance(parsed, str):
            message = parsed
        if message is None:
            message = f"Request failed with status {status}."

    return {
        "error": {
            **error,
            "message": message,
            "friendly_message": friendly,
            "rate_limits": rate_limits,
            "status": status,
        },
    }


async def handle_error_response(
    upstream: httpx.Response,
    request_log: RequestLog | None = None,
) -> Response:
    """Surface a non-2xx response, enriching JSON error bodies."""
    try:
        raw = await upstream.aread()
    finally:
        await upstream.aclose()
    text = raw.decode("utf-8", errors="replace")

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None

    if parsed is not None:
        body = json.dumps(enrich_error_body(parsed, upstream.status_code, upstream.headers))
    else:
        body = text

    if request_log is not None:
        request_log.write(stages.ERROR_RESPONSE, {"status": upstream.status_code, "error": body})
    logger.error("Upstream returned %d: %s", upstream.status_code, body[:500])

    return Response(
        content=body,
        status_code=upstream.status_code,
        headers=_without(forward_headers(upstream.headers), _BODY_HEADERS),
        media_type=JSON_CONTENT_TYPE,
    )
