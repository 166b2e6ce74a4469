"""Pure helper functions for the proxy layer.

Header filtering and SSE construction.  Nothing here holds
state or touches the network.
"""

from __future__ import annotations

import json as _json
import time
import uuid
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_HOP_BY_HOP = frozenset({
    "host", "connection", "transfer-encoding", "keep-alive",
    "proxy-authenticate", "proxy-authorization", "te", "trailers",
    "upgrade", "content-length",
})

SSE_CONTENT_TYPE = "text/event-stream; charset=utf-8"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
SSE_DONE = b"data: [DONE]\n\n"


def forward_headers(headers: Any) -> dict[str, str]:
    """Filter out hop-by-hop headers for forwarding."""
    return {
        k: v for k, v in dict(headers).items()
        if k.lower() not in _HOP_BY_HOP
    }


# ---------------------------------------------------------------------------
# SSE construction (Responses API)
# ---------------------------------------------------------------------------

def _sse(event_type: str, payload: dict[str, Any]) -> bytes:
    return f"event: {event_type}\ndata: {_json.dumps(payload)}\n\n".encode()


def build_text_response(
    text: str,
    *,
    model: str | None = None,
    metadata: dict[str, Any] | None = None,
    usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """A completed Responses payload carrying one assistant message."""
    return {
        "id": f"resp_cmd_{uuid.uuid4().hex}",
        "object": "response",
        "created_at": int(time.time()),
        "model": model or "gpt-5",
        "status": "completed",
        "output": [
            {
                "id": f"msg_cmd_{uuid.uuid4().hex}",
                "type": "message",
                "role": "assistant",
                "status": "completed",
                "content": [{"type": "output_text", "text": text, "annotations": []}],
            },
        ],
        "usage": usage or {},
        "metadata": metadata or {},
    }


def emit_text_as_responses_sse(text: str, item_index: int = 0, item_id: str | None = None) -> list[bytes]:
    """Convert *text* into OpenAI Responses API SSE events."""
    item_id = item_id or f"item_{item_index}"
    output_index = item_index
    events = [
        _sse("response.output_item.added", {
            "type": "response.output_item.added",
            "output_index": output_index,
            "item": {"type": "message", "id": item_id, "role": "assistant", "content": []},
        }),
        _sse("response.content_part.added", {
            "type": "response.content_part.added",
            "item_id": item_id,
            "output_index": output_index,
            "content_index": 0,
            "part": {"type": "output_text", "text": ""},
        }),
        _sse("response.output_text.delta", {
            "type": "response.output_text.delta",
            "item_id": item_id,
            "output_index": output_index,
            "content_index": 0,
            "delta": text,
        }),
        _sse("response.output_text.done", {
            "type": "response.output_text.done",
            "item_id": item_id,
            "output_index": output_index,
            "content_index": 0,
            "text": text,
        }),
        _sse("response.content_part.done", {
            "type": "response.content_part.done",
            "item_id": item_id,
            "output_index": output_index,
            "content_index": 0,
            "part": {"type": "output_text", "text": text},
        }),
        _sse("response.output_item.done", {
            "type": "response.output_item.done",
            "output_index": output_index,
            "item": {
                "type": "message",
                "id": item_id,
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            },
        }),
    ]
    return events


def emit_response_created_sse(response: dict[str, Any]) -> list[bytes]:
    created = {**response, "status": "in_progress", "output": []}
    return [_sse("response.created", {"type": "response.created", "response": created})]


def emit_response_done_sse(response: dict[str, Any]) -> list[bytes]:
    """Emit ``response.completed`` followed by the ``[DONE]`` sentinel."""
    return [
        _sse("response.completed", {"type": "response.completed", "response": response}),
        SSE_DONE,
    ]


def response_as_sse(response: dict[str, Any]) -> bytes:
    """Serialize a completed text response as a full Responses event stream."""
    text = ""
    item_id = None
    for item in response.get("output") or []:
        if isinstance(item, dict) and item.get("type") == "message":
            item_id = item.get("id")
            text = "".join(
                part.get("text", "") for part in item.get("content") or []
                if isinstance(part, dict) and part.get("type") == "output_text"
            )
            break
    chunks = [
        *emit_response_created_sse(response),
        *emit_text_as_responses_sse(text, item_id=item_id),
        *emit_response_done_sse(response),
    ]
    return b"".join(chunks)
