"""Tests for codex_bridge.proxy.responses."""

from __future__ import annotations

import json

import httpx
import pytest
from starlette.responses import StreamingResponse

from codex_bridge.proxy.request_log import RequestLog
from codex_bridge.proxy.responses import (
    enrich_error_body,
    handle_error_response,
    handle_success_response,
    parse_rate_limits,
    parse_sse_stream,
)

from conftest import completed_event, sse_stream


def _upstream(status: int, content: bytes, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(status, content=content, headers=headers or {"content-type": "text/event-stream"})


class TestParseSseStream:
    def test_first_completion_event(self):
        text = sse_stream(
            {"type": "response.created", "response": {"id": "r0"}},
            {"type": "response.output_text.delta", "delta": "hi"},
            {"type": "response.done", "response": {"id": "r1"}},
            {"type": "response.completed", "response": {"id": "r2"}},
        ).decode()
        assert parse_sse_stream(text) == {"id": "r1"}

    def test_malformed_lines_skipped(self):
        text = "data: {broken\n\ndata: " + json.dumps(completed_event({"id": "ok"})) + "\n\n"
        assert parse_sse_stream(text) == {"id": "ok"}

    def test_no_completion(self):
        assert parse_sse_stream("event: ping\ndata: {}\n\n") is None


class TestHandleSuccessResponse:
    @pytest.mark.asyncio
    async def test_converts_to_exact_json(self):
        upstream = _upstream(200, sse_stream(completed_event({"id": "r1", "output": []})))
        response = await handle_success_response(upstream, has_tools=False)
        assert response.status_code == 200
        assert response.body == b'{"id":"r1","output":[]}'
        assert response.headers["content-type"] == "application/json; charset=utf-8"

    @pytest.mark.asyncio
    async def test_missing_completion_returns_raw_text(self):
        raw = b"event: response.created\ndata: {\"type\": \"response.created\"}\n\n"
        upstream = _upstream(202, raw)
        response = await handle_success_response(upstream, has_tools=False)
        assert response.status_code == 202
        assert response.body == raw

    @pytest.mark.asyncio
    async def test_tools_stream_through(self):
        raw = sse_stream(completed_event({"id": "r1"}))
        upstream = _upstream(200, raw)
        response = await handle_success_response(upstream, has_tools=True)
        assert isinstance(response, StreamingResponse)
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        chunks = [chunk async for chunk in response.body_iterator]
        assert b"".join(chunks) == raw

    @pytest.mark.asyncio
    async def test_default_content_type(self):
        upstream = httpx.Response(200, content=b"data: x\n\n")
        response = await handle_success_response(upstream, has_tools=True)
        assert response.headers["content-type"] == "text/event-stream; charset=utf-8"

    @pytest.mark.asyncio
    async def test_stream_logged(self, tmp_path):
        log = RequestLog(tmp_path, max_files=10)
        upstream = _upstream(200, b"data: nothing\n\n")
        await handle_success_response(upstream, has_tools=False, request_log=log)
        stages = sorted(p.name.rsplit("_", 1)[-1] for p in tmp_path.glob("*.json"))
        assert stages == ["stream-error.json", "stream-full.json"]


class TestErrors:
    def test_rate_limits(self):
        headers = httpx.Headers({
            "x-codex-primary-used-percent": "95.5",
            "x-codex-primary-window-minutes": "300",
            "x-codex-primary-reset-at": "1700000600",
        })
        limits = parse_rate_limits(headers)
        assert limits["primary"] == {"used_percent": 95.5, "window_minutes": 300, "resets_at": 1700000600}
        assert limits["secondary"]["used_percent"] is None
        assert parse_rate_limits(httpx.Headers({})) is None

    def test_usage_limit_friendly_message(self):
        parsed = {"error": {"code": "usage_limit_reached", "plan_type": "PLUS", "resets_at": 1700000600}}
        body = enrich_error_body(parsed, 429, httpx.Headers({}), now=1700000000)
        error = body["error"]
        assert error["friendly_message"] == "You have hit your ChatGPT usage limit (plus plan). Try again in ~10 min."
        assert error["message"] == error["friendly_message"]
        assert error["status"] == 429
        assert error["code"] == "usage_limit_reached"

    def test_generic_error(self):
        body = enrich_error_body({"error": {"message": "bad"}}, 400, httpx.Headers({}))
        assert body["error"]["message"] == "bad"
        assert body["error"]["friendly_message"] is None
        assert enrich_error_body({}, 500, httpx.Headers({}))["error"]["message"] == "Request failed with status 500."

    @pytest.mark.asyncio
    async def test_handle_error_response_json(self):
        upstream = httpx.Response(
            401, json={"error": {"message": "expired"}},
            headers={"x-codex-primary-used-percent": "10"},
        )
        response = await handle_error_response(upstream)
        assert response.status_code == 401
        payload = json.loads(response.body)
        assert payload["error"]["message"] == "expired"
        assert payload["error"]["rate_limits"]["primary"]["used_percent"] == 10.0

    @pytest.mark.asyncio
    async def test_handle_error_response_text(self):
        upstream = httpx.Response(502, content=b"Bad Gateway")
        response = await handle_error_response(upstream)
        assert response.status_code == 502
        assert response.body == b"Bad Gateway"
