"""Async fetch pipeline against the Codex backend.

``CodexFetcher.fetch`` is what the HTTP layer calls for every request:
rewrite the URL, transform the body, answer local commands, attach the
Codex headers, send, and shape the response.  Upstream failures are
surfaced as-is; nothing is retried.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import time
from typing import Any

import httpx
from starlette.responses import Response

from ..core.compaction import finalize_compaction_response
from ..core.session import SessionManager, record_session_response
from ..core.transformer import transform_request
from ..types import BridgeConfig, Credentials, CredentialsProvider, TransformResult, UpstreamError
from . import request_log as stages
from .commands import maybe_handle_command
from .metrics import BridgeMetrics
from .request_log import RequestLog
from .responses import handle_error_response, handle_success_response

logger = logging.getLogger(__name__)

RESPONSES_PATH = "/responses"
CODEX_RESPONSES_PATH = "/codex/responses"

OPENAI_BETA_HEADER = "OpenAI-Beta"
ACCOUNT_ID_HEADER = "chatgpt-account-id"
ORIGINATOR_HEADER = "originator"
SESSION_ID_HEADER = "session_id"
CONVERSATION_ID_HEADER = "conversation_id"

BETA_RESPONSES = "responses=experimental"
ORIGINATOR_CODEX = "codex_cli_rs"

ACCESS_TOKEN_ENV = "CODEX_ACCESS_TOKEN"
ACCOUNT_ID_ENV = "CODEX_ACCOUNT_ID"

# Client-supplied headers replaced by the Codex set (compared lowercase).
_REPLACED_HEADERS = frozenset({
    "x-api-key",
    "authorization",
    ACCOUNT_ID_HEADER,
    OPENAI_BETA_HEADER.lower(),
    ORIGINATOR_HEADER,
    SESSION_ID_HEADER,
    CONVERSATION_ID_HEADER,
    "accept",
    "accept-encoding",
})


def rewrite_url_for_codex(url: str) -> str:
    return url.replace(RESPONSES_PATH, CODEX_RESPONSES_PATH, 1) if CODEX_RESPONSES_PATH not in url else url


def create_codex_headers(
    headers: dict[str, str] | None,
    account_id: str,
    access_token: str,
    prompt_cache_key: str | None = None,
) -> dict[str, str]:
    """Client headers with auth, account and Codex protocol headers applied."""
    result = {
        k: v for k, v in (headers or {}).items()
        if k.lower() not in _REPLACED_HEADERS
    }
    result["Authorization"] = f"Bearer {access_token}"
    result[ACCOUNT_ID_HEADER] = account_id
    result[OPENAI_BETA_HEADER] = BETA_RESPONSES
    result[ORIGINATOR_HEADER] = ORIGINATOR_CODEX
    if prompt_cache_key:
        result[CONVERSATION_ID_HEADER] = prompt_cache_key
        result[SESSION_ID_HEADER] = prompt_cache_key
    result["accept"] = "text/event-stream"
    return result


def credentials_from_env() -> Credentials:
    """Read credentials from ``CODEX_ACCESS_TOKEN`` / ``CODEX_ACCOUNT_ID``."""
    token = os.environ.get(ACCESS_TOKEN_ENV, "").strip()
    account = os.environ.get(ACCOUNT_ID_ENV, "").strip()
    if not token or not account:
        raise UpstreamError(
            f"Missing credentials: set {ACCESS_TOKEN_ENV} and {ACCOUNT_ID_ENV}",
            status_code=401,
        )
    return Credentials(access_token=token, account_id=account)


class CodexFetcher:
    """Runs one client request through the full bridge pipeline."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialsProvider,
        *,
        instructions: str,
        config: BridgeConfig | None = None,
        session_manager: SessionManager | None = None,
        client_prompt: str | None = None,
        request_log: RequestLog | None = None,
        metrics: BridgeMetrics | None = None,
    ) -> None:
        self.client = client
        self.credentials = credentials
        self.instructions = instructions
        self.config = config or BridgeConfig()
        self.session_manager = session_manager
        self.client_prompt = client_prompt
        self.request_log = request_log
        self.metrics = metrics

    async def resolve_credentials(self) -> Credentials:
        creds = self.credentials()
        if inspect.isawaitable(creds):
            creds = await creds
        return creds

    def _log(self, stage: str, payload: dict[str, Any], seq: int) -> None:
        if self.request_log is not None:
            self.request_log.write(stage, payload, seq=seq)

    def transform(self, body_bytes: bytes | None) -> TransformResult | None:
        return transform_request(
            body_bytes,
            self.instructions,
            self.config.user_config,
            self.config.codex_mode,
            self.session_manager,
            self.config.compaction,
            self.client_prompt,
        )

    async def fetch(
        self,
        url: str,
        body_bytes: bytes | None,
        headers: dict[str, str] | None = None,
        method: str = "POST",
    ) -> Response:
        seq = self.request_log.next_request() if self.request_log is not None else 0
        url = rewrite_url_for_codex(url)

        self._log(stages.BEFORE_TRANSFORM, {"url": url, "body": _preview(body_bytes)}, seq)
        result = self.transform(body_bytes)

        if result is not None:
            body = result.body
            self._log(stages.AFTER_TRANSFORM, {
                "url": url,
                "original_model": result.original_model,
                "normalized_model": body.get("model"),
                "has_tools": result.has_tools,
                "input_length": len(body["input"]) if isinstance(body.get("input"), list) else None,
                "reasoning": body.get("reasoning"),
                "text_verbosity": (body.get("text") or {}).get("verbosity"),
                "include": body.get("include"),
                "body": body,
            }, seq)
            if self.metrics is not None:
                self.metrics.record({
                    "type": "request",
                    "model": body.get("model"),
                    "original_model": result.original_model,
                    "has_tools": result.has_tools,
                    "compaction": result.compaction_decision.mode if result.compaction_decision else None,
                    "prompt_cache_key": body.get("prompt_cache_key"),
                })

            command_response = maybe_handle_command(
                body,
                session_manager=self.session_manager,
                metrics=self.metrics,
                stream=result.has_tools,
            )
            if command_response is not None:
                return command_response
            content = json.dumps(body).encode("utf-8")
        else:
            content = body_bytes or b""

        creds = await self.resolve_credentials()
        prompt_cache_key = result.body.get("prompt_cache_key") if result is not None else None
        out_headers = create_codex_headers(headers, creds.account_id, creds.access_token, prompt_cache_key)
        out_headers["content-type"] = "application/json"

        t_upstream = time.monotonic()
        try:
            request = self.client.build_request(method, url, headers=out_headers, content=content)
            upstream = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("Upstream request to %s failed: %s", url, exc)
            if self.metrics is not None:
                self.metrics.record({"type": "response", "error": True, "status": None})
            raise UpstreamError(f"Upstream request failed: {exc}") from exc
        upstream_ms = round((time.monotonic() - t_upstream) * 1000, 1)

        self._log(stages.RESPONSE, {
            "status": upstream.status_code,
            "ok": upstream.is_success,
            "headers": dict(upstream.headers),
        }, seq)

        if not upstream.is_success:
            if self.metrics is not None:
                self.metrics.record({
                    "type": "response", "status": upstream.status_code,
                    "upstream_ms": upstream_ms, "error": True,
                })
            return await handle_error_response(upstream, self.request_log)

        has_tools = result.has_tools if result is not None else False
        handled = await handle_success_response(upstream, has_tools, self.request_log)

        context = result.session_context if result is not None else None
        decision = result.compaction_decision if result is not None else None
        if decision is not None:
            handled = finalize_compaction_response(handled, decision, self.session_manager, context)
            if self.metrics is not None:
                self.metrics.record({
                    "type": "compaction",
                    "mode": decision.mode,
                    "reason": decision.reason,
                    "total_turns": decision.serialization.total_turns,
                    "dropped_turns": decision.serialization.dropped_turns,
                })

        record_session_response(self.session_manager, context, handled)

        if self.metrics is not None:
            self.metrics.record({
                "type": "response",
                "status": upstream.status_code,
                "upstream_ms": upstream_ms,
                "streaming": has_tools,
                "cached_tokens": context.memory.last_cached_tokens if context is not None else None,
            })
        return handled


def _preview(body_bytes: bytes | None) -> Any:
    if not body_bytes:
        return None
    try:
        return json.loads(body_bytes)
    except ValueError:
        return body_bytes[:2000].decode("utf-8", errors="replace")
