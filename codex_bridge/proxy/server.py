"""FastAPI app exposing the bridge as a local OpenAI-compatible endpoint.

POSTs to any ``.../responses`` path run through :class:`CodexFetcher`;
everything else is forwarded to the backend untouched apart from the
credential headers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse, Response

from ..config import load_client_prompt, load_instructions
from ..core.session import SessionManager
from ..types import BridgeConfig, CredentialsProvider, UpstreamError
from .fetcher import ACCOUNT_ID_HEADER, CodexFetcher, credentials_from_env
from .helpers import forward_headers
from .metrics import BridgeMetrics
from .request_log import RequestLog

logger = logging.getLogger(__name__)

BRIDGE_PREFIX = "/_bridge"

# Dropped from passthrough responses since httpx has already decoded the body.
_DECODED_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


def _upstream_path(path: str) -> str:
    """Map an OpenAI-style client path onto the backend path space."""
    path = path.lstrip("/")
    if path.startswith("v1/"):
        path = path[3:]
    return path


def _is_responses_call(method: str, path: str) -> bool:
    return method == "POST" and path.rstrip("/").endswith("responses")


def create_app(
    config: BridgeConfig | None = None,
    *,
    instructions: str | None = None,
    credentials: CredentialsProvider | None = None,
    client_prompt: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the FastAPI bridge application.

    Args:
        config: Bridge configuration (defaults when omitted).
        instructions: Instruction text; read from ``config.instructions_path``
            when omitted.
        credentials: Callable returning :class:`Credentials`; defaults to
            reading ``CODEX_ACCESS_TOKEN`` / ``CODEX_ACCOUNT_ID``.
        client_prompt: The client SDK's system prompt for exact-match
            filtering; read from ``config.client_prompt_path`` when omitted.
        transport: Custom httpx transport (tests use ``httpx.MockTransport``).
    """
    config = config or BridgeConfig()
    base_url = config.upstream.base_url.rstrip("/")
    if instructions is None:
        instructions = load_instructions(config)
    if client_prompt is None:
        client_prompt = load_client_prompt(config)
    credentials = credentials or credentials_from_env

    session_manager = SessionManager(
        enabled=config.enable_prompt_caching,
        ttl_seconds=config.session.ttl_seconds,
        max_entries=config.session.max_entries,
        force_store=config.session.force_store,
    )
    metrics = BridgeMetrics()
    request_log = RequestLog(
        config.logging.request_log_dir,
        max_files=config.logging.request_log_max_files,
        enabled=config.logging.enable_request_logging,
    )

    client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream.timeout, connect=config.upstream.connect_timeout),
        transport=transport,
    )
    fetcher = CodexFetcher(
        client,
        credentials,
        instructions=instructions,
        config=config,
        session_manager=session_manager,
        client_prompt=client_prompt,
        request_log=request_log,
        metrics=metrics,
    )

    logger.info(
        "Bridge ready: upstream=%s codex_mode=%s prompt_caching=%s compaction=%s",
        base_url, config.codex_mode, config.enable_prompt_caching, config.enable_codex_compaction,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await client.aclose()

    app = FastAPI(title="codex-bridge", lifespan=lifespan)
    app.state.fetcher = fetcher
    app.state.session_manager = session_manager
    app.state.metrics = metrics

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": str(exc), "status": exc.status_code}},
        )

    # Bridge routes are registered BEFORE the catch-all so they are not swallowed
    @app.get(f"{BRIDGE_PREFIX}/health")
    async def health() -> dict:
        return {
            "status": "ok",
            "upstream": base_url,
            "codex_mode": config.codex_mode,
            "sessions": len(session_manager),
        }

    @app.get(f"{BRIDGE_PREFIX}/metrics")
    async def bridge_metrics() -> dict:
        return {
            "pipeline": metrics.snapshot(),
            "prompt_cache": session_manager.get_metrics(),
        }

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"])
    async def catch_all(request: Request, path: str) -> Response:
        path = _upstream_path(path)
        url = f"{base_url}/{path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"
        fwd_headers = forward_headers(request.headers)
        body_bytes = await request.body()

        if _is_responses_call(request.method, path):
            return await fetcher.fetch(url, body_bytes, fwd_headers, method=request.method)

        creds = await fetcher.resolve_credentials()
        fwd_headers = {
            k: v for k, v in fwd_headers.items()
            if k.lower() not in ("authorization", "x-api-key", "accept-encoding")
        }
        fwd_headers["Authorization"] = f"Bearer {creds.access_token}"
        fwd_headers[ACCOUNT_ID_HEADER] = creds.account_id
        return await _passthrough_bytes(client, request.method, url, fwd_headers, body_bytes)

    return app


async def _passthrough_bytes(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes,
) -> Response:
    """Forward raw bytes to upstream and return the buffered reply."""
    try:
        resp = await client.request(method, url, headers=headers, content=body)
    except httpx.HTTPError as exc:
        logger.error("Passthrough %s %s failed: %s", method, url, exc)
        raise UpstreamError(f"Upstream request failed: {exc}") from exc
    return Response(
        content=resp.content,
        status_code=resp.status_code,
        headers={k: v for k, v in resp.headers.items() if k.lower() not in _DECODED_HEADERS},
    )
