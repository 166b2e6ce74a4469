"""Request body transformation for the Codex backend.

``transform_request`` is the single entry point used by the fetch
pipeline: it parses the client body, resolves the session, applies any
stored compaction, rewrites the body for a stateless backend and attaches
the session cache key.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..types import (
    CompactionOptions,
    CompactionSettings,
    RequestBody,
    SessionContext,
    TransformResult,
    UserConfig,
)
from .clone import clone_input_items, deep_clone
from .compaction import apply_compaction_if_needed, detect_compaction_command
from .input_filter import filter_client_system_prompts, filter_input, inject_instruction_message
from .model_config import get_include, get_model_config, get_reasoning_config, get_text_verbosity
from .model_normalizer import normalize_model
from .prompt_cache import ensure_prompt_cache_key, log_cache_key_decision
from .session import SessionManager
from .tools import normalize_tools_for_body

logger = logging.getLogger(__name__)

_DROPPED_FIELDS = ("max_output_tokens", "max_completion_tokens")


def _transform_input(
    body: RequestBody,
    *,
    codex_mode: bool,
    preserve_ids: bool,
    has_tools: bool,
    session_context: SessionContext | None,
    client_prompt: str | None,
) -> None:
    items = body.get("input")
    if not isinstance(items, list):
        return

    id_count = sum(1 for item in items if isinstance(item, dict) and item.get("id"))
    working = filter_input(items, preserve_ids=preserve_ids, preserve_metadata=True)
    if id_count:
        logger.debug(
            "%s %d item ids for %s",
            "Preserving" if preserve_ids else "Stripped",
            id_count,
            "prompt caching" if preserve_ids else "stateless operation",
        )

    if codex_mode:
        working = filter_client_system_prompts(working, client_prompt)
    if not preserve_ids:
        working = filter_input(working)

    body["input"] = inject_instruction_message(
        working,
        codex_mode=codex_mode,
        has_tools=has_tools,
        context=session_context,
    )


def transform_request_body(
    body: RequestBody,
    instructions: str,
    user_config: UserConfig | dict | None = None,
    codex_mode: bool = True,
    *,
    preserve_ids: bool = False,
    compaction: CompactionOptions | None = None,
    session_context: SessionContext | None = None,
    client_prompt: str | None = None,
) -> TransformResult:
    """Rewrite *body* in place into the backend wire format."""
    original_model = body.get("model") if isinstance(body.get("model"), str) else None
    normalized_model = normalize_model(original_model)

    if compaction is not None:
        compaction.preserve_ids = preserve_ids
    decision = apply_compaction_if_needed(body, compaction)

    lookup_model = original_model or normalized_model
    options = get_model_config(lookup_model, user_config)
    logger.debug("Model %r normalized to %r; resolved options %s", lookup_model, normalized_model, options)

    body["model"] = normalized_model
    body["store"] = False
    body["stream"] = True
    body["instructions"] = instructions

    cache_key = ensure_prompt_cache_key(body)
    log_cache_key_decision(cache_key, session_context.is_new if session_context else True)

    if decision is not None:
        for key in ("tools", "tool_choice", "parallel_tool_calls"):
            body.pop(key, None)
    else:
        has_tools = normalize_tools_for_body(body, normalized_model)
        _transform_input(
            body,
            codex_mode=codex_mode,
            preserve_ids=preserve_ids,
            has_tools=has_tools,
            session_context=session_context,
            client_prompt=client_prompt,
        )

    reasoning = body.get("reasoning") if isinstance(body.get("reasoning"), dict) else {}
    body["reasoning"] = {**reasoning, **get_reasoning_config(lookup_model, options).to_dict()}

    text = body.get("text") if isinstance(body.get("text"), dict) else {}
    body["text"] = {**text, "verbosity": get_text_verbosity(lookup_model, options)}

    body["include"] = get_include(options)
    for key in _DROPPED_FIELDS:
        body.pop(key, None)

    return TransformResult(
        body=body,
        original_model=original_model,
        compaction_decision=decision,
        session_context=session_context,
    )


def parse_request_body(raw_body: Any) -> RequestBody | None:
    """Decode a raw body into a dict; ``None`` when missing or not a JSON object."""
    if raw_body is None:
        return None
    if isinstance(raw_body, dict):
        try:
            return deep_clone(raw_body)
        except ValueError as exc:
            logger.debug("Request body cannot be cloned (%s); leaving it untouched", exc)
            return None
    if isinstance(raw_body, (bytes, bytearray)):
        if not raw_body:
            return None
        try:
            raw_body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw_body, str) or not raw_body.strip():
        return None
    try:
        parsed = json.loads(raw_body)
    except ValueError:
        logger.debug("Request body is not valid JSON; leaving it untouched")
        return None
    return parsed if isinstance(parsed, dict) else None


def transform_request(
    raw_body: Any,
    instructions: str,
    user_config: UserConfig | dict | None = None,
    codex_mode: bool = True,
    session_manager: SessionManager | None = None,
    compaction_settings: CompactionSettings | None = None,
    client_prompt: str | None = None,
) -> TransformResult | None:
    """Full request pipeline: session lookup, compaction, transform, cache key.

    Returns ``None`` when there is no body or it does not parse, in which
    case the caller forwards the original request unchanged.
    """
    body = parse_request_body(raw_body)
    if body is None:
        return None

    settings = compaction_settings or CompactionSettings()
    command = detect_compaction_command(body.get("input")) if settings.enabled else None

    client_items = body.get("input")
    client_item_count = len(client_items) if isinstance(client_items, list) else 0

    context = session_manager.get_context(body) if session_manager is not None else None
    if session_manager is not None:
        session_manager.apply_compacted_history(body, context)

    result = transform_request_body(
        body,
        instructions,
        user_config,
        codex_mode,
        preserve_ids=context.preserve_ids if context is not None else False,
        compaction=CompactionOptions(
            settings=settings,
            command_text=command,
            original_input=clone_input_items(body.get("input")),
            client_item_count=client_item_count,
        ),
        session_context=context,
        client_prompt=client_prompt,
    )

    if session_manager is not None:
        result.session_context = session_manager.apply_request(result.body, context)
    return result
