"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .core.model_config import coerce_user_config
from .types import (
    BridgeConfig,
    LoggingConfig,
    ServerConfig,
    SessionConfig,
    UpstreamConfig,
)

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = [
    "codex-bridge.yaml",
    "codex-bridge.yml",
    "codex-bridge.json",
]

CODEX_MODE_ENV = "CODEX_MODE"
REQUEST_LOGGING_ENV = "ENABLE_PLUGIN_REQUEST_LOGGING"
DEBUG_ENV = "DEBUG_CODEX_PLUGIN"


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _get(raw: dict[str, Any], key: str, camel: str, default: Any) -> Any:
    """Read *key*, accepting the camelCase spelling used by plugin configs."""
    if key in raw:
        return raw[key]
    return raw.get(camel, default)


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value == "1"


def _build_config(raw: dict[str, Any]) -> BridgeConfig:
    """Build a BridgeConfig from a raw dict."""
    session_raw = _section(raw, "session")
    session_config = SessionConfig(
        ttl_seconds=session_raw.get("ttl_seconds", 30 * 60),
        max_entries=session_raw.get("max_entries", 100),
        force_store=session_raw.get("force_store", False),
    )

    upstream_raw = _section(raw, "upstream")
    upstream_config = UpstreamConfig(
        base_url=upstream_raw.get("base_url", "https://chatgpt.com/backend-api"),
        timeout=upstream_raw.get("timeout", 120.0),
        connect_timeout=upstream_raw.get("connect_timeout", 10.0),
    )

    logging_raw = _section(raw, "logging")
    logging_config = LoggingConfig(
        debug=logging_raw.get("debug", False),
        enable_request_logging=logging_raw.get("enable_request_logging", False),
        request_log_dir=logging_raw.get("request_log_dir", ".codex-bridge/request_log"),
        request_log_max_files=logging_raw.get("request_log_max_files", 50),
    )

    server_raw = _section(raw, "server")
    server_config = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=server_raw.get("port", 5858),
    )

    # provider.options / provider.models is the client's model config shape
    user_config = coerce_user_config(_section(raw, "provider"))

    codex_mode = _get(raw, "codex_mode", "codexMode", True)
    env_codex_mode = _env_flag(CODEX_MODE_ENV)
    if env_codex_mode is not None:
        codex_mode = env_codex_mode

    if _env_flag(REQUEST_LOGGING_ENV):
        logging_config.enable_request_logging = True
    if _env_flag(DEBUG_ENV):
        logging_config.debug = True

    return BridgeConfig(
        codex_mode=bool(codex_mode),
        enable_prompt_caching=bool(_get(raw, "enable_prompt_caching", "enablePromptCaching", True)),
        enable_codex_compaction=bool(_get(raw, "enable_codex_compaction", "enableCodexCompaction", True)),
        auto_compact_token_limit=_get(raw, "auto_compact_token_limit", "autoCompactTokenLimit", None),
        auto_compact_min_messages=_get(raw, "auto_compact_min_messages", "autoCompactMinMessages", 8),
        instructions_path=raw.get("instructions_path"),
        client_prompt_path=raw.get("client_prompt_path"),
        session=session_config,
        upstream=upstream_config,
        logging=logging_config,
        server=server_config,
        user_config=user_config,
    )


def validate_config(config: BridgeConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    limit = config.auto_compact_token_limit
    if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0):
        errors.append(f"auto_compact_token_limit must be a positive integer (got {limit!r})")

    if not isinstance(config.auto_compact_min_messages, int) or config.auto_compact_min_messages < 1:
        errors.append("auto_compact_min_messages must be >= 1")

    if config.session.max_entries < 1:
        errors.append("session.max_entries must be >= 1")

    if config.session.ttl_seconds <= 0:
        errors.append("session.ttl_seconds must be > 0")

    if not config.upstream.base_url.startswith(("http://", "https://")):
        errors.append(f"upstream.base_url must be an http(s) URL (got {config.upstream.base_url!r})")

    if config.upstream.timeout <= 0:
        errors.append("upstream.timeout must be > 0")

    if config.logging.request_log_max_files < 1:
        errors.append("logging.request_log_max_files must be >= 1")

    for label, path in (
        ("instructions_path", config.instructions_path),
        ("client_prompt_path", config.client_prompt_path),
    ):
        if path and not Path(path).expanduser().is_file():
            errors.append(f"{label} not found: {path}")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> BridgeConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    logger.debug("Loaded config from %s", path)
    return _build_config(raw)


# ---------------------------------------------------------------------------
# Instruction texts
# ---------------------------------------------------------------------------

def _read_optional(path: str | None) -> str | None:
    if not path:
        return None
    return Path(path).expanduser().read_text()


def load_instructions(config: BridgeConfig) -> str:
    """Instruction text sent as ``instructions`` on every request.

    The text is fetched externally and saved to ``instructions_path``;
    without one the bridge sends an empty string.
    """
    text = _read_optional(config.instructions_path)
    if text is None:
        logger.warning("No instructions_path configured; sending empty instructions")
        return ""
    return text


def load_client_prompt(config: BridgeConfig) -> str | None:
    """The client SDK's own system prompt, used for exact-match filtering."""
    return _read_optional(config.client_prompt_path)
