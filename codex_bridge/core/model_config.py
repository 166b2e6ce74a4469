"""Resolve reasoning/verbosity options for a request.

Per-model options are looked up by the *original* client-facing model
name, since several client names can normalize to the same backend
model while still carrying different configs.  Options outside a
model's capability set are downgraded, never rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any

from ..types import (
    REASONING_EFFORTS,
    REASONING_SUMMARIES,
    TEXT_VERBOSITIES,
    ConfigOptions,
    ReasoningConfig,
    UserConfig,
)
from .model_normalizer import GPT_51_CODEX_MAX, GPT_51_CODEX_MINI, normalize_model

logger = logging.getLogger(__name__)

DEFAULT_INCLUDE = ["reasoning.encrypted_content"]
DEFAULT_VERBOSITY = "medium"
DEFAULT_SUMMARY = "auto"

# wire key → ConfigOptions attribute
_OPTION_KEYS = {
    "reasoningEffort": "reasoning_effort",
    "reasoning_effort": "reasoning_effort",
    "reasoningSummary": "reasoning_summary",
    "reasoning_summary": "reasoning_summary",
    "textVerbosity": "text_verbosity",
    "text_verbosity": "text_verbosity",
    "include": "include",
}

_ALLOWED = {
    "reasoning_effort": REASONING_EFFORTS,
    "reasoning_summary": REASONING_SUMMARIES,
    "text_verbosity": TEXT_VERBOSITIES,
}


# ---------------------------------------------------------------------------
# Parsing user-supplied option dicts
# ---------------------------------------------------------------------------

def coerce_config_options(raw: Any) -> ConfigOptions:
    """Build ConfigOptions from a wire dict; anything malformed is dropped."""
    if isinstance(raw, ConfigOptions):
        return raw
    options = ConfigOptions()
    if not isinstance(raw, dict):
        return options
    for key, value in raw.items():
        attr = _OPTION_KEYS.get(key)
        if attr is None:
            continue
        if attr == "include":
            if isinstance(value, list):
                options.include = [v for v in value if isinstance(v, str)]
            continue
        if isinstance(value, str) and value in _ALLOWED[attr]:
            setattr(options, attr, value)
        else:
            logger.debug("Ignoring invalid %s=%r", key, value)
    return options


def coerce_user_config(raw: Any) -> UserConfig:
    """Accept ``{"global": {...}, "models": {name: {"options": {...}}}}``."""
    if isinstance(raw, UserConfig):
        return raw
    if not isinstance(raw, dict):
        return UserConfig()
    models: dict[str, ConfigOptions] = {}
    raw_models = raw.get("models")
    if isinstance(raw_models, dict):
        for name, entry in raw_models.items():
            if not isinstance(name, str) or not isinstance(entry, dict):
                continue
            opts = entry.get("options", entry)
            models[name] = coerce_config_options(opts)
    return UserConfig(
        global_options=coerce_config_options(raw.get("global", raw.get("options"))),
        models=models,
    )


def get_model_config(model_name: Any, user_config: Any = None) -> ConfigOptions:
    """Merge global options with the per-model options for *model_name*."""
    config = coerce_user_config(user_config)
    merged = ConfigOptions()
    per_model = config.models.get(model_name) if isinstance(model_name, str) else None
    for source in (config.global_options, per_model):
        if source is None:
            continue
        for f in fields(ConfigOptions):
            value = getattr(source, f.name)
            if value is not None:
                setattr(merged, f.name, list(value) if isinstance(value, list) else value)
    return merged


# ---------------------------------------------------------------------------
# Capability table
# ---------------------------------------------------------------------------

@dataclass
class ModelFlags:
    normalized: str
    original: str
    is_gpt51: bool
    is_codex_mini: bool
    is_codex_max: bool
    is_codex_family: bool
    is_lightweight: bool


def classify_model(original_model: Any) -> ModelFlags:
    normalized = normalize_model(original_model)
    original = original_model.lower() if isinstance(original_model, str) else normalized
    is_codex_mini = (
        normalized == GPT_51_CODEX_MINI
        or any(marker in original for marker in ("codex-mini", "codex mini", "codex_mini"))
    )
    is_codex_family = (
        normalized.startswith("gpt-5-codex")
        or normalized.startswith("gpt-5.1-codex")
        or ("codex" in original and not is_codex_mini)
    )
    is_lightweight = (
        not is_codex_mini
        and not is_codex_family
        and ("nano" in original or "mini" in original)
    )
    return ModelFlags(
        normalized=normalized,
        original=original,
        is_gpt51=normalized.startswith("gpt-5.1"),
        is_codex_mini=is_codex_mini,
        is_codex_max=normalized == GPT_51_CODEX_MAX,
        is_codex_family=is_codex_family,
        is_lightweight=is_lightweight,
    )


def default_effort_for(flags: ModelFlags) -> str:
    if flags.is_gpt51 and not flags.is_codex_family and not flags.is_codex_mini:
        return "none"
    if flags.is_codex_mini:
        return "medium"
    if flags.is_lightweight:
        return "minimal"
    return "medium"


def clamp_effort(effort: str, flags: ModelFlags) -> str:
    """Replace an effort the model cannot use with the nearest supported one."""
    if effort == "xhigh" and not flags.is_codex_max:
        effort = "high"

    if flags.is_codex_mini:
        return "high" if effort == "high" else "medium"
    if flags.is_codex_max or flags.is_codex_family:
        return "low" if effort in ("none", "minimal") else effort
    if flags.is_gpt51 and effort == "minimal":
        return "none"
    if not flags.is_gpt51 and effort == "none":
        return "minimal"
    return effort


def clamp_verbosity(verbosity: str | None, flags: ModelFlags) -> str:
    """Codex models only accept ``medium`` verbosity."""
    if verbosity not in TEXT_VERBOSITIES:
        return DEFAULT_VERBOSITY
    if flags.is_codex_family or flags.is_codex_mini:
        return DEFAULT_VERBOSITY
    return verbosity


def get_reasoning_config(original_model: Any, options: ConfigOptions | None = None) -> ReasoningConfig:
    options = options or ConfigOptions()
    flags = classify_model(original_model)
    requested = options.reasoning_effort or default_effort_for(flags)
    effort = clamp_effort(requested, flags)
    if effort != requested:
        logger.debug(
            "Reasoning effort %s not supported by %s; using %s",
            requested, flags.normalized, effort,
        )
    return ReasoningConfig(
        effort=effort,
        summary=options.reasoning_summary or DEFAULT_SUMMARY,
    )


def get_text_verbosity(original_model: Any, options: ConfigOptions | None = None) -> str:
    options = options or ConfigOptions()
    return clamp_verbosity(options.text_verbosity, classify_model(original_model))


def get_include(options: ConfigOptions | None = None) -> list[str]:
    if options and options.include:
        return list(options.include)
    return list(DEFAULT_INCLUDE)
