"""Map client-supplied model names onto canonical backend model IDs.

Rules are an ordered table of ``(predicate, canonical_id)`` pairs,
evaluated most-specific first against a folded form of the name
(lowercase, ``.``/whitespace/``_``/``/`` replaced with ``-``).
"""

from __future__ import annotations

import re
from typing import Any, Callable

DEFAULT_MODEL = "gpt-5.1"

GPT_5 = "gpt-5"
GPT_5_CODEX = "gpt-5-codex"
GPT_51 = "gpt-5.1"
GPT_51_CODEX = "gpt-5.1-codex"
GPT_51_CODEX_MINI = "gpt-5.1-codex-mini"
GPT_51_CODEX_MAX = "gpt-5.1-codex-max"

CANONICAL_MODELS: frozenset[str] = frozenset({
    GPT_5, GPT_5_CODEX, GPT_51, GPT_51_CODEX, GPT_51_CODEX_MINI, GPT_51_CODEX_MAX,
})

_FOLD_RE = re.compile(r"[\s_/]+")

Predicate = Callable[[str], bool]


def fold_model_name(model: str) -> str:
    return _FOLD_RE.sub("-", model.lower().replace(".", "-"))


def _has_gpt51(name: str) -> bool:
    return "gpt-5-1" in name or "gpt51" in name


MODEL_RULES: list[tuple[Predicate, str]] = [
    (lambda n: "gpt-5-1-codex-mini" in n or (_has_gpt51(n) and "codex-mini" in n), GPT_51_CODEX_MINI),
    (lambda n: "codex-mini" in n, GPT_51_CODEX_MINI),
    (lambda n: "codex-max" in n or "codexmax" in n, GPT_51_CODEX_MAX),
    (lambda n: "gpt-5-1-codex" in n or (_has_gpt51(n) and "codex" in n), GPT_51_CODEX),
    (_has_gpt51, GPT_51),
    (lambda n: "gpt-5-codex-mini" in n or "codex-mini-latest" in n, GPT_51_CODEX_MINI),
    (lambda n: "gpt-5-codex" in n or ("codex" in n and "mini" not in n), GPT_5_CODEX),
    (lambda n: "gpt-5" in n, GPT_5),
]


def normalize_model(model: Any, default: str = DEFAULT_MODEL) -> str:
    """Return the canonical model ID for *model*; never raises."""
    if not isinstance(model, str) or not model.strip():
        return default
    folded = fold_model_name(model)
    for predicate, canonical in MODEL_RULES:
        if predicate(folded):
            return canonical
    return default
