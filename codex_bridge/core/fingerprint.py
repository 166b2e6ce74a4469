"""Content hashing for change detection and duplicate-prompt checks."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .items import extract_text_from_item, is_system_message


def stable_dumps(value: Any) -> str:
    """Canonical JSON: sorted keys, no whitespace, non-JSON values stringified."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_input_hash(items: Any) -> str:
    """Stable hash of an input list; identical content gives identical hashes."""
    if not isinstance(items, list):
        return "empty"
    return hashlib.sha1(stable_dumps(items).encode("utf-8")).hexdigest()


def has_prompt_in_conversation(items: Any, prompt: str) -> bool:
    """True if any system/developer item carries exactly *prompt*."""
    if not isinstance(items, list) or not prompt:
        return False
    target = content_hash(prompt)
    for item in items:
        if not is_system_message(item):
            continue
        text = extract_text_from_item(item)
        if text and content_hash(text) == target:
            return True
    return False
