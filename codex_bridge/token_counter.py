"""Token counting utilities."""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 chars per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_chars_tokens(char_count: int) -> int:
    """Token estimate for an already-summed character count."""
    return max(0, math.ceil(char_count / CHARS_PER_TOKEN))
