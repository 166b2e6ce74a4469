"""Structural cloning of wire items.

``deep_clone`` copies JSON-shaped data (dicts, lists, tuples and scalars).
Anything else is returned by reference. Cyclic input is rejected with
``ValueError`` since wire items are trees; callers that receive client
data treat that as a malformed item.
"""

from __future__ import annotations

from typing import Any, TypeVar

from ..types import InputItem

T = TypeVar("T")


def deep_clone(value: T) -> T:
    return _clone(value, set())


def _clone(value: Any, seen: set[int]) -> Any:
    if isinstance(value, dict):
        marker = id(value)
        if marker in seen:
            raise ValueError("cannot clone cyclic structure")
        seen.add(marker)
        try:
            return {k: _clone(v, seen) for k, v in value.items()}
        finally:
            seen.discard(marker)
    if isinstance(value, (list, tuple)):
        marker = id(value)
        if marker in seen:
            raise ValueError("cannot clone cyclic structure")
        seen.add(marker)
        try:
            return [_clone(v, seen) for v in value]
        finally:
            seen.discard(marker)
    return value


def clone_input_items(items: Any) -> list[InputItem]:
    """Clone a list of items; anything that is not a non-empty list yields ``[]``."""
    if not isinstance(items, list) or not items:
        return []
    return [deep_clone(item) for item in items]
