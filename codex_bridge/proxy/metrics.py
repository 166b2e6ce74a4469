"""Event collector for the bridge pipeline."""

from __future__ import annotations

import statistics
import time
from collections import deque
from datetime import datetime, timezone


class BridgeMetrics:
    """Collects structured events from the fetch pipeline.

    Events are plain dicts with a ``type`` key (``request``, ``response``,
    ``compaction``, ``command``, ``error``).  Only the most recent
    ``max_events`` are kept.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._seq = 0
        self._counts: dict[str, int] = {}

    def record(self, event: dict) -> None:
        """Append an event. Adds ``_seq`` and ``ts``."""
        event = dict(event)
        event["_seq"] = self._seq
        if "ts" not in event:
            event["ts"] = datetime.now(timezone.utc).isoformat()
        self._seq += 1
        self._events.append(event)
        kind = event.get("type", "unknown")
        self._counts[kind] = self._counts.get(kind, 0) + 1

    def snapshot(self) -> dict:
        responses = [e for e in self._events if e.get("type") == "response"]
        compactions = [e for e in self._events if e.get("type") == "compaction"]
        upstream_values = [r["upstream_ms"] for r in responses if "upstream_ms" in r]
        cached_values = [r["cached_tokens"] for r in responses if isinstance(r.get("cached_tokens"), int)]
        errors = sum(1 for r in responses if r.get("error"))

        return {
            "type": "snapshot",
            "uptime_s": round(time.time() - self.start_time, 1),
            "total_requests": self._counts.get("request", 0),
            "total_responses": self._counts.get("response", 0),
            "total_errors": errors,
            "total_compactions": self._counts.get("compaction", 0),
            "total_commands": self._counts.get("command", 0),
            "avg_upstream_ms": round(statistics.mean(upstream_values), 1) if upstream_values else 0,
            "total_cached_tokens": sum(cached_values),
            "recent_compactions": list(compactions[-10:]),
        }
