"""Stage-tagged request logging to numbered JSON files.

Each call to :meth:`RequestLog.write` produces one file named
``<seq>_<timestamp>_<stage>.json`` in the log directory.  Old files are
pruned on startup so the directory holds at most ``max_files`` sets.
Write failures are logged and otherwise ignored; they never affect the
request being logged.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

BEFORE_TRANSFORM = "before-transform"
AFTER_TRANSFORM = "after-transform"
RESPONSE = "response"
ERROR_RESPONSE = "error-response"
STREAM_FULL = "stream-full"
STREAM_ERROR = "stream-error"

# A request writes up to this many stage files.
FILES_PER_REQUEST = 4


class RequestLog:
    def __init__(self, directory: str | Path | None, max_files: int = 50, enabled: bool = True) -> None:
        self.enabled = bool(enabled and directory)
        self.directory = Path(directory) if directory else None
        self.max_files = max_files
        self._seq = 0
        if self.enabled:
            self._prepare()

    def _prepare(self) -> None:
        if self.directory is None:
            self.enabled = False
            return
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            pruned = self.prune()
        except OSError as exc:
            logger.warning("Request log disabled: cannot use %s (%s)", self.directory, exc)
            self.enabled = False
            return
        logger.info("Request log: writing to %s (pruned %d old files)", self.directory, pruned)

    def prune(self) -> int:
        """Keep only the newest ``max_files`` request sets; returns files removed."""
        if self.directory is None or not self.directory.is_dir():
            return 0
        existing = sorted(self.directory.glob("*.json"), key=lambda p: p.stat().st_mtime)
        keep = max(0, self.max_files) * FILES_PER_REQUEST
        stale = existing[: max(0, len(existing) - keep)]
        for path in stale:
            path.unlink(missing_ok=True)
        return len(stale)

    def next_request(self) -> int:
        self._seq += 1
        return self._seq

    def write(self, stage: str, payload: dict[str, Any], seq: int | None = None) -> Path | None:
        if not self.enabled or self.directory is None:
            return None
        seq = self._seq if seq is None else seq
        ts = _dt.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = self.directory / f"{seq:06d}_{ts}_{stage}.json"
        record = {"stage": stage, "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(), **payload}
        try:
            path.write_text(json.dumps(record, ensure_ascii=False, default=str, indent=2), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.debug("Failed to write request log %s: %s", path, exc)
            return None
        return path
