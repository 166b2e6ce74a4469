"""Shared fixtures for codex-bridge tests."""

from __future__ import annotations

import json

import pytest

from codex_bridge.core.session import SessionManager
from codex_bridge.types import BridgeConfig, Credentials


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def message(role: str, text: str, **extra) -> dict:
    item = {"type": "message", "role": role, "content": [{"type": "input_text", "text": text}]}
    item.update(extra)
    return item


def sse_stream(*events: dict) -> bytes:
    return b"".join(
        f"event: {e['type']}\ndata: {json.dumps(e)}\n\n".encode() for e in events
    )


def completed_event(response: dict) -> dict:
    return {"type": "response.completed", "response": response}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_manager(clock) -> SessionManager:
    return SessionManager(enabled=True, ttl_seconds=60, max_entries=3, clock=clock)


@pytest.fixture
def credentials():
    def provider() -> Credentials:
        return Credentials(access_token="tok-123", account_id="acct-456")
    return provider


@pytest.fixture
def bridge_config(tmp_path) -> BridgeConfig:
    config = BridgeConfig()
    config.upstream.base_url = "https://backend.test/backend-api"
    config.logging.request_log_dir = str(tmp_path / "request_log")
    return config
