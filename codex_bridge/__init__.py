"""codex-bridge: a stateless Codex backend presented as a stateful Responses API."""

from .config import load_config
from .core.session import SessionManager
from .core.transformer import transform_request
from .types import (
    BridgeConfig,
    CompactionDecision,
    Credentials,
    SessionContext,
    TransformResult,
    UpstreamError,
    UserConfig,
)

__version__ = "0.1.0"

__all__ = [
    "transform_request",
    "SessionManager",
    "load_config",
    "BridgeConfig",
    "CompactionDecision",
    "Credentials",
    "SessionContext",
    "TransformResult",
    "UpstreamError",
    "UserConfig",
]
