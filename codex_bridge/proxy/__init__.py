from .server import create_app
from .fetcher import CodexFetcher, create_codex_headers, rewrite_url_for_codex
from .metrics import BridgeMetrics
from .request_log import RequestLog
from .responses import handle_error_response, handle_success_response

__all__ = [
    "create_app",
    "CodexFetcher",
    "BridgeMetrics",
    "RequestLog",
    "create_codex_headers",
    "rewrite_url_for_codex",
    "handle_success_response",
    "handle_error_response",
]
