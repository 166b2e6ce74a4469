"""All dataclasses and type aliases for codex-bridge."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Literal, Protocol, Union, runtime_checkable

# Wire items are kept as plain dicts; transforms return new dicts.
InputItem = dict[str, Any]
RequestBody = dict[str, Any]

ReasoningEffort = Literal["none", "minimal", "low", "medium", "high", "xhigh"]
ReasoningSummary = Literal["auto", "concise", "detailed"]
TextVerbosity = Literal["low", "medium", "high"]

REASONING_EFFORTS: tuple[str, ...] = ("none", "minimal", "low", "medium", "high", "xhigh")
REASONING_SUMMARIES: tuple[str, ...] = ("auto", "concise", "detailed")
TEXT_VERBOSITIES: tuple[str, ...] = ("low", "medium", "high")


# ---------------------------------------------------------------------------
# Model configuration
# ---------------------------------------------------------------------------

@dataclass
class ConfigOptions:
    """Reasoning/text options, either global or for one client model name."""
    reasoning_effort: str | None = None
    reasoning_summary: str | None = None
    text_verbosity: str | None = None
    include: list[str] | None = None


@dataclass
class UserConfig:
    """Global options plus per-model overrides keyed by the client-facing name."""
    global_options: ConfigOptions = field(default_factory=ConfigOptions)
    models: dict[str, ConfigOptions] = field(default_factory=dict)


@dataclass
class ReasoningConfig:
    effort: str
    summary: str

    def to_dict(self) -> dict[str, str]:
        return {"effort": self.effort, "summary": self.summary}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@dataclass
class ConversationMemory:
    """Per-conversation state owned by the SessionManager."""
    id: str
    prompt_cache_key: str
    store: bool = False
    entries: list[InputItem] = field(default_factory=list)  # last transformed input
    prefix_hash: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)
    last_cached_tokens: int | None = None
    bridge_injected: bool = False
    compaction_base_system: list[InputItem] = field(default_factory=list)
    compaction_summary: InputItem | None = None
    compacted_item_count: int = 0  # client items covered by the summary
    last_access: float = field(default_factory=time.monotonic)


@dataclass
class SessionContext:
    """Ephemeral view of a conversation for one in-flight request."""
    session_id: str
    memory: ConversationMemory
    enabled: bool = True
    preserve_ids: bool = True
    is_new: bool = False
    is_compaction_continuation: bool = False


@dataclass
class PromptCacheKeyResult:
    key: str
    source: Literal["existing", "metadata", "generated"]
    source_key: str | None = None
    fork_source_key: str | None = None
    hint_keys: list[str] = field(default_factory=list)
    unusable_keys: list[str] = field(default_factory=list)
    fork_hint_keys: list[str] = field(default_factory=list)
    fork_unusable_keys: list[str] = field(default_factory=list)
    fallback_hash: str | None = None


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

@dataclass
class CompactionSettings:
    enabled: bool = True
    auto_limit_tokens: int | None = None
    auto_min_messages: int = 8


@dataclass
class CompactionOptions:
    """Per-request compaction inputs: settings plus the pre-transform input."""
    settings: CompactionSettings = field(default_factory=CompactionSettings)
    command_text: str | None = None
    original_input: list[InputItem] = field(default_factory=list)
    preserve_ids: bool = False
    client_item_count: int | None = None


@dataclass
class ConversationSerialization:
    transcript: str = ""
    total_turns: int = 0
    dropped_turns: int = 0


@dataclass
class CompactionDecision:
    mode: Literal["command", "auto"]
    preserved_system: list[InputItem] = field(default_factory=list)
    serialization: ConversationSerialization = field(default_factory=ConversationSerialization)
    reason: str | None = None
    approx_tokens: int | None = None
    client_item_count: int = 0


# ---------------------------------------------------------------------------
# Request transformation
# ---------------------------------------------------------------------------

@dataclass
class TransformResult:
    body: RequestBody
    original_model: str | None = None
    compaction_decision: CompactionDecision | None = None
    session_context: SessionContext | None = None

    @property
    def has_tools(self) -> bool:
        return self.body.get("tools") is not None


# ---------------------------------------------------------------------------
# Upstream access
# ---------------------------------------------------------------------------

@dataclass
class Credentials:
    """Access token and ChatGPT account id supplied by the auth layer."""
    access_token: str
    account_id: str


@runtime_checkable
class CredentialsProvider(Protocol):
    def __call__(self) -> Union[Credentials, Awaitable[Credentials]]: ...


class UpstreamError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class SessionConfig:
    ttl_seconds: float = 30 * 60
    max_entries: int = 100
    force_store: bool = False


@dataclass
class UpstreamConfig:
    base_url: str = "https://chatgpt.com/backend-api"
    timeout: float = 120.0
    connect_timeout: float = 10.0


@dataclass
class LoggingConfig:
    debug: bool = False
    enable_request_logging: bool = False
    request_log_dir: str = ".codex-bridge/request_log"
    request_log_max_files: int = 50


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5858


@dataclass
class BridgeConfig:
    codex_mode: bool = True
    enable_prompt_caching: bool = True
    enable_codex_compaction: bool = True
    auto_compact_token_limit: int | None = None
    auto_compact_min_messages: int = 8
    instructions_path: str | None = None
    client_prompt_path: str | None = None
    session: SessionConfig = field(default_factory=SessionConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    user_config: UserConfig = field(default_factory=UserConfig)

    @property
    def compaction(self) -> CompactionSettings:
        return CompactionSettings(
            enabled=self.enable_codex_compaction,
            auto_limit_tokens=self.auto_compact_token_limit,
            auto_min_messages=self.auto_compact_min_messages,
        )
