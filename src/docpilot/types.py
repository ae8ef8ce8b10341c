"""Shared data types for docpilot."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

if TYPE_CHECKING:  # pragma: no cover - typing only
    from docpilot.llm.cancellation import CancelToken
    from docpilot.llm.errors import ApiError
    from docpilot.llm.retry import RetryContext


Message = dict[str, Any]
PromptInput = Union[str, list[Message]]


# ---------------------------------------------------------------------------
# Request / stream types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestSpec:
    """One outbound HTTP call, fully described before it is sent."""

    path: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    params: dict[str, str] = field(default_factory=dict)
    cancel: CancelToken | None = None
    base_url: str | None = None
    timeout: float = 60.0
    stream: bool = False
    api_key: str | None = None
    auth_style: str = "bearer"  # "bearer" or the name of a key header
    provider: str = "unknown"


@dataclass(frozen=True)
class StreamFrame:
    """A single decoded delta plus the running accumulated text."""

    delta: str
    text: str
    finished: bool = False


@dataclass
class StreamResult:
    """Outcome of a streamed request.

    ``error`` is set when the stream stopped early; ``text`` then holds
    whatever had been decoded up to that point.
    """

    text: str = ""
    frames: int = 0
    error: ApiError | None = None


ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


# ---------------------------------------------------------------------------
# Credentials / options / results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderCredential:
    """Credentials resolved for one call.  Never cached across calls."""

    provider: str
    api_key: str | None
    endpoint: str
    commercial_use: bool = True
    allow_keyless: bool = False
    auth_style: str | None = None  # adapter default when unset

    @property
    def keyless(self) -> bool:
        return self.api_key is None and self.allow_keyless and not self.commercial_use

    def __repr__(self) -> str:
        key = "***" if self.api_key else None
        return (
            f"ProviderCredential(provider={self.provider!r}, api_key={key!r}, "
            f"endpoint={self.endpoint!r}, commercial_use={self.commercial_use}, "
            f"allow_keyless={self.allow_keyless})"
        )


@dataclass
class CompletionOptions:
    """Per-call overrides.  ``None`` means "use the configured default"."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    system_prompt: str | None = None
    stream: bool = False
    on_chunk: ChunkCallback | None = None
    cancel: CancelToken | None = None
    timeout: float | None = None
    retry: RetryContext | None = None


@dataclass
class GenerationParams:
    """Fully resolved generation settings handed to an adapter."""

    model: str
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 1.0
    system_prompt: str | None = None
    stream: bool = False
    on_chunk: ChunkCallback | None = None
    cancel: CancelToken | None = None
    timeout: float = 60.0


@dataclass
class AdapterResult:
    """What an adapter extracted from a provider response."""

    content: str
    total_tokens: int = 0
    streaming: bool = False
    error: ApiError | None = None
    model: str = ""


@dataclass
class CompletionResult:
    """Normalized result returned to callers."""

    content: str
    model: str
    provider: str
    total_tokens: int = 0
    streaming: bool = False
    error: ApiError | None = None
    latency_ms: float = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AccessStatus:
    """Result of probing a provider key for (commercial) access."""

    valid: bool
    commercial: bool
    message: str


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events published by the completion router."""

    COMPLETION_REQUEST = "completion.request"
    COMPLETION_RESPONSE = "completion.response"
    COMPLETION_ERROR = "completion.error"
    COMPLETION_RETRY = "completion.retry"


@dataclass
class CompletionEvent:
    """One step of a router call, delivered through the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""
    timestamp: float = field(default_factory=time.time)
