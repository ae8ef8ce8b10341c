"""Error taxonomy for provider calls.

A single ``ApiError`` type carries the HTTP status, provider identity and
request context.  Its *kind* is derived by pure classification functions
rather than by subclassing, and provider-specific user messages come from a
lookup table keyed by ``(provider, pattern)``.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Any


class ErrorKind(enum.Enum):
    """Failure categories used for retry decisions and user messages."""

    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CONTENT_POLICY = "content_policy"
    UNKNOWN = "unknown"


class ApiError(Exception):
    """A failed provider request.

    ``status_code`` is 0 when the failure did not come from an HTTP status
    (connection errors, timeouts, caller aborts, configuration problems).
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        provider: str = "unknown",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code or 0)
        self.provider = provider or "unknown"
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        parts = [self.message]
        parts.append(f"[provider={self.provider}]")
        if self.status_code:
            parts.append(f"[status={self.status_code}]")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"ApiError({self.message!r}, status_code={self.status_code}, "
            f"provider={self.provider!r})"
        )

    @property
    def kind(self) -> ErrorKind:
        return classify(self)

    @property
    def retryable(self) -> bool:
        return is_retryable(self)

    @property
    def friendly_message(self) -> str:
        return friendly_message(self)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_TIMEOUT_PATTERN = re.compile(r"time[sd]?[\s_-]?out|abort", re.IGNORECASE)

_CONTENT_POLICY_MARKERS = (
    "content_filter",
    "content_policy",
    "content management policy",
    "blocked by safety",
    "responsible ai",
)


def error_details(data: Any, fallback: str) -> tuple[str, str | None]:
    """Extract ``(message, code)`` from a provider error body or stream payload."""
    if not isinstance(data, dict):
        return fallback, None
    err = data.get("error")
    if isinstance(err, dict):
        code = err.get("code") or err.get("type") or err.get("status")
        return str(err.get("message") or fallback), str(code) if code else None
    if isinstance(err, str) and err:
        return err, None
    if data.get("message"):
        return str(data["message"]), None
    return fallback, None


def _searchable(error: ApiError) -> str:
    """Message plus any provider error code, lowercased for matching."""
    code = error.context.get("code") or ""
    return f"{error.message} {code}".lower()


def is_auth_error(error: ApiError) -> bool:
    return error.status_code in (401, 403)


def is_rate_limit_error(error: ApiError) -> bool:
    return error.status_code == 429


def is_server_error(error: ApiError) -> bool:
    return error.status_code >= 500


def is_timeout(error: ApiError) -> bool:
    return bool(_TIMEOUT_PATTERN.search(error.message))


def is_stream_error(error: ApiError) -> bool:
    """True for an error the provider reported inside a streamed 200 response."""
    return bool(error.context.get("stream_error"))


def is_network_error(error: ApiError) -> bool:
    if error.status_code != 0 or is_timeout(error):
        return False
    return not (error.context.get("config_error") or is_stream_error(error))


def is_content_policy_error(error: ApiError) -> bool:
    text = _searchable(error)
    return any(marker in text for marker in _CONTENT_POLICY_MARKERS)


def is_caller_abort(error: ApiError) -> bool:
    """True when the request was stopped by the caller's own cancel token."""
    return error.context.get("aborted_by") == "caller"


def classify(error: ApiError) -> ErrorKind:
    """Return the ``ErrorKind`` for *error*.

    Content-policy matches win over status codes because providers report
    filtered prompts as 400 or 403 responses.
    """
    if is_content_policy_error(error):
        return ErrorKind.CONTENT_POLICY
    if is_auth_error(error):
        return ErrorKind.AUTH
    if is_rate_limit_error(error):
        return ErrorKind.RATE_LIMIT
    if is_server_error(error):
        return ErrorKind.SERVER
    if is_timeout(error) and not is_stream_error(error):
        return ErrorKind.TIMEOUT
    if is_network_error(error):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


_RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.SERVER,
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
})


def is_retryable(error: ApiError) -> bool:
    """Transient failures only; never auth, content policy or caller aborts."""
    if is_caller_abort(error) or error.context.get("config_error"):
        return False
    return classify(error) in _RETRYABLE_KINDS


# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

PROVIDER_NAMES: dict[str, str] = {
    "openai": "OpenAI",
    "azure": "Azure OpenAI",
    "deepseek": "DeepSeek",
    "groq": "Groq",
    "gemini": "Google Gemini",
    "ollama": "Ollama",
}

# (provider, lowercase pattern, message).  "*" matches any provider.
_MESSAGE_OVERRIDES: list[tuple[str, str, str]] = [
    (
        "deepseek", "commercial_use_required",
        "This operation requires commercial use. Please enable commercial "
        "usage in settings and provide an API key.",
    ),
    (
        "deepseek", "token_limit_exceeded",
        "Input is too long for the DeepSeek model. Please reduce the length "
        "of your text.",
    ),
    (
        "openai", "insufficient_quota",
        "Your OpenAI account has insufficient credit. Please check your "
        "billing status.",
    ),
    (
        "openai", "invalid_api_key",
        "Invalid OpenAI API key. Please check your key and try again.",
    ),
    (
        "openai", "context_length_exceeded",
        "Input is too long for the OpenAI model. Please reduce the length of "
        "your text.",
    ),
    (
        "openai", "content_filter",
        "OpenAI content filter triggered. Please modify your prompt and try "
        "again.",
    ),
    (
        "groq", "invalid_key",
        "Invalid Groq API key. Please check your key and try again.",
    ),
    (
        "groq", "model_not_found",
        "The requested model was not found. Please check model availability "
        "in your Groq account.",
    ),
    (
        "gemini", "api_key_invalid",
        "Invalid Google Gemini API key. Please check your key and try again.",
    ),
    (
        "ollama", "not found",
        "The model is not installed locally. Pull it with `ollama pull "
        "<model>` and try again.",
    ),
    (
        "*", "context_length_exceeded",
        "Input is too long for the selected model. Please reduce the length "
        "of your text.",
    ),
]


def display_name(provider: str) -> str:
    return PROVIDER_NAMES.get(provider, provider)


def _override_for(error: ApiError) -> str | None:
    text = _searchable(error)
    for provider, pattern, message in _MESSAGE_OVERRIDES:
        if provider not in ("*", error.provider):
            continue
        if pattern in text:
            return message
    return None


def friendly_message(error: ApiError) -> str:
    """Human-readable message for *error*, safe to show in the UI."""
    override = _override_for(error)
    if override:
        return override

    name = display_name(error.provider)
    kind = classify(error)

    if kind is ErrorKind.CONTENT_POLICY:
        return error.message
    if kind is ErrorKind.AUTH:
        return f"Authentication failed with {name}. Please check your API key."
    if kind is ErrorKind.RATE_LIMIT:
        retry_after = error.context.get("retry_after")
        if retry_after:
            return (
                f"Rate limit exceeded for {name}. "
                f"Please wait {float(retry_after):.0f} seconds and try again."
            )
        return f"Rate limit exceeded for {name}. Please try again later."
    if kind is ErrorKind.SERVER:
        return f"{name} server error. The service might be experiencing issues."
    if kind is ErrorKind.TIMEOUT:
        if is_caller_abort(error):
            return f"Request to {name} was cancelled."
        return f"Request to {name} timed out. Please check your internet connection."
    if kind is ErrorKind.NETWORK:
        return (
            f"Network error when connecting to {name}. "
            "Please check your internet connection."
        )
    return f"Error communicating with {name}: {error.message}"


def tag_provider(error: BaseException, provider: str, **context: Any) -> ApiError:
    """Stamp *provider* and extra request context onto *error*.

    Non-``ApiError`` exceptions are wrapped with status 0 and chained.
    Context keys already present on the error are kept.
    """
    if not isinstance(error, ApiError):
        wrapped = ApiError(str(error) or type(error).__name__, 0, provider, context)
        wrapped.__cause__ = error
        return wrapped
    error.provider = provider
    for key, value in context.items():
        error.context.setdefault(key, value)
    return error
