"""Provider clients, retry, streaming and routing for docpilot."""

from docpilot.llm.adapters import (
    DeepSeekAdapter,
    GeminiAdapter,
    GroqAdapter,
    OllamaAdapter,
    OpenAICompatibleAdapter,
    ProviderAdapter,
)
from docpilot.llm.cancellation import CancelToken, OperationAborted
from docpilot.llm.errors import ApiError, ErrorKind
from docpilot.llm.executor import RequestExecutor
from docpilot.llm.retry import RetryContext, RetryPolicy
from docpilot.llm.router import CompletionRouter
from docpilot.llm.stream import StreamDecoder

__all__ = [
    "ApiError",
    "CancelToken",
    "CompletionRouter",
    "DeepSeekAdapter",
    "ErrorKind",
    "GeminiAdapter",
    "GroqAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "OperationAborted",
    "ProviderAdapter",
    "RequestExecutor",
    "RetryContext",
    "RetryPolicy",
    "StreamDecoder",
]
