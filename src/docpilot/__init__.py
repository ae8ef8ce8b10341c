"""docpilot: resilient multi-provider completion client."""

__version__ = "0.1.0"

from docpilot.config import DocpilotConfig, load_config  # noqa: E402
from docpilot.llm.router import CompletionRouter  # noqa: E402
from docpilot.types import CompletionOptions, CompletionResult  # noqa: E402

__all__ = [
    "CompletionOptions",
    "CompletionResult",
    "CompletionRouter",
    "DocpilotConfig",
    "load_config",
]
