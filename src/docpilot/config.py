"""Configuration management for docpilot."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from docpilot.llm.retry import RetryContext


class ProviderConfig(BaseModel):
    api_key: str | None = None
    base_url: str | None = None  # adapter default when unset
    free_tier_url: str | None = None  # used for keyless requests
    commercial_use: bool = True
    allow_keyless: bool = False
    use_shared_key: bool = True  # fall back to DocpilotConfig.shared_api_key
    auth_style: str | None = None  # "bearer" or a key header name; adapter default when unset
    models: list[str] = Field(default_factory=list)  # model ids routed to this provider
    timeout: float | None = None


class GenerationConfig(BaseModel):
    model: str = "gpt-4"
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 1.0
    system_prompt: str | None = None


class RetryConfig(BaseModel):
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def to_context(self) -> RetryContext:
        return RetryContext(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )


def _default_providers() -> dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(),
        "deepseek": ProviderConfig(
            commercial_use=False,
            allow_keyless=True,
            use_shared_key=False,
            free_tier_url="https://api-free.deepseek.com/v1",
        ),
        "groq": ProviderConfig(use_shared_key=False),
        "gemini": ProviderConfig(use_shared_key=False),
        "ollama": ProviderConfig(use_shared_key=False),
    }


class DocpilotConfig(BaseModel):
    providers: dict[str, ProviderConfig] = Field(default_factory=_default_providers)
    shared_api_key: str | None = None
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeout: float = 60  # seconds per request attempt
    app_id: str = "docpilot"

    def provider(self, name: str) -> ProviderConfig:
        """Settings for *name*, or defaults when it is not configured."""
        return self.providers.get(name) or ProviderConfig()


CONFIG_FILENAME = "docpilot.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[DocpilotConfig, Path | None]:
    """Load configuration from a YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when no
    file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./docpilot.yaml``
      3. User config dir: ``~/.docpilot/docpilot.yaml``

    Providers named in the file are merged over the built-in provider
    defaults, so a file that only sets ``openai.api_key`` keeps keyless
    DeepSeek access.
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".docpilot"):
            candidate = d / CONFIG_FILENAME
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        return DocpilotConfig(), None

    resolved = Path(config_path).expanduser()
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}

    providers = {
        name: cfg.model_dump(exclude_none=True)
        for name, cfg in _default_providers().items()
    }
    for name, overrides in (raw.get("providers") or {}).items():
        providers[name] = {**providers.get(name, {}), **(overrides or {})}
    raw["providers"] = providers

    return DocpilotConfig.model_validate(raw), resolved.resolve()
