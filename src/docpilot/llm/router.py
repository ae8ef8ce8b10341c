"""Completion router: model id -> backend, credentials, retries, results.

The router holds no per-call state.  Configuration is injected once (as a
``DocpilotConfig`` or a zero-argument callable returning the current one) and
deep-copied at the start of every call, so settings changed mid-call never
leak into a request that is already running.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

import httpx

from docpilot.events.bus import EventBus
from docpilot.types import (
    AccessStatus,
    AdapterResult,
    CompletionEvent,
    CompletionOptions,
    CompletionResult,
    EventType,
    GenerationParams,
    PromptInput,
    ProviderCredential,
)

from .adapters import DeepSeekAdapter, ProviderAdapter, default_adapters
from .errors import ApiError, display_name
from .retry import RetryPolicy

if TYPE_CHECKING:  # pragma: no cover - typing only
    from docpilot.config import DocpilotConfig

_logger = logging.getLogger(__name__)

ConfigSource = Union["DocpilotConfig", Callable[[], "DocpilotConfig"]]
RoutePredicate = Callable[[str], bool]

FALLBACK_PROVIDER = "openai"


def _config_error(message: str, provider: str = "unknown", **context: Any) -> ApiError:
    return ApiError(message, 0, provider, {"config_error": True, **context})


class CompletionRouter:
    """Single entry point for text generation and image analysis.

    Parameters
    ----------
    config:
        A ``DocpilotConfig`` or a callable returning the current one.
    adapters:
        Provider name -> adapter.  Defaults to one adapter per supported
        backend.
    event_bus:
        Optional ``EventBus`` receiving request/response/error/retry events.
    retry_policy:
        Defaults to a ``RetryPolicy`` using the configured retry settings.
    transport:
        httpx transport for the default adapters (tests pass a MockTransport).
    """

    def __init__(
        self,
        config: ConfigSource,
        adapters: dict[str, ProviderAdapter] | None = None,
        *,
        event_bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config_source = config
        if adapters is None:
            adapters = default_adapters(transport=transport, app_id=self.config().app_id)
        self._adapters = dict(adapters)
        self._bus = event_bus
        self._retry = retry_policy or RetryPolicy()
        self._routes: list[tuple[RoutePredicate, str]] = [
            (lambda model: model.startswith("deepseek-"), "deepseek"),
            (lambda model: model.startswith("gemini-"), "gemini"),
        ]

    # ------------------------------------------------------------------
    # Configuration and routing
    # ------------------------------------------------------------------

    def config(self) -> DocpilotConfig:
        """Deep copy of the current configuration."""
        source = self._config_source
        current = source() if callable(source) else source
        return current.model_copy(deep=True)

    def register(self, predicate: RoutePredicate, provider: str) -> None:
        """Route model ids matching *predicate* to *provider*.

        Custom routes are checked before the built-in prefix routes but after
        an explicit ``provider/model`` prefix.
        """
        self._routes.insert(0, (predicate, provider))

    def adapter(self, provider: str) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise _config_error(
                f"No adapter registered for provider '{provider}'", provider,
            ) from None

    def resolve_backend(self, model: str, config: DocpilotConfig) -> tuple[str, str]:
        """Return ``(provider, model id to send)`` for *model*."""
        if not model or not model.strip():
            raise _config_error("No model specified")

        prefix, sep, rest = model.partition("/")
        if sep and rest and prefix in self._adapters:
            return prefix, rest

        provider = None
        for predicate, name in self._routes:
            if predicate(model):
                provider = name
                break
        if provider is None:
            for name, settings in config.providers.items():
                if model in settings.models:
                    provider = name
                    break
        provider = provider or FALLBACK_PROVIDER

        if provider not in self._adapters:
            raise _config_error(
                f"No adapter registered for provider '{provider}'", provider, model=model,
            )
        return provider, model

    def resolve_credential(self, provider: str, config: DocpilotConfig) -> ProviderCredential:
        """Pick the credential for one call, failing before any network I/O."""
        adapter = self.adapter(provider)
        settings = config.provider(provider)
        base_url = settings.base_url or adapter.default_base_url
        auth_style = settings.auth_style or adapter.auth_style

        if adapter.supports_keyless and settings.allow_keyless and not settings.commercial_use:
            endpoint = (
                settings.free_tier_url
                or getattr(adapter, "free_tier_url", None)
                or base_url
            )
            return ProviderCredential(
                provider, None, endpoint,
                commercial_use=False, allow_keyless=True, auth_style=auth_style,
            )

        key = settings.api_key
        if not key and settings.use_shared_key:
            key = config.shared_api_key
        if key:
            return ProviderCredential(
                provider, key, base_url,
                commercial_use=settings.commercial_use,
                allow_keyless=settings.allow_keyless,
                auth_style=auth_style,
            )

        if not adapter.requires_key:
            return ProviderCredential(
                provider, None, base_url,
                commercial_use=settings.commercial_use, auth_style=auth_style,
            )

        if settings.commercial_use and adapter.supports_keyless:
            raise ApiError(
                f"Commercial use of {display_name(provider)} requires an API key",
                401, provider,
                {"config_error": True, "code": "commercial_use_required"},
            )
        raise ApiError(
            f"No API key configured for {display_name(provider)}",
            401, provider,
            {"config_error": True, "code": "missing_api_key"},
        )

    def _params(
        self,
        model: str,
        provider: str,
        options: CompletionOptions,
        config: DocpilotConfig,
    ) -> GenerationParams:
        defaults = config.generation

        def pick(value: Any, default: Any) -> Any:
            return default if value is None else value

        timeout = options.timeout or config.provider(provider).timeout or config.timeout
        return GenerationParams(
            model=model,
            temperature=pick(options.temperature, defaults.temperature),
            max_tokens=pick(options.max_tokens, defaults.max_tokens),
            top_p=pick(options.top_p, defaults.top_p),
            system_prompt=pick(options.system_prompt, defaults.system_prompt),
            stream=options.stream,
            on_chunk=options.on_chunk,
            cancel=options.cancel,
            timeout=float(timeout),
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: PromptInput,
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Generate text for *prompt* (a string or a list of chat messages).

        Streaming calls that stop early return the partial text with
        ``result.error`` set instead of raising.
        """
        options = options or CompletionOptions()
        config = self.config()
        provider, model, credential, params = self._prepare(options, config)
        adapter = self._adapters[provider]
        return await self._run(
            "complete", provider, params, options, config,
            lambda: adapter.complete(prompt, params, credential),
        )

    async def analyze_image(
        self,
        image: bytes | str,
        prompt: str,
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Ask a vision-capable model about *image* (raw bytes or base64)."""
        options = options or CompletionOptions()
        config = self.config()
        provider, model, credential, params = self._prepare(options, config)
        adapter = self._adapters[provider]
        return await self._run(
            "analyze_image", provider, params, options, config,
            lambda: adapter.analyze_image(image, prompt, params, credential),
        )

    async def list_models(self, provider: str) -> list[str]:
        config = self.config()
        adapter = self.adapter(provider)
        credential = self.resolve_credential(provider, config)
        return await adapter.list_models(credential)

    async def check_access(self, provider: str = "deepseek") -> AccessStatus:
        """Probe commercial access for a provider key (DeepSeek only)."""
        adapter = self.adapter(provider)
        if not isinstance(adapter, DeepSeekAdapter):
            raise _config_error(
                f"Access checks are not supported for {display_name(provider)}", provider,
            )
        return await adapter.check_access(self.resolve_credential(provider, self.config()))

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(
        self,
        options: CompletionOptions,
        config: DocpilotConfig,
    ) -> tuple[str, str, ProviderCredential, GenerationParams]:
        requested = options.model if options.model is not None else config.generation.model
        provider, model = self.resolve_backend(requested, config)
        credential = self.resolve_credential(provider, config)
        params = self._params(model, provider, options, config)
        return provider, model, credential, params

    async def _run(
        self,
        operation: str,
        provider: str,
        params: GenerationParams,
        options: CompletionOptions,
        config: DocpilotConfig,
        call: Callable[[], Awaitable[AdapterResult]],
    ) -> CompletionResult:
        retry_context = options.retry or config.retry.to_context()
        call_id = f"call_{uuid.uuid4().hex[:12]}"
        event_data = {"operation": operation, "provider": provider, "model": params.model}
        await self._emit(call_id, EventType.COMPLETION_REQUEST, stream=params.stream, **event_data)
        start = time.monotonic()

        async def attempt(number: int) -> AdapterResult:
            if number > 1:
                await self._emit(call_id, EventType.COMPLETION_RETRY, attempt=number, **event_data)
            return await call()

        try:
            outcome = await self._retry.execute(attempt, retry_context, cancel=options.cancel)
        except ApiError as exc:
            _logger.warning("%s %s failed: %s", provider, operation, exc)
            await self._emit(
                call_id, EventType.COMPLETION_ERROR,
                error=exc.message, kind=exc.kind.value, status=exc.status_code,
                **event_data,
            )
            raise

        latency_ms = (time.monotonic() - start) * 1000
        result = CompletionResult(
            content=outcome.content,
            model=outcome.model or params.model,
            provider=provider,
            total_tokens=outcome.total_tokens,
            streaming=outcome.streaming,
            error=outcome.error,
            latency_ms=latency_ms,
        )
        if result.error is not None:
            await self._emit(
                call_id, EventType.COMPLETION_ERROR,
                error=result.error.message, kind=result.error.kind.value,
                partial_length=len(result.content), **event_data,
            )
        else:
            await self._emit(
                call_id, EventType.COMPLETION_RESPONSE,
                total_tokens=result.total_tokens, latency_ms=latency_ms, **event_data,
            )
        _logger.info(
            "%s %s via %s: %d chars, %d tokens, %.0fms",
            operation, result.model, provider, len(result.content),
            result.total_tokens, latency_ms,
        )
        return result

    async def _emit(self, call_id: str, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            await self._bus.emit(CompletionEvent(type=event_type, data=data, call_id=call_id))
