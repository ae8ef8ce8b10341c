"""Provider adapters.

Each adapter knows one backend's wire format: how to build the request body,
which headers and query parameters carry credentials, and where the text and
token usage live in the response.  Transport, cancellation and error mapping
are delegated to ``RequestExecutor``.

Supported backends:
- ``openai`` / ``azure``: OpenAI chat completions
- ``deepseek``: OpenAI-compatible, with keyless non-commercial access
- ``groq``: OpenAI-compatible
- ``gemini``: Google Generative Language API
- ``ollama``: local ``/api/generate``
"""

from __future__ import annotations

import base64
import logging
from dataclasses import replace
from typing import Any

import httpx

from docpilot.types import (
    AccessStatus,
    AdapterResult,
    GenerationParams,
    Message,
    PromptInput,
    ProviderCredential,
    RequestSpec,
    StreamFrame,
)

from .errors import ApiError, tag_provider
from .executor import FrameCallback, RequestExecutor

_logger = logging.getLogger(__name__)

DEFAULT_VISION_PROMPT = "You are a helpful assistant that analyzes images."

# Magic-number prefixes used to guess an image MIME type
_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


# ---------------------------------------------------------------------------
# Message helpers
# ---------------------------------------------------------------------------

def to_messages(prompt: PromptInput, system_prompt: str | None = None) -> list[Message]:
    """Normalize a prompt string or message list into chat messages.

    A configured system prompt is prepended unless the list already starts
    with a system message.
    """
    if isinstance(prompt, str):
        messages: list[Message] = [{"role": "user", "content": prompt}]
    else:
        messages = [dict(m) for m in prompt]
    if system_prompt and not (messages and messages[0].get("role") == "system"):
        messages.insert(0, {"role": "system", "content": system_prompt})
    return messages


def guess_image_type(data: bytes) -> str:
    for signature, mime in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def image_data_url(image: bytes | str, mime_type: str | None = None) -> str:
    """Return a ``data:`` URL for raw image bytes or a base64 string."""
    if isinstance(image, str):
        if image.startswith("data:"):
            return image
        return f"data:{mime_type or 'image/png'};base64,{image}"
    encoded = base64.b64encode(image).decode("ascii")
    return f"data:{mime_type or guess_image_type(image)};base64,{encoded}"


def split_data_url(url: str) -> tuple[str, str]:
    """``data:image/png;base64,AAAA`` -> ``("image/png", "AAAA")``."""
    header, _, data = url.partition(",")
    mime = header[len("data:"):].split(";", 1)[0] or "image/png"
    return mime, data


def vision_messages(
    image: bytes | str,
    prompt: str,
    system_prompt: str | None = None,
    detail: str = "auto",
) -> list[Message]:
    """OpenAI-style multi-part message carrying one image and a question."""
    return [
        {"role": "system", "content": system_prompt or DEFAULT_VISION_PROMPT},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": image_data_url(image), "detail": detail},
                },
            ],
        },
    ]


def _text_of(content: Any) -> str:
    """Concatenate the text parts of a message ``content`` value."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return "" if content is None else str(content)


def _image_urls(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []
    urls = []
    for part in content:
        if isinstance(part, dict) and part.get("type") == "image_url":
            image_url = part.get("image_url") or {}
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            if url:
                urls.append(url)
    return urls


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class ProviderAdapter:
    """Base class for backend adapters.

    Subclasses override the request/response hooks; ``complete`` and
    ``analyze_image`` drive them and tag every error with the provider name.

    Parameters
    ----------
    executor:
        Shared request executor; one is created per adapter when omitted.
    transport:
        httpx transport for a created executor (tests pass a MockTransport).
    app_id:
        Client identifier sent where a backend asks for one.
    """

    name = "openai"
    default_base_url = ""
    default_model = ""
    vision_model: str | None = None
    image_detail = "auto"
    supports_keyless = False
    requires_key = True
    auth_style = "bearer"

    def __init__(
        self,
        executor: RequestExecutor | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        app_id: str = "docpilot",
    ) -> None:
        self.executor = executor or RequestExecutor(
            self.default_base_url, provider=self.name, transport=transport,
        )
        self.app_id = app_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(
        self,
        prompt: PromptInput,
        params: GenerationParams,
        credential: ProviderCredential,
    ) -> AdapterResult:
        """Generate text for *prompt* with resolved *params*."""
        messages = to_messages(prompt, params.system_prompt)
        return await self._chat(messages, params, credential)

    async def analyze_image(
        self,
        image: bytes | str,
        prompt: str,
        params: GenerationParams,
        credential: ProviderCredential,
    ) -> AdapterResult:
        """Ask a vision-capable model about *image*."""
        messages = vision_messages(image, prompt, params.system_prompt, self.image_detail)
        model = self.vision_model or params.model
        return await self._chat(messages, replace(params, model=model), credential)

    async def list_models(self, credential: ProviderCredential) -> list[str]:
        spec = self._spec(
            self.models_path(), credential, method="GET", body=None,
            query=self.models_params(credential),
        )
        try:
            data = await self.executor.send(spec)
        except ApiError as exc:
            tag_provider(exc, self.name)
            raise
        return self.parse_models(data)

    async def aclose(self) -> None:
        await self.executor.aclose()

    # ------------------------------------------------------------------
    # Hooks (OpenAI chat-completions shape by default)
    # ------------------------------------------------------------------

    def chat_path(self, params: GenerationParams) -> str:
        return "/chat/completions"

    def models_path(self) -> str:
        return "/models"

    def models_params(self, credential: ProviderCredential) -> dict[str, str]:
        return {}

    def build_body(self, messages: list[Message], params: GenerationParams) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": params.model,
            "messages": messages,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "top_p": params.top_p,
        }
        if params.stream:
            body["stream"] = True
        return body

    def build_headers(self, credential: ProviderCredential) -> dict[str, str]:
        return {}

    def build_params(self, params: GenerationParams, credential: ProviderCredential) -> dict[str, str]:
        return {}

    def parse_response(self, data: Any, params: GenerationParams) -> AdapterResult:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return AdapterResult(
            content=choice["message"]["content"] or "",
            total_tokens=int(usage.get("total_tokens") or 0),
            model=data.get("model") or params.model,
        )

    @staticmethod
    def extract_delta(payload: Any) -> str | None:
        return payload["choices"][0]["delta"].get("content")

    def parse_models(self, data: Any) -> list[str]:
        return [item["id"] for item in data.get("data", [])]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _spec(
        self,
        path: str,
        credential: ProviderCredential,
        *,
        method: str = "POST",
        body: dict[str, Any] | None,
        params: GenerationParams | None = None,
        query: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> RequestSpec:
        merged_headers = self.build_headers(credential)
        merged_headers.update(headers or {})
        return RequestSpec(
            path=path,
            method=method,
            headers=merged_headers,
            body=body,
            params=query or {},
            cancel=params.cancel if params else None,
            base_url=credential.endpoint or self.default_base_url,
            timeout=params.timeout if params else 60.0,
            stream=bool(params and params.stream),
            api_key=credential.api_key,
            auth_style=credential.auth_style or self.auth_style,
            provider=self.name,
        )

    async def _chat(
        self,
        messages: list[Message],
        params: GenerationParams,
        credential: ProviderCredential,
    ) -> AdapterResult:
        spec = self._spec(
            self.chat_path(params),
            credential,
            body=self.build_body(messages, params),
            params=params,
            query=self.build_params(params, credential),
        )
        _logger.debug(
            "%s request: model=%s stream=%s keyless=%s",
            self.name, params.model, params.stream, credential.keyless,
        )
        try:
            if params.stream:
                result = await self.executor.send(
                    spec,
                    extract_delta=self.extract_delta,
                    on_frame=_chunk_forwarder(params),
                )
                if result.error is not None:
                    tag_provider(result.error, self.name, model=params.model)
                return AdapterResult(
                    content=result.text,
                    streaming=True,
                    error=result.error,
                    model=params.model,
                )
            data = await self.executor.send(spec)
        except ApiError as exc:
            tag_provider(exc, self.name, model=params.model)
            raise

        try:
            return self.parse_response(data, params)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ApiError(
                f"Unexpected response format: {exc!r}",
                200,
                self.name,
                {"model": params.model, "response": data},
            ) from exc


def _chunk_forwarder(params: GenerationParams) -> FrameCallback | None:
    on_chunk = params.on_chunk
    if on_chunk is None:
        return None

    def forward(frame: StreamFrame) -> Any:
        return on_chunk(frame.delta)

    return forward


# ---------------------------------------------------------------------------
# OpenAI-compatible family
# ---------------------------------------------------------------------------

class OpenAICompatibleAdapter(ProviderAdapter):
    """OpenAI chat completions; also the fallback for unknown models."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4"
    vision_model = None
    image_detail = "high"


class AzureOpenAIAdapter(OpenAICompatibleAdapter):
    """Azure OpenAI deployments, authenticated with an ``api-key`` header.

    The model id is used as the deployment name.
    """

    name = "azure"
    default_base_url = ""
    auth_style = "api-key"
    api_version = "2024-02-01"

    def chat_path(self, params: GenerationParams) -> str:
        return f"/openai/deployments/{params.model}/chat/completions"

    def models_path(self) -> str:
        return "/openai/models"

    def build_params(self, params: GenerationParams, credential: ProviderCredential) -> dict[str, str]:
        return {"api-version": self.api_version}

    def build_body(self, messages: list[Message], params: GenerationParams) -> dict[str, Any]:
        body = super().build_body(messages, params)
        body.pop("model", None)
        return body

    def models_params(self, credential: ProviderCredential) -> dict[str, str]:
        return {"api-version": self.api_version}


class GroqAdapter(OpenAICompatibleAdapter):
    name = "groq"
    default_base_url = "https://api.groq.com/openai/v1"
    default_model = "llama3-8b-8192"
    image_detail = "auto"


class DeepSeekAdapter(OpenAICompatibleAdapter):
    """DeepSeek chat completions.

    Without an API key, requests are sent in non-commercial mode: no
    ``Authorization`` header, plus ``X-DeepSeek-Usage: non-commercial`` and a
    client identifier.
    """

    name = "deepseek"
    default_base_url = "https://api.deepseek.com/v1"
    free_tier_url = "https://api-free.deepseek.com/v1"
    default_model = "deepseek-chat"
    vision_model = "deepseek-vl-2.0-base"
    image_detail = "auto"
    supports_keyless = True

    def build_headers(self, credential: ProviderCredential) -> dict[str, str]:
        if credential.commercial_use:
            return {}
        return {
            "X-DeepSeek-Usage": "non-commercial",
            "X-DeepSeek-Client": self.app_id,
        }

    async def check_access(self, credential: ProviderCredential) -> AccessStatus:
        """Probe whether the credential grants commercial access.

        Sends a minimal completion; a 403 is retried in non-commercial mode
        to distinguish a restricted key from one with no access at all.
        """
        probe = GenerationParams(model=self.default_model, max_tokens=5, timeout=30.0)
        messages: list[Message] = [{"role": "user", "content": "Hello"}]
        commercial = replace(credential, commercial_use=True)

        try:
            await self._chat(messages, probe, commercial)
            return AccessStatus(True, True, "API key is valid and has commercial access.")
        except ApiError as exc:
            if exc.status_code == 401:
                return AccessStatus(False, False, "Invalid API key.")
            if exc.status_code != 403:
                return AccessStatus(False, False, f"Error checking API key: {exc.message}")
            _logger.info("DeepSeek key rejected for commercial use; probing non-commercial access")

        try:
            await self._chat(messages, probe, replace(credential, commercial_use=False))
        except ApiError:
            return AccessStatus(False, False, "API key does not have access to DeepSeek services.")
        return AccessStatus(True, False, "API key is valid but only has non-commercial access.")


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiAdapter(ProviderAdapter):
    """Google Gemini ``generateContent``, keyed by the ``x-goog-api-key`` header."""

    name = "gemini"
    auth_style = "x-goog-api-key"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-pro"

    def chat_path(self, params: GenerationParams) -> str:
        if params.stream:
            return f"/models/{params.model}:streamGenerateContent"
        return f"/models/{params.model}:generateContent"

    def build_params(self, params: GenerationParams, credential: ProviderCredential) -> dict[str, str]:
        return {"alt": "sse"} if params.stream else {}

    def build_body(self, messages: list[Message], params: GenerationParams) -> dict[str, Any]:
        contents = []
        system_parts = []
        for message in messages:
            role = message.get("role", "user")
            if role == "system":
                system_parts.append({"text": _text_of(message.get("content"))})
                continue
            contents.append({
                "role": "model" if role == "assistant" else "user",
                "parts": self._parts(message.get("content")),
            })

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": params.temperature,
                "maxOutputTokens": params.max_tokens,
                "topP": params.top_p,
            },
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        return body

    @staticmethod
    def _parts(content: Any) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        text = _text_of(content)
        if text:
            parts.append({"text": text})
        for url in _image_urls(content):
            mime, data = split_data_url(url)
            parts.append({"inline_data": {"mime_type": mime, "data": data}})
        return parts or [{"text": ""}]

    @staticmethod
    def _check_blocked(payload: Any) -> None:
        feedback = payload.get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise ApiError(
                f"Prompt blocked by safety filters ({reason})",
                400,
                "gemini",
                {"code": "content_policy", "block_reason": reason},
            )

    def parse_response(self, data: Any, params: GenerationParams) -> AdapterResult:
        self._check_blocked(data)
        candidate = data["candidates"][0]
        parts = candidate.get("content", {}).get("parts", [])
        usage = data.get("usageMetadata") or {}
        return AdapterResult(
            content="".join(p.get("text", "") for p in parts),
            total_tokens=int(usage.get("totalTokenCount") or 0),
            model=params.model,
        )

    @staticmethod
    def extract_delta(payload: Any) -> str | None:
        GeminiAdapter._check_blocked(payload)
        parts = payload["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts)

    def parse_models(self, data: Any) -> list[str]:
        return [
            item["name"].removeprefix("models/")
            for item in data.get("models", [])
        ]


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

class OllamaAdapter(ProviderAdapter):
    """Local Ollama server via the native ``/api/generate`` endpoint."""

    name = "ollama"
    default_base_url = "http://localhost:11434/api"
    default_model = "llama3"
    requires_key = False

    availability_timeout = 2.0

    def chat_path(self, params: GenerationParams) -> str:
        return "/generate"

    def models_path(self) -> str:
        return "/tags"

    def build_body(self, messages: list[Message], params: GenerationParams) -> dict[str, Any]:
        system = [_text_of(m.get("content")) for m in messages if m.get("role") == "system"]
        turns = [m for m in messages if m.get("role") != "system"]

        if len(turns) == 1:
            prompt = _text_of(turns[0].get("content"))
        else:
            prompt = "\n\n".join(
                f"{m.get('role', 'user').capitalize()}: {_text_of(m.get('content'))}"
                for m in turns
            )

        body: dict[str, Any] = {
            "model": params.model,
            "prompt": prompt,
            "stream": params.stream,
            "options": {
                "temperature": params.temperature,
                "top_p": params.top_p,
                "num_predict": params.max_tokens,
            },
        }
        if system:
            body["system"] = "\n".join(system)
        images = [split_data_url(url)[1] for m in turns for url in _image_urls(m.get("content"))]
        if images:
            body["images"] = images
        return body

    def parse_response(self, data: Any, params: GenerationParams) -> AdapterResult:
        tokens = int(data.get("prompt_eval_count") or 0) + int(data.get("eval_count") or 0)
        return AdapterResult(
            content=data["response"],
            total_tokens=tokens,
            model=data.get("model") or params.model,
        )

    @staticmethod
    def extract_delta(payload: Any) -> str | None:
        return payload.get("response")

    def parse_models(self, data: Any) -> list[str]:
        return [item["name"] for item in data.get("models", [])]

    async def is_available(self, credential: ProviderCredential | None = None) -> bool:
        """Whether a local Ollama server answers ``/tags`` within a short timeout."""
        credential = credential or ProviderCredential("ollama", None, self.default_base_url)
        spec = replace(
            self._spec(self.models_path(), credential, method="GET", body=None),
            timeout=self.availability_timeout,
        )
        try:
            await self.executor.send(spec)
        except ApiError as exc:
            _logger.debug("Ollama not available at %s: %s", spec.base_url, exc.message)
            return False
        return True


ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAICompatibleAdapter,
    "azure": AzureOpenAIAdapter,
    "deepseek": DeepSeekAdapter,
    "groq": GroqAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
}


def default_adapters(
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    app_id: str = "docpilot",
) -> dict[str, ProviderAdapter]:
    """One adapter per supported backend, each with its own HTTP client."""
    return {
        name: cls(transport=transport, app_id=app_id)
        for name, cls in ADAPTER_CLASSES.items()
    }
