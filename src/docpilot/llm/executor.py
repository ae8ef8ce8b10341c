"""HTTP request execution for provider adapters.

One ``RequestExecutor`` per backend owns a shared ``httpx.AsyncClient``.
Every request is raced against a ``CancelToken`` derived from the caller's
token and the request timeout, so a timeout and a caller abort are handled
the same way.
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from typing import Any, Callable

import httpx

from docpilot import __version__
from docpilot.types import RequestSpec, StreamFrame, StreamResult

from .cancellation import REASON_CALLER, CancelToken, OperationAborted
from .errors import ApiError, error_details, tag_provider
from .stream import DeltaExtractor, StreamDecoder

_logger = logging.getLogger(__name__)

FrameCallback = Callable[[StreamFrame], Any]

_CONNECT_TIMEOUT = 30  # seconds; overall deadlines come from the cancel token


def _request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class RequestExecutor:
    """Send ``RequestSpec`` objects and translate failures into ``ApiError``.

    Parameters
    ----------
    base_url:
        Used when a spec carries no ``base_url`` of its own.
    provider:
        Provider id stamped on errors when the spec does not name one.
    client:
        Optional pre-built ``httpx.AsyncClient``.
    transport:
        Optional httpx transport for a client built here (tests inject
        ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        provider: str = "unknown",
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.base_url = base_url
        self.provider = provider
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=_CONNECT_TIMEOUT),
        )
        self._default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "User-Agent": user_agent or f"docpilot/{__version__}",
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self,
        spec: RequestSpec,
        *,
        extract_delta: DeltaExtractor | None = None,
        on_frame: FrameCallback | None = None,
    ) -> Any:
        """Execute *spec*.

        Returns parsed JSON for a non-streaming spec, or a ``StreamResult``
        when ``spec.stream`` is set (``extract_delta`` is then required).
        """
        if spec.stream and extract_delta is None:
            raise ValueError("streaming requests need an extract_delta function")

        provider = spec.provider if spec.provider != "unknown" else self.provider
        request = self._build_request(spec)
        context = {
            "endpoint": spec.path,
            "method": spec.method,
            "request_id": request.headers.get("X-Request-ID"),
        }
        token = CancelToken.derive(spec.cancel, spec.timeout)
        start = time.monotonic()

        try:
            response = await self._open(request, token, stream=spec.stream,
                                        provider=provider, context=context)
            if response.status_code >= 400:
                raise await self._status_error(response, provider, context)

            if spec.stream:
                return await self._read_stream(
                    response, token, extract_delta, on_frame, provider, context,
                )
            return self._parse_json(response, provider, context)
        finally:
            token.release()
            _logger.debug(
                "%s %s%s finished in %.0fms",
                spec.method, spec.base_url or self.base_url, spec.path,
                (time.monotonic() - start) * 1000,
            )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _build_request(self, spec: RequestSpec) -> httpx.Request:
        headers = dict(self._default_headers)
        headers["X-Request-ID"] = _request_id()
        headers.update(spec.headers)
        if spec.api_key:
            if spec.auth_style == "bearer":
                headers["Authorization"] = f"Bearer {spec.api_key}"
            else:
                headers[spec.auth_style] = spec.api_key

        base = (spec.base_url or self.base_url).rstrip("/")
        return self._client.build_request(
            spec.method,
            f"{base}{spec.path}",
            headers=headers,
            params=spec.params or None,
            json=spec.body if spec.body is not None else None,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _open(
        self,
        request: httpx.Request,
        token: CancelToken,
        *,
        stream: bool,
        provider: str,
        context: dict[str, Any],
    ) -> httpx.Response:
        try:
            return await token.run(self._client.send(request, stream=stream))
        except OperationAborted as exc:
            raise self._abort_error(exc.reason, provider, context) from None
        except httpx.TimeoutException as exc:
            raise ApiError("Request timed out", 0, provider, context) from exc
        except httpx.HTTPError as exc:
            _logger.warning("%s transport error: %s", provider, exc)
            raise ApiError(f"Network error: {exc}", 0, provider, context) from exc

    @staticmethod
    def _abort_error(reason: str, provider: str, context: dict[str, Any]) -> ApiError:
        if reason == REASON_CALLER:
            return ApiError("Request aborted", 0, provider, {**context, "aborted_by": "caller"})
        return ApiError("Request timed out", 0, provider, {**context, "aborted_by": reason})

    async def _status_error(
        self,
        response: httpx.Response,
        provider: str,
        context: dict[str, Any],
    ) -> ApiError:
        data: Any = None
        try:
            await response.aread()
            data = response.json()
        except (ValueError, httpx.HTTPError):
            data = None
        finally:
            await response.aclose()

        message, code = error_details(data, f"Request failed with status: {response.status_code}")
        error_context = {**context, "response": data}
        if code:
            error_context["code"] = code
        retry_after = _retry_after(response)
        if retry_after is not None:
            error_context["retry_after"] = retry_after
        _logger.warning(
            "%s returned %d for %s: %s",
            provider, response.status_code, context.get("endpoint"), message,
        )
        return ApiError(message, response.status_code, provider, error_context)

    @staticmethod
    def _parse_json(
        response: httpx.Response,
        provider: str,
        context: dict[str, Any],
    ) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ApiError(
                "Invalid JSON response", response.status_code, provider, context,
            ) from exc

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _read_stream(
        self,
        response: httpx.Response,
        token: CancelToken,
        extract_delta: DeltaExtractor,
        on_frame: FrameCallback | None,
        provider: str,
        context: dict[str, Any],
    ) -> StreamResult:
        decoder = StreamDecoder(extract_delta)
        chunks = response.aiter_bytes()
        stream_context = {**context, "stream": True}

        try:
            while not decoder.finished:
                try:
                    chunk = await token.run(chunks.__anext__())
                except StopAsyncIteration:
                    break
                for frame in decoder.feed(chunk):
                    await self._deliver(on_frame, frame)
            for frame in decoder.close():
                await self._deliver(on_frame, frame)
        except OperationAborted as exc:
            error = self._abort_error(exc.reason, provider, stream_context)
            if exc.reason != REASON_CALLER and decoder.frames == 0:
                raise error from None
            return self._partial(decoder, error)
        except httpx.HTTPError as exc:
            message = "Request timed out" if isinstance(exc, httpx.TimeoutException) else f"Network error: {exc}"
            error = ApiError(message, 0, provider, stream_context)
            error.__cause__ = exc
            if decoder.frames == 0:
                raise error
            return self._partial(decoder, error)
        except ApiError as exc:
            error = tag_provider(exc, provider, **stream_context)
            if decoder.frames == 0:
                raise error
            return self._partial(decoder, error)
        finally:
            await response.aclose()

        return StreamResult(text=decoder.text, frames=decoder.frames)

    @staticmethod
    def _partial(decoder: StreamDecoder, error: ApiError) -> StreamResult:
        _logger.info(
            "%s stream stopped after %d frames: %s",
            error.provider, decoder.frames, error.message,
        )
        error.context["partial_length"] = len(decoder.text)
        return StreamResult(text=decoder.text, frames=decoder.frames, error=error)

    @staticmethod
    async def _deliver(on_frame: FrameCallback | None, frame: StreamFrame) -> None:
        if on_frame is None:
            return
        result = on_frame(frame)
        if inspect.isawaitable(result):
            await result
