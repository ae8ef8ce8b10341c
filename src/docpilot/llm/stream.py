"""Incremental decoder for streamed completions.

Handles both server-sent events (``data: {...}`` lines terminated by
``data: [DONE]``) and newline-delimited JSON (Ollama).  Bytes may arrive split
at any boundary, including inside a multi-byte character or mid-line.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable

from docpilot.types import StreamFrame

from .errors import ApiError, error_details

_logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# SSE field lines that never carry a payload we care about
_SSE_FIELDS = ("event:", "id:", "retry:")

DeltaExtractor = Callable[[Any], "str | None"]


def _stream_error(payload: dict[str, Any]) -> ApiError:
    """Build the error for an ``error`` payload sent mid-stream.

    An integer ``code`` (Gemini) is treated as the HTTP status so rate limits
    and server errors keep their kind.
    """
    message, code = error_details(payload, "Stream error")
    err = payload.get("error")
    status = err.get("code") if isinstance(err, dict) else None
    if not isinstance(status, int) or not 400 <= status < 600:
        status = 0
    context: dict[str, Any] = {"stream_error": True}
    if code:
        context["code"] = code
    return ApiError(message, status, context=context)


class StreamDecoder:
    """Turn raw response bytes into ordered ``StreamFrame`` objects.

    Parameters
    ----------
    extract_delta:
        Adapter-supplied function returning the token text from one decoded
        JSON payload, or ``None`` when the payload carries no text.
    encoding:
        Character encoding of the byte stream.
    """

    def __init__(self, extract_delta: DeltaExtractor, encoding: str = "utf-8") -> None:
        self._extract = extract_delta
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.text = ""
        self.frames = 0
        self.finished = False

    # ------------------------------------------------------------------
    # Push API
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[StreamFrame]:
        """Consume *chunk* and return the frames completed by it."""
        if self.finished or not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        return self._drain_lines()

    def close(self) -> list[StreamFrame]:
        """Flush pending bytes and any final unterminated line."""
        if self.finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        frames = self._drain_lines()
        if not self.finished and self._buffer:
            tail, self._buffer = self._buffer, ""
            frame = self._process_line(tail)
            if frame is not None:
                frames.append(frame)
        self.finished = True
        return frames

    # ------------------------------------------------------------------
    # Pull API
    # ------------------------------------------------------------------

    async def decode(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamFrame]:
        """Yield frames from an async byte iterator, then one final frame."""
        async for chunk in chunks:
            for frame in self.feed(chunk):
                yield frame
            if self.finished:
                break
        for frame in self.close():
            yield frame
        yield StreamFrame(delta="", text=self.text, finished=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drain_lines(self) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        while not self.finished:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _process_line(self, raw_line: str) -> StreamFrame | None:
        line = raw_line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith(_SSE_FIELDS):
            return None

        if line.startswith(DATA_PREFIX):
            line = line[len(DATA_PREFIX):].strip()
        if line == DONE_SENTINEL:
            self.finished = True
            self._buffer = ""
            return None

        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            _logger.debug("Skipping unparseable stream line: %.200s", line)
            return None

        if isinstance(payload, dict) and payload.get("error"):
            raise _stream_error(payload)

        try:
            delta = self._extract(payload)
        except (KeyError, IndexError, TypeError, AttributeError):
            _logger.debug("Stream payload without delta: %.200s", line)
            return None
        if not delta:
            return None

        self.text += delta
        self.frames += 1
        return StreamFrame(delta=delta, text=self.text)
