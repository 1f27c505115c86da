"""Client for the model server's streaming chat endpoint.

The model server answers ``POST /api/chat`` with newline-delimited JSON
objects of the form ``{"message": {"content": "..."}, "done": false}``.
:class:`OllamaStreamClient` opens that request and hands back an
:class:`UpstreamStream`, a lazy sequence of decoded :class:`UpstreamFrame`
objects that honours a :class:`~chat_relay.cancellation.CancellationToken`.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import requests

from .cancellation import CancellationToken
from .config import UpstreamConfig
from .errors import StreamCancelled, UpstreamError, UpstreamStreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamFrame:
    """One decoded unit of the upstream stream: a text delta or the terminal marker."""

    content: str = ""
    done: bool = False


class NDJSONFrameDecoder:
    """Incremental decoder for newline-delimited JSON arriving in arbitrary chunks."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[UpstreamFrame]:
        """Buffer ``chunk`` and return the frames of every line it completes."""
        self._buffer.extend(chunk)
        frames: List[UpstreamFrame] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            frame = self._decode_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[UpstreamFrame]:
        """Decode whatever is left once the body ends without a trailing newline."""
        line = bytes(self._buffer)
        self._buffer.clear()
        frame = self._decode_line(line)
        return [frame] if frame is not None else []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    @staticmethod
    def _decode_line(line: bytes) -> Optional[UpstreamFrame]:
        if not line.strip():
            return None
        try:
            payload = json.loads(line)
        except ValueError:
            logger.warning("Dropping unparsable upstream line: %r", line[:200])
            return None
        if not isinstance(payload, dict):
            logger.warning("Dropping non-object upstream line: %r", line[:200])
            return None
        if payload.get("error"):
            raise UpstreamStreamError(f"model server reported an error: {payload['error']}")

        message = payload.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return UpstreamFrame(
            content=content if isinstance(content, str) else "",
            done=bool(payload.get("done")),
        )


class UpstreamStream:
    """An open streaming response, iterated as text-delta and terminal frames.

    Iteration ends after the ``done`` frame, or when the body ends. A fired
    cancellation token (or an exceeded ``max_duration``) ends it with
    :class:`StreamCancelled`. A broken transport ends it with
    :class:`UpstreamStreamError`. The response is closed in every case.
    """

    def __init__(
        self,
        response: Any,
        cancel_token: CancellationToken,
        *,
        max_duration: Optional[float] = None,
    ) -> None:
        self._response = response
        self._token = cancel_token
        self._decoder = NDJSONFrameDecoder()
        self._deadline = time.monotonic() + max_duration if max_duration else None
        self._closed = False
        self.finished = False
        self._token.add_callback(self.close)

    def __enter__(self) -> "UpstreamStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __iter__(self) -> Iterator[UpstreamFrame]:
        try:
            for chunk in self._iter_chunks():
                for frame in self._decoder.feed(chunk):
                    # One chunk may carry several frames; stop between them too.
                    self._raise_if_cancelled()
                    if frame.content or frame.done:
                        yield frame
                    if frame.done:
                        self.finished = True
                        return
            for frame in self._decoder.flush():
                if frame.content or frame.done:
                    yield frame
            logger.warning("Upstream stream ended without a done marker")
            self.finished = True
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._token.remove_callback(self.close)
        try:
            self._response.close()
        except Exception:
            logger.debug("Error while closing upstream response", exc_info=True)

    def _iter_chunks(self) -> Iterator[bytes]:
        chunks = self._response.iter_content(chunk_size=None)
        while True:
            self._raise_if_cancelled()
            try:
                chunk = next(chunks)
            except StopIteration:
                return
            except Exception as exc:
                if self._token.cancelled:
                    raise StreamCancelled(self._token.reason or "client") from exc
                if isinstance(exc, (requests.RequestException, OSError)):
                    raise UpstreamStreamError(f"upstream stream failed: {exc}") from exc
                raise
            # Frames read after cancellation are never surfaced.
            self._raise_if_cancelled()
            if chunk:
                yield chunk

    def _raise_if_cancelled(self) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._token.cancel("timeout")
        if self._token.cancelled:
            raise StreamCancelled(self._token.reason or "client")


class OllamaStreamClient:
    """Thin wrapper around the model server's chat endpoint with streaming support.

    ``http`` is anything exposing ``post``/``get`` with the signature of the
    :mod:`requests` module functions; it defaults to :mod:`requests` itself.
    """

    def __init__(self, config: UpstreamConfig, http: Any = None) -> None:
        self.config = config
        self._http = http or requests

    def build_payload(self, messages: Sequence[Mapping[str, str]], model: str) -> Dict[str, object]:
        return {
            "model": model,
            "stream": True,
            "messages": [dict(message) for message in messages],
            "options": self.config.options.as_payload(),
        }

    def open_stream(
        self,
        messages: Sequence[Mapping[str, str]],
        *,
        model: str,
        cancel_token: CancellationToken,
        max_duration: Optional[float] = None,
    ) -> UpstreamStream:
        """Connect to the model server and return the open stream.

        Raises :class:`UpstreamError` before any frame exists when the server
        cannot be reached or answers with a non-2xx status.
        """
        if cancel_token.cancelled:
            raise StreamCancelled(cancel_token.reason or "client")

        payload = self.build_payload(messages, model)
        logger.info(
            "Streaming chat to %s using model %s (%d message(s))",
            self.config.chat_endpoint,
            model,
            len(payload["messages"]),
        )
        try:
            response = self._http.post(
                self.config.chat_endpoint,
                json=payload,
                stream=True,
                timeout=(self.config.connect_timeout, self.config.read_timeout),
            )
        except requests.RequestException as exc:
            logger.error("Model server unreachable at %s: %s", self.config.chat_endpoint, exc)
            raise UpstreamError("Failed to connect to model server", body=str(exc)) from exc

        if not 200 <= response.status_code < 300:
            body = response.text or ""
            response.close()
            logger.error("Model server error %s: %s", response.status_code, body[:500])
            raise UpstreamError(
                "Model server rejected the request",
                upstream_status=response.status_code,
                body=body,
            )
        return UpstreamStream(response, cancel_token, max_duration=max_duration)

    def list_models(self) -> List[str]:
        """Return the model names installed on the server."""
        response = self._http.get(self.config.tags_endpoint, timeout=self.config.connect_timeout)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Model list is not a JSON object")
        models = body.get("models") or []
        return [str(item.get("name", "")) for item in models if isinstance(item, dict)]
