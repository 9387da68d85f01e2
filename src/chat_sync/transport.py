"""Streaming completion transport port and its server-sent-events client."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
import json
import logging
from typing import Any

import httpx

from .exceptions import NetworkFailure
from .formatter import TransportMessage

LOGGER = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class StreamChannel(ABC):
    """One live completion.

    Iterating yields text fragments. Normal exhaustion means the reply is
    complete; a raised exception means the channel failed.
    """

    def __aiter__(self) -> AsyncIterator[str]:
        return self.fragments()

    @abstractmethod
    def fragments(self) -> AsyncIterator[str]:
        """Yield incremental text fragments of the assistant reply."""

    @abstractmethod
    async def cancel(self) -> None:
        """Close the channel; iteration stops without raising."""


class StreamingTransport(ABC):
    """Opens completion channels for a chat."""

    @abstractmethod
    async def open(
        self,
        chat_id: str,
        messages: Sequence[TransportMessage],
        model: str | None,
        attachment_ids: Sequence[str] = (),
    ) -> StreamChannel:
        """Start a completion over ``messages`` and return its channel."""


def parse_sse_line(line: str) -> str | None:
    """Extract a text delta from one SSE line.

    Returns ``None`` for lines that carry no text (comments, keep-alives,
    lifecycle events) and ``SSE_DONE`` for the terminator. An ``error`` event
    raises ``NetworkFailure``.
    """
    stripped = line.strip()
    if not stripped.startswith(SSE_DATA_PREFIX):
        return None
    data = stripped[len(SSE_DATA_PREFIX):].strip()
    if not data:
        return None
    if data == SSE_DONE:
        return SSE_DONE
    try:
        event: Any = json.loads(data)
    except json.JSONDecodeError:
        LOGGER.debug("transport.sse.unparsable", extra={"event": "transport.sse.unparsable"})
        return None
    if not isinstance(event, dict):
        return None
    kind = event.get("type")
    if kind == "error":
        raise NetworkFailure(str(event.get("errorText") or "Completion stream failed."))
    if kind == "text-delta":
        delta = event.get("delta", event.get("textDelta"))
        return delta if isinstance(delta, str) else None
    return None


class HttpStreamChannel(StreamChannel):
    """Reads a server-sent-events completion over an ``httpx`` stream."""

    def __init__(self, client: httpx.AsyncClient, url: str, body: dict[str, Any]) -> None:
        self._client = client
        self._url = url
        self._body = body
        self._response: httpx.Response | None = None
        self._cancelled = False

    async def fragments(self) -> AsyncIterator[str]:
        try:
            async with self._client.stream("POST", self._url, json=self._body) as response:
                self._response = response
                if response.is_error:
                    await response.aread()
                    raise NetworkFailure(
                        f"Completion request returned {response.status_code}.",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    if self._cancelled:
                        return
                    fragment = parse_sse_line(line)
                    if fragment == SSE_DONE:
                        return
                    if fragment:
                        yield fragment
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if self._cancelled:
                return
            raise NetworkFailure(f"Completion stream failed: {exc}") from exc
        finally:
            self._response = None

    async def cancel(self) -> None:
        self._cancelled = True
        if self._response is not None:
            await self._response.aclose()


class HttpStreamingTransport(StreamingTransport):
    """Posts history to the chat completion route and streams the reply."""

    def __init__(
        self,
        base_url: str,
        chat_path: str = "/api/chat",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.chat_path = chat_path
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open(
        self,
        chat_id: str,
        messages: Sequence[TransportMessage],
        model: str | None,
        attachment_ids: Sequence[str] = (),
    ) -> StreamChannel:
        body = {
            "id": chat_id,
            "model": model,
            "systemPromptId": "default",
            "messages": [message.as_payload() for message in messages],
            "fileIds": list(attachment_ids),
        }
        LOGGER.info(
            "transport.open",
            extra={
                "event": "transport.open",
                "chat_id": chat_id,
                "model": model,
                "history": len(messages),
            },
        )
        return HttpStreamChannel(self._client, self.chat_path, body)
