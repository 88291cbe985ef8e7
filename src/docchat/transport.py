"""HTTP transport for sending chat messages and fetching conversation pages."""

from __future__ import annotations

from collections.abc import AsyncIterator
import logging
from typing import Any, Protocol

import httpx

from .exceptions import TransportError
from .models import Message, Page

LOGGER = logging.getLogger(__name__)


class ByteStream(Protocol):
    """Readable stream of raw reply chunks, terminated by exhaustion."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class SendTransport(Protocol):
    """Performs the network call for one chat message."""

    async def send(self, conversation_id: str, text: str) -> ByteStream | None: ...


class ResponseByteStream:
    """Adapt a streaming ``httpx.Response`` to :class:`ByteStream`.

    The response is closed once the body is exhausted, when iteration raises,
    or when :meth:`aclose` is called explicitly.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


class HttpSendTransport:
    """Talk to the document-chat API over HTTP.

    ``send`` posts ``{fileId, message}`` and hands back the streamed reply;
    ``fetch_messages`` returns one page of history for the paged cache.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str = "",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers: dict[str, str] = {}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(
                base_url=self.base_url, headers=headers, timeout=timeout
            )
        else:
            client.headers.update(headers)
        self._client = client

    async def send(self, conversation_id: str, text: str) -> ResponseByteStream:
        request = self._client.build_request(
            "POST",
            f"{self.base_url}/api/message",
            json={"fileId": conversation_id, "message": text},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to send message: {exc}") from exc

        if not response.is_success:
            await response.aclose()
            LOGGER.warning(
                "transport.send.rejected",
                extra={
                    "event": "transport.send.rejected",
                    "conversation_id": conversation_id,
                    "status_code": response.status_code,
                },
            )
            raise TransportError(
                "Failed to send message", status_code=response.status_code
            )

        LOGGER.info(
            "transport.send.streaming",
            extra={
                "event": "transport.send.streaming",
                "conversation_id": conversation_id,
            },
        )
        return ResponseByteStream(response)

    async def fetch_messages(
        self, conversation_id: str, limit: int, cursor: str | None = None
    ) -> Page:
        params: dict[str, Any] = {"fileId": conversation_id, "limit": limit}
        if cursor is not None:
            params["cursor"] = cursor
        try:
            response = await self._client.get(
                f"{self.base_url}/api/messages", params=params
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Failed to fetch messages: {exc}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportError(f"Failed to fetch messages: {exc}") from exc
        return self._parse_page(payload)

    @staticmethod
    def _parse_page(payload: Any) -> Page:
        if not isinstance(payload, dict):
            raise TransportError("Messages payload must be a JSON object.")
        raw_messages = payload.get("messages") or []
        if not isinstance(raw_messages, list):
            raise TransportError("Messages payload field 'messages' must be a list.")
        try:
            messages = tuple(
                Message.from_payload(item)
                for item in raw_messages
                if isinstance(item, dict)
            )
        except ValueError as exc:
            raise TransportError(f"Malformed message in payload: {exc}") from exc
        next_cursor = payload.get("nextCursor")
        return Page(
            messages=messages,
            next_cursor=next_cursor if isinstance(next_cursor, str) else None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
