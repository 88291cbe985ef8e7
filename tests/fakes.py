"""Deterministic fakes shared by the controller and cache tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

from docchat.models import InfiniteData, Message, Page


def make_message(message_id: str, text: str, is_user: bool) -> Message:
    return Message(
        id=message_id,
        text=text,
        created_at="2024-01-01T00:00:00+00:00",
        is_user_message=is_user,
    )


def server_pages() -> list[Page]:
    """Two pages of history, newest first, linked by cursor "1"."""
    return [
        Page(
            messages=(
                make_message("m3", "It covers onboarding.", False),
                make_message("m2", "What does section 2 cover?", True),
            ),
            next_cursor="1",
        ),
        Page(
            messages=(
                make_message("m1", "Hello! Ask me anything.", False),
                make_message("m0", "hi", True),
            ),
            next_cursor=None,
        ),
    ]


class FakeFetcher:
    """Serves fixed pages; cursor is the page index as a string."""

    def __init__(
        self,
        pages: list[Page] | None = None,
        on_fetch: Callable[[str | None], None] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.pages = pages if pages is not None else server_pages()
        self.on_fetch = on_fetch
        self.error = error
        self.calls: list[tuple[str, int, str | None]] = []

    async def fetch_messages(
        self, conversation_id: str, limit: int, cursor: str | None = None
    ) -> Page:
        self.calls.append((conversation_id, limit, cursor))
        if self.on_fetch is not None:
            self.on_fetch(cursor)
        if self.error is not None:
            raise self.error
        index = 0 if cursor is None else int(cursor)
        return self.pages[index]


class BlockingFetcher(FakeFetcher):
    """Fetcher that parks until released, recording whether it was cancelled."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.cancelled = False

    async def fetch_messages(
        self, conversation_id: str, limit: int, cursor: str | None = None
    ) -> Page:
        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return await super().fetch_messages(conversation_id, limit, cursor)


class FakeStream:
    """Byte stream that yields ``chunks`` and optionally fails afterwards."""

    def __init__(
        self,
        chunks: list[bytes],
        error: Exception | None = None,
        on_chunk: Callable[[int], None] | None = None,
    ) -> None:
        self.chunks = chunks
        self.error = error
        self.on_chunk = on_chunk
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for index, chunk in enumerate(self.chunks):
            if self.on_chunk is not None:
                self.on_chunk(index)
            await asyncio.sleep(0)
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeTransport:
    """Send transport returning a prepared stream or raising a prepared error."""

    def __init__(
        self,
        stream: FakeStream | None = None,
        error: Exception | None = None,
        on_send: Callable[[], None] | None = None,
    ) -> None:
        self.stream = stream
        self.error = error
        self.on_send = on_send
        self.calls: list[tuple[str, str]] = []

    async def send(self, conversation_id: str, text: str) -> FakeStream | None:
        self.calls.append((conversation_id, text))
        if self.on_send is not None:
            self.on_send()
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.stream


class SnapshotRecorder:
    """Cache listener that keeps every snapshot written for a key."""

    def __init__(self) -> None:
        self.snapshots: list[InfiniteData | None] = []

    def __call__(self, data: InfiniteData | None) -> None:
        self.snapshots.append(data)
