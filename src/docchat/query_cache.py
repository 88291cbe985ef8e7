"""Keyed, paginated in-memory cache of conversation messages.

Each conversation view reads one :class:`InfiniteData` snapshot per
:class:`QueryKey`. Writers replace snapshots wholesale through pure updater
functions, so a snapshot handed out earlier is never mutated behind a
reader's back. Background fetches run as named tasks so a writer can cancel
them before an optimistic update.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
import logging
from typing import Any, Protocol

from .exceptions import CacheError
from .models import InfiniteData, Page
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

Updater = Callable[[InfiniteData | None], InfiniteData | None]
Listener = Callable[[InfiniteData | None], None]


class PageFetcher(Protocol):
    """Source of truth for conversation pages."""

    def fetch_messages(
        self, conversation_id: str, limit: int, cursor: str | None = None
    ) -> Awaitable[Page]: ...


@dataclass(frozen=True)
class QueryKey:
    """Cache key: one conversation fetched with one page size."""

    conversation_id: str
    limit: int

    @property
    def task_name(self) -> str:
        return f"messages:{self.conversation_id}:{self.limit}"


class QueryCache:
    """Paged message cache with cancel / read / write / invalidate semantics."""

    def __init__(
        self, fetcher: PageFetcher, task_manager: TaskManager | None = None
    ) -> None:
        self._fetcher = fetcher
        self._tasks = task_manager or TaskManager()
        self._data: dict[QueryKey, InfiniteData] = {}
        self._stale: set[QueryKey] = set()
        self._listeners: dict[QueryKey, list[Listener]] = {}

    # -- reads / writes -------------------------------------------------

    def get_infinite_data(self, key: QueryKey) -> InfiniteData | None:
        """Return the current snapshot for ``key`` or ``None`` when unloaded."""
        return self._data.get(key)

    def set_infinite_data(self, key: QueryKey, updater: Updater) -> InfiniteData | None:
        """Replace the snapshot for ``key`` with ``updater(old)``.

        Returning ``None`` from the updater drops the entry.
        """
        updated = updater(self._data.get(key))
        if updated is None:
            self._data.pop(key, None)
        else:
            self._data[key] = updated
        self._notify(key, updated)
        return updated

    def is_stale(self, key: QueryKey) -> bool:
        return key in self._stale or key not in self._data

    def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for snapshot changes; returns an unsubscribe hook."""
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def _notify(self, key: QueryKey, data: InfiniteData | None) -> None:
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(data)
            except Exception as exc:  # noqa: BLE001 - one bad view must not break writers.
                LOGGER.warning(
                    "cache.listener.failed",
                    extra={
                        "event": "cache.listener.failed",
                        "key": key.task_name,
                        "error": str(exc),
                    },
                )

    # -- fetching -------------------------------------------------------

    async def cancel(self, key: QueryKey) -> None:
        """Cancel an in-flight fetch for ``key`` and wait for it to stop."""
        if await self._tasks.cancel(key.task_name):
            LOGGER.info(
                "cache.fetch.cancelled",
                extra={"event": "cache.fetch.cancelled", "key": key.task_name},
            )

    async def fetch_infinite(self, key: QueryKey) -> InfiniteData | None:
        """Load the first page unless fresh data is already cached."""
        if not self.is_stale(key):
            return self._data[key]
        return await self._run(key, self._refetch(key))

    async def fetch_next_page(self, key: QueryKey) -> InfiniteData | None:
        """Append the next older page; no-op when every page is loaded."""
        current = self._data.get(key)
        if current is None:
            return await self.fetch_infinite(key)
        if not current.has_next_page:
            return current
        return await self._run(key, self._fetch_next(key, current))

    async def invalidate(self, key: QueryKey) -> None:
        """Mark ``key`` stale and refetch every loaded page in the background.

        Fetch failures are logged and leave the previous snapshot in place.
        """
        self._stale.add(key)
        if key not in self._data and not self._listeners.get(key):
            return
        try:
            await self._run(key, self._refetch(key))
        except CacheError as exc:
            LOGGER.warning(
                "cache.invalidate.failed",
                extra={
                    "event": "cache.invalidate.failed",
                    "key": key.task_name,
                    "error": str(exc),
                },
            )

    async def _run(
        self, key: QueryKey, coro: Coroutine[Any, Any, InfiniteData]
    ) -> InfiniteData | None:
        await self.cancel(key)
        task = self._tasks.spawn(coro, name=key.task_name)
        # asyncio.wait does not raise when someone else cancels the fetch.
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    async def _load(self, key: QueryKey, cursor: str | None) -> Page:
        try:
            return await self._fetcher.fetch_messages(
                key.conversation_id, key.limit, cursor
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise CacheError(
                f"Unable to fetch messages for {key.conversation_id}: {exc}"
            ) from exc

    async def _fetch_next(self, key: QueryKey, current: InfiniteData) -> InfiniteData:
        cursor = current.pages[-1].next_cursor
        page = await self._load(key, cursor)
        data = (self._data.get(key) or current).append_page(page, cursor)
        self.set_infinite_data(key, lambda _old: data)
        return data

    async def _refetch(self, key: QueryKey) -> InfiniteData:
        loaded = self._data.get(key)
        page_count = max(1, len(loaded.pages) if loaded else 1)
        data = InfiniteData()
        cursor: str | None = None
        for _ in range(page_count):
            page = await self._load(key, cursor)
            data = data.append_page(page, cursor)
            cursor = page.next_cursor
            if cursor is None:
                break
        self._store_fresh(key, data)
        LOGGER.info(
            "cache.refetched",
            extra={
                "event": "cache.refetched",
                "key": key.task_name,
                "pages": len(data.pages),
            },
        )
        return data

    def _store_fresh(self, key: QueryKey, data: InfiniteData) -> None:
        self._stale.discard(key)
        self.set_infinite_data(key, lambda _old: data)

    async def close(self) -> None:
        """Cancel every in-flight fetch."""
        await self._tasks.cancel_all()
