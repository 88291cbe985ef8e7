"""Tests for the optimistic send / streaming / rollback controller."""

from __future__ import annotations

import asyncio
import unittest

from fakes import (
    BlockingFetcher,
    FakeFetcher,
    FakeStream,
    FakeTransport,
    SnapshotRecorder,
)

from docchat.controller import (
    MessageSendController,
    Notification,
    prepend_user_message,
    upsert_assistant_placeholder,
)
from docchat.exceptions import TransportError
from docchat.models import AI_RESPONSE_ID, EMPTY_INFINITE_DATA, InfiniteData, Page
from docchat.query_cache import QueryCache


class _Harness:
    """Wire a controller to a fake cache source and transport."""

    def __init__(self, transport: FakeTransport, fetcher: FakeFetcher | None = None):
        self.fetch_marks: list[tuple[int, bool]] = []
        self.fetcher = fetcher or FakeFetcher(on_fetch=self._on_fetch)
        self.cache = QueryCache(self.fetcher)
        self.notifications: list[Notification] = []
        self.controller = MessageSendController(
            "file-1",
            self.cache,
            transport,
            limit=10,
            notify=self.notifications.append,
        )
        self.recorder = SnapshotRecorder()

    def _on_fetch(self, _cursor: str | None) -> None:
        self.fetch_marks.append(
            (len(self.recorder.snapshots), self.controller.is_loading)
        )

    async def load(self) -> InfiniteData | None:
        data = await self.cache.fetch_infinite(self.controller.key)
        self.fetch_marks.clear()
        self.cache.subscribe(self.controller.key, self.recorder)
        return data

    def state_at_refresh(self) -> InfiniteData | None:
        """Cache contents right before the settle-time refetch landed."""
        mark, _ = self.fetch_marks[-1]
        return self.recorder.snapshots[mark - 1]


class MessageSendControllerTests(unittest.IsolatedAsyncioTestCase):
    """Validate the three-phase send transaction."""

    async def test_user_message_visible_before_transport_resolves(self) -> None:
        seen: list[InfiniteData | None] = []
        transport = FakeTransport(stream=FakeStream([b"ok"]))
        harness = _Harness(transport)
        transport.on_send = lambda: seen.append(
            harness.cache.get_infinite_data(harness.controller.key)
        )
        await harness.load()

        await harness.controller.send_message("hello")

        first = seen[0].pages[0].messages[0]
        self.assertEqual(first.text, "hello")
        self.assertTrue(first.is_user_message)
        self.assertNotEqual(first.id, AI_RESPONSE_ID)

    async def test_end_to_end_stream_builds_assistant_reply(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"Hi", b" there"]))
        harness = _Harness(transport)
        await harness.load()
        harness.controller.handle_input_change("hello")

        completed = await harness.controller.add_message()

        self.assertTrue(completed)
        self.assertEqual(transport.calls, [("file-1", "hello")])
        final = harness.state_at_refresh()
        newest = final.pages[0].messages
        self.assertEqual(newest[0].id, AI_RESPONSE_ID)
        self.assertEqual(newest[0].text, "Hi there")
        self.assertFalse(newest[0].is_user_message)
        self.assertEqual(newest[1].text, "hello")
        self.assertTrue(newest[1].is_user_message)
        self.assertEqual(newest[2].id, "m3")
        self.assertFalse(harness.controller.is_loading)
        self.assertEqual(harness.controller.message, "")
        self.assertTrue(transport.stream.closed)

    async def test_settle_refresh_runs_after_loading_cleared(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"Hi"]))
        harness = _Harness(transport)
        await harness.load()

        await harness.controller.send_message("hello")

        self.assertEqual(len(harness.fetch_marks), 1)
        _, loading_during_refresh = harness.fetch_marks[0]
        self.assertFalse(loading_during_refresh)

    async def test_placeholder_updated_in_place_not_duplicated(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"a", b"b", b"c"]))
        harness = _Harness(transport)
        await harness.load()

        await harness.controller.send_message("hello")

        for snapshot in harness.recorder.snapshots:
            placeholders = [m for m in snapshot.messages if m.id == AI_RESPONSE_ID]
            self.assertLessEqual(len(placeholders), 1)
        texts = [
            snapshot.pages[0].messages[0].text
            for snapshot in harness.recorder.snapshots
            if snapshot.pages[0].messages[0].id == AI_RESPONSE_ID
        ]
        self.assertEqual(texts[:3], ["a", "ab", "abc"])

    async def test_only_first_page_is_rewritten(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"Hi"]))
        harness = _Harness(transport)
        await harness.load()
        await harness.cache.fetch_next_page(harness.controller.key)
        older_page = harness.cache.get_infinite_data(harness.controller.key).pages[1]

        await harness.controller.send_message("hello")

        for snapshot in harness.recorder.snapshots:
            if len(snapshot.pages) > 1:
                self.assertIs(snapshot.pages[1], older_page)

    async def test_transport_failure_notifies_without_rollback(self) -> None:
        transport = FakeTransport(error=TransportError("boom", status_code=500))
        harness = _Harness(transport)
        await harness.load()
        harness.controller.handle_input_change("hello")

        completed = await harness.controller.add_message()

        self.assertFalse(completed)
        self.assertEqual(len(harness.notifications), 1)
        self.assertEqual(harness.notifications[0].variant, "destructive")
        self.assertEqual(harness.controller.message, "")
        at_refresh = harness.state_at_refresh()
        self.assertEqual(at_refresh.pages[0].messages[0].text, "hello")
        self.assertFalse(harness.controller.is_loading)

    async def test_empty_body_notifies(self) -> None:
        transport = FakeTransport(stream=None)
        harness = _Harness(transport)
        await harness.load()

        completed = await harness.controller.send_message("hello")

        self.assertFalse(completed)
        self.assertEqual(len(harness.notifications), 1)
        self.assertEqual(len(harness.fetch_marks), 1)

    async def test_mid_stream_failure_restores_exact_snapshot(self) -> None:
        stream = FakeStream([b"Hi"], error=RuntimeError("connection reset"))
        transport = FakeTransport(stream=stream)
        harness = _Harness(transport)
        before = await harness.load()
        harness.controller.handle_input_change("hello")

        completed = await harness.controller.add_message()

        self.assertFalse(completed)
        self.assertIs(harness.state_at_refresh(), before)
        self.assertEqual(harness.controller.message, "hello")
        self.assertEqual(harness.controller.state.backup_text, "hello")
        self.assertFalse(harness.controller.is_loading)
        self.assertTrue(stream.closed)
        self.assertEqual(len(harness.notifications), 1)

    async def test_invalid_utf8_rolls_back(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"Hi", b"\xff\xfe"]))
        harness = _Harness(transport)
        before = await harness.load()

        completed = await harness.controller.send_message("hello")

        self.assertFalse(completed)
        self.assertIs(harness.state_at_refresh(), before)
        self.assertEqual(harness.controller.message, "hello")

    async def test_rollback_restores_unloaded_cache(self) -> None:
        transport = FakeTransport(
            stream=FakeStream([b"x"], error=RuntimeError("reset"))
        )
        fetcher = FakeFetcher(error=RuntimeError("offline"))
        harness = _Harness(transport, fetcher=fetcher)
        harness.cache.subscribe(harness.controller.key, harness.recorder)

        await harness.controller.send_message("hello")

        self.assertIsNone(harness.cache.get_infinite_data(harness.controller.key))

    async def test_chunk_boundaries_do_not_change_reply(self) -> None:
        reply = "Grüße, 世界! Here is the summary."
        encoded = reply.encode("utf-8")
        splits = [
            [encoded],
            [encoded[:1], encoded[1:]],
            [encoded[i : i + 1] for i in range(len(encoded))],
            [encoded[:9], encoded[9:15], encoded[15:]],
        ]
        for chunks in splits:
            with self.subTest(chunks=len(chunks)):
                transport = FakeTransport(stream=FakeStream(chunks))
                harness = _Harness(transport)
                await harness.load()
                await harness.controller.send_message("q")
                final = harness.state_at_refresh()
                self.assertEqual(final.pages[0].messages[0].text, reply)

    async def test_inflight_refresh_is_cancelled_before_optimistic_write(self) -> None:
        fetcher = BlockingFetcher()
        transport = FakeTransport(stream=FakeStream([b"Hi"]))
        harness = _Harness(transport, fetcher=fetcher)
        cache = harness.cache
        key = harness.controller.key

        load = asyncio.create_task(cache.fetch_infinite(key))
        await fetcher.started.wait()
        fetcher.release = asyncio.Event()

        send = asyncio.create_task(harness.controller.send_message("hello"))
        await asyncio.sleep(0.01)

        self.assertTrue(fetcher.cancelled)
        self.assertIsNone(await load)
        fetcher.release.set()
        await send

    async def test_listeners_see_loading_transitions(self) -> None:
        transport = FakeTransport(stream=FakeStream([b"Hi"]))
        harness = _Harness(transport)
        await harness.load()
        loading_states: list[bool] = []
        harness.controller.subscribe(
            lambda: loading_states.append(harness.controller.is_loading)
        )

        await harness.controller.send_message("hello")

        self.assertIn(True, loading_states)
        self.assertFalse(loading_states[-1])


class CacheUpdaterTests(unittest.TestCase):
    """Pure snapshot updaters used by the controller."""

    def test_prepend_on_missing_data_returns_empty_snapshot(self) -> None:
        from docchat.models import Message

        self.assertEqual(
            prepend_user_message(None, Message.user("hi")), EMPTY_INFINITE_DATA
        )

    def test_upsert_leaves_pageless_snapshot_alone(self) -> None:
        data = InfiniteData(pages=(), page_params=())
        self.assertIs(upsert_assistant_placeholder(data, "x"), data)

    def test_upsert_inserts_then_replaces(self) -> None:
        data = InfiniteData(pages=(Page(),), page_params=(None,))
        inserted = upsert_assistant_placeholder(data, "He")
        updated = upsert_assistant_placeholder(inserted, "Hello")

        self.assertEqual(len(updated.pages[0].messages), 1)
        self.assertEqual(updated.pages[0].messages[0].text, "Hello")
        self.assertEqual(data.pages[0].messages, ())


if __name__ == "__main__":
    unittest.main()
