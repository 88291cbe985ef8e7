"""Tests for message, page and paged-snapshot value types."""

from __future__ import annotations

import dataclasses
import unittest

from fakes import make_message, server_pages

from docchat.models import AI_RESPONSE_ID, EMPTY_INFINITE_DATA, InfiniteData, Message, Page


class MessageTests(unittest.TestCase):
    def test_user_messages_get_unique_ids(self) -> None:
        first = Message.user("hi")
        second = Message.user("hi")

        self.assertNotEqual(first.id, second.id)
        self.assertNotEqual(first.id, AI_RESPONSE_ID)
        self.assertTrue(first.is_user_message)
        self.assertFalse(first.is_placeholder)

    def test_assistant_placeholder(self) -> None:
        placeholder = Message.assistant_placeholder("He")

        self.assertEqual(placeholder.id, AI_RESPONSE_ID)
        self.assertTrue(placeholder.is_placeholder)
        self.assertFalse(placeholder.is_user_message)

    def test_messages_are_immutable(self) -> None:
        with self.assertRaises(dataclasses.FrozenInstanceError):
            Message.user("hi").text = "changed"  # type: ignore[misc]

    def test_from_payload_reads_camel_case_keys(self) -> None:
        payload = {
            "id": "m1",
            "text": "hello",
            "createdAt": "2024-01-01T00:00:00+00:00",
            "isUserMessage": True,
        }

        self.assertEqual(Message.from_payload(payload), make_message("m1", "hello", True))

    def test_from_payload_requires_id(self) -> None:
        with self.assertRaises(ValueError):
            Message.from_payload({"text": "orphan"})

    def test_from_payload_tolerates_null_text(self) -> None:
        message = Message.from_payload({"id": "m1", "text": None})

        self.assertEqual(message.text, "")
        self.assertFalse(message.is_user_message)


class InfiniteDataTests(unittest.TestCase):
    def test_messages_flatten_newest_first(self) -> None:
        pages = server_pages()
        data = EMPTY_INFINITE_DATA.append_page(pages[0], None).append_page(pages[1], "1")

        self.assertEqual([m.id for m in data.messages], ["m3", "m2", "m1", "m0"])
        self.assertEqual(data.page_params, (None, "1"))
        self.assertFalse(data.has_next_page)

    def test_with_first_page_keeps_other_pages(self) -> None:
        pages = server_pages()
        data = InfiniteData(pages=tuple(pages), page_params=(None, "1"))
        replacement = pages[0].prepend(Message.user("new"))

        updated = data.with_first_page(replacement)

        self.assertIs(updated.pages[0], replacement)
        self.assertIs(updated.pages[1], pages[1])
        self.assertEqual(len(data.pages[0].messages), 2)

    def test_with_first_page_on_empty_snapshot(self) -> None:
        self.assertIs(EMPTY_INFINITE_DATA.with_first_page(Page()), EMPTY_INFINITE_DATA)
        self.assertFalse(EMPTY_INFINITE_DATA.has_next_page)

    def test_page_placeholder_detection(self) -> None:
        page = Page(messages=(make_message("m1", "x", False),))

        self.assertFalse(page.has_placeholder())
        self.assertTrue(page.prepend(Message.assistant_placeholder("")).has_placeholder())


if __name__ == "__main__":
    unittest.main()
