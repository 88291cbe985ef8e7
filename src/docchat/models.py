"""Immutable message, page, and paged-snapshot value types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

# Reserved id carried by the assistant reply while it is still streaming.
AI_RESPONSE_ID = "ai-response"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class Message:
    """A single chat message as the conversation view renders it."""

    id: str
    text: str
    created_at: str
    is_user_message: bool

    @classmethod
    def user(cls, text: str) -> Message:
        """Build an optimistic user message with a client-generated id."""
        return cls(
            id=str(uuid4()),
            text=text,
            created_at=utc_now_iso(),
            is_user_message=True,
        )

    @classmethod
    def assistant_placeholder(cls, text: str) -> Message:
        return cls(
            id=AI_RESPONSE_ID,
            text=text,
            created_at=utc_now_iso(),
            is_user_message=False,
        )

    @property
    def is_placeholder(self) -> bool:
        return self.id == AI_RESPONSE_ID

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Message:
        """Build a message from the camelCase JSON the messages endpoint returns."""
        message_id = payload.get("id")
        if not isinstance(message_id, str) or not message_id:
            raise ValueError("Message payload requires a non-empty string id.")
        text = payload.get("text")
        return cls(
            id=message_id,
            text=text if isinstance(text, str) else "",
            created_at=str(payload.get("createdAt") or ""),
            is_user_message=bool(payload.get("isUserMessage", False)),
        )


@dataclass(frozen=True)
class Page:
    """One fetched page of a conversation, newest message first."""

    messages: tuple[Message, ...] = ()
    next_cursor: str | None = None

    def prepend(self, message: Message) -> Page:
        return replace(self, messages=(message, *self.messages))

    def has_placeholder(self) -> bool:
        return any(message.is_placeholder for message in self.messages)


@dataclass(frozen=True)
class InfiniteData:
    """Snapshot of every loaded page for one cache key, newest page at index 0.

    ``page_params`` holds the cursor each page was fetched with (``None`` for
    the first page) so an invalidation can refetch the same window.
    """

    pages: tuple[Page, ...] = ()
    page_params: tuple[str | None, ...] = field(default_factory=tuple)

    @property
    def messages(self) -> list[Message]:
        """Flatten all pages, newest message first."""
        return [message for page in self.pages for message in page.messages]

    @property
    def has_next_page(self) -> bool:
        return bool(self.pages) and self.pages[-1].next_cursor is not None

    def with_first_page(self, page: Page) -> InfiniteData:
        """Return a copy whose page 0 is replaced; other pages pass through."""
        if not self.pages:
            return self
        return replace(self, pages=(page, *self.pages[1:]))

    def append_page(self, page: Page, param: str | None) -> InfiniteData:
        return InfiniteData(
            pages=(*self.pages, page),
            page_params=(*self.page_params, param),
        )


EMPTY_INFINITE_DATA = InfiniteData()
