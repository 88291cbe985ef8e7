"""Send controller for one open conversation.

Sending runs as a three-phase transaction over the shared paged cache:

1. apply a tentative state (clear the draft, prepend the user message),
2. attempt the remote call and stream the assistant reply into page 0,
3. commit by invalidating the cache, or roll back by restoring the snapshot
   captured before step 1 when the stream fails part-way.
"""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import Callable
from dataclasses import dataclass, replace
import logging
from typing import Literal

from .exceptions import StreamDecodeError, TransportError
from .models import EMPTY_INFINITE_DATA, InfiniteData, Message
from .query_cache import QueryCache, QueryKey
from .task_manager import TaskManager
from .transport import ByteStream, SendTransport

LOGGER = logging.getLogger(__name__)

SEND_FAILED_TITLE = "There was a problem sending this message"
SEND_FAILED_DESCRIPTION = "Please refresh this page and try again"


@dataclass(frozen=True)
class Notification:
    """A user-visible toast raised by the controller."""

    title: str
    description: str = ""
    variant: Literal["default", "destructive"] = "destructive"


@dataclass
class PendingSendState:
    """Draft and in-flight flags for one conversation view."""

    draft_text: str = ""
    backup_text: str = ""
    is_loading: bool = False


def prepend_user_message(
    old: InfiniteData | None, message: Message
) -> InfiniteData:
    """Put ``message`` at the top of page 0, leaving other pages untouched."""
    if old is None:
        return EMPTY_INFINITE_DATA
    if not old.pages:
        return old
    return old.with_first_page(old.pages[0].prepend(message))


def upsert_assistant_placeholder(old: InfiniteData | None, text: str) -> InfiniteData:
    """Insert the streaming assistant message into page 0 or update its text."""
    if old is None:
        return EMPTY_INFINITE_DATA
    if not old.pages:
        return old

    first_page = old.pages[0]
    if not any(page.has_placeholder() for page in old.pages):
        return old.with_first_page(
            first_page.prepend(Message.assistant_placeholder(text))
        )

    updated = tuple(
        replace(message, text=text) if message.is_placeholder else message
        for message in first_page.messages
    )
    return old.with_first_page(replace(first_page, messages=updated))


class MessageSendController:
    """Own the draft for one conversation and drive optimistic sends.

    The controller never reads the cache as ambient global state: the cache,
    transport and notifier are injected, and it writes only to its own
    conversation's key.
    """

    def __init__(
        self,
        conversation_id: str,
        cache: QueryCache,
        transport: SendTransport,
        *,
        limit: int = 10,
        notify: Callable[[Notification], None] | None = None,
        task_manager: TaskManager | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.key = QueryKey(conversation_id=conversation_id, limit=limit)
        self._cache = cache
        self._transport = transport
        self._notify = notify
        self._tasks = task_manager or TaskManager()
        self._state = PendingSendState()
        self._listeners: list[Callable[[], None]] = []

    @property
    def message(self) -> str:
        """Current draft text."""
        return self._state.draft_text

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def state(self) -> PendingSendState:
        """Return a copy of the pending-send state."""
        return PendingSendState(
            draft_text=self._state.draft_text,
            backup_text=self._state.backup_text,
            is_loading=self._state.is_loading,
        )

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call ``listener`` whenever the draft or loading flag changes."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener()

    def handle_input_change(self, text: str) -> None:
        """Replace the draft text."""
        if text == self._state.draft_text:
            return
        self._state.draft_text = text
        self._emit()

    def add_message(self) -> asyncio.Task[bool]:
        """Send the current draft in the background and return the task."""
        return self._tasks.spawn(self.send_message(self._state.draft_text))

    async def send_message(self, text: str) -> bool:
        """Run one send/stream exchange; return True when the reply completed."""
        if self._state.is_loading:
            LOGGER.warning(
                "chat.send.overlap",
                extra={
                    "event": "chat.send.overlap",
                    "conversation_id": self.conversation_id,
                },
            )

        snapshot = await self._apply_optimistic_update(text)
        try:
            try:
                stream = await self._transport.send(self.conversation_id, text)
            except Exception as exc:  # noqa: BLE001 - every transport failure becomes a toast.
                self._report_transport_failure(exc)
                return False

            if stream is None:
                self._report_transport_failure(None)
                return False

            try:
                reply = await self._consume_stream(stream)
            except Exception as exc:  # noqa: BLE001 - any stream-phase failure rolls back.
                self._rollback(snapshot, exc)
                return False

            LOGGER.info(
                "chat.stream.complete",
                extra={
                    "event": "chat.stream.complete",
                    "conversation_id": self.conversation_id,
                    "chars": len(reply),
                },
            )
            return True
        finally:
            await self._settle()

    async def _apply_optimistic_update(self, text: str) -> InfiniteData | None:
        self._state.backup_text = text
        self._state.draft_text = ""
        self._emit()

        # A refresh landing after the optimistic write would clobber it.
        await self._cache.cancel(self.key)
        snapshot = self._cache.get_infinite_data(self.key)

        user_message = Message.user(text)
        self._cache.set_infinite_data(
            self.key, lambda old: prepend_user_message(old, user_message)
        )
        self._state.is_loading = True
        self._emit()
        LOGGER.info(
            "chat.send.start",
            extra={
                "event": "chat.send.start",
                "conversation_id": self.conversation_id,
                "message_id": user_message.id,
            },
        )
        return snapshot

    async def _consume_stream(self, stream: ByteStream) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")()
        accumulated = ""
        try:
            async for chunk in stream:
                accumulated += self._decode(decoder, chunk)
                self._write_reply(accumulated)
            accumulated += self._decode(decoder, b"", final=True)
            self._write_reply(accumulated)
        finally:
            await stream.aclose()
        return accumulated

    @staticmethod
    def _decode(
        decoder: codecs.IncrementalDecoder, chunk: bytes, final: bool = False
    ) -> str:
        try:
            return decoder.decode(chunk, final=final)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError(f"Reply stream is not valid UTF-8: {exc}") from exc

    def _write_reply(self, text: str) -> None:
        self._cache.set_infinite_data(
            self.key, lambda old: upsert_assistant_placeholder(old, text)
        )

    def _report_transport_failure(self, exc: Exception | None) -> None:
        LOGGER.warning(
            "chat.send.failed",
            extra={
                "event": "chat.send.failed",
                "conversation_id": self.conversation_id,
                "status_code": getattr(exc, "status_code", None)
                if isinstance(exc, TransportError)
                else None,
                "error": str(exc) if exc is not None else "empty response body",
            },
        )
        self._toast(Notification(SEND_FAILED_TITLE, SEND_FAILED_DESCRIPTION))

    def _rollback(self, snapshot: InfiniteData | None, exc: Exception) -> None:
        self._state.draft_text = self._state.backup_text
        self._cache.set_infinite_data(self.key, lambda _old: snapshot)
        self._emit()
        LOGGER.warning(
            "chat.stream.rollback",
            extra={
                "event": "chat.stream.rollback",
                "conversation_id": self.conversation_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        self._toast(Notification(SEND_FAILED_TITLE, SEND_FAILED_DESCRIPTION))

    async def _settle(self) -> None:
        self._state.is_loading = False
        self._emit()
        await self._cache.invalidate(self.key)

    def _toast(self, notification: Notification) -> None:
        if self._notify is not None:
            self._notify(notification)
