"""Scrollable conversation view widget."""

from __future__ import annotations

from collections.abc import Sequence

from textual.containers import VerticalScroll

from ..models import Message
from .message import MessageBubble


class ConversationView(VerticalScroll):
    """A scrollable container that mirrors the cached conversation, oldest first."""

    def __init__(self, show_timestamps: bool = True, **kwargs) -> None:
        super().__init__(**kwargs)
        self.show_timestamps = show_timestamps
        self._bubbles: list[MessageBubble] = []

    @property
    def bubbles(self) -> list[MessageBubble]:
        return list(self._bubbles)

    async def sync_messages(self, messages: Sequence[Message]) -> None:
        """Render ``messages`` (oldest first), reusing bubbles when ids line up."""
        current_ids = [bubble.message.id for bubble in self._bubbles]
        if current_ids == [message.id for message in messages]:
            for bubble, message in zip(self._bubbles, messages):
                bubble.update_message(message)
        else:
            await self.remove_children()
            self._bubbles = [
                MessageBubble(message, show_timestamp=self.show_timestamps)
                for message in messages
            ]
            if self._bubbles:
                await self.mount_all(self._bubbles)
        self.scroll_end(animate=False)
