"""Message bubble widget for conversation rendering."""

from __future__ import annotations

from typing import Any

from rich.markdown import Markdown
from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widgets import Static

from ..models import Message


class MessageBubble(Vertical):
    """Render a single chat message with a role header and markdown body."""

    DEFAULT_CSS = """
    MessageBubble {
        height: auto;
        margin-bottom: 1;
    }
    MessageBubble > #header-block {
        padding: 0;
        color: $text-muted;
    }
    MessageBubble > #content-block {
        height: auto;
    }
    MessageBubble.pending > #content-block {
        color: $text-muted;
    }
    """

    def __init__(
        self, message: Message, show_timestamp: bool = True, **kwargs: Any
    ) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.message = message
        self.show_timestamp = show_timestamp
        self.add_class("role-user" if message.is_user_message else "role-assistant")
        self.set_class(message.is_placeholder, "pending")
        self._content_widget: Static | None = None

    @property
    def role_prefix(self) -> str:
        return "You" if self.message.is_user_message else "Assistant"

    def _compose_header(self) -> str:
        if self.show_timestamp and self.message.created_at:
            return f"**{self.role_prefix}**  _{self.message.created_at[:19]}_"
        return f"**{self.role_prefix}**"

    def compose(self) -> ComposeResult:
        self._content_widget = Static("", id="content-block")
        yield Static(Markdown(self._compose_header()), id="header-block")
        yield self._content_widget

    def on_mount(self) -> None:
        self._refresh_content()

    def _refresh_content(self) -> None:
        if self._content_widget is None:
            return
        text = self.message.text.rstrip()
        self._content_widget.update(Markdown(text) if text else "")

    def update_message(self, message: Message) -> None:
        """Swap in a newer version of the same message (streamed text)."""
        if message == self.message:
            return
        self.message = message
        self.set_class(message.is_placeholder, "pending")
        self._refresh_content()
