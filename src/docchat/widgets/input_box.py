"""Input row containing the draft field and send button."""

from __future__ import annotations

from textual.containers import Horizontal
from textual.message import Message
from textual.widgets import Button, Input


class InputBox(Horizontal):
    """Draft input with a send button."""

    DEFAULT_CSS = """
    InputBox {
        height: auto;
    }
    InputBox > Input {
        width: 1fr;
    }
    """

    class SendRequested(Message):
        """Posted when the user clicks the send button."""

    def compose(self):  # type: ignore[override]
        yield Input(
            placeholder="Ask a question about this document...",
            id="message_input",
        )
        yield Button("Send", id="send_button", variant="success")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "send_button":
            event.stop()
            self.post_message(self.SendRequested())

    def set_busy(self, busy: bool) -> None:
        """Disable sending while a reply is loading."""
        self.query_one("#send_button", Button).disabled = busy
