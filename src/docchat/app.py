"""Textual terminal client for chatting with one uploaded document."""

from __future__ import annotations

import logging
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.widgets import Footer, Header, Input

from .config import load_config
from .controller import MessageSendController, Notification
from .exceptions import CacheError
from .logging_utils import configure_logging
from .models import InfiniteData
from .query_cache import QueryCache
from .task_manager import TaskManager
from .transport import HttpSendTransport
from .widgets.conversation import ConversationView
from .widgets.input_box import InputBox

LOGGER = logging.getLogger(__name__)

_NOTHING_PENDING = object()


class DocChatApp(App[None]):
    """Conversation view bound to a paged cache and a send controller."""

    CSS = """
    #app-root {
        height: 1fr;
        layout: vertical;
    }
    ConversationView {
        height: 1fr;
        padding: 0 1;
    }
    """

    DEFAULT_ACTION_DESCRIPTIONS: dict[str, str] = {
        "send_message": "Send",
        "load_older": "Older",
        "refresh": "Refresh",
        "scroll_up": "Scroll Up",
        "scroll_down": "Scroll Down",
        "quit": "Quit",
    }

    def __init__(
        self,
        file_id: str,
        config: dict[str, dict[str, Any]] | None = None,
        transport: HttpSendTransport | None = None,
    ) -> None:
        self.config = config or load_config()
        configure_logging(self.config["logging"])
        self.file_id = file_id

        api_cfg = self.config["api"]
        self.transport = transport or HttpSendTransport(
            str(api_cfg["base_url"]),
            api_token=str(api_cfg["api_token"]),
            timeout=float(api_cfg["timeout"]),
        )
        self._task_manager = TaskManager()
        self.cache = QueryCache(self.transport, task_manager=self._task_manager)
        self.controller = MessageSendController(
            file_id,
            self.cache,
            self.transport,
            limit=int(self.config["chat"]["infinite_query_limit"]),
            notify=self._show_notification,
            task_manager=self._task_manager,
        )
        self._pending_render: Any = _NOTHING_PENDING
        self._unsubscribers: list[Any] = []
        self._binding_specs = self._binding_specs_from_config(self.config)
        super().__init__()
        self.title = str(self.config["app"]["title"])
        self.sub_title = f"Document {file_id}"

    @classmethod
    def _binding_specs_from_config(
        cls, config: dict[str, dict[str, Any]]
    ) -> list[Binding]:
        keybinds = config.get("keybinds", {})
        bindings: list[Binding] = []
        for action_name, description in cls.DEFAULT_ACTION_DESCRIPTIONS.items():
            binding_key = keybinds.get(action_name)
            if isinstance(binding_key, str) and binding_key.strip():
                bindings.append(
                    Binding(
                        key=binding_key.strip(),
                        action=action_name,
                        description=description,
                        show=True,
                    )
                )
        return bindings

    def compose(self) -> ComposeResult:
        yield Header()
        with Container(id="app-root"):
            yield ConversationView(
                show_timestamps=bool(self.config["chat"]["show_timestamps"]),
                id="conversation",
            )
            yield InputBox()
        yield Footer()

    async def on_mount(self) -> None:
        """Register runtime keybindings, wire listeners, and load history."""
        for binding in self._binding_specs:
            self.bind(
                binding.key,
                binding.action,
                description=binding.description,
                show=binding.show,
            )
        self._unsubscribers.append(
            self.cache.subscribe(self.controller.key, self._on_cache_changed)
        )
        self._unsubscribers.append(self.controller.subscribe(self._on_controller_changed))
        self.query_one("#message_input", Input).focus()
        self._task_manager.spawn(self._load_history(), name="history")

    async def _load_history(self) -> None:
        try:
            await self.cache.fetch_infinite(self.controller.key)
        except CacheError as exc:
            LOGGER.warning(
                "app.history.load_failed",
                extra={"event": "app.history.load_failed", "error": str(exc)},
            )
            self.notify(str(exc), title="Unable to load messages", severity="error")

    def _on_cache_changed(self, data: InfiniteData | None) -> None:
        self._pending_render = data
        if not self._task_manager.is_running("render"):
            self._task_manager.spawn(self._drain_renders(), name="render")

    async def _drain_renders(self) -> None:
        conversation = self.query_one(ConversationView)
        while self._pending_render is not _NOTHING_PENDING:
            data = self._pending_render
            self._pending_render = _NOTHING_PENDING
            messages = list(reversed(data.messages)) if data is not None else []
            await conversation.sync_messages(messages)

    def _on_controller_changed(self) -> None:
        message_input = self.query_one("#message_input", Input)
        if message_input.value != self.controller.message:
            message_input.value = self.controller.message
        self.query_one(InputBox).set_busy(self.controller.is_loading)
        self.sub_title = (
            "Waiting for response..."
            if self.controller.is_loading
            else f"Document {self.file_id}"
        )

    def _show_notification(self, notification: Notification) -> None:
        self.notify(
            notification.description,
            title=notification.title,
            severity="error" if notification.variant == "destructive" else "information",
        )

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "message_input":
            self.controller.handle_input_change(event.value)

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "message_input":
            self.action_send_message()

    def on_input_box_send_requested(self, _event: InputBox.SendRequested) -> None:
        self.action_send_message()

    def action_send_message(self) -> None:
        """Send the current draft unless it is blank."""
        if not self.controller.message.strip():
            return
        self.controller.add_message()

    async def action_load_older(self) -> None:
        try:
            await self.cache.fetch_next_page(self.controller.key)
        except CacheError as exc:
            self.notify(str(exc), title="Unable to load older messages", severity="error")

    async def action_refresh(self) -> None:
        await self.cache.invalidate(self.controller.key)

    def action_scroll_up(self) -> None:
        self.query_one(ConversationView).scroll_relative(y=-10, animate=False)

    def action_scroll_down(self) -> None:
        self.query_one(ConversationView).scroll_relative(y=10, animate=False)

    async def action_quit(self) -> None:
        self.exit()

    async def on_unmount(self) -> None:
        """Cancel and await all background tasks during shutdown."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        await self._task_manager.cancel_all()
        await self.transport.aclose()
