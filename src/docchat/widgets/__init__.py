"""Textual widgets for the conversation view."""

from .conversation import ConversationView
from .input_box import InputBox
from .message import MessageBubble

__all__ = ["ConversationView", "InputBox", "MessageBubble"]
