"""Top-level package for docchat."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import DocChatApp
    from .billing import StripeGateway, create_app
    from .config import ensure_config_dir, load_config
    from .controller import MessageSendController, Notification
    from .exceptions import (
        BillingError,
        CacheError,
        ConfigValidationError,
        DocChatError,
        StreamDecodeError,
        TransportError,
        WebhookVerificationError,
    )
    from .models import InfiniteData, Message, Page
    from .query_cache import QueryCache, QueryKey
    from .subscriptions import SubscriptionStore
    from .transport import HttpSendTransport

# Symbol -> submodule; imported on first access so the webhook server does
# not pull in Textual and the client does not pull in FastAPI/Stripe.
_EXPORTS: dict[str, str] = {
    "DocChatApp": "app",
    "StripeGateway": "billing",
    "create_app": "billing",
    "ensure_config_dir": "config",
    "load_config": "config",
    "MessageSendController": "controller",
    "Notification": "controller",
    "BillingError": "exceptions",
    "CacheError": "exceptions",
    "ConfigValidationError": "exceptions",
    "DocChatError": "exceptions",
    "StreamDecodeError": "exceptions",
    "TransportError": "exceptions",
    "WebhookVerificationError": "exceptions",
    "InfiniteData": "models",
    "Message": "models",
    "Page": "models",
    "QueryCache": "query_cache",
    "QueryKey": "query_cache",
    "SubscriptionStore": "subscriptions",
    "HttpSendTransport": "transport",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import public symbols from their submodules."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module = import_module(f".{module_name}", __name__)
    return getattr(module, name)
