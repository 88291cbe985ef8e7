"""Domain exception hierarchy for the document-chat client and billing service."""

from __future__ import annotations


class DocChatError(RuntimeError):
    """Base class for all domain-level docchat errors."""


class ConfigValidationError(DocChatError):
    """Raised when configuration cannot be validated safely."""


class TransportError(DocChatError):
    """Raised when the message endpoint cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamDecodeError(DocChatError):
    """Raised when a streamed reply is not valid UTF-8."""


class CacheError(DocChatError):
    """Raised when the paged cache cannot satisfy a request."""


class BillingError(DocChatError):
    """Base class for billing webhook failures."""


class WebhookVerificationError(BillingError):
    """Raised when a webhook payload or its signature cannot be verified."""


class SubscriptionNotFoundError(BillingError):
    """Raised when no user owns the subscription named by an event."""


class PersistenceError(DocChatError):
    """Raised when the subscription store cannot be read or written."""
