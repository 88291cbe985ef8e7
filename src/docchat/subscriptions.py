"""On-disk store of each user's Stripe subscription state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any

from .exceptions import PersistenceError, SubscriptionNotFoundError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionRecord:
    """Billing columns kept for one user."""

    user_id: str
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_price_id: str | None = None
    stripe_current_period_end: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        period_end = self.stripe_current_period_end
        payload["stripe_current_period_end"] = (
            period_end.isoformat() if period_end is not None else None
        )
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SubscriptionRecord:
        raw_period_end = payload.get("stripe_current_period_end")
        period_end = (
            datetime.fromisoformat(raw_period_end)
            if isinstance(raw_period_end, str) and raw_period_end
            else None
        )
        return cls(
            user_id=str(payload["user_id"]),
            stripe_subscription_id=payload.get("stripe_subscription_id"),
            stripe_customer_id=payload.get("stripe_customer_id"),
            stripe_price_id=payload.get("stripe_price_id"),
            stripe_current_period_end=period_end,
        )


class SubscriptionStore:
    """JSON-file store keyed by user id, written only by the billing webhook.

    Webhook deliveries run on worker threads, so every read-modify-write
    holds ``_lock`` and each write goes through its own temp file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError as exc:
            LOGGER.warning("Unable to enforce permissions for %s: %s", path, exc)

    def _read(self) -> dict[str, SubscriptionRecord]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceError(
                f"Unable to read subscription store {self.path}: {exc}"
            ) from exc
        if not isinstance(payload, dict):
            raise PersistenceError("Subscription store payload is invalid.")

        records: dict[str, SubscriptionRecord] = {}
        for user_id, row in payload.items():
            if isinstance(row, dict) and "user_id" in row:
                records[user_id] = SubscriptionRecord.from_payload(row)
        return records

    def _write(self, records: dict[str, SubscriptionRecord]) -> None:
        payload = json.dumps(
            {key: record.to_payload() for key, record in records.items()},
            ensure_ascii=False,
            indent=2,
            sort_keys=True,
        )
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(payload)
            self._enforce_permissions(Path(tmp_name))
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(
                f"Unable to write subscription store {self.path}: {exc}"
            ) from exc

    def get(self, user_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._read().get(user_id)

    def find_by_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._lock:
            records = self._read()
        for record in records.values():
            if record.stripe_subscription_id == subscription_id:
                return record
        return None

    def upsert_for_user(self, user_id: str, **fields: Any) -> SubscriptionRecord:
        """Create or update the record for ``user_id`` with ``fields``."""
        with self._lock:
            records = self._read()
            current = records.get(user_id) or SubscriptionRecord(user_id=user_id)
            updated = replace(current, **fields)
            records[user_id] = updated
            self._write(records)
        return updated

    def update_by_subscription(
        self, subscription_id: str, **fields: Any
    ) -> SubscriptionRecord:
        """Update the record owning ``subscription_id``.

        Raises:
            SubscriptionNotFoundError: when no user holds the subscription.
        """
        with self._lock:
            records = self._read()
            for user_id, record in records.items():
                if record.stripe_subscription_id == subscription_id:
                    updated = replace(record, **fields)
                    records[user_id] = updated
                    self._write(records)
                    return updated
        raise SubscriptionNotFoundError(
            f"No user holds subscription {subscription_id!r}."
        )

    def is_subscribed(self, user_id: str, now: datetime | None = None) -> bool:
        """Return True while the user has a price and an unexpired period."""
        record = self.get(user_id)
        if record is None or not record.stripe_price_id:
            return False
        period_end = record.stripe_current_period_end
        if period_end is None:
            return False
        return period_end > (now or datetime.now(UTC))
