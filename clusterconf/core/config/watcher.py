"""Subscriptions to config changes.

A ConfigSubscription is the handle returned by UpdateableConfig.subscribe().
The subscriber owns it; UpdateableConfig only keeps a weak reference, so
dropping the handle ends the subscription.
"""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, Optional

if TYPE_CHECKING:
    from clusterconf.core.config.manager import ConfigChangeEvent, Partition, UpdateableConfig

logger = logging.getLogger(__name__)

WatchCallback = Callable[["ConfigChangeEvent"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class ConfigSubscription:
    """A subscription to config changes."""

    callback: WatchCallback
    partitions: FrozenSet["Partition"]
    created_at: datetime = field(default_factory=_utcnow)
    call_count: int = 0
    last_called: Optional[datetime] = None
    subscription_id: int = 0
    _owner: Optional["weakref.ReferenceType[UpdateableConfig]"] = field(
        default=None, repr=False
    )

    def _bind(self, owner: "UpdateableConfig", subscription_id: int) -> None:
        self._owner = weakref.ref(owner)
        self.subscription_id = subscription_id

    @property
    def active(self) -> bool:
        owner = self._owner() if self._owner is not None else None
        return owner is not None and owner.is_subscribed(self)

    def matches(self, event: "ConfigChangeEvent") -> bool:
        return bool(self.partitions & event.partitions)

    def deliver(self, event: "ConfigChangeEvent") -> None:
        """Invoke the callback; errors are logged and never propagate."""
        self.call_count += 1
        self.last_called = _utcnow()
        try:
            self.callback(event)
        except Exception as e:
            logger.error(
                f"Config subscriber callback error: {e}",
                extra={"version": event.versions},
                exc_info=True,
            )

    def cancel(self) -> bool:
        """Unregister from the owning UpdateableConfig."""
        owner = self._owner() if self._owner is not None else None
        if owner is None:
            return False
        return owner.unsubscribe(self)

    def __enter__(self) -> "ConfigSubscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.subscription_id,
            "partitions": sorted(p.value for p in self.partitions),
            "created_at": self.created_at.isoformat(),
            "call_count": self.call_count,
            "last_called": self.last_called.isoformat() if self.last_called else None,
        }


__all__ = ["ConfigSubscription", "WatchCallback"]
