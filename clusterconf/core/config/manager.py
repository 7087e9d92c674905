"""Live config state shared with the rest of the process.

UpdateableConfig holds the current server and logs snapshots behind a
single reference. Readers take that reference without locking; writers
build a new state and swap it in.
"""

from __future__ import annotations

import inspect
import itertools
import logging
import threading
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from clusterconf.core.config.watcher import ConfigSubscription, WatchCallback
from clusterconf.core.errors import PairingMismatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Partition(str, Enum):
    """Independently managed config domains."""

    SERVER = "server"
    LOGS = "logs"


class PairingPolicy(str, Enum):
    """How server and logs pairing markers are reconciled."""

    IGNORE = "ignore"
    IF_PRESENT = "if_present"  # enforce only when both partitions carry a marker
    REQUIRED = "required"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConfigSnapshot(Generic[T]):
    """An immutable, versioned, fully parsed config value."""

    partition: Partition
    config: T
    version: int
    checksum: str
    source: str = ""
    fetched_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.version < 1:
            raise ValueError("snapshot versions start at 1")

    @property
    def pairing(self) -> Optional[str]:
        return getattr(self.config, "pairing", None)

    def to_dict(self) -> Dict[str, Any]:
        dump = getattr(self.config, "model_dump", None)
        return {
            "partition": self.partition.value,
            "version": self.version,
            "checksum": self.checksum,
            "source": self.source,
            "fetched_at": self.fetched_at.isoformat(),
            "config": dump(mode="json") if dump else self.config,
        }


@dataclass(frozen=True)
class ConfigState:
    """The pair of snapshots visible to readers at one point in time."""

    server: Optional[ConfigSnapshot] = None
    logs: Optional[ConfigSnapshot] = None

    def get(self, partition: Partition) -> Optional[ConfigSnapshot]:
        return self.server if partition is Partition.SERVER else self.logs

    def version(self, partition: Partition) -> int:
        snapshot = self.get(partition)
        return snapshot.version if snapshot else 0

    def replace(self, snapshots: Dict[Partition, ConfigSnapshot]) -> "ConfigState":
        return ConfigState(
            server=snapshots.get(Partition.SERVER, self.server),
            logs=snapshots.get(Partition.LOGS, self.logs),
        )

    def versions(self) -> Dict[str, int]:
        return {p.value: self.version(p) for p in Partition}


@dataclass(frozen=True)
class ConfigChangeEvent:
    """Emitted once per successful publish."""

    partitions: FrozenSet[Partition]
    previous: ConfigState
    current: ConfigState
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def versions(self) -> Dict[str, int]:
        return {p.value: self.current.version(p) for p in self.partitions}

    def snapshot(self, partition: Union[Partition, str]) -> Optional[ConfigSnapshot]:
        return self.current.get(Partition(partition))


class UpdateableConfig:
    """Current server/logs snapshots with atomic publication and change callbacks.

    Reads never block. Publishes are serialized; a snapshot whose version is
    not strictly newer than the current one for its partition is dropped.
    Subscribers are notified after the swap, outside the writer lock, in
    publish order.
    """

    def __init__(
        self,
        pairing_policy: Union[PairingPolicy, str] = PairingPolicy.IF_PRESENT,
        name: str = "default",
    ):
        self.name = name
        self.pairing_policy = PairingPolicy(pairing_policy)
        self._state = ConfigState()
        self._pending: Mapping[Partition, ConfigSnapshot] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self._notify_lock = threading.Lock()
        self._dispatching = threading.local()
        self._subs_lock = threading.Lock()
        self._subscriptions: "weakref.WeakValueDictionary[int, ConfigSubscription]" = (
            weakref.WeakValueDictionary()
        )
        self._sub_ids = itertools.count(1)
        self._publish_count = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current(self) -> ConfigState:
        return self._state

    def current_server_config(self) -> Optional[ConfigSnapshot]:
        return self._state.server

    def current_logs_config(self) -> Optional[ConfigSnapshot]:
        return self._state.logs

    def current_snapshot(self, partition: Union[Partition, str]) -> Optional[ConfigSnapshot]:
        return self._state.get(Partition(partition))

    def version(self, partition: Union[Partition, str]) -> int:
        return self._state.version(Partition(partition))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def publish(self, partition: Union[Partition, str], snapshot: ConfigSnapshot) -> bool:
        """Publish one snapshot. Returns False when it was stale."""
        if snapshot.partition is not Partition(partition):
            raise ValueError(
                f"snapshot for {snapshot.partition.value} published as {partition}"
            )
        return self.publish_many([snapshot])

    def publish_many(
        self,
        snapshots: Iterable[ConfigSnapshot],
        hold_on_mismatch: bool = True,
    ) -> bool:
        """Atomically publish snapshots for one or more partitions.

        Raises PairingMismatchError when the resulting pair violates the
        pairing policy; the current state is left untouched. With
        hold_on_mismatch the rejected snapshots are kept and committed once
        the sibling partition publishes a matching marker.
        """
        return bool(self.commit_many(snapshots, hold_on_mismatch))

    def commit_many(
        self,
        snapshots: Iterable[ConfigSnapshot],
        hold_on_mismatch: bool = True,
    ) -> List[ConfigSnapshot]:
        """Like publish_many(), but return every snapshot that went live.

        The result includes held snapshots of the sibling partition that
        were committed together with the given ones; it is empty when all
        given snapshots were stale.
        """
        if getattr(self._dispatching, "active", False):
            raise RuntimeError("publish() must not be called from a change callback")

        incoming: Dict[Partition, ConfigSnapshot] = {}
        for snapshot in snapshots:
            if snapshot.partition in incoming:
                raise ValueError(f"duplicate snapshot for {snapshot.partition.value}")
            incoming[snapshot.partition] = snapshot

        with self._write_lock:
            previous = self._state
            accepted = {
                p: s for p, s in incoming.items() if s.version > previous.version(p)
            }
            for p in incoming.keys() - accepted.keys():
                logger.debug(
                    f"Discarding stale {p.value} snapshot v{incoming[p].version} "
                    f"(current v{previous.version(p)})",
                    extra={"partition": p.value, "version": incoming[p].version},
                )
            if not accepted:
                return []

            candidate = previous.replace(accepted)
            conflict = self._pairing_conflict(candidate)
            if conflict is not None:
                completed = self._complete_from_pending(candidate, accepted)
                if completed is None:
                    if hold_on_mismatch:
                        self._pending = MappingProxyType({**self._pending, **accepted})
                    partition = next(iter(accepted))
                    sibling = Partition.LOGS if partition is Partition.SERVER else Partition.SERVER
                    raise PairingMismatchError(
                        partition.value,
                        expected=candidate.get(sibling).pairing if candidate.get(sibling) else None,
                        actual=accepted[partition].pairing,
                    )
                candidate, accepted = completed

            if self._pending.keys() & accepted.keys():
                self._pending = MappingProxyType(
                    {p: s for p, s in self._pending.items() if p not in accepted}
                )
            self._state = candidate
            self._publish_count += 1
            # Taken before releasing the writer lock so notifications keep publish order
            self._notify_lock.acquire()

        try:
            logger.info(
                f"Published config {self.name}: {candidate.versions()}",
                extra={"version": {p.value: s.version for p, s in accepted.items()}},
            )
            self._dispatch(ConfigChangeEvent(frozenset(accepted), previous, candidate))
        finally:
            self._notify_lock.release()
        return [accepted[p] for p in Partition if p in accepted]

    def _pairing_conflict(self, state: ConfigState) -> Optional[Tuple[Optional[str], Optional[str]]]:
        if self.pairing_policy is PairingPolicy.IGNORE:
            return None
        if state.server is None or state.logs is None:
            return None
        server_marker, logs_marker = state.server.pairing, state.logs.pairing
        if self.pairing_policy is PairingPolicy.IF_PRESENT and (
            server_marker is None or logs_marker is None
        ):
            return None
        if server_marker is None or server_marker != logs_marker:
            return server_marker, logs_marker
        return None

    def _complete_from_pending(
        self,
        candidate: ConfigState,
        accepted: Dict[Partition, ConfigSnapshot],
    ) -> Optional[Tuple[ConfigState, Dict[Partition, ConfigSnapshot]]]:
        for partition, held in self._pending.items():
            if partition in accepted or held.version <= candidate.version(partition):
                continue
            trial = candidate.replace({partition: held})
            if self._pairing_conflict(trial) is None:
                logger.info(
                    f"Committing held {partition.value} snapshot v{held.version} "
                    f"with matching pairing marker {held.pairing!r}",
                    extra={"partition": partition.value, "pairing": held.pairing},
                )
                return trial, {**accepted, partition: held}
        return None

    def pending(self) -> Dict[str, int]:
        """Versions of snapshots held back by a pairing mismatch."""
        return {p.value: s.version for p, s in self._pending.items()}

    def reset(self) -> None:
        """Drop all snapshots and held updates."""
        with self._write_lock:
            self._state = ConfigState()
            self._pending = MappingProxyType({})

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        callback: WatchCallback,
        partitions: Optional[Iterable[Union[Partition, str]]] = None,
    ) -> ConfigSubscription:
        """Register a change listener.

        The returned handle must be kept alive by the caller. Callbacks run
        on the publishing thread and must not block or publish.
        """
        if inspect.iscoroutinefunction(callback):
            raise TypeError("config change callbacks must be plain functions")
        parts = frozenset(Partition(p) for p in partitions) if partitions else frozenset(Partition)
        subscription = ConfigSubscription(callback=callback, partitions=parts)
        with self._subs_lock:
            sub_id = next(self._sub_ids)
            subscription._bind(self, sub_id)
            self._subscriptions[sub_id] = subscription
        logger.debug(f"Config subscription {sub_id} registered")
        return subscription

    def unsubscribe(self, subscription: ConfigSubscription) -> bool:
        with self._subs_lock:
            current = self._subscriptions.get(subscription.subscription_id)
            if current is not subscription:
                return False
            del self._subscriptions[subscription.subscription_id]
        return True

    def is_subscribed(self, subscription: ConfigSubscription) -> bool:
        with self._subs_lock:
            return self._subscriptions.get(subscription.subscription_id) is subscription

    def subscriber_count(self) -> int:
        with self._subs_lock:
            return len(self._subscriptions)

    def _dispatch(self, event: ConfigChangeEvent) -> None:
        with self._subs_lock:
            subscriptions: List[ConfigSubscription] = [
                sub for _, sub in sorted(self._subscriptions.items())
            ]
        self._dispatching.active = True
        try:
            for subscription in subscriptions:
                if subscription.matches(event):
                    subscription.deliver(event)
        finally:
            self._dispatching.active = False

    def describe(self) -> Dict[str, Any]:
        """Diagnostic view of the current state."""
        state = self._state
        return {
            "name": self.name,
            "pairing_policy": self.pairing_policy.value,
            "versions": state.versions(),
            "checksums": {
                p.value: (state.get(p).checksum if state.get(p) else None) for p in Partition
            },
            "publish_count": self._publish_count,
            "subscribers": self.subscriber_count(),
            "pending": self.pending(),
        }


__all__ = [
    "Partition",
    "PairingPolicy",
    "ConfigSnapshot",
    "ConfigState",
    "ConfigChangeEvent",
    "UpdateableConfig",
]
