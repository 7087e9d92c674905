"""Config Updater Implementation.

Drives one source for one or more partitions: a bounded bootstrap fetch,
then a background refresh loop that publishes new snapshots into an
UpdateableConfig. A failed refresh never replaces the config being served.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from clusterconf.core.config.manager import (
    ConfigChangeEvent,
    ConfigSnapshot,
    Partition,
    UpdateableConfig,
)
from clusterconf.core.config.models import ServerConfig
from clusterconf.core.config.parser import ConfigParser, Document
from clusterconf.core.config.sources import ConfigSource, FetchResult
from clusterconf.core.config.watcher import ConfigSubscription
from clusterconf.core.errors import (
    ConfigError,
    ConfigErrorKind,
    ConfigParseError,
    ConfigSourceError,
    PairingMismatchError,
)
from clusterconf.utils.metrics import NullStatsCollector, StatsCollector

logger = logging.getLogger(__name__)


class ConfigUpdater:
    """Fetch, parse and publish one config source on a schedule."""

    def __init__(
        self,
        source: ConfigSource,
        target: UpdateableConfig,
        partitions: Iterable[Union[Partition, str]],
        parser: Optional[ConfigParser] = None,
        stats: Optional[StatsCollector] = None,
        refresh_timeout: float = 5.0,
        polling_interval: Optional[float] = None,
    ):
        self.source = source
        self.target = target
        self.partitions: Tuple[Partition, ...] = tuple(Partition(p) for p in partitions)
        if not self.partitions:
            raise ValueError("ConfigUpdater needs at least one partition")
        self.parser = parser or ConfigParser()
        self.stats = stats or NullStatsCollector()
        self.refresh_timeout = refresh_timeout
        self.polling_interval = (
            polling_interval if polling_interval is not None else source.polling_interval
        )

        # Set by load() when the main document points at a separate logs config
        self.logs_reference: Optional[str] = None

        self._last_checksum: Optional[str] = None
        self._rejected_checksum: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._cycle_lock: Optional[asyncio.Lock] = None
        self._stopped = False
        self._source_closed = False
        self._push_enabled = False
        self._last_error_kind: Optional[ConfigErrorKind] = None

        # Snapshots rejected on a pairing mismatch and held by the target
        self._held: List[ConfigSnapshot] = []
        self._hold_subscription: Optional[ConfigSubscription] = None

        self._metrics = {
            "refresh_count": 0,
            "publish_count": 0,
            "unchanged_count": 0,
            "fetch_failures": 0,
            "parse_failures": 0,
            "pairing_rejections": 0,
        }

    def _get_cycle_lock(self) -> asyncio.Lock:
        if self._cycle_lock is None:
            self._cycle_lock = asyncio.Lock()
        return self._cycle_lock

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _record(self, outcome: Any, latency: float) -> None:
        for partition in self.partitions:
            self.stats.record_fetch(partition, outcome, latency)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _build(self, result: FetchResult, discover_logs: bool = False) -> List[ConfigSnapshot]:
        document = self.parser.decode(result.payload, hint=self.source.hint)
        parsed: Dict[Partition, Any] = {}

        if Partition.SERVER in self.partitions:
            parsed[Partition.SERVER] = self.parser.parse_server(document)

        if Partition.LOGS in self.partitions:
            if Partition.SERVER in self.partitions:
                logs = self._embedded_logs(document, parsed[Partition.SERVER], discover_logs)
            else:
                logs = self.parser.parse_logs(document)
            if logs is not None:
                parsed[Partition.LOGS] = logs

        return [
            ConfigSnapshot(
                partition=partition,
                config=config,
                version=self.target.version(partition) + 1,
                checksum=result.checksum,
                source=self.source.name,
                fetched_at=result.fetched_at,
            )
            for partition, config in parsed.items()
        ]

    def _embedded_logs(
        self,
        document: Document,
        server: ServerConfig,
        discover_logs: bool,
    ) -> Any:
        section = document.get("logs") if isinstance(document, dict) else None
        if section is not None:
            if isinstance(section, list):
                section = {"logs": section, "pairing": server.pairing}
            elif isinstance(section, dict) and "pairing" not in section:
                section = {**section, "pairing": server.pairing}
            return self.parser.parse_logs(section)

        if server.include_log_config and discover_logs:
            self.logs_reference = self.source.resolve(server.include_log_config)
            self.partitions = tuple(p for p in self.partitions if p is not Partition.LOGS)
            logger.info(
                f"Logs config for {self.name} is stored separately at {self.logs_reference}",
                extra={"source": self.name},
            )
            return None

        raise ConfigParseError(
            "config has neither a logs section nor an include_log_config reference"
        )

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def load(self, timeout: float) -> List[ConfigSnapshot]:
        """Fetch and parse once without publishing. No retries."""
        started = time.monotonic()
        try:
            result = await self.source.fetch(timeout)
        except ConfigSourceError as e:
            self._last_error_kind = e.kind
            self._record(e.kind, time.monotonic() - started)
            raise

        latency = time.monotonic() - started
        try:
            snapshots = self._build(result, discover_logs=True)
        except ConfigParseError as e:
            self._last_error_kind = e.kind
            self._record(e.kind, latency)
            raise

        self._record("success", latency)
        self._last_checksum = result.checksum
        logger.info(
            f"Loaded {', '.join(s.partition.value for s in snapshots)} config from {self.name}",
            extra={"source": self.name, "checksum": result.checksum[:12]},
        )
        return snapshots

    async def bootstrap(self, timeout: float) -> List[ConfigSnapshot]:
        """Load and publish the initial snapshots."""
        snapshots = await self.load(timeout)
        for snapshot in self.target.commit_many(snapshots, hold_on_mismatch=False):
            self.stats.record_publish(snapshot.partition, snapshot.version)
        return snapshots

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background refresh task."""
        if self._task is not None:
            return
        if self._stopped:
            raise ConfigError(f"updater for {self.name} was stopped", ConfigErrorKind.INVALID_PARAM)

        coro = self._run()
        try:
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(coro, name=f"config-updater:{self.name}")
        except RuntimeError as e:
            coro.close()
            raise ConfigError(
                f"cannot start refresh task for {self.name}: {e}",
                ConfigErrorKind.RESOURCE_LIMIT,
            ) from e
        logger.info(
            f"Started config refresh for {self.name} (interval={self.polling_interval}s)",
            extra={"source": self.name},
        )

    async def _run(self) -> None:
        self._wakeup = asyncio.Event()
        if self.source.supports_push:
            try:
                self._push_enabled = await self.source.subscribe(self._wakeup.set)
            except Exception as e:
                logger.warning(f"Push notifications unavailable for {self.name}: {e}")

        while not self._stopped:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.polling_interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wakeup.clear()
            if self._stopped:
                break

            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Config refresh error for {self.name}: {e}", exc_info=True)

    def notify(self) -> None:
        """Trigger a refresh cycle ahead of the polling schedule."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def refresh_once(self) -> bool:
        """Run one refresh cycle. Returns True if new snapshots were published."""
        async with self._get_cycle_lock():
            if self._stopped:
                return False
            self._metrics["refresh_count"] += 1

            started = time.monotonic()
            try:
                result = await self.source.fetch(self.refresh_timeout)
            except ConfigSourceError as e:
                self._last_error_kind = e.kind
                self._metrics["fetch_failures"] += 1
                self._record(e.kind, time.monotonic() - started)
                logger.warning(
                    f"Config fetch from {self.name} failed, keeping current config: {e}",
                    extra={"source": self.name, "error_kind": e.kind.value},
                )
                return False
            latency = time.monotonic() - started

            if result.checksum in (self._last_checksum, self._rejected_checksum):
                self._metrics["unchanged_count"] += 1
                self._record("unchanged", latency)
                return False

            try:
                snapshots = self._build(result)
            except ConfigParseError as e:
                self._rejected_checksum = result.checksum
                self._last_error_kind = e.kind
                self._metrics["parse_failures"] += 1
                self._record(e.kind, latency)
                logger.error(
                    f"Rejected config from {self.name}, keeping current config: {e.message}",
                    extra={"source": self.name, "error_kind": e.kind.value},
                )
                return False

            if self._stopped:
                return False

            try:
                committed = self.target.commit_many(snapshots)
            except PairingMismatchError as e:
                # Held by the target until the sibling partition catches up
                self._hold(snapshots)
                self._last_checksum = result.checksum
                self._last_error_kind = e.kind
                self._metrics["pairing_rejections"] += 1
                self._record(e.kind, latency)
                logger.warning(
                    f"Config from {self.name} held back: {e.message}",
                    extra={"source": self.name, "error_kind": e.kind.value},
                )
                return False

            self._last_checksum = result.checksum
            self._last_error_kind = None
            self._record("success", latency)
            self._release_hold()
            if committed:
                self._metrics["publish_count"] += 1
                # Includes held sibling snapshots committed in the same swap
                for snapshot in committed:
                    self.stats.record_publish(snapshot.partition, snapshot.version)
            return bool(committed)

    def _hold(self, snapshots: List[ConfigSnapshot]) -> None:
        self._held = list(snapshots)
        if self._hold_subscription is None:
            self._hold_subscription = self.target.subscribe(
                self._on_held_commit, partitions=self.partitions
            )

    def _on_held_commit(self, event: ConfigChangeEvent) -> None:
        # Runs on the publishing thread when a sibling commits our held snapshots
        committed = [s for s in self._held if event.current.get(s.partition) is s]
        if not committed:
            return
        self._metrics["publish_count"] += 1
        self._held = [s for s in self._held if s not in committed]
        versions = ", ".join(f"{s.partition.value} v{s.version}" for s in committed)
        logger.info(
            f"Held config from {self.name} committed: {versions}",
            extra={"source": self.name},
        )

    def _release_hold(self) -> None:
        self._held = []
        if self._hold_subscription is not None:
            subscription, self._hold_subscription = self._hold_subscription, None
            subscription.cancel()

    async def stop(self) -> None:
        """Stop refreshing and close the source. Safe to call more than once."""
        self._stopped = True
        self._release_hold()
        if self._task is not None:
            task, self._task = self._task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if not self._source_closed:
            self._source_closed = True
            await self.source.close()
            logger.info(f"Stopped config updater for {self.name}", extra={"source": self.name})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "source": self.name,
            "partitions": [p.value for p in self.partitions],
            "running": self.running,
            "push_enabled": self._push_enabled,
            "polling_interval_s": self.polling_interval,
            "last_checksum": self._last_checksum,
            "last_error_kind": self._last_error_kind.value if self._last_error_kind else None,
            "held": [s.version for s in self._held],
            **self._metrics,
        }


__all__ = ["ConfigUpdater"]
