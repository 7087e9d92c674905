"""ConfigInit: attach an UpdateableConfig to a config source.

attach() resolves the source specifier, performs the bootstrap fetch of
every required partition within one deadline, publishes the result in a
single swap and only then starts the background refresh loops. Either
everything is live afterwards or nothing is.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from clusterconf.core.config.manager import PairingPolicy, Partition, UpdateableConfig
from clusterconf.core.config.parser import ConfigParser, ParserOptions
from clusterconf.core.config.selector import PluginPack, SourceSelector
from clusterconf.core.config.sources import (
    ConfigSource,
    FileConfigSource,
    RemoteConfigSource,
    ZookeeperConfigSource,
)
from clusterconf.core.config.updater import ConfigUpdater
from clusterconf.core.errors import (
    ConfigAttachError,
    ConfigError,
    ConfigErrorKind,
    InvalidSourceError,
    attach_error_kind,
)
from clusterconf.core.settings import Settings, get_settings
from clusterconf.utils.metrics import NullStatsCollector, StatsCollector

logger = logging.getLogger(__name__)

SourceLike = Union[str, ConfigSource]


@dataclass
class ConfigInitOptions:
    """Timeouts and polling intervals used by ConfigInit (seconds)."""

    fetch_timeout: float = 5.0
    refresh_timeout: float = 5.0
    file_polling_interval: float = FileConfigSource.default_polling_interval
    zk_polling_interval: float = ZookeeperConfigSource.default_polling_interval
    remote_polling_interval: float = RemoteConfigSource.default_polling_interval
    zookeeper_hosts: Optional[str] = None
    zk_session_timeout: float = 10.0
    pairing_policy: PairingPolicy = PairingPolicy.IF_PRESENT

    def validate(self) -> None:
        if self.fetch_timeout < 0:
            raise ConfigError("fetch timeout must be non-negative", ConfigErrorKind.INVALID_PARAM)
        positive = {
            "refresh_timeout": self.refresh_timeout,
            "file_polling_interval": self.file_polling_interval,
            "zk_polling_interval": self.zk_polling_interval,
            "remote_polling_interval": self.remote_polling_interval,
            "zk_session_timeout": self.zk_session_timeout,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}", ConfigErrorKind.INVALID_PARAM)
        try:
            PairingPolicy(self.pairing_policy)
        except ValueError as e:
            raise ConfigError(
                f"unknown pairing policy {self.pairing_policy!r}", ConfigErrorKind.INVALID_PARAM
            ) from e

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ConfigInitOptions":
        settings = settings or get_settings()
        return cls(
            fetch_timeout=settings.FETCH_TIMEOUT_S,
            refresh_timeout=settings.REFRESH_TIMEOUT_S,
            file_polling_interval=settings.FILE_POLLING_INTERVAL_S,
            zk_polling_interval=settings.ZK_POLLING_INTERVAL_S,
            remote_polling_interval=settings.REMOTE_POLLING_INTERVAL_S,
            zookeeper_hosts=settings.ZOOKEEPER_HOSTS,
            zk_session_timeout=settings.ZK_SESSION_TIMEOUT_S,
            pairing_policy=settings.PAIRING_POLICY,
        )

    def polling_intervals(self) -> Dict[str, float]:
        return {
            FileConfigSource.kind: self.file_polling_interval,
            ZookeeperConfigSource.kind: self.zk_polling_interval,
            RemoteConfigSource.kind: self.remote_polling_interval,
        }


class ConfigAttachment:
    """The running updaters behind one attached UpdateableConfig."""

    def __init__(self, config: UpdateableConfig, updaters: List[ConfigUpdater], source: str):
        self.config = config
        self.updaters = list(updaters)
        self.source = source

    @property
    def running(self) -> bool:
        return any(u.running for u in self.updaters)

    async def stop(self) -> None:
        for updater in self.updaters:
            await updater.stop()

    def describe(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "config": self.config.describe(),
            "updaters": [u.get_stats() for u in self.updaters],
        }

    async def __aenter__(self) -> "ConfigAttachment":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()


class ConfigInit:
    """Bootstrap and keep an UpdateableConfig fresh from a source specifier.

    Example:
        init = ConfigInit()
        config = init.new_config()
        attachment = await init.attach("file:/etc/cluster.json", config)
        ...
        await attachment.stop()
    """

    def __init__(
        self,
        options: Optional[ConfigInitOptions] = None,
        stats: Optional[StatsCollector] = None,
        plugins: Optional[PluginPack] = None,
        parser_options: Optional[ParserOptions] = None,
        source_options: Optional[Dict[str, Any]] = None,
    ):
        self.options = options or ConfigInitOptions.from_settings()
        self.options.validate()
        self.stats = stats or NullStatsCollector()
        self.plugins = plugins or PluginPack.default()
        self.parser = ConfigParser(parser_options)
        self.source_options = dict(source_options or {})

    def _set(self, **changes: float) -> None:
        options = dataclasses.replace(self.options, **changes)
        options.validate()
        self.options = options

    def set_timeout(self, seconds: float) -> None:
        """Bootstrap fetch timeout for subsequent attach() calls."""
        self._set(fetch_timeout=seconds)

    def set_file_polling_interval(self, seconds: float) -> None:
        self._set(file_polling_interval=seconds)

    def set_zookeeper_polling_interval(self, seconds: float) -> None:
        self._set(zk_polling_interval=seconds)

    def set_remote_polling_interval(self, seconds: float) -> None:
        self._set(remote_polling_interval=seconds)

    def new_config(self, name: str = "default") -> UpdateableConfig:
        return UpdateableConfig(pairing_policy=self.options.pairing_policy, name=name)

    def selector(self) -> SourceSelector:
        source_options = {
            "zookeeper_hosts": self.options.zookeeper_hosts,
            "zk_session_timeout": self.options.zk_session_timeout,
            **self.source_options,
        }
        return SourceSelector(
            plugins=self.plugins,
            polling_intervals=self.options.polling_intervals(),
            fetch_timeout=self.options.fetch_timeout,
            source_options=source_options,
        )

    def _updater(
        self, source: ConfigSource, config: UpdateableConfig, *partitions: Partition
    ) -> ConfigUpdater:
        return ConfigUpdater(
            source,
            config,
            partitions,
            parser=self.parser,
            stats=self.stats,
            refresh_timeout=self.options.refresh_timeout,
        )

    async def attach(
        self,
        source: str,
        config: UpdateableConfig,
        *,
        manage_logs: bool = True,
        alternative_logs_source: Optional[SourceLike] = None,
        load_logs_config: bool = True,
    ) -> ConfigAttachment:
        """Bootstrap ``config`` from ``source`` and start refreshing it.

        Raises ConfigAttachError whose kind is one of TIMEOUT, FILE_OPEN,
        FILE_READ, INVALID_CONFIG, INVALID_PARAM or RESOURCE_LIMIT. A failed
        attach leaves no updater running and may be retried.
        """
        built: List[ConfigUpdater] = []
        try:
            attachment = await self._attach(
                source,
                config,
                built,
                manage_logs=manage_logs and load_logs_config,
                alternative_logs_source=alternative_logs_source,
            )
        except ConfigError as e:
            await self._teardown(built)
            kind = attach_error_kind(e.kind)
            logger.error(
                f"Failed to attach config source {source!r}: {e.message}",
                extra={"source": str(source), "error_kind": kind.value},
            )
            raise ConfigAttachError(e.message, kind) from e
        except (Exception, asyncio.CancelledError):
            await self._teardown(built)
            raise
        return attachment

    async def _attach(
        self,
        source: str,
        config: UpdateableConfig,
        built: List[ConfigUpdater],
        manage_logs: bool,
        alternative_logs_source: Optional[SourceLike],
    ) -> ConfigAttachment:
        self.options.validate()
        if not isinstance(source, str):
            raise InvalidSourceError(f"config source must be a specifier string, got {source!r}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.fetch_timeout
        selector = self.selector()

        primary_source = selector.select(source)
        alt_source: Optional[ConfigSource] = None
        if manage_logs and alternative_logs_source is not None:
            if isinstance(alternative_logs_source, ConfigSource):
                alt_source = alternative_logs_source
            else:
                alt_source = selector.select(alternative_logs_source)

        if manage_logs and alt_source is None:
            primary = self._updater(primary_source, config, Partition.SERVER, Partition.LOGS)
        else:
            primary = self._updater(primary_source, config, Partition.SERVER)
        built.append(primary)
        if alt_source is not None:
            built.append(self._updater(alt_source, config, Partition.LOGS))

        snapshots = await primary.load(max(0.0, deadline - loop.time()))

        if primary.logs_reference is not None:
            logs_source = selector.select(primary.logs_reference)
            built.append(self._updater(logs_source, config, Partition.LOGS))

        for updater in built[1:]:
            snapshots.extend(await updater.load(max(0.0, deadline - loop.time())))

        # No await between starting the loops and publishing
        for updater in built:
            updater.start()
        for snapshot in config.commit_many(snapshots, hold_on_mismatch=False):
            self.stats.record_publish(snapshot.partition, snapshot.version)

        logger.info(
            f"Attached config {config.name} to {primary_source.name}",
            extra={"source": primary_source.name, "version": config.current().versions()},
        )
        return ConfigAttachment(config, built, primary_source.name)

    async def _teardown(self, updaters: List[ConfigUpdater]) -> None:
        for updater in updaters:
            try:
                await updater.stop()
            except Exception as e:
                logger.warning(f"Error stopping config updater {updater.name}: {e}")


__all__ = ["ConfigInit", "ConfigInitOptions", "ConfigAttachment"]
