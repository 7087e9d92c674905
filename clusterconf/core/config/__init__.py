"""Cluster configuration distribution.

Provides:
- Source selection (file, ZooKeeper, remote HTTP)
- Bootstrap fetch bounded by a timeout
- Hot reload with polling and push notifications
- Atomic server/logs snapshots with change callbacks
"""

from clusterconf.core.config.init import (
    ConfigAttachment,
    ConfigInit,
    ConfigInitOptions,
)
from clusterconf.core.config.manager import (
    ConfigChangeEvent,
    ConfigSnapshot,
    ConfigState,
    PairingPolicy,
    Partition,
    UpdateableConfig,
)
from clusterconf.core.config.models import (
    LogGroupConfig,
    LogsConfig,
    NodeConfig,
    ServerConfig,
)
from clusterconf.core.config.parser import ConfigParser, ParserOptions
from clusterconf.core.config.selector import (
    ConfigSourceFactory,
    PluginPack,
    SourceDescriptor,
    SourceSelector,
)
from clusterconf.core.config.sources import (
    ConfigSource,
    FetchResult,
    FileConfigSource,
    RemoteConfigSource,
    ZookeeperConfigSource,
)
from clusterconf.core.config.updater import ConfigUpdater
from clusterconf.core.config.watcher import ConfigSubscription, WatchCallback

__all__ = [
    # Facade
    "ConfigInit",
    "ConfigInitOptions",
    "ConfigAttachment",
    # Live state
    "UpdateableConfig",
    "ConfigSnapshot",
    "ConfigState",
    "ConfigChangeEvent",
    "Partition",
    "PairingPolicy",
    # Models / parsing
    "ServerConfig",
    "NodeConfig",
    "LogsConfig",
    "LogGroupConfig",
    "ConfigParser",
    "ParserOptions",
    # Sources
    "ConfigSource",
    "FetchResult",
    "FileConfigSource",
    "ZookeeperConfigSource",
    "RemoteConfigSource",
    "SourceDescriptor",
    "SourceSelector",
    "PluginPack",
    "ConfigSourceFactory",
    # Refresh
    "ConfigUpdater",
    # Watcher
    "ConfigSubscription",
    "WatchCallback",
]
