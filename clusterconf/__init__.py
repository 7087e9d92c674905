"""clusterconf: cluster configuration distribution with hot reload."""

from clusterconf.core.config import (
    ConfigAttachment,
    ConfigInit,
    ConfigInitOptions,
    ConfigSnapshot,
    PairingPolicy,
    Partition,
    UpdateableConfig,
)
from clusterconf.core.errors import ConfigAttachError, ConfigError, ConfigErrorKind

__version__ = "0.3.0"

__all__ = [
    "ConfigInit",
    "ConfigInitOptions",
    "ConfigAttachment",
    "UpdateableConfig",
    "ConfigSnapshot",
    "Partition",
    "PairingPolicy",
    "ConfigError",
    "ConfigErrorKind",
    "ConfigAttachError",
]
