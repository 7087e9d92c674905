"""Source specifier parsing and backend registry.

A specifier is ``<backend>:<identifier>`` (``file:/etc/app/cluster.conf``,
``zk:/app/config``, ``remote:https://cfg.example.com/cluster.json``) or a
bare path handled by the file backend. Selection performs no I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional

from clusterconf.core.config.sources import (
    BACKEND_PREFIX_RE,
    ConfigSource,
    FileConfigSource,
    RemoteConfigSource,
    ZookeeperConfigSource,
)
from clusterconf.core.errors import ConfigError, InvalidSourceError

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "file"
_URL_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class SourceDescriptor:
    """Where and how often to fetch one config payload."""

    kind: str
    identifier: str
    polling_interval: Optional[float] = None
    fetch_timeout: float = 5.0

    @property
    def specifier(self) -> str:
        return f"{self.kind}:{self.identifier}"


ConfigSourceFactory = Callable[[SourceDescriptor, Dict[str, Any]], ConfigSource]


class PluginPack:
    """Registry of config source factories keyed by backend kind."""

    def __init__(self) -> None:
        self._factories: Dict[str, ConfigSourceFactory] = {}
        self._aliases: Dict[str, str] = {}
        self._lock = RLock()

    @staticmethod
    def _normalize_kind(kind: str) -> str:
        if not isinstance(kind, str):
            raise TypeError("backend kind must be a string")
        token = kind.strip().lower()
        if not token or not BACKEND_PREFIX_RE.match(f"{token}:"):
            raise ValueError(f"invalid backend kind {kind!r}")
        return token

    def register(
        self,
        kind: str,
        factory: ConfigSourceFactory,
        aliases: Iterable[str] = (),
    ) -> None:
        normalized = self._normalize_kind(kind)
        names = [self._normalize_kind(a) for a in aliases]
        with self._lock:
            for name in [normalized, *names]:
                if name in self._factories or name in self._aliases:
                    raise ValueError(f"Config backend already registered: {name}")
            self._factories[normalized] = factory
            for alias in names:
                self._aliases[alias] = normalized
        logger.debug(f"Registered config backend {normalized}")

    def canonical_kind(self, kind: str) -> str:
        token = kind.strip().lower()
        with self._lock:
            return self._aliases.get(token, token)

    def resolve_backend(self, kind: str) -> ConfigSourceFactory:
        canonical = self.canonical_kind(kind)
        with self._lock:
            factory = self._factories.get(canonical)
        if factory is None:
            raise InvalidSourceError(f"unknown config backend {kind!r}")
        return factory

    def kinds(self) -> List[str]:
        with self._lock:
            return sorted([*self._factories, *self._aliases])

    @classmethod
    def default(cls) -> "PluginPack":
        pack = cls()
        pack.register("file", FileConfigSource.from_descriptor)
        pack.register("zk", ZookeeperConfigSource.from_descriptor, aliases=("zookeeper",))
        pack.register("remote", RemoteConfigSource.from_descriptor, aliases=_URL_SCHEMES)
        return pack


class SourceSelector:
    """Build ConfigSource objects from specifier strings."""

    def __init__(
        self,
        plugins: Optional[PluginPack] = None,
        polling_intervals: Optional[Dict[str, float]] = None,
        fetch_timeout: float = 5.0,
        source_options: Optional[Dict[str, Any]] = None,
    ):
        self.plugins = plugins or PluginPack.default()
        self.polling_intervals = dict(polling_intervals or {})
        self.fetch_timeout = fetch_timeout
        self.source_options = dict(source_options or {})

    def parse(self, specifier: str) -> SourceDescriptor:
        if not isinstance(specifier, str) or not specifier.strip():
            raise InvalidSourceError("empty config source specifier")
        specifier = specifier.strip()

        match = BACKEND_PREFIX_RE.match(specifier)
        if match is None:
            kind, identifier = DEFAULT_BACKEND, specifier
        else:
            kind, identifier = match.group(1).lower(), match.group(2)
            if kind in _URL_SCHEMES:
                identifier = specifier

        if not identifier.strip():
            raise InvalidSourceError(f"config source {specifier!r} has an empty identifier")

        # Raises InvalidSourceError for unknown backends
        self.plugins.resolve_backend(kind)
        canonical = self.plugins.canonical_kind(kind)
        return SourceDescriptor(
            kind=canonical,
            identifier=identifier,
            polling_interval=self.polling_intervals.get(canonical),
            fetch_timeout=self.fetch_timeout,
        )

    def select(self, specifier: str) -> ConfigSource:
        descriptor = self.parse(specifier)
        factory = self.plugins.resolve_backend(descriptor.kind)
        try:
            source = factory(descriptor, self.source_options)
        except ConfigError as e:
            raise InvalidSourceError(f"invalid config source {specifier!r}: {e.message}") from e
        logger.debug(
            f"Selected config source {source.name}",
            extra={"source": source.name},
        )
        return source


__all__ = [
    "ConfigSourceFactory",
    "PluginPack",
    "SourceDescriptor",
    "SourceSelector",
]
