"""Configuration Sources Implementation.

Provides the config source backends. Each source performs one bounded
fetch of the raw payload and maps backend failures onto ConfigErrorKind.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import posixpath
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Tuple
from urllib.parse import urljoin

import httpx
from kazoo.client import KazooClient
from kazoo.exceptions import ConnectionLoss, KazooException, NoNodeError, SessionExpiredError
from kazoo.handlers.threading import KazooTimeoutError

from clusterconf.core.errors import ConfigErrorKind, ConfigSourceError

if TYPE_CHECKING:
    from clusterconf.core.config.selector import SourceDescriptor

logger = logging.getLogger(__name__)

# "<backend>:<identifier>"
BACKEND_PREFIX_RE = re.compile(r"^([A-Za-z][A-Za-z0-9_+-]*):(.*)$", re.DOTALL)

# One quorum member: "host", "host:port" or "[v6addr]:port"
ZK_HOST_RE = re.compile(r"^(?:\[[0-9A-Fa-f:.]+\]|[^\s:\[\]/]+)(?::(\d+))?$")

ChangeNotifier = Callable[[], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FetchResult:
    """Raw payload returned by one successful fetch."""

    payload: bytes
    revision: Optional[str] = None
    fetched_at: datetime = field(default_factory=_utcnow)
    checksum: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "checksum", hashlib.sha256(self.payload).hexdigest())


class ConfigSource(ABC):
    """Abstract base class for configuration sources."""

    kind: str = ""
    supports_push: bool = False
    default_polling_interval: float = 10.0

    def __init__(self, identifier: str, polling_interval: Optional[float] = None):
        self.identifier = identifier
        self.polling_interval = (
            polling_interval if polling_interval is not None else self.default_polling_interval
        )

    @property
    def name(self) -> str:
        return f"{self.kind}:{self.identifier}"

    @property
    def hint(self) -> str:
        """Name hint for the parser (file extension, if any)."""
        return self.identifier

    @classmethod
    def from_descriptor(
        cls, descriptor: "SourceDescriptor", options: Dict[str, Any]
    ) -> "ConfigSource":
        return cls(descriptor.identifier, polling_interval=descriptor.polling_interval)

    async def fetch(self, timeout: float) -> FetchResult:
        """Fetch the current payload once, bounded by ``timeout`` seconds."""
        if timeout < 0:
            raise ConfigSourceError(
                ConfigErrorKind.INVALID_PARAM, "fetch timeout must be non-negative", self.name
            )
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self._fetch(timeout), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConfigSourceError(
                ConfigErrorKind.TIMEOUT,
                f"no response from {self.name} within {timeout:.3f}s",
                self.name,
            ) from e
        logger.debug(
            f"Fetched {len(result.payload)} bytes from {self.name}",
            extra={
                "source": self.name,
                "latency_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return result

    @abstractmethod
    async def _fetch(self, timeout: float) -> FetchResult:
        """Backend-specific fetch."""

    async def subscribe(self, on_change: ChangeNotifier) -> bool:
        """Register for push notification. Returns False if unsupported."""
        return False

    def resolve(self, reference: str) -> str:
        """Turn a reference found in a payload into a specifier."""
        return reference

    async def close(self) -> None:
        """Close the configuration source."""
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class FileConfigSource(ConfigSource):
    """File-based configuration source."""

    kind = "file"
    default_polling_interval = 10.0

    def __init__(self, file_path: str, polling_interval: Optional[float] = None):
        super().__init__(file_path, polling_interval)
        self.file_path = Path(file_path)

    def _read(self) -> Tuple[bytes, str]:
        try:
            f = open(self.file_path, "rb")
        except FileNotFoundError as e:
            raise ConfigSourceError(
                ConfigErrorKind.NOT_FOUND, f"config file not found: {self.file_path}", self.name
            ) from e
        except OSError as e:
            raise ConfigSourceError(
                ConfigErrorKind.UNAVAILABLE,
                f"cannot open config file {self.file_path}: {e}",
                self.name,
            ) from e

        with f:
            try:
                payload = f.read()
                mtime_ns = os.fstat(f.fileno()).st_mtime_ns
            except OSError as e:
                raise ConfigSourceError(
                    ConfigErrorKind.IO_FAILURE,
                    f"error reading config file {self.file_path}: {e}",
                    self.name,
                ) from e
        return payload, str(mtime_ns)

    async def _fetch(self, timeout: float) -> FetchResult:
        payload, mtime = await asyncio.to_thread(self._read)
        return FetchResult(payload=payload, revision=mtime)

    def resolve(self, reference: str) -> str:
        if BACKEND_PREFIX_RE.match(reference) or os.path.isabs(reference):
            return reference
        return f"file:{self.file_path.parent / reference}"


class ZookeeperConfigSource(ConfigSource):
    """ZooKeeper znode configuration source.

    Identifier is either ``/path/to/znode`` (quorum taken from settings) or
    ``host:port[,host:port]/path/to/znode``.
    """

    kind = "zk"
    supports_push = True
    default_polling_interval = 1.0

    def __init__(
        self,
        identifier: str,
        polling_interval: Optional[float] = None,
        hosts: Optional[str] = None,
        session_timeout: float = 10.0,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(identifier, polling_interval)
        quorum, path = self._split_identifier(identifier)
        self._explicit_hosts = quorum is not None
        if quorum is None:
            if not hosts:
                from clusterconf.core.settings import get_settings

                hosts = get_settings().ZOOKEEPER_HOSTS
            quorum = hosts
        self.hosts = self._check_quorum(quorum, identifier)
        self.path = path
        self.session_timeout = session_timeout
        self._client_factory = client_factory or KazooClient
        self._client: Optional[Any] = None

    @staticmethod
    def _split_identifier(identifier: str) -> Tuple[Optional[str], str]:
        if identifier.startswith("/"):
            return None, identifier
        slash = identifier.find("/")
        if slash <= 0:
            raise ConfigSourceError(
                ConfigErrorKind.INVALID_PARAM,
                f"invalid zookeeper identifier {identifier!r}; expected [hosts]/path",
                f"zk:{identifier}",
            )
        return identifier[:slash], identifier[slash:]

    @staticmethod
    def _check_quorum(hosts: str, identifier: str) -> str:
        for member in hosts.split(","):
            match = ZK_HOST_RE.match(member.strip())
            port = match.group(1) if match else None
            if match is None or (port is not None and not 0 < int(port) < 65536):
                raise ConfigSourceError(
                    ConfigErrorKind.INVALID_PARAM,
                    f"invalid zookeeper host {member!r} in {hosts!r}",
                    f"zk:{identifier}",
                )
        return hosts

    @classmethod
    def from_descriptor(
        cls, descriptor: "SourceDescriptor", options: Dict[str, Any]
    ) -> "ConfigSource":
        return cls(
            descriptor.identifier,
            polling_interval=descriptor.polling_interval,
            hosts=options.get("zookeeper_hosts"),
            session_timeout=options.get("zk_session_timeout", 10.0),
            client_factory=options.get("zk_client_factory"),
        )

    @property
    def hint(self) -> str:
        return self.path

    async def _get_client(self, timeout: float) -> Any:
        """Get or create a started Kazoo client."""
        if self._client is None:
            self._client = self._client_factory(hosts=self.hosts, timeout=self.session_timeout)
        if not getattr(self._client, "connected", False):
            try:
                await asyncio.to_thread(self._client.start, timeout)
            except KazooTimeoutError as e:
                raise ConfigSourceError(
                    ConfigErrorKind.UNAVAILABLE,
                    f"cannot connect to zookeeper {self.hosts}: {e}",
                    self.name,
                ) from e
        return self._client

    async def _fetch(self, timeout: float) -> FetchResult:
        client = await self._get_client(timeout)
        try:
            data, stat = await asyncio.to_thread(client.get, self.path)
        except NoNodeError as e:
            raise ConfigSourceError(
                ConfigErrorKind.NOT_FOUND, f"znode {self.path} does not exist", self.name
            ) from e
        except (ConnectionLoss, SessionExpiredError, KazooTimeoutError) as e:
            raise ConfigSourceError(
                ConfigErrorKind.UNAVAILABLE, f"zookeeper unavailable: {e!r}", self.name
            ) from e
        except KazooException as e:
            raise ConfigSourceError(
                ConfigErrorKind.IO_FAILURE, f"error reading znode {self.path}: {e!r}", self.name
            ) from e

        revision = str(getattr(stat, "mzxid", getattr(stat, "version", "")))
        return FetchResult(payload=data or b"", revision=revision)

    async def subscribe(self, on_change: ChangeNotifier) -> bool:
        """Watch the znode; notifications are re-scheduled on the running loop."""
        loop = asyncio.get_running_loop()
        client = self._client
        if client is None:
            return False

        def _on_watch(data: Any, stat: Any, event: Any = None) -> bool:
            # Watches die with the client they were set on
            live = self._client is client
            # The initial call (event is None) reports the current value
            if event is not None and live:
                loop.call_soon_threadsafe(on_change)
            return live

        client.DataWatch(self.path, _on_watch)
        logger.debug(f"Watching znode {self.path}", extra={"source": self.name})
        return True

    def resolve(self, reference: str) -> str:
        if BACKEND_PREFIX_RE.match(reference):
            return reference
        path = reference
        if not reference.startswith("/"):
            path = posixpath.normpath(posixpath.join(posixpath.dirname(self.path), reference))
        if self._explicit_hosts:
            return f"zk:{self.hosts}{path}"
        return f"zk:{path}"

    async def close(self) -> None:
        """Stop the Kazoo client."""
        if self._client is not None:
            client, self._client = self._client, None
            try:
                await asyncio.to_thread(client.stop)
                await asyncio.to_thread(client.close)
            except KazooException as e:
                logger.warning(f"Error closing zookeeper client: {e!r}")


class RemoteConfigSource(ConfigSource):
    """Config served over HTTP(S) by a remote config tier."""

    kind = "remote"
    default_polling_interval = 30.0

    def __init__(
        self,
        identifier: str,
        polling_interval: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(identifier, polling_interval)
        self.url = identifier if "://" in identifier else f"https://{identifier}"
        try:
            parsed = httpx.URL(self.url)
        except httpx.InvalidURL as e:
            raise ConfigSourceError(
                ConfigErrorKind.INVALID_PARAM,
                f"invalid url {identifier!r}: {e}",
                f"remote:{identifier}",
            ) from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ConfigSourceError(
                ConfigErrorKind.INVALID_PARAM,
                f"invalid url {identifier!r}; expected an http(s) url with a host",
                f"remote:{identifier}",
            )
        self.headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._etag: Optional[str] = None
        self._last: Optional[FetchResult] = None

    @classmethod
    def from_descriptor(
        cls, descriptor: "SourceDescriptor", options: Dict[str, Any]
    ) -> "ConfigSource":
        return cls(
            descriptor.identifier,
            polling_interval=descriptor.polling_interval,
            headers=options.get("remote_headers"),
            transport=options.get("remote_transport"),
        )

    @property
    def name(self) -> str:
        return f"{self.kind}:{self.url}"

    @property
    def hint(self) -> str:
        return httpx.URL(self.url).path

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, headers=self.headers)
        return self._client

    async def _fetch(self, timeout: float) -> FetchResult:
        client = await self._get_client()
        headers = {}
        if self._etag and self._last is not None:
            headers["If-None-Match"] = self._etag

        try:
            response = await client.get(self.url, headers=headers, timeout=timeout or None)
        except httpx.TimeoutException as e:
            raise ConfigSourceError(
                ConfigErrorKind.TIMEOUT, f"timed out fetching {self.url}", self.name
            ) from e
        except httpx.TransportError as e:
            raise ConfigSourceError(
                ConfigErrorKind.UNAVAILABLE, f"cannot reach {self.url}: {e!r}", self.name
            ) from e

        if response.status_code == 304 and self._last is not None:
            return FetchResult(payload=self._last.payload, revision=self._etag)
        if response.status_code == 404:
            raise ConfigSourceError(
                ConfigErrorKind.NOT_FOUND, f"{self.url} returned 404", self.name
            )
        if response.status_code >= 500:
            raise ConfigSourceError(
                ConfigErrorKind.UNAVAILABLE,
                f"{self.url} returned {response.status_code}",
                self.name,
            )
        if not response.is_success:
            raise ConfigSourceError(
                ConfigErrorKind.IO_FAILURE,
                f"{self.url} returned {response.status_code}",
                self.name,
            )

        self._etag = response.headers.get("etag")
        result = FetchResult(
            payload=response.content,
            revision=self._etag or response.headers.get("last-modified"),
        )
        self._last = result
        return result

    def resolve(self, reference: str) -> str:
        if "://" in reference or BACKEND_PREFIX_RE.match(reference):
            return reference
        return urljoin(self.url, reference)

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


__all__ = [
    "BACKEND_PREFIX_RE",
    "ChangeNotifier",
    "FetchResult",
    "ConfigSource",
    "FileConfigSource",
    "ZookeeperConfigSource",
    "RemoteConfigSource",
]
