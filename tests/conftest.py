import asyncio
import json
import os
from typing import Optional

import pytest

from clusterconf.core.config.sources import ConfigSource, FetchResult
from clusterconf.core.errors import ConfigErrorKind, ConfigSourceError

# List of environment variables that may be modified by tests
_ENV_VARS_TO_ISOLATE = [
    "CLUSTERCONF_FETCH_TIMEOUT_S",
    "CLUSTERCONF_REFRESH_TIMEOUT_S",
    "CLUSTERCONF_FILE_POLLING_INTERVAL_S",
    "CLUSTERCONF_ZK_POLLING_INTERVAL_S",
    "CLUSTERCONF_REMOTE_POLLING_INTERVAL_S",
    "CLUSTERCONF_ZOOKEEPER_HOSTS",
    "CLUSTERCONF_ZK_SESSION_TIMEOUT_S",
    "CLUSTERCONF_PAIRING_POLICY",
    "CLUSTERCONF_LOG_LEVEL",
    "CLUSTERCONF_LOG_FORMAT",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    from clusterconf.core.settings import reset_settings

    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()


SERVER_DOC = {
    "cluster": "test-cluster",
    "version": 3,
    "nodes": [
        {"node_id": 0, "host": "10.0.0.1:4440", "roles": ["sequencer", "storage"]},
        {"node_id": 1, "host": "10.0.0.2:4440", "roles": ["storage"], "location": "rack1"},
    ],
}

LOGS_DOC = {
    "logs": [
        {"name": "events", "id_range": [1, 100], "replication_factor": 2},
        {"name": "audit", "id_range": 500, "replication_factor": 3, "backlog_seconds": 3600},
    ]
}


@pytest.fixture
def server_doc():
    return json.loads(json.dumps(SERVER_DOC))


@pytest.fixture
def logs_doc():
    return json.loads(json.dumps(LOGS_DOC))


@pytest.fixture
def full_doc(server_doc, logs_doc):
    """Server config with an embedded logs section."""
    return {**server_doc, "logs": logs_doc["logs"]}


@pytest.fixture
def write_json(tmp_path):
    def _write(name: str, data) -> str:
        path = tmp_path / name
        path.write_text(json.dumps(data))
        return str(path)

    return _write


class MemorySource(ConfigSource):
    """In-memory source whose payload or failure can be changed by a test."""

    kind = "memory"
    default_polling_interval = 0.05

    def __init__(
        self,
        identifier: str = "test",
        polling_interval: Optional[float] = None,
        payload: bytes = b"",
        delay: float = 0.0,
    ):
        super().__init__(identifier, polling_interval)
        self.payload = payload
        self.delay = delay
        self.error: Optional[ConfigErrorKind] = None
        self.fetch_count = 0
        self.closed = False

    def set_doc(self, doc) -> None:
        self.payload = json.dumps(doc).encode()

    async def _fetch(self, timeout: float) -> FetchResult:
        self.fetch_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise ConfigSourceError(self.error, "injected failure", self.name)
        return FetchResult(payload=self.payload)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def memory_source():
    def _make(doc=None, **kwargs) -> MemorySource:
        source = MemorySource(**kwargs)
        if doc is not None:
            source.set_doc(doc)
        return source

    return _make
