"""Tests for ConfigUpdater bootstrap and refresh cycles."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest


def _updater(source, config=None, partitions=("server", "logs"), **kwargs):
    from clusterconf.core.config.manager import UpdateableConfig
    from clusterconf.core.config.updater import ConfigUpdater

    config = config or UpdateableConfig()
    return ConfigUpdater(source, config, partitions, **kwargs), config


class TestBootstrap:
    """Tests for ConfigUpdater.load / bootstrap."""

    @pytest.mark.asyncio
    async def test_bootstrap_embedded_logs(self, memory_source, full_doc):
        """One document yields server and logs snapshots at version 1."""
        updater, config = _updater(memory_source(full_doc))

        snapshots = await updater.bootstrap(1.0)

        assert [s.partition.value for s in snapshots] == ["server", "logs"]
        assert config.current().versions() == {"server": 1, "logs": 1}
        assert config.current_server_config().config.cluster == "test-cluster"
        assert config.current_logs_config().config.find(42).name == "events"
        assert config.current_server_config().source == "memory:test"

    @pytest.mark.asyncio
    async def test_load_does_not_publish(self, memory_source, full_doc):
        """load() parses without touching the config."""
        updater, config = _updater(memory_source(full_doc))

        snapshots = await updater.load(1.0)

        assert len(snapshots) == 2
        assert config.current_server_config() is None

    @pytest.mark.asyncio
    async def test_embedded_logs_inherit_server_pairing(self, memory_source, full_doc):
        """Embedded logs without a marker take the server's."""
        full_doc["pairing"] = "gen-7"
        updater, config = _updater(memory_source(full_doc))

        await updater.bootstrap(1.0)
        assert config.current_logs_config().pairing == "gen-7"

    @pytest.mark.asyncio
    async def test_include_log_config_reference(self, memory_source, server_doc):
        """A logs reference moves LOGS out of this updater."""
        server_doc["include_log_config"] = "zk:/cluster/logs"
        updater, config = _updater(memory_source(server_doc))

        snapshots = await updater.load(1.0)

        assert [s.partition.value for s in snapshots] == ["server"]
        assert updater.logs_reference == "zk:/cluster/logs"
        assert [p.value for p in updater.partitions] == ["server"]

    @pytest.mark.asyncio
    async def test_missing_logs_is_invalid(self, memory_source, server_doc):
        """Neither a logs section nor a reference is INVALID_CONFIG."""
        from clusterconf.core.errors import ConfigErrorKind, ConfigParseError

        updater, _ = _updater(memory_source(server_doc))
        with pytest.raises(ConfigParseError) as exc_info:
            await updater.load(1.0)
        assert exc_info.value.kind is ConfigErrorKind.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_server_only(self, memory_source, server_doc):
        """A server-only updater leaves logs unpublished."""
        updater, config = _updater(memory_source(server_doc), partitions=("server",))

        await updater.bootstrap(1.0)
        assert config.current().versions() == {"server": 1, "logs": 0}

    @pytest.mark.asyncio
    async def test_logs_only(self, memory_source, logs_doc):
        """A logs-only updater parses the whole document as logs config."""
        updater, config = _updater(memory_source(logs_doc), partitions=("logs",))

        await updater.bootstrap(1.0)
        assert config.current_logs_config().config.log_count == 101

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, memory_source, full_doc):
        """Bootstrap fetch errors are raised, not retried."""
        from clusterconf.core.errors import ConfigErrorKind, ConfigSourceError

        source = memory_source(full_doc)
        source.error = ConfigErrorKind.NOT_FOUND
        updater, config = _updater(source)

        with pytest.raises(ConfigSourceError):
            await updater.bootstrap(1.0)
        assert source.fetch_count == 1
        assert config.current_server_config() is None
        assert updater.get_stats()["last_error_kind"] == "NOT_FOUND"

    def test_partitions_required(self, memory_source):
        """An updater needs at least one partition."""
        with pytest.raises(ValueError):
            _updater(memory_source(), partitions=())


class TestRefresh:
    """Tests for ConfigUpdater.refresh_once."""

    @pytest.mark.asyncio
    async def test_new_payload_increments_versions(self, memory_source, full_doc):
        """A changed payload publishes version + 1 for each partition."""
        source = memory_source(full_doc)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)

        full_doc["cluster"] = "renamed"
        source.set_doc(full_doc)

        assert await updater.refresh_once() is True
        assert config.current().versions() == {"server": 2, "logs": 2}
        assert config.current_server_config().config.cluster == "renamed"

    @pytest.mark.asyncio
    async def test_unchanged_payload_skipped(self, memory_source, full_doc):
        """The same payload publishes nothing."""
        updater, config = _updater(memory_source(full_doc))
        await updater.bootstrap(1.0)

        assert await updater.refresh_once() is False
        assert config.version("server") == 1
        assert updater.get_stats()["unchanged_count"] == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_snapshot(self, memory_source, full_doc):
        """A failed fetch keeps serving the current config."""
        from clusterconf.core.errors import ConfigErrorKind

        source = memory_source(full_doc)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)
        before = config.current()

        source.error = ConfigErrorKind.UNAVAILABLE
        assert await updater.refresh_once() is False

        assert config.current() is before
        stats = updater.get_stats()
        assert stats["fetch_failures"] == 1
        assert stats["last_error_kind"] == "UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_refresh_timeout(self, memory_source, full_doc):
        """A slow refresh times out and keeps the current config."""
        source = memory_source(full_doc)
        updater, config = _updater(source, refresh_timeout=0.01)
        await updater.bootstrap(1.0)

        source.delay = 0.5
        source.set_doc({**full_doc, "cluster": "late"})
        assert await updater.refresh_once() is False
        assert updater.get_stats()["last_error_kind"] == "TIMEOUT"
        assert config.current_server_config().config.cluster == "test-cluster"

    @pytest.mark.asyncio
    async def test_invalid_payload_keeps_snapshot(self, memory_source, full_doc):
        """A rejected payload is not parsed again."""
        source = memory_source(full_doc)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)
        before = config.current()

        source.payload = b"{not json or yaml: ["
        assert await updater.refresh_once() is False
        assert config.current() is before

        # The same rejected payload is not parsed again
        assert await updater.refresh_once() is False
        stats = updater.get_stats()
        assert stats["parse_failures"] == 1
        assert stats["unchanged_count"] == 1

    @pytest.mark.asyncio
    async def test_pairing_rejection_keeps_snapshot(self, memory_source, server_doc, logs_doc):
        """A mismatched logs update waits for the server and is counted once committed."""
        from clusterconf.core.config.manager import UpdateableConfig

        config = UpdateableConfig()
        stats = MagicMock()
        server_src = memory_source({**server_doc, "pairing": "a"}, identifier="server")
        logs_src = memory_source({**logs_doc, "pairing": "a"}, identifier="logs")
        server_updater, _ = _updater(server_src, config, partitions=("server",), stats=stats)
        logs_updater, _ = _updater(logs_src, config, partitions=("logs",))
        await server_updater.bootstrap(1.0)
        await logs_updater.bootstrap(1.0)

        logs_src.set_doc({**logs_doc, "pairing": "b"})
        assert await logs_updater.refresh_once() is False
        assert config.current_logs_config().pairing == "a"
        assert logs_updater.get_stats()["pairing_rejections"] == 1
        assert logs_updater.get_stats()["held"] == [2]
        stats.record_publish.reset_mock()

        # The server catching up commits the held logs update with it
        server_src.set_doc({**server_doc, "pairing": "b"})
        assert await server_updater.refresh_once() is True
        assert config.current_logs_config().pairing == "b"
        assert config.current().versions() == {"server": 2, "logs": 2}

        published = [(c.args[0].value, c.args[1]) for c in stats.record_publish.call_args_list]
        assert published == [("server", 2), ("logs", 2)]
        logs_stats = logs_updater.get_stats()
        assert logs_stats["publish_count"] == 1
        assert logs_stats["held"] == []
        assert server_updater.get_stats()["publish_count"] == 1

    @pytest.mark.asyncio
    async def test_stats_calls(self, memory_source, full_doc):
        """Fetch outcomes and publishes reach the stats collector."""
        stats = MagicMock()
        source = memory_source(full_doc)
        updater, _ = _updater(source, stats=stats)
        await updater.bootstrap(1.0)

        outcomes = [c.args[1] for c in stats.record_fetch.call_args_list]
        assert outcomes == ["success", "success"]
        published = [(c.args[0].value, c.args[1]) for c in stats.record_publish.call_args_list]
        assert published == [("server", 1), ("logs", 1)]

        await updater.refresh_once()
        assert [c.args[1] for c in stats.record_fetch.call_args_list[2:]] == [
            "unchanged",
            "unchanged",
        ]


class TestBackgroundLoop:
    """Tests for start / stop."""

    @pytest.mark.asyncio
    async def test_polling_picks_up_changes(self, memory_source, full_doc):
        """The refresh task publishes changes on its own."""
        source = memory_source(full_doc, polling_interval=0.01)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)

        changed = asyncio.Event()
        sub = config.subscribe(lambda event: changed.set())
        updater.start()
        assert updater.running

        source.set_doc({**full_doc, "cluster": "polled"})
        await asyncio.wait_for(changed.wait(), timeout=2.0)

        assert config.current_server_config().config.cluster == "polled"
        await updater.stop()
        sub.cancel()

    @pytest.mark.asyncio
    async def test_task_name(self, memory_source, full_doc):
        """The refresh task is named after the source."""
        updater, _ = _updater(memory_source(full_doc))
        updater.start()

        names = [t.get_name() for t in asyncio.all_tasks()]
        assert "config-updater:memory:test" in names
        await updater.stop()

    @pytest.mark.asyncio
    async def test_notify_triggers_refresh(self, memory_source, full_doc):
        """notify() refreshes before the polling interval elapses."""
        source = memory_source(full_doc, polling_interval=60.0)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)
        updater.start()
        await asyncio.sleep(0)

        changed = asyncio.Event()
        sub = config.subscribe(lambda event: changed.set())
        source.set_doc({**full_doc, "cluster": "pushed"})
        updater.notify()

        await asyncio.wait_for(changed.wait(), timeout=2.0)
        assert config.current_server_config().config.cluster == "pushed"
        await updater.stop()
        sub.cancel()

    @pytest.mark.asyncio
    async def test_stop_prevents_publish(self, memory_source, full_doc):
        """Nothing is published after stop()."""
        source = memory_source(full_doc)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)

        source.set_doc({**full_doc, "cluster": "after-stop"})
        await updater.stop()

        assert await updater.refresh_once() is False
        assert config.current_server_config().config.cluster == "test-cluster"
        assert source.closed is True

    @pytest.mark.asyncio
    async def test_stop_during_fetch_does_not_publish(self, memory_source, full_doc):
        """A fetch in flight when stop() runs is discarded."""
        source = memory_source(full_doc)
        updater, config = _updater(source)
        await updater.bootstrap(1.0)

        source.delay = 0.1
        source.set_doc({**full_doc, "cluster": "in-flight"})
        refresh = asyncio.ensure_future(updater.refresh_once())
        await asyncio.sleep(0.01)
        updater._stopped = True

        assert await refresh is False
        assert config.version("server") == 1
        await updater.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, memory_source, full_doc):
        """stop() closes the source once."""
        updater, _ = _updater(memory_source(full_doc))
        updater.start()

        await updater.stop()
        await updater.stop()
        assert not updater.running
        assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("config-updater:")]

    @pytest.mark.asyncio
    async def test_restart_after_stop_rejected(self, memory_source, full_doc):
        """A stopped updater cannot be started again."""
        from clusterconf.core.errors import ConfigError

        updater, _ = _updater(memory_source(full_doc))
        await updater.stop()
        with pytest.raises(ConfigError):
            updater.start()

    @pytest.mark.asyncio
    async def test_start_failure_is_resource_limit(self, memory_source, full_doc, monkeypatch):
        """Failing to create the task is RESOURCE_LIMIT."""
        from clusterconf.core.errors import ConfigError, ConfigErrorKind

        updater, _ = _updater(memory_source(full_doc))
        loop = asyncio.get_running_loop()

        def refuse(coro, **kwargs):
            raise RuntimeError("can't start new thread")

        monkeypatch.setattr(loop, "create_task", refuse)
        with pytest.raises(ConfigError) as exc_info:
            updater.start()
        assert exc_info.value.kind is ConfigErrorKind.RESOURCE_LIMIT
        assert not updater.running

    def test_start_without_loop(self, memory_source, full_doc):
        """start() outside a running loop is RESOURCE_LIMIT."""
        from clusterconf.core.errors import ConfigError, ConfigErrorKind

        updater, _ = _updater(memory_source(full_doc))
        with pytest.raises(ConfigError) as exc_info:
            updater.start()
        assert exc_info.value.kind is ConfigErrorKind.RESOURCE_LIMIT
