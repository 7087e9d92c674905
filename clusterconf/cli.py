"""clusterconf command line.

Usage:
  clusterconf fetch file:/etc/cluster.json --timeout 2
  clusterconf fetch zk:zk1:2181/cluster/config --alt-logs zk:zk1:2181/cluster/logs
  clusterconf watch remote:https://cfg.example.com/cluster.json --max-events 5

``fetch`` attaches once and prints the bootstrap snapshots as JSON.
``watch`` keeps the attachment running and prints one JSON line per change.
Exit code is 1 on attach failure, with the error kind on stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from clusterconf.core.config.init import ConfigInit, ConfigInitOptions
from clusterconf.core.config.manager import ConfigChangeEvent, Partition, UpdateableConfig
from clusterconf.core.errors import ConfigAttachError, ConfigError
from clusterconf.utils.logging import setup_logging


def _snapshots(config: UpdateableConfig) -> Dict[str, Any]:
    state = config.current()
    return {
        p.value: (state.get(p).to_dict() if state.get(p) else None) for p in Partition
    }


def _event_line(event: ConfigChangeEvent) -> str:
    return json.dumps(
        {
            "timestamp": event.timestamp.isoformat(),
            "partitions": sorted(p.value for p in event.partitions),
            "versions": event.versions,
            "checksums": {
                p.value: event.current.get(p).checksum for p in event.partitions
            },
        },
        sort_keys=True,
    )


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="clusterconf", description="Cluster config fetch / watch")
    ap.add_argument("--log-level", default=None, help="Override CLUSTERCONF_LOG_LEVEL")
    sub = ap.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("fetch", "Attach once and print the current config"),
        ("watch", "Print one JSON line per config change"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("source", help="Source specifier, e.g. file:/etc/cluster.json")
        cmd.add_argument("--timeout", type=float, default=None, help="Bootstrap timeout (s)")
        cmd.add_argument("--no-logs", action="store_true", help="Do not load the logs config")
        cmd.add_argument("--alt-logs", default=None, help="Separate logs config specifier")
        if name == "watch":
            cmd.add_argument(
                "--max-events", type=int, default=0, help="Exit after N change events (0 = never)"
            )
    return ap


async def _attach(args: argparse.Namespace):
    options = ConfigInitOptions.from_settings()
    if args.timeout is not None:
        options.fetch_timeout = args.timeout
    init = ConfigInit(options)
    config = init.new_config()
    attachment = await init.attach(
        args.source,
        config,
        manage_logs=not args.no_logs,
        alternative_logs_source=args.alt_logs,
    )
    return config, attachment


async def _fetch(args: argparse.Namespace) -> int:
    config, attachment = await _attach(args)
    async with attachment:
        print(json.dumps(_snapshots(config), indent=2, sort_keys=True))
    return 0


async def _watch(args: argparse.Namespace) -> int:
    config, attachment = await _attach(args)
    done = asyncio.Event()
    seen = 0

    def _on_change(event: ConfigChangeEvent) -> None:
        nonlocal seen
        print(_event_line(event), flush=True)
        seen += 1
        if args.max_events and seen >= args.max_events:
            done.set()

    async with attachment:
        subscription = config.subscribe(_on_change)
        with subscription:
            await done.wait()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(level=args.log_level, stream=sys.stderr)

    handler = _fetch if args.command == "fetch" else _watch
    try:
        return asyncio.run(handler(args))
    except ConfigAttachError as e:
        print(f"error: {e.kind.value}: {e.message}", file=sys.stderr)
        return 1
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
