"""Structured logging setup for config attachment and refresh."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

# Structured fields emitted by the config subsystem
_STRUCTURED_FIELDS = [
    "source",
    "partition",
    "version",
    "checksum",
    "error_kind",
    "latency_ms",
    "outcome",
    "pairing",
]


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for attr in _STRUCTURED_FIELDS:
            if hasattr(record, attr):
                data[attr] = getattr(record, attr)
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, ensure_ascii=False, default=str)


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """Install a single stream handler (stdout by default) on the root logger.

    Defaults come from CLUSTERCONF_LOG_LEVEL / CLUSTERCONF_LOG_FORMAT.
    """
    from clusterconf.core.settings import get_settings

    settings = get_settings()
    level = level or settings.LOG_LEVEL
    if json_format is None:
        json_format = settings.LOG_FORMAT.lower() == "json"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    handler = logging.StreamHandler(stream or sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.handlers = [handler]
