"""Config payload parsing.

Turns raw bytes fetched from a source into validated ServerConfig /
LogsConfig objects. Every failure surfaces as ConfigParseError.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Union

import yaml
from pydantic import BaseModel, ValidationError

from clusterconf.core.config.models import LogsConfig, ServerConfig
from clusterconf.core.errors import ConfigParseError

logger = logging.getLogger(__name__)

Document = Union[Dict[str, Any], List[Any]]


@dataclass
class ParserOptions:
    """Options for the config parser."""

    # Reject unknown top-level keys instead of ignoring them
    strict: bool = False


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ConfigParser:
    """Decode and validate config payloads."""

    def __init__(self, options: ParserOptions | None = None):
        self.options = options or ParserOptions()

    def decode(self, payload: bytes, hint: str = "") -> Document:
        """Decode bytes as JSON, or YAML when JSON fails or the hint says so."""
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigParseError(f"payload is not valid UTF-8: {e}") from e

        if not text.strip():
            raise ConfigParseError("empty config payload")

        if hint.endswith((".yaml", ".yml")):
            document = self._load_yaml(text)
        else:
            try:
                document = json.loads(text)
            except json.JSONDecodeError:
                document = self._load_yaml(text)

        if not isinstance(document, (dict, list)):
            raise ConfigParseError(
                f"config document must be a mapping, got {type(document).__name__}"
            )
        return document

    def _load_yaml(self, text: str) -> Any:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"payload is neither JSON nor YAML: {e}") from e

    def _check_keys(self, document: Dict[str, Any], model: type[BaseModel], extra: set) -> None:
        if not self.options.strict:
            return
        unknown = set(document) - set(model.model_fields) - extra
        if unknown:
            raise ConfigParseError(
                f"unknown {model.__name__} keys: {', '.join(sorted(unknown))}"
            )

    def parse_server(self, document: Document) -> ServerConfig:
        if not isinstance(document, dict):
            raise ConfigParseError("server config must be a mapping")
        self._check_keys(document, ServerConfig, {"logs"})
        data = {k: v for k, v in document.items() if k != "logs"}
        try:
            return ServerConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigParseError(
                f"invalid server config: {_format_validation_error(e)}"
            ) from e

    def parse_logs(self, document: Document) -> LogsConfig:
        if isinstance(document, list):
            data: Dict[str, Any] = {"logs": document}
        elif isinstance(document, dict):
            self._check_keys(document, LogsConfig, set())
            data = document
        else:
            raise ConfigParseError("logs config must be a mapping or a list")
        try:
            return LogsConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigParseError(
                f"invalid logs config: {_format_validation_error(e)}"
            ) from e


__all__ = ["ConfigParser", "ParserOptions"]
