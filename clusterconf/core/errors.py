"""Shared error kinds for config attachment and refresh.

Centralizes the failure taxonomy so sources, the updater and the attach
facade report the same codes.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ConfigErrorKind(str, Enum):
    # attach() outcomes
    TIMEOUT = "TIMEOUT"
    FILE_OPEN = "FILE_OPEN"
    FILE_READ = "FILE_READ"
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_PARAM = "INVALID_PARAM"
    RESOURCE_LIMIT = "RESOURCE_LIMIT"  # refresh task could not be started
    # fetch outcomes reported by sources
    NOT_FOUND = "NOT_FOUND"
    IO_FAILURE = "IO_FAILURE"
    UNAVAILABLE = "UNAVAILABLE"


_ATTACH_KINDS = {
    ConfigErrorKind.NOT_FOUND: ConfigErrorKind.FILE_OPEN,
    ConfigErrorKind.UNAVAILABLE: ConfigErrorKind.FILE_OPEN,
    ConfigErrorKind.IO_FAILURE: ConfigErrorKind.FILE_READ,
}


def attach_error_kind(kind: ConfigErrorKind) -> ConfigErrorKind:
    """Map a fetch-level kind onto the set reported by attach()."""
    return _ATTACH_KINDS.get(kind, kind)


class ConfigError(Exception):
    """Base exception for config attachment and refresh failures."""

    default_kind = ConfigErrorKind.INVALID_CONFIG

    def __init__(self, message: str, kind: Optional[ConfigErrorKind] = None):
        self.message = message
        self.kind = kind or self.default_kind
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class ConfigSourceError(ConfigError):
    """A single fetch attempt against a backend failed."""

    default_kind = ConfigErrorKind.IO_FAILURE

    def __init__(
        self,
        kind: ConfigErrorKind,
        message: str,
        source: Optional[str] = None,
    ):
        self.source = source
        super().__init__(message, kind)


class ConfigParseError(ConfigError):
    """Payload could not be decoded or failed validation."""

    default_kind = ConfigErrorKind.INVALID_CONFIG


class PairingMismatchError(ConfigError):
    """Server and logs partitions carry incompatible pairing markers."""

    default_kind = ConfigErrorKind.INVALID_CONFIG

    def __init__(self, partition: str, expected: Optional[str], actual: Optional[str]):
        self.partition = partition
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{partition} config pairing marker {actual!r} does not match "
            f"sibling marker {expected!r}"
        )


class InvalidSourceError(ConfigError):
    """Malformed source specifier or unknown backend."""

    default_kind = ConfigErrorKind.INVALID_PARAM


class ConfigAttachError(ConfigError):
    """Raised by ConfigInit.attach() when bootstrap fails."""


__all__ = [
    "ConfigErrorKind",
    "ConfigError",
    "ConfigSourceError",
    "ConfigParseError",
    "PairingMismatchError",
    "InvalidSourceError",
    "ConfigAttachError",
    "attach_error_kind",
]
