"""Tests for config error kinds and exceptions."""

from __future__ import annotations

import pytest


class TestConfigErrorKind:
    """Tests for ConfigErrorKind and the attach mapping."""

    def test_attach_kinds_present(self):
        """Every attach outcome has a kind."""
        from clusterconf.core.errors import ConfigErrorKind

        for name in (
            "TIMEOUT",
            "FILE_OPEN",
            "FILE_READ",
            "INVALID_CONFIG",
            "INVALID_PARAM",
            "RESOURCE_LIMIT",
        ):
            assert ConfigErrorKind(name).value == name

    @pytest.mark.parametrize(
        "fetch_kind,attach_kind",
        [
            ("NOT_FOUND", "FILE_OPEN"),
            ("UNAVAILABLE", "FILE_OPEN"),
            ("IO_FAILURE", "FILE_READ"),
            ("TIMEOUT", "TIMEOUT"),
            ("INVALID_CONFIG", "INVALID_CONFIG"),
            ("INVALID_PARAM", "INVALID_PARAM"),
        ],
    )
    def test_attach_error_kind_mapping(self, fetch_kind, attach_kind):
        """Fetch failure kinds map onto attach failure kinds."""
        from clusterconf.core.errors import ConfigErrorKind, attach_error_kind

        assert attach_error_kind(ConfigErrorKind(fetch_kind)) is ConfigErrorKind(attach_kind)


class TestConfigError:
    """Tests for the exception hierarchy."""

    def test_default_kinds(self):
        """Subclasses carry their default kind."""
        from clusterconf.core.errors import (
            ConfigError,
            ConfigErrorKind,
            ConfigParseError,
            InvalidSourceError,
        )

        assert ConfigError("x").kind is ConfigErrorKind.INVALID_CONFIG
        assert ConfigParseError("x").kind is ConfigErrorKind.INVALID_CONFIG
        assert InvalidSourceError("x").kind is ConfigErrorKind.INVALID_PARAM

    def test_str_includes_kind(self):
        """str() shows the error kind."""
        from clusterconf.core.errors import ConfigErrorKind, ConfigSourceError

        err = ConfigSourceError(ConfigErrorKind.NOT_FOUND, "missing", source="file:/x")
        assert str(err) == "[NOT_FOUND] missing"
        assert err.source == "file:/x"
        assert err.message == "missing"

    def test_pairing_mismatch_error(self):
        """Pairing mismatch is an INVALID_CONFIG error naming both markers."""
        from clusterconf.core.errors import ConfigErrorKind, PairingMismatchError

        err = PairingMismatchError("logs", expected="a", actual="b")
        assert err.kind is ConfigErrorKind.INVALID_CONFIG
        assert "'a'" in err.message and "'b'" in err.message
        assert err.partition == "logs"

    def test_attach_error_is_config_error(self):
        """ConfigAttachError can be caught as ConfigError."""
        from clusterconf.core.errors import ConfigAttachError, ConfigError, ConfigErrorKind

        err = ConfigAttachError("boom", ConfigErrorKind.TIMEOUT)
        assert isinstance(err, ConfigError)
        assert err.kind is ConfigErrorKind.TIMEOUT
