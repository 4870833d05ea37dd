"""Tests for RelayConfig and timeout resolution."""

from pathlib import Path

import pytest

from debugger_relay.debugger.config import (
    DOWNLOAD_TIMEOUT,
    PROBE_TIMEOUT,
    RelayConfig,
    resolve_timeout_seconds,
)
from debugger_relay.log_config import get_logger

RELAY_ENV_VARS = [
    "RELAY_PACKAGER_HOST",
    "RELAY_PACKAGER_PORT",
    "RELAY_STORAGE_PATH",
    "RELAY_RN_VERSION",
    "RELAY_DEBUGGER_WORKER_URL_PATH",
    "RELAY_NODE",
    "RELAY_INSPECT",
    "RELAY_PROBE_TIMEOUT",
    "RELAY_CONNECT_TIMEOUT",
    "RELAY_DOWNLOAD_TIMEOUT",
    "RELAY_WORKER_READY_TIMEOUT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in RELAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def log():
    return get_logger("test")


class TestResolveTimeoutSeconds:
    def test_default_when_unset(self, log):
        assert resolve_timeout_seconds(log, PROBE_TIMEOUT) == PROBE_TIMEOUT.default

    def test_valid_value_is_used(self, log, monkeypatch):
        monkeypatch.setenv("RELAY_DOWNLOAD_TIMEOUT", "90")

        assert resolve_timeout_seconds(log, DOWNLOAD_TIMEOUT) == 90.0

    def test_invalid_value_falls_back_to_default(self, log, monkeypatch):
        monkeypatch.setenv("RELAY_DOWNLOAD_TIMEOUT", "soon")

        assert resolve_timeout_seconds(log, DOWNLOAD_TIMEOUT) == DOWNLOAD_TIMEOUT.default

    @pytest.mark.parametrize(
        "raw, expected",
        [("0", DOWNLOAD_TIMEOUT.min_value), ("100000", DOWNLOAD_TIMEOUT.max_value)],
    )
    def test_out_of_range_is_clamped(self, log, monkeypatch, raw, expected):
        monkeypatch.setenv("RELAY_DOWNLOAD_TIMEOUT", raw)

        assert resolve_timeout_seconds(log, DOWNLOAD_TIMEOUT) == expected


class TestRelayConfig:
    def test_defaults(self):
        config = RelayConfig.from_env()

        assert config.host == "localhost"
        assert config.port == 8081
        assert config.debugger_worker_url_path is None
        assert config.inspect is True
        assert config.probe_timeout == PROBE_TIMEOUT.default

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RELAY_PACKAGER_HOST", "10.0.2.2")
        monkeypatch.setenv("RELAY_PACKAGER_PORT", "19000")
        monkeypatch.setenv("RELAY_STORAGE_PATH", "/tmp/relay")
        monkeypatch.setenv("RELAY_DEBUGGER_WORKER_URL_PATH", "")
        monkeypatch.setenv("RELAY_INSPECT", "false")

        config = RelayConfig.from_env()

        assert config.host == "10.0.2.2"
        assert config.port == 19000
        assert config.sources_storage_path == Path("/tmp/relay")
        assert config.debugger_worker_url_path == ""
        assert config.inspect is False

    def test_invalid_port_falls_back(self, monkeypatch):
        monkeypatch.setenv("RELAY_PACKAGER_PORT", "eighty")

        assert RelayConfig.from_env().port == 8081

    def test_overrides_win_and_none_is_ignored(self, monkeypatch):
        monkeypatch.setenv("RELAY_PACKAGER_HOST", "10.0.2.2")

        config = RelayConfig.from_env(host=None, port=8088, rn_version="0.49.0")

        assert config.host == "10.0.2.2"
        assert config.port == 8088
        assert config.rn_version == "0.49.0"

    def test_storage_path_is_coerced(self):
        config = RelayConfig(sources_storage_path="relative/dir")

        assert config.sources_storage_path == Path("relative/dir")
