"""
Relay configuration.

Values come from constructor arguments or, via RelayConfig.from_env(), from
RELAY_* environment variables. Timeouts are bounded: invalid values fall back
to the default and out-of-range values are clamped.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from ..log_config import StructuredLogger, get_logger

DEFAULT_PACKAGER_PORT = 8081


@dataclass(frozen=True)
class TimeoutSpec:
    env_name: str
    default: float
    min_value: float
    max_value: float


PROBE_TIMEOUT = TimeoutSpec("RELAY_PROBE_TIMEOUT", 5.0, 0.1, 120.0)
CONNECT_TIMEOUT = TimeoutSpec("RELAY_CONNECT_TIMEOUT", 10.0, 0.1, 120.0)
DOWNLOAD_TIMEOUT = TimeoutSpec("RELAY_DOWNLOAD_TIMEOUT", 60.0, 1.0, 600.0)
WORKER_READY_TIMEOUT = TimeoutSpec("RELAY_WORKER_READY_TIMEOUT", 30.0, 0.5, 600.0)


@dataclass
class RelayConfig:
    """Settings for one supervisor and the workers it spawns."""

    host: str = "localhost"
    port: int = DEFAULT_PACKAGER_PORT
    sources_storage_path: Path = Path(".react-native-debugger")
    rn_version: str = "0.50.0"
    debugger_worker_url_path: str | None = None
    node_executable: str = "node"
    inspect: bool = True
    probe_timeout: float = PROBE_TIMEOUT.default
    connect_timeout: float = CONNECT_TIMEOUT.default
    download_timeout: float = DOWNLOAD_TIMEOUT.default
    worker_ready_timeout: float = WORKER_READY_TIMEOUT.default

    def __post_init__(self) -> None:
        self.sources_storage_path = Path(self.sources_storage_path)

    @classmethod
    def from_env(cls, **overrides) -> "RelayConfig":
        """Build a config from RELAY_* variables; keyword overrides win."""
        log = get_logger("config")
        values: dict = {
            "host": os.environ.get("RELAY_PACKAGER_HOST", "localhost"),
            "port": _resolve_int(log, "RELAY_PACKAGER_PORT", DEFAULT_PACKAGER_PORT),
            "sources_storage_path": Path(
                os.environ.get("RELAY_STORAGE_PATH", ".react-native-debugger")
            ),
            "rn_version": os.environ.get("RELAY_RN_VERSION", "0.50.0"),
            "debugger_worker_url_path": os.environ.get("RELAY_DEBUGGER_WORKER_URL_PATH"),
            "node_executable": os.environ.get("RELAY_NODE", "node"),
            "inspect": os.environ.get("RELAY_INSPECT", "true").lower() != "false",
            "probe_timeout": resolve_timeout_seconds(log, PROBE_TIMEOUT),
            "connect_timeout": resolve_timeout_seconds(log, CONNECT_TIMEOUT),
            "download_timeout": resolve_timeout_seconds(log, DOWNLOAD_TIMEOUT),
            "worker_ready_timeout": resolve_timeout_seconds(log, WORKER_READY_TIMEOUT),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _resolve_int(log: StructuredLogger, name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warn("config.invalid", name=name, detail=f"invalid value '{raw}', using default")
        return default


def resolve_timeout_seconds(log: StructuredLogger, spec: TimeoutSpec) -> float:
    raw = os.environ.get(spec.env_name)
    if raw is None or raw == "":
        value = spec.default
    else:
        try:
            value = float(raw)
        except ValueError:
            log.warn(
                "config.timeout_invalid",
                timeout_name=spec.env_name,
                timeout_ms=int(spec.default * 1000),
                detail=f"invalid value '{raw}', using default",
            )
            value = spec.default

    if value < spec.min_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=spec.env_name,
            timeout_ms=int(spec.min_value * 1000),
            detail=f"below min ({spec.min_value}s), clamped",
        )
        value = spec.min_value
    elif value > spec.max_value:
        log.warn(
            "config.timeout_clamped",
            timeout_name=spec.env_name,
            timeout_ms=int(spec.max_value * 1000),
            detail=f"above max ({spec.max_value}s), clamped",
        )
        value = spec.max_value

    return value
