from .config import RelayConfig
from .errors import (
    AnotherDebuggerAttachedError,
    ProxyConnectError,
    ProxyUnreachableError,
    RelayError,
    RelayTimeoutError,
    SandboxStartFailedError,
    ScriptDownloadFailedError,
)
from .script_importer import ScriptImporter
from .supervisor import RelaySupervisor
from .types import ConnectionState, DownloadedScript, ProxyConnection
from .worker import SandboxWorker

__all__ = [
    "AnotherDebuggerAttachedError",
    "ConnectionState",
    "DownloadedScript",
    "ProxyConnectError",
    "ProxyConnection",
    "ProxyUnreachableError",
    "RelayConfig",
    "RelayError",
    "RelaySupervisor",
    "RelayTimeoutError",
    "SandboxStartFailedError",
    "SandboxWorker",
    "ScriptDownloadFailedError",
    "ScriptImporter",
]
