"""Type definitions shared by the supervisor, worker and script importer."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from websockets import ClientConnection

Message = dict[str, Any]

PREPARE_JS_RUNTIME = "prepareJSRuntime"
EXECUTE_APPLICATION_SCRIPT = "executeApplicationScript"
APP_DISCONNECTED = "$disconnected"

RELOAD_APP = "vscode_reloadApp"
SHOW_DEV_MENU = "vscode_showDevMenu"


class ConnectionState(str, Enum):
    """State of one proxy connection."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class OutputCategory(str, Enum):
    """Output categories understood by the IDE output sink."""

    CONSOLE = "console"
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass
class ProxyConnection:
    """One websocket to the proxy. Never reused across reconnects."""

    host: str
    port: int
    attempt: int = 0
    state: ConnectionState = ConnectionState.CONNECTING
    ws: ClientConnection | None = field(default=None, repr=False)
    outbox: asyncio.Queue[Message] = field(default_factory=asyncio.Queue, repr=False)


@dataclass(frozen=True)
class DownloadedScript:
    """A script fetched from the proxy and stored locally."""

    filepath: Path
    contents: str | None = None
