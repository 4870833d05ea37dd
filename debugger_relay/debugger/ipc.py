"""
Node.js IPC channel over a unix socketpair.

Node opens an IPC channel on the file descriptor named by NODE_CHANNEL_FD.
With the default "json" serialization every message is one JSON document
followed by a newline, in both directions. Messages whose `cmd` starts
with "NODE_" are Node internals (handle passing, cluster) and are never
surfaced.
"""

import asyncio
import json
import socket
from collections.abc import AsyncIterator
from typing import Any

from ..log_config import get_logger

NODE_CHANNEL_FD = "NODE_CHANNEL_FD"
NODE_CHANNEL_SERIALIZATION_MODE = "NODE_CHANNEL_SERIALIZATION_MODE"

# Bundles can be large; a single IPC line may carry a whole source map payload.
STREAM_LIMIT = 64 * 1024 * 1024

log = get_logger("ipc")


class IpcChannelClosed(Exception):
    """Raised when sending on a channel whose peer has gone away."""

    pass


class NodeIpcChannel:
    """Parent side of a Node IPC channel."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._closed = False

    @classmethod
    def socketpair(cls) -> tuple[socket.socket, socket.socket]:
        """Return (parent, child) sockets. The child end is inheritable."""
        parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
        child_sock.set_inheritable(True)
        return parent_sock, child_sock

    @classmethod
    async def open(cls, parent_sock: socket.socket, limit: int = STREAM_LIMIT) -> "NodeIpcChannel":
        reader, writer = await asyncio.open_unix_connection(sock=parent_sock, limit=limit)
        return cls(reader, writer)

    @staticmethod
    def child_env(child_fd: int) -> dict[str, str]:
        return {
            NODE_CHANNEL_FD: str(child_fd),
            NODE_CHANNEL_SERIALIZATION_MODE: "json",
        }

    @property
    def closed(self) -> bool:
        return self._closed or self._writer.is_closing()

    def write(self, message: Any) -> None:
        """Queue one message. Ordering across calls is preserved."""
        if self.closed:
            raise IpcChannelClosed("IPC channel is closed")
        self._writer.write(json.dumps(message).encode() + b"\n")

    async def drain(self) -> None:
        try:
            await self._writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            self._closed = True
            raise IpcChannelClosed(str(e)) from e

    async def send(self, message: Any) -> None:
        self.write(message)
        await self.drain()

    async def messages(self) -> AsyncIterator[Any]:
        """Yield decoded messages until the child closes its end."""
        while True:
            try:
                line = await self._reader.readline()
            except (ConnectionResetError, asyncio.IncompleteReadError):
                break
            except (ValueError, asyncio.LimitOverrunError) as e:
                # readline() drops the buffered part; a late tail fails JSON decoding below
                log.warn("ipc.message_too_large", exc=e)
                continue
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError as e:
                log.warn("ipc.invalid_message", exc=e, size=len(line))
                continue
            if isinstance(message, dict) and str(message.get("cmd", "")).startswith("NODE_"):
                continue
            yield message
        self._closed = True

    async def close(self) -> None:
        if self._writer.is_closing():
            self._closed = True
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
