"""
Sandbox worker - one disposable Node process running the debugger worker bundle.

The worker:
- Wraps the bundle with the bootstrap shim and writes it to a session file
- Spawns `node` with piped stdio and a Node IPC channel
- Buffers messages until the child posts the ready sentinel, then replays them
- Downloads application scripts before forwarding executeApplicationScript
- Relays every other child message to the reply callback unmodified
"""

import asyncio
import os
import secrets
import socket
from collections import deque
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from ..log_config import get_logger
from .bootstrap import is_ready_sentinel, render_worker_script
from .config import RelayConfig
from .errors import RelayTimeoutError, SandboxStartFailedError, ScriptDownloadFailedError
from .ipc import IpcChannelClosed, NodeIpcChannel
from .output import OutputChannel
from .script_importer import ScriptImporter
from .types import EXECUTE_APPLICATION_SCRIPT, Message, OutputCategory

Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class SandboxWorker:
    """
    One lifetime of the sandbox. Not restartable: a new session gets a new worker.

    Messages posted before the child is ready are queued in arrival order and
    flushed right after the ready sentinel. Stopping the worker cancels every
    in-flight post (including pending script downloads) and reaps the child.
    """

    SCRIPT_PREFIX = "worker-"

    def __init__(
        self,
        script_importer: ScriptImporter,
        post_reply: Callable[[Message], None],
        config: RelayConfig,
        output: OutputChannel | None = None,
        on_exit: Callable[[int | None], None] | None = None,
        spawn: Spawner = asyncio.create_subprocess_exec,
    ):
        self.script_importer = script_importer
        self.post_reply = post_reply
        self.config = config
        self.output = output or OutputChannel()
        self.on_exit = on_exit
        self._spawn = spawn

        self.session_id = secrets.token_hex(6)
        self.log = get_logger("worker", session_id=self.session_id)

        self.process: asyncio.subprocess.Process | None = None
        self.channel: NodeIpcChannel | None = None
        self.script_path: Path | None = None
        self.debug_port: int | None = None
        self.is_ready = False

        self._pending: deque[dict[str, Any]] = deque()
        self._ready: asyncio.Future[None] | None = None
        self._stopped = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._io_tasks: list[asyncio.Task[None]] = []
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def start(self, bundle: str) -> int | None:
        """Wrap bundle, spawn the child and wait for its ready sentinel.

        Returns the inspector port, or None when inspection is disabled.

        Raises:
            SandboxStartFailedError: The child could not be spawned or exited
                before it was ready.
            RelayTimeoutError: The child did not become ready in time.
        """
        if self.process is not None or self._stopped:
            raise RuntimeError("A sandbox worker can only be started once")

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()

        self.script_path = self.script_importer.write_script(
            f"{self.SCRIPT_PREFIX}{self.session_id}.js", render_worker_script(bundle)
        )
        self.debug_port = find_free_port() if self.config.inspect else None

        args = [self.config.node_executable]
        if self.debug_port is not None:
            args.append(f"--inspect={self.debug_port}")
        args.append(str(self.script_path))

        parent_sock, child_sock = NodeIpcChannel.socketpair()
        try:
            self.process = await self._spawn(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **NodeIpcChannel.child_env(child_sock.fileno())},
                pass_fds=(child_sock.fileno(),),
            )
        except OSError as e:
            parent_sock.close()
            self._remove_script()
            self._stopped = True
            raise SandboxStartFailedError(
                f"Failed to start {self.config.node_executable}: {e}"
            ) from e
        finally:
            child_sock.close()

        if self._stopped:
            # stop() ran while the child was being spawned
            parent_sock.close()
            await self._kill_process()
            raise SandboxStartFailedError("Sandbox worker was stopped while starting")

        self.log = self.log.bind(pid=self.process.pid)
        self.log.info("worker.spawned", debug_port=self.debug_port)

        self.channel = await NodeIpcChannel.open(parent_sock)
        if self._stopped:
            await self.channel.close()
            raise SandboxStartFailedError("Sandbox worker was stopped while starting")
        self._reader_task = asyncio.create_task(self._read_messages())
        self._io_tasks = [
            asyncio.create_task(self._forward_output(self.process.stdout, OutputCategory.STDOUT)),
            asyncio.create_task(self._forward_output(self.process.stderr, OutputCategory.STDERR)),
            asyncio.create_task(self._watch_exit()),
        ]

        timeout = self.config.worker_ready_timeout
        try:
            await asyncio.wait_for(self._ready, timeout=timeout)
        except TimeoutError as e:
            await self.stop()
            raise RelayTimeoutError(
                f"Sandbox worker was not ready within {timeout:.0f}s",
                timeout_name="worker_ready",
                timeout_s=timeout,
            ) from e
        except SandboxStartFailedError:
            await self.stop()
            raise

        self.log.info("worker.ready", debug_port=self.debug_port)
        return self.debug_port

    async def post_message(self, message: Message) -> None:
        """Deliver message to the sandbox's onmessage handler.

        executeApplicationScript messages get their url replaced by the local
        path of the downloaded script first.

        Raises:
            ScriptDownloadFailedError: The application script could not be fetched.
            RelayTimeoutError: The application script download timed out.
        """
        if message.get("method") == EXECUTE_APPLICATION_SCRIPT:
            message = await self._localize_app_script(message)
        await self._deliver({"data": message})

    def post_message_nowait(self, message: Message) -> asyncio.Task[None]:
        """Schedule post_message as a task owned by this session."""
        task = asyncio.create_task(self.post_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self) -> None:
        """Kill the child and release everything this session owns. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self.log.info("worker.stop", pid=self.process.pid if self.process else None)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        await self._kill_process()

        if self.channel:
            await self.channel.close()

        for task in [self._reader_task, *self._io_tasks]:
            if task and task is not current:
                task.cancel()

        if self._ready and not self._ready.done():
            self._ready.set_exception(
                SandboxStartFailedError("Sandbox worker was stopped before it was ready")
            )
        self._pending.clear()
        self._remove_script()

    async def _localize_app_script(self, message: Message) -> Message:
        url = message.get("url")
        if not url:
            raise ScriptDownloadFailedError(
                "executeApplicationScript message has no url", url=""
            )
        script_url = self.script_importer.packager_url(url)
        self.log.info("worker.app_script_fetch", url=script_url)
        downloaded = await self.script_importer.download_app_script(script_url)
        return {**message, "url": str(downloaded.filepath)}

    async def _deliver(self, envelope: dict[str, Any]) -> None:
        if self._stopped:
            self.log.debug("worker.message_dropped", reason="stopped")
            return
        if not self.is_ready or self.channel is None:
            self._pending.append(envelope)
            return
        try:
            await self.channel.send(envelope)
        except IpcChannelClosed as e:
            self.log.warn("worker.send_failed", exc=e)

    async def _on_ready(self) -> None:
        self.is_ready = True
        flushed = len(self._pending)
        try:
            while self._pending:
                self.channel.write(self._pending.popleft())
        except IpcChannelClosed as e:
            self.log.warn("worker.flush_failed", exc=e, pending=len(self._pending))
        if self._ready and not self._ready.done():
            self._ready.set_result(None)
        if flushed:
            self.log.debug("worker.pending_flushed", count=flushed)
            try:
                await self.channel.drain()
            except IpcChannelClosed as e:
                self.log.warn("worker.flush_failed", exc=e)

    async def _read_messages(self) -> None:
        try:
            async for message in self.channel.messages():
                if is_ready_sentinel(message):
                    if self.is_ready:
                        self.log.debug("worker.duplicate_ready")
                        continue
                    await self._on_ready()
                    continue
                try:
                    self.post_reply(message)
                except Exception as e:
                    self.log.error("worker.reply_error", exc=e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.error("worker.ipc_error", exc=e)

    async def _forward_output(
        self, stream: asyncio.StreamReader | None, category: OutputCategory
    ) -> None:
        if stream is None:
            return
        write = self.output.stderr if category == OutputCategory.STDERR else self.output.stdout
        try:
            async for line in stream:
                write(line.decode(errors="replace"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.warn("worker.output_forward_error", exc=e, category=category.value)

    async def _watch_exit(self) -> None:
        exit_code = await self.process.wait()
        # Let the reader consume anything the child sent before exiting
        if self._reader_task is not None and not self._stopped:
            await asyncio.wait({self._reader_task})
        if self._stopped:
            return

        if self._ready and not self._ready.done():
            self.log.error("worker.start_failed", exit_code=exit_code)
            self._ready.set_exception(
                SandboxStartFailedError(
                    f"Sandbox worker exited with code {exit_code} before it was ready",
                    exit_code=exit_code,
                )
            )
            return

        self.log.warn("worker.exit", exit_code=exit_code)
        self.output.log(f"Sandbox worker exited with code {exit_code}", error=True)
        if self.on_exit:
            self.on_exit(exit_code)

    async def _kill_process(self) -> None:
        if self.process and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()

    def _remove_script(self) -> None:
        if self.script_path is not None:
            self.script_path.unlink(missing_ok=True)
