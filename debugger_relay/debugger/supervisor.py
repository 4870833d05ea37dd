"""
Relay supervisor - keeps the debugger connected to the packager across app reloads.

This module handles:
- Liveness probe and websocket connection to the packager's debugger proxy
- Routing of proxy frames to the current sandbox worker
- One sandbox worker per prepareJSRuntime, replacing the previous one
- Reconnection after the proxy socket closes, unless another debugger took over
- Clean teardown of the socket, worker and pending reconnects
"""

import argparse
import asyncio
import json
import signal
from collections.abc import Callable
from functools import partial
from typing import Any

import httpx
import websockets
from websockets.exceptions import InvalidHandshake, InvalidURI

from ..log_config import RateLimitedLog, configure_logging, get_logger
from .config import RelayConfig
from .errors import (
    AnotherDebuggerAttachedError,
    ProxyConnectError,
    RelayError,
    RelayTimeoutError,
)
from .output import OutputChannel
from .packager import ensure_packager_running
from .project import get_react_native_version
from .script_importer import ScriptImporter
from .types import (
    APP_DISCONNECTED,
    PREPARE_JS_RUNTIME,
    RELOAD_APP,
    SHOW_DEV_MENU,
    ConnectionState,
    Message,
    ProxyConnection,
)
from .worker import SandboxWorker

configure_logging()


class RelaySupervisor:
    """
    Owns the proxy socket and the sandbox worker lifetimes behind it.

    Handles:
    - start(): probe, fetch the debugger worker script, open the socket
    - Frame routing: prepareJSRuntime, $disconnected, everything else
    - Close/error handling with fixed-delay reconnect
    - stop(): idempotent teardown
    """

    RECONNECT_DELAY = 0.1
    ANOTHER_DEBUGGER_MARKER = "Another debugger is already connected"
    LOG_RATE_LIMIT_WINDOW = 10.0

    def __init__(
        self,
        config: RelayConfig,
        http_client: httpx.AsyncClient | None = None,
        script_importer: ScriptImporter | None = None,
        connect: Callable[..., Any] = websockets.connect,
        worker_factory: Callable[..., SandboxWorker] = SandboxWorker,
        output: OutputChannel | None = None,
        on_connected: Callable[[int | None], None] | None = None,
        on_terminated: Callable[[RelayError], None] | None = None,
    ):
        self.config = config
        self.http_client = http_client
        self.script_importer = script_importer
        self._owns_http_client = http_client is None
        self._connect = connect
        self._worker_factory = worker_factory
        self.output = output or OutputChannel()
        self.on_connected = on_connected
        self.on_terminated = on_terminated

        self.log = get_logger("relay", host=config.host, port=config.port)
        self._rate_limited = RateLimitedLog(self.LOG_RATE_LIMIT_WINDOW)

        self.connection: ProxyConnection | None = None
        self.worker: SandboxWorker | None = None
        self.debugger_worker_script: str | None = None
        self.terminal_error: RelayError | None = None
        self.shutdown_event = asyncio.Event()

        self._stopped = False
        self._attempt = 0
        self._reader_task: asyncio.Task[None] | None = None
        self._sender_task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    @property
    def proxy_url(self) -> str:
        """Websocket URL of the packager's debugger proxy."""
        return f"ws://{self.config.host}:{self.config.port}/debugger-proxy?role=debugger"

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def run(self) -> None:
        """Start the relay and block until it stops.

        Raises the terminal error (e.g. AnotherDebuggerAttachedError) if one
        ended the session.
        """
        self.log.info("relay.run_start")
        try:
            await self.start()
            await self.shutdown_event.wait()
        finally:
            await self.stop()
        if self.terminal_error is not None:
            raise self.terminal_error

    async def start(self, retry_attempt: bool = False) -> None:
        """Probe the packager and (re)open the proxy socket.

        The debugger worker script is only downloaded on the first start;
        reconnects reuse it.

        Raises:
            ProxyUnreachableError: The packager did not answer its status probe.
            ProxyConnectError: The websocket could not be opened.
            RelayTimeoutError: The probe or the socket open timed out.
            ScriptDownloadFailedError: The debugger worker could not be fetched.
        """
        if self._stopped:
            raise RuntimeError("Relay supervisor has been stopped")

        self._ensure_clients()
        await ensure_packager_running(
            self.http_client, self.config.host, self.config.port, self.config.probe_timeout
        )

        if not retry_attempt or self.debugger_worker_script is None:
            downloaded = await self.script_importer.download_debugger_worker(
                self.config.rn_version, self.config.debugger_worker_url_path
            )
            self.debugger_worker_script = downloaded.contents

        await self._open_connection(retry_attempt)

    async def stop(self) -> None:
        """Close the socket, stop the worker and cancel any pending reconnect."""
        if self._stopped:
            return
        self._stopped = True
        self.log.info("relay.stop")

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        current = asyncio.current_task()
        for task in [self._reconnect_task, *self._background_tasks]:
            if task and task is not current and not task.done():
                task.cancel()

        await self._close_connection()
        await self._stop_worker()

        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()

        self.shutdown_event.set()

    def reload_app(self) -> None:
        """Ask the app running in the current worker to reload."""
        self._forward_to_worker({"method": RELOAD_APP})

    def show_dev_menu(self) -> None:
        """Ask the app running in the current worker to show its dev menu."""
        self._forward_to_worker({"method": SHOW_DEV_MENU})

    def _ensure_clients(self) -> None:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.config.download_timeout,
                    connect=self.config.connect_timeout,
                )
            )
        if self.script_importer is None:
            self.script_importer = ScriptImporter(
                self.config.host,
                self.config.port,
                self.config.sources_storage_path,
                self.http_client,
                download_timeout=self.config.download_timeout,
                rn_version=self.config.rn_version,
            )

    async def _open_connection(self, retry_attempt: bool) -> None:
        await self._close_connection()

        self._attempt = self._attempt + 1 if retry_attempt else 0
        conn = ProxyConnection(self.config.host, self.config.port, attempt=self._attempt)
        self.connection = conn

        timeout = self.config.connect_timeout
        try:
            conn.ws = await self._connect(self.proxy_url, open_timeout=timeout, max_size=None)
        except TimeoutError as e:
            conn.state = ConnectionState.CLOSED
            raise RelayTimeoutError(
                f"Connecting to {self.proxy_url} timed out after {timeout:.0f}s",
                timeout_name="connect",
                timeout_s=timeout,
            ) from e
        except (OSError, InvalidHandshake, InvalidURI) as e:
            conn.state = ConnectionState.CLOSED
            raise ProxyConnectError(f"Cannot connect to {self.proxy_url}: {e}") from e

        if self._stopped:
            conn.state = ConnectionState.CLOSED
            await conn.ws.close()
            return

        conn.state = ConnectionState.OPEN
        if self._rate_limited.allow("relay.connect"):
            self.log.info("relay.connect", outcome="success", attempt=conn.attempt)
            self.output.log("Established a connection with the packager's debugger proxy")

        self._reader_task = asyncio.create_task(self._read_loop(conn))
        self._sender_task = asyncio.create_task(self._send_loop(conn))

    async def _close_connection(self) -> None:
        conn = self.connection
        current = asyncio.current_task()
        for task in (self._reader_task, self._sender_task):
            if task and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._sender_task = None

        if conn is None or conn.ws is None:
            return
        conn.state = ConnectionState.CLOSED
        try:
            await conn.ws.close()
        except Exception as e:
            self.log.debug("relay.close_error", exc=e)

    async def _read_loop(self, conn: ProxyConnection) -> None:
        reason = ""
        try:
            async for raw in conn.ws:
                await self._on_message(raw)
            reason = getattr(conn.ws, "close_reason", None) or ""
        except websockets.ConnectionClosed as e:
            reason = e.rcvd.reason if e.rcvd is not None else ""
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.warn("relay.socket_error", exc=e)
            reason = str(e)

        conn.state = ConnectionState.CLOSED
        await self._on_close(conn, reason)

    async def _send_loop(self, conn: ProxyConnection) -> None:
        while True:
            message = await conn.outbox.get()
            try:
                await conn.ws.send(json.dumps(message))
            except websockets.ConnectionClosed:
                self.log.debug("relay.send_failed", reason="connection_closed")
                return
            except Exception as e:
                self.log.error("relay.send_error", exc=e)

    def _send(self, message: Message) -> None:
        """Queue a frame for the proxy. All outbound traffic goes through here."""
        conn = self.connection
        if conn is None or conn.state != ConnectionState.OPEN:
            self.log.debug(
                "relay.send_failed",
                reason="not_connected",
                state=conn.state.value if conn else None,
            )
            return
        conn.outbox.put_nowait(message)

    async def _on_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
            self.log.warn("relay.invalid_message", exc=e)
            return
        if not isinstance(message, dict):
            self.log.warn("relay.invalid_message", reason="not_an_object")
            return

        method = message.get("method")
        self.log.debug("relay.message_received", method=method)

        try:
            if method == PREPARE_JS_RUNTIME:
                await self._prepare_js_runtime(message)
            elif method == APP_DISCONNECTED:
                self.log.info("relay.app_disconnected")
                self.output.log("The app disconnected from the packager. Recreating the worker.")
                await self._stop_worker()
            elif method:
                self._forward_to_worker(message)
            else:
                # Informational frames without a method are expected
                self.log.debug("relay.message_without_method")
        except Exception as e:
            self.log.error("relay.message_error", exc=e, method=method)

    async def _prepare_js_runtime(self, message: Message) -> None:
        await self._stop_worker()

        worker = self._worker_factory(
            script_importer=self.script_importer,
            post_reply=self._send,
            config=self.config,
            output=self.output,
        )
        worker.on_exit = partial(self._on_worker_exit, worker)
        self.worker = worker
        self.log.info("relay.worker_created", session_id=worker.session_id)

        task = asyncio.create_task(self._start_worker(worker, message.get("id")))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _start_worker(self, worker: SandboxWorker, message_id: Any) -> None:
        try:
            port = await worker.start(self.debugger_worker_script or "")
        except RelayError as e:
            if worker.stopped and worker is not self.worker:
                self.log.debug("relay.worker_superseded", session_id=worker.session_id)
                return
            self.log.error("relay.worker_start_failed", exc=e, session_id=worker.session_id)
            self.output.log(f"Failed to start the sandbox worker: {e}", error=True)
            if worker is self.worker:
                self.worker = None
            return

        if worker is not self.worker or worker.stopped:
            return

        if message_id is None:
            self.log.warn("relay.prepare_without_id")
        else:
            try:
                reply_id = int(message_id)
            except (TypeError, ValueError):
                reply_id = message_id
            self._send({"replyID": reply_id})

        if self.on_connected:
            self.on_connected(port)

    def _forward_to_worker(self, message: Message) -> None:
        method = message.get("method")
        worker = self.worker
        if worker is None or worker.stopped:
            self.log.warn("relay.message_dropped", method=method, reason="no_worker")
            return

        task = worker.post_message_nowait(message)
        task.add_done_callback(partial(self._on_post_done, method))

    def _on_post_done(self, method: str | None, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            self.log.debug("relay.command_cancelled", method=method)
            return
        exc = task.exception()
        if exc is not None:
            self.log.error("relay.command_error", exc=exc, method=method)
            self.output.log(f"Failed to deliver {method} to the sandbox worker: {exc}", error=True)

    def _on_worker_exit(self, worker: SandboxWorker, exit_code: int | None) -> None:
        if worker is self.worker:
            self.worker = None
            self.log.warn("relay.worker_exit", exit_code=exit_code, session_id=worker.session_id)
        task = asyncio.create_task(worker.stop())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _stop_worker(self) -> None:
        worker = self.worker
        self.worker = None
        if worker is not None:
            await worker.stop()

    async def _on_close(self, conn: ProxyConnection, reason: str) -> None:
        """Handle socket close and socket error alike."""
        if self._stopped or conn is not self.connection:
            return

        if self.ANOTHER_DEBUGGER_MARKER in reason:
            self.log.error("relay.disconnect", reason="another_debugger", close_reason=reason)
            await self._terminate(
                AnotherDebuggerAttachedError(
                    "Another debugger is already connected to the packager. "
                    "Close it before trying to debug with this session."
                )
            )
            return

        if self._rate_limited.allow("relay.disconnect"):
            self.log.info("relay.disconnect", reason="connection_closed", close_reason=reason)
            self.output.log("Disconnected from the packager. Retrying reconnection soon...")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.RECONNECT_DELAY, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopped:
            return
        self._reconnect_task = asyncio.create_task(self._retry())

    async def _retry(self) -> None:
        self.log.debug("relay.reconnect", attempt=self._attempt + 1)
        try:
            await self.start(retry_attempt=True)
        except (ProxyConnectError, RelayTimeoutError) as e:
            if self._stopped:
                return
            self.log.warn("relay.reconnect_failed", exc=e, will_retry=True)
            self._schedule_reconnect()
        except RelayError as e:
            if self._stopped:
                return
            self.log.error("relay.reconnect_failed", exc=e, will_retry=False)
            self.output.log(
                "Reconnection to the packager failed. Check the packager output for errors "
                "and restart debugging.",
                error=True,
            )
            await self._terminate(e)

    async def _terminate(self, error: RelayError) -> None:
        self.terminal_error = error
        self.output.log(str(error), error=True)
        if self.on_terminated:
            self.on_terminated(error)
        await self.stop()


async def main():
    """Entry point for a standalone relay process."""
    parser = argparse.ArgumentParser(description="React Native debugger relay")
    parser.add_argument("--host", help="Packager host")
    parser.add_argument("--port", type=int, help="Packager port")
    parser.add_argument("--storage-path", help="Directory for downloaded scripts")
    parser.add_argument("--project-root", help="Project root used to detect the RN version")
    parser.add_argument("--rn-version", help="React Native version (overrides detection)")
    parser.add_argument("--worker-url-path", help="Path prefix of debuggerWorker.js")
    parser.add_argument("--no-inspect", action="store_true", help="Do not open an inspector port")

    args = parser.parse_args()

    rn_version = args.rn_version
    if rn_version is None and args.project_root:
        rn_version = get_react_native_version(args.project_root)

    config = RelayConfig.from_env(
        host=args.host,
        port=args.port,
        sources_storage_path=args.storage_path,
        rn_version=rn_version,
        debugger_worker_url_path=args.worker_url_path,
        inspect=False if args.no_inspect else None,
    )
    supervisor = RelaySupervisor(
        config,
        on_connected=lambda port: supervisor.log.info("relay.worker_connected", debug_port=port),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(supervisor.stop()))

    try:
        await supervisor.run()
    except RelayError as e:
        supervisor.log.error("relay.fatal", exc=e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    asyncio.run(main())
