"""Error kinds raised by the relay, worker and script importer."""


class RelayError(Exception):
    """Base class for all relay errors."""

    pass


class ProxyUnreachableError(RelayError):
    """Raised when the proxy (packager) does not answer its status probe.

    Not retried by the supervisor itself: the caller decides whether to
    call start() again.
    """

    pass


class ProxyConnectError(ProxyUnreachableError):
    """Raised when the status probe succeeded but the websocket could not be opened."""

    pass


class AnotherDebuggerAttachedError(RelayError):
    """Raised when the proxy closes the socket because another debugger owns it.

    Terminal: the supervisor stops and does not reconnect.
    """

    pass


class SandboxStartFailedError(RelayError):
    """Raised when the worker process exits or fails to spawn before it is ready."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class ScriptDownloadFailedError(RelayError):
    """Raised when a script cannot be fetched from the proxy."""

    def __init__(self, message: str, url: str, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RelayTimeoutError(RelayError):
    """Raised when a bounded wait (probe, connect, download, readiness) elapses."""

    def __init__(self, message: str, timeout_name: str, timeout_s: float):
        super().__init__(message)
        self.timeout_name = timeout_name
        self.timeout_s = timeout_s
