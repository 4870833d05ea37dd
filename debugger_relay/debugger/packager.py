"""Liveness probe for the proxy (React Native packager)."""

import httpx

from ..log_config import get_logger
from .errors import ProxyUnreachableError, RelayTimeoutError

PACKAGER_RUNNING_STATUS = "packager-status:running"

log = get_logger("packager")


def status_url(host: str, port: int) -> str:
    return f"http://{host}:{port}/status"


async def ensure_packager_running(
    client: httpx.AsyncClient,
    host: str,
    port: int,
    timeout: float,
) -> None:
    """Raise ProxyUnreachableError unless the packager reports it is running."""
    url = status_url(host, port)
    try:
        resp = await client.get(url, timeout=timeout)
    except httpx.TimeoutException as e:
        raise RelayTimeoutError(
            f"Packager at {host}:{port} did not answer within {timeout:.1f}s",
            timeout_name="probe",
            timeout_s=timeout,
        ) from e
    except httpx.HTTPError as e:
        log.debug("packager.probe_error", url=url, exc=e)
        raise ProxyUnreachableError(
            f"Cannot reach the packager at {host}:{port}. Make sure it is running."
        ) from e

    if resp.status_code != 200 or resp.text.strip() != PACKAGER_RUNNING_STATUS:
        log.debug("packager.probe_unexpected", url=url, status_code=resp.status_code)
        raise ProxyUnreachableError(
            f"The process at {host}:{port} does not look like a running packager "
            f"(HTTP {resp.status_code})."
        )
