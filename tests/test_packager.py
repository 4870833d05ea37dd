"""Tests for the packager status probe."""

import httpx
import pytest

from debugger_relay.debugger.errors import ProxyUnreachableError, RelayTimeoutError
from debugger_relay.debugger.packager import ensure_packager_running, status_url
from tests.conftest import STATUS_URL, MockHttpClient, MockResponse


class TestEnsurePackagerRunning:
    def test_status_url(self):
        assert status_url("localhost", 8081) == STATUS_URL

    @pytest.mark.asyncio
    async def test_running_packager_passes(self):
        client = MockHttpClient({STATUS_URL: MockResponse(200, text="packager-status:running\n")})

        await ensure_packager_running(client, "localhost", 8081, timeout=1.0)

        assert client.get_urls == [STATUS_URL]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            MockResponse(200, text="<html>some other server</html>"),
            MockResponse(503, text="packager-status:running"),
            MockResponse(404, text="Not Found"),
        ],
    )
    async def test_unexpected_answer_is_unreachable(self, response):
        client = MockHttpClient({STATUS_URL: response})

        with pytest.raises(ProxyUnreachableError):
            await ensure_packager_running(client, "localhost", 8081, timeout=1.0)

    @pytest.mark.asyncio
    async def test_connection_error_is_unreachable(self):
        client = MockHttpClient({STATUS_URL: httpx.ConnectError("connection refused")})

        with pytest.raises(ProxyUnreachableError):
            await ensure_packager_running(client, "localhost", 8081, timeout=1.0)

    @pytest.mark.asyncio
    async def test_timeout_is_reported_as_probe_timeout(self):
        client = MockHttpClient({STATUS_URL: httpx.ConnectTimeout("timed out")})

        with pytest.raises(RelayTimeoutError) as exc_info:
            await ensure_packager_running(client, "localhost", 8081, timeout=1.5)

        assert exc_info.value.timeout_name == "probe"
        assert exc_info.value.timeout_s == 1.5
