"""
Fetches debugger worker and application scripts from the packager.

All downloaded artifacts land in one storage directory shared by every
worker of a supervisor. Application bundles are stored under
content-addressed names so a superseded session and its replacement never
overwrite each other's files.
"""

import hashlib
import re
from pathlib import Path, PurePosixPath
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from ..log_config import get_logger
from .errors import RelayTimeoutError, ScriptDownloadFailedError
from .types import DownloadedScript

SOURCE_MAPPING_URL_RE = re.compile(r"^//[#@] ?sourceMappingURL=(\S+)[ \t]*$", re.MULTILINE)
VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


def parse_version(version: str) -> tuple[int, int, int] | None:
    match = VERSION_RE.search(version or "")
    if not match:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


class ScriptImporter:
    """Download scripts from the packager at host:port into sources_storage_path."""

    DEBUGGER_WORKER_FILENAME = "debuggerWorker.js"
    DEBUGGER_UI_PATH = "debugger-ui/"
    DEBUGGER_UI_MIN_VERSION = (0, 50, 0)
    # Metro in these releases emits bundles without a sourceMappingURL comment
    MISSING_SOURCE_MAP_VERSIONS = ((0, 54, 0), (0, 55, 0))
    HASH_LENGTH = 12

    def __init__(
        self,
        host: str,
        port: int,
        sources_storage_path: str | Path,
        http_client: httpx.AsyncClient,
        download_timeout: float = 60.0,
        rn_version: str | None = None,
    ):
        self.host = host
        self.port = port
        self.sources_storage_path = Path(sources_storage_path)
        self.http_client = http_client
        self.download_timeout = download_timeout
        self.rn_version = rn_version
        self.log = get_logger("script_importer", host=host, port=port)

    def prepare_debugger_worker_url(
        self, rn_version: str, debugger_worker_url_path: str | None = None
    ) -> str:
        """Return the debugger worker URL for the given React Native version.

        An explicit path (even the empty string) always wins. Otherwise the
        worker lives under debugger-ui/ from 0.50.0 on, and at the root before.
        """
        if debugger_worker_url_path is not None:
            prefix = debugger_worker_url_path
        else:
            version = parse_version(rn_version)
            if version is None or version >= self.DEBUGGER_UI_MIN_VERSION:
                prefix = self.DEBUGGER_UI_PATH
            else:
                prefix = ""
        return f"http://{self.host}:{self.port}/{prefix}{self.DEBUGGER_WORKER_FILENAME}"

    def packager_url(self, url: str) -> str:
        """Point url (absolute or relative) at the packager's host and port."""
        parts = urlsplit(url)
        path = parts.path or "/"
        if not path.startswith("/"):
            path = "/" + path
        return urlunsplit(("http", f"{self.host}:{self.port}", path, parts.query, ""))

    async def fetch_text(self, url: str) -> str:
        try:
            resp = await self.http_client.get(url, timeout=self.download_timeout)
        except httpx.TimeoutException as e:
            raise RelayTimeoutError(
                f"Download of {url} timed out after {self.download_timeout:.0f}s",
                timeout_name="download",
                timeout_s=self.download_timeout,
            ) from e
        except httpx.HTTPError as e:
            raise ScriptDownloadFailedError(f"Failed to download {url}: {e}", url=url) from e

        if not 200 <= resp.status_code < 300:
            raise ScriptDownloadFailedError(
                f"Failed to download {url}: HTTP {resp.status_code}",
                url=url,
                status_code=resp.status_code,
            )
        body = resp.text
        if not body.strip():
            raise ScriptDownloadFailedError(
                f"Failed to download {url}: empty response body",
                url=url,
                status_code=resp.status_code,
            )
        return body

    def write_script(self, filename: str, contents: str) -> Path:
        self.sources_storage_path.mkdir(parents=True, exist_ok=True)
        path = self.sources_storage_path / filename
        path.write_text(contents, encoding="utf-8")
        return path

    async def download(self, url: str, filename: str, inline: bool = False) -> DownloadedScript:
        """Fetch url and store it as filename in the storage directory."""
        contents = await self.fetch_text(url)
        filepath = self.write_script(filename, contents)
        self.log.debug("script.downloaded", url=url, filepath=str(filepath), size=len(contents))
        return DownloadedScript(filepath=filepath, contents=contents if inline else None)

    async def download_debugger_worker(
        self, rn_version: str, debugger_worker_url_path: str | None = None
    ) -> DownloadedScript:
        url = self.prepare_debugger_worker_url(rn_version, debugger_worker_url_path)
        self.log.info("script.debugger_worker_download", url=url)
        return await self.download(url, self.DEBUGGER_WORKER_FILENAME, inline=True)

    async def download_app_script(self, script_url: str) -> DownloadedScript:
        """Fetch an application bundle, localize its source map and store it."""
        url = self.packager_url(script_url)
        body = await self.fetch_text(url)

        if self._needs_source_map_comment(body):
            body = f"{body}\n//# sourceMappingURL={url.replace('bundle', 'map')}"

        filename = self._content_addressed_name(url, body)
        body = await self._localize_source_map(url, body, filename)

        filepath = self.write_script(filename, body)
        self.log.info("script.app_script_downloaded", url=url, filepath=str(filepath))
        return DownloadedScript(filepath=filepath, contents=body)

    def _needs_source_map_comment(self, body: str) -> bool:
        version = parse_version(self.rn_version or "")
        if version is None:
            return False
        low, high = self.MISSING_SOURCE_MAP_VERSIONS
        return low <= version < high and SOURCE_MAPPING_URL_RE.search(body) is None

    def _content_addressed_name(self, url: str, body: str) -> str:
        name = PurePosixPath(urlsplit(url).path).name or "bundle.js"
        digest = hashlib.sha256(body.encode("utf-8")).hexdigest()[: self.HASH_LENGTH]
        stem, dot, suffix = name.partition(".")
        if not dot:
            return f"{stem}.{digest}"
        return f"{stem}.{digest}.{suffix}"

    async def _localize_source_map(self, script_url: str, body: str, filename: str) -> str:
        matches = list(SOURCE_MAPPING_URL_RE.finditer(body))
        if not matches:
            return body
        match = matches[-1]
        map_ref = match.group(1)
        if map_ref.startswith("data:"):
            return body

        map_url = self.packager_url(urljoin(script_url, map_ref))
        try:
            downloaded = await self.download(map_url, f"{filename}.map")
        except (ScriptDownloadFailedError, RelayTimeoutError) as e:
            self.log.warn("script.source_map_error", url=map_url, exc=e)
            return body

        local_ref = downloaded.filepath.resolve().as_posix()
        start, end = match.span(1)
        return body[:start] + local_ref + body[end:]
