"""
HTTP access for release metadata and artifact downloads.

Requests go through urllib openers whose proxy settings come from the
configuration store first and the conventional environment variables
second. Nothing at this layer retries; a 403 from the release API marks
the API as blocked for the rest of the process.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import IO, Any

from . import __version__
from .config import Config, ProxyOverrides, load_config, resolve_github_token
from .common import truncate_for_log
from .errors import NetworkFailure, QuotaBlocked

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECS = 300
GITHUB_API_BASE = "https://api.github.com"
USER_AGENT = f"toolstore/{__version__}"
CHUNK_SIZE = 64 * 1024
PROXY_HINT = "if your network requires a proxy, set HTTPS_PROXY/HTTP_PROXY (and optional NO_PROXY)"
TOKEN_HINT = "set GITHUB_TOKEN for stable quota"

HTTPS_PROXY_ENV_KEYS = (
    "HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy", "HTTP_PROXY", "http_proxy",
)
HTTP_PROXY_ENV_KEYS = ("HTTP_PROXY", "http_proxy", "ALL_PROXY", "all_proxy")
NO_PROXY_ENV_KEYS = ("NO_PROXY", "no_proxy")


def proxy_env_keys_for_scheme(scheme: str) -> tuple[str, ...]:
    if scheme.lower() == "https":
        return HTTPS_PROXY_ENV_KEYS
    return HTTP_PROXY_ENV_KEYS


def first_env_value(names: tuple[str, ...]) -> tuple[str, str] | None:
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return name, value
    return None


def split_no_proxy_rules(value: str) -> list[str]:
    return [rule.strip() for rule in value.split(",") if rule.strip()]


def resolve_proxy(scheme: str, overrides: ProxyOverrides | None = None) -> str | None:
    """Pick the proxy URL for a scheme: config overrides, then environment."""
    if overrides is not None:
        if scheme.lower() == "https":
            ordered = (overrides.https_proxy, overrides.all_proxy, overrides.http_proxy)
        else:
            ordered = (overrides.http_proxy, overrides.all_proxy)
        for value in ordered:
            if value:
                return value
    found = first_env_value(proxy_env_keys_for_scheme(scheme))
    return found[1] if found else None


def no_proxy_rules(overrides: ProxyOverrides | None = None) -> list[str]:
    if overrides is not None and overrides.no_proxy:
        return split_no_proxy_rules(overrides.no_proxy)
    found = first_env_value(NO_PROXY_ENV_KEYS)
    return split_no_proxy_rules(found[1]) if found else []


def host_bypasses_proxy(host: str, rules: list[str]) -> bool:
    host = host.lower()
    for rule in rules:
        rule = rule.lower().split(":", 1)[0] if rule.count(":") == 1 else rule.lower()
        if rule == "*":
            return True
        bare = rule.lstrip(".")
        if host == bare or host.endswith("." + bare):
            return True
    return False


def build_opener(url: str, config: Config | None = None) -> urllib.request.OpenerDirector:
    """
    Build a urllib opener for url with an explicit proxy decision.

    An empty ProxyHandler is installed when no proxy applies so urllib does
    not fall back to its own environment lookup.
    """
    parts = urllib.parse.urlsplit(url)
    overrides = config.proxy if config is not None else None
    proxy = resolve_proxy(parts.scheme, overrides)
    if proxy and host_bypasses_proxy(parts.hostname or "", no_proxy_rules(overrides)):
        proxy = None
    handlers: dict[str, str] = {parts.scheme: proxy} if proxy else {}
    return urllib.request.build_opener(urllib.request.ProxyHandler(handlers))


def http_get(
    url: str,
    headers: dict[str, str] | None = None,
    timeout: float = HTTP_TIMEOUT_SECS,
    config: Config | None = None,
) -> tuple[int, bytes]:
    """Perform HTTP GET request.

    Args:
        url: URL to fetch
        headers: Optional HTTP headers
        timeout: Timeout in seconds
        config: Configuration providing proxy overrides

    Returns:
        Tuple of (status, body); non-2xx statuses are returned, not raised

    Raises:
        NetworkFailure: On transport errors
    """
    request_headers = {"User-Agent": USER_AGENT}
    if headers:
        request_headers.update(headers)
    req = urllib.request.Request(url, headers=request_headers)
    try:
        with build_opener(url, config).open(req, timeout=timeout) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as e:
        body = e.read() if e.fp is not None else b""
        return e.code, body
    except (urllib.error.URLError, OSError) as e:
        raise NetworkFailure(
            f"request {url} failed: {e}", retryable=True, remediation=PROXY_HINT
        ) from e


class ReleaseApi:
    """
    GitHub release API client.

    The ``blocked`` event is set on the first 403 and makes every later call
    fail fast with QuotaBlocked. It lives only as long as this object.
    """

    def __init__(
        self,
        token: str | None = None,
        config: Config | None = None,
        base_url: str = GITHUB_API_BASE,
        timeout: float = HTTP_TIMEOUT_SECS,
    ):
        self.token = token
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.blocked = threading.Event()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get_json(self, path: str, label: str) -> Any:
        """
        GET an API path and decode its JSON body.

        Raises:
            QuotaBlocked: On 403, or when an earlier call was blocked
            NetworkFailure: On transport errors, other non-2xx statuses or bad JSON
        """
        if self.blocked.is_set():
            raise QuotaBlocked(
                f"skipped {label} after GitHub API 403",
                status=403,
                remediation=TOKEN_HINT,
            )

        status, body = http_get(
            f"{self.base_url}{path}",
            headers=self._headers(),
            timeout=self.timeout,
            config=self.config,
        )
        text = body.decode("utf-8", errors="replace")
        if status == 403:
            self.blocked.set()
            raise QuotaBlocked(
                f"query {label} failed: status 403 (rate-limited or forbidden); "
                f"body {truncate_for_log(text, 200)}",
                status=403,
                remediation=TOKEN_HINT,
            )
        if not 200 <= status < 300:
            raise NetworkFailure(
                f"query {label} failed: status {status} body {truncate_for_log(text, 200)}",
                status=status,
                retryable=status in (408, 429) or 500 <= status <= 599,
            )
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise NetworkFailure(f"parse {label} JSON: {e}") from e

    def fetch_release(self, project_label: str, owner: str, repo: str, tag: str | None = None) -> dict:
        """Release metadata for a tag, or the latest release when tag is None."""
        if tag is None:
            path = f"/repos/{owner}/{repo}/releases/latest"
        else:
            path = f"/repos/{owner}/{repo}/releases/tags/{urllib.parse.quote(tag, safe='')}"
        data = self.get_json(path, f"{project_label} release metadata")
        if not isinstance(data, dict) or "tag_name" not in data:
            raise NetworkFailure(f"parse {project_label} release JSON: missing tag_name")
        return data

    def fetch_repo(self, owner: str, repo: str) -> dict:
        data = self.get_json(f"/repos/{owner}/{repo}", f"GitHub repo {owner}/{repo}")
        if not isinstance(data, dict):
            raise NetworkFailure(f"parse GitHub repo {owner}/{repo} JSON: not an object")
        return data


_release_api: ReleaseApi | None = None
_release_api_lock = threading.Lock()


def get_release_api() -> ReleaseApi:
    """Process-wide ReleaseApi built from the configuration store."""
    global _release_api
    with _release_api_lock:
        if _release_api is None:
            config = load_config()
            _release_api = ReleaseApi(
                token=resolve_github_token(config),
                config=config,
                timeout=config.preferences.http_timeout_seconds,
            )
        return _release_api


def reset_release_api(api: ReleaseApi | None = None) -> None:
    """Replace (or clear) the process-wide client."""
    global _release_api
    with _release_api_lock:
        _release_api = api


def format_bytes(num: float) -> str:
    units = ("B", "KiB", "MiB", "GiB", "TiB")
    value = max(float(num), 0.0)
    idx = 0
    while value >= 1024.0 and idx < len(units) - 1:
        value /= 1024.0
        idx += 1
    if idx == 0:
        return f"{value:.0f} {units[idx]}"
    return f"{value:.1f} {units[idx]}"


def render_download_progress(downloaded: int, total: int | None, elapsed: float) -> str:
    rate = downloaded / elapsed if elapsed > 0 else 0.0
    if total:
        pct = min(max(downloaded / total * 100.0, 0.0), 100.0)
        return (
            f"⬇️  Downloaded {format_bytes(downloaded)} / {format_bytes(total)} "
            f"({pct:.1f}%, {format_bytes(rate)}/s)"
        )
    return f"⬇️  Downloaded {format_bytes(downloaded)} ({format_bytes(rate)}/s)"


class DownloadProgress:
    """
    Throttled progress reporter.

    On a terminal a single line is refreshed with carriage returns; when the
    stream is redirected, each report is a plain line.
    """

    def __init__(self, total: int | None, stream: IO[str] | None = None, interval: float = 1.0):
        self.total = total
        self.stream = stream if stream is not None else sys.stderr
        self.interval = interval
        self.tty = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.downloaded = 0
        self.start = time.monotonic()
        self.last_report = self.start
        if self.tty:
            self._emit(final=False)

    def update(self, n: int) -> None:
        self.downloaded += n
        if time.monotonic() - self.last_report >= self.interval:
            self._emit(final=False)

    def finish(self) -> None:
        self._emit(final=True)

    def _emit(self, final: bool) -> None:
        line = render_download_progress(
            self.downloaded, self.total, time.monotonic() - self.start
        )
        if self.tty:
            self.stream.write(f"\r{line}\n" if final else f"\r{line}")
        else:
            self.stream.write(f"{line}\n")
        self.stream.flush()
        self.last_report = time.monotonic()


def download_file(
    url: str,
    dest: Path,
    config: Config | None = None,
    timeout: float = HTTP_TIMEOUT_SECS,
    progress_stream: IO[str] | None = None,
) -> int:
    """
    Stream url into dest, reporting progress.

    Returns:
        Number of bytes written

    Raises:
        NetworkFailure: On transport errors or non-2xx status
    """
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with build_opener(url, config).open(req, timeout=timeout) as response:
            length = response.headers.get("Content-Length")
            total = int(length) if length and length.strip().isdigit() else None
            progress = DownloadProgress(total, progress_stream)
            with open(dest, "wb") as out:
                for chunk in iter(lambda: response.read(CHUNK_SIZE), b""):
                    out.write(chunk)
                    progress.update(len(chunk))
            progress.finish()
            return progress.downloaded
    except urllib.error.HTTPError as e:
        raise NetworkFailure(
            f"download from `{url}` failed: status {e.code}", status=e.code
        ) from e
    except (urllib.error.URLError, OSError) as e:
        raise NetworkFailure(
            f"download from `{url}` failed: {e}", retryable=True, remediation=PROXY_HINT
        ) from e
