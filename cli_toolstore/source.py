"""
Source resolution: turn a (name, version) into a local executable file.

Methods are tried in order (GitHub release asset, then the policy's cargo
fallback). Every method's failure is collected, except for an integrity
mismatch, which stops resolution immediately.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
import urllib.parse
from pathlib import Path
from typing import IO

from .common import (
    command_candidates,
    is_executable_file,
    normalize_version,
    sha256_file,
)
from .errors import (
    ExtractionFailure,
    IntegrityMismatch,
    InvalidSpec,
    NetworkFailure,
    PolicyNotFound,
    SourceResolutionError,
    ToolStoreError,
)
from .http_client import ReleaseApi, download_file, get_release_api
from .models import ToolRef
from .policy import ReleaseSource, find_policy, supported_names_csv

logger = logging.getLogger(__name__)

SHA256_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class PullSource:
    """
    A resolved executable inside a private temporary directory.

    Use as a context manager; the directory is removed on exit no matter
    how the block ends.
    """

    def __init__(self, path: Path, resolved_by: str, cleanup_root: Path | None = None):
        self.path = path
        self.resolved_by = resolved_by
        self.cleanup_root = cleanup_root

    def cleanup(self) -> None:
        if self.cleanup_root is not None:
            shutil.rmtree(self.cleanup_root, ignore_errors=True)
            self.cleanup_root = None

    def __enter__(self) -> PullSource:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


def parse_release_version(tag_name: str, tag_prefix: str) -> str:
    """
    Strip a policy tag prefix from a release tag.

    Falls back to generic normalization when the tag lacks the prefix.

    Raises:
        ToolStoreError: If no version remains
    """
    if tag_prefix and tag_name.startswith(tag_prefix):
        version = tag_name[len(tag_prefix):]
    elif not tag_prefix:
        version = tag_name
    else:
        version = normalize_version(tag_name)
    version = version.strip()
    if not version:
        raise ToolStoreError(f"latest release tag `{tag_name}` had no version")
    return version


def parse_sha256_digest(digest: str | None) -> str | None:
    """Parse a ``sha256:<64 hex>`` asset digest into lowercase hex."""
    if not digest:
        return None
    algo, sep, value = digest.strip().partition(":")
    if not sep or algo.strip().lower() != "sha256":
        return None
    value = value.strip()
    if not SHA256_HEX_RE.match(value):
        return None
    return value.lower()


def fetch_latest_version(release: ReleaseSource, api: ReleaseApi | None = None) -> str:
    api = api or get_release_api()
    data = api.fetch_release(release.project_label, release.owner, release.repo)
    return parse_release_version(str(data["tag_name"]), release.tag_prefix)


def resolve_requested_version(
    name: str,
    requested: str | None,
    api: ReleaseApi | None = None,
) -> str:
    """
    Normalize an explicit version, or look up the latest release.

    Raises:
        InvalidSpec: If an explicit version normalizes to empty
        PolicyNotFound: If latest resolution is needed but no policy exists
    """
    if requested is not None:
        version = normalize_version(requested)
        if not version:
            raise InvalidSpec("version must not be empty")
        return version

    policy = find_policy(name)
    if policy is None:
        raise PolicyNotFound(
            f"latest version resolution is not defined for `{name}`. "
            f"supported tools: {supported_names_csv()}"
        )
    if policy.release is None:
        raise PolicyNotFound(f"latest version resolution is not defined for `{name}`")
    return fetch_latest_version(policy.release, api)


def verify_sha256_file(path: Path, expected_hex: str) -> None:
    actual = sha256_file(path)
    if actual.lower() != expected_hex.lower():
        raise IntegrityMismatch(
            f"sha256 mismatch for {path}: expected {expected_hex}, got {actual}"
        )


def download_filename(url: str) -> str:
    parts = urllib.parse.urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise NetworkFailure(f"unsupported URL scheme `{parts.scheme}` in `{url}`")
    if not parts.netloc:
        raise NetworkFailure(f"invalid URL `{url}`: missing host")
    segments = [s for s in parts.path.split("/") if s]
    if not segments:
        raise NetworkFailure(f"URL path has no file name: `{url}`")
    return urllib.parse.unquote(segments[-1])


def safe_extract_tar(archive_path: Path, dest: Path) -> None:
    """
    Extract a gzip tarball, refusing members that escape dest.

    Raises:
        ExtractionFailure: On unreadable archives or path traversal
    """
    dest_real = os.path.realpath(dest)
    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = []
            for member in tar.getmembers():
                target = os.path.realpath(os.path.join(dest, member.name))
                if os.path.commonpath([dest_real, target]) != dest_real:
                    raise ExtractionFailure(
                        f"archive {archive_path.name} contains unsafe path `{member.name}`"
                    )
                if member.issym() or member.islnk():
                    continue
                members.append(member)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, members=members, filter="data")
            else:
                tar.extractall(dest, members=members)
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ExtractionFailure(f"extract archive {archive_path}: {e}") from e


def collect_files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file() and not p.is_symlink())


def select_executable_from_dir(tool_name: str, root: Path) -> Path:
    """
    Choose the tool's executable among extracted files.

    Name matches (see command_candidates) win; otherwise the only file with
    an executable bit is used.

    Raises:
        ExtractionFailure: If neither rule yields exactly one file
    """
    files = collect_files(root)
    if not files:
        raise ExtractionFailure("archive has no regular files")

    candidates = command_candidates(tool_name)
    named = [p for p in files if p.name in candidates]
    if named:
        return named[0]

    executables = [p for p in files if is_executable_file(p)]
    if len(executables) == 1:
        return executables[0]

    raise ExtractionFailure(
        f"cannot determine executable from archive for `{tool_name}`; "
        f"expected one of {candidates}"
    )


def download_release_asset(
    tool: ToolRef,
    release: ReleaseSource,
    api: ReleaseApi | None = None,
    progress_stream: IO[str] | None = None,
) -> PullSource:
    """
    Download and verify the release asset for tool.version.

    Raises:
        UnsupportedPlatform: If the running platform has no asset
        NetworkFailure: On metadata or download errors
        IntegrityMismatch: If the downloaded file does not match its digest
        ExtractionFailure: If the archive holds no resolvable executable
    """
    api = api or get_release_api()
    version = normalize_version(tool.version)
    expected_asset = release.asset_name(version)
    tag = release.tag_for(version)

    data = api.fetch_release(release.project_label, release.owner, release.repo, tag=tag)
    asset = next(
        (a for a in data.get("assets") or [] if a.get("name") == expected_asset),
        None,
    )
    if asset is None:
        raise ToolStoreError(
            f"release `{tag}` does not contain expected asset `{expected_asset}`"
        )
    expected_sha256 = parse_sha256_digest(asset.get("digest"))
    if expected_sha256 is None:
        raise ToolStoreError(f"release asset `{expected_asset}` missing valid sha256 digest")

    url = asset.get("browser_download_url")
    if not url:
        raise ToolStoreError(f"release asset `{expected_asset}` missing download url")
    root = Path(tempfile.mkdtemp(prefix="toolstore-download-"))
    source = PullSource(root, f"URL {url} (sha256={expected_sha256})", cleanup_root=root)
    try:
        asset_path = root / download_filename(url)
        download_file(
            url,
            asset_path,
            config=api.config,
            timeout=api.timeout,
            progress_stream=progress_stream,
        )
        try:
            verify_sha256_file(asset_path, expected_sha256)
        except IntegrityMismatch:
            asset_path.unlink(missing_ok=True)
            raise

        if release.naming.is_archive:
            unpack = root / "unpack"
            unpack.mkdir()
            safe_extract_tar(asset_path, unpack)
            source.path = select_executable_from_dir(tool.name, unpack)
        else:
            source.path = asset_path
        return source
    except BaseException:
        source.cleanup()
        raise


def install_from_cargo(tool: ToolRef, package: str) -> PullSource:
    """
    ``cargo install`` a pinned crate version into an isolated root.

    Raises:
        ToolStoreError: If cargo is missing, fails, or produces no executable
    """
    root = Path(tempfile.mkdtemp(prefix="toolstore-cargo-install-"))
    source = PullSource(root, f"cargo install {package}", cleanup_root=root)
    try:
        cmd = [
            "cargo", "install", "--locked",
            "--version", normalize_version(tool.version),
            package,
            "--root", str(root),
        ]
        logger.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as e:
            raise ToolStoreError("run `cargo install`: cargo not found in PATH") from e
        if result.returncode != 0:
            raise ToolStoreError(f"`cargo install` failed: {result.stderr.strip()}")

        bin_dir = root / "bin"
        for candidate in command_candidates(tool.name):
            path = bin_dir / candidate
            if is_executable_file(path):
                source.path = path
                return source

        files = collect_files(bin_dir) if bin_dir.exists() else []
        if len(files) == 1:
            source.path = files[0]
            return source
        raise ToolStoreError(f"could not determine installed executable in {bin_dir}")
    except BaseException:
        source.cleanup()
        raise


def resolve_install_source(
    tool: ToolRef,
    api: ReleaseApi | None = None,
    progress_stream: IO[str] | None = None,
) -> PullSource:
    """
    Materialize an executable for tool using its policy's methods in order.

    Raises:
        PolicyNotFound: If the tool has no built-in policy
        IntegrityMismatch: Immediately, without trying later methods
        SourceResolutionError: If every method failed
    """
    policy = find_policy(tool.name)
    if policy is None:
        raise PolicyNotFound(
            f"unsupported tool `{tool.name}`: no built-in source policy. "
            f"currently supported: {supported_names_csv()}"
        )

    attempts: list[tuple[str, str]] = []
    if policy.release is not None:
        try:
            return download_release_asset(tool, policy.release, api, progress_stream)
        except IntegrityMismatch:
            raise
        except ToolStoreError as e:
            logger.debug("github release failed for %s: %s", tool, e.message)
            attempts.append(("github release", e.message))

    if policy.cargo_fallback is not None:
        try:
            return install_from_cargo(tool, policy.cargo_fallback)
        except ToolStoreError as e:
            attempts.append(("cargo install", e.message))

    raise SourceResolutionError(tool.name, attempts)
