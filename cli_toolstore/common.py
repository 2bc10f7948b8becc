"""
Common utilities shared across cli_toolstore modules.
"""

from __future__ import annotations

import errno
import hashlib
import os
import re
import stat
import sys
import time
from pathlib import Path

from packaging import version as pkg_version


VERSION_RE = re.compile(r"\bv?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?)\b", re.IGNORECASE)


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log verbose message using structured logging.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose or os.environ.get("TOOLSTORE_DEBUG", "0") == "1":
        try:
            from .logging_config import get_logger
            get_logger().info(msg)
        except Exception:
            try:
                print(f"[cli_toolstore] {msg}", file=sys.stderr)
            except Exception:
                pass


def normalize_version(version: str) -> str:
    """Strip leading 'v' characters and surrounding whitespace.

    Args:
        version: Version string (e.g., "v1.2.3")

    Returns:
        Normalized version string (e.g., "1.2.3")
    """
    return version.strip().lstrip("v")


def extract_version_from_text(text: str) -> str | None:
    """Find the first semantic-version-looking token in free-form output."""
    match = VERSION_RE.search(text)
    if not match:
        return None
    found = normalize_version(match.group(1))
    return found or None


def version_sort_key(v: str):
    """Sort key ordering PEP 440 versions before unparseable strings."""
    try:
        return (0, pkg_version.parse(normalize_version(v)), v)
    except pkg_version.InvalidVersion:
        return (1, pkg_version.parse("0"), v)


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of a file, read in 8 KiB chunks."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def now_unix_secs() -> int:
    return int(time.time())


def truncate_for_log(text: str, max_chars: int) -> str:
    """Shorten text to max_chars, marking the cut with an ellipsis."""
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - 1, 0)] + "…"


def is_permission_denied(exc: BaseException) -> bool:
    """Walk the exception chain looking for an EACCES/EPERM OSError."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, PermissionError):
            return True
        if isinstance(current, OSError) and current.errno in (errno.EACCES, errno.EPERM):
            return True
        current = current.__cause__ or current.__context__
    return False


def command_candidates(name: str) -> list[str]:
    """Accepted executable basenames for a tool name.

    The name itself, plus the name with a trailing ``-cli``/``_cli`` removed.
    """
    out = {name}
    for suffix in ("-cli", "_cli"):
        if name.endswith(suffix) and len(name) > len(suffix):
            out.add(name[: -len(suffix)])
    return sorted(out)


def is_executable_file(path: Path) -> bool:
    try:
        st = path.stat()
    except OSError:
        return False
    if not stat.S_ISREG(st.st_mode):
        return False
    if os.name != "posix":
        return True
    return bool(st.st_mode & 0o111)


def remove_file_if_exists(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def collect_dir_names(root: Path) -> list[str]:
    """Names of the immediate subdirectories of root (empty if root is absent)."""
    if not root.exists():
        return []
    return [entry.name for entry in root.iterdir() if entry.is_dir()]
