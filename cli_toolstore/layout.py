"""
Per-scope storage layout and the advisory exclusive lock.

Layout per scope::

    store/<name>/<version>/{<name>, manifest.json}
    current/<name>            one-line active version
    current/.tool.lock        lock file
    bin/<name>                symlink (or copy) of the active executable
"""

from __future__ import annotations

import contextlib
import enum
import errno
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

from .errors import LockContention, PermissionDenied, ToolStoreError
from .models import ToolRef

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]
    import msvcrt

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
LOCK_FILE = ".tool.lock"

GLOBAL_STORE_DIR = Path("/var/lib/toolstore/tools/store")
GLOBAL_CURRENT_DIR = Path("/var/lib/toolstore/tools/current")
GLOBAL_BIN_DIR = Path("/usr/local/bin")


class Scope(enum.Enum):
    GLOBAL = "global"
    USER = "user"

    @staticmethod
    def from_flags(user: bool) -> Scope:
        return Scope.USER if user else Scope.GLOBAL

    @property
    def label(self) -> str:
        return self.value


def scope_remediation(scope: Scope, command: str = "tool") -> str:
    """Advice shown when a scope's directories or lock are inaccessible."""
    if scope is Scope.GLOBAL:
        return (
            f"retry with `toolstore {command} --user ...` or run with elevated privileges"
        )
    return "check ownership and permissions of your XDG data/state/bin directories"


@dataclass(frozen=True)
class ToolHome:
    """Resolved directories for one scope."""
    scope: Scope
    store_dir: Path
    current_dir: Path
    bin_dir: Path

    @staticmethod
    def detect(scope: Scope) -> ToolHome:
        """
        Compute the directories for a scope.

        Global paths are fixed. User paths honor XDG_DATA_HOME, XDG_STATE_HOME
        and XDG_BIN_HOME, defaulting below $HOME.

        Raises:
            ToolStoreError: If HOME is unset for the user scope
        """
        if scope is Scope.GLOBAL:
            return ToolHome(scope, GLOBAL_STORE_DIR, GLOBAL_CURRENT_DIR, GLOBAL_BIN_DIR)

        home = os.environ.get("HOME")
        if not home:
            raise ToolStoreError("cannot resolve user paths: set `HOME`")
        home_path = Path(home)
        data_home = Path(os.environ.get("XDG_DATA_HOME") or home_path / ".local/share")
        state_home = Path(os.environ.get("XDG_STATE_HOME") or home_path / ".local/state")
        bin_home = Path(os.environ.get("XDG_BIN_HOME") or home_path / ".local/bin")
        return ToolHome(
            scope=scope,
            store_dir=data_home / "toolstore/tools/store",
            current_dir=state_home / "toolstore/tools/current",
            bin_dir=bin_home,
        )

    def ensure_layout(self, command: str = "tool") -> None:
        """
        Create store, current and bin directories.

        Raises:
            PermissionDenied: With scope-specific remediation
        """
        for label, path in (
            ("store", self.store_dir),
            ("current", self.current_dir),
            ("bin", self.bin_dir),
        ):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except PermissionError as e:
                raise PermissionDenied(
                    f"permission denied creating {label} directory: {path}",
                    remediation=scope_remediation(self.scope, command),
                ) from e
            except OSError as e:
                raise ToolStoreError(
                    f"failed to create {label} directory {path}: {e}"
                ) from e

    def name_dir(self, name: str) -> Path:
        return self.store_dir / name

    def version_dir(self, tool: ToolRef) -> Path:
        return self.store_dir / tool.name / tool.version

    def install_path(self, tool: ToolRef) -> Path:
        return self.version_dir(tool) / tool.name

    def manifest_path(self, tool: ToolRef) -> Path:
        return self.version_dir(tool) / MANIFEST_FILE

    def current_file(self, name: str) -> Path:
        return self.current_dir / name

    def bin_path(self, name: str) -> Path:
        return self.bin_dir / name

    def lock_file(self) -> Path:
        return self.current_dir / LOCK_FILE


def _lock_fd(handle: IO[str]) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
    else:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)


def _unlock_fd(handle: IO[str]) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    else:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


@contextlib.contextmanager
def tool_lock(home: ToolHome, command: str = "tool") -> Iterator[Path]:
    """
    Hold the scope's exclusive advisory lock for the duration of the block.

    The OS releases the lock when the descriptor closes, so an aborted
    process never leaves the scope locked.

    Raises:
        LockContention: If the lock file cannot be opened or locked
    """
    lock_path = home.lock_file()
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = lock_path.open("a+", encoding="utf-8")
    except OSError as e:
        raise LockContention(
            f"open lock file {lock_path}: {e}",
            remediation=scope_remediation(home.scope, command),
        ) from e

    with handle:
        try:
            _lock_fd(handle)
        except OSError as e:
            retry = e.errno in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EDEADLK)
            raise LockContention(
                f"acquire lock {lock_path}: {e}",
                retryable=retry,
                remediation=scope_remediation(home.scope, command),
            ) from e
        logger.debug("acquired %s", lock_path)
        try:
            yield lock_path
        finally:
            _unlock_fd(handle)
            logger.debug("released %s", lock_path)


@contextlib.contextmanager
def mutation_session(scope: Scope, command: str = "tool") -> Iterator[ToolHome]:
    """Detect the scope layout, create it, and hold its lock."""
    home = ToolHome.detect(scope)
    home.ensure_layout(command)
    with tool_lock(home, command):
        yield home
