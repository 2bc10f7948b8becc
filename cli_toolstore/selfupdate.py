"""
Self-update with backup, health check and automatic rollback.

The running binary is copied aside before the ordinary update flow runs.
The freshly activated binary must then report the intended version; if it
does not (or the update itself fails), the previous managed version is
reactivated, or the backup is copied back when there was none.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from . import __version__
from .common import extract_version_from_text, normalize_version, remove_file_if_exists
from .engine import (
    VERSION_PROBE_TIMEOUT_SECS,
    InstallAction,
    InstallResult,
    activate_tool,
    copy_executable,
    install,
    prune_non_active_versions,
    read_current_version,
)
from .errors import SelfUpdateHealthCheckFailed, ToolStoreError
from .http_client import ReleaseApi
from .layout import Scope, ToolHome, mutation_session
from .models import ToolRef
from .policy import SELF_TOOL_NAME
from .source import resolve_requested_version

logger = logging.getLogger(__name__)


def self_backup_path(home: ToolHome) -> Path:
    return home.current_dir / f"{SELF_TOOL_NAME}-self-backup-{os.getpid()}"


def create_self_backup(home: ToolHome) -> Path | None:
    """
    Copy bin/toolstore aside, preserving its mode.

    Returns:
        Backup path, or None when there is no binary to back up
    """
    binary = home.bin_path(SELF_TOOL_NAME)
    if not binary.is_file():
        return None
    backup = self_backup_path(home)
    shutil.copy2(binary, backup)
    logger.debug("backed up %s to %s", binary, backup)
    return backup


def cleanup_backup(backup: Path | None) -> None:
    if backup is None:
        return
    try:
        remove_file_if_exists(backup)
    except OSError as e:
        logger.warning("failed to remove self-update backup %s: %s", backup, e)


def verify_self_update(home: ToolHome, expected_version: str) -> str | None:
    """
    Run the activated binary's version probe.

    Returns:
        None on success, otherwise a description of the failure
    """
    binary = home.bin_path(SELF_TOOL_NAME)
    try:
        result = subprocess.run(
            [str(binary), "--version"],
            capture_output=True,
            text=True,
            timeout=VERSION_PROBE_TIMEOUT_SECS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"failed to run `{binary} --version`: {e}"
    if result.returncode != 0:
        return f"`{binary} --version` exited with status {result.returncode}"

    reported = extract_version_from_text(f"{result.stdout}\n{result.stderr}")
    if reported is None:
        return f"`{binary} --version` did not report a version"
    if normalize_version(reported) != normalize_version(expected_version):
        return f"expected version {expected_version}, binary reports {reported}"
    return None


def rollback_self_update(home: ToolHome, previous_version: str | None, backup: Path | None) -> bool:
    """
    Restore the pre-update self binary.

    Returns:
        True if a rollback target was restored
    """
    if previous_version is not None:
        previous = ToolRef(SELF_TOOL_NAME, previous_version)
        if home.install_path(previous).exists():
            activate_tool(home, previous)
            print(f"↩️  Rolled back to managed version {previous.image()}")
            return True

    if backup is not None and backup.exists():
        copy_executable(backup, home.bin_path(SELF_TOOL_NAME))
        remove_file_if_exists(home.current_file(SELF_TOOL_NAME))
        print(f"↩️  Rolled back to previous unmanaged {SELF_TOOL_NAME} binary")
        return True

    logger.warning("no rollback target available for %s", SELF_TOOL_NAME)
    return False


def update_self(
    scope: Scope,
    version: str | None = None,
    api: ReleaseApi | None = None,
) -> InstallResult:
    """
    Update the tool store itself under the scope lock.

    Raises:
        SelfUpdateHealthCheckFailed: If the update or its health check failed;
            ``rollback_applied`` tells whether the previous binary is back
        ToolStoreError: If resolution or backup fails before anything changed
    """
    with mutation_session(scope, "update") as home:
        target = resolve_requested_version(SELF_TOOL_NAME, version, api=api)
        previous = read_current_version(home, SELF_TOOL_NAME)
        try:
            backup = create_self_backup(home)
        except OSError as e:
            raise ToolStoreError(f"back up current {SELF_TOOL_NAME} binary: {e}") from e

        failure = None
        result = None
        try:
            result = install(home, f"{SELF_TOOL_NAME}:{target}", InstallAction.UPDATE, api=api)
            failure = verify_self_update(home, target)
        except ToolStoreError as e:
            failure = e.message
        except Exception as e:
            logger.debug("self-update install raised", exc_info=True)
            failure = str(e)

        if failure is not None:
            try:
                rolled_back = rollback_self_update(home, previous, backup)
            finally:
                cleanup_backup(backup)
            outcome = "rollback applied" if rolled_back else "no rollback target available"
            raise SelfUpdateHealthCheckFailed(
                f"self-update to {target} failed health check: {failure}; {outcome}",
                rollback_applied=rolled_back,
            )

        cleanup_backup(backup)
        removed, _ = prune_non_active_versions(home, result.tool)
        if removed:
            print(f"🧹 Removed old versions for `{SELF_TOOL_NAME}`: {', '.join(removed)}")
        print(f"✅ Self-update complete: {result.tool.image()}")
        return result


def check_self_update(version: str | None = None, api: ReleaseApi | None = None) -> bool:
    """
    Report whether the running version differs from the target.

    Returns:
        True if an update is available
    """
    target = resolve_requested_version(SELF_TOOL_NAME, version, api=api)
    label = "Requested" if version is not None else "Latest"
    print(f"Current {SELF_TOOL_NAME}: {__version__}")
    print(f"{label} {SELF_TOOL_NAME}: {target}")
    if normalize_version(__version__) == normalize_version(target):
        print(f"✅ {SELF_TOOL_NAME} is up-to-date")
        return False
    print(f"⬆️  Update available: {__version__} -> {target}")
    return True
