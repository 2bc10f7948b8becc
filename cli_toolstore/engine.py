"""
Install/activation engine.

A request moves through resolve → materialize → record → activate → prune.
Activation writes the bin entry first and the current pointer second; if
the pointer write fails the bin entry is restored before the error
propagates, so the two never disagree outside the failure window.

Callers must hold the scope lock (see layout.mutation_session).
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from .common import (
    collect_dir_names,
    command_candidates,
    extract_version_from_text,
    is_executable_file,
    normalize_version,
    remove_file_if_exists,
    version_sort_key,
)
from .errors import (
    ActivationFailure,
    InvalidSpec,
    StoreWriteFailure,
    SyncFailure,
    ToolStoreError,
)
from .http_client import ReleaseApi
from .layout import ToolHome
from .manifest import (
    SOURCE_KIND_ADOPTED,
    SOURCE_KIND_DOWNLOAD,
    InstallSource,
    atomic_write_text,
    ensure_manifest,
    load_sync_specs,
    write_manifest,
)
from .models import ToolRef, ToolSpec, validate_name
from .policy import ToolPolicy, find_policy, tool_policies
from .source import resolve_install_source, resolve_requested_version

logger = logging.getLogger(__name__)

VERSION_PROBE_TIMEOUT_SECS = 10


class InstallAction(enum.Enum):
    INSTALL = "install"
    UPDATE = "update"


@dataclass(frozen=True)
class AdoptionCandidate:
    """Unmanaged executable found on the bin path with a parsable version."""
    path: Path
    version: str


@dataclass(frozen=True)
class UnmanagedBinary:
    name: str
    version: str
    path: str

    def to_dict(self) -> dict:
        return {"name": self.name, "version": self.version, "path": self.path}


@dataclass(frozen=True)
class InstallResult:
    """
    Outcome of one install or update request.

    Attributes:
        tool: Resolved tool reference
        source_kind: How the store entry was created (None if it already existed)
        downloaded: Whether source resolution ran
        activated: Whether bin entry and pointer now name this version
        pruned: Versions removed after activation
        warnings: Non-fatal problems (e.g. prune failures)
    """
    tool: ToolRef
    source_kind: str | None
    downloaded: bool
    activated: bool
    pruned: tuple[str, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "tool": self.tool.image(),
            "source_kind": self.source_kind,
            "downloaded": self.downloaded,
            "activated": self.activated,
            "pruned": list(self.pruned),
            "warnings": list(self.warnings),
        }


# Current pointer

def read_current_version(home: ToolHome, name: str) -> str | None:
    path = home.current_file(name)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    version = content.strip()
    return version or None


def set_current_version(home: ToolHome, tool: ToolRef) -> None:
    atomic_write_text(home.current_file(tool.name), f"{tool.version}\n")


# Executable placement

def copy_executable(src: Path, dst: Path) -> None:
    """Copy src over dst atomically, adding execute bits to src's mode."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(f".{dst.name}.tmp-{os.getpid()}")
    try:
        shutil.copyfile(src, tmp)
        os.chmod(tmp, (src.stat().st_mode & 0o7777) | 0o111)
        os.replace(tmp, dst)
    except BaseException:
        remove_file_if_exists(tmp)
        raise


def link_executable(src: Path, dst: Path) -> None:
    """Point dst at src with a symlink swapped in atomically."""
    if os.name != "posix":
        raise OSError("symlink activation is not supported on this platform")
    dst.parent.mkdir(parents=True, exist_ok=True)
    target = src.resolve()
    tmp = dst.with_name(f".{dst.name}.tmp-link-{os.getpid()}")
    remove_file_if_exists(tmp)
    os.symlink(target, tmp)
    try:
        os.replace(tmp, dst)
    except BaseException:
        remove_file_if_exists(tmp)
        raise


def sync_bin_entry(home: ToolHome, tool: ToolRef) -> None:
    """Make bin/<name> reference the store executable (symlink, else copy)."""
    src = home.install_path(tool)
    if not src.exists():
        raise ToolStoreError(f"tool version not installed: {tool.image()}")
    dst = home.bin_path(tool.name)
    try:
        link_executable(src, dst)
    except OSError as link_err:
        logger.debug("symlink failed for %s (%s); copying instead", dst, link_err)
        try:
            copy_executable(src, dst)
        except OSError as e:
            raise ActivationFailure(
                f"activate {tool.image()} via copy fallback after link failed: {link_err}; {e}"
            ) from e


def restore_bin_entry(home: ToolHome, name: str, previous_version: str | None) -> None:
    if previous_version is not None:
        previous = ToolRef(name, previous_version)
        if home.install_path(previous).exists():
            sync_bin_entry(home, previous)
            return
    remove_file_if_exists(home.bin_path(name))


def activate_tool(home: ToolHome, tool: ToolRef) -> None:
    """
    Activate an installed version: bin entry first, then the pointer.

    Raises:
        ActivationFailure: If either write fails; the previous bin entry is
            restored (or removed if there was none) before raising
    """
    previous = read_current_version(home, tool.name)
    sync_bin_entry(home, tool)

    try:
        set_current_version(home, tool)
    except Exception as err:
        try:
            restore_bin_entry(home, tool.name, previous)
        except Exception as restore_err:
            raise ActivationFailure(
                f"persist active version for {tool.image()}: {err}; "
                f"rollback bin entry failed: {restore_err}"
            ) from err
        raise ActivationFailure(
            f"persist active version for {tool.image()}: {err}"
        ) from err


# Adoption

def probe_binary_version(path: Path) -> str | None:
    """Run ``<path> --version`` and parse the first semver-looking token."""
    try:
        result = subprocess.run(
            [str(path), "--version"],
            capture_output=True,
            text=True,
            timeout=VERSION_PROBE_TIMEOUT_SECS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return extract_version_from_text(f"{result.stdout}\n{result.stderr}")


def is_name_managed(home: ToolHome, name: str) -> bool:
    return bool(collect_dir_names(home.name_dir(name)))


def is_policy_managed(home: ToolHome, policy: ToolPolicy) -> bool:
    return any(is_name_managed(home, name) for name in policy.supported_names())


def find_existing_executable(home: ToolHome, name: str) -> Path | None:
    for candidate in command_candidates(name):
        path = home.bin_path(candidate)
        if is_executable_file(path):
            return path
    return None


def find_existing_executable_for_name(home: ToolHome, name: str) -> Path | None:
    policy = find_policy(name)
    names = policy.supported_names() if policy else [name]
    for supported in names:
        path = find_existing_executable(home, supported)
        if path is not None:
            return path
    return None


def detect_adoption_candidate(home: ToolHome, spec: ToolSpec) -> AdoptionCandidate | None:
    """
    Find an unmanaged executable to adopt for a plain, unversioned install.

    Skipped when the name (or any alias) already has store entries.
    """
    if spec.version is not None:
        return None
    policy = find_policy(spec.name)
    if policy is not None and is_policy_managed(home, policy):
        return None
    if is_name_managed(home, spec.name):
        return None

    path = find_existing_executable_for_name(home, spec.name)
    if path is None:
        return None
    version = probe_binary_version(path)
    if version is None:
        return None
    logger.debug("adoption candidate for %s: %s (%s)", spec.name, path, version)
    return AdoptionCandidate(path=path, version=version)


def collect_unmanaged_binaries(home: ToolHome) -> list[UnmanagedBinary]:
    out = []
    for policy in tool_policies():
        if is_policy_managed(home, policy):
            continue
        path = find_existing_executable_for_name(home, policy.canonical_name)
        if path is None:
            continue
        out.append(UnmanagedBinary(
            name=policy.canonical_name,
            version=probe_binary_version(path) or "unknown",
            path=str(path),
        ))
    return sorted(out, key=lambda b: b.name)


# Install / update

def discard_version_dir(home: ToolHome, tool: ToolRef) -> None:
    """Remove a half-written version directory (and an emptied name directory)."""
    try:
        shutil.rmtree(home.version_dir(tool))
        name_dir = home.name_dir(tool.name)
        if not any(name_dir.iterdir()):
            name_dir.rmdir()
    except OSError as e:
        logger.warning("could not remove incomplete install %s: %s", tool.image(), e)


def install(
    home: ToolHome,
    spec: str,
    action: InstallAction = InstallAction.INSTALL,
    prune_after_update: bool = False,
    api: ReleaseApi | None = None,
    progress_stream: IO[str] | None = None,
) -> InstallResult:
    """
    Install or update one tool.

    Args:
        home: Scope layout (lock must be held)
        spec: ``name[:version]``
        action: INSTALL activates only when nothing is active; UPDATE always activates
        prune_after_update: Remove other versions after an update activates
        api: Release API client (process-wide client by default)
        progress_stream: Where download progress is written

    Returns:
        InstallResult describing what happened

    Raises:
        ToolStoreError: Any resolution, download, integrity or activation failure
    """
    requested = ToolSpec.parse(spec).canonical()
    adoption = None
    if action is InstallAction.INSTALL:
        adoption = detect_adoption_candidate(home, requested)

    if requested.version is not None:
        version = normalize_version(requested.version)
        if not version:
            raise InvalidSpec("version must not be empty")
    elif adoption is not None:
        version = adoption.version
    else:
        if action is InstallAction.UPDATE:
            print(f"🔎 Resolving latest release for `{requested.name}`...")
        version = resolve_requested_version(requested.name, None, api=api)

    tool = requested.resolve(version)
    previous = read_current_version(home, tool.name)
    dst = home.install_path(tool)
    already_installed = dst.exists()

    if action is InstallAction.UPDATE:
        if previous is not None and already_installed and (
            normalize_version(previous) == normalize_version(tool.version)
        ):
            print(f"✅ `{tool.name}` is already up-to-date at {tool.version}")
        elif previous is not None:
            print(f"⬆️  Updating `{tool.name}`: {previous} -> {tool.version}")
        else:
            print(f"⬆️  Updating `{tool.name}` to {tool.version}")

    source_kind = None
    downloaded = False
    if not already_installed:
        version_dir = home.version_dir(tool)
        created_dir = not version_dir.exists()
        version_dir.mkdir(parents=True, exist_ok=True)
        try:
            if adoption is not None and adoption.version == tool.version:
                copy_executable(adoption.path, dst)
                source = InstallSource(SOURCE_KIND_ADOPTED, f"existing binary {adoption.path}")
            else:
                print(f"⬇️  Downloading `{tool.name}` {tool.version} ...")
                with resolve_install_source(tool, api=api, progress_stream=progress_stream) as pulled:
                    copy_executable(pulled.path, dst)
                    source = InstallSource(SOURCE_KIND_DOWNLOAD, pulled.resolved_by)
                downloaded = True
            write_manifest(home, tool, source)
        except OSError as e:
            if created_dir:
                discard_version_dir(home, tool)
            raise StoreWriteFailure(f"install {tool.image()} into store: {e}") from e
        except BaseException:
            if created_dir:
                discard_version_dir(home, tool)
            raise
        source_kind = source.kind
        print(f"📥 Installed {tool.image()} from {source.detail}")
    else:
        ensure_manifest(home, tool)
        print(f"📦 Already installed: {tool.image()}")

    activated = False
    pruned: list[str] = []
    warnings: list[str] = []
    if action is InstallAction.UPDATE or previous is None:
        activate_tool(home, tool)
        activated = True
        print(f"✅ Active version set: {tool.image()} (bin: {home.bin_path(tool.name)})")
        if action is InstallAction.UPDATE and prune_after_update:
            pruned, warnings = prune_non_active_versions(home, tool)
            if pruned:
                print(f"🧹 Removed old versions for `{tool.name}`: {', '.join(pruned)}")
    elif not already_installed:
        print(f"ℹ️  Run `toolstore tool use {tool.image()}` to activate it.")

    return InstallResult(
        tool=tool,
        source_kind=source_kind,
        downloaded=downloaded,
        activated=activated,
        pruned=tuple(pruned),
        warnings=tuple(warnings),
    )


def prune_non_active_versions(home: ToolHome, active: ToolRef) -> tuple[list[str], list[str]]:
    """
    Remove every version directory of active.name except active.version.

    Returns:
        Tuple of (removed versions, warnings for versions that could not be removed)
    """
    active_version = normalize_version(active.version)
    removed: list[str] = []
    warnings: list[str] = []
    for version in collect_dir_names(home.name_dir(active.name)):
        if normalize_version(version) == active_version:
            continue
        stale_dir = home.version_dir(ToolRef(active.name, version))
        try:
            shutil.rmtree(stale_dir)
            removed.append(version)
        except OSError as e:
            message = f"failed to remove stale version {stale_dir}: {e}"
            logger.warning(message)
            warnings.append(message)
    removed.sort(key=version_sort_key)
    return removed, warnings


# Use / uninstall / sync

def use_tool(home: ToolHome, image: str) -> ToolRef:
    """Activate an already-installed ``name:version`` without downloading."""
    tool = ToolRef.parse(image).canonical()
    if not home.install_path(tool).exists():
        raise ToolStoreError(f"tool version not installed: {tool.image()}")
    activate_tool(home, tool)
    print(f"✅ Using {tool.image()} (bin: {home.bin_path(tool.name)})")
    return tool


def uninstall(home: ToolHome, spec: str) -> None:
    requested = ToolSpec.parse(spec).canonical()
    if requested.version is not None:
        uninstall_version(home, ToolRef(requested.name, normalize_version(requested.version)))
    else:
        uninstall_all_versions(home, requested.name)


def uninstall_version(home: ToolHome, tool: ToolRef) -> None:
    version_dir = home.version_dir(tool)
    if not version_dir.exists():
        print(f"🗑  Not installed: {tool.image()}")
        return

    was_current = read_current_version(home, tool.name) == tool.version
    shutil.rmtree(version_dir)

    name_dir = home.name_dir(tool.name)
    if not collect_dir_names(name_dir):
        try:
            name_dir.rmdir()
        except OSError:
            logger.debug("left non-empty %s in place", name_dir)

    if was_current:
        remove_file_if_exists(home.current_file(tool.name))
        remove_file_if_exists(home.bin_path(tool.name))
        print(f"🗑  Removed {tool.image()} and cleared active version")
    else:
        print(f"🗑  Removed {tool.image()}")


def uninstall_all_versions(home: ToolHome, name: str) -> None:
    validate_name(name)
    name_dir = home.name_dir(name)
    if not name_dir.exists():
        print(f"🗑  Not installed: {name}")
        return

    count = len(collect_dir_names(name_dir))
    shutil.rmtree(name_dir)
    remove_file_if_exists(home.current_file(name))
    remove_file_if_exists(home.bin_path(name))
    print(f"🗑  Removed {name} ({count} version(s)) and cleared active entry")


def sync_manifest(
    home: ToolHome,
    file_path: Path,
    api: ReleaseApi | None = None,
    progress_stream: IO[str] | None = None,
) -> list[InstallResult]:
    """
    Update (with prune) every tool listed in a sync manifest.

    Individual failures do not stop the run; they are raised together at
    the end as a SyncFailure.
    """
    specs = load_sync_specs(file_path)
    print(f"🔄 Syncing {len(specs)} tool(s) from {file_path}")

    results: list[InstallResult] = []
    failures: list[str] = []
    for idx, spec in enumerate(specs, start=1):
        print(f"➡️  [{idx}/{len(specs)}] {spec}")
        try:
            results.append(install(
                home, spec, InstallAction.UPDATE,
                prune_after_update=True, api=api, progress_stream=progress_stream,
            ))
        except ToolStoreError as e:
            logger.debug("sync of %s failed: %s", spec, e.message)
            failures.append(f"{spec}: {e.message}")
        except Exception as e:
            logger.debug("sync of %s failed unexpectedly", spec, exc_info=True)
            failures.append(f"{spec}: {e}")

    if failures:
        raise SyncFailure(failures)
    print(f"✅ Sync complete: {len(specs)} tool(s) are up-to-date")
    return results
