"""
Path resolution query used by collaborators that launch tools.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from .common import is_executable_file
from .engine import read_current_version
from .errors import CorruptActiveState, ToolNotActive, ToolStoreError
from .layout import Scope, ToolHome
from .models import ToolRef
from .policy import canonicalize


def managed_executable(home: ToolHome, name: str) -> Path | None:
    """
    Store executable named by the scope's current pointer.

    Raises:
        CorruptActiveState: If the pointer names a version whose executable is missing
    """
    version = read_current_version(home, name)
    if version is None:
        return None
    path = home.install_path(ToolRef(name, version))
    if not is_executable_file(path):
        raise CorruptActiveState(
            f"active version {name}:{version} points to missing executable {path}",
            remediation=f"repair with `toolstore tool update {name}`",
        )
    return path


def resolve_executable_path(name: str) -> Path:
    """
    Absolute path of the executable to run for name.

    Checks the user scope pointer, then the global pointer, then PATH.

    Raises:
        CorruptActiveState: If a pointer exists but its executable is missing
        ToolNotActive: If nothing provides the tool
    """
    canonical = canonicalize(name)
    for scope in (Scope.USER, Scope.GLOBAL):
        try:
            home = ToolHome.detect(scope)
        except ToolStoreError:
            continue
        path = managed_executable(home, canonical)
        if path is not None:
            return path

    found = shutil.which(name) or shutil.which(canonical)
    if found:
        return Path(found)
    raise ToolNotActive(
        f"`{name}` is not installed or active",
        remediation=f"install it with `toolstore tool install {canonical}`",
    )
