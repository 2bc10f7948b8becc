"""
Tool spec and tool reference value types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

from .common import normalize_version
from .errors import InvalidSpec
from .policy import canonicalize


NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def validate_name(name: str) -> None:
    """
    Reject names that are empty, contain path separators, or use
    characters outside ``[A-Za-z0-9._-]``.

    Raises:
        InvalidSpec: If the name is not acceptable
    """
    if not name.strip():
        raise InvalidSpec("tool name must not be empty")
    if "/" in name or "\\" in name:
        raise InvalidSpec(f"tool name `{name}` must not contain path separators")
    if not NAME_RE.match(name) or name in (".", ".."):
        raise InvalidSpec(f"tool name `{name}` contains unsupported characters")


def validate_version(version: str) -> None:
    """Versions become directory names, so path components are rejected."""
    if version in (".", "..") or "/" in version or "\\" in version:
        raise InvalidSpec(f"version `{version}` is not a valid directory name")
    if any(c.isspace() for c in version):
        raise InvalidSpec(f"version `{version}` must not contain whitespace")


@dataclass(frozen=True)
class ToolRef:
    """Fully resolved (name, version) pair."""
    name: str
    version: str

    @staticmethod
    def parse(text: str) -> ToolRef:
        """Parse ``name:version``; both parts are required."""
        if ":" not in text:
            raise InvalidSpec(f"invalid tool ref `{text}`: expected `name:version`")
        name, version = text.split(":", 1)
        name = name.strip()
        validate_name(name)
        version = normalize_version(version)
        if not version:
            raise InvalidSpec(f"invalid tool ref `{text}`: version must not be empty")
        validate_version(version)
        return ToolRef(name=name, version=version)

    def canonical(self) -> ToolRef:
        return replace(self, name=canonicalize(self.name))

    def image(self) -> str:
        return f"{self.name}:{self.version}"

    def __str__(self) -> str:
        return self.image()


@dataclass(frozen=True)
class ToolSpec:
    """Requested tool with an optional version (``name[:version]``)."""
    name: str
    version: str | None = None

    @staticmethod
    def parse(text: str) -> ToolSpec:
        trimmed = text.strip()
        if not trimmed:
            raise InvalidSpec("tool spec must not be empty")
        if ":" in trimmed:
            name, version = trimmed.split(":", 1)
        else:
            name, version = trimmed, None
        name = name.strip()
        validate_name(name)
        if version is not None:
            version = version.strip() or None
        if version is not None:
            validate_version(normalize_version(version) or version)
        return ToolSpec(name=name, version=version)

    def canonical(self) -> ToolSpec:
        return replace(self, name=canonicalize(self.name))

    def resolve(self, version: str) -> ToolRef:
        return ToolRef(name=self.name, version=version)

    def __str__(self) -> str:
        return f"{self.name}:{self.version}" if self.version else self.name
