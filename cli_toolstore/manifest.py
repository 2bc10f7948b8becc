"""
Per-version provenance manifests and YAML sync manifests.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

from .common import normalize_version, now_unix_secs, sha256_file
from .errors import InvalidSpec, ToolStoreError
from .layout import ToolHome
from .models import ToolRef, ToolSpec

MANIFEST_SCHEMA_VERSION = 1
SOURCE_KIND_DOWNLOAD = "download"
SOURCE_KIND_ADOPTED = "adopted"
SOURCE_KIND_SYNTHESIZED = "synthesized"
SYNTHESIZED_DETAIL = "legacy install inferred from store layout"

DEFAULT_SYNC_MANIFEST = "toolstore.tools.yml"


@dataclass(frozen=True)
class InstallSource:
    """Where a store entry came from."""
    kind: str
    detail: str


@dataclass(frozen=True)
class ToolManifest:
    """
    Provenance record stored beside each installed executable.

    Attributes:
        schema_version: Manifest schema version (always 1)
        name: Canonical tool name
        version: Installed version
        installed_at_unix_secs: Install timestamp
        source_kind: download, adopted or synthesized
        source_detail: Free-form description of the source
        sha256: Digest of the installed file
        size_bytes: Size of the installed file
    """
    schema_version: int
    name: str
    version: str
    installed_at_unix_secs: int
    source_kind: str
    source_detail: str
    sha256: str
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolManifest:
        return cls(
            schema_version=int(data["schema_version"]),
            name=str(data["name"]),
            version=str(data["version"]),
            installed_at_unix_secs=int(data["installed_at_unix_secs"]),
            source_kind=str(data["source_kind"]),
            source_detail=str(data.get("source_detail", "")),
            sha256=str(data["sha256"]),
            size_bytes=int(data["size_bytes"]),
        )


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to a sibling temp file and rename it over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def write_manifest(home: ToolHome, tool: ToolRef, source: InstallSource) -> ToolManifest:
    """Hash the installed file and record its manifest."""
    install_path = home.install_path(tool)
    try:
        size = install_path.stat().st_size
    except OSError as e:
        raise ToolStoreError(f"stat installed executable {install_path}: {e}") from e

    manifest = ToolManifest(
        schema_version=MANIFEST_SCHEMA_VERSION,
        name=tool.name,
        version=tool.version,
        installed_at_unix_secs=now_unix_secs(),
        source_kind=source.kind,
        source_detail=source.detail,
        sha256=sha256_file(install_path),
        size_bytes=size,
    )
    atomic_write_text(
        home.manifest_path(tool),
        json.dumps(manifest.to_dict(), indent=2) + "\n",
    )
    return manifest


def read_manifest(home: ToolHome, tool: ToolRef) -> ToolManifest | None:
    path = home.manifest_path(tool)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return ToolManifest.from_dict(json.load(f))
    except FileNotFoundError:
        return None


def ensure_manifest(home: ToolHome, tool: ToolRef) -> None:
    """Synthesize a manifest for a version directory that lacks one."""
    if home.manifest_path(tool).exists():
        return
    write_manifest(home, tool, InstallSource(SOURCE_KIND_SYNTHESIZED, SYNTHESIZED_DETAIL))


def manifest_source_label(home: ToolHome, tool: ToolRef) -> str:
    """Source kind for listings: unknown, unreadable and invalid are reported as such."""
    path = home.manifest_path(tool)
    if not path.exists():
        return "unknown"
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError:
        return "unreadable"
    try:
        return ToolManifest.from_dict(json.loads(raw)).source_kind
    except (ValueError, KeyError, TypeError):
        return "invalid"


def load_sync_specs(file_path: Path) -> list[str]:
    """
    Read a YAML sync manifest (``tools: [...]``) into normalized specs.

    Names are canonicalized, versions normalized, and duplicates dropped
    while preserving the first occurrence's order.

    Raises:
        ToolStoreError: If the file is unreadable, invalid, or lists no tools
        InvalidSpec: If an entry is not a valid spec
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ToolStoreError(f"read sync manifest {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ToolStoreError(f"parse sync manifest {file_path}: {e}") from e

    tools = data.get("tools") if isinstance(data, dict) else None
    if not isinstance(tools, list) or not tools:
        raise ToolStoreError(
            f"sync manifest {file_path} has no tools; "
            "expected `tools: [codex, docker-compose]`"
        )

    specs: list[str] = []
    seen: set[str] = set()
    for raw in tools:
        text = str(raw).strip() if raw is not None else ""
        if not text:
            raise InvalidSpec(f"sync manifest {file_path} contains an empty tool spec")
        try:
            parsed = ToolSpec.parse(text).canonical()
        except InvalidSpec as e:
            raise InvalidSpec(f"invalid tool spec `{text}` in {file_path}: {e.message}") from e
        if parsed.version is not None:
            normalized = f"{parsed.name}:{normalize_version(parsed.version)}"
        else:
            normalized = parsed.name
        if normalized not in seen:
            seen.add(normalized)
            specs.append(normalized)
    return specs
