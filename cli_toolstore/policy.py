"""
Built-in source policies for managed tools.

The registry is a static, immutable table. Each policy names a canonical
tool, its aliases, and how to obtain a release artifact for the running
platform. Platform naming is expressed as one of a small set of named
strategies rather than per-tool functions.
"""

from __future__ import annotations

import platform
from dataclasses import dataclass

from .errors import UnsupportedPlatform


SELF_TOOL_NAME = "toolstore"
SELF_GITHUB_OWNER = "toolstore-dev"
SELF_GITHUB_REPO = "toolstore"

RELEASE_SOURCE_LABEL = "GitHub Release (SHA-256 verified)"


@dataclass(frozen=True)
class Platform:
    """Normalized OS/architecture pair (os in linux/macos/windows)."""
    os: str
    arch: str

    def label(self) -> str:
        return f"{self.arch}-{self.os}"


def current_platform() -> Platform:
    """Detect the running platform using the same names as release tables."""
    system = platform.system().lower()
    os_name = {"darwin": "macos"}.get(system, system)
    machine = platform.machine().lower()
    arch = {"amd64": "x86_64", "x64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    return Platform(os=os_name, arch=arch)


PlatformTable = tuple[tuple[tuple[str, str], str], ...]

MUSL_AND_APPLE: PlatformTable = (
    (("linux", "x86_64"), "x86_64-unknown-linux-musl"),
    (("linux", "aarch64"), "aarch64-unknown-linux-musl"),
    (("macos", "x86_64"), "x86_64-apple-darwin"),
    (("macos", "aarch64"), "aarch64-apple-darwin"),
)


def _without(table: PlatformTable, *keys: tuple[str, str]) -> PlatformTable:
    return tuple(entry for entry in table if entry[0] not in keys)


@dataclass(frozen=True)
class AssetNaming:
    """
    Base naming strategy: fill ``template`` with the version and the
    platform-specific target string.

    Attributes:
        label: Project label used in error messages
        template: Format string with ``{version}`` and ``{target}`` fields
        targets: Pairs of ((os, arch), target) this artifact exists for
    """
    label: str
    template: str
    targets: PlatformTable

    def target_for(self, plat: Platform) -> str:
        for (os_name, arch), target in self.targets:
            if (os_name, arch) == (plat.os, plat.arch):
                return target
        raise UnsupportedPlatform(
            f"unsupported platform for {self.label} release asset: {plat.label()}"
        )

    def asset_name(self, version: str, plat: Platform | None = None) -> str:
        target = self.target_for(plat or current_platform())
        return self.template.format(version=version, target=target)

    @property
    def is_archive(self) -> bool:
        return False


@dataclass(frozen=True)
class TargetTripleArchive(AssetNaming):
    """Gzip tarball named after a Rust-style target triple."""

    @property
    def is_archive(self) -> bool:
        return True


@dataclass(frozen=True)
class PlainBinary(AssetNaming):
    """Bare executable published directly as a release asset."""


@dataclass(frozen=True)
class ReleaseSource:
    """
    GitHub release descriptor.

    Attributes:
        project_label: Human-readable project name for messages
        owner: Repository owner
        repo: Repository name
        tag_prefix: Prefix stripped from release tags (e.g. "v", "rust-v")
        naming: Platform naming strategy for the expected asset
    """
    project_label: str
    owner: str
    repo: str
    tag_prefix: str
    naming: AssetNaming

    def asset_name(self, version: str, plat: Platform | None = None) -> str:
        return self.naming.asset_name(version, plat)

    def tag_for(self, version: str) -> str:
        return f"{self.tag_prefix}{version}"


@dataclass(frozen=True)
class ToolPolicy:
    """
    Source policy for one managed tool.

    Attributes:
        canonical_name: Name used for store directories and bin entries
        aliases: Alternative names accepted on input
        source_label: Human-readable description of where the tool comes from
        release: GitHub release descriptor, if any
        cargo_fallback: Crate to ``cargo install`` when the release path fails
    """
    canonical_name: str
    aliases: tuple[str, ...] = ()
    source_label: str = RELEASE_SOURCE_LABEL
    release: ReleaseSource | None = None
    cargo_fallback: str | None = None

    def matches(self, name: str) -> bool:
        return name == self.canonical_name or name in self.aliases

    def supported_names(self) -> list[str]:
        return [self.canonical_name, *self.aliases]

    def to_dict(self) -> dict:
        return {
            "tool": self.canonical_name,
            "aliases": list(self.aliases),
            "sources": self.source_label,
        }


TOOL_POLICIES: tuple[ToolPolicy, ...] = (
    ToolPolicy(
        canonical_name=SELF_TOOL_NAME,
        release=ReleaseSource(
            project_label=SELF_TOOL_NAME,
            owner=SELF_GITHUB_OWNER,
            repo=SELF_GITHUB_REPO,
            tag_prefix="",
            naming=TargetTripleArchive(
                label=SELF_TOOL_NAME,
                template="toolstore-{version}-{target}.tar.gz",
                targets=_without(MUSL_AND_APPLE, ("macos", "x86_64")),
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="codex",
        aliases=("codex-cli",),
        source_label=f"{RELEASE_SOURCE_LABEL}, cargo install fallback",
        release=ReleaseSource(
            project_label="codex",
            owner="openai",
            repo="codex",
            tag_prefix="rust-v",
            naming=TargetTripleArchive(
                label="codex",
                template="codex-{target}.tar.gz",
                targets=MUSL_AND_APPLE,
            ),
        ),
        cargo_fallback="codex-cli",
    ),
    ToolPolicy(
        canonical_name="docker-compose",
        release=ReleaseSource(
            project_label="docker-compose",
            owner="docker",
            repo="compose",
            tag_prefix="v",
            naming=PlainBinary(
                label="docker-compose",
                template="docker-compose-{target}",
                targets=(
                    (("linux", "x86_64"), "linux-x86_64"),
                    (("linux", "aarch64"), "linux-aarch64"),
                    (("macos", "x86_64"), "darwin-x86_64"),
                    (("macos", "aarch64"), "darwin-aarch64"),
                    (("windows", "x86_64"), "windows-x86_64.exe"),
                    (("windows", "aarch64"), "windows-aarch64.exe"),
                ),
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="rg",
        aliases=("ripgrep",),
        release=ReleaseSource(
            project_label="ripgrep",
            owner="BurntSushi",
            repo="ripgrep",
            tag_prefix="",
            naming=TargetTripleArchive(
                label="ripgrep",
                template="ripgrep-{version}-{target}.tar.gz",
                targets=(
                    (("linux", "x86_64"), "x86_64-unknown-linux-musl"),
                    (("linux", "aarch64"), "aarch64-unknown-linux-gnu"),
                    (("macos", "x86_64"), "x86_64-apple-darwin"),
                    (("macos", "aarch64"), "aarch64-apple-darwin"),
                ),
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="fd",
        aliases=("fdfind",),
        release=ReleaseSource(
            project_label="fd",
            owner="sharkdp",
            repo="fd",
            tag_prefix="v",
            naming=TargetTripleArchive(
                label="fd",
                template="fd-v{version}-{target}.tar.gz",
                targets=MUSL_AND_APPLE,
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="tcping",
        aliases=("tcping-rs",),
        release=ReleaseSource(
            project_label="tcping-rs",
            owner="lvillis",
            repo="tcping-rs",
            tag_prefix="",
            naming=TargetTripleArchive(
                label="tcping-rs",
                template="tcping-{version}-{target}.tar.gz",
                targets=_without(MUSL_AND_APPLE, ("macos", "x86_64")),
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="dust",
        release=ReleaseSource(
            project_label="dust",
            owner="bootandy",
            repo="dust",
            tag_prefix="v",
            naming=TargetTripleArchive(
                label="dust",
                template="dust-v{version}-{target}.tar.gz",
                targets=_without(MUSL_AND_APPLE, ("macos", "aarch64")),
            ),
        ),
    ),
    ToolPolicy(
        canonical_name="just",
        release=ReleaseSource(
            project_label="just",
            owner="casey",
            repo="just",
            tag_prefix="",
            naming=TargetTripleArchive(
                label="just",
                template="just-{version}-{target}.tar.gz",
                targets=MUSL_AND_APPLE,
            ),
        ),
    ),
)


def tool_policies() -> tuple[ToolPolicy, ...]:
    return TOOL_POLICIES


def find_policy(name: str) -> ToolPolicy | None:
    """Look up a policy by canonical name or alias."""
    for policy in TOOL_POLICIES:
        if policy.matches(name):
            return policy
    return None


def canonicalize(name: str) -> str:
    """Map an alias to its canonical tool name; unknown names map to themselves."""
    policy = find_policy(name)
    return policy.canonical_name if policy else name


def supported_names_csv() -> str:
    names: list[str] = []
    for policy in TOOL_POLICIES:
        names.extend(policy.supported_names())
    return ", ".join(names)
