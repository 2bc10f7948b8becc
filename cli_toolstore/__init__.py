"""
cli-toolstore - Versioned tool store and activation engine.

Core Modules:
- Policy Registry: built-in tool source policies and alias canonicalization
- Storage Layout: per-scope store/current/bin directories and the scope lock
- Source Resolution: release asset download, digest verification, cargo fallback
- Engine: install, activate, prune, use, uninstall and sync
- Self-Update: backup, health check and rollback around the engine
- Update Checker: TTL-cached concurrent latest-release lookups and listing
"""

__version__ = "0.1.0"

from .errors import (
    ToolStoreError,
    InvalidSpec,
    UnsupportedPlatform,
    PolicyNotFound,
    NetworkFailure,
    QuotaBlocked,
    IntegrityMismatch,
    ExtractionFailure,
    LockContention,
    PermissionDenied,
    ActivationFailure,
    SelfUpdateHealthCheckFailed,
    SourceResolutionError,
    SyncFailure,
    CorruptActiveState,
    ToolNotActive,
)
from .policy import ToolPolicy, ReleaseSource, find_policy, canonicalize, tool_policies, supported_names_csv
from .models import ToolRef, ToolSpec
from .layout import Scope, ToolHome, tool_lock, mutation_session
from .config import Config, ProxyOverrides, Preferences, load_config, resolve_github_token
from .manifest import ToolManifest, read_manifest, load_sync_specs
from .source import PullSource, resolve_install_source, resolve_requested_version
from .engine import (
    InstallAction,
    InstallResult,
    install,
    activate_tool,
    use_tool,
    uninstall,
    sync_manifest,
    prune_non_active_versions,
)
from .selfupdate import update_self, check_self_update
from .updates import LatestCheck, list_tools, resolve_latest_checks
from .resolve import resolve_executable_path
from .deps_audit import run_deps_audit

__all__ = [
    "__version__",
    # Errors
    "ToolStoreError",
    "InvalidSpec",
    "UnsupportedPlatform",
    "PolicyNotFound",
    "NetworkFailure",
    "QuotaBlocked",
    "IntegrityMismatch",
    "ExtractionFailure",
    "LockContention",
    "PermissionDenied",
    "ActivationFailure",
    "SelfUpdateHealthCheckFailed",
    "SourceResolutionError",
    "SyncFailure",
    "CorruptActiveState",
    "ToolNotActive",
    # Policies and models
    "ToolPolicy",
    "ReleaseSource",
    "find_policy",
    "canonicalize",
    "tool_policies",
    "supported_names_csv",
    "ToolRef",
    "ToolSpec",
    # Layout
    "Scope",
    "ToolHome",
    "tool_lock",
    "mutation_session",
    # Config
    "Config",
    "ProxyOverrides",
    "Preferences",
    "load_config",
    "resolve_github_token",
    # Store
    "ToolManifest",
    "read_manifest",
    "load_sync_specs",
    "PullSource",
    "resolve_install_source",
    "resolve_requested_version",
    "InstallAction",
    "InstallResult",
    "install",
    "activate_tool",
    "use_tool",
    "uninstall",
    "sync_manifest",
    "prune_non_active_versions",
    # Self-update, listing, queries
    "update_self",
    "check_self_update",
    "LatestCheck",
    "list_tools",
    "resolve_latest_checks",
    "resolve_executable_path",
    "run_deps_audit",
]
