#!/usr/bin/env python3
"""
toolstore - Versioned CLI tool store.

Usage:
    toolstore.py tool install rg            # Install latest (or adopt existing)
    toolstore.py tool update codex:0.104.0  # Update and prune older versions
    toolstore.py tool list --updates        # Show installed tools and updates
    toolstore.py --user tool use rg:14.1.0  # Switch active version (user scope)
    toolstore.py update --check             # Compare running vs latest release
    toolstore.py deps --fail-on-high        # Audit Cargo dependency maintenance
"""

import argparse
import sys

from cli_toolstore import __version__
from cli_toolstore.config import (
    CONFIG_KEYS,
    get_config_value,
    load_config,
    set_config_value,
    user_config_path,
)
from cli_toolstore.deps_audit import run_deps_audit
from cli_toolstore.engine import InstallAction, install, sync_manifest, uninstall, use_tool
from cli_toolstore.errors import ToolStoreError
from cli_toolstore.layout import Scope, ToolHome, mutation_session
from cli_toolstore.logging_config import get_logger, setup_logging
from cli_toolstore.manifest import DEFAULT_SYNC_MANIFEST
from cli_toolstore.resolve import resolve_executable_path
from cli_toolstore.selfupdate import check_self_update, update_self
from cli_toolstore.updates import list_tools


def cmd_tool(args: argparse.Namespace) -> int:
    """Dispatch `tool` subcommands; everything but list holds the scope lock."""
    scope = Scope.from_flags(args.user)

    if args.tool_cmd == "list":
        return list_tools(
            ToolHome.detect(scope),
            supported_only=args.supported,
            check_updates=args.updates,
            json_output=args.json,
            fail_on_updates=args.fail_on_updates,
            fail_on_check_errors=args.fail_on_check_errors,
            jobs=load_config(verbose=args.verbose).preferences.update_jobs,
        )

    with mutation_session(scope, "tool") as home:
        if args.tool_cmd == "install":
            install(home, args.spec, InstallAction.INSTALL)
        elif args.tool_cmd == "update":
            install(home, args.spec, InstallAction.UPDATE, prune_after_update=True)
        elif args.tool_cmd == "sync":
            sync_manifest(home, args.file)
        elif args.tool_cmd == "use":
            use_tool(home, args.image)
        elif args.tool_cmd == "uninstall":
            uninstall(home, args.spec)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    if args.check:
        check_self_update(args.version)
        return 0
    update_self(Scope.from_flags(args.user), args.version)
    return 0


def cmd_deps(args: argparse.Namespace) -> int:
    run_deps_audit(
        manifest_path=args.manifest_path,
        github_token=args.github_token,
        jobs=args.jobs,
        include_dev=args.include_dev,
        include_build=args.include_build,
        include_optional=args.include_optional,
        json_out=args.json,
        fail_on_high=args.fail_on_high,
        verbose=args.verbose,
    )
    return 0


def cmd_which(args: argparse.Namespace) -> int:
    print(resolve_executable_path(args.name))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.config_cmd in (None, "path"):
        print(user_config_path())
    elif args.config_cmd == "get":
        value = get_config_value(load_config(verbose=args.verbose), args.key, reveal=args.raw)
        if value is None:
            print(f"{args.key} is not set", file=sys.stderr)
            return 1
        print(value)
    elif args.config_cmd == "set":
        path = set_config_value(args.key, args.value)
        print(f"✅ Set {args.key} in {path}")
    elif args.config_cmd == "unset":
        path = set_config_value(args.key, None)
        print(f"✅ Removed {args.key} from {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolstore",
        description="Versioned CLI tool store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"toolstore {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output",
    )
    parser.add_argument(
        "--log-file",
        help="Also write DEBUG logs to this file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    tool = sub.add_parser("tool", help="Manage versioned CLI tools")
    tool.add_argument(
        "--user",
        action="store_true",
        help="Use user-level paths (~/.local/...) instead of system-level paths",
    )
    tool.set_defaults(func=cmd_tool)
    tool_sub = tool.add_subparsers(dest="tool_cmd", required=True)

    p = tool_sub.add_parser("install", help="Install a tool, e.g. `codex` or `codex:0.104.0`")
    p.add_argument("spec", help="Tool spec in `name[:version]` format")
    p = tool_sub.add_parser("update", help="Update a tool to latest or a target version")
    p.add_argument("spec", help="Tool spec in `name[:version]` format")
    p = tool_sub.add_parser("list", help="List tools and installed versions")
    p.add_argument("--supported", action="store_true", help="Show built-in supported tools")
    p.add_argument("--updates", action="store_true", help="Query upstream releases for updates")
    p.add_argument("--json", action="store_true", help="Print JSON output")
    p.add_argument("--fail-on-updates", action="store_true", help="Exit 20 when updates are available")
    p.add_argument("--fail-on-check-errors", action="store_true", help="Exit 21 when update checks fail")
    p = tool_sub.add_parser("sync", help=f"Sync tools from a manifest file ({DEFAULT_SYNC_MANIFEST})")
    p.add_argument("--file", default=DEFAULT_SYNC_MANIFEST, help="Manifest path")
    p = tool_sub.add_parser("use", help="Select the active tool version, e.g. `codex:0.104.0`")
    p.add_argument("image", help="Tool reference in `name:version` format")
    p = tool_sub.add_parser("uninstall", help="Uninstall one version or all versions of a tool")
    p.add_argument("spec", help="Tool spec in `name[:version]` format")

    update = sub.add_parser("update", help="Update toolstore itself from GitHub releases")
    update.add_argument("--user", action="store_true", help="Use user-level paths")
    update.add_argument("--check", action="store_true", help="Only report whether an update exists")
    update.add_argument("--version", dest="version", metavar="VERSION", help="Target version (default: latest)")
    update.set_defaults(func=cmd_update)

    deps = sub.add_parser("deps", help="Audit Rust dependency maintenance signals")
    deps.add_argument("--manifest-path", metavar="PATH", help="Path to Cargo.toml")
    deps.add_argument("--github-token", metavar="TOKEN", help="GitHub token override for this run")
    deps.add_argument("--jobs", type=int, metavar="JOBS", help="Concurrent API workers (default: auto)")
    deps.add_argument("--include-dev", action="store_true", help="Include dev-dependencies")
    deps.add_argument("--include-build", action="store_true", help="Include build-dependencies")
    deps.add_argument("--include-optional", action="store_true", help="Include optional dependencies")
    deps.add_argument("--json", metavar="PATH", help="Write full audit report to JSON")
    deps.add_argument("--fail-on-high", action="store_true", help="Fail when any dependency is high risk")
    deps.set_defaults(func=cmd_deps)

    which = sub.add_parser("which", help="Print the executable path a tool resolves to")
    which.add_argument("name")
    which.set_defaults(func=cmd_which)

    config = sub.add_parser("config", help="Manage persisted configuration values")
    config.set_defaults(func=cmd_config, config_cmd=None)
    config_sub = config.add_subparsers(dest="config_cmd")
    config_sub.add_parser("path", help="Show the user config file path")
    p = config_sub.add_parser("get", help="Get a config value")
    p.add_argument("key", choices=list(CONFIG_KEYS))
    p.add_argument("--raw", action="store_true", help="Print secrets unmasked")
    p = config_sub.add_parser("set", help="Set a config value")
    p.add_argument("key", choices=list(CONFIG_KEYS))
    p.add_argument("value")
    p = config_sub.add_parser("unset", help="Remove a config value")
    p.add_argument("key", choices=list(CONFIG_KEYS))

    return parser


def main(argv=None) -> int:
    """Main entry point for the tool store."""
    args = build_parser().parse_args(argv)
    setup_logging(log_file=args.log_file, verbose=args.verbose)

    try:
        return args.func(args)
    except ToolStoreError as e:
        logger = get_logger()
        logger.error(e.message)
        if e.remediation:
            print(f"hint: {e.remediation}", file=sys.stderr)
        return 1
    except ValueError as e:
        get_logger().error(str(e))
        return 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
