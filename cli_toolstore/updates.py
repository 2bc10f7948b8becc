"""
Concurrent update checks and the ``tool list`` report.

Latest-release lookups run once per distinct policy (aliases share one
lookup) on a small thread pool. Fresh answers come from the tool-latest
TTL cache; only misses reach the network, and per-tool failures are
reported as ``check-failed`` rows rather than aborting the listing.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .cache import TOOL_LATEST_SECTION, TtlCache, load_tool_latest_cache
from .common import collect_dir_names, normalize_version, now_unix_secs, truncate_for_log, version_sort_key
from .engine import UnmanagedBinary, collect_unmanaged_binaries, read_current_version
from .errors import ToolStoreError
from .http_client import ReleaseApi, get_release_api
from .layout import ToolHome
from .manifest import manifest_source_label
from .models import ToolRef
from .policy import ToolPolicy, find_policy, tool_policies
from .render import print_json, print_list_text, print_supported_text
from .source import fetch_latest_version

logger = logging.getLogger(__name__)

TOOL_EXIT_UPDATES_AVAILABLE = 20
TOOL_EXIT_UPDATE_CHECK_FAILED = 21

UPDATE_JOBS_MULTIPLIER = 2
UPDATE_JOBS_MIN = 2
UPDATE_JOBS_MAX = 8

CHECK_WARNING_MAX_CHARS = 120

LATEST = "latest"
UNSUPPORTED = "unsupported"
ERROR = "error"


@dataclass(frozen=True)
class LatestCheck:
    """Outcome of one latest-release lookup."""
    kind: str
    version: str | None = None
    message: str | None = None

    @classmethod
    def latest(cls, version: str) -> LatestCheck:
        return cls(LATEST, version=version)

    @classmethod
    def unsupported(cls) -> LatestCheck:
        return cls(UNSUPPORTED)

    @classmethod
    def error(cls, message: str) -> LatestCheck:
        return cls(ERROR, message=message)


def list_update_status(installed_version: str, check: LatestCheck) -> str:
    if check.kind == LATEST:
        if normalize_version(installed_version) == normalize_version(check.version or ""):
            return "latest"
        return f"update -> {check.version}"
    if check.kind == UNSUPPORTED:
        return "n/a"
    return "check-failed"


def is_update_available(installed_version: str, check: LatestCheck) -> bool:
    return check.kind == LATEST and (
        normalize_version(installed_version) != normalize_version(check.version or "")
    )


def default_update_jobs(cpu_count: int | None = None) -> int:
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or UPDATE_JOBS_MIN)
    return min(max(cpus * UPDATE_JOBS_MULTIPLIER, UPDATE_JOBS_MIN), UPDATE_JOBS_MAX)


def normalize_jobs(requested_jobs: int, task_count: int) -> int:
    return min(max(requested_jobs, 1), max(task_count, 1))


def resolve_latest_for_policy(policy: ToolPolicy, api: ReleaseApi) -> LatestCheck:
    if policy.release is None:
        return LatestCheck.unsupported()
    try:
        return LatestCheck.latest(fetch_latest_version(policy.release, api))
    except ToolStoreError as e:
        return LatestCheck.error(e.message)


def fetch_latest_checks_parallel(
    policies: list[ToolPolicy],
    api: ReleaseApi,
    jobs: int | None = None,
) -> dict[str, LatestCheck]:
    """
    Look up every policy's latest release on a bounded thread pool.

    Returns:
        Mapping of canonical name to LatestCheck; failures are error entries
    """
    if not policies:
        return {}
    workers = normalize_jobs(jobs or default_update_jobs(), len(policies))
    logger.debug("checking %d tool(s) with %d worker(s)", len(policies), workers)

    out: dict[str, LatestCheck] = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_policy = {
            executor.submit(resolve_latest_for_policy, policy, api): policy
            for policy in policies
        }
        for future in as_completed(future_to_policy):
            policy = future_to_policy[future]
            try:
                out[policy.canonical_name] = future.result()
            except Exception as e:
                logger.debug("latest check for %s raised: %s", policy.canonical_name, e)
                out[policy.canonical_name] = LatestCheck.error(str(e))
    return out


def resolve_latest_checks(
    names: list[str],
    cache: TtlCache | None = None,
    api: ReleaseApi | None = None,
    jobs: int | None = None,
    now: int | None = None,
) -> dict[str, LatestCheck]:
    """
    Latest-release status for each installed tool name.

    Args:
        names: Store directory names
        cache: Tool-latest TTL cache (loaded from the cache root by default)
        api: Release API client, only created when a lookup is needed
        jobs: Worker count override
        now: Current unix time (for tests)

    Returns:
        Mapping of each name to its LatestCheck
    """
    cache = cache if cache is not None else load_tool_latest_cache()
    now = now_unix_secs() if now is None else now

    by_canonical: dict[str, LatestCheck] = {}
    tasks: list[ToolPolicy] = []
    seen: set[str] = set()
    for name in names:
        policy = find_policy(name)
        if policy is None or policy.canonical_name in seen:
            continue
        seen.add(policy.canonical_name)
        entry = cache.get(TOOL_LATEST_SECTION, policy.canonical_name, now=now)
        if entry is not None and entry.get("latest_version"):
            by_canonical[policy.canonical_name] = LatestCheck.latest(str(entry["latest_version"]))
        else:
            tasks.append(policy)

    if tasks:
        fetched = fetch_latest_checks_parallel(tasks, api or get_release_api(), jobs)
        for canonical_name, check in fetched.items():
            if check.kind == LATEST:
                cache.put(TOOL_LATEST_SECTION, canonical_name, {"latest_version": check.version}, now=now)
            by_canonical[canonical_name] = check

    cache.save_if_dirty()

    result: dict[str, LatestCheck] = {}
    for name in names:
        policy = find_policy(name)
        if policy is None:
            result[name] = LatestCheck.unsupported()
        else:
            result[name] = by_canonical.get(policy.canonical_name, LatestCheck.unsupported())
    return result


@dataclass(frozen=True)
class ListRow:
    name: str
    version: str
    active: bool
    source: str
    update: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "active": self.active,
            "source": self.source,
            "update": self.update,
        }


@dataclass
class ListReport:
    """Everything ``tool list`` prints, in either text or JSON form."""
    scope: str
    bin_path: str
    rows: list[ListRow] = field(default_factory=list)
    unmanaged: list[UnmanagedBinary] = field(default_factory=list)
    check_failures: list[tuple[str, str]] = field(default_factory=list)
    has_updates: bool = False

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "tool_binaries_path": self.bin_path,
            "rows": [row.to_dict() for row in self.rows],
            "unmanaged": [item.to_dict() for item in self.unmanaged],
            "update_check_warnings": [f"{name}: {err}" for name, err in self.check_failures],
            "has_updates": self.has_updates,
            "has_check_failures": bool(self.check_failures),
        }


def build_list_report(
    home: ToolHome,
    check_updates: bool,
    api: ReleaseApi | None = None,
    cache: TtlCache | None = None,
    jobs: int | None = None,
) -> ListReport:
    names = sorted(collect_dir_names(home.store_dir))
    latest = resolve_latest_checks(names, cache=cache, api=api, jobs=jobs) if check_updates else {}

    report = ListReport(
        scope=home.scope.label,
        bin_path=str(home.bin_dir),
        unmanaged=collect_unmanaged_binaries(home),
    )
    for name in names:
        current = read_current_version(home, name)
        check = latest.get(name)
        if check is not None and check.kind == ERROR:
            report.check_failures.append(
                (name, truncate_for_log(check.message or "", CHECK_WARNING_MAX_CHARS))
            )
        for version in sorted(collect_dir_names(home.name_dir(name)), key=version_sort_key):
            update = None
            if check is not None:
                update = list_update_status(version, check)
                if is_update_available(version, check):
                    report.has_updates = True
            report.rows.append(ListRow(
                name=name,
                version=version,
                active=current == version,
                source=manifest_source_label(home, ToolRef(name, version)),
                update=update,
            ))
    return report


def supported_tools_view() -> list[dict]:
    return [policy.to_dict() for policy in tool_policies()]


def validate_list_flags(
    supported_only: bool,
    check_updates: bool,
    fail_on_updates: bool,
    fail_on_check_errors: bool,
) -> None:
    if supported_only and check_updates:
        raise ToolStoreError("`--supported` cannot be combined with `--updates`")
    if (fail_on_updates or fail_on_check_errors) and (supported_only or not check_updates):
        raise ToolStoreError("`--fail-on-updates`/`--fail-on-check-errors` require `--updates`")


def list_tools(
    home: ToolHome,
    supported_only: bool = False,
    check_updates: bool = False,
    json_output: bool = False,
    fail_on_updates: bool = False,
    fail_on_check_errors: bool = False,
    api: ReleaseApi | None = None,
    jobs: int | None = None,
) -> int:
    """
    Print installed tools (or the supported-tool table) and pick an exit code.

    Returns:
        0, TOOL_EXIT_UPDATE_CHECK_FAILED or TOOL_EXIT_UPDATES_AVAILABLE;
        check failures take precedence when both gates trip
    """
    validate_list_flags(supported_only, check_updates, fail_on_updates, fail_on_check_errors)

    if supported_only:
        rows = supported_tools_view()
        if json_output:
            print_json(rows)
        else:
            print_supported_text(rows)
        return 0

    report = build_list_report(home, check_updates, api=api, jobs=jobs)
    if json_output:
        print_json(report.to_dict())
    else:
        print_list_text(report, check_updates)

    if fail_on_check_errors and report.check_failures:
        logger.error("tool list policy failure: %d update checks failed", len(report.check_failures))
        return TOOL_EXIT_UPDATE_CHECK_FAILED
    if fail_on_updates and report.has_updates:
        logger.error("tool list policy failure: updates available")
        return TOOL_EXIT_UPDATES_AVAILABLE
    return 0
