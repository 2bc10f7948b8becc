"""
Dependency maintenance audit for Cargo projects.

Collects direct dependencies via ``cargo metadata``, then looks up
crates.io release data and GitHub repository signals for each one on a
thread pool. The pool is first-error-wins: once any worker records an
unexpected error, no worker picks up further dependencies and the error
is raised after in-flight lookups finish.

Lookups go through the deps TTL cache (crates 6h, GitHub 1h) and retry
transient failures (transport errors, 408, 429, 5xx) with exponential
backoff. A GitHub 403 blocks further GitHub calls for the run.
"""

from __future__ import annotations

import collections
import datetime
import enum
import json
import logging
import os
import subprocess
import threading
import time
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, TypeVar

from .cache import CRATES_SECTION, GITHUB_SECTION, TtlCache, load_deps_cache
from .common import truncate_for_log, vlog
from .config import Config, load_config, resolve_github_token
from .errors import NetworkFailure, QuotaBlocked, ToolStoreError
from .http_client import GITHUB_API_BASE, TOKEN_HINT, http_get
from .manifest import atomic_write_text
from .render import print_audit_text

logger = logging.getLogger(__name__)

T = TypeVar("T")

CRATES_API_BASE = "https://crates.io"
HTTP_TIMEOUT_SECS = 30
HTTP_MAX_ATTEMPTS = 3
HTTP_BACKOFF_BASE_SECS = 0.2
AUDIT_JOBS_MULTIPLIER = 2
AUDIT_JOBS_MIN = 4
AUDIT_JOBS_MAX = 16

STD_ALTERNATIVES = {
    "once_cell": "std::sync::LazyLock / OnceLock",
    "is-terminal": "std::io::IsTerminal",
}


class RiskLevel(enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"

    @property
    def weight(self) -> int:
        return {"high": 4, "medium": 3, "low": 2, "unknown": 1}[self.value]


@dataclass(frozen=True)
class DependencySpec:
    """Direct dependency merged across workspace packages."""
    name: str
    requirement: str
    kinds: str
    optional: bool


@dataclass
class AuditSummary:
    high: int = 0
    medium: int = 0
    low: int = 0
    unknown: int = 0


@dataclass
class DepAuditRecord:
    """
    Audit result for one dependency.

    Attributes:
        name: Crate name
        requirement: Version requirement(s), comma-joined
        kinds: Dependency kinds (normal, dev, build), comma-joined
        optional: True only if every occurrence is optional
        latest_version: crates.io max stable (or max) version
        latest_release_at: Publish time of latest_version
        latest_release_age_days: Days since latest_release_at
        repository: Repository URL from crates.io
        github_stars: Stargazer count
        github_archived: Archive flag
        github_pushed_at: Last push time
        github_push_age_days: Days since github_pushed_at
        std_alternative: Standard library replacement, if known
        risk: Classified maintenance risk
        notes: Risk reasons first, then lookup notes
    """
    name: str
    requirement: str
    kinds: str
    optional: bool
    latest_version: str | None = None
    crate_updated_at: str | None = None
    latest_release_at: str | None = None
    latest_release_age_days: int | None = None
    repository: str | None = None
    github_stars: int | None = None
    github_archived: bool | None = None
    github_pushed_at: str | None = None
    github_push_age_days: int | None = None
    std_alternative: str | None = None
    risk: RiskLevel = RiskLevel.UNKNOWN
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["risk"] = self.risk.value
        return data


# Cargo metadata

def canonical_manifest_path(path: str | None) -> Path:
    candidate = Path(path or "Cargo.toml")
    try:
        resolved = candidate.resolve(strict=True)
    except OSError as e:
        raise ToolStoreError(f"cannot resolve manifest path {candidate}: {e}") from e
    if not resolved.is_file():
        raise ToolStoreError(f"manifest path is not a file: {resolved}")
    return resolved


def cargo_metadata(manifest_path: Path) -> dict[str, Any]:
    cmd = [
        "cargo", "metadata", "--format-version", "1", "--no-deps",
        "--manifest-path", str(manifest_path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError as e:
        raise ToolStoreError("run `cargo metadata`: cargo not found in PATH") from e
    if result.returncode != 0:
        raise ToolStoreError(f"`cargo metadata` failed: {result.stderr.strip()}")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ToolStoreError(f"parse `cargo metadata` JSON output: {e}") from e


def target_package_ids(metadata: dict[str, Any]) -> list[str]:
    root = metadata.get("root")
    if root:
        return [root]
    return list(metadata.get("workspace_members") or [])


def collect_dependency_specs(
    metadata: dict[str, Any],
    include_dev: bool = False,
    include_build: bool = False,
    include_optional: bool = False,
) -> list[DependencySpec]:
    """
    Merge direct dependencies of the target packages by crate name.

    Raises:
        ToolStoreError: If a target package id is missing from the metadata
    """
    packages = {pkg["id"]: pkg for pkg in metadata.get("packages") or []}
    merged: dict[str, dict[str, Any]] = {}

    for package_id in target_package_ids(metadata):
        package = packages.get(package_id)
        if package is None:
            raise ToolStoreError(f"workspace package id not found in metadata: {package_id}")
        for dep in package.get("dependencies") or []:
            optional = bool(dep.get("optional", False))
            if optional and not include_optional:
                continue
            kind = dep.get("kind") or "normal"
            if kind == "dev" and not include_dev:
                continue
            if kind == "build" and not include_build:
                continue
            if kind not in ("normal", "dev", "build"):
                continue

            entry = merged.setdefault(dep["name"], {"reqs": set(), "kinds": set(), "optional": True})
            entry["reqs"].add(dep.get("req", ""))
            entry["kinds"].add(kind)
            entry["optional"] = entry["optional"] and optional

    return [
        DependencySpec(
            name=name,
            requirement=",".join(sorted(entry["reqs"])),
            kinds=",".join(sorted(entry["kinds"])),
            optional=entry["optional"],
        )
        for name, entry in sorted(merged.items())
    ]


# Risk model

def age_days_from_now(timestamp: str | None, now: datetime.datetime | None = None) -> int | None:
    """Whole days elapsed since an RFC 3339 timestamp (0 if in the future)."""
    if not timestamp:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return max(int((now - parsed).total_seconds() // 86400), 0)


def std_alternative(crate_name: str) -> str | None:
    return STD_ALTERNATIVES.get(crate_name)


def parse_owner_repo(path: str) -> tuple[str, str] | None:
    trimmed = path.split("?", 1)[0].split("#", 1)[0].rstrip("/")
    parts = trimmed.split("/")
    if len(parts) < 2:
        return None
    owner = parts[0].strip()
    repo = parts[1].strip()
    if repo.endswith(".git"):
        repo = repo[:-4]
    if not owner or not repo:
        return None
    return owner, repo


def github_repo_from_url(url: str) -> tuple[str, str] | None:
    """Extract (owner, repo) from an https or ssh GitHub URL."""
    raw = url.strip().rstrip("/")
    if not raw:
        return None
    if raw.startswith("git@github.com:"):
        return parse_owner_repo(raw[len("git@github.com:"):])
    _, sep, rest = raw.partition("github.com/")
    if sep:
        return parse_owner_repo(rest)
    return None


def elevate(current: RiskLevel, candidate: RiskLevel) -> RiskLevel:
    return candidate if candidate.weight > current.weight else current


def classify_risk(record: DepAuditRecord) -> None:
    """Set record.risk and prepend the reasons to record.notes."""
    risk = RiskLevel.LOW
    reasons: list[str] = []
    github_expected = bool(record.repository) and github_repo_from_url(record.repository) is not None

    if record.github_archived is True:
        risk = elevate(risk, RiskLevel.HIGH)
        reasons.append("GitHub repo is archived")

    days = record.latest_release_age_days
    if days is not None:
        if days >= 1460:
            risk = elevate(risk, RiskLevel.HIGH)
            reasons.append(f"latest crate release is stale ({days} days)")
        elif days >= 730:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"crate release not recent ({days} days)")

    days = record.github_push_age_days
    if days is not None:
        if days >= 1460:
            risk = elevate(risk, RiskLevel.HIGH)
            reasons.append(f"GitHub repo activity is stale ({days} days)")
        elif days >= 365:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"GitHub activity older than 1 year ({days} days)")

    stars = record.github_stars
    if stars is not None:
        if stars <= 50:
            risk = elevate(risk, RiskLevel.MEDIUM)
            reasons.append(f"low community signal (stars={stars})")
        elif stars <= 150:
            risk = elevate(risk, RiskLevel.LOW)
            reasons.append(f"small community size (stars={stars})")

    if record.std_alternative:
        reasons.append(f"std alternative available: {record.std_alternative}")

    if github_expected and (
        record.github_stars is None
        and record.github_archived is None
        and record.github_pushed_at is None
    ):
        risk = RiskLevel.UNKNOWN
        reasons.append(f"GitHub signals unavailable ({TOKEN_HINT})")

    if record.latest_release_at is None and record.github_pushed_at is None:
        risk = RiskLevel.UNKNOWN
        reasons.append("insufficient maintenance signals")

    record.risk = risk
    record.notes[:0] = reasons


def sort_records(records: list[DepAuditRecord]) -> list[DepAuditRecord]:
    return sorted(records, key=lambda r: (-r.risk.weight, r.name))


def build_summary(records: list[DepAuditRecord]) -> AuditSummary:
    summary = AuditSummary()
    for rec in records:
        setattr(summary, rec.risk.value, getattr(summary, rec.risk.value) + 1)
    return summary


# HTTP with retries

class RetryableFailure(Exception):
    """Attempt failed in a way worth retrying."""


def is_retryable_status(status: int) -> bool:
    return status in (408, 429) or 500 <= status <= 599


def retry_with_backoff(
    op_name: str,
    attempt_fn: Callable[[], T],
    max_attempts: int = HTTP_MAX_ATTEMPTS,
    base_delay: float = HTTP_BACKOFF_BASE_SECS,
) -> T:
    """
    Call attempt_fn until it succeeds, raises a non-retryable error, or
    max_attempts is reached. Delays double from base_delay.

    Raises:
        NetworkFailure: When every attempt was retryable and failed
    """
    last: RetryableFailure | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return attempt_fn()
        except RetryableFailure as e:
            last = e
            if attempt == max_attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug("%s attempt %d failed (%s); retrying in %.1fs", op_name, attempt, e, delay)
            time.sleep(delay)
    raise NetworkFailure(f"{op_name} failed after {max_attempts} attempts: {last}", retryable=True)


class DepsApiClient:
    """
    crates.io and GitHub lookups for the audit.

    Thread-safe: the TTL cache has its own lock, the in-run GitHub memo is
    guarded here, and ``github_blocked`` is an Event.
    """

    def __init__(
        self,
        token: str | None = None,
        config: Config | None = None,
        cache: TtlCache | None = None,
        crates_base: str = CRATES_API_BASE,
        github_base: str = GITHUB_API_BASE,
        timeout: float = HTTP_TIMEOUT_SECS,
        backoff_base: float = HTTP_BACKOFF_BASE_SECS,
    ):
        self.token = token
        self.config = config
        self.cache = cache if cache is not None else load_deps_cache()
        self.crates_base = crates_base.rstrip("/")
        self.github_base = github_base.rstrip("/")
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.github_blocked = threading.Event()
        self._github_memo: dict[str, dict[str, Any] | str] = {}
        self._memo_lock = threading.Lock()

    def flush_cache(self) -> None:
        self.cache.save_if_dirty()

    def _get_json(self, url: str, headers: dict[str, str], label: str, github: bool = False) -> Any:
        def attempt() -> Any:
            try:
                status, body = http_get(url, headers=headers, timeout=self.timeout, config=self.config)
            except NetworkFailure as e:
                raise RetryableFailure(f"request {label} failed: {e.message}") from e
            text = body.decode("utf-8", errors="replace")
            if not 200 <= status < 300:
                snippet = truncate_for_log(text, 200)
                if github and status == 403:
                    self.github_blocked.set()
                    raise QuotaBlocked(
                        f"status 403 (rate-limited or forbidden); body {snippet}",
                        status=403,
                        remediation=TOKEN_HINT,
                    )
                if is_retryable_status(status):
                    raise RetryableFailure(f"status {status} body {snippet}")
                raise NetworkFailure(f"status {status} body {snippet}", status=status)
            try:
                return json.loads(text)
            except json.JSONDecodeError as e:
                raise NetworkFailure(f"parse {label} JSON: {e}") from e

        return retry_with_backoff(f"request {label}", attempt, base_delay=self.backoff_base)

    def fetch_crate(self, name: str) -> dict[str, Any]:
        """
        Crate snapshot: max_version, updated_at, latest_release_at, repository.

        Raises:
            NetworkFailure: If crates.io cannot be queried or the response lacks a version
        """
        cached = self.cache.get(CRATES_SECTION, name)
        if cached is not None and isinstance(cached.get("snapshot"), dict):
            return cached["snapshot"]

        data = self._get_json(
            f"{self.crates_base}/api/v1/crates/{urllib.parse.quote(name, safe='')}",
            {},
            "crates.io API",
        )
        krate = data.get("crate") or {}
        max_version = krate.get("max_stable_version") or krate.get("max_version")
        if not max_version:
            raise NetworkFailure("missing max version in crates.io response")
        release = next(
            (v for v in data.get("versions") or [] if v.get("num") == max_version),
            None,
        )
        snapshot = {
            "max_version": max_version,
            "updated_at": krate.get("updated_at"),
            "latest_release_at": release.get("created_at") if release else krate.get("updated_at"),
            "repository": krate.get("repository"),
        }
        self.cache.put(CRATES_SECTION, name, {"snapshot": snapshot})
        return snapshot

    def fetch_github_repo(self, owner: str, repo: str) -> dict[str, Any]:
        if self.github_blocked.is_set():
            raise QuotaBlocked(f"skipped after GitHub API 403 ({TOKEN_HINT})", status=403)
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = self._get_json(
            f"{self.github_base}/repos/{owner}/{repo}", headers, "GitHub API", github=True
        )
        return {
            "stargazers_count": int(data.get("stargazers_count") or 0),
            "archived": bool(data.get("archived", False)),
            "pushed_at": data.get("pushed_at"),
        }

    def fetch_github_repo_cached(self, owner: str, repo: str) -> dict[str, Any]:
        """
        GitHub repo signals via the TTL cache, then the in-run memo.

        A failure is memoized too, so repositories shared by several crates
        are queried at most once per run.
        """
        key = f"{owner}/{repo}"
        cached = self.cache.get(GITHUB_SECTION, key)
        if cached is not None and isinstance(cached.get("snapshot"), dict):
            return cached["snapshot"]

        with self._memo_lock:
            memo = self._github_memo.get(key)
        if isinstance(memo, dict):
            return memo
        if isinstance(memo, str):
            raise NetworkFailure(memo)

        try:
            snapshot = self.fetch_github_repo(owner, repo)
        except ToolStoreError as e:
            with self._memo_lock:
                self._github_memo[key] = e.message
            raise
        self.cache.put(GITHUB_SECTION, key, {"snapshot": snapshot})
        with self._memo_lock:
            self._github_memo[key] = snapshot
        return snapshot

    def audit_one(self, spec: DependencySpec) -> DepAuditRecord:
        record = DepAuditRecord(
            name=spec.name,
            requirement=spec.requirement,
            kinds=spec.kinds,
            optional=spec.optional,
            std_alternative=std_alternative(spec.name),
        )

        try:
            crate = self.fetch_crate(spec.name)
        except ToolStoreError as e:
            record.notes.append(f"crates.io query failed: {e.message}")
            classify_risk(record)
            return record

        record.latest_version = crate.get("max_version")
        record.crate_updated_at = crate.get("updated_at")
        record.latest_release_at = crate.get("latest_release_at")
        record.latest_release_age_days = age_days_from_now(record.latest_release_at)
        record.repository = crate.get("repository")

        if not record.repository:
            record.notes.append("repository URL missing")
        else:
            slug = github_repo_from_url(record.repository)
            if slug is None:
                record.notes.append("repository is not a GitHub repo URL")
            else:
                try:
                    gh = self.fetch_github_repo_cached(*slug)
                except ToolStoreError as e:
                    record.notes.append(f"GitHub query failed: {e.message}")
                else:
                    record.github_stars = gh.get("stargazers_count")
                    record.github_archived = gh.get("archived")
                    record.github_pushed_at = gh.get("pushed_at")
                    record.github_push_age_days = age_days_from_now(record.github_pushed_at)

        classify_risk(record)
        return record


# Worker pool

def default_audit_jobs(cpu_count: int | None = None) -> int:
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or AUDIT_JOBS_MIN)
    return min(max(cpus * AUDIT_JOBS_MULTIPLIER, AUDIT_JOBS_MIN), AUDIT_JOBS_MAX)


def normalize_jobs(requested_jobs: int, task_count: int) -> int:
    return min(max(requested_jobs, 1), max(task_count, 1))


def audit_dependencies(
    api: DepsApiClient,
    specs: list[DependencySpec],
    jobs: int,
) -> list[DepAuditRecord]:
    """
    Audit specs on ``jobs`` workers sharing one queue.

    Raises:
        Exception: The first error any worker recorded
    """
    queue = collections.deque(specs)
    queue_lock = threading.Lock()
    records: list[DepAuditRecord] = []
    records_lock = threading.Lock()
    first_error: list[BaseException] = []
    failed = threading.Event()

    def worker() -> None:
        while not failed.is_set():
            with queue_lock:
                if not queue:
                    return
                spec = queue.popleft()
            try:
                record = api.audit_one(spec)
            except Exception as e:
                with records_lock:
                    if not first_error:
                        first_error.append(e)
                failed.set()
                return
            with records_lock:
                records.append(record)

    with ThreadPoolExecutor(max_workers=jobs) as executor:
        for _ in range(jobs):
            executor.submit(worker)

    if first_error:
        raise first_error[0]
    return records


# Report

def build_report(manifest_path: Path, summary: AuditSummary, records: list[DepAuditRecord]) -> dict[str, Any]:
    return {
        "generated_at": datetime.datetime.now(datetime.timezone.utc)
            .replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "manifest_path": str(manifest_path),
        "summary": asdict(summary),
        "dependencies": [rec.to_dict() for rec in records],
    }


def write_json_report(path: Path, report: dict[str, Any]) -> None:
    atomic_write_text(path, json.dumps(report, indent=2) + "\n")
    print(f"JSON report written: {path}")


def run_deps_audit(
    manifest_path: str | None = None,
    github_token: str | None = None,
    jobs: int | None = None,
    include_dev: bool = False,
    include_build: bool = False,
    include_optional: bool = False,
    json_out: str | None = None,
    fail_on_high: bool = False,
    api: DepsApiClient | None = None,
    verbose: bool = False,
) -> list[DepAuditRecord]:
    """
    Audit a Cargo manifest's dependencies and print the report.

    Returns:
        Sorted audit records

    Raises:
        ToolStoreError: On cargo/metadata failures, or when fail_on_high
            is set and any dependency is high risk
    """
    manifest = canonical_manifest_path(manifest_path)
    specs = collect_dependency_specs(
        cargo_metadata(manifest), include_dev, include_build, include_optional
    )
    if not specs:
        print("No dependencies found for audit.")
        return []

    config = load_config(verbose=verbose)
    if jobs is None:
        jobs = config.preferences.audit_jobs or default_audit_jobs()
    workers = normalize_jobs(jobs, len(specs))
    print(f"Auditing {len(specs)} dependencies with {workers} workers...")

    if api is None:
        token = (github_token or "").strip() or resolve_github_token(config)
        api = DepsApiClient(token=token, config=config)
    records = sort_records(audit_dependencies(api, specs, workers))
    summary = build_summary(records)
    print_audit_text(str(manifest), summary, records)

    if json_out:
        write_json_report(Path(json_out), build_report(manifest, summary, records))

    api.flush_cache()
    vlog(f"audited {len(records)} dependencies", verbose)

    if fail_on_high and summary.high > 0:
        raise ToolStoreError(f"dependency audit found {summary.high} high-risk entries")
    return records
