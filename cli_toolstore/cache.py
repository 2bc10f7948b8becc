"""
Advisory on-disk TTL caches.

Two files live under the cache root:

- ``tool-latest-cache-v1.json``: latest release version per canonical tool
  name (10 minute TTL).
- ``deps-cache-v1.json``: crates.io (6 hour TTL) and GitHub repository
  (1 hour TTL) metadata used by the dependency audit.

Entries older than their section's TTL are dropped when read. Caches are
safe to delete; failing to persist one is never a command failure.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .common import is_permission_denied, now_unix_secs
from .manifest import atomic_write_text

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1
CACHE_DIR_NAME = "toolstore"

TOOL_LATEST_CACHE_FILE = "tool-latest-cache-v1.json"
TOOL_LATEST_SECTION = "latest_versions"
TOOL_LATEST_TTL_SECS = 10 * 60

DEPS_CACHE_FILE = "deps-cache-v1.json"
CRATES_SECTION = "crates"
GITHUB_SECTION = "github"
CRATES_TTL_SECS = 6 * 60 * 60
GITHUB_TTL_SECS = 60 * 60

FETCHED_AT_KEY = "fetched_at_unix_secs"


def cache_root() -> Path | None:
    """
    Directory holding cache files.

    ``TOOLSTORE_CACHE_DIR`` wins, then ``$XDG_CACHE_HOME/toolstore``, then
    ``~/.cache/toolstore``. None when no base directory can be determined.
    """
    override = os.environ.get("TOOLSTORE_CACHE_DIR", "").strip()
    if override:
        return Path(override)
    xdg = os.environ.get("XDG_CACHE_HOME", "").strip()
    if xdg:
        return Path(xdg) / CACHE_DIR_NAME
    home = os.environ.get("HOME", "").strip()
    if home:
        return Path(home) / ".cache" / CACHE_DIR_NAME
    return None


@dataclass
class TtlCache:
    """
    JSON cache split into named sections, each with its own TTL.

    Access is guarded by an internal lock so worker threads can read and
    record entries directly.
    """

    path: Path | None
    ttls: dict[str, int]
    sections: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    dirty: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def load(cls, path: Path | None, ttls: dict[str, int]) -> TtlCache:
        """Read path, ignoring missing or malformed files."""
        cache = cls(path=path, ttls=dict(ttls))
        for section in ttls:
            cache.sections[section] = {}
        if path is None or not path.exists():
            return cache

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug("ignoring unreadable cache %s: %s", path, e)
            return cache

        if not isinstance(data, dict) or data.get("schema_version") != CACHE_SCHEMA_VERSION:
            logger.debug("ignoring cache %s with unexpected schema", path)
            return cache

        for section in ttls:
            raw = data.get(section)
            if not isinstance(raw, dict):
                continue
            cache.sections[section] = {
                key: value for key, value in raw.items()
                if isinstance(value, dict) and isinstance(value.get(FETCHED_AT_KEY), int)
            }
        return cache

    def get(self, section: str, key: str, now: int | None = None) -> dict[str, Any] | None:
        """Fresh entry for key, or None. Expired entries are removed."""
        now = now_unix_secs() if now is None else now
        ttl = self.ttls[section]
        with self._lock:
            entries = self.sections.setdefault(section, {})
            entry = entries.get(key)
            if entry is None:
                return None
            if now - entry[FETCHED_AT_KEY] > ttl:
                del entries[key]
                self.dirty = True
                return None
            return dict(entry)

    def put(self, section: str, key: str, value: dict[str, Any], now: int | None = None) -> None:
        entry = dict(value)
        entry[FETCHED_AT_KEY] = now_unix_secs() if now is None else now
        with self._lock:
            self.sections.setdefault(section, {})[key] = entry
            self.dirty = True

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            data: dict[str, Any] = {"schema_version": CACHE_SCHEMA_VERSION}
            for section, entries in self.sections.items():
                data[section] = {key: dict(entries[key]) for key in sorted(entries)}
            return data

    def save(self) -> None:
        if self.path is None:
            return
        atomic_write_text(self.path, json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n")
        with self._lock:
            self.dirty = False

    def save_if_dirty(self) -> None:
        """
        Persist when anything changed.

        Failures are logged as warnings, except permission errors, which
        are only traced at debug level.
        """
        if not self.dirty or self.path is None:
            return
        try:
            self.save()
        except OSError as e:
            if is_permission_denied(e):
                logger.debug("cache %s not writable: %s", self.path, e)
            else:
                logger.warning("failed to persist cache %s: %s", self.path, e)


def load_tool_latest_cache() -> TtlCache:
    root = cache_root()
    path = root / TOOL_LATEST_CACHE_FILE if root is not None else None
    return TtlCache.load(path, {TOOL_LATEST_SECTION: TOOL_LATEST_TTL_SECS})


def load_deps_cache() -> TtlCache:
    root = cache_root()
    path = root / DEPS_CACHE_FILE if root is not None else None
    return TtlCache.load(path, {CRATES_SECTION: CRATES_TTL_SECS, GITHUB_SECTION: GITHUB_TTL_SECS})
