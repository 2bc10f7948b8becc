"""
Configuration file parsing and management.

YAML configuration files are merged from multiple sources
(explicit → user → system → defaults). The configuration store answers two
questions for the rest of the package: which GitHub token to send, and which
proxy overrides to apply to outbound HTTP clients.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .common import vlog


def config_locations() -> list[str]:
    """Configuration file locations in priority order."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return [
        os.path.join(config_home, "toolstore", "config.yml"),
        os.path.join(config_home, "toolstore", "config.yaml"),
        "/etc/toolstore/config.yml",
        "/etc/toolstore/config.yaml",
    ]


@dataclass(frozen=True)
class ProxyOverrides:
    """
    Proxy URL overrides, taking precedence over environment variables.

    Attributes:
        http_proxy: Proxy for plain HTTP requests
        https_proxy: Proxy for HTTPS requests
        all_proxy: Proxy for any scheme when no scheme-specific value is set
        no_proxy: Comma-separated hosts that bypass the proxy
    """
    http_proxy: str | None = None
    https_proxy: str | None = None
    all_proxy: str | None = None
    no_proxy: str | None = None

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ProxyOverrides:
        """Create ProxyOverrides from dictionary."""
        def clean(key: str) -> str | None:
            value = data.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        return ProxyOverrides(
            http_proxy=clean("http_proxy"),
            https_proxy=clean("https_proxy"),
            all_proxy=clean("all_proxy"),
            no_proxy=clean("no_proxy"),
        )

    def to_dict(self) -> dict[str, str | None]:
        return {
            "http_proxy": self.http_proxy,
            "https_proxy": self.https_proxy,
            "all_proxy": self.all_proxy,
            "no_proxy": self.no_proxy,
        }

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())


@dataclass(frozen=True)
class Preferences:
    """
    User preferences for network and concurrency behavior.

    Attributes:
        http_timeout_seconds: Per-request timeout for release API and downloads
        update_jobs: Worker count for update checks (None = automatic)
        audit_jobs: Worker count for the dependency audit (None = automatic)
    """
    http_timeout_seconds: int = 300
    update_jobs: int | None = None
    audit_jobs: int | None = None

    def __post_init__(self):
        """Validate preferences after initialization."""
        if self.http_timeout_seconds < 1 or self.http_timeout_seconds > 3600:
            raise ValueError(
                f"Invalid http_timeout_seconds: {self.http_timeout_seconds}. "
                "Must be between 1 and 3600"
            )
        for name in ("update_jobs", "audit_jobs"):
            jobs = getattr(self, name)
            if jobs is not None and (jobs < 1 or jobs > 64):
                raise ValueError(f"Invalid {name}: {jobs}. Must be between 1 and 64")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Preferences:
        """Create Preferences from dictionary."""
        return Preferences(
            http_timeout_seconds=int(data.get("http_timeout_seconds", 300)),
            update_jobs=data.get("update_jobs"),
            audit_jobs=data.get("audit_jobs"),
        )


@dataclass(frozen=True)
class Config:
    """
    Complete configuration for the tool store.

    Attributes:
        version: Config schema version
        github_token: Token sent to the GitHub API
        proxy: Proxy URL overrides
        preferences: Network and concurrency preferences
        source: Path to the configuration file that was loaded
    """
    version: int = 1
    github_token: str | None = None
    proxy: ProxyOverrides = field(default_factory=ProxyOverrides)
    preferences: Preferences = field(default_factory=Preferences)
    source: str = ""

    def __post_init__(self):
        """Validate config after initialization."""
        if self.version != 1:
            raise ValueError(f"Unsupported config version: {self.version}. Expected version 1")

    @staticmethod
    def from_dict(data: dict[str, Any], source: str = "") -> Config:
        """Create Config from dictionary."""
        auth = data.get("auth") or {}
        token = auth.get("github_token")
        token = str(token).strip() if token is not None else None

        return Config(
            version=data.get("version", 1),
            github_token=token or None,
            proxy=ProxyOverrides.from_dict(data.get("proxy") or {}),
            preferences=Preferences.from_dict(data.get("preferences") or {}),
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "auth": {"github_token": self.github_token},
            "proxy": self.proxy.to_dict(),
            "preferences": {
                "http_timeout_seconds": self.preferences.http_timeout_seconds,
                "update_jobs": self.preferences.update_jobs,
                "audit_jobs": self.preferences.audit_jobs,
            },
        }

    def merge_with(self, other: Config) -> Config:
        """
        Merge this config with another, preferring values from this config.

        Args:
            other: Other config to merge (lower priority)

        Returns:
            New merged Config object
        """
        def pick(mine, theirs):
            return mine if mine is not None else theirs

        merged_proxy = ProxyOverrides(
            http_proxy=pick(self.proxy.http_proxy, other.proxy.http_proxy),
            https_proxy=pick(self.proxy.https_proxy, other.proxy.https_proxy),
            all_proxy=pick(self.proxy.all_proxy, other.proxy.all_proxy),
            no_proxy=pick(self.proxy.no_proxy, other.proxy.no_proxy),
        )
        merged_preferences = Preferences(
            http_timeout_seconds=(
                self.preferences.http_timeout_seconds
                if self.preferences.http_timeout_seconds != 300
                else other.preferences.http_timeout_seconds
            ),
            update_jobs=pick(self.preferences.update_jobs, other.preferences.update_jobs),
            audit_jobs=pick(self.preferences.audit_jobs, other.preferences.audit_jobs),
        )
        return Config(
            version=self.version,
            github_token=pick(self.github_token, other.github_token),
            proxy=merged_proxy,
            preferences=merged_preferences,
            source=self.source or other.source,
        )


def _load_yaml(file_path: str) -> dict[str, Any] | None:
    """
    Load YAML configuration file.

    Returns:
        Parsed configuration dictionary, or None if the file is unreadable or invalid
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return None


def load_config_file(file_path: str, verbose: bool = False) -> Config | None:
    """
    Load configuration from a single file.

    Args:
        file_path: Path to configuration file
        verbose: Enable verbose logging

    Returns:
        Config object, or None if file cannot be loaded
    """
    if not os.path.exists(file_path):
        return None

    vlog(f"Loading config from: {file_path}", verbose)
    data = _load_yaml(file_path)
    if data is None:
        vlog(f"Invalid config file: {file_path}", verbose)
        return None

    try:
        return Config.from_dict(data, source=file_path)
    except (ValueError, TypeError) as e:
        vlog(f"Config validation failed for {file_path}: {e}", verbose)
        return None


def load_config(custom_path: str | None = None, verbose: bool = False) -> Config:
    """
    Load and merge configuration from all sources.

    Configuration precedence (highest to lowest):
    1. Custom path (argument, else $TOOLSTORE_CONFIG)
    2. User $XDG_CONFIG_HOME/toolstore/config.yml
    3. System /etc/toolstore/config.yml
    4. Default configuration

    Raises:
        ValueError: If an explicit path is given but cannot be loaded
    """
    custom_path = custom_path or os.environ.get("TOOLSTORE_CONFIG")
    configs: list[Config] = []

    if custom_path:
        custom = load_config_file(custom_path, verbose)
        if custom is None:
            raise ValueError(f"Failed to load configuration from: {custom_path}")
        configs.append(custom)

    for location in config_locations():
        cfg = load_config_file(location, verbose)
        if cfg is not None:
            configs.append(cfg)

    merged = Config()
    for cfg in reversed(configs):
        merged = cfg.merge_with(merged)
    return merged


def user_config_path() -> Path:
    return Path(config_locations()[0])


def save_config(config: Config, path: Path | None = None) -> Path:
    """Write config as YAML atomically with owner-only permissions."""
    path = path or user_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False)
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def resolve_github_token(config: Config | None = None) -> str | None:
    """Token lookup order: GITHUB_TOKEN, GH_TOKEN, then the config store."""
    for var in ("GITHUB_TOKEN", "GH_TOKEN"):
        token = os.environ.get(var, "").strip()
        if token:
            return token
    if config is None:
        config = load_config()
    return config.github_token


# key -> (attribute path, secret)
CONFIG_KEYS: dict[str, tuple[str, bool]] = {
    "github-token": ("github_token", True),
    "http-proxy": ("proxy.http_proxy", False),
    "https-proxy": ("proxy.https_proxy", False),
    "all-proxy": ("proxy.all_proxy", False),
    "no-proxy": ("proxy.no_proxy", False),
}


def _check_key(key: str) -> tuple[str, bool]:
    if key not in CONFIG_KEYS:
        raise ValueError(
            f"unknown config key `{key}`; expected one of: {', '.join(CONFIG_KEYS)}"
        )
    return CONFIG_KEYS[key]


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


def get_config_value(config: Config, key: str, reveal: bool = False) -> str | None:
    """Display value for a config key; secrets are masked unless reveal is set."""
    attr, secret = _check_key(key)
    target: Any = config
    for part in attr.split("."):
        target = getattr(target, part)
    if target is None:
        return None
    return target if reveal or not secret else mask_secret(target)


def _with_value(config: Config, attr: str, value: str | None) -> Config:
    if attr.startswith("proxy."):
        proxy = replace(config.proxy, **{attr.split(".", 1)[1]: value})
        return replace(config, proxy=proxy)
    return replace(config, **{attr: value})


def set_config_value(key: str, value: str | None, path: Path | None = None) -> Path:
    """
    Set (or with value None, unset) a key in the user config file.

    Only the user file is rewritten; values merged in from other
    locations are left alone.
    """
    attr, _ = _check_key(key)
    path = path or user_config_path()
    current = load_config_file(str(path))
    if current is None:
        if path.exists():
            raise ValueError(f"Failed to load configuration from: {path}")
        current = Config()
    cleaned = value.strip() if value is not None else None
    return save_config(_with_value(current, attr, cleaned or None), path)
