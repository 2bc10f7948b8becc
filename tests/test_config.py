"""
Tests for configuration parsing (cli_toolstore/config.py).
"""

import os
import stat
from unittest.mock import patch

import pytest
import yaml

from cli_toolstore.config import (
    Config,
    Preferences,
    ProxyOverrides,
    _load_yaml,
    get_config_value,
    load_config,
    load_config_file,
    mask_secret,
    resolve_github_token,
    save_config,
    set_config_value,
    user_config_path,
)


class TestProxyOverrides:
    """Tests for ProxyOverrides dataclass."""

    def test_defaults_empty(self):
        """Test default overrides are empty."""
        assert ProxyOverrides().is_empty()

    def test_from_dict_strips_blank(self):
        """Test blank values are treated as unset."""
        proxy = ProxyOverrides.from_dict({"https_proxy": "  http://proxy:3128 ", "no_proxy": "  "})
        assert proxy.https_proxy == "http://proxy:3128"
        assert proxy.no_proxy is None
        assert not proxy.is_empty()


class TestPreferences:
    """Tests for Preferences dataclass."""

    def test_preferences_defaults(self):
        """Test default preferences."""
        prefs = Preferences()
        assert prefs.http_timeout_seconds == 300
        assert prefs.update_jobs is None
        assert prefs.audit_jobs is None

    def test_preferences_invalid_timeout_too_low(self):
        """Test that timeout < 1 raises ValueError."""
        with pytest.raises(ValueError, match="Invalid http_timeout_seconds"):
            Preferences(http_timeout_seconds=0)

    def test_preferences_invalid_jobs(self):
        """Test that worker counts outside 1..64 raise ValueError."""
        with pytest.raises(ValueError, match="Invalid update_jobs"):
            Preferences(update_jobs=0)
        with pytest.raises(ValueError, match="Invalid audit_jobs"):
            Preferences(audit_jobs=65)

    def test_preferences_from_dict(self):
        """Test creating Preferences from dictionary."""
        prefs = Preferences.from_dict({"http_timeout_seconds": 60, "update_jobs": 4})
        assert prefs.http_timeout_seconds == 60
        assert prefs.update_jobs == 4


class TestConfig:
    """Tests for Config dataclass."""

    def test_config_defaults(self):
        """Test default config values."""
        config = Config()
        assert config.version == 1
        assert config.github_token is None
        assert config.proxy.is_empty()

    def test_config_invalid_version(self):
        """Test that unsupported version raises ValueError."""
        with pytest.raises(ValueError, match="Unsupported config version"):
            Config(version=2)

    def test_config_from_dict(self):
        """Test creating Config from dictionary."""
        config = Config.from_dict({
            "version": 1,
            "auth": {"github_token": " ghp_token "},
            "proxy": {"https_proxy": "http://proxy:3128"},
            "preferences": {"audit_jobs": 8},
        })
        assert config.github_token == "ghp_token"
        assert config.proxy.https_proxy == "http://proxy:3128"
        assert config.preferences.audit_jobs == 8

    def test_config_round_trips_through_dict(self):
        """Test to_dict output is accepted by from_dict."""
        config = Config(github_token="tok", proxy=ProxyOverrides(no_proxy="localhost"))
        assert Config.from_dict(config.to_dict()) == config

    def test_config_immutable(self):
        """Test that Config is immutable."""
        config = Config()
        with pytest.raises(Exception):
            config.github_token = "x"


class TestConfigMerging:
    """Tests for config merging."""

    def test_merge_prefers_self(self):
        """Test higher-priority values win."""
        high = Config(github_token="high", proxy=ProxyOverrides(https_proxy="http://high:1"))
        low = Config(github_token="low", proxy=ProxyOverrides(https_proxy="http://low:1", no_proxy="x"))
        merged = high.merge_with(low)
        assert merged.github_token == "high"
        assert merged.proxy.https_proxy == "http://high:1"
        assert merged.proxy.no_proxy == "x"

    def test_merge_fills_missing(self):
        """Test unset values come from the lower-priority config."""
        merged = Config().merge_with(Config(github_token="low", preferences=Preferences(update_jobs=3)))
        assert merged.github_token == "low"
        assert merged.preferences.update_jobs == 3

    def test_merge_timeout(self):
        """Test a non-default timeout is kept over the other config's."""
        high = Config(preferences=Preferences(http_timeout_seconds=30))
        low = Config(preferences=Preferences(http_timeout_seconds=600))
        assert high.merge_with(low).preferences.http_timeout_seconds == 30
        assert Config().merge_with(low).preferences.http_timeout_seconds == 600


class TestLoadYAML:
    """Tests for YAML loading."""

    def test_load_yaml_valid(self, tmp_path):
        """Test loading valid YAML file."""
        path = tmp_path / "config.yml"
        path.write_text("version: 1\nauth:\n  github_token: abc\n")
        assert _load_yaml(str(path))["auth"]["github_token"] == "abc"

    def test_load_yaml_not_found(self):
        """Test loading non-existent YAML file."""
        assert _load_yaml("/nonexistent/file.yml") is None

    def test_load_yaml_invalid(self, tmp_path):
        """Test invalid YAML returns None."""
        path = tmp_path / "config.yml"
        path.write_text("auth: [unclosed\n")
        assert _load_yaml(str(path)) is None

    def test_load_yaml_non_mapping(self, tmp_path):
        """Test a YAML list is treated as empty config."""
        path = tmp_path / "config.yml"
        path.write_text("- a\n- b\n")
        assert _load_yaml(str(path)) == {}


class TestLoadConfig:
    """Tests for loading and merging configuration from multiple sources."""

    def test_load_config_defaults(self):
        """Test that load_config returns defaults when no files found."""
        with patch("cli_toolstore.config.load_config_file", return_value=None):
            config = load_config()
        assert config == Config()

    def test_load_config_file_invalid_version(self, tmp_path):
        """Test that invalid version is caught."""
        path = tmp_path / "config.yml"
        path.write_text("version: 7\n")
        assert load_config_file(str(path)) is None

    def test_load_config_custom_path(self, tmp_path, user_env):
        """Test loading from custom path."""
        custom = tmp_path / "custom.yml"
        custom.write_text("proxy:\n  all_proxy: socks5://proxy:1080\n")
        config = load_config(custom_path=str(custom))
        assert config.proxy.all_proxy == "socks5://proxy:1080"
        assert config.source == str(custom)

    def test_load_config_env_path(self, tmp_path, user_env, monkeypatch):
        """Test TOOLSTORE_CONFIG selects the explicit file."""
        custom = tmp_path / "env.yml"
        custom.write_text("auth:\n  github_token: from-env-file\n")
        monkeypatch.setenv("TOOLSTORE_CONFIG", str(custom))
        assert load_config().github_token == "from-env-file"

    def test_load_config_custom_path_not_found(self, user_env):
        """Test that custom path not found raises ValueError."""
        with pytest.raises(ValueError, match="Failed to load configuration"):
            load_config(custom_path="/nonexistent/file.yml")

    def test_explicit_overrides_user_file(self, tmp_path, user_env):
        """Test an explicit file takes precedence over the user file."""
        user_file = user_config_path()
        user_file.parent.mkdir(parents=True)
        user_file.write_text("auth:\n  github_token: user\nproxy:\n  no_proxy: localhost\n")
        custom = tmp_path / "custom.yml"
        custom.write_text("auth:\n  github_token: explicit\n")

        config = load_config(custom_path=str(custom))
        assert config.github_token == "explicit"
        assert config.proxy.no_proxy == "localhost"


class TestSaveAndSet:
    """Tests for persisting configuration values."""

    def test_save_config_owner_only(self, tmp_path):
        """Test the saved file is YAML with mode 0600."""
        path = save_config(Config(github_token="secret"), tmp_path / "sub" / "config.yml")
        assert yaml.safe_load(path.read_text())["auth"]["github_token"] == "secret"
        if os.name == "posix":
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_set_and_unset(self, user_env):
        """Test set writes the user file and unset clears the key."""
        path = set_config_value("https-proxy", "http://proxy:3128")
        assert path == user_config_path()
        assert load_config().proxy.https_proxy == "http://proxy:3128"

        set_config_value("https-proxy", None)
        assert load_config().proxy.https_proxy is None

    def test_set_keeps_other_keys(self, user_env):
        """Test setting one key preserves the others."""
        set_config_value("github-token", "ghp_1234567890")
        set_config_value("no-proxy", "localhost")
        config = load_config()
        assert config.github_token == "ghp_1234567890"
        assert config.proxy.no_proxy == "localhost"

    def test_set_unknown_key(self, user_env):
        """Test unknown keys are rejected."""
        with pytest.raises(ValueError, match="unknown config key"):
            set_config_value("run-proxy", "x")

    def test_set_refuses_invalid_existing_file(self, user_env):
        """Test an unparsable user file is not overwritten."""
        path = user_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("version: 9\n")
        with pytest.raises(ValueError):
            set_config_value("no-proxy", "localhost")
        assert path.read_text() == "version: 9\n"


class TestSecrets:
    """Tests for token lookup and masking."""

    def test_mask_secret(self):
        """Test long values keep four characters at each end."""
        assert mask_secret("ghp_abcdefghijkl") == "ghp_********ijkl"
        assert mask_secret("short") == "*****"

    def test_get_config_value_masks(self):
        """Test secrets are masked unless revealed."""
        config = Config(github_token="ghp_abcdefghijkl")
        assert get_config_value(config, "github-token") == "ghp_********ijkl"
        assert get_config_value(config, "github-token", reveal=True) == "ghp_abcdefghijkl"
        assert get_config_value(config, "http-proxy") is None

    def test_resolve_github_token_env_first(self, monkeypatch):
        """Test GITHUB_TOKEN beats GH_TOKEN and the config store."""
        monkeypatch.setenv("GITHUB_TOKEN", "env-token")
        monkeypatch.setenv("GH_TOKEN", "gh-token")
        assert resolve_github_token(Config(github_token="cfg")) == "env-token"

        monkeypatch.delenv("GITHUB_TOKEN")
        assert resolve_github_token(Config(github_token="cfg")) == "gh-token"

    def test_resolve_github_token_config(self, monkeypatch):
        """Test the config store is the last resort."""
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.delenv("GH_TOKEN", raising=False)
        assert resolve_github_token(Config(github_token="cfg")) == "cfg"
        assert resolve_github_token(Config()) is None
