"""
Shared fixtures: an isolated user scope under tmp_path.
"""

import logging
import os
import stat

import pytest

from cli_toolstore import logging_config
from cli_toolstore.http_client import reset_release_api
from cli_toolstore.layout import Scope, ToolHome


@pytest.fixture
def user_env(tmp_path, monkeypatch):
    """Point HOME, XDG directories and the cache root into tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local/share"))
    monkeypatch.setenv("XDG_STATE_HOME", str(home / ".local/state"))
    monkeypatch.setenv("XDG_BIN_HOME", str(home / ".local/bin"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("TOOLSTORE_CACHE_DIR", str(tmp_path / "cache"))
    for var in ("TOOLSTORE_CONFIG", "GITHUB_TOKEN", "GH_TOKEN", "TOOLSTORE_DEBUG"):
        monkeypatch.delenv(var, raising=False)
    reset_release_api()
    yield home
    reset_release_api()


@pytest.fixture
def tool_home(user_env):
    """User-scope ToolHome with its directories created."""
    home = ToolHome.detect(Scope.USER)
    home.ensure_layout()
    return home


@pytest.fixture
def make_executable():
    """Factory writing a shell script that prints a version."""
    def _make(path, version="1.0.0", name="tool"):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/sh\necho '{name} {version}'\n", encoding="utf-8")
        os.chmod(path, path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path
    return _make


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to a test's captured streams."""
    yield
    logger = logging.getLogger(logging_config.LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logging_config._logger = None
