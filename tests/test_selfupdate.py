"""
Tests for self-update backup, health check and rollback.
"""

import errno
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from cli_toolstore import __version__
from cli_toolstore.engine import install, read_current_version
from cli_toolstore.errors import NetworkFailure, SelfUpdateHealthCheckFailed
from cli_toolstore.layout import Scope
from cli_toolstore.models import ToolRef
from cli_toolstore.selfupdate import check_self_update, create_self_backup, update_self
from cli_toolstore.source import PullSource


@pytest.fixture
def self_source(tmp_path, make_executable):
    """
    Patch source resolution for the self tool.

    ``reports`` maps a version to what its binary prints; by default a
    binary reports its own version.
    """
    reports = {}

    def _resolve(tool, api=None, progress_stream=None):
        root = tmp_path / "pulled" / tool.version
        exe = make_executable(root / tool.name, version=reports.get(tool.version, tool.version), name=tool.name)
        return PullSource(exe, f"fixture {tool.image()}", cleanup_root=root)

    with patch("cli_toolstore.engine.resolve_install_source", side_effect=_resolve) as mock_resolve:
        mock_resolve.reports = reports
        yield mock_resolve


def backups(home):
    return list(home.current_dir.glob("toolstore-self-backup-*"))


class TestUpdateSelf:
    """Test the self-update flow."""

    def test_success_prunes_and_removes_backup(self, tool_home, self_source, capsys):
        install(tool_home, "toolstore:0.1.0")

        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"):
            result = update_self(Scope.USER)

        assert result.tool == ToolRef("toolstore", "0.2.0")
        assert read_current_version(tool_home, "toolstore") == "0.2.0"
        assert not tool_home.version_dir(ToolRef("toolstore", "0.1.0")).exists()
        assert backups(tool_home) == []
        assert "Self-update complete: toolstore:0.2.0" in capsys.readouterr().out

    def test_health_check_failure_rolls_back_to_managed(self, tool_home, self_source):
        install(tool_home, "toolstore:0.1.0")
        self_source.reports["0.2.0"] = "0.1.9"

        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"):
            with pytest.raises(SelfUpdateHealthCheckFailed) as exc_info:
                update_self(Scope.USER)

        err = exc_info.value
        assert err.rollback_applied
        assert "expected version 0.2.0, binary reports 0.1.9" in err.message
        assert read_current_version(tool_home, "toolstore") == "0.1.0"
        assert Path(os.path.realpath(tool_home.bin_path("toolstore"))) == Path(
            os.path.realpath(tool_home.install_path(ToolRef("toolstore", "0.1.0")))
        )
        assert backups(tool_home) == []

    def test_install_failure_restores_unmanaged_backup(self, tool_home, make_executable):
        original = make_executable(tool_home.bin_path("toolstore"), version="0.0.9", name="toolstore")
        original_bytes = original.read_bytes()

        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"), \
             patch("cli_toolstore.engine.resolve_install_source", side_effect=NetworkFailure("offline")):
            with pytest.raises(SelfUpdateHealthCheckFailed) as exc_info:
                update_self(Scope.USER)

        assert exc_info.value.rollback_applied
        assert "offline" in exc_info.value.message
        assert tool_home.bin_path("toolstore").read_bytes() == original_bytes
        assert os.access(tool_home.bin_path("toolstore"), os.X_OK)
        assert read_current_version(tool_home, "toolstore") is None

    def test_disk_full_restores_backup_and_cleans_up(self, tool_home, self_source, make_executable):
        original = make_executable(tool_home.bin_path("toolstore"), version="0.0.9", name="toolstore")
        original_bytes = original.read_bytes()

        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"), \
             patch(
                 "cli_toolstore.engine.copy_executable",
                 side_effect=OSError(errno.ENOSPC, "No space left on device"),
             ):
            with pytest.raises(SelfUpdateHealthCheckFailed) as exc_info:
                update_self(Scope.USER)

        assert exc_info.value.rollback_applied
        assert "No space left on device" in exc_info.value.message
        assert tool_home.bin_path("toolstore").read_bytes() == original_bytes
        assert not tool_home.name_dir("toolstore").exists()
        assert backups(tool_home) == []

    def test_unexpected_error_rolls_back(self, tool_home, make_executable):
        original = make_executable(tool_home.bin_path("toolstore"), version="0.0.9", name="toolstore")
        original_bytes = original.read_bytes()

        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"), \
             patch("cli_toolstore.selfupdate.install", side_effect=RuntimeError("store exploded")):
            with pytest.raises(SelfUpdateHealthCheckFailed) as exc_info:
                update_self(Scope.USER)

        assert exc_info.value.rollback_applied
        assert "store exploded" in exc_info.value.message
        assert tool_home.bin_path("toolstore").read_bytes() == original_bytes
        assert backups(tool_home) == []

    def test_no_rollback_target(self, tool_home):
        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.2.0"), \
             patch("cli_toolstore.engine.resolve_install_source", side_effect=NetworkFailure("offline")):
            with pytest.raises(SelfUpdateHealthCheckFailed) as exc_info:
                update_self(Scope.USER)

        assert not exc_info.value.rollback_applied
        assert "no rollback target available" in exc_info.value.message

    def test_backup_none_without_binary(self, tool_home):
        assert create_self_backup(tool_home) is None

    def test_backup_preserves_mode(self, tool_home, make_executable):
        make_executable(tool_home.bin_path("toolstore"), version="0.0.9", name="toolstore")
        backup = create_self_backup(tool_home)
        assert backup.read_bytes() == tool_home.bin_path("toolstore").read_bytes()
        assert os.access(backup, os.X_OK)


class TestCheckSelfUpdate:
    """Test `update --check`."""

    def test_up_to_date(self, capsys):
        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value=__version__):
            assert check_self_update() is False
        assert "is up-to-date" in capsys.readouterr().out

    def test_update_available(self, capsys):
        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="99.0.0"):
            assert check_self_update() is True
        out = capsys.readouterr().out
        assert f"Current toolstore: {__version__}" in out
        assert f"Update available: {__version__} -> 99.0.0" in out

    def test_requested_version_label(self, capsys):
        with patch("cli_toolstore.selfupdate.resolve_requested_version", return_value="0.5.0"):
            check_self_update("0.5.0")
        assert "Requested toolstore: 0.5.0" in capsys.readouterr().out
