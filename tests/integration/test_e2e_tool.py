"""
End-to-end tests for the tool lifecycle through the command-line entry point.

Release metadata and downloads are served locally; everything else (digest
verification, extraction, store layout, activation, pruning, update checks)
runs for real.
"""

import hashlib
import io
import os
import shutil
import subprocess
import sys
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

import toolstore
from cli_toolstore.http_client import ReleaseApi
from cli_toolstore.policy import Platform

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="fixtures are POSIX shell scripts")

TARGET = "x86_64-unknown-linux-musl"


def rg_archive(directory, version):
    """Build a ripgrep-style tarball whose rg prints its version."""
    name = f"ripgrep-{version}-{TARGET}"
    path = directory / f"{name}.tar.gz"
    script = f"#!/bin/sh\necho 'ripgrep {version}'\n".encode()
    with tarfile.open(path, "w:gz") as tar:
        for arcname, data, mode in (
            (f"{name}/rg", script, 0o755),
            (f"{name}/README.md", b"ripgrep\n", 0o644),
        ):
            info = tarfile.TarInfo(arcname)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return path


class LocalReleases:
    """Serves ripgrep releases from archives built under tmp_path."""

    def __init__(self, directory):
        self.directory = directory
        self.archives = {}
        self.latest = None
        self.tampered = set()

    def publish(self, version):
        self.archives[version] = rg_archive(self.directory, version)
        self.latest = version

    def fetch_release(self, api, project_label, owner, repo, tag=None):
        assert (owner, repo) == ("BurntSushi", "ripgrep")
        version = tag or self.latest
        archive = self.archives[version]
        digest = hashlib.sha256(archive.read_bytes()).hexdigest()
        if version in self.tampered:
            digest = "0" * 64
        return {
            "tag_name": version,
            "assets": [{
                "name": archive.name,
                "digest": f"sha256:{digest}",
                "browser_download_url": f"https://github.com/BurntSushi/ripgrep/releases/download/{version}/{archive.name}",
            }],
        }

    def download(self, url, dest, **kwargs):
        shutil.copyfile(self.directory / url.rsplit("/", 1)[1], dest)
        return Path(dest).stat().st_size


@pytest.fixture
def releases(user_env, tmp_path):
    served = LocalReleases(tmp_path)

    def fake_fetch(api, project_label, owner, repo, tag=None):
        return served.fetch_release(api, project_label, owner, repo, tag)

    with patch("cli_toolstore.policy.current_platform", return_value=Platform("linux", "x86_64")), \
         patch.object(ReleaseApi, "fetch_release", fake_fetch), \
         patch("cli_toolstore.source.download_file", side_effect=served.download):
        yield served


def run_bin(home, name):
    bin_path = home / ".local/bin" / name
    return subprocess.run([str(bin_path), "--version"], capture_output=True, text=True).stdout.strip()


class TestToolLifecycle:
    """Install, check, update and remove a tool from verified release assets."""

    def test_full_lifecycle(self, user_env, releases, capsys):
        releases.publish("14.0.0")

        assert toolstore.main(["tool", "--user", "install", "ripgrep"]) == 0
        out = capsys.readouterr().out
        assert "Installed rg:14.0.0 from URL https://github.com/BurntSushi/ripgrep/releases/download/14.0.0/" in out
        assert run_bin(user_env, "rg") == "ripgrep 14.0.0"

        releases.publish("14.1.0")
        code = toolstore.main(["tool", "--user", "list", "--updates", "--fail-on-updates"])
        assert code == 20
        assert "update -> 14.1.0" in capsys.readouterr().out

        assert toolstore.main(["tool", "--user", "update", "rg"]) == 0
        out = capsys.readouterr().out
        assert "Updating `rg`: 14.0.0 -> 14.1.0" in out
        assert "Removed old versions for `rg`: 14.0.0" in out
        assert run_bin(user_env, "rg") == "ripgrep 14.1.0"

        store = user_env / ".local/share/toolstore/tools/store/rg"
        assert sorted(p.name for p in store.iterdir()) == ["14.1.0"]

        assert toolstore.main(["which", "rg"]) == 0
        assert capsys.readouterr().out.strip() == str(store / "14.1.0" / "rg")

        assert toolstore.main(["tool", "--user", "uninstall", "rg"]) == 0
        assert not (user_env / ".local/bin/rg").exists()
        assert not store.exists()

    def test_tampered_asset_keeps_previous_active(self, user_env, releases, capsys):
        releases.publish("14.0.0")
        assert toolstore.main(["tool", "--user", "install", "rg:14.0.0"]) == 0

        releases.publish("14.1.0")
        releases.tampered.add("14.1.0")
        assert toolstore.main(["tool", "--user", "update", "rg:14.1.0"]) == 1
        assert "sha256 mismatch" in capsys.readouterr().err.lower()

        assert run_bin(user_env, "rg") == "ripgrep 14.0.0"
        store = user_env / ".local/share/toolstore/tools/store/rg"
        assert sorted(p.name for p in store.iterdir()) == ["14.0.0"]
        state = user_env / ".local/state/toolstore/tools/current/rg"
        assert state.read_text() == "14.0.0\n"

    def test_sync_manifest(self, user_env, releases, tmp_path, capsys):
        releases.publish("14.1.0")
        manifest = tmp_path / "toolstore.tools.yml"
        manifest.write_text("tools:\n  - ripgrep\n  - rg\n")

        assert toolstore.main(["tool", "--user", "sync", "--file", str(manifest)]) == 0
        out = capsys.readouterr().out
        assert "Syncing 1 tool(s)" in out
        assert "Sync complete: 1 tool(s) are up-to-date" in out
        assert os.access(user_env / ".local/bin/rg", os.X_OK)
