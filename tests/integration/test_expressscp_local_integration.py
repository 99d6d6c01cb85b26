"""
Integration tests for expressscp.

The "remote host" is the local machine: commands run through ``sh -c`` and
copies land in a temporary directory, so the archives built here are
extracted by the real ``tar``/``gzip`` toolchain. Skipped when either tool
is missing.
"""

import os
import pathlib
import stat
import subprocess
import sys

import pytest

sys.path.insert(0, str(pathlib.Path(__file__).parent.parent.parent))

import expressscp
from expressscp import AggregateTransferError, ExpressTransport, build_archive
from tests.conftest import HAS_TAR, LocalShellSession

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not HAS_TAR, reason="tar and gzip are required"),
]


def _tree_snapshot(root):
    """Map relative path -> (is_dir, mode, content) for every entry below root."""
    snap = {}
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)
        if path.is_dir():
            snap[rel] = (True, mode, None)
        else:
            snap[rel] = (False, mode, path.read_bytes())
    return snap


# ===========================================================================
# 1. System tar extracts what build_archive writes
# ===========================================================================

class TestSystemTarExtraction:
    def test_system_tar_reproduces_tree(self, source_tree, tmp_path):
        archive = build_archive(source_tree, quiet=True)
        dest = tmp_path / "extracted"
        dest.mkdir()

        subprocess.run(["tar", "-xzf", str(archive), "-C", str(dest)], check=True)

        assert _tree_snapshot(dest / "project") == _tree_snapshot(source_tree)

    def test_system_tar_lists_entries(self, small_tree):
        archive = build_archive(small_tree, quiet=True)
        p = subprocess.run(["tar", "-tzf", str(archive)], check=True, stdout=subprocess.PIPE, text=True)
        names = {line.rstrip("/") for line in p.stdout.splitlines()}
        assert names == {"src", "src/a.txt", "src/sub"}

    def test_gzip_integrity(self, source_tree):
        archive = build_archive(source_tree, quiet=True)
        subprocess.run(["gzip", "-t", str(archive)], check=True)


# ===========================================================================
# 2. Full upload against the local shell session
# ===========================================================================

class TestLocalUpload:
    def test_mixed_upload_lands_extracted(self, source_tree, small_tree, tmp_path):
        plain = tmp_path / "notes.txt"
        plain.write_text("notes", encoding="utf-8")
        remote = tmp_path / "remote" / "app"
        session = LocalShellSession()

        report = ExpressTransport(session=session, quiet=True).upload(
            [source_tree, small_tree, plain], str(remote)
        )

        assert report.successful == 3
        assert _tree_snapshot(remote / "project") == _tree_snapshot(source_tree)
        assert (remote / "src" / "a.txt").read_bytes() == b"hello"
        assert (remote / "src" / "sub").is_dir()
        assert (remote / "notes.txt").read_text(encoding="utf-8") == "notes"
        # Remote archives are removed after extraction.
        assert not list(remote.glob("*.tgz"))

    def test_remote_path_with_spaces(self, small_tree, tmp_path):
        remote = tmp_path / "remote dir" / "app"
        ExpressTransport(session=LocalShellSession(), quiet=True).upload([small_tree], str(remote))
        assert (remote / "src" / "a.txt").exists()
        assert not (remote / "src.tgz").exists()

    def test_corrupt_archive_reports_and_cleans_up(self, small_tree, tmp_path):
        remote = tmp_path / "remote"

        class Corrupting(LocalShellSession):
            def copy(self, local_path, remote_path, options=None):
                dest = pathlib.Path(remote_path) / pathlib.Path(local_path).name
                dest.write_bytes(b"not a gzip stream")

        session = Corrupting()
        with pytest.raises(AggregateTransferError) as excinfo:
            ExpressTransport(session=session, quiet=True).upload([small_tree], str(remote))

        assert "extraction of" in excinfo.value.failures[0].error
        assert not (remote / "src.tgz").exists()
        assert session.commands[-1].startswith("rm -f ")

    def test_fallback_copies_tree_when_tools_missing(self, small_tree, tmp_path):
        remote = tmp_path / "remote"
        remote.mkdir()

        class NoTools(LocalShellSession):
            def execute(self, command):
                if command == expressscp.TOOLS_CHECK_COMMAND:
                    raise RuntimeError("ssh command failed with exit code 1")
                return super().execute(command)

        report = ExpressTransport(session=NoTools(), quiet=True).upload([small_tree], str(remote))

        assert report.fallback
        assert (remote / "src" / "a.txt").read_bytes() == b"hello"
        assert not (small_tree.parent / "src.tgz").exists()

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_unwritable_remote_root_fails_before_copy(self, small_tree, tmp_path):
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            with pytest.raises(expressscp.RemoteDirectoryError):
                ExpressTransport(session=LocalShellSession(), quiet=True).upload(
                    [small_tree], str(locked / "app")
                )
        finally:
            locked.chmod(0o700)
