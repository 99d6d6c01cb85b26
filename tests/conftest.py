"""
Shared pytest fixtures and helpers for the ExpressSCP test suite.
"""

import os
import pathlib
import shutil
import subprocess
import sys
import threading

import pytest

# Ensure the project root is importable regardless of how
# pytest is invoked so every test file can simply do
# ``import expressscp`` or ``from expressscp import ...``.
_PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from expressscp import CopyOptions, TOOLS_CHECK_COMMAND  # noqa: E402


# ---------------------------------------------------------------------------
# Helper sessions
# ---------------------------------------------------------------------------

class FakeSession:
    """Thread-safe RemoteSession double that records every call in order.

    ``fail_commands`` maps a command prefix to the error raised when a
    command starting with it is executed. ``fail_copies`` holds local
    basenames whose copy should fail.
    """

    def __init__(self, tools_available=True, fail_commands=None, fail_copies=None, copy_delay=0.0):
        self.tools_available = tools_available
        self.fail_commands = dict(fail_commands or {})
        self.fail_copies = set(fail_copies or ())
        self.copy_delay = copy_delay
        self.calls = []
        self.copy_threads = set()
        self.closed = False
        self._lock = threading.Lock()

    def execute(self, command):
        with self._lock:
            self.calls.append(("execute", command))
        if command == TOOLS_CHECK_COMMAND and not self.tools_available:
            raise RuntimeError("ssh command failed with exit code 1")
        for prefix, message in self.fail_commands.items():
            if command.startswith(prefix):
                raise RuntimeError(message)
        return ""

    def copy(self, local_path, remote_path, options=None):
        with self._lock:
            self.calls.append(("copy", str(local_path), remote_path))
            self.copy_threads.add(threading.current_thread().name)
        if self.copy_delay:
            threading.Event().wait(self.copy_delay)
        if pathlib.Path(local_path).name in self.fail_copies:
            raise RuntimeError("scp failed with exit code 1: Connection refused")

    def close(self):
        self.closed = True

    @property
    def commands(self):
        return [c[1] for c in self.calls if c[0] == "execute"]

    @property
    def copies(self):
        return [c for c in self.calls if c[0] == "copy"]


class LocalShellSession:
    """RemoteSession that treats the local machine as the remote host.

    Commands run through ``sh -c`` and copies land in the local filesystem,
    so the real tar/gzip toolchain extracts what the archive builder wrote.
    """

    def __init__(self):
        self.commands = []
        self.closed = False

    def execute(self, command):
        self.commands.append(command)
        p = subprocess.run(["sh", "-c", command], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        if p.returncode != 0:
            raise RuntimeError(f"ssh command failed with exit code {p.returncode}: {p.stderr.strip()}")
        return p.stdout

    def copy(self, local_path, remote_path, options=None):
        opts = options or CopyOptions()
        src = pathlib.Path(local_path)
        dest = pathlib.Path(remote_path) / src.name
        if src.is_dir():
            if not opts.recursive:
                raise RuntimeError(f"scp failed with exit code 1: {src}: not a regular file")
            shutil.copytree(src, dest, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dest)

    def close(self):
        self.closed = True


HAS_TAR = shutil.which("tar") is not None and shutil.which("gzip") is not None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def source_tree(tmp_path):
    """Build a representative source directory tree for archive tests."""
    base = tmp_path / "project"
    (base / "src").mkdir(parents=True)
    (base / "src" / "main.py").write_text("print('hello')")
    (base / "src" / "util.py").write_text("pass")
    (base / "bin").mkdir()
    tool = base / "bin" / "run.sh"
    tool.write_text("#!/bin/sh\necho run\n")
    os.chmod(tool, 0o755)
    (base / "data").mkdir()
    (base / "data" / "blob.bin").write_bytes(bytes(range(256)) * 4)
    (base / "data" / "empty.dat").write_bytes(b"")
    (base / "empty_dir").mkdir()
    (base / "deep" / "nested").mkdir(parents=True)
    (base / "deep" / "nested" / "file.txt").write_text("content")
    (base / "README.md").write_text("# project")
    return base


@pytest.fixture
def small_tree(tmp_path):
    """A directory ``src`` holding a 5 byte ``a.txt`` and an empty ``sub/``."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "a.txt").write_bytes(b"hello")
    (src / "sub").mkdir()
    return src
