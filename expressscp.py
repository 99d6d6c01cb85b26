#!/usr/bin/env python3
"""
MIT No Attribution License (MIT-0)

Copyright (c) 2026 Scott Morrison

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF
CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR
THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

from __future__ import annotations

import enum
import io
import os
import queue
import shlex
import stat
import subprocess
import sys
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator, Protocol, Sequence, Union

VERSION = "ExpressSCP/1.0.0"
ARCHIVE_SUFFIX = ".tgz"
DEFAULT_MAX_WORKERS = 10
TOOLS_CHECK_COMMAND = "(which tar && which gzip) > /dev/null"

# ssh option flags understood by the CLI; each consumes a value.
CLI_OPTS_WITH_VALUE = {"-P", "-i", "-o", "-l", "-j"}

PathLike = Union[str, "os.PathLike[str]"]


class ExpressError(RuntimeError):
    """Base class for every failure raised by expressscp."""


class ArchiveBuildError(ExpressError):
    """A local directory could not be walked or serialized."""


class RemoteDirectoryError(ExpressError):
    """The remote destination directory could not be created."""


class TransferError(ExpressError):
    """One transfer item failed to upload, extract or clean up."""

    def __init__(self, local_path: str, reason: str) -> None:
        super().__init__(f"{local_path}: {reason}")
        self.local_path = local_path
        self.reason = reason


class TransferCancelled(TransferError):
    """A transfer item was aborted because cancellation was requested."""


class AggregateTransferError(ExpressError):
    """Raised after the worker pool drains when any item failed."""

    def __init__(self, failures: list[FailureRecord], report: TransferReport) -> None:
        self.failures = failures
        self.report = report
        details = "; ".join(f"{f.local_path} ({f.error})" for f in failures)
        super().__init__(
            f"transfer incomplete: success={report.successful}, failed={len(failures)}: {details}"
        )


class EntryType(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


class ItemState(enum.Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ArchiveEntry:
    """One filesystem object as it is written into an archive."""

    path_name: str
    file_type: EntryType
    mode: int
    access_time: int
    mod_time: int
    size: int | None = None
    payload: bytes | None = None


@dataclass
class TransferItem:
    local_path: Path
    is_archive: bool
    state: ItemState = ItemState.PENDING


@dataclass
class FailureRecord:
    local_path: str
    error: str
    cancelled: bool = False


@dataclass
class CopyOptions:
    recursive: bool = False
    preserve: bool = False
    limit_kbit: int | None = None


@dataclass
class SshOptions:
    """Connection settings shared by every ssh and scp invocation."""

    host: str
    user: str | None = None
    port: int = 22
    identity_file: str | None = None
    ssh_options: list[str] = field(default_factory=list)
    timeout: float | None = None
    control_path: str | None = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


@dataclass
class ExpressOptions:
    port: int | None
    identity_file: str | None
    ssh_options: list[str]
    limit_kbit: int | None
    max_workers: int
    timeout: float | None
    quiet: bool
    stamp_build_time: bool
    keep_archives: bool
    show_version: bool


@dataclass
class TransferReport:
    workers: int
    items: list[TransferItem]
    failures: list[FailureRecord] = field(default_factory=list)
    fallback: bool = False

    @property
    def successful(self) -> int:
        return sum(1 for item in self.items if item.state is ItemState.DONE)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass
class ErrorStats:
    by_message: dict[str, int]
    by_category: dict[str, int]


def _usage_text() -> str:
    """Return CLI help text shared by --help and argument error paths."""

    return (
        "usage: expressscp [-qV] [-P port] [-i identity_file] [-o ssh_option]\n"
        "                  [-l limit] [-j max_workers] [--timeout seconds]\n"
        "                  [--stamp-build-time] [--keep-archives]\n"
        "                  source ... [user@]host:dir\n\n"
        "options:\n"
        "  -P PORT                 ssh port (default: 22)\n"
        "  -i FILE                 identity file passed to ssh and scp\n"
        "  -o OPTION               ssh option, may be repeated\n"
        "  -l LIMIT                total bandwidth limit in Kbit/s, split across workers\n"
        f"  -j N                    max parallel uploads (default: {DEFAULT_MAX_WORKERS})\n"
        "      --timeout SECONDS   abort any single ssh/scp command after SECONDS\n"
        "      --stamp-build-time  stamp archive entries with the build time instead of file times\n"
        "      --keep-archives     keep the local .tgz archives after upload\n"
        "  -q                      quiet mode\n"
        "  -V, --version           show expressscp version and exit\n\n"
        "notes:\n"
        "  each source directory is packed into <dir>.tgz next to it, uploaded and\n"
        "  extracted on the remote host; plain files are copied as-is.\n"
        "  if the remote host has no tar/gzip, sources are copied one by one with scp -r.\n"
    )


def _status(msg: str, quiet: bool = False) -> None:
    """Emit a namespaced status line unless quiet mode is active."""

    if not quiet:
        print(f"[expressscp] {msg}", flush=True)


def _join_remote_path(base: str, subpath: str) -> str:
    """Join remote path fragments while preserving user-provided separators."""

    if not base:
        return subpath
    if base.endswith("/"):
        return base + subpath
    return f"{base}/{subpath}"


def _quote_remote_path(path: str) -> str:
    """Quote a remote path for a POSIX shell, keeping ~ expansion."""

    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        rest = path[2:]
        # Quote for double-quoted shell context.
        rest = rest.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
        return f'"$HOME/{rest}"'
    return shlex.quote(path)


def _is_remote_spec(spec: str) -> bool:
    """Heuristic check for [user@]host:path operands."""

    if ":" not in spec:
        return False
    if spec.startswith("/") or spec.startswith("./") or spec.startswith("../"):
        return False
    idx = spec.find(":")
    if idx == 1 and spec[0].isalpha():
        return False
    if "/" in spec[:idx]:
        return False
    return True


def _split_remote_spec(spec: str) -> tuple[str | None, str, str]:
    """Split a [user@]host:path target into user, host and remote path."""

    if spec.startswith("scp://"):
        raise RuntimeError("scp:// targets are not supported")
    idx = spec.find(":")
    if idx <= 0:
        raise RuntimeError(f"Invalid remote target: {spec}")
    user_host, remote_path = spec[:idx], spec[idx + 1 :]
    user: str | None = None
    host = user_host
    if "@" in user_host:
        user, host = user_host.rsplit("@", 1)
        if not user or not host:
            raise RuntimeError(f"Invalid remote target: {spec}")
    return user, host, remote_path or "."


# ---------------------------------------------------------------------------
# Archive building
# ---------------------------------------------------------------------------


def _raise_walk_error(err: OSError) -> None:
    raise err


def _entry_times(st: os.stat_result, build_time: int | None) -> tuple[int, int]:
    if build_time is not None:
        return build_time, build_time
    return int(st.st_atime), int(st.st_mtime)


def _iter_archive_entries(
    source: Path,
    *,
    stamp_build_time: bool = False,
    quiet: bool = False,
) -> Iterator[ArchiveEntry]:
    """Walk ``source`` and yield one ArchiveEntry per file and directory.

    Path names are relative to the parent of ``source`` so the directory name
    itself is the first segment. Names are visited in sorted order, parents
    before children. Symlinks and special files are skipped.
    """

    base = source.parent
    build_time = int(time.time()) if stamp_build_time else None

    def rel_name(path: Path) -> str:
        return path.relative_to(base).as_posix()

    st = os.stat(source)
    atime, mtime = _entry_times(st, build_time)
    yield ArchiveEntry(
        path_name=rel_name(source),
        file_type=EntryType.DIRECTORY,
        mode=stat.S_IMODE(st.st_mode),
        access_time=atime,
        mod_time=mtime,
    )

    for root, dnames, fnames in os.walk(source, onerror=_raise_walk_error):
        root_p = Path(root)
        kept_dnames: list[str] = []
        for d in sorted(dnames):
            dir_path = root_p / d
            st = os.lstat(dir_path)
            if stat.S_ISLNK(st.st_mode):
                _status(f"skipping symlinked directory: {dir_path}", quiet=quiet)
                continue
            kept_dnames.append(d)
            atime, mtime = _entry_times(st, build_time)
            yield ArchiveEntry(
                path_name=rel_name(dir_path),
                file_type=EntryType.DIRECTORY,
                mode=stat.S_IMODE(st.st_mode),
                access_time=atime,
                mod_time=mtime,
            )
        dnames[:] = kept_dnames

        for f in sorted(fnames):
            file_path = root_p / f
            st = os.lstat(file_path)
            if not stat.S_ISREG(st.st_mode):
                _status(f"skipping non-regular file: {file_path}", quiet=quiet)
                continue
            payload = file_path.read_bytes()
            atime, mtime = _entry_times(st, build_time)
            yield ArchiveEntry(
                path_name=rel_name(file_path),
                file_type=EntryType.FILE,
                mode=stat.S_IMODE(st.st_mode),
                access_time=atime,
                mod_time=mtime,
                size=len(payload),
                payload=payload,
            )


def _tarinfo_for(entry: ArchiveEntry) -> tarfile.TarInfo:
    """Translate an ArchiveEntry into a PAX tar header."""

    info = tarfile.TarInfo(entry.path_name)
    info.mode = entry.mode
    info.mtime = entry.mod_time
    info.pax_headers = {"atime": str(entry.access_time)}
    if entry.file_type is EntryType.DIRECTORY:
        info.type = tarfile.DIRTYPE
        info.size = 0
    else:
        info.type = tarfile.REGTYPE
        info.size = entry.size or 0
    return info


def build_archive(source: PathLike, *, quiet: bool = False, stamp_build_time: bool = False) -> Path:
    """Pack the directory ``source`` into ``<parent>/<name>.tgz`` and return its path.

    Raises ArchiveBuildError when the directory or any file below it cannot be
    read, or when the archive cannot be written. A partial archive is removed.
    """

    # Normalise without following links so a symlinked directory keeps its own name.
    source_path = Path(os.path.abspath(source))
    if not source_path.is_dir():
        raise ArchiveBuildError(f"cannot archive {source_path}: not a directory")

    archive_path = source_path.parent / f"{source_path.name}{ARCHIVE_SUFFIX}"
    file_count = 0
    dir_count = 0
    try:
        with tarfile.open(archive_path, "w:gz", format=tarfile.PAX_FORMAT) as tar:
            for entry in _iter_archive_entries(source_path, stamp_build_time=stamp_build_time, quiet=quiet):
                if entry.file_type is EntryType.FILE:
                    file_count += 1
                    tar.addfile(_tarinfo_for(entry), io.BytesIO(entry.payload or b""))
                else:
                    dir_count += 1
                    tar.addfile(_tarinfo_for(entry))
    except OSError as e:
        try:
            archive_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as cleanup_err:
            _status(f"could not remove partial archive {archive_path}: {cleanup_err}", quiet=quiet)
        raise ArchiveBuildError(f"failed to archive {source_path}: {e}") from e

    _status(f"archived {source_path} -> {archive_path} (files={file_count}, dirs={dir_count})", quiet=quiet)
    return archive_path


# ---------------------------------------------------------------------------
# Remote session
# ---------------------------------------------------------------------------


class RemoteSession(Protocol):
    """Command execution and file copy on one remote host."""

    def execute(self, command: str) -> str:
        ...

    def copy(self, local_path: PathLike, remote_path: str, options: CopyOptions | None = None) -> None:
        ...

    def close(self) -> None:
        ...


def _stderr_tail(stderr: str | None) -> str:
    """Keep a short slice of stderr so root causes stay visible."""

    if not stderr:
        return ""
    lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
    if not lines:
        return ""
    return ": " + " | ".join(lines[-3:])


class SshSession:
    """RemoteSession backed by the system ssh and scp binaries."""

    def __init__(self, options: SshOptions, *, quiet: bool = False) -> None:
        self.options = options
        self.quiet = quiet

    def _common_args(self) -> list[str]:
        args: list[str] = []
        if self.options.identity_file:
            args.extend(["-i", self.options.identity_file])
        for opt in self.options.ssh_options:
            args.extend(["-o", opt])
        if self.options.control_path:
            args.extend(
                [
                    "-o", "ControlMaster=auto",
                    "-o", f"ControlPath={self.options.control_path}",
                    "-o", "ControlPersist=60",
                ]
            )
        return args

    def ssh_command(self, command: str) -> list[str]:
        return ["ssh", "-p", str(self.options.port), *self._common_args(), self.options.destination, command]

    def scp_command(self, local_path: PathLike, remote_path: str, options: CopyOptions | None = None) -> list[str]:
        opts = options or CopyOptions()
        cmd = ["scp", "-P", str(self.options.port), *self._common_args()]
        if opts.recursive:
            cmd.append("-r")
        if opts.preserve:
            cmd.append("-p")
        if opts.limit_kbit is not None:
            cmd.extend(["-l", str(opts.limit_kbit)])
        cmd.extend([os.fspath(local_path), f"{self.options.destination}:{remote_path}"])
        return cmd

    def _run(self, cmd: list[str], what: str) -> subprocess.CompletedProcess[str]:
        try:
            p = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.options.timeout,
            )
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"{what} timed out after {self.options.timeout}s") from None
        except OSError as e:
            raise RuntimeError(f"{what} could not be started: {e}") from e
        if p.returncode != 0:
            raise RuntimeError(f"{what} failed with exit code {p.returncode}{_stderr_tail(p.stderr)}")
        return p

    def execute(self, command: str) -> str:
        _status(f"running on {self.options.host}: {command}", quiet=self.quiet)
        return self._run(self.ssh_command(command), "ssh command").stdout

    def copy(self, local_path: PathLike, remote_path: str, options: CopyOptions | None = None) -> None:
        cmd = self.scp_command(local_path, remote_path, options)
        _status(f"running: {' '.join(shlex.quote(x) for x in cmd)}", quiet=self.quiet)
        self._run(cmd, "scp")

    def close(self) -> None:
        """Shut down the multiplexed master connection, if one was requested."""

        if not self.options.control_path:
            return
        cmd = [
            "ssh",
            "-p", str(self.options.port),
            "-o", f"ControlPath={self.options.control_path}",
            "-O", "exit",
            self.options.destination,
        ]
        # No master may be running yet; a failed exit request is harmless.
        p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        if p.returncode != 0:
            _status(f"no control master to close for {self.options.host}", quiet=self.quiet)


# ---------------------------------------------------------------------------
# Remote commands
# ---------------------------------------------------------------------------


class RemoteCommands:
    """The handful of shell commands the transfer needs on the remote host."""

    def __init__(self, session: RemoteSession, *, quiet: bool = False) -> None:
        self.session = session
        self.quiet = quiet

    def check_tools_available(self) -> bool:
        try:
            self.session.execute(TOOLS_CHECK_COMMAND)
        except RuntimeError as e:
            _status(f"remote host does not provide tar and gzip: {e}", quiet=self.quiet)
            return False
        return True

    def ensure_remote_directory(self, remote_path: str) -> None:
        try:
            self.session.execute(f"mkdir -p {_quote_remote_path(remote_path)}")
        except RuntimeError as e:
            raise RemoteDirectoryError(f"failed to create remote directory {remote_path}: {e}") from e

    def extract_and_cleanup(self, archive_basename: str, remote_dir: str) -> None:
        """Extract an uploaded archive in place, then delete it.

        The delete is attempted even when extraction failed; the extraction
        error wins over a cleanup error.
        """

        remote_archive = _join_remote_path(remote_dir, archive_basename)
        quoted_archive = _quote_remote_path(remote_archive)
        extract_error: RuntimeError | None = None
        try:
            self.session.execute(f"tar -xzf {quoted_archive} -C {_quote_remote_path(remote_dir)}")
        except RuntimeError as e:
            extract_error = e

        try:
            self.session.execute(f"rm -f {quoted_archive}")
        except RuntimeError as e:
            if extract_error is None:
                raise RuntimeError(f"cleanup of {remote_archive} failed: {e}") from e
            _status(f"cleanup of {remote_archive} also failed: {e}", quiet=self.quiet)

        if extract_error is not None:
            raise RuntimeError(f"extraction of {remote_archive} failed: {extract_error}") from extract_error


# ---------------------------------------------------------------------------
# Transfer orchestration
# ---------------------------------------------------------------------------


def _classify_error_message(msg: str) -> str:
    """Map raw error text to a stable diagnostic category."""

    m = msg.lower()
    if "cancelled" in m:
        return "cancelled"
    if "timed out after" in m:
        return "timeout"
    if "permission denied" in m or "publickey" in m or "authentication" in m:
        return "auth_or_permission"
    if "host key verification failed" in m:
        return "host_key"
    if "connection refused" in m or "connection timed out" in m or "no route to host" in m:
        return "network_connectivity"
    if "name or service not known" in m or "could not resolve hostname" in m:
        return "dns_resolution"
    if "extraction of" in m:
        return "remote_extract"
    if "cleanup of" in m:
        return "remote_cleanup"
    if "scp failed" in m:
        return "upload"
    return "other"


def _summarize_errors(failures: list[FailureRecord]) -> ErrorStats:
    """Aggregate per-item errors into compact summary counters."""

    by_message: dict[str, int] = {}
    by_category: dict[str, int] = {}
    for f in failures:
        by_message[f.error] = by_message.get(f.error, 0) + 1
        cat = _classify_error_message(f.error)
        by_category[cat] = by_category.get(cat, 0) + 1
    return ErrorStats(by_message=by_message, by_category=by_category)


def _pool_size(item_count: int, max_workers: int = DEFAULT_MAX_WORKERS) -> int:
    return min(item_count, max(1, max_workers))


def _classify_locals(
    locals_: Sequence[Path],
    *,
    quiet: bool = False,
    stamp_build_time: bool = False,
    built: list[Path] | None = None,
) -> list[TransferItem]:
    """Archive every directory and return one TransferItem per top-level path.

    Raises ArchiveBuildError before building anything when two paths would
    land on the same remote name.

    Each archive path is appended to ``built`` as soon as it exists, so a
    caller can remove them even when a later directory fails.
    """

    seen: dict[str, Path] = {}
    for local in locals_:
        name = Path(os.path.abspath(local)).name
        remote_name = name + ARCHIVE_SUFFIX if local.is_dir() else name
        if remote_name in seen:
            raise ArchiveBuildError(
                f"{local} and {seen[remote_name]} would both upload as {remote_name}"
            )
        seen[remote_name] = local

    items: list[TransferItem] = []
    for local in locals_:
        if local.is_dir():
            archive = build_archive(local, quiet=quiet, stamp_build_time=stamp_build_time)
            if built is not None:
                built.append(archive)
            items.append(TransferItem(local_path=archive, is_archive=True))
        else:
            items.append(TransferItem(local_path=local, is_archive=False))
    return items


def _transfer_one(
    item: TransferItem,
    *,
    session: RemoteSession,
    commands: RemoteCommands,
    remote: str,
    copy_options: CopyOptions,
    cancel_event: threading.Event,
) -> None:
    """Upload one item and, for archives, extract and clean it up remotely."""

    local = str(item.local_path)
    item.state = ItemState.UPLOADING
    try:
        session.copy(item.local_path, remote, copy_options)
    except (RuntimeError, OSError) as e:
        item.state = ItemState.FAILED
        raise TransferError(local, f"upload failed: {e}") from e

    if not item.is_archive:
        item.state = ItemState.DONE
        return

    item.state = ItemState.UPLOADED
    if cancel_event.is_set():
        item.state = ItemState.FAILED
        raise TransferCancelled(local, "cancelled before extraction")

    item.state = ItemState.EXTRACTING
    try:
        commands.extract_and_cleanup(item.local_path.name, remote)
    except (RuntimeError, OSError) as e:
        item.state = ItemState.FAILED
        raise TransferError(local, str(e)) from e
    item.state = ItemState.DONE


def _transfer_items_parallel(
    *,
    session: RemoteSession,
    items: list[TransferItem],
    remote: str,
    max_workers: int = DEFAULT_MAX_WORKERS,
    bw_limit: int | None = None,
    quiet: bool = False,
    cancel_event: threading.Event | None = None,
) -> TransferReport:
    """Upload items through a bounded pool of worker threads.

    Every failure is recorded and the pool keeps going; the caller decides
    what to do with the returned report.
    """

    active_workers = _pool_size(len(items), max_workers)
    report = TransferReport(workers=active_workers, items=items)
    if active_workers == 0:
        return report

    copy_options = CopyOptions()
    if bw_limit is not None:
        # Split the requested cap across active workers to preserve total limit.
        copy_options.limit_kbit = max(1, bw_limit // active_workers)
        _status(
            f"applying -l split: total={bw_limit} Kbit/s, workers={active_workers}, "
            f"per-worker={copy_options.limit_kbit}",
            quiet=quiet,
        )

    commands = RemoteCommands(session, quiet=quiet)
    cancel = cancel_event if cancel_event is not None else threading.Event()
    task_queue: queue.Queue[TransferItem] = queue.Queue()
    for item in items:
        task_queue.put(item)

    lock = threading.Lock()
    failures: list[FailureRecord] = []

    def record(err: TransferError) -> None:
        with lock:
            failures.append(
                FailureRecord(
                    local_path=err.local_path,
                    error=err.reason,
                    cancelled=isinstance(err, TransferCancelled),
                )
            )

    def worker_fn() -> None:
        while True:
            try:
                item = task_queue.get_nowait()
            except queue.Empty:
                return
            try:
                if cancel.is_set():
                    item.state = ItemState.FAILED
                    raise TransferCancelled(str(item.local_path), "cancelled before upload")
                _status(f"transferring {item.local_path} to {remote}", quiet=quiet)
                _transfer_one(
                    item,
                    session=session,
                    commands=commands,
                    remote=remote,
                    copy_options=copy_options,
                    cancel_event=cancel,
                )
            except TransferError as e:
                record(e)
            except Exception as e:
                # A session may raise anything; the item still fails on its own.
                item.state = ItemState.FAILED
                record(TransferError(str(item.local_path), f"unexpected {type(e).__name__}: {e}"))
            finally:
                task_queue.task_done()

    _status(f"starting parallel upload: items={len(items)}, workers={active_workers}", quiet=quiet)
    threads = [
        threading.Thread(target=worker_fn, name=f"expressscp-worker-{i}", daemon=True)
        for i in range(active_workers)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    report.failures = failures
    return report


def _report_failures(failures: list[FailureRecord], quiet: bool) -> None:
    for failure in failures:
        _status(f"failed item: {failure.local_path} error={failure.error}", quiet=quiet)
    stats = _summarize_errors(failures)
    for cat, count in sorted(stats.by_category.items(), key=lambda kv: kv[1], reverse=True):
        _status(f"failure category: {cat} count={count}", quiet=quiet)


def _sequential_upload(session: RemoteSession, locals_: Sequence[Path], remote: str) -> None:
    """Plain scp of each path in turn; used when the remote host cannot extract archives."""

    for local in locals_:
        session.copy(local, remote, CopyOptions(recursive=local.is_dir(), preserve=True))


FallbackStrategy = Callable[[RemoteSession, Sequence[Path], str], None]


class ExtendedConfigConsumer(Protocol):
    """A collaborator that can run with this transport's connection settings."""

    supports_extended_config: bool

    def use_runner_options(self, provider: Callable[[], dict[str, object]]) -> None:
        ...


class ExpressTransport:
    """Archive-and-ship uploads over one owned remote session."""

    def __init__(
        self,
        options: SshOptions | None = None,
        *,
        session: RemoteSession | None = None,
        session_factory: Callable[..., RemoteSession] = SshSession,
        max_workers: int = DEFAULT_MAX_WORKERS,
        limit_kbit: int | None = None,
        quiet: bool = False,
        stamp_build_time: bool = False,
        fallback: FallbackStrategy | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if options is None and session is None:
            raise ValueError("either options or session is required")
        self.options = options
        self.max_workers = max_workers
        self.limit_kbit = limit_kbit
        self.quiet = quiet
        self.stamp_build_time = stamp_build_time
        self._session_factory = session_factory
        self._session = session
        self._fallback = fallback or _sequential_upload
        self.archives: list[Path] = []

    @property
    def session(self) -> RemoteSession:
        if self._session is None:
            if self.options is None:
                raise ExpressError("no session and no connection options to open one")
            return self.reconnect(self.options)
        return self._session

    def reconnect(self, options: SshOptions) -> RemoteSession:
        """Close the current session, if any, and open a new one for ``options``."""

        if self._session is not None:
            _status("closing previous session", quiet=self.quiet)
            self._session.close()
            self._session = None
        self.options = options
        self._session = self._session_factory(options, quiet=self.quiet)
        return self._session

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def runner_options(self) -> dict[str, object]:
        """Connection settings a collaborator needs to reach the same host."""

        if self.options is None:
            return {}
        return {
            "host": self.options.host,
            "user": self.options.user,
            "port": self.options.port,
            "key_files": [self.options.identity_file] if self.options.identity_file else [],
            "ssh_options": list(self.options.ssh_options),
        }

    def finalize_config(self, consumer: ExtendedConfigConsumer) -> bool:
        if not consumer.supports_extended_config:
            return False
        consumer.use_runner_options(self.runner_options)
        return True

    def upload(
        self,
        locals_: PathLike | Iterable[PathLike],
        remote: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> TransferReport:
        """Upload files and directories to ``remote``.

        Directories are archived locally, uploaded in parallel with plain files
        and extracted on the remote host. Raises ArchiveBuildError or
        RemoteDirectoryError before any upload starts, and
        AggregateTransferError after all workers finished if any item failed.
        Archives built by the call are listed in ``self.archives`` and are
        left on disk.
        """

        if isinstance(locals_, (str, os.PathLike)):
            paths = [Path(locals_)]
        else:
            paths = [Path(p) for p in locals_]

        session = self.session
        commands = RemoteCommands(session, quiet=self.quiet)
        if not commands.check_tools_available():
            _status("falling back to sequential copy", quiet=self.quiet)
            self._fallback(session, paths, remote)
            return TransferReport(workers=0, items=[], fallback=True)

        self.archives = []
        items = _classify_locals(
            paths,
            quiet=self.quiet,
            stamp_build_time=self.stamp_build_time,
            built=self.archives,
        )
        commands.ensure_remote_directory(remote)

        report = _transfer_items_parallel(
            session=session,
            items=items,
            remote=remote,
            max_workers=self.max_workers,
            bw_limit=self.limit_kbit,
            quiet=self.quiet,
            cancel_event=cancel_event,
        )
        if report.failures:
            _report_failures(report.failures, self.quiet)
            raise AggregateTransferError(report.failures, report)
        _status(f"upload complete: items={len(items)}", quiet=self.quiet)
        return report


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _parse_int_option(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid {name} value: {raw}") from None


def _extract_express_options(argv: list[str]) -> tuple[ExpressOptions, list[str]]:
    """Parse expressscp flags and return them with the remaining operands."""

    port: int | None = None
    identity_file: str | None = None
    ssh_options: list[str] = []
    limit_kbit: int | None = None
    max_workers = DEFAULT_MAX_WORKERS
    timeout: float | None = None
    quiet = False
    stamp_build_time = False
    keep_archives = False
    show_version = False
    operands: list[str] = []

    i = 0
    end_of_opts = False
    while i < len(argv):
        a = argv[i]
        if end_of_opts or not a.startswith("-") or a == "-":
            operands.append(a)
        elif a == "--":
            end_of_opts = True
        elif a in {"--version", "-V"}:
            show_version = True
        elif a == "-q":
            quiet = True
        elif a == "--stamp-build-time":
            stamp_build_time = True
        elif a == "--keep-archives":
            keep_archives = True
        elif a == "--timeout" or a.startswith("--timeout="):
            if a == "--timeout":
                i += 1
                if i >= len(argv):
                    raise RuntimeError("--timeout requires a value")
                raw = argv[i]
            else:
                raw = a.split("=", 1)[1]
            try:
                timeout = float(raw)
            except ValueError:
                raise RuntimeError(f"Invalid --timeout value: {raw}") from None
        elif a[:2] in CLI_OPTS_WITH_VALUE:
            opt = a[:2]
            if len(a) > 2:
                raw = a[2:]
            else:
                i += 1
                if i >= len(argv):
                    raise RuntimeError(f"{opt} requires a value")
                raw = argv[i]
            if opt == "-P":
                port = _parse_int_option("-P", raw)
            elif opt == "-i":
                identity_file = raw
            elif opt == "-o":
                ssh_options.append(raw)
            elif opt == "-l":
                limit_kbit = _parse_int_option("-l", raw)
            elif opt == "-j":
                max_workers = _parse_int_option("-j", raw)
        else:
            raise RuntimeError(f"Unsupported option: {a}")
        i += 1

    if port is not None and not 1 <= port <= 65535:
        raise RuntimeError("port must be between 1 and 65535")
    if limit_kbit is not None and limit_kbit < 1:
        raise RuntimeError("-l must be >= 1")
    if max_workers < 1:
        raise RuntimeError("max workers must be >= 1")
    if timeout is not None and timeout <= 0:
        raise RuntimeError("timeout must be > 0")

    return ExpressOptions(
        port=port,
        identity_file=identity_file,
        ssh_options=ssh_options,
        limit_kbit=limit_kbit,
        max_workers=max_workers,
        timeout=timeout,
        quiet=quiet,
        stamp_build_time=stamp_build_time,
        keep_archives=keep_archives,
        show_version=show_version,
    ), operands


def _remove_local_archives(archives: list[Path], quiet: bool) -> None:
    for archive in archives:
        try:
            archive.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            _status(f"could not remove local archive {archive}: {e}", quiet=quiet)


def main() -> int:
    """CLI entrypoint for expressscp."""

    if len(sys.argv) == 1 or sys.argv[1] in {"-h", "--help"}:
        print(_usage_text())
        return 0

    try:
        opts, operands = _extract_express_options(sys.argv[1:])
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 2

    if opts.show_version:
        print(VERSION)
        return 0

    if len(operands) < 2:
        print("At least one source and a [user@]host:dir target are required.", file=sys.stderr)
        print(_usage_text(), file=sys.stderr)
        return 2

    *sources, target = operands
    if not _is_remote_spec(target):
        print(f"Target must be a remote [user@]host:dir spec: {target}", file=sys.stderr)
        return 2
    for src in sources:
        if _is_remote_spec(src):
            print(f"Remote sources are not supported: {src}", file=sys.stderr)
            return 2

    try:
        user, host, remote_dir = _split_remote_spec(target)
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 2

    ssh_opts = SshOptions(
        host=host,
        user=user,
        port=opts.port or 22,
        identity_file=opts.identity_file,
        ssh_options=opts.ssh_options,
        timeout=opts.timeout,
    )
    transport = ExpressTransport(
        ssh_opts,
        max_workers=opts.max_workers,
        limit_kbit=opts.limit_kbit,
        quiet=opts.quiet,
        stamp_build_time=opts.stamp_build_time,
    )

    try:
        transport.upload(sources, remote_dir)
        return 0
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        if not opts.keep_archives:
            _remove_local_archives(transport.archives, opts.quiet)
        transport.close()


if __name__ == "__main__":
    raise SystemExit(main())
