"""Text I/O helpers: atomic writes, per-path locks and content snapshots."""

from __future__ import annotations

import hashlib
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from pathlib import Path

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}


def _path_lock(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize file access for a single process using a per-path lock."""
    with _path_lock(path):
        yield


@contextmanager
def exclusive_path(path: Path) -> Iterator[None]:
    """Hold the per-path lock without waiting.

    Raises :class:`RuntimeError` when another thread already holds it.
    """
    lock = _path_lock(path)
    if not lock.acquire(blocking=False):
        raise RuntimeError(f"{path} is already in use by another run")
    try:
        yield
    finally:
        lock.release()


def _replace(src: Path, dst: Path) -> None:
    # Windows refuses to replace a file another process has open; retry briefly.
    for attempt in range(1, _ATOMIC_REPLACE_MAX_RETRIES + 1):
        try:
            src.replace(dst)
            return
        except PermissionError:
            if attempt == _ATOMIC_REPLACE_MAX_RETRIES:
                raise
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * attempt)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* through a sibling temp file so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w", encoding=encoding, dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    tmp_path = Path(handle.name)
    try:
        with handle:
            handle.write(content)
        with locked_path(path):
            _replace(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append text under a per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)


def read_text_lenient(path: Path) -> str | None:
    """Read *path* as text without ever raising.

    Returns ``None`` when the file is missing, unreadable, or not valid
    UTF-8.  A leading byte-order mark is dropped.  Never rewrites the file.
    """
    try:
        raw = path.read_bytes()
    except OSError:
        return None
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return None


@dataclass(frozen=True, slots=True)
class FileSnapshot:
    """Point-in-time identity of a file used to detect real modifications."""

    exists: bool
    size: int = 0
    mtime_ns: int = 0
    sha256: str = ""


def snapshot_file(path: Path) -> FileSnapshot:
    """Capture existence, size, mtime and content hash of *path*."""
    try:
        stat = path.stat()
    except OSError:
        return FileSnapshot(exists=False)
    if not path.is_file():
        return FileSnapshot(exists=False)
    digest = hashlib.sha256()
    try:
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(65536), b""):
                digest.update(chunk)
    except OSError:
        return FileSnapshot(exists=False)
    return FileSnapshot(
        exists=True,
        size=stat.st_size,
        mtime_ns=stat.st_mtime_ns,
        sha256=digest.hexdigest(),
    )
