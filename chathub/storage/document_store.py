"""JSON documents on disk guarded by process-wide and cross-process locks.

Every document ``<name>`` lives at ``<root>/<name>.json`` with a sibling
``<name>.lock`` file that carries the ``flock`` advisory lock. Inside this
process a readers/writer lock per path serializes threads before they touch the
file lock, so exclusive sections over one path never overlap, whether the
contenders are threads, asyncio tasks (via ``asyncio.to_thread``) or other
processes sharing the same root.

Writes go to a temporary file in the same directory and are moved into place
with ``os.replace``; readers, locked or not, observe either the previous or the
next version of a document, never a partial one. A missing, empty or corrupt
document reads as a fresh copy of the caller's default.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import fcntl
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from chathub.logging import logger
from chathub.services.exceptions import LockUnavailable, PersistFailed

T = TypeVar("T")


class _ReadWriteLock:
    """Many readers or a single writer among the threads of this process."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self, timeout: float) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._writer, timeout):
                return False
            self._readers += 1
            return True

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._writer and self._readers == 0, timeout):
                return False
            self._writer = True
            return True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class DocumentHandle:
    """Mutable view of a document inside an exclusive section."""

    def __init__(self, name: str, data: Any) -> None:
        self.name = name
        self.data = data


class LockedDocumentStore:
    def __init__(
        self,
        root: Path | str,
        *,
        lock_timeout: float = 10.0,
        poll_interval: float = 0.02,
    ) -> None:
        self.root = Path(root)
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self._thread_locks: dict[Path, _ReadWriteLock] = {}
        self._registry_lock = threading.Lock()

    def path_for(self, name: str) -> Path:
        return self.root / f"{name}.json"

    # Locked sections ---------------------------------------------------------

    @contextmanager
    def exclusive(self, name: str, default: Any = None) -> Iterator[DocumentHandle]:
        """Yield a handle whose ``data`` is persisted when the block exits cleanly."""

        with self._locked(name, exclusive=True) as path:
            handle = DocumentHandle(name, self._read(path, default))
            yield handle
            self._write(path, handle.data)

    @contextmanager
    def shared(self, name: str, default: Any = None) -> Iterator[Any]:
        with self._locked(name, exclusive=False) as path:
            yield self._read(path, default)

    def with_exclusive_lock(self, name: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Run ``fn`` on the current document and persist whatever it returns."""

        with self.exclusive(name, default) as handle:
            handle.data = fn(handle.data)
        return handle.data

    def with_shared_lock(self, name: str, fn: Callable[[Any], T], default: Any = None) -> T:
        with self.shared(name, default) as document:
            return fn(document)

    def read_unlocked(self, name: str, default: Any = None) -> Any:
        return self._read(self.path_for(name), default)

    async def update(self, name: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        return await asyncio.to_thread(self.with_exclusive_lock, name, fn, default)

    async def read(
        self,
        name: str,
        fn: Callable[[Any], T] | None = None,
        default: Any = None,
    ) -> T | Any:
        return await asyncio.to_thread(self.with_shared_lock, name, fn or _identity, default)

    # Internal helpers ---------------------------------------------------------

    def _thread_lock(self, path: Path) -> _ReadWriteLock:
        key = path.resolve()
        with self._registry_lock:
            lock = self._thread_locks.get(key)
            if lock is None:
                lock = self._thread_locks[key] = _ReadWriteLock()
            return lock

    @contextmanager
    def _locked(self, name: str, *, exclusive: bool) -> Iterator[Path]:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        deadline = time.monotonic() + self.lock_timeout
        thread_lock = self._thread_lock(path)
        if exclusive:
            acquired = thread_lock.acquire_write(self.lock_timeout)
        else:
            acquired = thread_lock.acquire_read(self.lock_timeout)
        if not acquired:
            logger.warning("document_lock_timeout", document=name, exclusive=exclusive, scope="process")
            raise LockUnavailable(f"Document '{name}' is busy, try again.")

        try:
            try:
                fd = os.open(path.with_suffix(".lock"), os.O_RDWR | os.O_CREAT, 0o644)
            except OSError as exc:
                logger.error("document_lock_open_failed", document=name, error=str(exc))
                raise LockUnavailable(f"Document '{name}' cannot be locked.") from exc
            try:
                self._acquire_file_lock(fd, name=name, exclusive=exclusive, deadline=deadline)
                try:
                    yield path
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        finally:
            if exclusive:
                thread_lock.release_write()
            else:
                thread_lock.release_read()

    def _acquire_file_lock(self, fd: int, *, name: str, exclusive: bool, deadline: float) -> None:
        operation = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
        while True:
            try:
                fcntl.flock(fd, operation)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    logger.warning(
                        "document_lock_timeout", document=name, exclusive=exclusive, scope="file"
                    )
                    raise LockUnavailable(f"Document '{name}' is busy, try again.") from None
                time.sleep(self.poll_interval)
            except OSError as exc:
                logger.error("document_lock_failed", document=name, error=str(exc))
                raise LockUnavailable(f"Document '{name}' cannot be locked.") from exc

    def _read(self, path: Path, default: Any) -> Any:
        fallback = {} if default is None else default
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return copy.deepcopy(fallback)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("document_unreadable", path=str(path), error=str(exc))
            return copy.deepcopy(fallback)

        if not raw.strip():
            return copy.deepcopy(fallback)
        try:
            document = json.loads(raw)
        except ValueError as exc:
            logger.warning("document_corrupt", path=str(path), error=str(exc))
            return copy.deepcopy(fallback)
        if not isinstance(document, type(fallback)):
            logger.warning(
                "document_unexpected_type",
                path=str(path),
                expected=type(fallback).__name__,
                found=type(document).__name__,
            )
            return copy.deepcopy(fallback)
        return document

    def _write(self, path: Path, document: Any) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, ensure_ascii=False, indent=2)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as exc:
            logger.error("document_persist_failed", path=str(path), error=str(exc))
            raise PersistFailed(f"Could not persist '{path.stem}'.") from exc


def _identity(document: Any) -> Any:
    return document


__all__ = ["DocumentHandle", "LockedDocumentStore"]
