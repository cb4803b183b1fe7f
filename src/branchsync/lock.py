from __future__ import annotations

import getpass
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .cleanup import DeferredCleanup
from .fs import utcnow_iso
from .observability import log_debug, log_warning

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows
    fcntl = None  # type: ignore[assignment]


DEFAULT_MAX_AGE = 7200

_degraded_warned = False


class LockError(Exception):
    """The lock file cannot be created, read or removed."""


class LockHeldError(Exception):
    """Another live sync owns the lock. Callers treat this as "skip this run"."""

    def __init__(self, message: str, info: Optional["LockInfo"] = None):
        super().__init__(message)
        self.info = info


@dataclass(frozen=True)
class LockHandle:
    lock_path: Path
    owner_pid: int
    acquired_at: float


@dataclass(frozen=True)
class LockInfo:
    """What an observer can tell about an existing lock file."""

    path: Path
    pid: Optional[int]
    mtime: float
    age: float
    alive: bool
    stale: bool
    user: Optional[str] = None
    cwd: Optional[str] = None
    time: Optional[str] = None


def pid_is_running(pid: Optional[int]) -> bool:
    """Best-effort liveness check for a process id.

    A missing or non-positive pid is never running. On Windows ``os.kill``
    with signal 0 terminates the target, so any pid is assumed alive there.
    """
    if pid is None or pid <= 0:
        return False
    if sys.platform.startswith("win"):
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


def _parse_lock_content(content: str) -> dict:
    info: dict = {}
    content = content.strip()
    if not content:
        return info
    if content.isdigit():
        info["pid"] = int(content)
        return info
    for part in content.split():
        if "=" in part:
            key, value = part.split("=", 1)
            info[key] = value
    if "pid" in info:
        try:
            info["pid"] = int(info["pid"])
        except ValueError:
            info.pop("pid")
    return info


def read_lock_info(path: Path, max_age: float = DEFAULT_MAX_AGE) -> Optional[LockInfo]:
    """Inspect ``path`` without touching it. Returns None when no lock exists."""
    path = Path(path)
    try:
        mtime = path.stat().st_mtime
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise LockError(f"Cannot read lock file {path}: {exc}") from exc
    meta = _parse_lock_content(content)
    pid = meta.get("pid")
    age = max(0.0, time.time() - mtime)
    alive = pid_is_running(pid)
    return LockInfo(
        path=path,
        pid=pid,
        mtime=mtime,
        age=age,
        alive=alive,
        stale=age > max_age and not alive,
        user=meta.get("user"),
        cwd=meta.get("cwd"),
        time=meta.get("time"),
    )


@contextmanager
def _reclaim_guard(path: Path) -> Iterator[None]:
    """Serialise stale-lock reclamation between processes.

    Uses ``fcntl.flock`` on a sibling guard file. Platforms without it fall
    back to unguarded reclamation and a one-time degraded-mode warning.
    """
    global _degraded_warned
    if fcntl is None:
        if not _degraded_warned:
            log_warning(
                "[LOCK] advisory file locking unavailable on this platform; "
                "stale-lock reclamation is best-effort"
            )
            _degraded_warned = True
        yield
        return
    guard = path.with_name(path.name + ".guard")
    with open(guard, "a") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class SyncLock:
    """Cross-process mutual exclusion for one sync workflow.

    Acquisition creates the lock file atomically and records the owner pid.
    An existing lock is reclaimed only when it is older than ``max_age``
    seconds AND its owner process is gone; a live owner always wins.

    Use as a context manager so release is registered as deferred cleanup and
    happens on every exit path, including SIGTERM/SIGHUP:

        with SyncLock(path, max_age=7200) as handle:
            ...
    """

    def __init__(self, path: Path, *, max_age: float = DEFAULT_MAX_AGE):
        self.path = Path(path)
        self.max_age = max_age
        self.handle: Optional[LockHandle] = None
        self._cleanup: Optional[DeferredCleanup] = None

    def _write_metadata(self, fd: int) -> None:
        try:
            user = getpass.getuser()
        except Exception:
            user = "unknown"
        line = f"pid={os.getpid()} time={utcnow_iso()} user={user} cwd={os.getcwd()}\n"
        os.write(fd, line.encode("utf-8"))

    def _try_create(self) -> Optional[LockHandle]:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        except OSError as exc:
            raise LockError(f"Cannot create lock file {self.path}: {exc}") from exc
        try:
            self._write_metadata(fd)
        finally:
            os.close(fd)
        return LockHandle(lock_path=self.path, owner_pid=os.getpid(), acquired_at=time.time())

    def get_lock_info(self) -> Optional[LockInfo]:
        return read_lock_info(self.path, self.max_age)

    def acquire(self) -> LockHandle:
        """Acquire the lock or raise.

        Raises:
            LockHeldError: a live or recent owner holds the lock
            LockError: the lock file cannot be created or inspected
        """
        if self.handle is not None:
            return self.handle
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LockError(f"Cannot create lock directory {self.path.parent}: {exc}") from exc

        handle = self._try_create()
        if handle is None:
            info = self.get_lock_info()
            if info is not None:
                if info.age <= self.max_age:
                    raise LockHeldError(
                        f"Another sync appears to be running (pid {info.pid}, age {int(info.age)}s)",
                        info,
                    )
                if info.alive:
                    raise LockHeldError(
                        f"Lock older than {int(self.max_age)}s but owner pid {info.pid} is still running",
                        info,
                    )
                self._reclaim(info)
            # Exactly one retry after reclaiming (or after the holder vanished)
            handle = self._try_create()
            if handle is None:
                raise LockHeldError("Lock was taken by another process during reclamation", self.get_lock_info())

        self.handle = handle
        log_debug(f"[LOCK] acquired {self.path}", pid=handle.owner_pid)
        return handle

    def _reclaim(self, info: LockInfo) -> None:
        with _reclaim_guard(self.path):
            current = self.get_lock_info()
            # Someone else reclaimed and re-created it while we waited
            if current is None or current.mtime != info.mtime or current.pid != info.pid:
                return
            log_warning(
                f"[LOCK] reclaiming stale lock {self.path}",
                pid=info.pid,
                age=int(info.age),
            )
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise LockError(f"Cannot remove stale lock {self.path}: {exc}") from exc

    def release(self) -> None:
        """Remove the lock file if this instance owns it. Safe to call twice."""
        handle = self.handle
        if handle is None:
            return
        self.handle = None
        try:
            info = self.get_lock_info()
        except LockError:
            info = None
        if info is not None and info.pid not in (None, handle.owner_pid):
            log_warning(f"[LOCK] {self.path} now owned by pid {info.pid}; leaving it in place")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LockError(f"Cannot remove lock file {self.path}: {exc}") from exc
        log_debug(f"[LOCK] released {self.path}")

    def __enter__(self) -> LockHandle:
        handle = self.acquire()
        self._cleanup = DeferredCleanup(f"lock:{self.path.name}").install()
        self._cleanup.defer(self.release, "release-lock")
        return handle

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._cleanup is not None:
            cleanup, self._cleanup = self._cleanup, None
            cleanup.release()
        else:
            self.release()
        return False


def force_unlock(path: Path, *, max_age: float = DEFAULT_MAX_AGE, force: bool = False) -> bool:
    """Remove a lock file left behind by a dead sync.

    Returns True if a lock file was removed. Without ``force`` only stale
    locks (or locks whose owner pid is unknown and gone) are removed.
    """
    info = read_lock_info(Path(path), max_age)
    if info is None:
        return False
    if not force and info.alive:
        raise LockHeldError(f"Lock is held by running pid {info.pid}; use --force to remove it", info)
    if not force and not info.stale:
        raise LockHeldError(
            f"Lock is only {int(info.age)}s old (max age {int(max_age)}s); use --force to remove it",
            info,
        )
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise LockError(f"Cannot remove lock file {path}: {exc}") from exc
    log_warning(f"[LOCK] removed lock {path}", pid=info.pid, forced=force)
    return True
