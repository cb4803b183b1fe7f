from __future__ import annotations

import multiprocessing
import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from branchsync.lock import (
    LockHeldError,
    SyncLock,
    force_unlock,
    pid_is_running,
    read_lock_info,
)


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write_lock(path: Path, pid: int, age: float = 0) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"pid={pid} time=2024-01-01T00:00:00Z user=someone cwd=/tmp\n", encoding="utf-8")
    if age:
        old = time.time() - age
        os.utime(path, (old, old))


def test_lock_acquire_release(tmp_path: Path):
    p = tmp_path / "sync.lock"
    with SyncLock(p) as handle:
        assert p.exists()
        assert handle.owner_pid == os.getpid()
        assert f"pid={os.getpid()}" in p.read_text()
    assert not p.exists()


def test_lock_released_when_block_raises(tmp_path: Path):
    p = tmp_path / "sync.lock"
    with pytest.raises(RuntimeError):
        with SyncLock(p):
            raise RuntimeError("boom")
    assert not p.exists()


def test_lock_released_on_system_exit(tmp_path: Path):
    p = tmp_path / "sync.lock"
    with pytest.raises(SystemExit):
        with SyncLock(p):
            raise SystemExit(143)
    assert not p.exists()


def test_lock_released_when_process_is_terminated(tmp_path: Path):
    p = tmp_path / "sync.lock"
    ready = tmp_path / "ready"
    src = Path(__file__).resolve().parents[1] / "src"
    script = (
        "import sys, time\n"
        f"sys.path.insert(0, {str(src)!r})\n"
        "from branchsync.lock import SyncLock\n"
        f"with SyncLock({str(p)!r}):\n"
        f"    open({str(ready)!r}, 'w').close()\n"
        "    time.sleep(30)\n"
    )
    proc = subprocess.Popen([sys.executable, "-c", script])
    try:
        deadline = time.time() + 20
        while not ready.exists() and time.time() < deadline:
            time.sleep(0.05)
        assert ready.exists(), "child never acquired the lock"
        assert p.exists()
        proc.terminate()
        proc.wait(timeout=20)
    finally:
        if proc.poll() is None:
            proc.kill()
    assert proc.returncode == 128 + 15
    assert not p.exists()


def test_second_acquire_is_skipped_while_held(tmp_path: Path):
    p = tmp_path / "sync.lock"
    first = SyncLock(p)
    first.acquire()
    try:
        with pytest.raises(LockHeldError) as exc_info:
            SyncLock(p).acquire()
        assert exc_info.value.info is not None
        assert exc_info.value.info.pid == os.getpid()
    finally:
        first.release()
    assert not p.exists()


def test_recent_lock_from_dead_process_is_not_reclaimed(tmp_path: Path):
    p = tmp_path / "sync.lock"
    _write_lock(p, _dead_pid(), age=10)
    with pytest.raises(LockHeldError):
        SyncLock(p, max_age=7200).acquire()
    assert p.exists()


def test_old_lock_with_live_owner_is_not_reclaimed(tmp_path: Path):
    p = tmp_path / "sync.lock"
    _write_lock(p, os.getpid(), age=3 * 3600)
    with pytest.raises(LockHeldError):
        SyncLock(p, max_age=7200).acquire()


def test_stale_lock_is_reclaimed_once(tmp_path: Path):
    p = tmp_path / "sync.lock"
    _write_lock(p, _dead_pid(), age=3 * 3600)
    lock = SyncLock(p, max_age=7200)
    handle = lock.acquire()
    try:
        info = read_lock_info(p)
        assert info is not None
        assert info.pid == os.getpid() == handle.owner_pid
    finally:
        lock.release()
    assert not p.exists()


def test_release_leaves_lock_owned_by_someone_else(tmp_path: Path):
    p = tmp_path / "sync.lock"
    lock = SyncLock(p)
    lock.acquire()
    _write_lock(p, os.getppid())
    lock.release()
    assert p.exists()


def test_release_twice_is_harmless(tmp_path: Path):
    p = tmp_path / "sync.lock"
    lock = SyncLock(p)
    lock.acquire()
    lock.release()
    lock.release()
    assert not p.exists()


def test_read_lock_info_reports_staleness(tmp_path: Path):
    p = tmp_path / "sync.lock"
    assert read_lock_info(p) is None
    _write_lock(p, _dead_pid(), age=100)
    info = read_lock_info(p, max_age=50)
    assert info is not None
    assert info.alive is False
    assert info.stale is True
    assert info.user == "someone"
    assert info.age >= 99


def test_bare_pid_lock_content_is_understood(tmp_path: Path):
    p = tmp_path / "sync.lock"
    p.write_text(f"{os.getpid()}\n", encoding="utf-8")
    info = read_lock_info(p)
    assert info is not None
    assert info.pid == os.getpid()
    assert info.alive is True


def test_pid_is_running():
    assert pid_is_running(os.getpid()) is True
    assert pid_is_running(None) is False
    assert pid_is_running(0) is False
    if not sys.platform.startswith("win"):
        assert pid_is_running(_dead_pid()) is False


def test_force_unlock(tmp_path: Path):
    p = tmp_path / "sync.lock"
    assert force_unlock(p) is False

    _write_lock(p, os.getpid())
    with pytest.raises(LockHeldError):
        force_unlock(p)
    assert p.exists()
    assert force_unlock(p, force=True) is True
    assert not p.exists()

    _write_lock(p, _dead_pid(), age=3 * 3600)
    assert force_unlock(p, max_age=7200) is True
    assert not p.exists()


def _race_for_lock(path: str, max_age: float, barrier, results) -> None:
    """Child process: wait for the others, then try once to take the lock.

    The winner keeps the lock file (no release) so every loser sees it held.
    """
    lock = SyncLock(Path(path), max_age=max_age)
    barrier.wait(timeout=30)
    try:
        lock.acquire()
    except LockHeldError:
        results.put("held")
    except Exception as exc:
        results.put(f"error: {exc!r}")
    else:
        results.put(f"acquired:{os.getpid()}")


def _run_racers(path: Path, count: int, max_age: float) -> list:
    ctx = multiprocessing.get_context("spawn")
    barrier = ctx.Barrier(count)
    results = ctx.Queue()
    procs = [ctx.Process(target=_race_for_lock, args=(str(path), max_age, barrier, results)) for _ in range(count)]
    for proc in procs:
        proc.start()
    try:
        outcomes = [results.get(timeout=60) for _ in procs]
    finally:
        for proc in procs:
            proc.join(timeout=30)
            if proc.is_alive():
                proc.kill()
    return outcomes


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process semantics")
def test_concurrent_acquirers_exactly_one_wins(tmp_path: Path):
    p = tmp_path / "sync.lock"
    outcomes = _run_racers(p, 8, max_age=3600)

    winners = [o for o in outcomes if o.startswith("acquired:")]
    assert len(winners) == 1, outcomes
    assert outcomes.count("held") == 7, outcomes
    assert f"pid={winners[0].split(':')[1]}" in p.read_text()


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX process semantics")
def test_concurrent_reclaimers_of_one_stale_lock(tmp_path: Path):
    p = tmp_path / "sync.lock"
    _write_lock(p, _dead_pid(), age=120)
    outcomes = _run_racers(p, 2, max_age=60)

    winners = [o for o in outcomes if o.startswith("acquired:")]
    assert len(winners) == 1, outcomes
    assert outcomes.count("held") == 1, outcomes
    info = read_lock_info(p, 60)
    assert info is not None
    assert str(info.pid) == winners[0].split(":")[1]
