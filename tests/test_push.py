from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from branchsync.models import PushErrorKind
from branchsync.push import PushRetrier, backoff_schedule, manual_push_commands
from branchsync.vcs import GitClient


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def install_rejecting_hook(origin: Path, message: str = "GH006: Protected branch update failed") -> None:
    hook = origin / "hooks" / "pre-receive"
    hook.write_text(f"#!/bin/sh\necho 'remote: error: {message}' >&2\nexit 1\n", encoding="utf-8")
    hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _commit_locally(sandbox, name: str = "local.txt") -> None:
    (sandbox.work_path / name).write_text("local\n", encoding="utf-8")
    sandbox.work.git.add("-A")
    sandbox.work.git.commit("-m", f"add {name}")


def test_backoff_schedule():
    assert backoff_schedule(3, 2.0) == [2.0, 4.0]
    assert backoff_schedule(4, 1.0) == [1.0, 2.0, 4.0]
    assert backoff_schedule(1, 2.0) == []


def test_manual_commands():
    assert manual_push_commands("origin", "main") == (
        "git checkout main",
        "git pull origin main",
        "git push origin main",
    )


def test_rejects_zero_retries(vcs):
    with pytest.raises(ValueError):
        PushRetrier(vcs, max_retries=0)


def test_successful_push_first_attempt(sandbox, vcs):
    _commit_locally(sandbox)
    sleep = FakeSleep()
    outcome = PushRetrier(vcs, sleep=sleep).push("main")
    assert outcome.success
    assert outcome.attempts == 1
    assert sleep.calls == []
    assert sandbox.remote_sha("main") == vcs.head_commit(short=False)


def test_transient_failure_retries_with_doubling_delays(sandbox, tmp_path: Path):
    sandbox.work.git.remote("add", "flaky", str(tmp_path / "gone.git"))
    client = GitClient(sandbox.work_path, remote="flaky")
    sleep = FakeSleep()
    outcome = PushRetrier(client, max_retries=3, initial_delay=2.0, sleep=sleep).push("main")
    assert not outcome.success
    assert outcome.error_kind == PushErrorKind.TRANSIENT
    assert outcome.attempts == 3
    assert sleep.calls == [2.0, 4.0]
    assert outcome.delays == (2.0, 4.0)
    assert outcome.manual_commands[-1] == "git push flaky main"


@pytest.mark.skipif(sys.platform.startswith("win"), reason="shell hook")
def test_permission_denied_is_not_retried(sandbox, vcs):
    install_rejecting_hook(sandbox.origin_path)
    _commit_locally(sandbox)
    sleep = FakeSleep()
    outcome = PushRetrier(vcs, max_retries=3, initial_delay=2.0, sleep=sleep).push("main")
    assert not outcome.success
    assert outcome.error_kind == PushErrorKind.PERMISSION_DENIED
    assert outcome.attempts == 1
    assert sleep.calls == []
    assert "GH006" in outcome.message
    assert outcome.manual_commands == manual_push_commands("origin", "main")


def test_dry_run_does_not_push(sandbox, vcs):
    _commit_locally(sandbox)
    before = sandbox.remote_sha("main")
    outcome = PushRetrier(vcs).push("main", dry_run=True)
    assert outcome.success
    assert outcome.planned_commands == ("git push origin main",)
    assert sandbox.remote_sha("main") == before
