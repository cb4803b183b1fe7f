"""End-to-end tests for the branchsync command line.

Each test runs ``python -m branchsync.cli`` in a subprocess against the
sandbox clone, so argument parsing, exit codes and printed output are
exercised the way an operator sees them.
"""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

from branchsync import __version__


SRC = Path(__file__).resolve().parents[1] / "src"


def run_cli(*args: str, cwd: Path | str | None = None) -> subprocess.CompletedProcess[str]:
    """Run the CLI with the test environment (isolated HOME, lock and log paths)."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC), env.get("PYTHONPATH", "")) if p)
    return subprocess.run(
        [sys.executable, "-m", "branchsync.cli", *args],
        capture_output=True,
        text=True,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdin=subprocess.DEVNULL,
    )


def test_version():
    proc = run_cli("--version")
    assert proc.returncode == 0
    assert f"branchsync {__version__}" in proc.stdout


def test_no_command_prints_help():
    proc = run_cli()
    assert proc.returncode == 0
    assert "sync-all" in proc.stdout


def test_branches_with_counts(sandbox):
    sandbox.push_branch("claude/session", commits=2)
    sandbox.push_branch("feature")
    proc = run_cli("branches", "--counts", cwd=sandbox.work_path)
    assert proc.returncode == 0, proc.stderr
    out = proc.stdout
    assert "Session branches (1):" in out
    assert "Other branches (1):" in out
    assert "claude/session  +2 -0" in out
    assert out.index("claude/session") < out.index("feature")


def test_compare(sandbox):
    sandbox.push_branch("feature", commits=2)
    proc = run_cli("compare", "feature", cwd=sandbox.work_path)
    assert proc.returncode == 0, proc.stderr
    assert "feature vs main: 2 ahead, 0 behind" in proc.stdout
    assert "feature-1.txt" in proc.stdout

    missing = run_cli("compare", "ghost", cwd=sandbox.work_path)
    assert missing.returncode == 1
    assert "Branch 'ghost' not found" in missing.stdout


def test_check_conflicts(sandbox):
    sandbox.push_branch("clean")
    sandbox.push_branch("clash", files={"x.txt": "theirs\n"})
    sandbox.advance_main({"x.txt": "ours\n"})
    sandbox.work.git.pull("origin", "main")

    clean = run_cli("check-conflicts", "clean", cwd=sandbox.work_path)
    assert clean.returncode == 0, clean.stderr
    assert "No conflicts predicted" in clean.stdout

    clash = run_cli("check-conflicts", "clash", cwd=sandbox.work_path)
    assert clash.returncode == 1
    assert "would conflict in:" in clash.stdout
    assert "x.txt" in clash.stdout


def test_sync_all_without_push(sandbox):
    sandbox.push_branch("a")
    sandbox.push_branch("claude/b")
    before = sandbox.remote_sha("main")

    proc = run_cli("sync-all", "--yes", "--no-push", cwd=sandbox.work_path)

    assert proc.returncode == 0, proc.stdout + proc.stderr
    assert proc.stdout.startswith("COMPLETED")
    assert "Merged: 2" in proc.stdout
    assert "  + claude/b" in proc.stdout
    assert sandbox.remote_sha("main") == before


def test_sync_all_dry_run(sandbox):
    sandbox.push_branch("a")
    head = sandbox.work.head.commit.hexsha
    proc = run_cli("sync-all", "--dry-run", "--yes", cwd=sandbox.work_path)
    assert proc.returncode == 0, proc.stderr
    assert "would run: git push origin main" in proc.stdout
    assert sandbox.work.head.commit.hexsha == head


def test_merge_single_branch(sandbox):
    sandbox.push_branch("feature")
    proc = run_cli("merge", "feature", "--yes", cwd=sandbox.work_path)
    assert proc.returncode == 0, proc.stdout + proc.stderr
    assert "Pushed main" in proc.stdout
    assert sandbox.remote_sha("main") == sandbox.work.head.commit.hexsha


def test_lock_status_and_unlock(sandbox):
    proc = run_cli("lock-status", cwd=sandbox.work_path)
    assert proc.returncode == 0
    assert proc.stdout.startswith("Unlocked")

    lock_path = Path(os.environ["BRANCHSYNC_LOCK_FILE"])
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text("pid=999999999 time=0 user=someone cwd=/tmp\n", encoding="utf-8")

    held = run_cli("lock-status", cwd=sandbox.work_path)
    assert held.stdout.startswith("Locked:")
    assert "stale: yes" in held.stdout

    removed = run_cli("unlock", cwd=sandbox.work_path)
    assert removed.returncode == 0
    assert "Removed lock" in removed.stdout
    assert not lock_path.exists()

    again = run_cli("unlock", cwd=sandbox.work_path)
    assert "No lock at" in again.stdout


def test_breadcrumbs_after_sync(sandbox):
    empty = run_cli("breadcrumbs", cwd=sandbox.work_path)
    assert "No breadcrumbs recorded" in empty.stdout

    sandbox.push_branch("a")
    run_cli("sync-all", "--yes", "--no-push", cwd=sandbox.work_path)
    proc = run_cli("breadcrumbs", cwd=sandbox.work_path)
    lines = proc.stdout.strip().splitlines()
    assert len(lines) == 2
    assert "START" in lines[0].upper()
    assert "END" in lines[1].upper()


def test_config_show_json(sandbox):
    proc = run_cli("config", "show", "--json", "--repo", str(sandbox.work_path))
    assert proc.returncode == 0, proc.stderr
    data = json.loads(proc.stdout)
    assert data["sync"]["target_branch"] == "main"
    assert data["lock"]["path"] == os.environ["BRANCHSYNC_LOCK_FILE"]


def test_config_validate(sandbox):
    ok = run_cli("config", "validate", "--repo", str(sandbox.work_path))
    assert ok.returncode == 0
    assert "Configuration is valid" in ok.stdout

    config_dir = sandbox.work_path / ".branchsync"
    config_dir.mkdir()
    (config_dir / "config.toml").write_text("[sync]\nnot_a_setting = 1\n", encoding="utf-8")
    bad = run_cli("config", "validate", "--repo", str(sandbox.work_path))
    assert bad.returncode == 1
    assert "Invalid configuration" in bad.stdout


def test_outside_a_repository(tmp_path: Path):
    plain = tmp_path / "plain"
    plain.mkdir()
    proc = run_cli("branches", "--repo", str(plain))
    assert proc.returncode == 1
    assert "git error" in proc.stderr


def test_invalid_target_override_is_a_config_error(sandbox):
    proc = run_cli("branches", "--target", "bad name", cwd=sandbox.work_path)
    assert proc.returncode == 1
    assert "Configuration error" in proc.stderr
    assert "invalid branch name" in proc.stderr
    assert "Traceback" not in proc.stderr
