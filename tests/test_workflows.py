from __future__ import annotations

import sys

import pytest

from branchsync.confirm import AutoConfirm
from branchsync.models import BranchLocation, ConflictVerdict, IntegrationStrategy, SyncReason, SyncStatus
from branchsync.workflows import BranchWorkflows

from test_push import install_rejecting_hook


def _workflows(vcs, config, answer=True, **sync):
    if sync:
        config = config.with_overrides(sync=sync)
    return BranchWorkflows(vcs, config, AutoConfirm(answer), sleep=lambda s: None)


def test_compare(sandbox, vcs, config):
    sandbox.push_branch("feature", commits=2)
    sandbox.advance_main({"main.txt": "m\n"})
    vcs.fetch()
    cmp = _workflows(vcs, config).compare("origin/feature")
    assert cmp.branch == "feature"
    assert cmp.target == "main"
    assert (cmp.ahead, cmp.behind) == (2, 0)
    assert len(cmp.commits) == 2
    assert {path for _, path in cmp.changed_files} == {"feature-0.txt", "feature-1.txt"}
    assert _workflows(vcs, config).compare("missing") is None


def test_check_conflicts(sandbox, vcs, config):
    sandbox.push_branch("clash", files={"x.txt": "theirs\n"})
    sandbox.advance_main({"x.txt": "ours\n"})
    vcs.fetch()
    vcs.pull("main", ff_only=True)
    report = _workflows(vcs, config).check_conflicts("clash")
    assert report.verdict == ConflictVerdict.CONFLICTING
    assert report.paths == ("x.txt",)
    assert _workflows(vcs, config).check_conflicts("missing") is None


def test_merge_branch_and_push(sandbox, vcs, config):
    sandbox.push_branch("feature")
    result = _workflows(vcs, config).merge_branch("feature")
    assert result.ok, result.message
    assert result.integration.success
    assert result.push.success
    assert sandbox.remote_sha("main") == vcs.head_commit(short=False)


def test_merge_branch_without_push_leaves_remote(sandbox, vcs, config):
    sandbox.push_branch("feature")
    before = sandbox.remote_sha("main")
    result = _workflows(vcs, config).merge_branch("feature", push=False)
    assert result.ok
    assert result.push is None
    assert "git push origin main" in result.message
    assert sandbox.remote_sha("main") == before


def test_merge_branch_missing_or_already_merged(sandbox, vcs, config):
    result = _workflows(vcs, config).merge_branch("ghost")
    assert result.status == SyncStatus.ABORTED
    assert result.reason == SyncReason.FATAL

    sandbox.push_branch("done")
    vcs.fetch()
    vcs.merge("origin/done", "Merge done")
    result = _workflows(vcs, config).merge_branch("done", push=False)
    assert result.status == SyncStatus.SKIPPED


def test_merge_branch_conflict_declined(sandbox, vcs, config):
    sandbox.push_branch("clash", files={"x.txt": "theirs\n"})
    sandbox.advance_main({"x.txt": "ours\n"})
    vcs.pull("main", ff_only=True)

    class DeclineConflicts:
        def confirm(self, prompt, default=False):
            return "conflict" not in prompt

    wf = BranchWorkflows(vcs, config, DeclineConflicts())
    result = wf.merge_branch("clash", push=False)
    assert result.status == SyncStatus.ABORTED
    assert result.reason == SyncReason.RECOVERABLE_CONFLICT
    assert result.conflict.paths == ("x.txt",)
    assert vcs.operation_in_progress() is None


def test_merge_branch_rebase_strategy(sandbox, vcs, config):
    sandbox.push_branch("feature")
    result = _workflows(vcs, config).merge_branch("feature", strategy=IntegrationStrategy.REBASE, push=False)
    assert result.ok
    assert result.integration.strategy == IntegrationStrategy.REBASE
    assert vcs.head_commit(short=False) == vcs.resolve("origin/feature")


def test_merge_branch_dry_run(sandbox, vcs, config):
    sandbox.push_branch("feature")
    head = vcs.head_commit(short=False)
    result = _workflows(vcs, config).merge_branch("feature", dry_run=True)
    assert result.ok
    assert result.integration.dry_run
    assert result.push.planned_commands == ("git push origin main",)
    assert vcs.head_commit(short=False) == head


def test_update_branch_from_target(sandbox, vcs, config):
    sandbox.push_branch("feature")
    sandbox.advance_main({"upstream.txt": "u\n"})
    result = _workflows(vcs, config).update_branch("feature")
    assert result.success, result.message
    assert result.source == "origin/main"
    assert vcs.current_branch() == "main"
    assert vcs.is_ancestor("origin/main", "feature")
    assert len(sandbox.work.commit("feature").parents) == 2


def test_update_branch_rebase_and_push(sandbox, vcs, config):
    sandbox.push_branch("feature")
    sandbox.advance_main({"upstream.txt": "u\n"})
    result = _workflows(vcs, config).update_branch("feature", strategy=IntegrationStrategy.REBASE, push=True)
    assert not result.push.success  # non-fast-forward after a rebase is rejected
    assert vcs.is_ancestor("origin/main", "feature")
    assert len(sandbox.work.commit("feature").parents) == 1


def test_update_branch_conflict_leaves_merge_for_operator(sandbox, vcs, config):
    sandbox.push_branch("feature", files={"x.txt": "feature side\n"})
    sandbox.advance_main({"x.txt": "main side\n"})
    result = _workflows(vcs, config).update_branch("feature")
    assert result.reason == SyncReason.RECOVERABLE_CONFLICT
    assert result.conflict_paths == ("x.txt",)
    assert result.recovery.abort_commands == ("git merge --abort",)
    assert vcs.current_branch() == "feature"
    vcs.abort_merge()


def test_update_branch_refuses_target_and_missing(sandbox, vcs, config):
    wf = _workflows(vcs, config)
    assert wf.update_branch("main").reason == SyncReason.FATAL
    missing = wf.update_branch("nope", local=True)
    assert not missing.success
    assert "not found locally" in missing.message


def test_update_all_local_skips_target_and_stash_branches(sandbox, vcs, config):
    for name in ("one", "two", "stash-backup"):
        sandbox.work.git.branch(name)
    sandbox.advance_main({"upstream.txt": "u\n"})
    result = _workflows(vcs, config).update_all_local()
    assert result.status == SyncStatus.COMPLETED
    assert result.branches == ("one", "two")
    assert result.updated == ("one", "two")
    assert vcs.is_ancestor("origin/main", "one")
    assert not vcs.is_ancestor("origin/main", "stash-backup")


def test_update_all_local_requires_clean_tree(sandbox, vcs, config):
    (sandbox.work_path / "x.txt").write_text("wip\n", encoding="utf-8")
    result = _workflows(vcs, config).update_all_local()
    assert result.status == SyncStatus.ABORTED
    assert result.reason == SyncReason.USER_ABORT


def test_list_merged(sandbox, vcs, config):
    sandbox.push_branch("done")
    sandbox.push_branch("pending")
    vcs.fetch()
    vcs.merge("origin/done", "Merge done")
    vcs.push("main")
    wf = _workflows(vcs, config)
    merged = wf.list_merged()
    assert "done" in merged and "pending" not in merged and "main" not in merged

    sandbox.work.git.branch("local-done", "origin/done")
    assert "local-done" in wf.list_merged(BranchLocation.LOCAL)


def test_delete_local_uses_safe_mode_when_merged(sandbox, vcs, config):
    sandbox.work.git.branch("merged-already")
    result = _workflows(vcs, config).delete_branch("merged-already", BranchLocation.LOCAL)
    assert result.deleted and result.merge_verified and not result.forced


def test_delete_local_unmerged_needs_confirmation(sandbox, vcs, config):
    sandbox.work.git.checkout("-b", "wip")
    (sandbox.work_path / "wip.txt").write_text("w\n", encoding="utf-8")
    sandbox.work.git.add("-A")
    sandbox.work.git.commit("-m", "wip")
    sandbox.work.git.checkout("main")

    declined = _workflows(vcs, config, answer=False).delete_branch("wip", BranchLocation.LOCAL)
    assert not declined.deleted
    assert vcs.local_branch_exists("wip")

    forced = _workflows(vcs, config).delete_branch("wip", BranchLocation.LOCAL)
    assert forced.deleted and forced.forced and not forced.merge_verified
    assert not vcs.local_branch_exists("wip")


def test_delete_refuses_target(sandbox, vcs, config):
    result = _workflows(vcs, config).delete_branch("origin/main")
    assert not result.deleted
    assert "target" in result.message


def test_delete_remote(sandbox, vcs, config):
    sandbox.push_branch("old")
    result = _workflows(vcs, config).delete_branch("old")
    assert result.deleted
    assert not result.merge_verified
    assert sandbox.remote_sha("old") is None
    assert not vcs.remote_branch_exists("old")


def test_session_merge_and_cleanup(sandbox, vcs, config):
    sandbox.push_branch("claude/session-1")
    vcs.fetch()
    vcs.checkout_tracking("claude/session-1")
    vcs.checkout("main")

    result = _workflows(vcs, config).session_merge_and_cleanup("claude/session-1")

    assert result.ok, result.message
    assert {d.location for d in result.deletions} == {BranchLocation.REMOTE, BranchLocation.LOCAL}
    assert sandbox.remote_sha("claude/session-1") is None
    assert not vcs.local_branch_exists("claude/session-1")
    assert not vcs.remote_branch_exists("claude/session-1")
    assert vcs.is_ancestor(result.merge.integration.head, "origin/main")


@pytest.mark.skipif(sys.platform.startswith("win"), reason="shell hook")
def test_session_cleanup_keeps_branch_when_push_fails(sandbox, vcs, config):
    sandbox.push_branch("claude/session-2")
    install_rejecting_hook(sandbox.origin_path)
    result = _workflows(vcs, config).session_merge_and_cleanup("claude/session-2")
    assert not result.ok
    assert result.deletions == ()
    assert sandbox.remote_sha("claude/session-2") is not None
