"""Bulk sync: merge every eligible branch that is ahead of the target.

Flow: lock -> clean tree -> fetch -> update target -> start breadcrumb ->
snapshot candidates -> batch confirmation -> merge each in order -> end
breadcrumb -> optional push -> return to the starting branch. The lock is
released on every path out, including SIGTERM/SIGHUP. A dry run only fetches
and plans: it takes no lock and never stashes or checks out.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Callable, List, Optional

from .breadcrumbs import BreadcrumbLog
from .classifier import BranchClassifier
from .config_schema import BranchSyncConfig
from .confirm import ConfirmationProvider
from .conflicts import ConflictDetector
from .executor import WorkingTreeDirtyError, default_merge_message, ensure_clean_tree
from .fs import stash_stamp
from .lock import LockError, LockHeldError, SyncLock
from .models import (
    BranchRef,
    ConflictVerdict,
    IntegrationStrategy,
    PushOutcome,
    RecoveryCommands,
    SyncOutcome,
    SyncReason,
    SyncSession,
)
from .observability import log_action, log_error, log_warning, timeit
from .push import PushRetrier
from .vcs import (
    CheckoutError,
    CleanupError,
    FetchError,
    GitClient,
    MergeConflictError,
    PullError,
    StashError,
    VCSError,
    describe_error,
)


class _Abort(Exception):
    """Internal: carries an Aborted outcome out of the locked section."""

    def __init__(self, outcome: SyncOutcome):
        super().__init__(outcome.message)
        self.outcome = outcome


class BulkSyncOrchestrator:
    """Runs one bulk sync session against a working repository.

    Args:
        vcs: Git client for the working repository
        config: Loaded configuration; read, never mutated
        confirm: Provider consulted before stashing, merging and pushing
        sleep: Injected into the push retrier
    """

    def __init__(
        self,
        vcs: GitClient,
        config: BranchSyncConfig,
        confirm: ConfirmationProvider,
        *,
        lock: Optional[SyncLock] = None,
        breadcrumbs: Optional[BreadcrumbLog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.vcs = vcs
        self.config = config
        self.confirm = confirm
        self.target = config.sync.target_branch
        self.remote = vcs.remote
        self.lock = lock or SyncLock(config.lock.resolved_path(), max_age=config.lock.max_age)
        self.breadcrumbs = breadcrumbs or BreadcrumbLog(config.breadcrumbs.resolved_path())
        self.classifier = BranchClassifier(
            vcs, target_branch=self.target, session_prefix=config.sync.session_prefix
        )
        self.detector = ConflictDetector(vcs)
        self.pusher = PushRetrier(
            vcs,
            max_retries=config.push.max_retries,
            initial_delay=config.push.initial_delay,
            sleep=sleep,
        )

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.target}"

    def run(self, *, dry_run: Optional[bool] = None, push: Optional[bool] = None) -> SyncOutcome:
        dry_run = self.config.sync.dry_run if dry_run is None else dry_run
        push = self.config.sync.auto_push if push is None else push

        with timeit("sync_all", target=self.target, dry_run=dry_run) as info:
            try:
                if dry_run:
                    outcome = self._run_dry(push=push)
                else:
                    with self.lock:
                        outcome = self._run_locked(push=push)
            except LockHeldError as exc:
                outcome = SyncOutcome.skipped(SyncReason.LOCK_HELD, str(exc), target_branch=self.target)
            except LockError as exc:
                outcome = SyncOutcome.aborted(SyncReason.FATAL, 0, str(exc), target_branch=self.target)
            info["outcome"] = outcome.status.value
            info["merged"] = outcome.merged_count
            if outcome.reason:
                info["reason"] = outcome.reason.value
        return outcome

    # ------------------------------------------------------------------ steps

    def _run_dry(self, *, push: bool) -> SyncOutcome:
        """Plan against the fetched remote target. No lock, stash, checkout or breadcrumb."""
        session = SyncSession(target_branch=self.target)
        try:
            self._check_no_operation_in_progress()
            self._fetch()
        except _Abort as abort:
            return self._finish(session, abort.outcome)
        return self._finish(session, self._plan(session, push))

    def _run_locked(self, *, push: bool) -> SyncOutcome:
        session = SyncSession(target_branch=self.target)
        start_branch = self.vcs.current_branch()
        start_commit = None if start_branch else self.vcs.head_commit(short=False)
        started = False
        try:
            self._require_clean_tree()
            self._fetch()
            self._update_target()
            session.start_head = self.vcs.head_commit()
            self.breadcrumbs.start(self.target, session.start_head)
            started = True

            session.candidates = self.classifier.candidates(self.target, self.config.sync.allow_branches)
            names = tuple(c.name for c in session.candidates)
            if not session.candidates:
                return self._finish(session, SyncOutcome.completed(0, message="Nothing to merge"))

            listing = "\n".join(f"  {c.name} (+{c.ahead})" for c in session.candidates)
            if not self.confirm.confirm(
                f"Merge ALL {len(names)} branches into {self.target}?\n{listing}\n", False
            ):
                raise _Abort(SyncOutcome.aborted(SyncReason.USER_ABORT, 0, "Batch merge declined", candidates=names))

            for candidate in session.candidates:
                self._merge_candidate(session, candidate)

            session.end_head = self.vcs.head_commit()
            push_outcome = self._push(push)
            message = f"Merged {session.merged_count} branch(es) into {self.target}"
            if push_outcome is not None and not push_outcome.success:
                message += "; push failed, local merges kept"
            return self._finish(
                session,
                SyncOutcome.completed(session.merged_count, message=message, candidates=names, push=push_outcome),
            )
        except _Abort as abort:
            return self._finish(session, abort.outcome)
        except CleanupError as exc:
            log_error(f"[SYNC] cleanup failed: {describe_error(exc)}")
            return self._finish(
                session,
                SyncOutcome.aborted(
                    SyncReason.FATAL,
                    session.merged_count,
                    describe_error(exc),
                    recovery=RecoveryCommands(tuple(exc.recovery_commands), ()),
                ),
            )
        finally:
            if started:
                self.breadcrumbs.end(self.target, self.vcs.head_commit(), session.merged_count)
            self._return_to(start_branch, start_commit)

    def _finish(self, session: SyncSession, outcome: SyncOutcome) -> SyncOutcome:
        """Attach session facts every outcome should carry."""
        outcome = replace(
            outcome,
            target_branch=self.target,
            merged_count=session.merged_count,
            merged_branches=tuple(session.merged),
            candidates=outcome.candidates or tuple(c.name for c in session.candidates),
            start_head=session.start_head,
            end_head=self.vcs.head_commit(),
        )
        log_action(
            "sync_session",
            outcome=outcome.status.value,
            target=self.target,
            merged=outcome.merged_count,
            reason=outcome.reason.value if outcome.reason else None,
        )
        return outcome

    def _check_no_operation_in_progress(self) -> None:
        in_progress = self.vcs.operation_in_progress()
        if in_progress:
            strategy = IntegrationStrategy.REBASE if in_progress == "rebase" else IntegrationStrategy.MERGE
            raise _Abort(
                SyncOutcome.aborted(
                    SyncReason.FATAL,
                    0,
                    f"A {in_progress} is already in progress; finish or abort it first",
                    recovery=RecoveryCommands.for_strategy(strategy),
                )
            )

    def _require_clean_tree(self) -> None:
        self._check_no_operation_in_progress()
        try:
            ensure_clean_tree(self.vcs, self.confirm, f"sync-{self.target}")
        except WorkingTreeDirtyError as exc:
            raise _Abort(SyncOutcome.aborted(SyncReason.USER_ABORT, 0, str(exc)))
        except StashError as exc:
            raise _Abort(SyncOutcome.aborted(SyncReason.FATAL, 0, describe_error(exc)))

    def _fetch(self) -> None:
        try:
            self.vcs.fetch()
        except FetchError as exc:
            raise _Abort(SyncOutcome.aborted(SyncReason.TRANSIENT_REMOTE, 0, describe_error(exc)))

    def _update_target(self) -> None:
        has_upstream = self.vcs.remote_branch_exists(self.target)
        try:
            if self.vcs.current_branch() != self.target:
                if self.vcs.local_branch_exists(self.target):
                    self.vcs.checkout(self.target)
                elif has_upstream:
                    self.vcs.checkout_tracking(self.target)
                else:
                    raise _Abort(
                        SyncOutcome.aborted(
                            SyncReason.FATAL, 0, f"Target branch {self.target} not found locally or on {self.remote}"
                        )
                    )
        except CheckoutError as exc:
            raise _Abort(SyncOutcome.aborted(SyncReason.FATAL, 0, describe_error(exc)))

        if not has_upstream:
            log_warning(f"[SYNC] {self.upstream} does not exist; using local {self.target} as is")
            return

        local_only, remote_only = self.vcs.count_ahead_behind(self.upstream, self.target)
        if remote_only == 0:
            return
        try:
            if local_only == 0:
                self.vcs.pull(self.target, ff_only=True)
                return
            if not self.confirm.confirm(
                f"Local {self.target} has diverged from {self.upstream}. Merge the remote changes?", True
            ):
                raise _Abort(
                    SyncOutcome.aborted(SyncReason.USER_ABORT, 0, f"{self.target} diverged from {self.upstream}")
                )
            self.vcs.pull(self.target)
        except PullError as exc:
            if exc.paths:
                raise _Abort(
                    SyncOutcome.aborted(
                        SyncReason.RECOVERABLE_CONFLICT,
                        0,
                        f"Updating {self.target} from {self.upstream} conflicts",
                        failed_branch=self.upstream,
                        conflict_paths=exc.paths,
                        recovery=RecoveryCommands.for_strategy(IntegrationStrategy.MERGE),
                    )
                )
            raise _Abort(SyncOutcome.aborted(SyncReason.TRANSIENT_REMOTE, 0, describe_error(exc)))

    def _merge_candidate(self, session: SyncSession, candidate: BranchRef) -> None:
        report = self.detector.check(self.target, candidate.ref)
        if report.verdict == ConflictVerdict.CONFLICTING:
            raise _Abort(
                SyncOutcome.aborted(
                    SyncReason.RECOVERABLE_CONFLICT,
                    session.merged_count,
                    f"{candidate.name} conflicts with {self.target}; session stopped before merging it",
                    failed_branch=candidate.name,
                    conflict_paths=report.paths,
                    recovery=RecoveryCommands.for_predicted_conflict(self.target, candidate.ref),
                )
            )
        if report.verdict == ConflictVerdict.INDETERMINATE:
            log_warning(f"[SYNC] {candidate.name}: {report.warning}; merging anyway")

        try:
            self.vcs.merge(candidate.ref, default_merge_message(candidate.name, self.target))
        except MergeConflictError as exc:
            raise _Abort(
                SyncOutcome.aborted(
                    SyncReason.RECOVERABLE_CONFLICT,
                    session.merged_count,
                    f"Merge of {candidate.name} stopped with conflicts; the merge is left in progress",
                    failed_branch=candidate.name,
                    conflict_paths=exc.paths,
                    recovery=RecoveryCommands.for_strategy(IntegrationStrategy.MERGE),
                )
            )
        except VCSError as exc:
            raise _Abort(
                SyncOutcome.aborted(
                    SyncReason.FATAL, session.merged_count, describe_error(exc), failed_branch=candidate.name
                )
            )
        session.merged.append(candidate.name)
        log_action("sync_merge", branch=candidate.name, target=self.target, index=session.merged_count)

    def _push(self, push: bool) -> Optional[PushOutcome]:
        if not push:
            return None
        if not self.confirm.confirm(f"Push {self.target} to {self.remote}?", True):
            return None
        return self.pusher.push(self.target)

    def _plan(self, session: SyncSession, push: bool) -> SyncOutcome:
        """Dry run: report what would happen against the fetched remote target."""
        base = self.upstream if self.vcs.remote_branch_exists(self.target) else self.target
        session.candidates = self.classifier.candidates(base, self.config.sync.allow_branches)
        commands: List[str] = []
        if not self.vcs.is_clean():
            commands.append(f"git stash push -m \"sync-{self.target}-{stash_stamp()}\"")
        commands += [f"git checkout {self.target}", f"git pull {self.remote} {self.target}"]
        for candidate in session.candidates:
            message = default_merge_message(candidate.name, self.target)
            commands.append(f"git merge --no-ff -m \"{message}\" {candidate.ref}")
        if push and session.candidates:
            commands.append(f"git push {self.remote} {self.target}")
        return SyncOutcome.completed(
            0,
            message=f"Dry run: {len(session.candidates)} branch(es) would be merged",
            dry_run=True,
            planned_commands=tuple(commands),
        )

    def _return_to(self, branch: Optional[str], commit: Optional[str]) -> None:
        if self.vcs.operation_in_progress():
            log_warning("[SYNC] leaving repository on the target: a merge is in progress")
            return
        destination = branch or commit
        if not destination or self.vcs.current_branch() == branch:
            return
        try:
            self.vcs.checkout(destination)
        except CheckoutError as exc:
            log_warning(f"[SYNC] could not return to {destination}: {describe_error(exc)}")
