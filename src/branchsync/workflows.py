"""Single-branch workflows built on the same layers as the bulk sync.

Each method returns a result record; none of them print or prompt directly.
Prompts go through the injected confirmation provider.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .classifier import BranchClassifier
from .config_schema import BranchSyncConfig
from .confirm import ConfirmationProvider
from .conflicts import ConflictDetector
from .executor import (
    MergeExecutor,
    WorkingTreeDirtyError,
    default_merge_message,
    ensure_clean_tree,
)
from .models import (
    BranchComparison,
    BranchLocation,
    ConflictReport,
    IntegrationResult,
    IntegrationStrategy,
    PushOutcome,
    RecoveryCommands,
    SyncReason,
    SyncStatus,
)
from .observability import log_action, log_warning, timeit
from .push import PushRetrier
from .vcs import (
    CheckoutError,
    DeleteError,
    FetchError,
    GitClient,
    MergeConflictError,
    RebaseConflictError,
    StashError,
    VCSError,
    describe_error,
)


STASH_BRANCH_PREFIX = "stash"


@dataclass(frozen=True)
class MergeWorkflowResult:
    branch: str
    target: str
    status: SyncStatus
    reason: Optional[SyncReason] = None
    message: str = ""
    comparison: Optional[BranchComparison] = None
    conflict: Optional[ConflictReport] = None
    integration: Optional[IntegrationResult] = None
    push: Optional[PushOutcome] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.COMPLETED


@dataclass(frozen=True)
class UpdateResult:
    branch: str
    success: bool
    strategy: IntegrationStrategy
    source: str = ""
    message: str = ""
    reason: Optional[SyncReason] = None
    conflict_paths: Tuple[str, ...] = ()
    recovery: Optional[RecoveryCommands] = None
    push: Optional[PushOutcome] = None
    stash: Optional[str] = None


@dataclass(frozen=True)
class BulkUpdateResult:
    branches: Tuple[str, ...]
    updated: Tuple[str, ...] = ()
    failed: Optional[UpdateResult] = None
    status: SyncStatus = SyncStatus.COMPLETED
    reason: Optional[SyncReason] = None
    message: str = ""


@dataclass(frozen=True)
class DeleteResult:
    branch: str
    location: BranchLocation
    deleted: bool
    merge_verified: bool = False
    forced: bool = False
    message: str = ""


@dataclass(frozen=True)
class SessionCleanupResult:
    merge: MergeWorkflowResult
    deletions: Tuple[DeleteResult, ...] = ()
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.merge.ok and all(d.deleted for d in self.deletions) and bool(self.deletions)


class BranchWorkflows:
    """Compare, merge, update, list and delete branches relative to the target."""

    def __init__(
        self,
        vcs: GitClient,
        config: BranchSyncConfig,
        confirm: ConfirmationProvider,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.vcs = vcs
        self.config = config
        self.confirm = confirm
        self.target = config.sync.target_branch
        self.remote = vcs.remote
        self.classifier = BranchClassifier(
            vcs, target_branch=self.target, session_prefix=config.sync.session_prefix
        )
        self.detector = ConflictDetector(vcs)
        self.executor = MergeExecutor(vcs, confirm)
        self.pusher = PushRetrier(
            vcs,
            max_retries=config.push.max_retries,
            initial_delay=config.push.initial_delay,
            sleep=sleep,
        )

    @staticmethod
    def strip_remote(name: str, remote: str) -> str:
        prefix = f"{remote}/"
        return name[len(prefix):] if name.startswith(prefix) else name

    def _branch_ref(self, branch: str) -> Optional[str]:
        if self.vcs.remote_branch_exists(branch):
            return f"{self.remote}/{branch}"
        if self.vcs.local_branch_exists(branch):
            return branch
        return None

    # ------------------------------------------------------------- inspection

    def compare(self, branch: str, limit: int = 10) -> Optional[BranchComparison]:
        """Ahead/behind, newest commits to merge and changed files for ``branch``."""
        branch = self.strip_remote(branch, self.remote)
        ref = self._branch_ref(branch)
        if ref is None:
            return None
        base = self.classifier.target_ref
        ahead, behind = self.vcs.count_ahead_behind(base, ref)
        return BranchComparison(
            branch=branch,
            target=base,
            ahead=ahead,
            behind=behind,
            commits=tuple(self.vcs.commits_between(base, ref, limit)),
            changed_files=tuple(self.vcs.changed_files(base, ref)),
            last_commit=self.vcs.last_commit_summary(ref),
        )

    def check_conflicts(self, branch: str) -> Optional[ConflictReport]:
        branch = self.strip_remote(branch, self.remote)
        ref = self._branch_ref(branch)
        if ref is None:
            return None
        return self.detector.check(self.classifier.target_ref, ref)

    def list_merged(self, location: BranchLocation = BranchLocation.REMOTE, fetch: bool = True) -> List[str]:
        """Branches whose tips are already contained in the target."""
        if location == BranchLocation.LOCAL:
            target_ref = self.target
        else:
            if fetch:
                self.vcs.fetch()
            target_ref = f"{self.remote}/{self.target}"
        if self.vcs.resolve(target_ref) is None:
            return []
        return [
            name for name in self.vcs.merged_branches(target_ref, location)
            if name != self.target
        ]

    # ------------------------------------------------------------------ merge

    def merge_branch(
        self,
        branch: str,
        *,
        strategy: Optional[IntegrationStrategy] = None,
        dry_run: Optional[bool] = None,
        push: Optional[bool] = None,
    ) -> MergeWorkflowResult:
        """Merge one remote branch into the target, then push the target."""
        branch = self.strip_remote(branch, self.remote)
        strategy = IntegrationStrategy(strategy or self.config.sync.merge_strategy)
        dry_run = self.config.sync.dry_run if dry_run is None else dry_run
        push = self.config.sync.auto_push if push is None else push
        result = dict(branch=branch, target=self.target)

        with timeit("merge_branch", branch=branch, target=self.target, strategy=strategy.value) as info:
            try:
                self.vcs.fetch()
            except FetchError as exc:
                info["outcome"] = "aborted"
                return MergeWorkflowResult(
                    status=SyncStatus.ABORTED,
                    reason=SyncReason.TRANSIENT_REMOTE,
                    message=describe_error(exc),
                    **result,
                )
            if not self.vcs.remote_branch_exists(branch):
                info["outcome"] = "aborted"
                return MergeWorkflowResult(
                    status=SyncStatus.ABORTED,
                    reason=SyncReason.FATAL,
                    message=f"Branch '{branch}' not found on {self.remote}",
                    **result,
                )

            source_ref = f"{self.remote}/{branch}"
            comparison = self.compare(branch)
            if comparison is not None and comparison.ahead == 0:
                info["outcome"] = "skipped"
                return MergeWorkflowResult(
                    status=SyncStatus.SKIPPED,
                    message=f"{branch} has no commits that are not already in {self.target}",
                    comparison=comparison,
                    **result,
                )

            if not self.confirm.confirm(f"Merge {branch} into {self.target}?", True):
                info["outcome"] = "aborted"
                return MergeWorkflowResult(
                    status=SyncStatus.ABORTED,
                    reason=SyncReason.USER_ABORT,
                    message="Merge cancelled",
                    comparison=comparison,
                    **result,
                )

            conflict = self.detector.check(self.classifier.target_ref, source_ref)
            if not self.detector.approve(conflict, self.confirm, branch):
                info["outcome"] = "aborted"
                return MergeWorkflowResult(
                    status=SyncStatus.ABORTED,
                    reason=SyncReason.USER_ABORT if not conflict.is_conflicting else SyncReason.RECOVERABLE_CONFLICT,
                    message=f"Merge of {branch} not attempted",
                    comparison=comparison,
                    conflict=conflict,
                    **result,
                )

            integration = self.executor.integrate(
                source_ref,
                self.target,
                strategy,
                message=default_merge_message(branch, self.target),
                dry_run=dry_run,
            )
            if not integration.success:
                info["outcome"] = "aborted"
                return MergeWorkflowResult(
                    status=SyncStatus.ABORTED,
                    reason=integration.reason,
                    message=integration.message,
                    comparison=comparison,
                    conflict=conflict,
                    integration=integration,
                    **result,
                )

            push_outcome = self.pusher.push(self.target, dry_run=dry_run) if push else None
            message = f"{branch} integrated into {self.target}"
            if push_outcome is not None and not push_outcome.success:
                message += " locally; push failed"
            elif push_outcome is None and not dry_run:
                message += f" locally; push with: git push {self.remote} {self.target}"
            info["outcome"] = "ok"
            return MergeWorkflowResult(
                status=SyncStatus.COMPLETED,
                message=message,
                comparison=comparison,
                conflict=conflict,
                integration=integration,
                push=push_outcome,
                **result,
            )

    # ----------------------------------------------------------------- update

    def update_branch(
        self,
        branch: str,
        *,
        strategy: Optional[IntegrationStrategy] = None,
        local: bool = False,
        push: bool = False,
        fetch: bool = True,
    ) -> UpdateResult:
        """Bring ``branch`` up to date with the target by merge or rebase."""
        branch = self.strip_remote(branch, self.remote)
        strategy = IntegrationStrategy(strategy or self.config.sync.merge_strategy)
        base = dict(branch=branch, strategy=strategy)

        if branch == self.target:
            return UpdateResult(success=False, reason=SyncReason.FATAL, message="Cannot update the target from itself", **base)
        if self.vcs.operation_in_progress():
            return UpdateResult(
                success=False, reason=SyncReason.FATAL, message="A merge or rebase is already in progress", **base
            )
        try:
            stash = ensure_clean_tree(self.vcs, self.confirm, f"update-{branch.replace('/', '-')}")
        except WorkingTreeDirtyError as exc:
            return UpdateResult(success=False, reason=SyncReason.USER_ABORT, message=str(exc), **base)
        except StashError as exc:
            return UpdateResult(success=False, reason=SyncReason.FATAL, message=describe_error(exc), **base)

        if fetch:
            try:
                self.vcs.fetch()
            except FetchError as exc:
                return UpdateResult(
                    success=False, reason=SyncReason.TRANSIENT_REMOTE, message=describe_error(exc), stash=stash, **base
                )

        start_branch = self.vcs.current_branch()
        source = f"{self.remote}/{self.target}"
        if self.vcs.resolve(source) is None:
            source = self.target
        try:
            return self._update_checked_out(branch, source, strategy, local, push, stash)
        finally:
            if (
                start_branch
                and start_branch != self.vcs.current_branch()
                and not self.vcs.operation_in_progress()
            ):
                try:
                    self.vcs.checkout(start_branch)
                except CheckoutError as exc:
                    log_warning(f"[UPDATE] could not return to {start_branch}: {describe_error(exc)}")

    def _update_checked_out(
        self,
        branch: str,
        source: str,
        strategy: IntegrationStrategy,
        local: bool,
        push: bool,
        stash: Optional[str],
    ) -> UpdateResult:
        base = dict(branch=branch, strategy=strategy, source=source, stash=stash)
        try:
            if self.vcs.local_branch_exists(branch):
                self.vcs.checkout(branch)
            elif not local and self.vcs.remote_branch_exists(branch):
                self.vcs.checkout_tracking(branch)
            else:
                where = "locally" if local else f"locally or on {self.remote}"
                return UpdateResult(success=False, reason=SyncReason.FATAL, message=f"Branch {branch} not found {where}", **base)
        except CheckoutError as exc:
            return UpdateResult(success=False, reason=SyncReason.FATAL, message=describe_error(exc), **base)

        try:
            if strategy == IntegrationStrategy.REBASE:
                self.vcs.rebase(source)
            else:
                self.vcs.merge(source, f"Merge {self.target} into {branch}")
        except (MergeConflictError, RebaseConflictError) as exc:
            return UpdateResult(
                success=False,
                reason=SyncReason.RECOVERABLE_CONFLICT,
                message=str(exc),
                conflict_paths=exc.paths,
                recovery=RecoveryCommands.for_strategy(strategy),
                **base,
            )
        except VCSError as exc:
            return UpdateResult(success=False, reason=SyncReason.FATAL, message=describe_error(exc), **base)

        push_outcome = None
        if push and self.confirm.confirm(f"Push updated {branch} to {self.remote}?", True):
            push_outcome = self.pusher.push(branch)
        log_action("update_branch", branch=branch, strategy=strategy.value, pushed=bool(push_outcome and push_outcome.success))
        return UpdateResult(
            success=True,
            message=f"{branch} updated from {source}",
            push=push_outcome,
            **base,
        )

    def update_all_local(self, *, strategy: Optional[IntegrationStrategy] = None) -> BulkUpdateResult:
        """Update every local branch except the target and stash recovery branches."""
        if not self.vcs.is_clean():
            return BulkUpdateResult(
                branches=(),
                status=SyncStatus.ABORTED,
                reason=SyncReason.USER_ABORT,
                message="Working tree is dirty. Commit or stash before bulk updating branches.",
            )
        try:
            self.vcs.fetch()
        except FetchError as exc:
            return BulkUpdateResult(
                branches=(), status=SyncStatus.ABORTED, reason=SyncReason.TRANSIENT_REMOTE, message=describe_error(exc)
            )

        branches = tuple(
            b.name for b in self.vcs.list_local_branches()
            if b.name != self.target and not b.name.startswith(STASH_BRANCH_PREFIX)
        )
        if not branches:
            return BulkUpdateResult(branches=(), status=SyncStatus.SKIPPED, message="No local branches to update")

        listing = "\n".join(f"  - {b}" for b in branches)
        if not self.confirm.confirm(f"Update ALL listed branches from {self.target}?\n{listing}\n", True):
            return BulkUpdateResult(
                branches=branches, status=SyncStatus.ABORTED, reason=SyncReason.USER_ABORT, message="Bulk update cancelled"
            )

        updated: List[str] = []
        for name in branches:
            result = self.update_branch(name, strategy=strategy, local=True, fetch=False)
            if not result.success:
                return BulkUpdateResult(
                    branches=branches,
                    updated=tuple(updated),
                    failed=result,
                    status=SyncStatus.ABORTED,
                    reason=result.reason,
                    message=f"Stopped on {name}: {result.message}",
                )
            updated.append(name)
        return BulkUpdateResult(branches=branches, updated=tuple(updated), message="Bulk update complete")

    # ----------------------------------------------------------------- delete

    def delete_branch(self, branch: str, location: BranchLocation = BranchLocation.REMOTE) -> DeleteResult:
        """Delete a branch after checking whether the target already contains it."""
        branch = self.strip_remote(branch, self.remote)
        if branch == self.target:
            return DeleteResult(branch, location, False, message=f"Refusing to delete the target branch '{self.target}'")

        if location == BranchLocation.LOCAL:
            return self._delete_local(branch)
        return self._delete_remote(branch)

    def _delete_local(self, branch: str) -> DeleteResult:
        location = BranchLocation.LOCAL
        if not self.vcs.local_branch_exists(branch):
            return DeleteResult(branch, location, False, message=f"Local branch '{branch}' does not exist")
        if self.vcs.current_branch() == branch:
            return DeleteResult(branch, location, False, message=f"'{branch}' is checked out; switch branches first")

        verified = self.vcs.is_ancestor(branch, self.target)
        prompt = (
            f"Delete local branch '{branch}'? (already merged)"
            if verified
            else f"Force delete '{branch}' even though it is not fully merged?"
        )
        if not self.confirm.confirm(prompt, False):
            return DeleteResult(branch, location, False, verified, message="Local delete cancelled")
        try:
            self.vcs.delete_local_branch(branch, force=not verified)
        except DeleteError as exc:
            return DeleteResult(branch, location, False, verified, message=describe_error(exc))
        log_action("delete_branch", branch=branch, location="local", forced=not verified)
        return DeleteResult(
            branch,
            location,
            True,
            verified,
            forced=not verified,
            message=f"Local branch '{branch}' {'deleted' if verified else 'FORCE deleted (not guaranteed merged)'}",
        )

    def _delete_remote(self, branch: str) -> DeleteResult:
        location = BranchLocation.REMOTE
        try:
            self.vcs.fetch()
        except FetchError as exc:
            return DeleteResult(branch, location, False, message=describe_error(exc))
        remote_ref = f"{self.remote}/{branch}"
        if not self.vcs.remote_branch_exists(branch):
            return DeleteResult(branch, location, False, message=f"'{remote_ref}' not found")

        verified = self.vcs.is_ancestor(remote_ref, f"{self.remote}/{self.target}")
        prompt = (
            f"Delete remote branch '{remote_ref}'? (already merged)"
            if verified
            else f"Delete remote branch '{remote_ref}' even though merge status is uncertain?"
        )
        if not self.confirm.confirm(prompt, False):
            return DeleteResult(branch, location, False, verified, message="Remote delete cancelled")
        try:
            self.vcs.delete_remote_branch(branch)
        except DeleteError as exc:
            return DeleteResult(branch, location, False, verified, message=describe_error(exc))
        self.vcs.prune()
        log_action("delete_branch", branch=branch, location="remote", verified=verified)
        return DeleteResult(branch, location, True, verified, message=f"Remote branch '{remote_ref}' deleted")

    # ---------------------------------------------------------------- session

    def session_merge_and_cleanup(self, branch: str) -> SessionCleanupResult:
        """Merge a session branch into the target, then delete it everywhere."""
        branch = self.strip_remote(branch, self.remote)
        prefix = self.config.sync.session_prefix
        if prefix and not branch.startswith(prefix):
            log_warning(f"[SESSION] {branch} does not start with {prefix}")

        merge = self.merge_branch(branch, push=True)
        if not merge.ok:
            return SessionCleanupResult(merge, (), f"Merge failed for {branch}; nothing deleted")
        if merge.integration is not None and merge.integration.dry_run:
            return SessionCleanupResult(merge, (), f"Dry run: {branch} would be deleted after the merge")
        if merge.push is None or not merge.push.success:
            return SessionCleanupResult(
                merge, (), f"{self.target} was not pushed; keeping {self.remote}/{branch} so no work is lost"
            )

        deletions: List[DeleteResult] = []
        try:
            self.vcs.delete_remote_branch(branch)
            deletions.append(DeleteResult(branch, BranchLocation.REMOTE, True, True, message="deleted"))
        except DeleteError as exc:
            deletions.append(DeleteResult(branch, BranchLocation.REMOTE, False, True, message=describe_error(exc)))
        if self.vcs.local_branch_exists(branch) and self.vcs.current_branch() != branch:
            try:
                self.vcs.delete_local_branch(branch, force=True)
                deletions.append(DeleteResult(branch, BranchLocation.LOCAL, True, True, forced=True, message="deleted"))
            except DeleteError as exc:
                deletions.append(DeleteResult(branch, BranchLocation.LOCAL, False, True, message=describe_error(exc)))
        self.vcs.prune()
        log_action("session_cleanup", branch=branch, deleted=[d.location.value for d in deletions if d.deleted])
        return SessionCleanupResult(merge, tuple(deletions), f"Merge and cleanup complete for {branch}")
