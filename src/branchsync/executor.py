"""Merge/rebase execution with structured conflict reporting."""

from __future__ import annotations

from typing import Optional

from .confirm import ConfirmationProvider
from .fs import stash_stamp
from .models import IntegrationResult, IntegrationStrategy, RecoveryCommands, SyncReason
from .observability import log_debug, log_warning
from .vcs import (
    CheckoutError,
    GitClient,
    MergeConflictError,
    PullError,
    RebaseConflictError,
    StashError,
    VCSError,
    describe_error,
)


class UserAbortError(Exception):
    """The operator declined a confirmation."""


class WorkingTreeDirtyError(UserAbortError):
    """Uncommitted changes are present and the operator declined to stash them."""


def default_merge_message(source: str, target: str) -> str:
    return f"Merge branch '{source}' into {target}"


def ensure_clean_tree(vcs: GitClient, confirm: ConfirmationProvider, label_prefix: str) -> Optional[str]:
    """Make the working tree clean before switching branches.

    Returns the stash label when changes were stashed, None if already clean.

    Raises:
        WorkingTreeDirtyError: the operator declined to stash
        StashError: stashing failed; nothing was discarded
    """
    if vcs.is_clean():
        return None
    label = f"{label_prefix}-{stash_stamp()}"
    if not confirm.confirm(
        f"Working tree has uncommitted changes. Stash them as '{label}' and continue?",
        False,
    ):
        raise WorkingTreeDirtyError("Uncommitted changes present; commit or stash them first")
    vcs.stash(label)
    log_warning(f"[EXEC] stashed uncommitted changes as '{label}' (restore with: git stash pop)")
    return label


class MergeExecutor:
    """Checks out the target, updates it, then merges or rebases a source into it."""

    def __init__(self, vcs: GitClient, confirm: ConfirmationProvider):
        self.vcs = vcs
        self.confirm = confirm

    def planned_commands(
        self,
        source_ref: str,
        target: str,
        strategy: IntegrationStrategy,
        message: Optional[str] = None,
    ) -> tuple:
        remote = self.vcs.remote
        integrate = (
            f"git rebase {source_ref}"
            if strategy == IntegrationStrategy.REBASE
            else f"git merge --no-ff -m \"{message or default_merge_message(source_ref, target)}\" {source_ref}"
        )
        return (
            f"git checkout {target}",
            f"git pull {remote} {target}",
            integrate,
        )

    def integrate(
        self,
        source_ref: str,
        target: str,
        strategy: IntegrationStrategy = IntegrationStrategy.MERGE,
        *,
        message: Optional[str] = None,
        dry_run: bool = False,
        update_target: bool = True,
    ) -> IntegrationResult:
        strategy = IntegrationStrategy(strategy)
        base = dict(source=source_ref, target=target, strategy=strategy)

        if dry_run:
            return IntegrationResult(
                success=True,
                message="dry run",
                planned_commands=self.planned_commands(source_ref, target, strategy, message),
                **base,
            )

        in_progress = self.vcs.operation_in_progress()
        if in_progress:
            return IntegrationResult(
                success=False,
                reason=SyncReason.FATAL,
                message=f"A {in_progress} is already in progress; finish or abort it first",
                recovery=RecoveryCommands.for_strategy(
                    IntegrationStrategy.REBASE if in_progress == "rebase" else IntegrationStrategy.MERGE
                ),
                **base,
            )

        try:
            stash = ensure_clean_tree(self.vcs, self.confirm, f"merge-{target}")
        except WorkingTreeDirtyError as exc:
            return IntegrationResult(success=False, reason=SyncReason.USER_ABORT, message=str(exc), **base)
        except StashError as exc:
            return IntegrationResult(
                success=False,
                reason=SyncReason.FATAL,
                message=describe_error(exc),
                **base,
            )

        try:
            if self.vcs.current_branch() != target:
                if self.vcs.local_branch_exists(target):
                    self.vcs.checkout(target)
                else:
                    self.vcs.checkout_tracking(target)
        except CheckoutError as exc:
            return IntegrationResult(
                success=False, reason=SyncReason.FATAL, message=describe_error(exc), stash=stash, **base
            )

        if update_target and self.vcs.remote_branch_exists(target):
            try:
                changed = self.vcs.pull(target)
                log_debug(f"[EXEC] {target} {'updated' if changed else 'already up to date'}")
            except PullError as exc:
                if exc.paths:
                    return IntegrationResult(
                        success=False,
                        reason=SyncReason.RECOVERABLE_CONFLICT,
                        message=f"Updating {target} from {self.vcs.remote} conflicts",
                        conflict_paths=exc.paths,
                        recovery=RecoveryCommands.for_strategy(IntegrationStrategy.MERGE),
                        stash=stash,
                        **base,
                    )
                return IntegrationResult(
                    success=False,
                    reason=SyncReason.TRANSIENT_REMOTE,
                    message=describe_error(exc),
                    stash=stash,
                    **base,
                )

        try:
            if strategy == IntegrationStrategy.REBASE:
                self.vcs.rebase(source_ref)
            else:
                self.vcs.merge(source_ref, message or default_merge_message(source_ref, target))
        except (MergeConflictError, RebaseConflictError) as exc:
            log_warning(f"[EXEC] {exc}", paths=list(exc.paths))
            return IntegrationResult(
                success=False,
                reason=SyncReason.RECOVERABLE_CONFLICT,
                message=str(exc),
                conflict_paths=exc.paths,
                recovery=RecoveryCommands.for_strategy(strategy),
                stash=stash,
                **base,
            )
        except VCSError as exc:
            return IntegrationResult(
                success=False,
                reason=SyncReason.FATAL,
                message=describe_error(exc),
                stash=stash,
                **base,
            )

        return IntegrationResult(
            success=True,
            head=self.vcs.head_commit(short=False),
            message=f"{strategy.value} of {source_ref} into {target} succeeded",
            stash=stash,
            **base,
        )
