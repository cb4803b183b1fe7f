"""Structured records passed between the sync layers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Tuple


class BranchLocation(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"


@dataclass(frozen=True)
class BranchRef:
    """A branch as seen at listing time. Counts are filled in on demand."""

    name: str
    location: BranchLocation
    remote: str = "origin"
    ahead: Optional[int] = None
    behind: Optional[int] = None
    last_commit: Optional[str] = None

    @property
    def ref(self) -> str:
        """Revision to merge from: the remote-tracking ref when one exists."""
        if self.location in (BranchLocation.REMOTE, BranchLocation.BOTH):
            return f"{self.remote}/{self.name}"
        return self.name

    def is_session(self, prefix: str) -> bool:
        return bool(prefix) and self.name.startswith(prefix)

    def with_counts(self, ahead: int, behind: int, last_commit: Optional[str] = None) -> "BranchRef":
        return replace(self, ahead=ahead, behind=behind, last_commit=last_commit)


class ConflictVerdict(str, Enum):
    CLEAN = "clean"
    CONFLICTING = "conflicting"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ConflictReport:
    verdict: ConflictVerdict
    paths: Tuple[str, ...] = ()
    merge_base: Optional[str] = None
    warning: Optional[str] = None
    method: str = "merge-tree"

    @property
    def is_clean(self) -> bool:
        return self.verdict == ConflictVerdict.CLEAN

    @property
    def is_conflicting(self) -> bool:
        return self.verdict == ConflictVerdict.CONFLICTING


class IntegrationStrategy(str, Enum):
    MERGE = "merge"
    REBASE = "rebase"


@dataclass(frozen=True)
class RecoveryCommands:
    """The two ways out of an interrupted merge or rebase."""

    continue_commands: Tuple[str, ...]
    abort_commands: Tuple[str, ...]

    @classmethod
    def for_strategy(cls, strategy: IntegrationStrategy) -> "RecoveryCommands":
        if strategy == IntegrationStrategy.REBASE:
            return cls(
                continue_commands=("git add <resolved-files>", "git rebase --continue"),
                abort_commands=("git rebase --abort",),
            )
        return cls(
            continue_commands=("git add <resolved-files>", "git commit"),
            abort_commands=("git merge --abort",),
        )

    @classmethod
    def for_predicted_conflict(cls, target: str, source_ref: str) -> "RecoveryCommands":
        """Nothing is in progress yet; these describe merging by hand."""
        return cls(
            continue_commands=(
                f"git checkout {target}",
                f"git merge --no-ff {source_ref}",
                "git add <resolved-files>",
                "git commit",
            ),
            abort_commands=(),
        )

    def as_dict(self) -> dict:
        return {"continue": list(self.continue_commands), "abort": list(self.abort_commands)}


class SyncReason(str, Enum):
    LOCK_HELD = "lock_held"
    USER_ABORT = "user_abort"
    RECOVERABLE_CONFLICT = "recoverable_conflict"
    TRANSIENT_REMOTE = "transient_remote"
    PERMISSION_DENIED = "permission_denied"
    FATAL = "fatal"


@dataclass(frozen=True)
class IntegrationResult:
    """Outcome of one merge or rebase performed by the executor."""

    success: bool
    source: str
    target: str
    strategy: IntegrationStrategy
    head: Optional[str] = None
    message: str = ""
    reason: Optional[SyncReason] = None
    conflict_paths: Tuple[str, ...] = ()
    recovery: Optional[RecoveryCommands] = None
    stash: Optional[str] = None
    planned_commands: Tuple[str, ...] = ()

    @property
    def dry_run(self) -> bool:
        return bool(self.planned_commands)


class PushErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class PushOutcome:
    success: bool
    branch: str
    attempts: int = 0
    delays: Tuple[float, ...] = ()
    error_kind: Optional[PushErrorKind] = None
    message: str = ""
    manual_commands: Tuple[str, ...] = ()
    planned_commands: Tuple[str, ...] = ()


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SyncOutcome:
    """What a bulk sync did. Exactly one of Completed, Skipped or Aborted."""

    status: SyncStatus
    merged_count: int = 0
    reason: Optional[SyncReason] = None
    message: str = ""
    target_branch: Optional[str] = None
    merged_branches: Tuple[str, ...] = ()
    candidates: Tuple[str, ...] = ()
    failed_branch: Optional[str] = None
    conflict_paths: Tuple[str, ...] = ()
    recovery: Optional[RecoveryCommands] = None
    push: Optional[PushOutcome] = None
    start_head: Optional[str] = None
    end_head: Optional[str] = None
    dry_run: bool = False
    planned_commands: Tuple[str, ...] = ()

    @classmethod
    def completed(cls, merged_count: int, **kw) -> "SyncOutcome":
        return cls(status=SyncStatus.COMPLETED, merged_count=merged_count, **kw)

    @classmethod
    def skipped(cls, reason: SyncReason, message: str = "", **kw) -> "SyncOutcome":
        return cls(status=SyncStatus.SKIPPED, reason=reason, message=message, **kw)

    @classmethod
    def aborted(cls, reason: SyncReason, merged_count: int, message: str = "", **kw) -> "SyncOutcome":
        return cls(status=SyncStatus.ABORTED, reason=reason, merged_count=merged_count, message=message, **kw)

    @property
    def ok(self) -> bool:
        return self.status != SyncStatus.ABORTED

    def to_dict(self) -> dict:
        data = {
            "status": self.status.value,
            "merged_count": self.merged_count,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "target_branch": self.target_branch,
            "merged_branches": list(self.merged_branches),
            "candidates": list(self.candidates),
            "failed_branch": self.failed_branch,
            "conflict_paths": list(self.conflict_paths),
            "recovery": self.recovery.as_dict() if self.recovery else None,
            "start_head": self.start_head,
            "end_head": self.end_head,
            "dry_run": self.dry_run,
            "planned_commands": list(self.planned_commands),
            "push": None,
        }
        if self.push is not None:
            data["push"] = {
                "success": self.push.success,
                "attempts": self.push.attempts,
                "error_kind": self.push.error_kind.value if self.push.error_kind else None,
                "message": self.push.message,
                "manual_commands": list(self.push.manual_commands),
            }
        return data


@dataclass
class SyncSession:
    """One bulk sync run. ``candidates`` is fixed once snapshotted."""

    target_branch: str
    candidates: Tuple[BranchRef, ...] = ()
    merged: List[str] = field(default_factory=list)
    start_head: Optional[str] = None
    end_head: Optional[str] = None

    @property
    def merged_count(self) -> int:
        return len(self.merged)


@dataclass(frozen=True)
class BranchComparison:
    branch: str
    target: str
    ahead: int
    behind: int
    commits: Tuple[str, ...] = ()
    changed_files: Tuple[Tuple[str, str], ...] = ()
    last_commit: Optional[str] = None
