from __future__ import annotations

from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import BranchLocation, BranchRef
from .observability import log_debug
from .vcs import GitClient


def is_allowed(name: str, patterns: Sequence[str]) -> bool:
    """An empty allow-list admits every branch."""
    if not patterns:
        return True
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def partition_session_first(branches: Iterable[BranchRef], session_prefix: str) -> List[BranchRef]:
    """Session branches first, then the rest, each in the order given."""
    session: List[BranchRef] = []
    other: List[BranchRef] = []
    for branch in branches:
        (session if branch.is_session(session_prefix) else other).append(branch)
    return session + other


class BranchClassifier:
    """Lists branches relative to a target and decides which are sync candidates.

    Ahead/behind counts are not part of a listing; call :meth:`with_counts`
    for the branches that need them.
    """

    def __init__(
        self,
        vcs: GitClient,
        *,
        target_branch: str,
        session_prefix: str = "claude/",
    ):
        self.vcs = vcs
        self.target_branch = target_branch
        self.session_prefix = session_prefix

    @property
    def remote(self) -> str:
        return self.vcs.remote

    @property
    def target_ref(self) -> str:
        """Best reference for the target: the local branch if present."""
        if self.vcs.local_branch_exists(self.target_branch):
            return self.target_branch
        return f"{self.remote}/{self.target_branch}"

    def list_branches(
        self,
        location: BranchLocation = BranchLocation.REMOTE,
        allow: Sequence[str] = (),
    ) -> List[BranchRef]:
        if location == BranchLocation.LOCAL:
            raw = self.vcs.list_local_branches()
        else:
            raw = self.vcs.list_remote_branches()
        eligible = [
            b for b in raw
            if b.name != self.target_branch and b.name != "HEAD" and is_allowed(b.name, allow)
        ]
        return partition_session_first(eligible, self.session_prefix)

    def split(self, branches: Sequence[BranchRef]) -> Tuple[List[BranchRef], List[BranchRef]]:
        session = [b for b in branches if b.is_session(self.session_prefix)]
        other = [b for b in branches if not b.is_session(self.session_prefix)]
        return session, other

    def with_counts(self, branch: BranchRef, base_ref: Optional[str] = None) -> BranchRef:
        base = base_ref or self.target_ref
        ahead, behind = self.vcs.count_ahead_behind(base, branch.ref)
        return branch.with_counts(ahead, behind, self.vcs.last_commit_summary(branch.ref))

    def candidates(self, base_ref: str, allow: Sequence[str] = ()) -> Tuple[BranchRef, ...]:
        """Snapshot remote branches strictly ahead of ``base_ref``."""
        snapshot = []
        for branch in self.list_branches(BranchLocation.REMOTE, allow):
            counted = self.with_counts(branch, base_ref)
            if counted.ahead and counted.ahead > 0:
                snapshot.append(counted)
            else:
                log_debug(f"[CLASSIFY] {branch.name} has nothing to merge into {base_ref}")
        return tuple(snapshot)
