"""Typed git operations over GitPython.

Higher layers never parse git output themselves: everything comes back as
``BranchRef``, ``ConflictReport``, counts or typed exceptions. Mutating calls
log ``GIT_OP_START``/``GIT_OP_END`` at debug level.
"""

from __future__ import annotations

import shutil
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .cleanup import DeferredCleanup
from .models import (
    BranchLocation,
    BranchRef,
    ConflictReport,
    ConflictVerdict,
    PushErrorKind,
)
from .observability import log_debug, log_warning


# Push stderr fragments that mean "retrying cannot help"
PERMISSION_DENIED_TOKENS = (
    "permission denied",
    "permission to",
    "403",
    "access denied",
    "protected branch",
    "gh006",
    "not allowed to push",
    "pre-receive hook declined",
)

ALREADY_UP_TO_DATE_TOKENS = ("already up to date", "already up-to-date")


class VCSError(Exception):
    """A git operation failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class FetchError(VCSError):
    pass


class PullError(VCSError):
    def __init__(self, message: str, stderr: str = "", paths: Sequence[str] = ()):
        super().__init__(message, stderr)
        self.paths = tuple(paths)


class CheckoutError(VCSError):
    pass


class StashError(VCSError):
    pass


class MergeConflictError(VCSError):
    def __init__(self, message: str, paths: Sequence[str], stderr: str = ""):
        super().__init__(message, stderr)
        self.paths = tuple(paths)


class RebaseConflictError(VCSError):
    def __init__(self, message: str, paths: Sequence[str], stderr: str = ""):
        super().__init__(message, stderr)
        self.paths = tuple(paths)


class PushError(VCSError):
    def __init__(self, message: str, kind: PushErrorKind, stderr: str = ""):
        super().__init__(message, stderr)
        self.kind = kind


class DeleteError(VCSError):
    pass


class CleanupError(VCSError):
    """A mandatory cleanup step failed. The repository needs manual attention."""

    def __init__(self, message: str, recovery_commands: Sequence[str] = (), stderr: str = ""):
        super().__init__(message, stderr)
        self.recovery_commands = tuple(recovery_commands)


def describe_error(exc: VCSError) -> str:
    """Message plus git's own stderr, for operator-facing output."""
    return f"{exc}: {exc.stderr}" if exc.stderr else str(exc)


def classify_push_error(stderr: str) -> PushErrorKind:
    text = (stderr or "").lower()
    if any(token in text for token in PERMISSION_DENIED_TOKENS):
        return PushErrorKind.PERMISSION_DENIED
    return PushErrorKind.TRANSIENT


def _err_text(exc: GitCommandError) -> str:
    return (exc.stderr or exc.stdout or str(exc)).strip()


class GitClient:
    """Git operations for one working repository.

    Args:
        path: Any path inside the repository
        remote: Default remote name
    """

    def __init__(self, path: Path | str = ".", *, remote: str = "origin"):
        try:
            self.repo = Repo(path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise VCSError(f"Not a git repository: {path}") from exc
        if self.repo.bare:
            raise VCSError(f"Bare repository has no working tree: {path}")
        self.remote = remote
        # Never block on credential prompts or merge message editors
        self.repo.git.update_environment(GIT_TERMINAL_PROMPT="0", GIT_MERGE_AUTOEDIT="no")

    @property
    def root(self) -> Path:
        return Path(self.repo.working_tree_dir)

    # ------------------------------------------------------------------ helpers

    def _read(self, *args: str) -> str:
        return self.repo.git.execute(["git", *args])

    def _probe(self, *args: str) -> Tuple[int, str, str]:
        """Run a read-only command and return (status, stdout, stderr) without raising."""
        return self.repo.git.execute(
            ["git", *args], with_extended_output=True, with_exceptions=False
        )

    def _mutate(self, *args: str) -> str:
        op = " ".join(args)
        log_debug(f"GIT_OP_START {op}")
        start = time.perf_counter()
        try:
            out = self.repo.git.execute(["git", *args])
        except GitCommandError as exc:
            log_debug(f"GIT_OP_END {op}", status=exc.status, outcome="error")
            raise
        log_debug(
            f"GIT_OP_END {op}",
            outcome="ok",
            duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
        )
        return out

    # ------------------------------------------------------------------- state

    def current_branch(self) -> Optional[str]:
        """Name of the checked-out branch, or None when HEAD is detached."""
        if self.repo.head.is_detached:
            return None
        try:
            return self.repo.active_branch.name
        except TypeError:
            return None

    def head_commit(self, short: bool = True) -> str:
        status, out, _ = self._probe("rev-parse", *(["--short"] if short else []), "HEAD")
        return out.strip() if status == 0 else "unknown"

    def resolve(self, ref: str) -> Optional[str]:
        status, out, _ = self._probe("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        return out.strip() if status == 0 and out.strip() else None

    def is_clean(self) -> bool:
        """True when there are no staged or unstaged changes to tracked files."""
        return not self.repo.is_dirty(index=True, working_tree=True, untracked_files=False)

    def operation_in_progress(self) -> Optional[str]:
        git_dir = Path(self.repo.git_dir)
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            return "rebase"
        if (git_dir / "MERGE_HEAD").exists():
            return "merge"
        return None

    def status_porcelain(self) -> str:
        return self._read("status", "--porcelain")

    def conflicted_paths(self) -> List[str]:
        out = self._read("diff", "--name-only", "--diff-filter=U")
        return sorted({line.strip() for line in out.splitlines() if line.strip()})

    # ----------------------------------------------------------------- listing

    def _ref_names(self, prefix: str) -> List[str]:
        out = self._read("for-each-ref", "--format=%(refname)%00%(symref)", prefix)
        names = []
        for line in out.splitlines():
            refname, _, symref = line.partition("\x00")
            if symref:
                continue
            names.append(refname[len(prefix):])
        return names

    def list_local_branches(self) -> List[BranchRef]:
        remote_names = set(self._ref_names(f"refs/remotes/{self.remote}/"))
        return [
            BranchRef(
                name=name,
                location=BranchLocation.BOTH if name in remote_names else BranchLocation.LOCAL,
                remote=self.remote,
            )
            for name in self._ref_names("refs/heads/")
        ]

    def list_remote_branches(self) -> List[BranchRef]:
        local_names = set(self._ref_names("refs/heads/"))
        return [
            BranchRef(
                name=name,
                location=BranchLocation.BOTH if name in local_names else BranchLocation.REMOTE,
                remote=self.remote,
            )
            for name in self._ref_names(f"refs/remotes/{self.remote}/")
            if name != "HEAD"
        ]

    def local_branch_exists(self, name: str) -> bool:
        return self.resolve(f"refs/heads/{name}") is not None

    def remote_branch_exists(self, name: str) -> bool:
        return self.resolve(f"refs/remotes/{self.remote}/{name}") is not None

    # ---------------------------------------------------------------- ancestry

    def count_ahead_behind(self, base_ref: str, other_ref: str) -> Tuple[int, int]:
        """Commits on ``other_ref`` not on ``base_ref`` (ahead) and vice versa.

        Degrades to (0, 0) when either ref cannot be resolved.
        """
        status, out, err = self._probe("rev-list", "--left-right", "--count", f"{base_ref}...{other_ref}")
        if status != 0:
            log_debug(f"[VCS] ahead/behind unavailable for {base_ref}...{other_ref}: {err.strip()}")
            return 0, 0
        try:
            behind, ahead = (int(x) for x in out.split())
        except ValueError:
            return 0, 0
        return ahead, behind

    def merge_base(self, a: str, b: str) -> Optional[str]:
        status, out, _ = self._probe("merge-base", a, b)
        return out.strip() if status == 0 and out.strip() else None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        status, _, _ = self._probe("merge-base", "--is-ancestor", ancestor, descendant)
        return status == 0

    def last_commit_summary(self, ref: str) -> Optional[str]:
        status, out, _ = self._probe("log", "-1", "--format=%h %s (%cr)", ref, "--")
        return out.strip() if status == 0 and out.strip() else None

    def commits_between(self, base_ref: str, other_ref: str, limit: int = 10) -> List[str]:
        status, out, _ = self._probe("log", "--oneline", f"-n{limit}", f"{base_ref}..{other_ref}", "--")
        return [line for line in out.splitlines() if line.strip()] if status == 0 else []

    def changed_files(self, base_ref: str, other_ref: str) -> List[Tuple[str, str]]:
        """(status letter, path) pairs from the three-dot diff."""
        status, out, _ = self._probe("diff", "--name-status", f"{base_ref}...{other_ref}")
        if status != 0:
            return []
        files = []
        for line in out.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2:
                files.append((parts[0][:1], parts[-1]))
        return files

    def merged_branches(self, target_ref: str, location: BranchLocation) -> List[str]:
        """Branch names whose tips are ancestors of ``target_ref``."""
        prefix = "refs/heads/" if location == BranchLocation.LOCAL else f"refs/remotes/{self.remote}/"
        out = self._read("for-each-ref", f"--merged={target_ref}", "--format=%(refname)%00%(symref)", prefix)
        names = []
        for line in out.splitlines():
            refname, _, symref = line.partition("\x00")
            name = refname[len(prefix):]
            if symref or name == "HEAD":
                continue
            names.append(name)
        return names

    # ------------------------------------------------------- conflict probing

    def simulate_merge(self, merge_base: str, ours: str, theirs: str) -> ConflictReport:
        """Predict whether merging ``theirs`` into ``ours`` conflicts.

        Uses ``git merge-tree --write-tree`` which never touches the working
        tree or index. Git older than 2.38 lacks it; then a trial merge runs
        in a disposable worktree that is always removed afterwards.
        """
        status, out, err = self._probe(
            "merge-tree", "--write-tree", "--name-only", "--no-messages", ours, theirs
        )
        if status == 0:
            return ConflictReport(ConflictVerdict.CLEAN, (), merge_base)
        if status == 1:
            lines = out.splitlines()[1:]
            paths = []
            for line in lines:
                if not line.strip():
                    break
                paths.append(line.strip())
            return ConflictReport(ConflictVerdict.CONFLICTING, tuple(sorted(set(paths))), merge_base)

        log_debug(f"[VCS] merge-tree unavailable (status {status}): {err.strip()}; using trial merge")
        try:
            paths = self._trial_merge(ours, theirs)
        except GitCommandError as exc:
            return ConflictReport(
                ConflictVerdict.INDETERMINATE,
                (),
                merge_base,
                warning=f"Could not simulate merge: {_err_text(exc)}",
                method="trial-merge",
            )
        verdict = ConflictVerdict.CONFLICTING if paths else ConflictVerdict.CLEAN
        return ConflictReport(verdict, tuple(paths), merge_base, method="trial-merge")

    def _trial_merge(self, ours: str, theirs: str) -> List[str]:
        scratch = Path(tempfile.mkdtemp(prefix="branchsync-probe-"))
        probe: Optional[Repo] = None

        def remove_worktree() -> None:
            try:
                self.repo.git.execute(["git", "worktree", "remove", "--force", str(scratch)])
            except GitCommandError as exc:
                raise CleanupError(
                    f"Could not remove probe worktree {scratch}",
                    recovery_commands=(
                        f"git worktree remove --force {scratch}",
                        "git worktree prune",
                    ),
                    stderr=_err_text(exc),
                ) from exc
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        def abort_probe_merge() -> None:
            if probe is None or not (Path(probe.git_dir) / "MERGE_HEAD").exists():
                return
            try:
                probe.git.execute(["git", "merge", "--abort"])
            except GitCommandError as exc:
                raise CleanupError(
                    f"Could not abort probe merge in {scratch}",
                    recovery_commands=(
                        f"git -C {scratch} merge --abort",
                        f"git worktree remove --force {scratch}",
                    ),
                    stderr=_err_text(exc),
                ) from exc

        with DeferredCleanup("conflict-probe") as cleanup:
            cleanup.defer(lambda: shutil.rmtree(scratch, ignore_errors=True), "remove-scratch-dir")
            self.repo.git.execute(["git", "worktree", "add", "--detach", str(scratch), ours])
            cleanup.defer(remove_worktree, "remove-worktree")
            probe = Repo(scratch)
            cleanup.defer(abort_probe_merge, "abort-merge")
            status, _, err = probe.git.execute(
                ["git", "merge", "--no-commit", "--no-ff", theirs],
                with_extended_output=True,
                with_exceptions=False,
            )
            if status == 0:
                return []
            out = probe.git.execute(["git", "diff", "--name-only", "--diff-filter=U"])
            paths = sorted({line.strip() for line in out.splitlines() if line.strip()})
            if not paths:
                # Failed for a reason other than a conflict
                raise GitCommandError(["git", "merge", "--no-commit", "--no-ff", theirs], status, err)
            return paths

    # --------------------------------------------------------------- mutations

    def fetch(self, remote: Optional[str] = None, prune: bool = True) -> None:
        args = ["fetch", remote or self.remote]
        if prune:
            args.append("--prune")
        try:
            self._mutate(*args)
        except GitCommandError as exc:
            raise FetchError(f"Fetch from {remote or self.remote} failed", _err_text(exc)) from exc

    def prune(self, remote: Optional[str] = None) -> None:
        try:
            self._mutate("remote", "prune", remote or self.remote)
        except GitCommandError as exc:
            log_warning(f"[VCS] prune failed: {_err_text(exc)}")

    def checkout(self, branch: str) -> None:
        try:
            self._mutate("checkout", branch)
        except GitCommandError as exc:
            raise CheckoutError(f"Could not check out {branch}", _err_text(exc)) from exc

    def checkout_tracking(self, branch: str) -> None:
        """Create a local branch tracking ``<remote>/<branch>`` and switch to it."""
        try:
            self._mutate("checkout", "-b", branch, "--track", f"{self.remote}/{branch}")
        except GitCommandError as exc:
            raise CheckoutError(f"Could not create local {branch} from {self.remote}", _err_text(exc)) from exc

    def stash(self, label: str) -> str:
        """Stash tracked changes under ``label``. Returns the stash ref."""
        before = self._read("stash", "list")
        try:
            self._mutate("stash", "push", "-m", label)
        except GitCommandError as exc:
            raise StashError(f"Could not stash changes as '{label}'", _err_text(exc)) from exc
        after = self._read("stash", "list")
        if after == before or label not in after.splitlines()[0]:
            raise StashError(f"Stash '{label}' was not created")
        return "stash@{0}"

    def pull(self, branch: str, ff_only: bool = False) -> bool:
        """Pull ``branch`` from the remote into the current branch.

        Returns True if anything changed, False when already up to date.
        """
        args = ["pull", "--ff-only" if ff_only else "--no-rebase", "--no-edit", self.remote, branch]
        try:
            out = self._mutate(*args)
        except GitCommandError as exc:
            paths = self.conflicted_paths() if self.operation_in_progress() == "merge" else []
            raise PullError(f"Pull of {self.remote}/{branch} failed", _err_text(exc), paths) from exc
        return not any(tok in out.lower() for tok in ALREADY_UP_TO_DATE_TOKENS)

    def merge(self, source: str, message: Optional[str] = None, *, no_ff: bool = True, ff_only: bool = False) -> None:
        args = ["merge"]
        if ff_only:
            args.append("--ff-only")
        elif no_ff:
            args.append("--no-ff")
        args += ["-m", message] if message else ["--no-edit"]
        args.append(source)
        try:
            self._mutate(*args)
        except GitCommandError as exc:
            paths = self.conflicted_paths() if self.operation_in_progress() == "merge" else []
            if paths:
                raise MergeConflictError(f"Merge of {source} conflicts", paths, _err_text(exc)) from exc
            raise VCSError(f"Merge of {source} failed", _err_text(exc)) from exc

    def rebase(self, onto: str) -> None:
        try:
            self._mutate("rebase", onto)
        except GitCommandError as exc:
            if self.operation_in_progress() == "rebase":
                paths = self.conflicted_paths()
                raise RebaseConflictError(f"Rebase onto {onto} conflicts", paths, _err_text(exc)) from exc
            raise VCSError(f"Rebase onto {onto} failed", _err_text(exc)) from exc

    def abort_merge(self) -> None:
        try:
            self._mutate("merge", "--abort")
        except GitCommandError as exc:
            raise CleanupError("git merge --abort failed", ("git merge --abort", "git reset --merge"), _err_text(exc)) from exc

    def abort_rebase(self) -> None:
        try:
            self._mutate("rebase", "--abort")
        except GitCommandError as exc:
            raise CleanupError("git rebase --abort failed", ("git rebase --abort",), _err_text(exc)) from exc

    def push(self, branch: str, *, refspec: Optional[str] = None) -> None:
        try:
            self._mutate("push", self.remote, refspec or branch)
        except GitCommandError as exc:
            stderr = _err_text(exc)
            kind = classify_push_error(stderr)
            raise PushError(f"Push of {branch} to {self.remote} failed", kind, stderr) from exc

    def delete_local_branch(self, name: str, force: bool = False) -> None:
        try:
            self._mutate("branch", "-D" if force else "-d", name)
        except GitCommandError as exc:
            raise DeleteError(f"Could not delete local branch {name}", _err_text(exc)) from exc

    def delete_remote_branch(self, name: str) -> None:
        try:
            self._mutate("push", self.remote, "--delete", name)
        except GitCommandError as exc:
            raise DeleteError(f"Could not delete {self.remote}/{name}", _err_text(exc)) from exc

    def delete_branch(self, name: str, location: BranchLocation, force: bool = False) -> None:
        if location in (BranchLocation.LOCAL, BranchLocation.BOTH):
            self.delete_local_branch(name, force=force)
        if location in (BranchLocation.REMOTE, BranchLocation.BOTH):
            self.delete_remote_branch(name)
