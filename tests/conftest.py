from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, Optional

import pytest
from git import Repo
from git.exc import GitCommandError


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))


GITCONFIG = """\
[user]
\tname = Branch Sync Tests
\temail = branchsync-tests@example.com
[init]
\tdefaultBranch = main
[commit]
\tgpgsign = false
[core]
\tautocrlf = false
[advice]
\tdetachedHead = false
"""


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME, git identity and every branchsync path into tmp_path."""
    home = tmp_path / "home"
    home.mkdir()
    (home / ".gitconfig").write_text(GITCONFIG, encoding="utf-8")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("GIT_CONFIG_GLOBAL", raising=False)
    for name in list(os.environ):
        if name.startswith("BRANCHSYNC_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("BRANCHSYNC_LOG_DISABLE_FILE", "1")
    monkeypatch.setenv("BRANCHSYNC_LOCK_FILE", str(tmp_path / "locks" / "sync.lock"))
    monkeypatch.setenv("BRANCHSYNC_BREADCRUMB_LOG", str(tmp_path / "logs" / "branch-sync.log"))
    monkeypatch.setenv("BRANCHSYNC_PUSH_INITIAL_DELAY", "0")
    return home


class RepoSandbox:
    """A bare remote seeded with ``main``, an author clone and a working clone.

    The author clone plays "other agents" pushing branches; the working clone
    is the repository under test.
    """

    def __init__(self, root: Path):
        self.root = root
        self.origin_path = root / "origin.git"
        origin = Repo.init(self.origin_path, bare=True)
        origin.git.symbolic_ref("HEAD", "refs/heads/main")

        seed = Repo.init(root / "seed")
        seed.git.symbolic_ref("HEAD", "refs/heads/main")
        (root / "seed" / "README.md").write_text("# sandbox\n", encoding="utf-8")
        (root / "seed" / "x.txt").write_text("line 1\nline 2\nline 3\n", encoding="utf-8")
        seed.git.add("-A")
        seed.git.commit("-m", "initial commit")
        seed.create_remote("origin", str(self.origin_path))
        seed.git.push("origin", "main")

        self.author = Repo.clone_from(str(self.origin_path), str(root / "author"))
        self.work = Repo.clone_from(str(self.origin_path), str(root / "work"))

    @property
    def work_path(self) -> Path:
        return Path(self.work.working_tree_dir)

    def _commit_files(self, repo: Repo, files: Dict[str, str], message: str) -> str:
        base = Path(repo.working_tree_dir)
        for rel, content in files.items():
            path = base / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        repo.git.add("-A")
        repo.git.commit("-m", message)
        return repo.head.commit.hexsha

    def push_branch(
        self,
        name: str,
        commits: int = 1,
        files: Optional[Dict[str, str]] = None,
        base: str = "main",
    ) -> str:
        """Create ``name`` from ``origin/<base>`` with N commits and push it."""
        self.author.git.fetch("origin")
        self.author.git.checkout("-B", name, f"origin/{base}")
        slug = name.replace("/", "-")
        sha = ""
        for i in range(commits):
            content = files if (files and i == commits - 1) else {f"{slug}-{i}.txt": f"{name} change {i}\n"}
            sha = self._commit_files(self.author, content, f"{name}: commit {i + 1}")
        self.author.git.push("--force", "origin", f"HEAD:refs/heads/{name}")
        return sha

    def advance_main(self, files: Dict[str, str], message: str = "main moves on") -> str:
        """Push a new commit to origin/main from the author clone."""
        self.author.git.fetch("origin")
        self.author.git.checkout("-B", "main", "origin/main")
        sha = self._commit_files(self.author, files, message)
        self.author.git.push("origin", "HEAD:refs/heads/main")
        return sha

    def remote_sha(self, branch: str) -> Optional[str]:
        origin = Repo(self.origin_path)
        try:
            return origin.git.rev_parse("--verify", "--quiet", f"refs/heads/{branch}")
        except GitCommandError:
            return None

    def remote_branches(self) -> list:
        origin = Repo(self.origin_path)
        out = origin.git.for_each_ref("--format=%(refname:short)", "refs/heads/")
        return [line for line in out.splitlines() if line]


@pytest.fixture
def sandbox(tmp_path: Path) -> RepoSandbox:
    return RepoSandbox(tmp_path / "repos")


@pytest.fixture
def config(tmp_path: Path):
    from branchsync.config_schema import BranchSyncConfig

    return BranchSyncConfig.default().with_overrides(
        lock={"path": str(tmp_path / "locks" / "sync.lock")},
        breadcrumbs={"path": str(tmp_path / "logs" / "branch-sync.log")},
        push={"initial_delay": 0},
        logging={"disable_file": True},
    )


@pytest.fixture
def vcs(sandbox: RepoSandbox):
    from branchsync.vcs import GitClient

    return GitClient(sandbox.work_path)
