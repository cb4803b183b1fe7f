"""Branch Sync MCP Server

FastMCP server exposing branch inspection and the non-interactive bulk sync
to AI agents. All tools are namespaced as branchsync_* for provider
compatibility. Tools return JSON text.
"""

import sys
if sys.version_info < (3, 10):
    raise RuntimeError(
        f"Branch Sync MCP requires Python 3.10+; found {sys.version.split()[0]}"
    )

import json
import os
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from branchsync import __version__
from branchsync.commands import Context, load_settings, open_context
from branchsync.config_loader import ConfigError
from branchsync.confirm import AutoConfirm
from branchsync.lock import LockError, read_lock_info
from branchsync.models import BranchLocation
from branchsync.observability import log_action, log_error, timeit
from branchsync.orchestrator import BulkSyncOrchestrator
from branchsync.vcs import VCSError, describe_error


ENV_TRANSPORT = "BRANCHSYNC_MCP_TRANSPORT"
ENV_HOST = "BRANCHSYNC_MCP_HOST"
ENV_PORT = "BRANCHSYNC_MCP_PORT"

mcp = FastMCP(name="Branch Sync")


def _json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


def _error(tool: str, exc: Exception) -> str:
    message = describe_error(exc) if isinstance(exc, VCSError) else str(exc)
    log_error(f"[MCP] {tool} failed: {message}")
    return _json({"ok": False, "error": message})


def _context(repo_path: str, target: str, approve: bool = False) -> Context:
    ctx = open_context(repo_path or None, target or None, yes=False)
    ctx.confirm = AutoConfirm(approve)
    return ctx


def list_branches(repo_path: str = "", target: str = "", local: bool = False, counts: bool = True) -> str:
    """List branches relative to the target, session branches first.

    Args:
        repo_path: Path inside the repository (default: server cwd)
        target: Target branch override
        local: List local branches instead of remote ones
        counts: Include ahead/behind counts and the last commit
    """
    try:
        with timeit("mcp.list_branches", local=local):
            ctx = _context(repo_path, target)
            wf = ctx.workflows()
            if not local:
                ctx.vcs.fetch()
            branches = wf.classifier.list_branches(BranchLocation.LOCAL if local else BranchLocation.REMOTE)
            rows = []
            for branch in branches:
                if counts:
                    branch = wf.classifier.with_counts(branch)
                rows.append(
                    {
                        "name": branch.name,
                        "location": branch.location.value,
                        "session": branch.is_session(ctx.config.sync.session_prefix),
                        "ahead": branch.ahead,
                        "behind": branch.behind,
                        "last_commit": branch.last_commit,
                    }
                )
            return _json({"ok": True, "target": ctx.config.sync.target_branch, "branches": rows})
    except (ConfigError, VCSError) as exc:
        return _error("list_branches", exc)


def compare(branch: str, repo_path: str = "", target: str = "") -> str:
    """Compare a branch with the target: counts, commits to merge, changed files."""
    try:
        with timeit("mcp.compare", branch=branch):
            ctx = _context(repo_path, target)
            ctx.vcs.fetch()
            cmp = ctx.workflows().compare(branch)
        if cmp is None:
            return _json({"ok": False, "error": f"Branch '{branch}' not found"})
        return _json(
            {
                "ok": True,
                "branch": cmp.branch,
                "target": cmp.target,
                "ahead": cmp.ahead,
                "behind": cmp.behind,
                "last_commit": cmp.last_commit,
                "commits": list(cmp.commits),
                "changed_files": [{"status": s, "path": p} for s, p in cmp.changed_files],
            }
        )
    except (ConfigError, VCSError) as exc:
        return _error("compare", exc)


def check_conflicts(branch: str, repo_path: str = "", target: str = "") -> str:
    """Predict whether merging ``branch`` into the target conflicts. Never modifies the repository."""
    try:
        with timeit("mcp.check_conflicts", branch=branch):
            ctx = _context(repo_path, target)
            ctx.vcs.fetch()
            report = ctx.workflows().check_conflicts(branch)
        if report is None:
            return _json({"ok": False, "error": f"Branch '{branch}' not found"})
        return _json(
            {
                "ok": True,
                "verdict": report.verdict.value,
                "paths": list(report.paths),
                "merge_base": report.merge_base,
                "warning": report.warning,
            }
        )
    except (ConfigError, VCSError) as exc:
        return _error("check_conflicts", exc)


def lock_status(repo_path: str = "") -> str:
    """Report who holds the bulk sync lock and whether it is stale."""
    try:
        ctx_config = load_settings(repo_path or None)
        path = ctx_config.lock.resolved_path()
        info = read_lock_info(path, ctx_config.lock.max_age)
    except (ConfigError, LockError) as exc:
        return _error("lock_status", exc)
    if info is None:
        return _json({"ok": True, "locked": False, "path": str(path)})
    return _json(
        {
            "ok": True,
            "locked": True,
            "path": str(path),
            "pid": info.pid,
            "alive": info.alive,
            "age_seconds": round(info.age, 1),
            "stale": info.stale,
            "user": info.user,
        }
    )


def sync_all(
    repo_path: str = "",
    target: str = "",
    approve: bool = False,
    push: bool = False,
    dry_run: bool = False,
) -> str:
    """Merge every eligible branch ahead of the target.

    Nothing is merged unless ``approve`` is true; without it the session stops
    at the batch confirmation and reports the candidates. Pushing the target
    additionally requires ``push``.
    """
    try:
        ctx = _context(repo_path, target, approve=approve)
        orchestrator = BulkSyncOrchestrator(ctx.vcs, ctx.config, ctx.confirm)
        outcome = orchestrator.run(dry_run=dry_run, push=push)
    except (ConfigError, VCSError) as exc:
        return _error("sync_all", exc)
    log_action("mcp.sync_all", outcome=outcome.status.value, merged=outcome.merged_count, approve=approve)
    return _json({"ok": outcome.ok, **outcome.to_dict()})


def health(repo_path: str = "") -> str:
    """Server version, resolved repository and configuration summary."""
    payload: Dict[str, Any] = {"server": "Branch Sync", "version": __version__, "python": sys.executable}
    try:
        ctx = open_context(repo_path or None)
        payload.update(
            {
                "status": "healthy",
                "repository": str(ctx.vcs.root),
                "current_branch": ctx.vcs.current_branch(),
                "target": ctx.config.sync.target_branch,
                "remote": ctx.config.sync.remote,
                "lock_path": str(ctx.config.lock.resolved_path()),
            }
        )
    except (ConfigError, VCSError) as exc:
        payload.update({"status": "error", "error": str(exc)})
    return _json(payload)


mcp.tool(name="branchsync_list_branches")(list_branches)
mcp.tool(name="branchsync_compare")(compare)
mcp.tool(name="branchsync_check_conflicts")(check_conflicts)
mcp.tool(name="branchsync_lock_status")(lock_status)
mcp.tool(name="branchsync_sync_all")(sync_all)
mcp.tool(name="branchsync_health")(health)


def get_transport_config() -> Dict[str, Any]:
    transport = os.getenv(ENV_TRANSPORT, "stdio").lower()
    return {
        "transport": transport,
        "host": os.getenv(ENV_HOST, "127.0.0.1"),
        "port": int(os.getenv(ENV_PORT, "3000")),
    }


def main(argv: Optional[list] = None) -> None:
    """Entry point for the branchsync-mcp command."""
    config = get_transport_config()
    if config["transport"] == "http":
        print(f"Starting Branch Sync MCP Server on http://{config['host']}:{config['port']}", file=sys.stderr)
        mcp.run(transport="http", host=config["host"], port=config["port"])
    else:
        # stdio transport (default)
        mcp.run()


if __name__ == "__main__":
    main()
