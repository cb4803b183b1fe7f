#!/usr/bin/env python3
"""branchsync CLI - reconcile session branches into a target branch."""
from __future__ import annotations

import argparse
import sys

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"branchsync requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--repo", help="Path inside the working repository (default: current directory)")
    common.add_argument("--target", help="Target branch (default: from config, usually main)")
    common.add_argument("--yes", "-y", action="store_true", help="Answer yes to every confirmation")

    ap = argparse.ArgumentParser(
        prog="branchsync",
        description="Merge, update and clean up branches against a target branch",
    )
    from . import __version__

    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="cmd")

    p_branches = sub.add_parser("branches", parents=[common], help="List branches, session branches first")
    p_branches.add_argument("--local", action="store_true", help="List local instead of remote branches")
    p_branches.add_argument("--counts", action="store_true", help="Show ahead/behind counts and last commit")

    p_compare = sub.add_parser("compare", parents=[common], help="Compare a branch with the target")
    p_compare.add_argument("branch")

    p_check = sub.add_parser("check-conflicts", parents=[common], help="Predict merge conflicts without merging")
    p_check.add_argument("branch")

    p_merge = sub.add_parser("merge", parents=[common], help="Merge one remote branch into the target")
    p_merge.add_argument("branch")
    p_merge.add_argument("--strategy", choices=["merge", "rebase"], help="Integration strategy")
    p_merge.add_argument("--dry-run", action="store_true", help="Show the commands that would run")
    p_merge.add_argument("--no-push", action="store_true", help="Do not push the target afterwards")

    p_sync = sub.add_parser("sync-all", parents=[common], help="Merge every eligible branch ahead of the target")
    p_sync.add_argument("--dry-run", action="store_true", help="Show the commands that would run")
    p_sync.add_argument("--no-push", action="store_true", help="Do not push the target afterwards")

    p_update = sub.add_parser("update-branch", parents=[common], help="Update a branch from the target")
    p_update.add_argument("branch")
    p_update.add_argument("--strategy", choices=["merge", "rebase"], help="Integration strategy")
    p_update.add_argument("--local", action="store_true", help="Only consider an existing local branch")
    p_update.add_argument("--push", action="store_true", help="Push the updated branch")

    p_update_all = sub.add_parser("update-all", parents=[common], help="Update every local branch from the target")
    p_update_all.add_argument("--strategy", choices=["merge", "rebase"], help="Integration strategy")

    p_merged = sub.add_parser("merged", parents=[common], help="List branches already merged into the target")
    p_merged.add_argument("--local", action="store_true", help="Local instead of remote branches")

    p_delete = sub.add_parser("delete", parents=[common], help="Delete a branch after a merge check")
    p_delete.add_argument("branch")
    p_delete.add_argument("--local", action="store_true", help="Delete the local branch instead of the remote one")

    p_session = sub.add_parser("session-cleanup", parents=[common], help="Merge a session branch, then delete it")
    p_session.add_argument("branch")

    sub.add_parser("lock-status", parents=[common], help="Show the sync lock holder")

    p_unlock = sub.add_parser("unlock", parents=[common], help="Remove a stale sync lock")
    p_unlock.add_argument("--force", action="store_true", help="Remove the lock even if it is not stale")

    p_crumbs = sub.add_parser("breadcrumbs", parents=[common], help="Show recent sync sessions")
    p_crumbs.add_argument("--tail", type=int, default=20, help="Number of entries to show (default: 20)")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")
    p_config_show = config_sub.add_parser("show", help="Show resolved configuration")
    p_config_show.add_argument("--repo", help="Project directory for config discovery")
    p_config_show.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    p_config_validate = config_sub.add_parser("validate", help="Validate configuration files")
    p_config_validate.add_argument("--repo", help="Project directory for config discovery")

    return ap


def _dispatch(args: argparse.Namespace) -> int:
    from . import commands

    if args.cmd == "config":
        if args.config_cmd == "show":
            return commands.cmd_config_show(args.repo, as_json=args.as_json)
        if args.config_cmd == "validate":
            return commands.cmd_config_validate(args.repo)
        print("Usage: branchsync config {show|validate}")
        return 0

    if args.cmd in ("lock-status", "unlock", "breadcrumbs"):
        config = commands.load_settings(args.repo, args.target)
        if args.cmd == "lock-status":
            return commands.cmd_lock_status(config)
        if args.cmd == "unlock":
            return commands.cmd_unlock(config, force=args.force)
        return commands.cmd_breadcrumbs(config, tail=args.tail)

    push = False if getattr(args, "no_push", False) else None
    ctx = commands.open_context(args.repo, args.target, args.yes)

    if args.cmd == "branches":
        return commands.cmd_branches(ctx, local=args.local, counts=args.counts)
    if args.cmd == "compare":
        return commands.cmd_compare(ctx, args.branch)
    if args.cmd == "check-conflicts":
        return commands.cmd_check_conflicts(ctx, args.branch)
    if args.cmd == "merge":
        return commands.cmd_merge(ctx, args.branch, strategy=args.strategy, dry_run=args.dry_run, push=push)
    if args.cmd == "sync-all":
        return commands.cmd_sync_all(ctx, dry_run=args.dry_run, push=push)
    if args.cmd == "update-branch":
        return commands.cmd_update_branch(
            ctx, args.branch, strategy=args.strategy, local=args.local, push=args.push
        )
    if args.cmd == "update-all":
        return commands.cmd_update_all(ctx, strategy=args.strategy)
    if args.cmd == "merged":
        return commands.cmd_merged(ctx, local=args.local)
    if args.cmd == "delete":
        return commands.cmd_delete(ctx, args.branch, local=args.local)
    if args.cmd == "session-cleanup":
        return commands.cmd_session_cleanup(ctx, args.branch)
    raise SystemExit(f"unknown command: {args.cmd}")


def main(argv: list[str] | None = None) -> None:
    ap = _build_parser()
    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    from git.exc import GitCommandError

    from .config_loader import ConfigError
    from .vcs import VCSError, describe_error

    try:
        code = _dispatch(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)
    except VCSError as exc:
        print(f"git error: {describe_error(exc)}", file=sys.stderr)
        sys.exit(1)
    except GitCommandError as exc:
        print(f"git error: {(exc.stderr or str(exc)).strip()}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
