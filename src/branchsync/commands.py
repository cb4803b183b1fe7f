"""Command implementations behind the ``branchsync`` CLI.

Each function prints plain-text results and returns a process exit code.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .breadcrumbs import BreadcrumbLog
from .config_loader import ConfigError, load_config
from .config_schema import BranchSyncConfig
from .confirm import ConfirmationProvider, InteractiveConfirm, always_yes
from .lock import LockError, LockHeldError, force_unlock, read_lock_info
from .models import (
    BranchLocation,
    ConflictVerdict,
    IntegrationStrategy,
    PushOutcome,
    RecoveryCommands,
    SyncOutcome,
    SyncStatus,
)
from .observability import configure_logging
from .orchestrator import BulkSyncOrchestrator
from .vcs import GitClient
from .workflows import BranchWorkflows, MergeWorkflowResult, UpdateResult


@dataclass
class Context:
    vcs: GitClient
    config: BranchSyncConfig
    confirm: ConfirmationProvider

    def workflows(self) -> BranchWorkflows:
        return BranchWorkflows(self.vcs, self.config, self.confirm)


def load_settings(repo: Optional[str], target: Optional[str] = None, **sync_overrides) -> BranchSyncConfig:
    config = load_config(Path(repo) if repo else None)
    overrides = {"target_branch": target, **sync_overrides}
    if any(v is not None for v in overrides.values()):
        try:
            config = config.with_overrides(sync=overrides)
        except ValidationError as e:
            raise ConfigError(f"Invalid override:\n{e}")
    configure_logging(config.logging)
    return config


def open_context(
    repo: Optional[str],
    target: Optional[str] = None,
    yes: bool = False,
    **sync_overrides,
) -> Context:
    config = load_settings(repo, target, **sync_overrides)
    vcs = GitClient(Path(repo) if repo else Path.cwd(), remote=config.sync.remote)
    confirm: ConfirmationProvider = always_yes() if yes else InteractiveConfirm()
    return Context(vcs, config, confirm)


# ------------------------------------------------------------------ rendering


def _print_recovery(recovery: Optional[RecoveryCommands]) -> None:
    if recovery is None:
        return
    if recovery.continue_commands:
        print("To continue after resolving:")
        for cmd in recovery.continue_commands:
            print(f"  {cmd}")
    if recovery.abort_commands:
        print("Or abort:")
        for cmd in recovery.abort_commands:
            print(f"  {cmd}")


def _print_push(push: Optional[PushOutcome]) -> None:
    if push is None:
        return
    if push.planned_commands:
        for cmd in push.planned_commands:
            print(f"  would run: {cmd}")
        return
    if push.success:
        print(f"Pushed {push.branch} (attempts: {push.attempts})")
        return
    print(f"Push failed ({push.error_kind.value if push.error_kind else 'error'}): {push.message}")
    if push.manual_commands:
        print("Push manually with:")
        for cmd in push.manual_commands:
            print(f"  {cmd}")


def render_outcome(outcome: SyncOutcome) -> None:
    status = outcome.status.value.upper()
    reason = f" ({outcome.reason.value})" if outcome.reason else ""
    print(f"{status}{reason}: {outcome.message}")
    if outcome.dry_run:
        for cmd in outcome.planned_commands:
            print(f"  would run: {cmd}")
        return
    print(f"Merged: {outcome.merged_count}")
    for name in outcome.merged_branches:
        print(f"  + {name}")
    if outcome.failed_branch:
        print(f"Failed on: {outcome.failed_branch}")
    if outcome.conflict_paths:
        print("Conflicting files:")
        for path in outcome.conflict_paths:
            print(f"  {path}")
    _print_recovery(outcome.recovery)
    _print_push(outcome.push)


def render_merge_result(result: MergeWorkflowResult) -> None:
    reason = f" ({result.reason.value})" if result.reason else ""
    print(f"{result.status.value.upper()}{reason}: {result.message}")
    if result.conflict and result.conflict.paths:
        print("Conflicting files:")
        for path in result.conflict.paths:
            print(f"  {path}")
    integration = result.integration
    if integration is not None:
        for cmd in integration.planned_commands:
            print(f"  would run: {cmd}")
        if integration.conflict_paths and not (result.conflict and result.conflict.paths):
            print("Conflicting files:")
            for path in integration.conflict_paths:
                print(f"  {path}")
        _print_recovery(integration.recovery)
        if integration.stash:
            print(f"Uncommitted changes stashed as '{integration.stash}' (git stash pop to restore)")
    _print_push(result.push)


def render_update(result: UpdateResult) -> None:
    if result.success:
        print(f"Updated {result.branch} from {result.source} ({result.strategy.value})")
    else:
        reason = f" ({result.reason.value})" if result.reason else ""
        print(f"FAILED{reason}: {result.message}")
        for path in result.conflict_paths:
            print(f"  {path}")
        _print_recovery(result.recovery)
    _print_push(result.push)


# ------------------------------------------------------------------- commands


def cmd_branches(ctx: Context, *, local: bool = False, counts: bool = False) -> int:
    wf = ctx.workflows()
    location = BranchLocation.LOCAL if local else BranchLocation.REMOTE
    if not local:
        ctx.vcs.fetch()
    branches = wf.classifier.list_branches(location)
    session, other = wf.classifier.split(branches)
    for title, group in (("Session branches", session), ("Other branches", other)):
        print(f"{title} ({len(group)}):")
        for idx, branch in enumerate(group, 1):
            if counts:
                branch = wf.classifier.with_counts(branch)
                print(f"  [{idx:2d}] {branch.name}  +{branch.ahead} -{branch.behind}  {branch.last_commit or ''}".rstrip())
            else:
                print(f"  [{idx:2d}] {branch.name}")
    return 0


def cmd_compare(ctx: Context, branch: str) -> int:
    ctx.vcs.fetch()
    cmp = ctx.workflows().compare(branch)
    if cmp is None:
        print(f"Branch '{branch}' not found")
        return 1
    print(f"{cmp.branch} vs {cmp.target}: {cmp.ahead} ahead, {cmp.behind} behind")
    if cmp.last_commit:
        print(f"Last commit: {cmp.last_commit}")
    if cmp.commits:
        print("Commits to merge:")
        for line in cmp.commits:
            print(f"  {line}")
    if cmp.changed_files:
        print(f"Files changed ({len(cmp.changed_files)}):")
        for status, path in cmp.changed_files:
            print(f"  {status} {path}")
    return 0


def cmd_check_conflicts(ctx: Context, branch: str) -> int:
    ctx.vcs.fetch()
    report = ctx.workflows().check_conflicts(branch)
    if report is None:
        print(f"Branch '{branch}' not found")
        return 1
    if report.verdict == ConflictVerdict.CLEAN:
        print(f"No conflicts predicted for {branch}")
        return 0
    if report.verdict == ConflictVerdict.INDETERMINATE:
        print(f"Could not predict conflicts for {branch}: {report.warning}")
        return 0
    print(f"Merging {branch} would conflict in:")
    for path in report.paths:
        print(f"  {path}")
    return 1


def cmd_merge(
    ctx: Context,
    branch: str,
    *,
    strategy: Optional[str] = None,
    dry_run: bool = False,
    push: Optional[bool] = None,
) -> int:
    result = ctx.workflows().merge_branch(
        branch,
        strategy=IntegrationStrategy(strategy) if strategy else None,
        dry_run=dry_run or None,
        push=push,
    )
    render_merge_result(result)
    return 0 if result.status != SyncStatus.ABORTED else 1


def cmd_sync_all(ctx: Context, *, dry_run: bool = False, push: Optional[bool] = None) -> int:
    orchestrator = BulkSyncOrchestrator(ctx.vcs, ctx.config, ctx.confirm)
    outcome = orchestrator.run(dry_run=dry_run or None, push=push)
    render_outcome(outcome)
    return 0 if outcome.ok else 1


def cmd_update_branch(
    ctx: Context,
    branch: str,
    *,
    strategy: Optional[str] = None,
    local: bool = False,
    push: bool = False,
) -> int:
    result = ctx.workflows().update_branch(
        branch,
        strategy=IntegrationStrategy(strategy) if strategy else None,
        local=local,
        push=push,
    )
    render_update(result)
    return 0 if result.success else 1


def cmd_update_all(ctx: Context, *, strategy: Optional[str] = None) -> int:
    result = ctx.workflows().update_all_local(strategy=IntegrationStrategy(strategy) if strategy else None)
    print(result.message)
    for name in result.updated:
        print(f"  updated {name}")
    if result.failed is not None:
        render_update(result.failed)
    return 0 if result.status != SyncStatus.ABORTED else 1


def cmd_merged(ctx: Context, *, local: bool = False) -> int:
    location = BranchLocation.LOCAL if local else BranchLocation.REMOTE
    names = ctx.workflows().list_merged(location)
    where = ctx.config.sync.target_branch if local else f"{ctx.vcs.remote}/{ctx.config.sync.target_branch}"
    print(f"{'Local' if local else 'Remote'} branches fully merged into {where}:")
    for name in names:
        print(f"  {name}")
    if not names:
        print("  (none)")
    return 0


def cmd_delete(ctx: Context, branch: str, *, local: bool = False) -> int:
    result = ctx.workflows().delete_branch(branch, BranchLocation.LOCAL if local else BranchLocation.REMOTE)
    print(result.message)
    return 0 if result.deleted else 1


def cmd_session_cleanup(ctx: Context, branch: str) -> int:
    result = ctx.workflows().session_merge_and_cleanup(branch)
    render_merge_result(result.merge)
    for deletion in result.deletions:
        state = "deleted" if deletion.deleted else f"not deleted: {deletion.message}"
        print(f"  {deletion.location.value} {deletion.branch}: {state}")
    print(result.message)
    return 0 if result.ok else 1


def cmd_lock_status(config: BranchSyncConfig) -> int:
    path = config.lock.resolved_path()
    try:
        info = read_lock_info(path, config.lock.max_age)
    except LockError as exc:
        print(f"Lock unreadable: {exc}")
        return 1
    if info is None:
        print(f"Unlocked ({path})")
        return 0
    print(f"Locked: {path}")
    print(f"  pid: {info.pid if info.pid is not None else 'unknown'} ({'running' if info.alive else 'not running'})")
    print(f"  age: {int(info.age)}s (max {int(config.lock.max_age)}s)")
    if info.user:
        print(f"  user: {info.user}")
    if info.cwd:
        print(f"  cwd: {info.cwd}")
    print(f"  stale: {'yes' if info.stale else 'no'}")
    return 0


def cmd_unlock(config: BranchSyncConfig, *, force: bool = False) -> int:
    path = config.lock.resolved_path()
    try:
        removed = force_unlock(path, max_age=config.lock.max_age, force=force)
    except LockHeldError as exc:
        print(str(exc))
        return 1
    except LockError as exc:
        print(f"Unlock failed: {exc}")
        return 1
    print(f"Removed lock {path}" if removed else f"No lock at {path}")
    return 0


def cmd_breadcrumbs(config: BranchSyncConfig, *, tail: int = 20) -> int:
    entries = BreadcrumbLog(config.breadcrumbs.resolved_path()).read(tail)
    if not entries:
        print("No breadcrumbs recorded")
        return 0
    for entry in entries:
        print(entry.format())
    last = entries[-1]
    if last.action.value == "start":
        print(f"Last session on {last.target_branch} never recorded an end; it may have crashed at {last.head}")
    return 0


def cmd_config_show(repo: Optional[str], *, as_json: bool = False) -> int:
    config = load_config(Path(repo) if repo else None)
    data = config.model_dump()
    if as_json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0
    for section, values in data.items():
        if isinstance(values, dict):
            print(f"[{section}]")
            for key, value in values.items():
                print(f"{key} = {value!r}")
            print()
        else:
            print(f"{section} = {values!r}")
    return 0


def cmd_config_validate(repo: Optional[str]) -> int:
    from .config_loader import get_config_paths

    paths = get_config_paths(Path(repo) if repo else None)
    try:
        load_config(Path(repo) if repo else None)
    except ConfigError as exc:
        print(f"Invalid configuration:\n{exc}")
        return 1
    checked: List[str] = [str(p) for p in paths.values() if p is not None and p.exists()]
    print("Configuration is valid" + (f" ({', '.join(checked)})" if checked else " (defaults only)"))
    return 0
