"""Configuration schema for branchsync.

Every setting the orchestrator needs is declared here with its type, default
and validation. Instances are frozen: a loaded configuration is handed to the
orchestrator once and never mutated mid-session.
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path
from typing import Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


_FROZEN = ConfigDict(frozen=True, extra="forbid")


class SyncSettings(BaseModel):
    """Which branches are synced, into what, and how."""

    model_config = _FROZEN

    target_branch: str = Field(
        default="main",
        min_length=1,
        description="Branch that candidates are merged into",
    )
    remote: str = Field(
        default="origin",
        min_length=1,
        description="Remote to fetch from and push to",
    )
    session_prefix: str = Field(
        default="claude/",
        description="Name prefix identifying assistant session branches",
    )
    allow_branches: List[str] = Field(
        default_factory=list,
        description="Glob patterns of branches eligible for bulk sync (empty = all)",
    )
    auto_push: bool = Field(
        default=True,
        description="Push the target after a successful merge",
    )
    dry_run: bool = Field(
        default=False,
        description="Report the commands that would run instead of running them",
    )
    merge_strategy: Literal["merge", "rebase"] = Field(
        default="merge",
        description="Integration strategy for single-branch merges",
    )

    @field_validator("allow_branches", mode="before")
    @classmethod
    def split_allow_branches(cls, v: Any) -> Any:
        """Accept "feature/*, claude/*" style strings from env vars and flags."""
        if isinstance(v, str):
            return [p for p in re.split(r"[,\s]+", v) if p]
        return v

    @field_validator("target_branch")
    @classmethod
    def validate_target_branch(cls, v: str) -> str:
        if v.startswith("-") or " " in v or ".." in v:
            raise ValueError(f"invalid branch name: {v!r}")
        return v


class LockSettings(BaseModel):
    """Cross-process lock guarding the bulk sync."""

    model_config = _FROZEN

    path: str = Field(
        default="~/.cache/branchsync/sync.lock",
        description="Lock file location",
    )
    max_age: float = Field(
        default=7200,
        ge=0,
        description="Seconds after which a lock with a dead owner may be reclaimed",
    )

    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class PushSettings(BaseModel):
    """Retry policy for pushes."""

    model_config = _FROZEN

    max_retries: int = Field(
        default=3,
        ge=1,
        description="Total push attempts (including the first)",
    )
    initial_delay: float = Field(
        default=2.0,
        ge=0,
        description="Delay in seconds after the first failure; doubles each time",
    )


class BreadcrumbSettings(BaseModel):
    model_config = _FROZEN

    path: str = Field(
        default="~/.branchsync/logs/branch-sync.log",
        description="Append-only audit log for bulk sync sessions",
    )

    def resolved_path(self) -> Path:
        return Path(self.path).expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = _FROZEN

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.branchsync/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("dir")
    @classmethod
    def validate_log_dir(cls, v: str) -> str:
        """Warn if log directory doesn't exist (will be created on use)."""
        if v:
            path = Path(v).expanduser()
            if path.exists() and not path.is_dir():
                warnings.warn(
                    f"Log path exists but is not a directory: {v}",
                    UserWarning,
                )
        return v


class BranchSyncConfig(BaseModel):
    """Root configuration model."""

    model_config = _FROZEN

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    sync: SyncSettings = Field(default_factory=SyncSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    push: PushSettings = Field(default_factory=PushSettings)
    breadcrumbs: BreadcrumbSettings = Field(default_factory=BreadcrumbSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "BranchSyncConfig":
        """Create config with all defaults."""
        return cls()

    def with_overrides(self, **sections: dict) -> "BranchSyncConfig":
        """Return a validated copy with per-section overrides applied.

        Example:
            cfg.with_overrides(sync={"target_branch": "develop"}, push={"max_retries": 1})
        """
        data = self.model_dump()
        for section, values in sections.items():
            if section not in data:
                raise ValueError(f"unknown config section: {section}")
            data[section].update({k: v for k, v in values.items() if v is not None})
        return type(self).model_validate(data)
