"""Configuration loading and merging for branchsync.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from pydantic import ValidationError

from .config_schema import BranchSyncConfig


CONFIG_FILENAME = "config.toml"

# Directory names
USER_CONFIG_DIR = ".branchsync"
PROJECT_CONFIG_DIR = ".branchsync"

# Environment variable -> (section, key)
ENV_MAPPING: Dict[str, tuple[str, str]] = {
    "BRANCHSYNC_TARGET_BRANCH": ("sync", "target_branch"),
    "BRANCHSYNC_REMOTE": ("sync", "remote"),
    "BRANCHSYNC_SESSION_PREFIX": ("sync", "session_prefix"),
    "BRANCHSYNC_ALLOW_BRANCHES": ("sync", "allow_branches"),
    "BRANCHSYNC_AUTO_PUSH": ("sync", "auto_push"),
    "BRANCHSYNC_DRY_RUN": ("sync", "dry_run"),
    "BRANCHSYNC_MERGE_STRATEGY": ("sync", "merge_strategy"),
    "BRANCHSYNC_LOCK_FILE": ("lock", "path"),
    "BRANCHSYNC_LOCK_MAX_AGE": ("lock", "max_age"),
    "BRANCHSYNC_PUSH_MAX_RETRIES": ("push", "max_retries"),
    "BRANCHSYNC_PUSH_INITIAL_DELAY": ("push", "initial_delay"),
    "BRANCHSYNC_BREADCRUMB_LOG": ("breadcrumbs", "path"),
    "BRANCHSYNC_LOG_LEVEL": ("logging", "level"),
    "BRANCHSYNC_LOG_DIR": ("logging", "dir"),
    "BRANCHSYNC_LOG_MAX_BYTES": ("logging", "max_bytes"),
    "BRANCHSYNC_LOG_BACKUP_COUNT": ("logging", "backup_count"),
    "BRANCHSYNC_LOG_DISABLE_FILE": ("logging", "disable_file"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.branchsync/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Get project-level config directory (.branchsync/).

    Searches upward from project_path to find .branchsync/ directory. The
    user-level directory is never treated as a project directory.
    """
    if project_path is None:
        project_path = Path.cwd()

    project_path = Path(project_path).resolve()
    user_dir = _get_user_config_dir().resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir() and config_dir.resolve() != user_dir:
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply BRANCHSYNC_* environment variables on top of file config.

    Values stay strings here; pydantic coerces them during validation.
    """
    result = {k: (v.copy() if isinstance(v, dict) else v) for k, v in config_dict.items()}

    for env_var, (section, key) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        result.setdefault(section, {})[key] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> BranchSyncConfig:
    """Load and merge branchsync configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.branchsync/config.toml)
    3. Project config (.branchsync/config.toml, searched upward)
    4. Environment variables (unless skip_env=True)

    CLI flags are applied afterwards with ``BranchSyncConfig.with_overrides``.

    Raises:
        ConfigError: If the project config or the merged result is invalid
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            user_config = _load_toml(user_config_path)
            BranchSyncConfig.model_validate(user_config)
            config_dict = _deep_merge(config_dict, user_config)
        except (ConfigError, ValidationError) as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                project_config = _load_toml(project_config_path)
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}")
            config_dict = _deep_merge(config_dict, project_config)

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return BranchSyncConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Get paths to the user and project config files (which may not exist)."""
    project_dir = _get_project_config_dir(project_path)
    return {
        "user_config": _get_user_config_dir() / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
    }
