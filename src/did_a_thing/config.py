"""Locate the state directory and load optional user preferences from `config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    CONFIG_LOCK_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_SORT,
    HOME_ENV_VAR,
    STATE_DIR_NAME,
    VALID_SORTS,
)
from .errors import StorageFailure, ValidationFailure
from .io_utils import FileLock, _atomic_write_yaml, _load_data_with_error

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def resolve_state_dir(home: Optional[str] = None) -> Path:
    """Pick the state directory: explicit *home*, then the env var, then ``~/.did_a_thing``."""
    raw = home or os.environ.get(HOME_ENV_VAR)
    if raw:
        return Path(raw).expanduser().resolve()
    return (Path.home() / STATE_DIR_NAME).resolve()


def load_config(state_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        state_dir: Directory holding ``config.yaml``.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = state_dir / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def save_config(state_dir: Path, config: dict[str, Any]) -> dict[str, Any]:
    try:
        with FileLock(state_dir / CONFIG_LOCK_FILE):
            _atomic_write_yaml(state_dir / CONFIG_FILE, config)
    except OSError as exc:
        raise StorageFailure(f"Failed to write {CONFIG_FILE}: {exc}") from exc
    return config


def get_sort_by(config: dict[str, Any]) -> str:
    """Extract the list sort preference, falling back to ``recent``."""
    raw = config.get("sort_by")
    if isinstance(raw, str) and raw in VALID_SORTS:
        return raw
    return DEFAULT_SORT


def get_log_level(config: dict[str, Any]) -> str:
    raw = config.get("log_level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return DEFAULT_LOG_LEVEL


def set_sort_by(state_dir: Path, sort_by: str) -> dict[str, Any]:
    """Persist the sort preference, refusing to clobber an unreadable config file."""
    if sort_by not in VALID_SORTS:
        raise ValidationFailure(f"sort_by must be one of {sorted(VALID_SORTS)}, got '{sort_by}'")
    config, err = load_config(state_dir)
    if err:
        raise ValidationFailure(f"Cannot update config: {err}")
    config["sort_by"] = sort_by
    return save_config(state_dir, config)
