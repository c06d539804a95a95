from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from did_a_thing.config import (
    get_log_level,
    get_sort_by,
    load_config,
    resolve_state_dir,
    save_config,
    set_sort_by,
)
from did_a_thing.errors import ValidationFailure


def test_resolve_state_dir_prefers_argument(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DID_A_THING_HOME", str(tmp_path / "env"))
    assert resolve_state_dir(str(tmp_path / "arg")) == (tmp_path / "arg").resolve()
    assert resolve_state_dir() == (tmp_path / "env").resolve()


def test_resolve_state_dir_defaults_to_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DID_A_THING_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert resolve_state_dir() == (tmp_path / ".did_a_thing").resolve()


def test_missing_config_is_empty(tmp_path: Path) -> None:
    assert load_config(tmp_path) == ({}, None)


def test_unreadable_config_reports_error(tmp_path: Path) -> None:
    (tmp_path / "config.yaml").write_text("sort_by: [oops\n", encoding="utf-8")
    config, err = load_config(tmp_path)
    assert config == {}
    assert err


def test_save_and_load(tmp_path: Path) -> None:
    save_config(tmp_path, {"sort_by": "alpha", "log_level": "debug"})
    config, err = load_config(tmp_path)
    assert err is None
    assert get_sort_by(config) == "alpha"
    assert get_log_level(config) == "DEBUG"


def test_bad_values_fall_back_to_defaults() -> None:
    config = {"sort_by": "random", "log_level": "LOUD"}
    assert get_sort_by(config) == "recent"
    assert get_log_level(config) == "WARNING"


def test_set_sort_by_keeps_other_keys(tmp_path: Path) -> None:
    save_config(tmp_path, {"log_level": "INFO"})
    set_sort_by(tmp_path, "alpha")
    saved = yaml.safe_load((tmp_path / "config.yaml").read_text(encoding="utf-8"))
    assert saved == {"log_level": "INFO", "sort_by": "alpha"}


def test_set_sort_by_rejects_unknown_order(tmp_path: Path) -> None:
    with pytest.raises(ValidationFailure):
        set_sort_by(tmp_path, "random")
    assert not (tmp_path / "config.yaml").exists()


def test_set_sort_by_refuses_to_overwrite_broken_config(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("sort_by: [oops\n", encoding="utf-8")
    with pytest.raises(ValidationFailure):
        set_sort_by(tmp_path, "alpha")
    assert path.read_text(encoding="utf-8") == "sort_by: [oops\n"
