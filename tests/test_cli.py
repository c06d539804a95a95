from __future__ import annotations

import json
import time
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from did_a_thing.cli import main
from did_a_thing.engine import ThingEngine


@pytest.fixture
def local_cet(monkeypatch: pytest.MonkeyPatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "CET-1CEST,M3.5.0,M10.5.0/3")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def _run(capsys: pytest.CaptureFixture[str], home: Path, *argv: str) -> tuple[int, dict]:
    rc = main(["--home", str(home), *argv])
    out = capsys.readouterr().out.strip()
    return rc, json.loads(out.splitlines()[-1]) if out else {}


def test_add_done_and_list(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rc, added = _run(capsys, tmp_path, "add", "Laundry", "--phase", "Washing", "--phase", "Drying:0.5")
    assert rc == 0
    assert added == {"id": 1, "title": "Laundry"}

    rc, done = _run(capsys, tmp_path, "done", "1", "--at", "2026-05-02T07:00:00Z")
    assert rc == 0
    assert done["current_phase_index"] == 1
    assert done["current_phase_since"] == "2026-05-02T07:00:00+00:00"

    assert main(["--home", str(tmp_path), "list", "--json"]) == 0
    listing = json.loads(capsys.readouterr().out)
    assert listing["sort_by"] == "recent"
    [row] = listing["tasks"]
    assert row["current_phase_name"] == "Drying"
    assert [p["duration_days"] for p in row["phases"]] == [None, 0.5]


def test_list_and_show_render_tables(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--home", str(tmp_path), "list"]) == 0
    assert "No things yet" in capsys.readouterr().out

    _run(capsys, tmp_path, "add", "Water plants")
    _run(capsys, tmp_path, "done", "1")
    assert main(["--home", str(tmp_path), "list"]) == 0
    assert "Water plants" in capsys.readouterr().out
    assert main(["--home", str(tmp_path), "show", "1"]) == 0
    assert "History (1)" in capsys.readouterr().out


def test_duplicate_title_needs_force(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "add", "Water plants")
    assert main(["--home", str(tmp_path), "add", " water PLANTS "]) == 1
    assert "already exists" in capsys.readouterr().err
    rc, added = _run(capsys, tmp_path, "add", "water plants", "--force")
    assert rc == 0
    assert added["id"] == 2


def test_validation_errors_exit_2(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--home", str(tmp_path), "add", "Laundry", "--phase", "Washing"]) == 2
    assert "at least 2" in capsys.readouterr().err
    assert ThingEngine(tmp_path).list_tasks() == []


def test_missing_task_exits_1(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--home", str(tmp_path), "done", "9"]) == 1
    assert "not found" in capsys.readouterr().err


def test_log_undo_and_recompute(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "add", "Laundry", "--phase", "Washing", "--phase", "Drying", "--phase", "Folded")
    rc, logged = _run(capsys, tmp_path, "log", "1", "--at", "2026-05-01T07:00:00Z", "--to", "2")
    assert rc == 0
    assert logged["current_phase_index"] == 2
    assert logged["transition"]["from_phase_index"] == 1

    rc, undone = _run(capsys, tmp_path, "undo", str(logged["transition"]["id"]))
    assert rc == 0
    assert undone["removed"] is True
    assert ThingEngine(tmp_path).require_task(1).current_phase_index == 0

    rc, recomputed = _run(capsys, tmp_path, "recompute")
    assert rc == 0
    assert recomputed == {"recomputed": [1]}


def test_rename_and_delete(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "add", "Water plants")
    _run(capsys, tmp_path, "add", "Laundry")
    assert main(["--home", str(tmp_path), "rename", "2", "WATER plants"]) == 1
    capsys.readouterr()
    rc, renamed = _run(capsys, tmp_path, "rename", "2", "Bedding")
    assert (rc, renamed["title"]) == (0, "Bedding")

    rc, deleted = _run(capsys, tmp_path, "delete", "2")
    assert (rc, deleted["removed"]) == (0, True)
    rc, deleted = _run(capsys, tmp_path, "delete", "2")
    assert (rc, deleted["removed"]) == (0, False)


def test_export_import_carries_sort_preference(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "source"
    target = tmp_path / "target"
    backup = tmp_path / "backup.json"
    _run(capsys, source, "add", "Water plants")
    _run(capsys, source, "done", "1", "--at", "2026-05-02T07:00:00Z")
    _run(capsys, source, "sort", "alpha")

    rc, exported = _run(capsys, source, "export", "--output", str(backup))
    assert rc == 0
    assert json.loads(backup.read_text(encoding="utf-8"))["sort_by"] == "alpha"

    rc, summary = _run(capsys, target, "import", str(backup))
    assert rc == 0
    assert summary == {"tasks": 1, "phases": 1, "transitions": 1, "sort_by": "alpha"}
    assert main(["--home", str(target), "list", "--json"]) == 0
    assert json.loads(capsys.readouterr().out)["sort_by"] == "alpha"


def test_import_rejects_bad_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert main(["--home", str(tmp_path / "home"), "import", str(bad)]) == 1
    bad.write_text(json.dumps({"app": "other"}), encoding="utf-8")
    assert main(["--home", str(tmp_path / "home"), "import", str(bad)]) == 2


def test_wipe_requires_confirmation(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "add", "Water plants")
    assert main(["--home", str(tmp_path), "wipe"]) == 1
    assert (tmp_path / "store.yaml").exists()
    rc, _ = _run(capsys, tmp_path, "wipe", "--yes")
    assert rc == 0
    assert not (tmp_path / "store.yaml").exists()


def test_no_command_prints_help(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--home", str(tmp_path)]) == 1
    assert "usage" in capsys.readouterr().out


def test_local_backdated_log_then_done(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], local_cet: None
) -> None:
    _run(capsys, tmp_path, "add", "Water plants")
    ten_minutes_ago = datetime.now() - timedelta(minutes=10)
    rc, logged = _run(capsys, tmp_path, "log", "1", "--at", ten_minutes_ago.strftime("%Y-%m-%dT%H:%M"))
    assert rc == 0
    expected = ten_minutes_ago.replace(second=0, microsecond=0).astimezone().isoformat()
    assert datetime.fromisoformat(logged["transition"]["transitioned_at"]) == datetime.fromisoformat(expected)

    rc, done = _run(capsys, tmp_path, "done", "1")
    assert rc == 0
    assert done["current_phase_index"] == 0


def test_show_labels_self_loops(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(capsys, tmp_path, "add", "Laundry", "--phase", "Washing", "--phase", "Drying")
    _run(capsys, tmp_path, "log", "1", "--at", "2026-05-01T07:00:00Z", "--from", "1", "--to", "1")
    assert main(["--home", str(tmp_path), "show", "1"]) == 0
    assert "stayed in Drying" in capsys.readouterr().out


def test_import_refused_when_config_is_unreadable(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "source"
    target = tmp_path / "target"
    backup = tmp_path / "backup.json"
    _run(capsys, source, "add", "Imported")
    _run(capsys, source, "export", "--output", str(backup))
    _run(capsys, target, "add", "Local")
    (target / "config.yaml").write_text("sort_by: [oops\n", encoding="utf-8")

    assert main(["--home", str(target), "import", str(backup)]) == 2
    assert "config is unreadable" in capsys.readouterr().err
    assert [t.title for t in ThingEngine(target).list_tasks()] == ["Local"]
