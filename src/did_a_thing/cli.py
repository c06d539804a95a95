from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import get_log_level, get_sort_by, load_config, resolve_state_dir, set_sort_by
from .constants import VALID_SORTS
from .engine import PhaseSpec, ThingEngine
from .errors import DidAThingError, ValidationFailure
from .io_utils import _atomic_write_json
from .logging_utils import configure_logging
from .timeutil import format_date_time, format_time_since


def _ctx(args: argparse.Namespace) -> ThingEngine:
    return ThingEngine(args.state_dir)


def _console() -> Console:
    return Console(highlight=False)


def _parse_phase(raw: str) -> PhaseSpec:
    name, sep, days = raw.rpartition(":")
    if sep and name.strip():
        try:
            return name.strip(), float(days)
        except ValueError:
            pass
    return raw.strip()


def _add(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    title = args.title.strip()
    if title and not args.force and engine.task_title_exists(title):
        sys.stderr.write(f'"{title}" already exists. Use --force to add it anyway.\n')
        return 1
    phases = [_parse_phase(p) for p in args.phase] if args.phase else None
    task = engine.create_task(title, phases)
    sys.stdout.write(json.dumps({"id": task.id, "title": task.title}) + "\n")
    return 0


def _list(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    sort_by = args.sort or get_sort_by(args.config)
    overviews = engine.list_tasks_enriched(sort_by)
    if args.json:
        sys.stdout.write(json.dumps({"sort_by": sort_by, "tasks": [o.to_dict() for o in overviews]}, indent=2) + "\n")
        return 0

    console = _console()
    if not overviews:
        console.print("No things yet. Add one to get started!")
        return 0
    table = Table(title=f"Things (sort: {sort_by})")
    table.add_column("ID", justify="right")
    table.add_column("Thing")
    table.add_column("Phase")
    table.add_column("Last")
    for overview in overviews:
        current = overview.current_phase
        phase_label = "" if overview.is_single_step else (current.name if current else "?")
        age = format_time_since(overview.display_timestamp)
        last = f"Last done {age}" if overview.last_transition else f"Never • Created {age}"
        table.add_row(str(overview.task.id), overview.task.title, phase_label, last)
    console.print(table)
    return 0


def _show(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    task = engine.require_task(args.task_id)
    phases = engine.get_phases_for_task(task.id)
    history = engine.get_transitions_for_task(task.id)
    names = {p.index: p.name for p in phases}

    console = _console()
    console.print(f"[bold]{task.title}[/bold] (#{task.id})")
    if len(phases) > 1:
        ring = " → ".join(
            f"[reverse]{p.name}[/reverse]" if p.index == task.current_phase_index else p.name for p in phases
        )
        console.print(f"Cycle: {ring}")
        console.print(
            f"In {names.get(task.current_phase_index, '?')} since {format_date_time(task.current_phase_since)}"
        )
    table = Table(title=f"History ({len(history)})")
    table.add_column("ID", justify="right")
    table.add_column("When")
    if len(phases) > 1:
        table.add_column("Move")
    for transition in history:
        row = [str(transition.id), format_date_time(transition.transitioned_at)]
        if len(phases) > 1:
            if transition.is_self_loop:
                row.append(f"stayed in {names.get(transition.to_phase_index, '?')}")
            else:
                row.append(
                    f"{names.get(transition.from_phase_index, '?')} → {names.get(transition.to_phase_index, '?')}"
                )
        table.add_row(*row)
    console.print(table)
    return 0


def _done(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    task = engine.advance(args.task_id, at=args.at)
    sys.stdout.write(
        json.dumps(
            {
                "id": task.id,
                "current_phase_index": task.current_phase_index,
                "current_phase_since": task.current_phase_since,
            }
        )
        + "\n"
    )
    return 0


def _log(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    transition, task = engine.log_transition(args.task_id, args.at, args.from_index, args.to_index)
    sys.stdout.write(
        json.dumps({"transition": transition.to_dict(), "current_phase_index": task.current_phase_index}) + "\n"
    )
    return 0


def _undo(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    task = engine.undo_transition(args.transition_id)
    sys.stdout.write(
        json.dumps({"removed": task is not None, "transition_id": args.transition_id}) + "\n"
    )
    return 0


def _rename(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    title = args.title.strip()
    if title and not args.force and engine.task_title_exists(title, exclude_id=args.task_id):
        sys.stderr.write(f'"{title}" already exists. Please use a different name.\n')
        return 1
    task = engine.update_task(args.task_id, {"title": title})
    sys.stdout.write(json.dumps({"id": task.id, "title": task.title}) + "\n")
    return 0


def _delete(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    removed = engine.delete_task(args.task_id)
    sys.stdout.write(json.dumps({"removed": removed, "id": args.task_id}) + "\n")
    return 0


def _recompute(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    if args.task_id is not None:
        tasks = [engine.recompute_current_phase(args.task_id)]
    else:
        tasks = engine.recompute_all()
    sys.stdout.write(json.dumps({"recomputed": [t.id for t in tasks]}) + "\n")
    return 0


def _export(args: argparse.Namespace) -> int:
    engine = _ctx(args)
    data = engine.get_all_data(sort_by=get_sort_by(args.config))
    if args.output:
        _atomic_write_json(Path(args.output).expanduser(), data)
        sys.stdout.write(json.dumps({"exported": str(args.output)}) + "\n")
    else:
        sys.stdout.write(json.dumps(data, indent=2) + "\n")
    return 0


def _import(args: argparse.Namespace) -> int:
    path = Path(args.path).expanduser()
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        sys.stderr.write(f"Cannot read {path}: {exc}\n")
        return 1
    # set_sort_by runs after the data is replaced and needs a readable config.
    _, err = load_config(args.state_dir)
    if err:
        raise ValidationFailure(f"Cannot import: config is unreadable ({err})")
    engine = _ctx(args)
    summary = engine.import_data(document)
    set_sort_by(args.state_dir, summary["sort_by"])
    sys.stdout.write(json.dumps(summary) + "\n")
    return 0


def _wipe(args: argparse.Namespace) -> int:
    if not args.yes:
        sys.stderr.write("Refusing to delete all data without --yes\n")
        return 1
    engine = _ctx(args)
    engine.wipe_all_data()
    sys.stdout.write(json.dumps({"wiped": str(args.state_dir)}) + "\n")
    return 0


def _sort(args: argparse.Namespace) -> int:
    set_sort_by(args.state_dir, args.order)
    sys.stdout.write(json.dumps({"sort_by": args.order}) + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="did-a-thing", description="Track when you last did a thing")
    parser.add_argument("--home", default=None, help="State directory (default: $DID_A_THING_HOME or ~/.did_a_thing)")
    parser.add_argument("--log-level", default=None, help="Log level (default: config log_level or WARNING)")
    subparsers = parser.add_subparsers(dest="command")

    add = subparsers.add_parser("add", help="Add a thing")
    add.add_argument("title")
    add.add_argument(
        "--phase",
        action="append",
        default=[],
        help="Phase NAME or NAME:DAYS; repeat for each phase (at least two)",
    )
    add.add_argument("--force", action="store_true", help="Add even if the name already exists")
    add.set_defaults(func=_add)

    lst = subparsers.add_parser("list", help="List things")
    lst.add_argument("--sort", default=None, choices=sorted(VALID_SORTS))
    lst.add_argument("--json", action="store_true")
    lst.set_defaults(func=_list)

    show = subparsers.add_parser("show", help="Show a thing and its history")
    show.add_argument("task_id", type=int)
    show.set_defaults(func=_show)

    done = subparsers.add_parser("done", help="Did it now: advance to the next phase")
    done.add_argument("task_id", type=int)
    done.add_argument("--at", default=None, help="ISO timestamp (default: now)")
    done.set_defaults(func=_done)

    log = subparsers.add_parser("log", help="Add a backdated history entry")
    log.add_argument("task_id", type=int)
    log.add_argument("--at", required=True, help="ISO timestamp")
    log.add_argument("--from", dest="from_index", type=int, default=None)
    log.add_argument("--to", dest="to_index", type=int, default=None)
    log.set_defaults(func=_log)

    undo = subparsers.add_parser("undo", help="Delete a history entry")
    undo.add_argument("transition_id", type=int)
    undo.set_defaults(func=_undo)

    rename = subparsers.add_parser("rename", help="Rename a thing")
    rename.add_argument("task_id", type=int)
    rename.add_argument("title")
    rename.add_argument("--force", action="store_true")
    rename.set_defaults(func=_rename)

    delete = subparsers.add_parser("delete", help="Delete a thing and its history")
    delete.add_argument("task_id", type=int)
    delete.set_defaults(func=_delete)

    recompute = subparsers.add_parser("recompute", help="Rebuild current phases from history")
    recompute.add_argument("task_id", type=int, nargs="?", default=None)
    recompute.set_defaults(func=_recompute)

    export = subparsers.add_parser("export", help="Export all data as JSON")
    export.add_argument("--output", default=None)
    export.set_defaults(func=_export)

    imp = subparsers.add_parser("import", help="Replace all data from a JSON export")
    imp.add_argument("path")
    imp.set_defaults(func=_import)

    wipe = subparsers.add_parser("wipe", help="Delete all data")
    wipe.add_argument("--yes", action="store_true")
    wipe.set_defaults(func=_wipe)

    sort = subparsers.add_parser("sort", help="Save the list sort order")
    sort.add_argument("order", choices=sorted(VALID_SORTS))
    sort.set_defaults(func=_sort)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    args.state_dir = resolve_state_dir(args.home)
    config, err = load_config(args.state_dir)
    args.config = config
    configure_logging(args.log_level or get_log_level(config))
    if err:
        logger.warning("Ignoring unreadable config: {}", err)

    try:
        return int(handler(args) or 0)
    except ValidationFailure as exc:
        logger.debug("Validation failed in {}: {}", args.command, exc.errors)
        sys.stderr.write(f"{exc}\n")
        for problem in exc.errors:
            if problem != str(exc):
                sys.stderr.write(f"  - {problem}\n")
        return 2
    except DidAThingError as exc:
        logger.error("{} failed: {}", args.command, exc)
        sys.stderr.write(f"{exc}\n")
        return 1


def main_entry(argv: Optional[list[str]] = None) -> None:
    sys.exit(main(argv))
