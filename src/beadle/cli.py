"""CLI entry point for beadle."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import __version__
from .errors import BeadleError, MergeConflictError
from .policy import TagPolicy
from .stores.graph import RELATION_TYPES, TREE_DIRECTIONS
from .stores.issue import ISSUE_STATUSES
from .tracker import Tracker
from .ui import (
    OutputMode,
    add_output_mode_argument,
    make_console,
    render_help,
    render_panel,
    render_table,
    render_tree,
    resolve_output_mode,
)

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_CONFLICT = 3

_ISSUE_HEADERS = ("ID", "STATUS", "ASSIGNEE", "UPDATED", "TITLE", "TAGS")
_EDGE_HEADERS = ("SOURCE", "TYPE", "TARGET", "DIR", "ACTIVE", "CREATED")
_READ_ONLY_COMMANDS = {"show", "list", "ready", "blocked", "stats"}
_READ_ONLY_DEP_COMMANDS = {"tree", "cycles"}
_GITIGNORE = "{cache}\n{cache}-journal\n{cache}-wal\n{cache}-shm\n*.tmp\n"
_GITATTRIBUTES = "{log} merge=union\n"


def _to_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _iso_from_epoch_ms(value: object) -> str | None:
    ms = _to_int(value)
    if ms is None:
        return None
    try:
        dt = datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _with_iso_timestamps(payload: Any) -> Any:
    if isinstance(payload, dict):
        out: dict[str, Any] = {}
        for key, value in payload.items():
            out[key] = _with_iso_timestamps(value)
            if key.endswith("_at"):
                iso = _iso_from_epoch_ms(value)
                if iso:
                    out[f"{key}_iso"] = iso
        return out
    if isinstance(payload, list):
        return [_with_iso_timestamps(item) for item in payload]
    return payload


def _emit_json(payload: Any) -> None:
    print(json.dumps(_with_iso_timestamps(payload), ensure_ascii=False, indent=2))


def _format_time(value: object) -> str:
    return _iso_from_epoch_ms(value) or "-"


def _truncate(value: object, limit: int) -> str:
    text = str(value or "").strip()
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def _issue_columns(issue: dict[str, Any]) -> tuple[str, str, str, str, str, str]:
    return (
        str(issue.get("id") or ""),
        str(issue.get("status") or ""),
        str(issue.get("assignee") or "-"),
        _format_time(issue.get("updated_at")),
        _truncate(issue.get("title"), 56),
        _truncate(",".join(str(t) for t in issue.get("tags") or []), 28),
    )


def _print_issue(issue: dict[str, Any]) -> None:
    row = _issue_columns(issue)
    print(f"{row[0]}  {row[1]:<11}  {row[3]}  {row[4]}  {row[5]}".rstrip())


def _print_issue_table(rows: list[dict[str, Any]]) -> None:
    values = [_issue_columns(row) for row in rows]

    widths = [len(item) for item in _ISSUE_HEADERS]
    for row in values:
        for idx, col in enumerate(row):
            widths[idx] = max(widths[idx], len(col))

    print("  ".join(_ISSUE_HEADERS[idx].ljust(widths[idx]) for idx in range(len(widths))))
    print("  ".join("-" * widths[idx] for idx in range(len(widths))))
    for row in values:
        print("  ".join(row[idx].ljust(widths[idx]) for idx in range(len(widths))).rstrip())


def _print_issues(
    rows: list[dict[str, Any]],
    *,
    output_mode: OutputMode,
    title: str,
    empty: str,
) -> None:
    if output_mode == "rich":
        console = make_console("rich")
        if not rows:
            render_panel(console, empty, title=title)
            return
        render_table(
            console,
            title=title,
            headers=_ISSUE_HEADERS,
            no_wrap_columns=(0, 1, 2, 3, 5),
            rows=[_issue_columns(row) for row in rows],
        )
        return
    if not rows:
        print(empty)
        return
    _print_issue_table(rows)


def _edge_columns(row: dict[str, Any]) -> tuple[str, str, str, str, str, str]:
    return (
        str(row.get("src_id") or ""),
        str(row.get("type") or ""),
        str(row.get("dst_id") or ""),
        str(row.get("direction") or "-"),
        "active" if row.get("active") else "inactive",
        _format_time(row.get("created_at")),
    )


def _print_issue_details(issue: dict[str, Any], *, output_mode: OutputMode) -> None:
    edges = issue.get("dependencies") or []
    if output_mode == "rich":
        tags = ", ".join(str(tag) for tag in issue.get("tags") or []) or "-"
        summary = "\n".join(
            [
                f"title: {issue.get('title')}",
                f"status: {issue.get('status')}",
                f"assignee: {issue.get('assignee') or '-'}",
                f"created: {_format_time(issue.get('created_at'))}",
                f"updated: {_format_time(issue.get('updated_at'))}",
                f"tags: {tags}",
            ]
        )
        console = make_console("rich")
        render_panel(console, summary, title=f"Issue {issue.get('id')}")
        body = str(issue.get("body") or "").strip()
        render_panel(console, body or "(no description)", title="Description")
        if edges:
            render_table(
                console,
                title="Dependencies",
                headers=_EDGE_HEADERS,
                no_wrap_columns=(0, 1, 2, 3, 4, 5),
                rows=[_edge_columns(edge) for edge in edges],
            )
        else:
            render_panel(console, "(none)", title="Dependencies")
        return

    _print_issue(issue)
    print(f"assignee: {issue.get('assignee') or '-'}")
    print(f"created: {_format_time(issue.get('created_at'))}")
    print(f"updated: {_format_time(issue.get('updated_at'))}")
    body = str(issue.get("body") or "").strip()
    if body:
        print()
        print(body)
    print()
    print("dependencies:")
    if not edges:
        print("  (none)")
    for edge in edges:
        active = "active" if edge.get("active") else "inactive"
        print(
            f"  {edge['src_id']} {edge['type']} {edge['dst_id']} "
            f"({edge.get('direction')}, {active})"
        )


def _print_blocked(rows: list[dict[str, Any]], *, output_mode: OutputMode) -> None:
    if output_mode == "rich":
        console = make_console("rich")
        if not rows:
            render_panel(console, "(no blocked issues)", title="Blocked")
            return
        render_table(
            console,
            title="Blocked",
            headers=("ID", "TITLE", "BLOCKED BY"),
            no_wrap_columns=(0,),
            rows=[
                (
                    row["issue"]["id"],
                    _truncate(row["issue"]["title"], 56),
                    ", ".join(blocker["id"] for blocker in row["blockers"]),
                )
                for row in rows
            ],
        )
        return
    if not rows:
        print("(no blocked issues)")
        return
    for row in rows:
        blockers = ", ".join(blocker["id"] for blocker in row["blockers"])
        print(f"{row['issue']['id']}  {_truncate(row['issue']['title'], 56)}  <- {blockers}")


def _print_tree_plain(node: dict[str, Any], *, indent: int = 0) -> None:
    relation = f"{node['type']} " if node.get("type") else ""
    print(f"{'  ' * indent}{relation}{node['id']} [{node['status']}] {node['title']}")
    for child in node.get("children") or []:
        _print_tree_plain(child, indent=indent + 1)


def _print_stats(stats: dict[str, Any], *, output_mode: OutputMode) -> None:
    rows: list[tuple[str, str]] = [("issues", str(stats["issues"]))]
    rows.extend((f"status {key}", str(value)) for key, value in stats["by_status"].items())
    rows.extend((f"edges {key}", str(value)) for key, value in stats["edges"].items())
    rows.extend(
        [
            ("ready", str(stats["ready"])),
            ("blocked", str(stats["blocked"])),
            ("log records", str(stats["log_records"])),
            ("stale", "yes" if stats["stale"] else "no"),
        ]
    )
    if output_mode == "rich":
        render_table(
            make_console("rich"),
            title="Stats",
            headers=("METRIC", "VALUE"),
            rows=rows,
            no_wrap_columns=(0, 1),
        )
        return
    width = max(len(name) for name, _ in rows)
    for name, value in rows:
        print(f"{name.ljust(width)}  {value}")


def _print_help(*, output_mode: OutputMode) -> None:
    render_help(
        output_mode=output_mode,
        command="beadle",
        summary="dependency-aware issue tracker backed by a git-friendly log",
        usage=("beadle [--debug] <command> [ARGS]",),
        sections=(
            (
                "Commands",
                (
                    ("init", "create .beadle/ with an empty log"),
                    ("create <title>", "create an issue (--deps type:id,...)"),
                    ("show <id>", "show one issue with its edges"),
                    ("update <id> [flags]", "change title/body/status/assignee"),
                    ("close <id...>", "close one or more issues"),
                    ("reopen <id...>", "reopen one or more issues"),
                    ("list", "list issues with status/tag/assignee/search filters"),
                    ("ready", "open issues with no open blocker"),
                    ("blocked", "open issues waiting on blockers"),
                    ("tag add|remove <id> <tag>", "manage issue tags"),
                    ("dep add <src> <dst> --type T", "add a typed edge src -> dst"),
                    ("dep remove <src> <dst>", "remove edges between two issues"),
                    ("dep tree <id>", "walk edges down or up from an issue"),
                    ("dep cycles", "report blocks/parent-child loops"),
                    ("export [--path P]", "write a compacted snapshot log"),
                    ("import [--full]", "bring the cache up to date with the log"),
                    ("stats", "counts by status and edge type"),
                ),
            ),
            (
                "Options",
                (
                    ("--json", "emit machine-stable JSON payloads"),
                    ("--output MODE", "auto|plain|rich (or BEADLE_OUTPUT)"),
                    ("--debug", "log sync activity to stderr"),
                    ("-h, --help", "show this help"),
                ),
            ),
        ),
        examples=(
            ("beadle create 'Fix login' -t area:auth", "file a new issue"),
            ("beadle dep add bd-1a2b bd-3c4d --type blocks", "bd-1a2b must close first"),
            ("beadle ready --json", "pick the next unblocked item"),
        ),
    )


def _add_json(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Output JSON")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="beadle",
        description="Dependency-aware issue tracker.",
    )
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--version", action="version", version=f"beadle {__version__}")
    sub = p.add_subparsers(dest="command", required=True, metavar="command")

    init = sub.add_parser("init", help="Initialize .beadle/ in the current directory")
    _add_json(init)

    create = sub.add_parser("create", help="Create an issue")
    create.add_argument("title", help="Issue title")
    create.add_argument("-b", "--body", default="", help="Issue description/body")
    create.add_argument(
        "-s",
        "--status",
        default="open",
        help=f"Initial status ({', '.join(ISSUE_STATUSES)})",
    )
    create.add_argument("-t", "--tag", action="append", default=[], help="Tag (repeatable)")
    create.add_argument("-a", "--assignee", help="Assignee")
    create.add_argument(
        "--deps",
        default="",
        help="Comma-separated type:id edges pointing at the new issue",
    )
    _add_json(create)

    show = sub.add_parser("show", help="Show one issue with details")
    show.add_argument("id", help="Issue id")
    _add_json(show)
    add_output_mode_argument(show)

    update = sub.add_parser("update", help="Update issue fields")
    update.add_argument("id", help="Issue id")
    update.add_argument("--title", help="New title")
    update.add_argument("-b", "--body", help="New body")
    update.add_argument("--status", help=f"New status ({', '.join(ISSUE_STATUSES)})")
    update.add_argument("-a", "--assignee", help="New assignee (empty string clears it)")
    _add_json(update)

    close = sub.add_parser("close", help="Close issue(s)")
    close.add_argument("id", nargs="+", help="Issue id(s)")
    _add_json(close)

    reopen = sub.add_parser("reopen", help="Reopen issue(s)")
    reopen.add_argument("id", nargs="+", help="Issue id(s)")
    _add_json(reopen)

    ls = sub.add_parser("list", help="List issues")
    ls.add_argument("--status", help=f"Filter by status ({', '.join(ISSUE_STATUSES)})")
    ls.add_argument("--tag", help="Filter by tag")
    ls.add_argument("--assignee", help="Filter by assignee")
    ls.add_argument("--search", help="Filter by text in id/title/body")
    ls.add_argument("--limit", type=int, default=50, help="Max rows (default: 50)")
    _add_json(ls)
    add_output_mode_argument(ls)

    ready = sub.add_parser("ready", help="List ready-to-work issues")
    ready.add_argument("--tag", action="append", default=[], help="Required tag (repeatable)")
    ready.add_argument("--assignee", help="Filter by assignee")
    ready.add_argument("--limit", type=int, default=None, help="Max rows")
    _add_json(ready)
    add_output_mode_argument(ready)

    blocked = sub.add_parser("blocked", help="List blocked issues with their blockers")
    _add_json(blocked)
    add_output_mode_argument(blocked)

    tag = sub.add_parser("tag", help="Tag operations")
    tag_sub = tag.add_subparsers(dest="tag_cmd", required=True, metavar="tag_cmd")
    for name, help_text in (("add", "Add a tag"), ("remove", "Remove a tag")):
        tag_cmd = tag_sub.add_parser(name, help=help_text)
        tag_cmd.add_argument("id", help="Issue id")
        tag_cmd.add_argument("tag", help="Tag value")
        _add_json(tag_cmd)

    dep = sub.add_parser("dep", help="Dependency operations")
    dep_sub = dep.add_subparsers(dest="dep_cmd", required=True, metavar="dep_cmd")
    dep_add = dep_sub.add_parser("add", help="Add a typed edge src -> dst")
    dep_add.add_argument("src_id", help="Upstream issue id")
    dep_add.add_argument("dst_id", help="Downstream issue id")
    dep_add.add_argument(
        "--type",
        required=True,
        help=f"Relation type ({', '.join(RELATION_TYPES)})",
    )
    _add_json(dep_add)

    dep_rm = dep_sub.add_parser("remove", help="Remove edges between two issues")
    dep_rm.add_argument("src_id", help="Upstream issue id")
    dep_rm.add_argument("dst_id", help="Downstream issue id")
    dep_rm.add_argument("--type", help="Only remove this relation type")
    _add_json(dep_rm)

    dep_tree = dep_sub.add_parser("tree", help="Show the edge tree around an issue")
    dep_tree.add_argument("id", help="Root issue id")
    dep_tree.add_argument("--direction", choices=TREE_DIRECTIONS, default="down")
    dep_tree.add_argument(
        "--type",
        action="append",
        default=[],
        help="Only follow this relation type (repeatable)",
    )
    dep_tree.add_argument("--max-depth", type=int, default=None, help="Depth limit")
    _add_json(dep_tree)
    add_output_mode_argument(dep_tree)

    dep_cycles = dep_sub.add_parser("cycles", help="Report hierarchical loops")
    _add_json(dep_cycles)

    export = sub.add_parser("export", help="Write a compacted snapshot log")
    export.add_argument("--path", type=Path, default=None, help="Target file")
    _add_json(export)

    imp = sub.add_parser("import", help="Sync the cache from the log")
    imp.add_argument("--full", action="store_true", help="Rebuild the cache from empty")
    _add_json(imp)

    stats = sub.add_parser("stats", help="Show counts by status and edge type")
    _add_json(stats)
    add_output_mode_argument(stats)

    return p


def _parse_deps(raw: str) -> list[tuple[str, str]]:
    deps: list[tuple[str, str]] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        rel_type, sep, target = item.partition(":")
        if not sep or not rel_type.strip() or not target.strip():
            raise ValueError(f"invalid dependency {item!r}; expected type:id")
        deps.append((rel_type.strip(), target.strip()))
    return deps


def _check_tags(tracker: Tracker, tags: list[str]) -> None:
    policy = TagPolicy.from_config(tracker.config.tags)
    problems = policy.violations(tags)
    if not problems:
        return
    message = f"unrecognized tag prefix: {', '.join(problems)}"
    if policy.strict:
        raise ValueError(message)
    logger.warning(message)


def _init(tracker: Tracker) -> Path:
    state_dir = tracker.log.path.parent
    tracker.log.touch()
    gitignore = state_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(
            _GITIGNORE.format(cache=tracker.config.cache_file), encoding="utf-8"
        )
    gitattributes = state_dir / ".gitattributes"
    if not gitattributes.exists():
        gitattributes.write_text(
            _GITATTRIBUTES.format(log=tracker.config.log_file), encoding="utf-8"
        )
    tracker.import_()
    return state_dir


def _run_batch(
    ids: list[str],
    action: Any,
    *,
    as_json: bool,
) -> None:
    """Apply ``action`` to each id, reporting per-id failures and exiting 1 after."""
    rows: list[dict[str, Any]] = []
    failed = False
    for issue_id in ids:
        try:
            rows.append(action(issue_id))
        except MergeConflictError:
            raise
        except BeadleError as exc:
            print(f"error: {exc}", file=sys.stderr)
            failed = True
    if as_json:
        _emit_json(rows)
    else:
        for row in rows:
            _print_issue(row)
    if failed:
        raise SystemExit(EXIT_ERROR)


def _dispatch(args: argparse.Namespace, tracker: Tracker, output_mode: OutputMode) -> None:
    if args.command == "init":
        state_dir = _init(tracker)
        if args.json:
            _emit_json({"state_dir": str(state_dir), "log": str(tracker.log.path)})
        else:
            print(f"initialized {state_dir}")
        return

    if args.command == "create":
        _check_tags(tracker, args.tag)
        row = tracker.create(
            args.title,
            tags=args.tag,
            status=args.status,
            body=args.body,
            assignee=args.assignee,
            deps=_parse_deps(args.deps),
        )
        if args.json:
            _emit_json(row)
        else:
            print(row["id"])
        return

    if args.command == "show":
        row = tracker.require(args.id)
        payload = {**row, "dependencies": tracker.edges(row["id"])}
        if args.json:
            _emit_json(payload)
        else:
            _print_issue_details(payload, output_mode=output_mode)
        return

    if args.command == "update":
        row = tracker.update(
            args.id,
            title=args.title,
            body=args.body,
            status=args.status,
            assignee=args.assignee,
            assignee_provided=args.assignee is not None,
        )
        if args.json:
            _emit_json(row)
        else:
            _print_issue(row)
        return

    if args.command == "close":
        _run_batch(args.id, tracker.close, as_json=args.json)
        return

    if args.command == "reopen":
        _run_batch(args.id, tracker.reopen, as_json=args.json)
        return

    if args.command == "list":
        rows = list(
            tracker.list(
                status=args.status,
                tag=args.tag,
                assignee=args.assignee,
                search=args.search,
                limit=args.limit,
            )
        )
        if args.json:
            _emit_json(rows)
        else:
            filtered = args.status or args.tag or args.assignee or args.search
            _print_issues(
                rows,
                output_mode=output_mode,
                title="Issues",
                empty="(no matching issues)" if filtered else "(no issues)",
            )
        return

    if args.command == "ready":
        rows = tracker.ready(tags=args.tag, assignee=args.assignee, limit=args.limit)
        if args.json:
            _emit_json(rows)
        else:
            _print_issues(
                rows,
                output_mode=output_mode,
                title="Ready",
                empty="(no ready issues)",
            )
        return

    if args.command == "blocked":
        rows = tracker.blocked()
        if args.json:
            _emit_json(rows)
        else:
            _print_blocked(rows, output_mode=output_mode)
        return

    if args.command == "tag":
        if args.tag_cmd == "add":
            _check_tags(tracker, [args.tag])
            row = tracker.add_tag(args.id, args.tag)
        else:
            row = tracker.remove_tag(args.id, args.tag)
        if args.json:
            _emit_json(row)
        else:
            _print_issue(row)
        return

    if args.command == "dep" and args.dep_cmd == "add":
        row = tracker.add_edge(args.src_id, args.dst_id, args.type)
        if args.json:
            _emit_json(row)
        else:
            print(f"{row['src_id']} {row['type']} {row['dst_id']}")
        return

    if args.command == "dep" and args.dep_cmd == "remove":
        rows = tracker.remove_edge(args.src_id, args.dst_id, args.type)
        if args.json:
            _emit_json(rows)
        else:
            for row in rows:
                print(f"removed: {row['src_id']} {row['type']} {row['dst_id']}")
        return

    if args.command == "dep" and args.dep_cmd == "tree":
        root = tracker.tree(
            args.id,
            direction=args.direction,
            types=tuple(args.type) or None,
            max_depth=args.max_depth,
        )
        if args.json:
            _emit_json(root)
        elif output_mode == "rich":
            render_tree(make_console("rich"), root)
        else:
            _print_tree_plain(root)
        return

    if args.command == "dep" and args.dep_cmd == "cycles":
        rows = tracker.cycles()
        if args.json:
            _emit_json(rows)
        elif not rows:
            print("(no cycles)")
        else:
            for row in rows:
                print(f"{row['type']}: {' -> '.join(row['cycle'])}")
        return

    if args.command == "export":
        result = tracker.export(args.path)
        if args.json:
            _emit_json(
                {
                    "path": str(result.path),
                    "records": result.records,
                    "issues": result.issues,
                    "edges": result.edges,
                }
            )
        else:
            print(f"exported {result.records} records to {result.path}")
        return

    if args.command == "import":
        result = tracker.import_(full=args.full)
        if args.json:
            _emit_json(
                {
                    "mode": result.mode,
                    "records": result.records,
                    "applied": result.applied,
                    "collapsed": result.collapsed,
                }
            )
        else:
            print(
                f"import {result.mode}: {result.applied} applied, "
                f"{result.collapsed} collapsed, {result.records} records"
            )
        return

    if args.command == "stats":
        stats = tracker.stats()
        if args.json:
            _emit_json(stats)
        else:
            _print_stats(stats, output_mode=output_mode)
        return


def main(argv: list[str] | None = None) -> None:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    if raw_argv in ([], ["-h"], ["--help"]):
        try:
            help_output_mode = resolve_output_mode()
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc
        _print_help(output_mode=help_output_mode)
        raise SystemExit(0)

    args = _build_parser().parse_args(raw_argv)
    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s - %(levelname)s - %(message)s",
        )

    output_mode: OutputMode = "plain"
    if hasattr(args, "output"):
        try:
            output_mode = resolve_output_mode(args.output)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            raise SystemExit(2) from exc

    create = not (
        args.command in _READ_ONLY_COMMANDS
        or (args.command == "dep" and args.dep_cmd in _READ_ONLY_DEP_COMMANDS)
    )

    tracker: Tracker | None = None
    try:
        tracker = Tracker.from_workdir(Path.cwd(), create=create)
        _dispatch(args, tracker, output_mode)
    except MergeConflictError as exc:
        print(f"error: {exc}", file=sys.stderr)
        log_name = tracker.log.path if tracker is not None else "the log"
        print(
            f"resolve the conflicting lines in {log_name} by hand, "
            "then run `beadle import --full`",
            file=sys.stderr,
        )
        raise SystemExit(EXIT_CONFLICT) from exc
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_ERROR) from exc
    finally:
        if tracker is not None:
            tracker.cache.close()


if __name__ == "__main__":
    main()
