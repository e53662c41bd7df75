"""Command line entry point: serve the dashboard or drive it as a client.

Client commands reconcile every page against the local durable store, so
tasks and results survive a restart of the server.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel

from .app.errors import DashboardError
from .app.forms import parse_headers
from .app.models import TaskForm
from .app.settings import Settings, get_settings
from .app.ui import format_date, render_task_detail, render_task_list
from .app.views import TaskCard, TaskDetailPage
from .client.durable import SqliteDurableStore
from .client.reconcile import ReconciliationEngine
from .client.transfer import dump_document, export_document, export_filename, import_document
from .client.transport import UrllibTransport

logger = logging.getLogger("a11y_dashboard.cli")


def _add_task_field_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", default=None, help="Task name.")
    parser.add_argument("--url", default=None, help="URL to audit.")
    parser.add_argument("--standard", default=None, help="Rule set (WCAG2A, WCAG2AA, WCAG2AAA).")
    parser.add_argument("--ignore", action="append", default=None, help="Rule code to ignore (repeatable).")
    parser.add_argument("--timeout", type=int, default=None, help="Audit timeout in milliseconds.")
    parser.add_argument("--wait", type=int, default=None, help="Wait before auditing, in milliseconds.")
    parser.add_argument("--action", action="append", default=None, help="Pre-audit browser action (repeatable, ordered).")
    parser.add_argument("--username", default=None, help="HTTP basic auth user.")
    parser.add_argument("--password", default=None, help="HTTP basic auth password.")
    parser.add_argument("--header", action="append", default=None, help="HTTP header as 'Name: value' (repeatable).")
    parser.add_argument("--hide-elements", default=None, help="CSS selector of elements to exclude.")


def _parse_args(argv: Sequence[str] | None, settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="a11y-dashboard",
        description="Accessibility audit dashboard server and client.",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        help=f"Logging level (default: {settings.log_level}).",
    )
    parser.add_argument(
        "--dashboard-url",
        default=settings.dashboard_url,
        help=f"Dashboard server base URL (default: {settings.dashboard_url}).",
    )
    parser.add_argument(
        "--durable-path",
        type=Path,
        default=settings.durable_path,
        help=f"Local SQLite store path (default: {settings.durable_path}).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the dashboard web server.")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)

    tasks = commands.add_parser("tasks", help="List tasks.")
    tasks.add_argument("--deleted", action="store_true", help="Reconcile as after a deletion.")
    tasks.add_argument("--filter", default=None, help="Keyword filter.")
    tasks.add_argument("--html", action="store_true", help="Print the reconciled page as HTML.")

    show = commands.add_parser("show", help="Show one task and its run history.")
    show.add_argument("task_id")
    show.add_argument("--html", action="store_true", help="Print the reconciled page as HTML.")

    add = commands.add_parser("add", help="Create a task.")
    _add_task_field_args(add)

    edit = commands.add_parser("edit", help="Edit a task; omitted fields keep their values.")
    edit.add_argument("task_id")
    _add_task_field_args(edit)

    run = commands.add_parser("run", help="Run an accessibility audit for a task.")
    run.add_argument("task_id")

    delete = commands.add_parser("delete", help="Delete a task and its results.")
    delete.add_argument("task_id")

    export = commands.add_parser("export", help="Export the local store as JSON.")
    export.add_argument("--output", type=Path, default=None, help="Output file (default: timestamped name).")

    import_ = commands.add_parser("import", help="Import a JSON export into the local store.")
    import_.add_argument("file", type=Path)

    return parser.parse_args(argv)


def _apply_field_args(form: TaskForm, args: argparse.Namespace) -> TaskForm:
    updates = {
        key: value
        for key, value in (
            ("name", args.name),
            ("url", args.url),
            ("standard", args.standard),
            ("ignore", args.ignore),
            ("timeout", args.timeout),
            ("wait", args.wait),
            ("actions", args.action),
            ("username", args.username),
            ("password", args.password),
            ("headers", parse_headers("\n".join(args.header)) if args.header else None),
            ("hide_elements", args.hide_elements),
        )
        if value is not None
    }
    return form.model_copy(update=updates)


def _card_line(card: TaskCard) -> str:
    line = f"{card.id}  {card.name} <{card.url}> ({card.standard})"
    if card.last_result is None:
        return f"{line}  no results"
    count = card.last_result.count
    stats = f"errors={count.error} warnings={count.warning} notices={count.notice}"
    runs = f" ({card.run_count} runs)" if card.run_count and card.run_count > 1 else ""
    return f"{line}  {stats} last run {format_date(card.last_result.date)}{runs}"


def _print_detail(page: TaskDetailPage) -> None:
    header = page.header
    if header.is_placeholder:
        print(f"{header.id}  (unknown task)")
    else:
        print(f"{header.id}  {header.name} <{header.url}> ({header.standard})")
    if page.last_run is None:
        print("No results yet.")
        return
    print(f"Last run {format_date(page.last_run.date)} [{page.source}]")
    for entry in page.history:
        count = entry.count
        print(
            f"  #{entry.ordinal} {format_date(entry.date)} "
            f"errors={count.error} warnings={count.warning} notices={count.notice}"
        )
    if page.breakdown is not None:
        for issue_type, groups in page.breakdown.groups.items():
            for group in groups:
                print(f"  {issue_type} {group.code} x{group.size}")


def _print_json(payload: BaseModel) -> None:
    print(json.dumps(payload.model_dump(mode="json"), indent=2))


def _serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from .main import create_app

    app = create_app(settings_override=settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "serve":
        return _serve(args, settings)

    store = SqliteDurableStore(args.durable_path)
    if args.command == "export":
        output = args.output or Path(export_filename())
        output.write_text(dump_document(export_document(store)), encoding="utf-8")
        print(f"Exported local store to {output}")
        return 0
    if args.command == "import":
        report = import_document(store, args.file.read_text(encoding="utf-8"))
        print(
            f"Imported {report.tasks} tasks and {report.results} results "
            f"({report.rejected} rejected, {report.orphaned} orphaned)"
        )
        return 0

    engine = ReconciliationEngine(
        store,
        UrllibTransport(args.dashboard_url, timeout_s=settings.http_timeout_s),
    )
    if args.command == "tasks":
        page = engine.load_task_list(deleted=args.deleted, query=args.filter)
        if args.html:
            print(render_task_list(page, app_name=settings.app_name, noindex=settings.noindex))
        else:
            for card in page.cards:
                print(_card_line(card))
    elif args.command == "show":
        detail = engine.load_task_detail(args.task_id)
        if args.html:
            print(render_task_detail(detail, app_name=settings.app_name, noindex=settings.noindex))
        else:
            _print_detail(detail)
    elif args.command == "add":
        form = _apply_field_args(TaskForm(standard=settings.default_standard), args)
        detail = engine.create_task(form)
        print(f"Created task {detail.header.id}")
    elif args.command == "edit":
        current = engine.load_edit(args.task_id)
        edited = engine.submit_edit(args.task_id, _apply_field_args(current.form, args))
        _print_json(edited.form)
    elif args.command == "run":
        outcome = engine.run_task(args.task_id)
        count = outcome.result.count
        print(
            f"Run {outcome.result.id} finished: "
            f"errors={count.error} warnings={count.warning} notices={count.notice}"
        )
    elif args.command == "delete":
        preview = engine.load_delete(args.task_id)
        page = engine.confirm_delete(args.task_id)
        label = f"{preview.name} <{preview.url}>" if not preview.is_placeholder else args.task_id
        print(f"Deleted task {label}; {len(page.cards)} tasks remain")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = _parse_args(argv, settings)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        return _run_command(args, settings)
    except DashboardError as exc:
        logger.debug("cli event=failed command=%s category=%s metadata=%s", args.command, exc.category, exc.metadata)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
