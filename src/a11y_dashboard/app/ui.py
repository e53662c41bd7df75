from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from html import escape

from .forms import format_actions, format_headers
from .models import ISSUE_TYPES, ResultSummary, TaskForm, simplify_url
from .views import (
    DeletePage,
    EditPage,
    NewTaskPage,
    RuleGroup,
    RuleToggle,
    TaskCard,
    TaskDetailPage,
    TaskListPage,
)

_STYLE = """
    :root {
      --bg: #eef2f3;
      --panel: #ffffff;
      --ink: #1c2a38;
      --muted: #5d6d79;
      --line: #d5dde2;
      --accent: #146c94;
      --err: #a4202c;
      --warn: #8a6a00;
      --note: #17607e;
    }
    * { box-sizing: border-box; }
    body {
      margin: 0;
      font-family: "Space Grotesk", sans-serif;
      color: var(--ink);
      background:
        radial-gradient(circle at 10% 10%, #d8efff 0%, transparent 42%),
        radial-gradient(circle at 90% 80%, #fde3c5 0%, transparent 36%),
        var(--bg);
    }
    .wrap {
      max-width: 1150px;
      margin: 22px auto 40px;
      padding: 0 16px;
      display: grid;
      gap: 16px;
    }
    .card {
      background: var(--panel);
      border: 1px solid var(--line);
      border-radius: 16px;
      box-shadow: 0 10px 24px rgba(17, 34, 51, 0.06);
      padding: 16px;
    }
    .hero { display: flex; justify-content: space-between; gap: 12px; align-items: center; }
    .title { margin: 0; font-size: clamp(1.2rem, 2.6vw, 2rem); }
    .muted { color: var(--muted); }
    .grid { list-style: none; margin: 0; padding: 0; display: grid; gap: 12px;
      grid-template-columns: repeat(auto-fill, minmax(260px, 1fr)); }
    .stats { list-style: none; margin: 8px 0 0; padding: 0; display: flex; gap: 12px; }
    .stats .error { color: var(--err); }
    .stats .warning { color: var(--warn); }
    .stats .notice { color: var(--note); }
    .alert { border-left: 4px solid var(--accent); padding: 8px 12px; background: #f4f9fb; }
    .alert.bad { border-color: var(--err); background: #fbf1f2; }
    code { font-family: "IBM Plex Mono", monospace; font-size: 0.85rem; }
    label { display: grid; gap: 4px; margin-bottom: 10px; }
    input[type=text], input[type=url], input[type=password], select, textarea {
      font: inherit; padding: 6px 8px; border: 1px solid var(--line); border-radius: 8px; }
    button { font: inherit; padding: 8px 14px; border-radius: 999px; border: 1px solid var(--accent);
      background: var(--accent); color: #fff; cursor: pointer; }
"""


def _layout(*, title: str, body: str, noindex: bool) -> str:
    robots = '<meta name="robots" content="noindex">' if noindex else ""
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  {robots}
  <title>{escape(title)}</title>
  <style>{_STYLE}</style>
</head>
<body>
  <main class="wrap">
{body}
  </main>
</body>
</html>
"""


def format_date(value: datetime) -> str:
    """Dashboard display format, e.g. `07 Mar 2026`."""
    return value.strftime("%d %b %Y")


def _stats(summary: ResultSummary) -> str:
    items = "".join(
        f'<li class="{issue_type}" title="Number of {issue_type}s ({getattr(summary.count, issue_type)})">'
        f"{getattr(summary.count, issue_type)} {issue_type.capitalize()}s</li>"
        for issue_type in ISSUE_TYPES
    )
    return f'<ul class="stats">{items}</ul>'


def _card(card: TaskCard) -> str:
    parts = [
        f'<p class="h3"><strong>{escape(card.name)}</strong></p>',
        f'<p class="h4">{escape(simplify_url(card.url))}</p>',
        f'<p class="h5 muted">({escape(card.standard)})</p>',
    ]
    if card.last_result is not None:
        parts.append(_stats(card.last_result))
        run_count = ""
        if card.run_count and card.run_count > 1:
            run_count = f' <span class="run-count">({card.run_count} runs)</span>'
        parts.append(
            f'<div class="last-run muted">Last run {format_date(card.last_result.date)}{run_count}</div>'
        )
    else:
        parts.append('<p class="no-results muted">No results</p>')
    keywords = escape(card.keywords(), quote=True)
    return (
        f'<li class="card" data-role="task" data-task-id="{escape(card.id, quote=True)}" '
        f'data-keywords="{keywords}"><a href="/{escape(card.id, quote=True)}">'
        + "".join(parts)
        + "</a></li>"
    )


def render_task_list(page: TaskListPage, *, app_name: str, noindex: bool = True) -> str:
    notice = '<p class="alert">The task was deleted.</p>' if page.deleted else ""
    add_link = "" if page.readonly else '<a href="/new">Add a new URL</a>'
    cards = "".join(_card(card) for card in page.cards)
    if not cards:
        cards = '<li class="card muted">No URLs are being audited yet.</li>'
    body = f"""
    <section class="card hero">
      <div>
        <h1 class="title">{escape(app_name)}</h1>
        <p class="muted">Automated accessibility audits</p>
      </div>
      {add_link}
    </section>
    {notice}
    <ul class="grid" id="grid-container" data-control="task-list">{cards}</ul>
"""
    return _layout(title=app_name, body=body, noindex=noindex)


def _history(page: TaskDetailPage) -> str:
    if not page.history:
        return ""
    rows = "".join(
        f"<li>{entry.ordinal}. {format_date(entry.date)}: {entry.count.error} errors, "
        f"{entry.count.warning} warnings, {entry.count.notice} notices</li>"
        for entry in page.history
    )
    return f"""
    <section class="card" id="task-history">
      <h3>Run History</h3>
      <p class="h5">Total runs: {len(page.history)}</p>
      <ul>{rows}</ul>
    </section>
"""


def _graph_table(page: TaskDetailPage) -> str:
    if not page.graph:
        return ""
    rows = "".join(
        f'<tr data-role="url-stats"><td data-role="date" data-value="{int(point.date.timestamp() * 1000)}">'
        f"{format_date(point.date)}</td><td>{point.error}</td><td>{point.warning}</td>"
        f"<td>{point.notice}</td></tr>"
        for point in page.graph
    )
    return f"""
    <section class="card">
      <table id="graph-data">
        <thead><tr><th>Date</th><th>Errors</th><th>Warnings</th><th>Notices</th></tr></thead>
        <tbody>{rows}</tbody>
      </table>
    </section>
"""


def _rule_group(group: RuleGroup) -> str:
    selectors = "".join(f"<li><code>{escape(selector)}</code></li>" for selector in group.selectors)
    return (
        f'<details class="rule task_type_{group.type}">'
        f'<summary><span class="rule-name">{escape(group.code)}</span> '
        f'<span class="badge" title="{group.size} selector(s)">{group.size}</span></summary>'
        f'<p class="text">{escape(group.message)}</p>'
        f'<ul class="selectors-list">{selectors}</ul></details>'
    )


def _breakdown(page: TaskDetailPage) -> str:
    breakdown = page.breakdown
    if breakdown is None:
        return ""
    sections: list[str] = []
    for issue_type in ISSUE_TYPES:
        groups = breakdown.groups.get(issue_type, [])
        count = getattr(breakdown.count, issue_type)
        if not groups:
            content = f'<p class="text">Well done! You have 0 {issue_type}s.</p>'
        else:
            content = "".join(_rule_group(group) for group in groups)
        sections.append(
            f'<section id="{issue_type}s-list"><h3>{issue_type.capitalize()}s ( {count} )</h3>{content}</section>'
        )
    sections.append(f'<p class="muted">Ignored rules ( {breakdown.ignored_rules} )</p>')
    content = "".join(sections)
    return f"""
    <section class="card" id="top">
      <h2>Results</h2>
      {content}
    </section>
"""


def render_task_detail(page: TaskDetailPage, *, app_name: str, noindex: bool = True) -> str:
    header = page.header
    alerts: list[str] = []
    if page.added:
        alerts.append('<p class="alert">The URL was added.</p>')
    if page.running:
        alerts.append('<p class="alert">The audit has completed.</p>')
    if page.error:
        alerts.append(f'<p class="alert bad">{escape(page.error)}</p>')
    last_run = ""
    if page.last_run is not None:
        last_run = f'<p class="date">Last run: <strong>{format_date(page.last_run.date)}</strong></p>'
    actions = ""
    if not page.readonly:
        task_path = f"/{escape(header.id, quote=True)}"
        actions = (
            f'<form method="post" action="{task_path}/run"><button data-test="run-task">Run audit</button></form>'
            f'<a href="{task_path}/edit">Edit</a> <a href="{task_path}/delete">Delete</a>'
        )
    empty = ""
    if page.breakdown is None:
        empty = '<p class="alert">There are no results to show. Run an audit to get started.</p>'
    alert_html = "".join(alerts)
    results_html = _breakdown(page) or empty
    body = f"""
    <section class="card task-header">
      <h1 class="title">{escape(header.name)}</h1>
      <p class="h4"><a href="{escape(header.url, quote=True)}">{escape(simplify_url(header.url))}</a>
        <span class="h5">({escape(header.standard)})</span></p>
      {last_run}
      {actions}
    </section>
    {alert_html}
    {_history(page)}
    {_graph_table(page)}
    {results_html}
"""
    return _layout(title=f"{header.name or header.id} | {app_name}", body=body, noindex=noindex)


def _rule_toggles(rules: Sequence[RuleToggle]) -> str:
    if not rules:
        return ""
    boxes = "".join(
        f'<label class="rule"><input type="checkbox" name="ignore" value="{escape(rule.code, quote=True)}"'
        f'{" checked" if rule.ignored else ""}> {escape(rule.code)}</label>'
        for rule in rules
    )
    return f'<fieldset data-test="ignore-rules"><legend>Ignore rules</legend>{boxes}</fieldset>'


def _task_fields(
    form_url: str,
    page_form: TaskForm,
    standards: list[str],
    submit_label: str,
    test_id: str,
    rules: Sequence[RuleToggle] = (),
) -> str:
    options = "".join(
        f'<option value="{escape(standard, quote=True)}"'
        f'{" selected" if standard == page_form.standard else ""}>{escape(standard)}</option>'
        for standard in standards
    )
    toggled = {rule.code for rule in rules}
    ignore_value = escape("\n".join(code for code in page_form.ignore if code not in toggled))
    ignore_label = "Other ignored rules" if rules else "Ignored rules"
    return f"""
    <form class="card" method="post" action="{escape(form_url, quote=True)}" data-test="{test_id}">
      <label>Name <input type="text" id="new-task-name" name="name" value="{escape(page_form.name, quote=True)}"></label>
      <label>URL <input type="url" id="new-task-url" name="url" value="{escape(page_form.url, quote=True)}"></label>
      <label>Standard <select id="new-task-standard" name="standard">{options}</select></label>
      {_rule_toggles(rules)}
      <label>{ignore_label} (one per line) <textarea name="ignore" rows="3">{ignore_value}</textarea></label>
      <label>Timeout (ms) <input type="text" id="new-task-timeout" name="timeout" value="{page_form.timeout or ''}"></label>
      <label>Wait (ms) <input type="text" id="new-task-wait" name="wait" value="{page_form.wait or ''}"></label>
      <label>Actions <textarea id="new-task-actions" name="actions" rows="4">{escape(format_actions(page_form.actions))}</textarea></label>
      <label>Username <input type="text" id="new-task-username" name="username" value="{escape(page_form.username or '', quote=True)}"></label>
      <label>Password <input type="password" id="new-task-password" name="password" value="{escape(page_form.password or '', quote=True)}"></label>
      <label>Headers <textarea id="new-task-headers" name="headers" rows="3">{escape(format_headers(page_form.headers))}</textarea></label>
      <label>Hide elements <input type="text" id="new-task-hide-elements" name="hideElements" value="{escape(page_form.hide_elements or '', quote=True)}"></label>
      <button type="submit">{escape(submit_label)}</button>
    </form>
"""


def render_new_task(page: NewTaskPage, *, app_name: str, noindex: bool = True) -> str:
    error = f'<p class="alert bad">{escape(page.error)}</p>' if page.error else ""
    fields = _task_fields("/new", page.form, page.standards, "Add URL", "new-url-form")
    body = f"""
    <section class="card"><h1 class="title">Add a new URL</h1></section>
    {error}
    {fields}
"""
    return _layout(title=f"Add a new URL | {app_name}", body=body, noindex=noindex)


def render_edit(page: EditPage, *, app_name: str, noindex: bool = True) -> str:
    alerts = ""
    if page.edited:
        alerts += '<p class="alert">Your changes have been saved.</p>'
    if page.error:
        alerts += f'<p class="alert bad">{escape(page.error)}</p>'
    fields = _task_fields(
        f"/{page.task_id}/edit", page.form, page.standards, "Save changes", "edit-url-form", page.rules
    )
    body = f"""
    <section class="card"><h1 class="title">Edit URL</h1></section>
    {alerts}
    {fields}
"""
    return _layout(title=f"Edit URL | {app_name}", body=body, noindex=noindex)


def render_delete(page: DeletePage, *, app_name: str, noindex: bool = True) -> str:
    task_path = f"/{escape(page.task_id, quote=True)}"
    body = f"""
    <form class="card" method="post" action="{task_path}/delete" data-test="delete-url-form">
      <legend>Delete URL ({escape(simplify_url(page.url))})</legend>
      <p class="lead">Are you sure you want to delete <strong>{escape(page.url)}</strong>
        <small>({escape(page.standard)})</small>? All of its results will be removed.</p>
      <button type="submit">Yes, delete</button> <a href="{task_path}">Cancel</a>
    </form>
"""
    return _layout(title=f"Delete URL | {app_name}", body=body, noindex=noindex)
