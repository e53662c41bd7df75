"""Structured page payloads.

Every server page is described by one of these models. The HTML templates
render them, and the same payloads are served as JSON so the client can
reconcile against structured data instead of scraping markup.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from .models import (
    ISSUE_TYPES,
    STANDARDS,
    IssueCount,
    IssueType,
    Result,
    ResultSummary,
    Task,
    TaskForm,
    simplify_url,
)

_QUERY_STRIP = re.compile(r"[^a-z0-9\s]+", re.IGNORECASE)


class TaskCard(BaseModel):
    """One entry of the task list."""

    id: str
    name: str = ""
    url: str = ""
    standard: str = ""
    last_result: ResultSummary | None = None
    run_count: int | None = None
    no_results: bool = False
    # True when the card was built from the durable store, not rendered by the server.
    synthetic: bool = False

    @property
    def has_stats(self) -> bool:
        return self.last_result is not None

    def keywords(self) -> str:
        return " ".join(
            part
            for part in (self.name.lower(), self.standard.lower(), simplify_url(self.url))
            if part
        )


class TaskListPage(BaseModel):
    cards: list[TaskCard] = Field(default_factory=list)
    # Set when the page was reached through the post-delete redirect.
    deleted: bool = False
    readonly: bool = False


class TaskHeader(BaseModel):
    id: str
    name: str = ""
    url: str = ""
    standard: str = ""

    @property
    def is_placeholder(self) -> bool:
        return not (self.name or self.url or self.standard)


class HistoryEntry(BaseModel):
    ordinal: int
    result_id: str
    date: datetime
    count: IssueCount


class GraphPoint(BaseModel):
    date: datetime
    error: int
    warning: int
    notice: int


class RuleGroup(BaseModel):
    """All issues of one type sharing a rule code."""

    type: IssueType
    code: str
    message: str = ""
    selectors: list[str] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.selectors)


class ResultBreakdown(BaseModel):
    result_id: str
    date: datetime
    count: IssueCount
    groups: dict[IssueType, list[RuleGroup]] = Field(default_factory=dict)
    ignored_rules: int = 0


class TaskDetailPage(BaseModel):
    header: TaskHeader
    last_run: ResultSummary | None = None
    # Server-side run summaries, newest first.
    results: list[ResultSummary] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    graph: list[GraphPoint] = Field(default_factory=list)
    breakdown: ResultBreakdown | None = None
    source: Literal["server", "durable", "none"] = "none"
    added: bool = False
    running: bool = False
    error: str | None = None
    readonly: bool = False


class RuleToggle(BaseModel):
    """A rule code offered as an ignore checkbox on the edit form."""

    code: str
    ignored: bool = False


class EditPage(BaseModel):
    task_id: str
    form: TaskForm
    placeholder: bool = False
    edited: bool = False
    standards: list[str] = Field(default_factory=lambda: list(STANDARDS))
    rules: list[RuleToggle] = Field(default_factory=list)
    error: str | None = None


class DeletePage(BaseModel):
    task_id: str
    name: str = ""
    url: str = ""
    standard: str = ""

    @property
    def is_placeholder(self) -> bool:
        return not (self.url or self.standard)


class NewTaskPage(BaseModel):
    form: TaskForm = Field(default_factory=TaskForm)
    standards: list[str] = Field(default_factory=lambda: list(STANDARDS))
    error: str | None = None


def card_from_task(task: Task, *, run_count: int | None = None) -> TaskCard:
    return TaskCard(
        id=task.id,
        name=task.name,
        url=task.url,
        standard=task.standard,
        last_result=task.last_result.model_copy() if task.last_result else None,
        run_count=run_count,
        no_results=task.last_result is None,
    )


def card_sort_key(card: TaskCard) -> tuple[str, str]:
    return (card.name.lower(), card.id)


def build_task_list_page(
    tasks: Iterable[tuple[Task, int]],
    *,
    deleted: bool = False,
    readonly: bool = False,
) -> TaskListPage:
    """List page from `(task, run_count)` pairs."""
    cards = [card_from_task(task, run_count=run_count) for task, run_count in tasks]
    cards.sort(key=card_sort_key)
    return TaskListPage(cards=cards, deleted=deleted, readonly=readonly)


def build_history(results_newest_first: Sequence[Result]) -> list[HistoryEntry]:
    return [
        HistoryEntry(ordinal=index, result_id=result.id, date=result.date, count=result.count)
        for index, result in enumerate(results_newest_first, start=1)
    ]


def build_graph(results: Iterable[Result]) -> list[GraphPoint]:
    """Chronological per-run counts for the history graph."""
    return [
        GraphPoint(
            date=result.date,
            error=result.count.error,
            warning=result.count.warning,
            notice=result.count.notice,
        )
        for result in sorted(results, key=lambda item: item.date)
    ]


def build_breakdown(result: Result) -> ResultBreakdown:
    """Group a result's issues by type, then by rule code.

    Within a type, groups are ordered by descending member count; ties keep
    the order in which the engine first reported the code.
    """
    groups: dict[IssueType, list[RuleGroup]] = {}
    for issue_type in ISSUE_TYPES:
        by_code: dict[str, RuleGroup] = {}
        for issue in result.results:
            if issue.type != issue_type:
                continue
            group = by_code.get(issue.code)
            if group is None:
                group = RuleGroup(type=issue_type, code=issue.code, message=issue.message)
                by_code[issue.code] = group
            group.selectors.append(issue.selector)
        groups[issue_type] = sorted(by_code.values(), key=lambda item: item.size, reverse=True)
    return ResultBreakdown(
        result_id=result.id,
        date=result.date,
        count=result.count,
        groups=groups,
        ignored_rules=len(result.ignore),
    )


def build_task_detail_page(
    task_id: str,
    task: Task | None,
    results_newest_first: Sequence[Result],
    *,
    added: bool = False,
    running: bool = False,
    readonly: bool = False,
) -> TaskDetailPage:
    """Detail page; an unknown task renders a placeholder header and no results."""
    if task is None:
        return TaskDetailPage(
            header=TaskHeader(id=task_id),
            added=added,
            running=running,
            readonly=readonly,
        )
    page = TaskDetailPage(
        header=TaskHeader(id=task.id, **task.identity()),
        last_run=task.last_result,
        results=[result.summary() for result in results_newest_first],
        added=added,
        running=running,
        readonly=readonly,
    )
    if results_newest_first:
        page.history = build_history(results_newest_first)
        page.graph = build_graph(results_newest_first)
        page.breakdown = build_breakdown(results_newest_first[0])
        page.source = "server"
    return page


def build_rule_toggles(
    results: Iterable[Result], ignore: Sequence[str], *, known: Iterable[str] = ()
) -> list[RuleToggle]:
    """Ignore checkboxes for every rule seen in `results` or `known`, plus rules already ignored."""
    codes = {issue.code for result in results for issue in result.results}
    codes.update(known)
    codes.update(ignore)
    ignored = set(ignore)
    return [RuleToggle(code=code, ignored=code in ignored) for code in sorted(codes) if code]


def build_edit_page(
    task_id: str,
    task: Task | None,
    *,
    default_standard: str,
    results: Sequence[Result] = (),
    form: TaskForm | None = None,
) -> EditPage:
    """Edit form payload; `form` overrides the task's stored fields when re-rendering a rejected edit."""
    if task is None:
        form = form or TaskForm(standard=default_standard)
        return EditPage(
            task_id=task_id,
            form=form,
            placeholder=True,
            rules=build_rule_toggles((), form.ignore),
        )
    form = form or TaskForm.from_task(task)
    return EditPage(task_id=task_id, form=form, rules=build_rule_toggles(results, form.ignore))


def build_delete_page(task_id: str, task: Task | None) -> DeletePage:
    if task is None:
        return DeletePage(task_id=task_id)
    return DeletePage(task_id=task_id, **task.identity())


def filter_cards(cards: Iterable[TaskCard], query: str | None) -> list[TaskCard]:
    """Keyword filter used by the task list search box.

    Non-alphanumeric characters are removed from the query; a card is kept if
    any remaining word occurs in its keywords.
    """
    cleaned = _QUERY_STRIP.sub("", (query or "").strip())
    words = [word.lower() for word in cleaned.split()]
    if not words:
        return list(cards)
    return [card for card in cards if any(word in card.keywords() for word in words)]
