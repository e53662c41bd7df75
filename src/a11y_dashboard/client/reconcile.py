"""Reconciliation Engine: merge server page payloads with the durable store.

The server keeps tasks in memory and forgets them on restart; the client keeps
its own SQLite copy. Every page the client loads is reconciled against that
copy before it is shown.

Merge rules:
- Identity fields (name, url, standard) come from whichever side currently has
  them: the server while it renders data, the durable record when it does not.
- Statistics (last_result, run history) come from the union of both sides. A
  rendered last_result replaces the durable one only when it is newer.
- Membership follows the server, except that durable tasks the server does not
  know are shown as synthetic cards. The durable set only shrinks on the list
  page reached through the post-delete redirect.

Background reconciliation never fails a page: a StorageError inside a step is
logged and the step is skipped, leaving the payload as it was before it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import uuid4

from ..app.errors import NotFoundError, StorageError, ValidationError
from ..app.forms import task_form_to_fields
from ..app.models import Result, ResultSummary, Task, TaskForm, utc_now
from ..app.runner import build_result, task_engine_options
from ..app.views import (
    DeletePage,
    EditPage,
    TaskCard,
    TaskDetailPage,
    TaskListPage,
    build_breakdown,
    build_graph,
    build_history,
    build_rule_toggles,
    card_from_task,
    card_sort_key,
    filter_cards,
)
from .durable import SqliteDurableStore
from .transport import DashboardTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RunOutcome:
    """A client-side run: the persisted result and the reloaded detail page."""

    result: Result
    page: TaskDetailPage


def _newest_first(results: list[Result]) -> list[Result]:
    return sorted(results, key=lambda result: result.date, reverse=True)


def _is_newer(candidate: ResultSummary | None, current: ResultSummary | None) -> bool:
    if candidate is None:
        return False
    return current is None or candidate.date > current.date


class ReconciliationEngine:
    def __init__(
        self,
        store: SqliteDurableStore,
        transport: DashboardTransport,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.transport = transport
        self.id_factory = id_factory or (lambda: str(uuid4()))
        self.clock = clock

    # Task list

    def load_task_list(self, *, deleted: bool = False, query: str | None = None) -> TaskListPage:
        raw = self.transport.get_page("/?deleted" if deleted else "/")
        page = self.reconcile_task_list(TaskListPage.model_validate(raw))
        if query:
            page.cards = filter_cards(page.cards, query)
        return page

    def reconcile_task_list(self, page: TaskListPage) -> TaskListPage:
        page = page.model_copy(deep=True)
        rendered_ids = {card.id for card in page.cards}

        for card in page.cards:
            self._guarded("merge_card", lambda card=card: self._merge_card(card), None)

        if page.deleted:
            self._guarded("prune_deleted", lambda: self._prune_absent(rendered_ids), None)

        page.cards = self._guarded(
            "add_synthetic_cards",
            lambda: self._with_synthetic_cards(page.cards, rendered_ids),
            page.cards,
        )
        page.cards = self._guarded("patch_card_stats", lambda: self._patch_card_stats(page.cards), page.cards)
        return page

    def _merge_card(self, card: TaskCard) -> None:
        existing = self.store.get_task(card.id)
        identity = {"name": card.name, "url": card.url, "standard": card.standard}
        if _is_newer(card.last_result, existing.last_result if existing is not None else None):
            identity["last_result"] = card.last_result
        if existing is None:
            merged = Task(id=card.id, **identity)
        else:
            merged = existing.model_copy(update=identity)
        self.store.save_task(merged)

    def _prune_absent(self, rendered_ids: set[str]) -> None:
        for task in self.store.get_tasks():
            if task.id not in rendered_ids:
                logger.info("reconcile event=prune task_id=%s", task.id)
                self.store.delete_task(task.id)

    def _with_synthetic_cards(self, cards: list[TaskCard], rendered_ids: set[str]) -> list[TaskCard]:
        merged = [card.model_copy() for card in cards]
        for task in self.store.get_tasks():
            if task.id in rendered_ids:
                continue
            card = card_from_task(task, run_count=len(self.store.get_results_by_task(task.id)))
            card.synthetic = True
            merged.append(card)
        merged.sort(key=card_sort_key)
        return merged

    def _patch_card_stats(self, cards: list[TaskCard]) -> list[TaskCard]:
        patched: list[TaskCard] = []
        for card in cards:
            card = card.model_copy()
            if card.last_result is None:
                durable = self.store.get_task(card.id)
                if durable is not None and durable.last_result is not None:
                    card.last_result = durable.last_result
                    card.run_count = len(self.store.get_results_by_task(card.id))
            card.no_results = card.last_result is None
            patched.append(card)
        return patched

    # Task detail

    def load_task_detail(self, task_id: str) -> TaskDetailPage:
        raw = self.transport.get_page(f"/{task_id}")
        return self.reconcile_task_detail(TaskDetailPage.model_validate(raw))

    def reconcile_task_detail(self, page: TaskDetailPage) -> TaskDetailPage:
        page = page.model_copy(deep=True)
        task_id = page.header.id

        if page.header.is_placeholder:
            durable = self._guarded("read_task", lambda: self.store.get_task(task_id), None)
            if durable is not None:
                page.header = page.header.model_copy(update=durable.identity())
        else:
            self._guarded("merge_header", lambda: self._merge_header(page), None)

        results = self._guarded("read_results", lambda: self.store.get_results_by_task(task_id), [])
        if results and not page.results:
            ordered = _newest_first(results)
            page.last_run = ordered[0].summary()
            page.history = build_history(ordered)
            page.graph = build_graph(ordered)
            page.breakdown = build_breakdown(ordered[0])
            page.source = "durable"
        return page

    def _merge_header(self, page: TaskDetailPage) -> None:
        header = page.header
        existing = self.store.get_task(header.id)
        identity = {"name": header.name, "url": header.url, "standard": header.standard}
        if _is_newer(page.last_run, existing.last_result if existing is not None else None):
            identity["last_result"] = page.last_run
        if existing is None:
            self.store.save_task(Task(id=header.id, **identity))
        else:
            self.store.save_task(existing.model_copy(update=identity))

    # Create and edit

    def create_task(self, form: TaskForm) -> TaskDetailPage:
        """Create a task on the server and keep a full durable copy of it."""
        raw = self.transport.submit_form("/new", task_form_to_fields(form))
        page = TaskDetailPage.model_validate(raw)
        task = Task.model_validate({"id": page.header.id, **form.task_fields()})
        self.store.save_task(task)
        logger.info("reconcile event=task_created task_id=%s", task.id)
        return self.reconcile_task_detail(page)

    def load_edit(self, task_id: str) -> EditPage:
        raw = self.transport.get_page(f"/{task_id}/edit")
        return self.prefill_edit(EditPage.model_validate(raw))

    def prefill_edit(self, page: EditPage) -> EditPage:
        page = page.model_copy(deep=True)
        durable = self._guarded("read_task", lambda: self.store.get_task(page.task_id), None)
        if durable is not None:
            page.form = TaskForm.from_task(durable)
            page.placeholder = False
        results = self._guarded("read_results", lambda: self.store.get_results_by_task(page.task_id), [])
        page.rules = build_rule_toggles(results, page.form.ignore, known=[rule.code for rule in page.rules])
        return page

    def submit_edit(self, task_id: str, form: TaskForm) -> EditPage:
        """Persist the submitted fields locally, then forward the edit to the server.

        The durable write happens first and is not guarded: an edit that cannot
        be stored locally must not be reported as saved.
        """
        if not form.name.strip() or not form.url.strip():
            raise ValidationError(
                "Missing required fields: name and url",
                metadata={"task_id": task_id},
            )
        existing = self.store.get_task(task_id)
        if existing is None:
            task = Task.model_validate({"id": task_id, **form.task_fields()})
        else:
            task = Task.model_validate({**existing.model_dump(), **form.task_fields()})
        self.store.save_task(task)
        logger.info("reconcile event=edit_saved task_id=%s", task_id)
        raw = self.transport.submit_form(f"/{task_id}/edit", task_form_to_fields(form))
        return self.prefill_edit(EditPage.model_validate(raw))

    # Delete

    def load_delete(self, task_id: str) -> DeletePage:
        raw = self.transport.get_page(f"/{task_id}/delete")
        return self.prepare_delete(DeletePage.model_validate(raw))

    def prepare_delete(self, page: DeletePage) -> DeletePage:
        page = page.model_copy(deep=True)
        if not page.is_placeholder:
            return page
        durable = self._guarded("read_task", lambda: self.store.get_task(page.task_id), None)
        if durable is not None:
            page = page.model_copy(update=durable.identity())
        return page

    def confirm_delete(self, task_id: str) -> TaskListPage:
        """Delete on the server; the redirected list page prunes the durable copy."""
        raw = self.transport.submit_form(f"/{task_id}/delete", {})
        logger.info("reconcile event=delete_confirmed task_id=%s", task_id)
        return self.reconcile_task_list(TaskListPage.model_validate(raw))

    # Run

    def run_task(self, task_id: str) -> RunOutcome:
        """Run an audit through /api/run and persist the result locally.

        Engine and transport failures propagate before anything is written, so
        the task's previous last_result stays as it was.
        """
        task = self.store.get_task(task_id)
        if task is None:
            task = self._task_from_server(task_id)
        payload = {"url": task.url, **task_engine_options(task)}
        logger.info("client_run event=start task_id=%s url=%s", task_id, task.url)
        raw = self.transport.post_json("/api/run", payload)
        result = build_result(task, raw, result_id=self.id_factory(), date=self.clock())
        self.store.save_result(result)
        self.store.save_task(task.model_copy(update={"last_result": result.summary()}))
        logger.info(
            "client_run event=completed task_id=%s result_id=%s count=%s",
            task_id,
            result.id,
            result.count.model_dump(),
        )
        return RunOutcome(result=result, page=self.load_task_detail(task_id))

    def _task_from_server(self, task_id: str) -> Task:
        page = TaskDetailPage.model_validate(self.transport.get_page(f"/{task_id}"))
        if page.header.is_placeholder or not page.header.url:
            raise NotFoundError(
                "Task is unknown to both the server and the local store",
                metadata={"task_id": task_id},
            )
        task = Task(id=task_id, **page.header.model_dump(include={"name", "url", "standard"}))
        self.store.save_task(task)
        return task

    def _guarded(self, step: str, action: Callable[[], T], fallback: T) -> T:
        try:
            return action()
        except StorageError as exc:
            logger.warning(
                "reconcile event=step_skipped step=%s category=%s reason=%s",
                step,
                exc.category,
                exc,
            )
            return fallback
