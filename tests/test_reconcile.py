from __future__ import annotations

import itertools
from datetime import UTC, datetime

import pytest
from conftest import FakeAuditEngine, TestClientTransport, issue
from fastapi.testclient import TestClient

from a11y_dashboard.app.errors import EngineError, NotFoundError, StorageError, ValidationError
from a11y_dashboard.app.models import Issue, IssueCount, Result, ResultSummary, Task, TaskForm
from a11y_dashboard.app.views import TaskCard, TaskListPage
from a11y_dashboard.client.durable import SqliteDurableStore
from a11y_dashboard.client.reconcile import ReconciliationEngine


def _restart_server(client: TestClient) -> None:
    client.app.state.store.clear()


def _result(result_id: str, task_id: str, day: int, issues: list[Issue]) -> Result:
    return Result(
        id=result_id,
        task=task_id,
        date=datetime(2024, 3, day, tzinfo=UTC),
        count=IssueCount.tally(issues),
        results=issues,
        ignore=["rule1"],
    )


def _create(reconciler: ReconciliationEngine, name: str = "Home", url: str = "https://example.com") -> str:
    page = reconciler.create_task(TaskForm(name=name, url=url, ignore=["rule1"]))
    return page.header.id


def test_list_shows_synthetic_card_for_task_the_server_forgot(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    durable.save_task(
        Task(
            id="T1",
            name="Home",
            url="https://example.com",
            standard="WCAG2AA",
            last_result=ResultSummary(
                date=datetime(2024, 1, 1, tzinfo=UTC),
                count=IssueCount(error=2, warning=1, notice=0),
            ),
        )
    )

    page = reconciler.load_task_list()

    assert len(page.cards) == 1
    card = page.cards[0]
    assert card.id == "T1"
    assert card.synthetic is True
    assert card.last_result.count.model_dump() == {"error": 2, "warning": 1, "notice": 0}
    assert card.no_results is False


def test_deleted_marker_prunes_tasks_missing_from_server(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    issues = [Issue(code="H37", type="error")]
    for task_id in ("A", "B"):
        durable.save_task(Task(id=task_id, name=task_id, url=f"https://{task_id.lower()}.example"))
        durable.save_result(_result(f"{task_id}-r1", task_id, 1, issues))
    page = TaskListPage(cards=[TaskCard(id="A", name="A", url="https://a.example", standard="WCAG2AA")], deleted=True)

    reconciled = reconciler.reconcile_task_list(page)

    assert [task.id for task in durable.get_tasks()] == ["A"]
    assert durable.get_results_by_task("B") == []
    assert [result.task for result in durable.get_results()] == ["A"]
    assert [card.id for card in reconciled.cards] == ["A"]


def test_without_deleted_marker_membership_never_shrinks(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    durable.save_task(Task(id="B", name="B", url="https://b.example"))

    page = reconciler.reconcile_task_list(TaskListPage(cards=[TaskCard(id="A", name="A")]))

    assert {task.id for task in durable.get_tasks()} == {"A", "B"}
    assert [card.id for card in page.cards] == ["A", "B"]
    assert page.cards[1].synthetic is True
    assert page.cards[1].no_results is True


def test_rendered_identity_wins_and_durable_stats_are_kept(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    summary = ResultSummary(id="r9", date=datetime(2024, 1, 2, tzinfo=UTC), count=IssueCount(notice=4))
    durable.save_task(Task(id="A", name="Old", url="https://old.example", ignore=["rule1"], last_result=summary))
    durable.save_result(
        _result("r9", "A", 2, [Issue(code="n", type="notice") for _ in range(4)])
    )

    page = reconciler.reconcile_task_list(
        TaskListPage(cards=[TaskCard(id="A", name="New", url="https://new.example", standard="WCAG2AAA")])
    )

    stored = durable.get_task("A")
    assert (stored.name, stored.url, stored.standard) == ("New", "https://new.example", "WCAG2AAA")
    assert stored.ignore == ["rule1"]
    assert stored.last_result == summary
    card = page.cards[0]
    assert card.last_result == summary
    assert card.run_count == 1


def test_storage_failure_leaves_list_view_untouched(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken(*args: object, **kwargs: object) -> None:
        raise StorageError("disk I/O error")

    monkeypatch.setattr(durable, "get_tasks", broken)
    monkeypatch.setattr(durable, "get_task", broken)
    page = TaskListPage(cards=[TaskCard(id="A", name="A", url="https://a.example")], deleted=True)

    reconciled = reconciler.reconcile_task_list(page)

    assert reconciled.cards == page.cards


def test_edit_round_trip_survives_server_restart(
    reconciler: ReconciliationEngine, client: TestClient
) -> None:
    task_id = _create(reconciler)
    form = TaskForm(name="Example", url="https://example.com", standard="WCAG2AA", ignore=["rule1"])

    reconciler.submit_edit(task_id, form)
    reloaded = reconciler.load_edit(task_id).form
    assert reloaded == form

    _restart_server(client)
    after_restart = reconciler.load_edit(task_id)
    assert after_restart.form == form
    assert after_restart.placeholder is False


def test_edit_on_unknown_server_task_still_saves_locally(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    form = TaskForm(name="Kept", url="https://kept.example", actions=["click element #a"])

    page = reconciler.submit_edit("ghost", form)

    assert page.edited is True
    assert page.form == form
    stored = durable.get_task("ghost")
    assert stored is not None
    assert stored.actions == ["click element #a"]


def test_edit_rule_toggles_come_from_durable_results_after_restart(
    reconciler: ReconciliationEngine, client: TestClient, engine: FakeAuditEngine
) -> None:
    engine.issues = [issue("error", code="H37"), issue("warning", code="F65")]
    task_id = _create(reconciler)
    reconciler.run_task(task_id)
    _restart_server(client)

    page = reconciler.load_edit(task_id)

    assert page.placeholder is False
    assert [(rule.code, rule.ignored) for rule in page.rules] == [
        ("F65", False),
        ("H37", False),
        ("rule1", True),
    ]


def test_edit_without_url_is_rejected_before_any_write(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    task_id = _create(reconciler)

    with pytest.raises(ValidationError):
        reconciler.submit_edit(task_id, TaskForm(name="Home", url=" "))

    assert durable.get_task(task_id).url == "https://example.com"
    assert reconciler.load_edit(task_id).form.url == "https://example.com"


def test_run_persists_result_and_last_result(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    task_id = _create(reconciler)

    outcome = reconciler.run_task(task_id)

    assert outcome.result.count.model_dump() == {"error": 2, "warning": 1, "notice": 0}
    assert outcome.result.ignore == ["rule1"]
    stored = durable.get_results_by_task(task_id)
    assert [result.id for result in stored] == [outcome.result.id]
    task = durable.get_task(task_id)
    assert task.last_result.count == outcome.result.count
    assert task.last_result.id == outcome.result.id
    assert outcome.page.source == "durable"
    assert outcome.page.last_run.id == outcome.result.id


def test_client_run_after_server_run_keeps_new_last_result(
    client: TestClient, durable: SqliteDurableStore
) -> None:
    counter = itertools.count(1)
    reconciler = ReconciliationEngine(
        durable, TestClientTransport(client), id_factory=lambda: f"result-{next(counter)}"
    )
    task_id = _create(reconciler)
    client.post(f"/{task_id}/run")
    server_run = reconciler.load_task_detail(task_id).last_run
    assert durable.get_task(task_id).last_result.id == server_run.id

    outcome = reconciler.run_task(task_id)

    assert outcome.result.id == "result-1"
    assert durable.get_task(task_id).last_result.id == "result-1"
    reconciler.load_task_list()
    assert durable.get_task(task_id).last_result.id == "result-1"


def test_older_rendered_last_result_does_not_replace_durable_one(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    newer = ResultSummary(id="new", date=datetime(2024, 3, 2, tzinfo=UTC))
    older = ResultSummary(id="old", date=datetime(2024, 3, 1, tzinfo=UTC))
    durable.save_task(Task(id="A", name="A", url="https://a.example", last_result=newer))

    reconciler.reconcile_task_list(TaskListPage(cards=[TaskCard(id="A", name="A", last_result=older)]))
    assert durable.get_task("A").last_result == newer

    newest = ResultSummary(id="newest", date=datetime(2024, 3, 3, tzinfo=UTC))
    reconciler.reconcile_task_list(TaskListPage(cards=[TaskCard(id="A", name="A", last_result=newest)]))
    assert durable.get_task("A").last_result == newest


def test_run_sends_task_options_to_api(
    reconciler: ReconciliationEngine, engine: FakeAuditEngine
) -> None:
    task_id = _create(reconciler)
    reconciler.submit_edit(
        task_id,
        TaskForm(name="Home", url="https://example.com", standard="WCAG2A", wait=250, hide_elements=".ad"),
    )

    reconciler.run_task(task_id)

    assert engine.calls[-1] == ("https://example.com", {"standard": "WCAG2A", "wait": 250, "hideElements": ".ad"})


def test_failed_run_changes_nothing(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore, engine: FakeAuditEngine
) -> None:
    task_id = _create(reconciler)
    first = reconciler.run_task(task_id).result
    engine.failure = "net::ERR_TIMED_OUT"

    with pytest.raises(EngineError, match="ERR_TIMED_OUT"):
        reconciler.run_task(task_id)

    assert [result.id for result in durable.get_results_by_task(task_id)] == [first.id]
    assert durable.get_task(task_id).last_result.id == first.id


def test_run_of_task_unknown_everywhere_raises_not_found(reconciler: ReconciliationEngine) -> None:
    with pytest.raises(NotFoundError):
        reconciler.run_task("ghost")


def test_detail_page_rebuilt_from_durable_after_restart(
    reconciler: ReconciliationEngine, client: TestClient, engine: FakeAuditEngine
) -> None:
    task_id = _create(reconciler)
    reconciler.run_task(task_id)
    engine.issues = [
        issue("error", code="H37", selector="img.a"),
        issue("error", code="H37", selector="img.b"),
        issue("error", code="F65", selector="img.c"),
        issue("notice", code="G18", selector="p"),
    ]
    latest = reconciler.run_task(task_id).result
    _restart_server(client)

    page = reconciler.load_task_detail(task_id)

    assert page.header.name == "Home"
    assert page.header.url == "https://example.com"
    assert page.source == "durable"
    assert page.last_run.id == latest.id
    assert [entry.result_id for entry in page.history] == [latest.id, page.history[1].result_id]
    assert page.history[0].ordinal == 1
    assert [point.date for point in page.graph] == sorted(point.date for point in page.graph)
    errors = page.breakdown.groups["error"]
    assert [(group.code, group.size) for group in errors] == [("H37", 2), ("F65", 1)]
    assert errors[0].selectors == ["img.a", "img.b"]
    assert page.breakdown.ignored_rules == 1


def test_detail_page_with_server_results_is_not_downgraded(
    reconciler: ReconciliationEngine, client: TestClient, durable: SqliteDurableStore
) -> None:
    task_id = _create(reconciler)
    client.post(f"/{task_id}/run")
    durable.save_result(_result("old", task_id, 1, []))

    page = reconciler.load_task_detail(task_id)

    assert page.source == "server"
    assert len(page.history) == 1
    assert page.history[0].result_id != "old"


def test_placeholder_detail_without_durable_record_synthesizes_nothing(
    reconciler: ReconciliationEngine, durable: SqliteDurableStore
) -> None:
    page = reconciler.load_task_detail("ghost")

    assert page.header.is_placeholder
    assert page.source == "none"
    assert durable.get_task("ghost") is None


def test_populated_detail_header_is_merged_into_durable_store(
    reconciler: ReconciliationEngine, client: TestClient, durable: SqliteDurableStore
) -> None:
    task_id = client.post(
        "/new",
        data={"name": "Server only", "url": "https://server.example"},
        headers={"Accept": "application/json"},
    ).json()["header"]["id"]
    assert durable.get_task(task_id) is None

    reconciler.load_task_detail(task_id)

    stored = durable.get_task(task_id)
    assert (stored.name, stored.url, stored.standard) == ("Server only", "https://server.example", "WCAG2AA")


def test_delete_page_patched_from_durable_and_cascades(
    reconciler: ReconciliationEngine, client: TestClient, durable: SqliteDurableStore
) -> None:
    keep = _create(reconciler, name="Keep", url="https://keep.example")
    drop = _create(reconciler, name="Drop", url="https://drop.example")
    reconciler.run_task(drop)
    _restart_server(client)

    preview = reconciler.load_delete(drop)
    assert (preview.url, preview.standard) == ("https://drop.example", "WCAG2AA")

    reconciler.confirm_delete(drop)

    assert durable.get_task(drop) is None
    assert durable.get_results_by_task(drop) == []
    # The server forgot both tasks, so the post-delete page prunes the survivor too.
    assert durable.get_task(keep) is None


def test_keyword_filter_matches_any_word(reconciler: ReconciliationEngine) -> None:
    _create(reconciler, name="Docs", url="https://docs.example.com/")
    _create(reconciler, name="Shop", url="https://shop.example.com/")

    page = reconciler.load_task_list(query="  docs!! missing ")

    assert [card.name for card in page.cards] == ["Docs"]
