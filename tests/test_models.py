from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from a11y_dashboard.app.forms import (
    parse_actions,
    parse_headers,
    parse_milliseconds,
    task_form_from_fields,
    task_form_to_fields,
)
from a11y_dashboard.app.models import DEFAULT_STANDARD, Issue, IssueCount, Result, Task, simplify_url
from a11y_dashboard.app.settings import Settings


def test_issue_count_tally_matches_issue_types() -> None:
    issues = [
        Issue(code="a", type="error"),
        Issue(code="b", type="error"),
        Issue(code="c", type="notice"),
    ]
    count = IssueCount.tally(issues)
    assert count.model_dump() == {"error": 2, "warning": 0, "notice": 1}
    assert count.total() == len(issues)


def test_result_rejects_count_that_disagrees_with_issues() -> None:
    with pytest.raises(ValidationError):
        Result(
            id="r1",
            task="t1",
            date=datetime(2024, 1, 1, tzinfo=UTC),
            count=IssueCount(error=3),
            results=[Issue(code="a", type="error")],
        )


def test_naive_result_dates_are_read_as_utc() -> None:
    result = Result(id="r1", task="t1", date=datetime(2024, 1, 1, 9, 30))
    assert result.date.tzinfo is UTC
    assert result.to_record()["date"].startswith("2024-01-01T09:30:00")


def test_task_record_uses_wire_name_and_keeps_unknown_fields() -> None:
    task = Task.model_validate({"id": "t1", "name": "Home", "hideElements": ".ad", "custom": 7})
    record = task.to_record()
    assert record["hideElements"] == ".ad"
    assert "hide_elements" not in record
    assert record["custom"] == 7
    assert Task.model_validate(record) == task


def test_task_requires_non_empty_id() -> None:
    with pytest.raises(ValidationError):
        Task(id="")


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://example.com/", "example.com"),
        ("http://example.com/path/", "example.com/path"),
        ("example.com", "example.com"),
    ],
)
def test_simplify_url(url: str, expected: str) -> None:
    assert simplify_url(url) == expected


def test_form_helpers_parse_browser_encodings() -> None:
    assert parse_actions("click element #a\n\r\nwait for url to be /done\n") == [
        "click element #a",
        "wait for url to be /done",
    ]
    assert parse_headers("Cookie: a=b\nno-colon\nX-Test:  1 ") == {"Cookie": "a=b", "X-Test": "1"}
    assert parse_headers("") is None
    assert parse_milliseconds("") is None
    assert parse_milliseconds("0") is None
    assert parse_milliseconds("1500") == 1500


def test_task_form_fields_survive_browser_encoding() -> None:
    form = task_form_from_fields(
        name=" Example ",
        url="https://example.com",
        standard="",
        ignore=["rule1"],
        timeout="30000",
        actions="click element #go\nwait for path to be /next",
        headers="Cookie: session=1",
        hide_elements=".banner",
        default_standard="WCAG2AA",
    )
    assert form.name == "Example"
    assert form.standard == "WCAG2AA"
    assert form.timeout == 30000
    fields = task_form_to_fields(form)
    assert fields["hideElements"] == ".banner"
    rebuilt = task_form_from_fields(
        name=fields["name"],
        url=fields["url"],
        standard=fields["standard"],
        ignore=fields["ignore"],
        timeout=fields["timeout"],
        wait=fields["wait"],
        actions=fields["actions"],
        username=fields["username"],
        password=fields["password"],
        headers=fields["headers"],
        hide_elements=fields["hideElements"],
        default_standard="WCAG2AAA",
    )
    assert rebuilt == form


def test_settings_default_standard_and_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("A11Y_DASHBOARD_DEFAULT_STANDARD", raising=False)
    assert Settings().default_standard == DEFAULT_STANDARD == "WCAG2AA"

    monkeypatch.setenv("A11Y_DASHBOARD_DEFAULT_STANDARD", "WCAG2A")
    monkeypatch.setenv("A11Y_DASHBOARD_ENGINE_GRACE_S", "1.5")
    overridden = Settings()

    assert overridden.default_standard == "WCAG2A"
    assert overridden.engine_grace_s == 1.5
