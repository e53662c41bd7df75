"""Pydantic models shared by the server, the durable client store and the CLI.

Terms used in this file:
- Task: a named URL plus the audit configuration used to test it.
- Result: one completed audit run, owned by exactly one task.
- Issue: one rule violation reported by the audit engine.
- Summary: the small copy of a result embedded on a task as `last_result`.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IssueType = Literal["error", "warning", "notice"]
ISSUE_TYPES: tuple[IssueType, ...] = ("error", "warning", "notice")

# Rule-set variants accepted by the audit engine.
STANDARDS: tuple[str, ...] = ("WCAG2A", "WCAG2AA", "WCAG2AAA")
DEFAULT_STANDARD = "WCAG2AA"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Issue(BaseModel):
    """One rule violation as reported by the engine."""

    model_config = ConfigDict(extra="ignore")

    code: str = ""
    type: IssueType
    message: str = ""
    context: str | None = None
    selector: str = ""


class IssueCount(BaseModel):
    error: int = Field(default=0, ge=0)
    warning: int = Field(default=0, ge=0)
    notice: int = Field(default=0, ge=0)

    @classmethod
    def tally(cls, issues: Iterable[Issue]) -> IssueCount:
        counts = {issue_type: 0 for issue_type in ISSUE_TYPES}
        for issue in issues:
            counts[issue.type] += 1
        return cls(**counts)

    def total(self) -> int:
        return self.error + self.warning + self.notice


class ResultSummary(BaseModel):
    """Denormalized `last_result` cache carried on a task."""

    id: str | None = None
    date: datetime
    count: IssueCount = Field(default_factory=IssueCount)

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Task(BaseModel):
    """Canonical task record.

    Extra keys are kept so a durable record round-trips unchanged through
    export and import even when it carries fields this version does not know.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    name: str = ""
    url: str = ""
    standard: str = ""
    ignore: list[str] = Field(default_factory=list)
    timeout: int | None = None
    wait: int | None = None
    actions: list[str] = Field(default_factory=list)
    username: str | None = None
    password: str | None = None
    headers: dict[str, str] | None = None
    hide_elements: str | None = Field(default=None, alias="hideElements")
    last_result: ResultSummary | None = None

    def identity(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url, "standard": self.standard}

    def to_record(self) -> dict[str, Any]:
        """JSON-compatible dict using wire names (`hideElements`)."""
        return self.model_dump(mode="json", by_alias=True)


class Result(BaseModel):
    """One completed audit run.

    `count` must always agree with `results`; records that disagree are rejected.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    task: str = Field(min_length=1)
    url: str = ""
    name: str = ""
    standard: str = ""
    date: datetime
    count: IssueCount = Field(default_factory=IssueCount)
    results: list[Issue] = Field(default_factory=list)
    ignore: list[str] = Field(default_factory=list)

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_count(self) -> Result:
        expected = IssueCount.tally(self.results)
        if expected != self.count:
            raise ValueError(
                f"count {self.count.model_dump()} does not match issues {expected.model_dump()}"
            )
        return self

    def summary(self) -> ResultSummary:
        return ResultSummary(id=self.id, date=self.date, count=self.count.model_copy())

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TaskForm(BaseModel):
    """Flat task fields as submitted through the create/edit forms."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    url: str = ""
    standard: str = DEFAULT_STANDARD
    ignore: list[str] = Field(default_factory=list)
    timeout: int | None = None
    wait: int | None = None
    actions: list[str] = Field(default_factory=list)
    username: str | None = None
    password: str | None = None
    headers: dict[str, str] | None = None
    hide_elements: str | None = Field(default=None, alias="hideElements")

    @classmethod
    def from_task(cls, task: Task) -> TaskForm:
        return cls.model_validate(task.model_dump(include=set(cls.model_fields)))

    def task_fields(self) -> dict[str, Any]:
        """Fields keyed by Python attribute name, suitable for `Task.model_copy(update=...)`."""
        return self.model_dump()


def simplify_url(url: str) -> str:
    """Display form of a URL: scheme and trailing slash removed."""
    simplified = url.strip()
    for prefix in ("https://", "http://"):
        if simplified.lower().startswith(prefix):
            simplified = simplified[len(prefix) :]
            break
    return simplified.removesuffix("/")
