"""Audit Runner: task fields in, normalized Result out.

The runner holds no state. It forwards only the task fields that carry a value
(absence means "engine default"), calls the engine once and tallies the issues.
Engine failures propagate unchanged; retrying is the caller's decision.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from .engine import AuditEngine
from .errors import ValidationError
from .models import ISSUE_TYPES, Issue, IssueCount, Result, Task, utc_now

logger = logging.getLogger(__name__)


def build_engine_options(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Engine options from task-like fields, skipping empty values.

    Accepts both `hideElements` and `hide_elements`.
    """
    options: dict[str, Any] = {}
    if fields.get("standard"):
        options["standard"] = fields["standard"]
    for key in ("timeout", "wait"):
        value = fields.get(key)
        if value:
            options[key] = int(value)
    actions = fields.get("actions")
    if isinstance(actions, list) and actions:
        options["actions"] = list(actions)
    for key in ("username", "password"):
        if fields.get(key):
            options[key] = fields[key]
    hide_elements = fields.get("hideElements") or fields.get("hide_elements")
    if hide_elements:
        options["hideElements"] = hide_elements
    if fields.get("headers"):
        options["headers"] = dict(fields["headers"])
    ignore = fields.get("ignore")
    if isinstance(ignore, list) and ignore:
        options["ignore"] = list(ignore)
    return options


def task_engine_options(task: Task) -> dict[str, Any]:
    return build_engine_options(task.model_dump())


def normalize_issues(raw: Mapping[str, Any]) -> list[Issue]:
    """Keep the issue fields the dashboard displays; drop unknown issue types."""
    issues: list[Issue] = []
    for item in raw.get("issues") or []:
        if not isinstance(item, Mapping) or item.get("type") not in ISSUE_TYPES:
            logger.warning("issue_skipped reason=unknown_type type=%s", _type_of(item))
            continue
        try:
            issues.append(Issue.model_validate(item))
        except PydanticValidationError as exc:
            logger.warning("issue_skipped reason=invalid error=%s", exc)
    return issues


def build_result(
    task: Task,
    raw: Mapping[str, Any],
    *,
    result_id: str,
    date: datetime,
) -> Result:
    """Construct a Result from a raw engine report.

    The task's identity and ignore set are snapshotted so history stays
    accurate if the task is edited later.
    """
    issues = normalize_issues(raw)
    return Result(
        id=result_id,
        task=task.id,
        url=task.url,
        name=task.name,
        standard=task.standard,
        date=date,
        count=IssueCount.tally(issues),
        results=issues,
        ignore=list(task.ignore),
    )


class AuditRunner:
    """Invoke the engine for one task and normalize its output."""

    def __init__(
        self,
        engine: AuditEngine,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.id_factory = id_factory or (lambda: str(uuid4()))
        self.clock = clock

    async def run(self, task: Task) -> Result:
        if not task.url:
            raise ValidationError("Task has no url to audit", metadata={"task_id": task.id})
        options = task_engine_options(task)
        logger.info(
            "audit_run event=start task_id=%s url=%s options=%s",
            task.id,
            task.url,
            sorted(options),
        )
        raw = await self.engine.analyse(task.url, options)
        result = build_result(task, raw, result_id=self.id_factory(), date=self.clock())
        logger.info(
            "audit_run event=completed task_id=%s result_id=%s count=%s",
            task.id,
            result.id,
            result.count.model_dump(),
        )
        return result


def _type_of(item: Any) -> str:
    if isinstance(item, Mapping):
        return str(item.get("type"))
    return type(item).__name__
