"""Ephemeral Task Store: process-memory task and result storage.

The store is deliberately volatile. It is built when the server starts,
injected into request handlers through `app.state`, and emptied at shutdown,
so every restart looks like a server with amnesia.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from .errors import NotFoundError, ValidationError
from .models import DEFAULT_STANDARD, Result, Task
from .runner import AuditRunner

logger = logging.getLogger(__name__)

# Only these keys are copied by `edit`; anything else in the payload is dropped.
EDITABLE_FIELDS: tuple[str, ...] = (
    "name",
    "url",
    "standard",
    "ignore",
    "timeout",
    "wait",
    "actions",
    "username",
    "password",
    "headers",
    "hide_elements",
)

_WIRE_NAMES = {"hideElements": "hide_elements"}


class EphemeralTaskStore:
    """Thread-safe in-memory mapping of task id to Task and to its Results."""

    def __init__(
        self,
        runner: AuditRunner,
        *,
        default_standard: str = DEFAULT_STANDARD,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.runner = runner
        self.default_standard = default_standard
        self.id_factory = id_factory or (lambda: uuid4().hex)
        # Lock guards both maps; values are always replaced as whole records.
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._results: dict[str, list[Result]] = {}

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError("Task not found", metadata={"task_id": task_id})
            return task.model_copy(deep=True)

    def list_tasks(self) -> list[Task]:
        with self._lock:
            return [task.model_copy(deep=True) for task in self._tasks.values()]

    def create(self, fields: Mapping[str, Any]) -> Task:
        name = str(fields.get("name") or "").strip()
        url = str(fields.get("url") or "").strip()
        if not name or not url:
            raise ValidationError(
                "Missing required fields: name and url",
                metadata={"name": bool(name), "url": bool(url)},
            )
        known = _known_fields(fields)
        known.update(name=name, url=url, standard=known.get("standard") or self.default_standard)
        task = Task(id=self.id_factory(), **known)
        with self._lock:
            self._tasks[task.id] = task
            self._results[task.id] = []
        logger.info("task_store event=created task_id=%s url=%s", task.id, task.url)
        return task.model_copy(deep=True)

    def edit(self, task_id: str, fields: Mapping[str, Any]) -> Task:
        updates = _known_fields(fields)
        for key in ("name", "url"):
            if key in updates:
                updates[key] = str(updates[key] or "").strip()
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError("Task not found", metadata={"task_id": task_id})
            updated = Task.model_validate({**current.model_dump(), **updates})
            if not updated.name or not updated.url:
                raise ValidationError(
                    "Missing required fields: name and url",
                    metadata={"task_id": task_id, "name": bool(updated.name), "url": bool(updated.url)},
                )
            self._tasks[task_id] = updated
        logger.info(
            "task_store event=edited task_id=%s fields=%s",
            task_id,
            sorted(updates),
        )
        return updated.model_copy(deep=True)

    def remove(self, task_id: str) -> None:
        with self._lock:
            existed = self._tasks.pop(task_id, None) is not None
            self._results.pop(task_id, None)
        logger.info("task_store event=removed task_id=%s existed=%s", task_id, existed)

    async def run(self, task_id: str) -> Result:
        task = self.get(task_id)
        result = await self.runner.run(task)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                logger.warning(
                    "task_store event=run_discarded task_id=%s result_id=%s",
                    task_id,
                    result.id,
                )
                raise NotFoundError("Task was removed during the run", metadata={"task_id": task_id})
            self._results[task_id] = [*self._results.get(task_id, []), result]
            self._tasks[task_id] = current.model_copy(update={"last_result": result.summary()})
        return result.model_copy(deep=True)

    def list_results(self, task_id: str) -> list[Result]:
        """Results for a task, newest first."""
        with self._lock:
            results = self._results.get(task_id)
            if results is None:
                raise NotFoundError("Task not found", metadata={"task_id": task_id})
            return [result.model_copy(deep=True) for result in reversed(results)]

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()
            self._results.clear()


def _known_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    normalized = {_WIRE_NAMES.get(key, key): value for key, value in fields.items()}
    return {key: normalized[key] for key in EDITABLE_FIELDS if key in normalized}
