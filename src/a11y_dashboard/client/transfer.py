"""Export the durable store to a JSON document and import one back."""

from __future__ import annotations

import json
import logging
from datetime import datetime

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..app.errors import SerializationError, StorageError
from ..app.models import Result, Task, utc_now
from .durable import SqliteDurableStore

logger = logging.getLogger(__name__)


class TransferDocument(BaseModel):
    tasks: list[Task] = Field(default_factory=list)
    results: list[Result] = Field(default_factory=list)


class ImportReport(BaseModel):
    tasks: int = 0
    results: int = 0
    rejected: int = 0
    # Results whose task id is neither in the document nor in the store.
    orphaned: int = 0


def export_document(store: SqliteDurableStore) -> TransferDocument:
    return TransferDocument(
        tasks=sorted(store.get_tasks(), key=lambda task: task.id),
        results=sorted(store.get_results(), key=lambda result: result.id),
    )


def dump_document(document: TransferDocument) -> str:
    payload = {
        "tasks": [task.to_record() for task in sorted(document.tasks, key=lambda task: task.id)],
        "results": [result.to_record() for result in sorted(document.results, key=lambda result: result.id)],
    }
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def export_filename(now: datetime | None = None) -> str:
    moment = now or utc_now()
    return f"a11y-dashboard-data-{moment:%Y-%m-%dT%H-%M-%S}-{moment.microsecond // 1000:03d}Z.json"


def import_document(store: SqliteDurableStore, text: str) -> ImportReport:
    """Upsert every record of a document into the store.

    Document-level problems raise SerializationError before anything is
    written. Individual records that fail validation or storage are skipped
    and counted as rejected.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Import file is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SerializationError("Import document must be a JSON object with tasks and results")
    raw_tasks = data.get("tasks", [])
    raw_results = data.get("results", [])
    for key, value in (("tasks", raw_tasks), ("results", raw_results)):
        if not isinstance(value, list):
            raise SerializationError(f"Import document field '{key}' must be a list")

    report = ImportReport()
    imported_ids: set[str] = set()
    for record in raw_tasks:
        try:
            task = Task.model_validate(record)
            store.save_task(task)
        except (PydanticValidationError, StorageError) as exc:
            logger.warning("import event=task_rejected reason=%s", exc)
            report.rejected += 1
            continue
        imported_ids.add(task.id)
        report.tasks += 1

    for record in raw_results:
        try:
            result = Result.model_validate(record)
            orphaned = result.task not in imported_ids and store.get_task(result.task) is None
            store.save_result(result)
        except (PydanticValidationError, StorageError) as exc:
            logger.warning("import event=result_rejected reason=%s", exc)
            report.rejected += 1
            continue
        if orphaned:
            logger.warning("import event=orphaned_result result_id=%s task_id=%s", result.id, result.task)
            report.orphaned += 1
        report.results += 1

    logger.info(
        "import event=completed tasks=%d results=%d rejected=%d orphaned=%d",
        report.tasks,
        report.results,
        report.rejected,
        report.orphaned,
    )
    return report
