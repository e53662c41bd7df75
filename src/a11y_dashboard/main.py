"""FastAPI application wiring for the accessibility dashboard.

Terms used in this file:
- Page payload: the structured model behind an HTML page (see app/views.py).
  Requests that prefer `application/json` receive the payload instead of HTML.
- Ephemeral store: in-memory tasks and results, rebuilt empty on every start.
- app.state: holds the audit engine and the ephemeral store for route handlers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from .app.engine import AuditEngine, Pa11yCliEngine
from .app.ephemeral import EphemeralTaskStore
from .app.errors import EngineError, NotFoundError, ValidationError
from .app.forms import parse_actions, task_form_from_fields
from .app.models import Result, Task, TaskForm
from .app.runner import AuditRunner, build_engine_options
from .app.settings import Settings, get_settings
from .app.ui import render_delete, render_edit, render_new_task, render_task_detail, render_task_list
from .app.views import (
    NewTaskPage,
    build_delete_page,
    build_edit_page,
    build_task_detail_page,
    build_task_list_page,
)

logger = logging.getLogger(__name__)


class RunRequest(BaseModel):
    """Request body for POST /api/run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    url: str | None = None
    standard: str | None = None
    timeout: int | None = None
    wait: int | None = None
    actions: list[str] | None = None
    username: str | None = None
    password: str | None = None
    headers: dict[str, str] | None = None
    hide_elements: str | None = Field(default=None, alias="hideElements")
    ignore: list[str] | None = None


def _ensure_runtime_state(app: FastAPI, *, settings: Settings, engine: AuditEngine) -> None:
    if not hasattr(app.state, "engine"):
        app.state.engine = engine
    if not hasattr(app.state, "store"):
        app.state.store = EphemeralTaskStore(
            AuditRunner(app.state.engine),
            default_standard=settings.default_standard,
        )


def _wants_json(request: Request) -> bool:
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept


def create_app(
    *,
    engine: AuditEngine | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass a fake engine; production builds the pa11y subprocess adapter.
    """
    settings = settings_override or get_settings()
    audit_engine = engine or Pa11yCliEngine(
        command=settings.engine_command,
        grace_s=settings.engine_grace_s,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, engine=audit_engine)
        logger.info("dashboard event=startup app_name=%s readonly=%s", settings.app_name, settings.readonly)
        yield
        app.state.store.clear()
        del app.state.store
        logger.info("dashboard event=shutdown app_name=%s", settings.app_name)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    def _get_store(request: Request) -> EphemeralTaskStore:
        # Keep test paths reliable when lifespan is not executed by the client.
        if not hasattr(request.app.state, "store"):
            _ensure_runtime_state(request.app, settings=settings, engine=audit_engine)
        return request.app.state.store

    def _get_engine(request: Request) -> AuditEngine:
        _get_store(request)
        return request.app.state.engine

    def _require_writable() -> None:
        if settings.readonly:
            raise HTTPException(status_code=403, detail="Dashboard is read-only")

    def _submitted_form(
        name: str = Form(""),
        url: str = Form(""),
        standard: str = Form(""),
        ignore: list[str] = Form([]),
        timeout: str = Form(""),
        wait: str = Form(""),
        actions: str = Form(""),
        username: str = Form(""),
        password: str = Form(""),
        headers: str = Form(""),
        hide_elements: str = Form("", alias="hideElements"),
    ) -> TaskForm:
        # Checkboxes and API clients repeat the field; the textarea holds one rule per line.
        rules = list(dict.fromkeys(rule for entry in ignore for rule in parse_actions(entry)))
        return task_form_from_fields(
            name=name,
            url=url,
            standard=standard,
            ignore=rules,
            timeout=timeout,
            wait=wait,
            actions=actions,
            username=username,
            password=password,
            headers=headers,
            hide_elements=hide_elements,
            default_standard=settings.default_standard,
        )

    def _respond(
        request: Request,
        payload: BaseModel,
        render: Callable[..., str],
        *,
        status_code: int = 200,
    ) -> Response:
        if _wants_json(request):
            return JSONResponse(payload.model_dump(mode="json"), status_code=status_code)
        html = render(payload, app_name=settings.app_name, noindex=settings.noindex)
        return HTMLResponse(html, status_code=status_code)

    def _task_or_none(store: EphemeralTaskStore, task_id: str) -> Task | None:
        try:
            return store.get(task_id)
        except NotFoundError:
            return None

    def _results_or_empty(store: EphemeralTaskStore, task_id: str) -> list[Result]:
        try:
            return store.list_results(task_id)
        except NotFoundError:
            return []

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/api/run")
    async def api_run(request: Request, payload: RunRequest | None = None) -> Response:
        if payload is None or not payload.url:
            return JSONResponse({"error": "Missing url"}, status_code=400)
        options = build_engine_options(payload.model_dump(exclude={"url"}))
        audit_engine_ = _get_engine(request)
        logger.info("api_run event=start url=%s options=%s", payload.url, sorted(options))
        try:
            report = await audit_engine_.analyse(payload.url, options)
        except EngineError as exc:
            logger.warning("api_run event=failed url=%s reason=%s", payload.url, exc)
            return JSONResponse({"error": str(exc)}, status_code=500)
        logger.info("api_run event=completed url=%s issues=%d", payload.url, len(report.get("issues", [])))
        return JSONResponse(report)

    @app.get("/")
    def task_list(request: Request) -> Response:
        store = _get_store(request)
        pairs = [(task, len(_results_or_empty(store, task.id))) for task in store.list_tasks()]
        page = build_task_list_page(
            pairs,
            deleted="deleted" in request.query_params,
            readonly=settings.readonly,
        )
        return _respond(request, page, render_task_list)

    @app.get("/new")
    def new_task_form(request: Request, _: None = Depends(_require_writable)) -> Response:
        page = NewTaskPage(form=TaskForm(standard=settings.default_standard))
        return _respond(request, page, render_new_task)

    @app.post("/new")
    def create_task(
        request: Request,
        form: TaskForm = Depends(_submitted_form),
        _: None = Depends(_require_writable),
    ) -> Response:
        store = _get_store(request)
        try:
            task = store.create(form.task_fields())
        except ValidationError as exc:
            page = NewTaskPage(form=form, error=str(exc))
            return _respond(request, page, render_new_task, status_code=400)
        return RedirectResponse(f"/{task.id}?added", status_code=303)

    @app.get("/{task_id}")
    def task_detail(task_id: str, request: Request) -> Response:
        store = _get_store(request)
        page = build_task_detail_page(
            task_id,
            _task_or_none(store, task_id),
            _results_or_empty(store, task_id),
            added="added" in request.query_params,
            running="running" in request.query_params,
            readonly=settings.readonly,
        )
        return _respond(request, page, render_task_detail)

    @app.post("/{task_id}/run")
    async def run_task(
        task_id: str,
        request: Request,
        _: None = Depends(_require_writable),
    ) -> Response:
        store = _get_store(request)
        logger.info("task_run event=start task_id=%s", task_id)
        try:
            result = await store.run(task_id)
        except NotFoundError:
            logger.info("task_run event=not_found task_id=%s", task_id)
            return RedirectResponse(f"/{task_id}", status_code=303)
        except (EngineError, ValidationError) as exc:
            logger.warning("task_run event=failed task_id=%s reason=%s", task_id, exc)
            page = build_task_detail_page(
                task_id,
                _task_or_none(store, task_id),
                _results_or_empty(store, task_id),
                readonly=settings.readonly,
            )
            page.error = f"Failed to run accessibility analysis: {exc}"
            status_code = 400 if isinstance(exc, ValidationError) else 502
            return _respond(request, page, render_task_detail, status_code=status_code)
        logger.info(
            "task_run event=completed task_id=%s result_id=%s count=%s",
            task_id,
            result.id,
            result.count.model_dump(),
        )
        return RedirectResponse(f"/{task_id}?running", status_code=303)

    @app.get("/{task_id}/edit")
    def edit_form(
        task_id: str,
        request: Request,
        _: None = Depends(_require_writable),
    ) -> Response:
        store = _get_store(request)
        page = build_edit_page(
            task_id,
            _task_or_none(store, task_id),
            default_standard=settings.default_standard,
            results=_results_or_empty(store, task_id),
        )
        page.edited = "edited" in request.query_params
        return _respond(request, page, render_edit)

    @app.post("/{task_id}/edit")
    def apply_edit(
        task_id: str,
        request: Request,
        form: TaskForm = Depends(_submitted_form),
        _: None = Depends(_require_writable),
    ) -> Response:
        store = _get_store(request)
        try:
            store.edit(task_id, form.task_fields())
        except NotFoundError:
            # The client keeps its own copy of the edit; nothing to update here.
            logger.info("task_edit event=not_found task_id=%s", task_id)
        except ValidationError as exc:
            logger.info("task_edit event=rejected task_id=%s reason=%s", task_id, exc)
            page = build_edit_page(
                task_id,
                _task_or_none(store, task_id),
                default_standard=settings.default_standard,
                results=_results_or_empty(store, task_id),
                form=form,
            )
            page.error = str(exc)
            return _respond(request, page, render_edit, status_code=400)
        return RedirectResponse(f"/{task_id}/edit?edited", status_code=303)

    @app.get("/{task_id}/delete")
    def delete_form(
        task_id: str,
        request: Request,
        _: None = Depends(_require_writable),
    ) -> Response:
        store = _get_store(request)
        page = build_delete_page(task_id, _task_or_none(store, task_id))
        return _respond(request, page, render_delete)

    @app.post("/{task_id}/delete")
    def delete_task(
        task_id: str,
        request: Request,
        _: None = Depends(_require_writable),
    ) -> Response:
        _get_store(request).remove(task_id)
        return RedirectResponse("/?deleted", status_code=303)

    return app


# Module-level app for `uvicorn a11y_dashboard.main:app`.
app = create_app()
