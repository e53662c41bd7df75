from __future__ import annotations

import itertools
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from a11y_dashboard.app.errors import EngineError
from a11y_dashboard.app.settings import Settings
from a11y_dashboard.client.durable import SqliteDurableStore
from a11y_dashboard.client.reconcile import ReconciliationEngine
from a11y_dashboard.client.transport import raise_for_status
from a11y_dashboard.main import create_app


def issue(
    issue_type: str,
    code: str = "WCAG2AA.Principle1.Guideline1_1.1_1_1.H37",
    selector: str = "img",
) -> dict[str, Any]:
    return {
        "code": code,
        "type": issue_type,
        "message": f"{issue_type} for {code}",
        "context": f"<{selector}>",
        "selector": selector,
    }


class FakeAuditEngine:
    """Test-only engine double: records calls and returns a canned report."""

    def __init__(self, issues: list[dict[str, Any]] | None = None) -> None:
        self.issues = issues if issues is not None else [issue("error"), issue("error"), issue("warning")]
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failure: str | None = None

    async def analyse(self, url: str, options: Mapping[str, Any]) -> dict[str, Any]:
        self.calls.append((url, dict(options)))
        if self.failure:
            raise EngineError(self.failure, metadata={"url": url})
        return {"issues": [dict(item) if isinstance(item, Mapping) else item for item in self.issues]}


class SteppingClock:
    """Deterministic clock: each call is one minute after the previous one."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(minutes=1)
        return value


class TestClientTransport:
    """In-process transport that sends client requests through FastAPI's TestClient."""

    __test__ = False

    def __init__(self, client: TestClient) -> None:
        self.client = client
        self.headers = {"Accept": "application/json"}

    def get_page(self, path: str) -> dict[str, Any]:
        return self._decode(path, self.client.get(path, headers=self.headers))

    def submit_form(self, path: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return self._decode(path, self.client.post(path, data=dict(data), headers=self.headers))

    def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return self._decode(path, self.client.post(path, json=dict(payload), headers=self.headers))

    @staticmethod
    def _decode(path: str, response: Any) -> dict[str, Any]:
        body = response.json()
        raise_for_status(response.status_code, body, path=path)
        return body


@pytest.fixture
def engine() -> FakeAuditEngine:
    return FakeAuditEngine()


@pytest.fixture
def settings() -> Settings:
    return Settings(app_name="a11y-dashboard-test", readonly=False, noindex=True)


@pytest.fixture
def client(engine: FakeAuditEngine, settings: Settings) -> Iterator[TestClient]:
    app = create_app(engine=engine, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def durable(tmp_path: Path) -> SqliteDurableStore:
    return SqliteDurableStore(tmp_path / "durable.sqlite3")


@pytest.fixture
def reconciler(client: TestClient, durable: SqliteDurableStore) -> ReconciliationEngine:
    counter = itertools.count(1)
    return ReconciliationEngine(
        durable,
        TestClientTransport(client),
        id_factory=lambda: f"result-{next(counter)}",
        clock=SteppingClock(),
    )
