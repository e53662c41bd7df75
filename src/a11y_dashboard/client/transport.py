"""HTTP transport from the client to the dashboard server.

Every request asks for `application/json`, so page routes answer with their
structured page payloads instead of HTML. Form posts follow the server's
redirect and return the payload of the page it lands on.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from typing import Any, Protocol

from ..app.errors import EngineError, NotFoundError, TransportError, ValidationError

logger = logging.getLogger(__name__)

JSON_ACCEPT = "application/json"


class DashboardTransport(Protocol):
    """Interface the reconciliation engine uses to talk to the server."""

    def get_page(self, path: str) -> dict[str, Any]:
        """GET a page route and return its JSON payload."""

    def submit_form(self, path: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """POST a form, follow the redirect and return the final page payload."""

    def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        """POST a JSON body and return the decoded JSON response."""


def raise_for_status(status: int, body: Any, *, path: str) -> None:
    """Map a non-2xx server answer onto the dashboard error taxonomy."""
    if 200 <= status < 300:
        return
    message = _error_message(body) or f"HTTP {status}"
    metadata = {"path": path, "status": status}
    if status == 400:
        raise ValidationError(message, metadata=metadata)
    if status == 404:
        raise NotFoundError(message, metadata=metadata)
    if status in (500, 502):
        raise EngineError(message, metadata=metadata)
    raise TransportError(message, metadata=metadata)


def _error_message(body: Any) -> str:
    if not isinstance(body, Mapping):
        return ""
    for key in ("error", "detail"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _decode(raw: bytes, *, path: str) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransportError(
            f"Server returned a non-JSON response for {path}",
            metadata={"path": path},
        ) from exc


class UrllibTransport:
    """Production transport using the standard-library HTTP client."""

    def __init__(self, base_url: str, *, timeout_s: float = 120.0) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def get_page(self, path: str) -> dict[str, Any]:
        return self._send("GET", path)

    def submit_form(self, path: str, data: Mapping[str, Any]) -> dict[str, Any]:
        body = urllib.parse.urlencode(data, doseq=True).encode("utf-8")
        return self._send("POST", path, body=body, content_type="application/x-www-form-urlencoded")

    def post_json(self, path: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        body = json.dumps(dict(payload)).encode("utf-8")
        return self._send("POST", path, body=body, content_type="application/json")

    def _send(
        self,
        method: str,
        path: str,
        *,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Accept": JSON_ACCEPT}
        if content_type:
            headers["Content-Type"] = content_type
        request = urllib.request.Request(
            f"{self.base_url}{path}",
            data=body,
            headers=headers,
            method=method,
        )
        logger.debug("transport event=request method=%s path=%s", method, path)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_s) as response:
                decoded = _decode(response.read(), path=path)
        except urllib.error.HTTPError as exc:
            decoded = _decode(exc.read(), path=path) if exc.fp is not None else {}
            raise_for_status(exc.code, decoded, path=path)
            raise
        except (urllib.error.URLError, TimeoutError) as exc:
            raise TransportError(
                f"Could not reach dashboard server at {self.base_url}: {exc}",
                metadata={"path": path},
            ) from exc
        if not isinstance(decoded, dict):
            raise TransportError(f"Unexpected response shape for {path}", metadata={"path": path})
        return decoded
