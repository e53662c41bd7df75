"""Adapters for the external accessibility-test engine.

The engine is treated as a black box: a URL plus options in, a list of issues
out. `Pa11yCliEngine` drives the pa11y command line tool, which in turn drives
a headless browser.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import tempfile
from typing import Any, Protocol

from .errors import EngineError

logger = logging.getLogger(__name__)

# pa11y's own default when no timeout option is given.
DEFAULT_ENGINE_TIMEOUT_MS = 30_000


class AuditEngine(Protocol):
    """Interface for accessibility audits."""

    async def analyse(self, url: str, options: dict[str, Any]) -> dict[str, Any]: ...


class Pa11yCliEngine:
    """Run pa11y as a subprocess and return `{"issues": [...]}`."""

    def __init__(self, *, command: str = "pa11y", grace_s: float = 30.0) -> None:
        self.command = command
        self.grace_s = max(0.0, grace_s)

    async def analyse(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        config = _pa11y_config(options)
        timeout_ms = int(options.get("timeout") or DEFAULT_ENGINE_TIMEOUT_MS)
        wait_ms = int(options.get("wait") or 0)
        deadline_s = (timeout_ms + wait_ms) / 1000 + self.grace_s

        fd, config_path = tempfile.mkstemp(prefix="a11y-dashboard-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(config, handle)
            stdout = await self._execute(url, config_path, deadline_s=deadline_s)
        finally:
            os.unlink(config_path)

        try:
            issues = json.loads(stdout) if stdout.strip() else []
        except json.JSONDecodeError as exc:
            raise EngineError(
                "pa11y returned output that is not JSON",
                metadata={"url": url, "output": stdout[:500]},
            ) from exc
        if not isinstance(issues, list):
            raise EngineError("pa11y returned an unexpected report shape", metadata={"url": url})
        return {"issues": issues}

    async def _execute(self, url: str, config_path: str, *, deadline_s: float) -> str:
        args = [
            "--reporter",
            "json",
            "--level",
            "none",
            "--include-notices",
            "--include-warnings",
            "--config",
            config_path,
            url,
        ]
        logger.info("engine_run event=start url=%s command=%s", url, self.command)
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise EngineError(
                f"Audit engine executable not found: {self.command}",
                metadata={"url": url},
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=deadline_s)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise EngineError(
                f"Audit engine timed out after {deadline_s:.0f}s",
                metadata={"url": url},
            ) from exc

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or "unknown engine failure"
            logger.warning(
                "engine_run event=failed url=%s returncode=%s reason=%s",
                url,
                process.returncode,
                message,
            )
            raise EngineError(message, metadata={"url": url, "returncode": process.returncode})

        logger.info("engine_run event=completed url=%s", url)
        return stdout.decode("utf-8", errors="replace")


def _pa11y_config(options: dict[str, Any]) -> dict[str, Any]:
    """Translate engine options into a pa11y JSON config document."""
    config = {
        key: options[key]
        for key in ("standard", "timeout", "wait", "actions", "hideElements", "ignore")
        if key in options
    }
    headers = dict(options.get("headers") or {})
    username = options.get("username")
    password = options.get("password")
    has_authorization = any(name.lower() == "authorization" for name in headers)
    if username and password and not has_authorization:
        token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        headers["Authorization"] = f"Basic {token}"
    if headers:
        config["headers"] = headers
    return config
