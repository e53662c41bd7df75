"""Conversions between task fields and their textarea/text-input form encodings."""

from __future__ import annotations

import re
from typing import Any

from .models import TaskForm

_LINE_SPLIT = re.compile(r"[\r\n]+")


def parse_actions(text: str | None) -> list[str]:
    """One action per line; blank lines dropped, order kept."""
    if not text:
        return []
    return [line.strip() for line in _LINE_SPLIT.split(text) if line.strip()]


def format_actions(actions: list[str] | None) -> str:
    return "\n".join(actions or [])


def parse_headers(text: str | None) -> dict[str, str] | None:
    """Parse `Name: value` lines. Lines without a colon or a name are ignored."""
    if not text:
        return None
    headers: dict[str, str] = {}
    for line in _LINE_SPLIT.split(text):
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            continue
        headers[name.strip()] = value.strip()
    return headers or None


def format_headers(headers: dict[str, str] | None) -> str:
    if not headers:
        return ""
    return "\n".join(f"{name}: {value}" for name, value in headers.items())


def parse_milliseconds(raw: str | int | None) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw or None
    text = raw.strip()
    if not text:
        return None
    try:
        return int(float(text)) or None
    except ValueError:
        return None


def _blank_to_none(raw: str | None) -> str | None:
    if raw is None:
        return None
    return raw if raw.strip() else None


def task_form_from_fields(
    *,
    name: str = "",
    url: str = "",
    standard: str = "",
    ignore: list[str] | None = None,
    timeout: str | None = None,
    wait: str | None = None,
    actions: str | None = None,
    username: str | None = None,
    password: str | None = None,
    headers: str | None = None,
    hide_elements: str | None = None,
    default_standard: str,
) -> TaskForm:
    """Build a TaskForm from raw form strings, the way a browser submits them."""
    return TaskForm(
        name=name.strip(),
        url=url.strip(),
        standard=standard.strip() or default_standard,
        ignore=[rule for rule in (ignore or []) if rule],
        timeout=parse_milliseconds(timeout),
        wait=parse_milliseconds(wait),
        actions=parse_actions(actions),
        username=_blank_to_none(username),
        password=_blank_to_none(password),
        headers=parse_headers(headers),
        hide_elements=_blank_to_none(hide_elements),
    )


def task_form_to_fields(form: TaskForm) -> dict[str, Any]:
    """Inverse of `task_form_from_fields`: the form body a browser would post."""
    return {
        "name": form.name,
        "url": form.url,
        "standard": form.standard,
        "ignore": list(form.ignore),
        "timeout": "" if form.timeout is None else str(form.timeout),
        "wait": "" if form.wait is None else str(form.wait),
        "actions": format_actions(form.actions),
        "username": form.username or "",
        "password": form.password or "",
        "headers": format_headers(form.headers),
        "hideElements": form.hide_elements or "",
    }
