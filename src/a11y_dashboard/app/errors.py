"""Error taxonomy shared by the server, the client and the CLI."""

from __future__ import annotations

from typing import Any


class DashboardError(RuntimeError):
    """Base error for dashboard components. Carries metadata for structured logging."""

    category: str = "runtime"

    def __init__(self, message: str, *, metadata: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.metadata = metadata or {}


class ValidationError(DashboardError):
    """Raised when a task is created, edited or run without its required fields."""

    category = "validation"


class NotFoundError(DashboardError):
    """Raised when an operation names an unknown task or result id."""

    category = "not_found"


class EngineError(DashboardError):
    """Raised when the audit engine could not produce a report."""

    category = "engine"


class StorageError(DashboardError):
    """Raised when the durable store could not complete a read or write."""

    category = "storage"


class TransactionError(StorageError):
    """Raised when a multi-record durable write was rolled back."""

    category = "transaction"


class SerializationError(DashboardError):
    """Raised when an import document cannot be parsed."""

    category = "serialization"


class TransportError(DashboardError):
    """Raised when the dashboard server could not be reached or answered unexpectedly."""

    category = "transport"
