"""Error types raised by the autorun core."""

from __future__ import annotations


class AutorunError(Exception):
    """Base class for errors surfaced to callers.

    ``message`` is short and safe to show to end users; internal detail is
    kept on the chained ``__cause__`` instead.
    """

    default_message = "Automation run error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AutorunError):
    default_message = "Invalid request"


class PermissionDenied(AutorunError):
    default_message = "Not allowed to modify this run"


class NotFoundError(AutorunError):
    default_message = "Not found"


class ConflictError(AutorunError):
    default_message = "An automation run is already active"


class ConcurrencyConflict(AutorunError):
    """A compare-and-swap lost, yet the row was left open.

    Lost writes are normally dropped silently. This is raised only when the
    row is still non-terminal afterwards; the run worker then fails the run.
    """

    default_message = "Concurrent update"


class StorageError(AutorunError):
    default_message = "Storage unavailable"


class ExecutorFailure(AutorunError):
    """Raised by step executors to report a failed step."""

    default_message = "Step execution failed"


__all__ = [
    "AutorunError",
    "ValidationError",
    "PermissionDenied",
    "NotFoundError",
    "ConflictError",
    "ConcurrencyConflict",
    "StorageError",
    "ExecutorFailure",
]
