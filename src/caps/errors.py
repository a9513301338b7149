"""Reconcile error classification.

Failures raised anywhere below a controller fall into exactly one of three
buckets:

- Transient: the operation will succeed later without operator action.
  Carries the delay after which the object must be reconciled again.
- Terminal: the operation cannot succeed as configured. Reconciliation stops
  and a condition is surfaced to the operator.
- Unclassified: any other exception. The manager applies its default backoff.

Classification is attached where the cause is recognized and recovered at the
controller boundary by walking the exception chain (``__cause__`` and
``__context__``), so intermediate layers are free to wrap errors with
``raise ... from err``.
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum


class ReconcileErrorKind(str, Enum):
    """Classification carried by a ReconcileError."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"


def format_delay(seconds: float) -> str:
    """Render a delay the way durations are shown in logs and conditions."""
    if seconds < 1:
        return f"{round(seconds * 1000)}ms"

    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)

    out = ""
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    out += f"{secs:g}s"
    return out


class ReconcileError(Exception):
    """An error carrying a retry classification."""

    def __init__(
        self,
        err: BaseException | str,
        kind: ReconcileErrorKind,
        requeue_after: float | None = None,
    ) -> None:
        self.err = err
        self.kind = kind
        self.requeue_after = requeue_after if kind == ReconcileErrorKind.TRANSIENT else None
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.requeue_after:
            return f"{self.err}. Object will be requeued after {format_delay(self.requeue_after)}"
        return f"reconcile error: {self.err}"

    @property
    def is_transient(self) -> bool:
        return self.kind == ReconcileErrorKind.TRANSIENT

    @property
    def is_terminal(self) -> bool:
        return self.kind == ReconcileErrorKind.TERMINAL


class ServiceError(Exception):
    """Raised when a named sub-reconciler fails. Always chained to the cause."""

    def __init__(self, service: str, action: str, cause: BaseException) -> None:
        self.service = service
        self.action = action
        super().__init__(f"failed to {action} {service}: {cause}")


def with_transient_error(err: BaseException | str, requeue_after: float) -> ReconcileError:
    """Classify err as recoverable after requeue_after seconds."""
    if requeue_after <= 0:
        raise ValueError("requeue_after must be positive for a transient error")
    error = ReconcileError(err, ReconcileErrorKind.TRANSIENT, requeue_after)
    if isinstance(err, BaseException):
        error.__cause__ = err
    return error


def with_terminal_error(err: BaseException | str) -> ReconcileError:
    """Classify err as fatal for the current configuration."""
    error = ReconcileError(err, ReconcileErrorKind.TERMINAL)
    if isinstance(err, BaseException):
        error.__cause__ = err
    return error


def iter_error_chain(exc: BaseException | None) -> Iterator[BaseException]:
    """Yield exc and every exception it was raised from, outermost first."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ if exc.__cause__ is not None else exc.__context__


def find_reconcile_error(exc: BaseException | None) -> ReconcileError | None:
    """Return the outermost ReconcileError in the chain of exc, if any."""
    for err in iter_error_chain(exc):
        if isinstance(err, ReconcileError):
            return err
    return None


def is_transient_error(exc: BaseException | None) -> bool:
    err = find_reconcile_error(exc)
    return err is not None and err.is_transient


def is_terminal_error(exc: BaseException | None) -> bool:
    err = find_reconcile_error(exc)
    return err is not None and err.is_terminal
