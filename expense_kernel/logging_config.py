"""
expense_kernel.logging_config -- JSON log lines for the approval workflow.

Responsibility:
    Render every record under the ``expense_kernel`` logger as one JSON
    object whose leading fields place it in the workflow: the expense, the
    approval step, and the acting user.

Architecture position:
    Kernel, importable from every layer.  Services log event names
    (``approval_decision_recorded``, ``expense_step_advanced``,
    ``expense_finalized``, ``notification_failed``) with structured
    ``extra``.  ``ExpenseApprovalEngine`` binds the expense and the actor
    for the length of one operation so nested log calls need not repeat
    them.

Invariants enforced:
    - One line per record, always valid JSON.
    - ``expense_id``, ``step_index`` and ``actor_id`` are present on every
      line, null when unknown.  A value passed in ``extra`` beats the bound
      one.
    - Only ``expense_id`` and ``actor_id`` can be bound; the step is always
      stated by the caller.
    - Errors attached with ``exc_info`` are rendered under ``error`` with
      their ``code`` and structured attributes.

Failure modes:
    - Values JSON cannot encode are rendered with ``str()``; formatting
      never raises.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TextIO

LOGGER_NAMESPACE = "expense_kernel"

WORKFLOW_FIELDS = ("expense_id", "step_index", "actor_id")

_bound_fields: ContextVar[dict[str, str]] = ContextVar(
    "expense_log_fields", default={},
)


class LogContext:
    """Workflow fields bound to the current thread or task."""

    BINDABLE = ("expense_id", "actor_id")

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[None]:
        """Bind fields for the enclosed block; the previous values return on exit.

        Names outside ``BINDABLE`` and ``None`` values are ignored.
        """
        merged = dict(_bound_fields.get())
        merged.update(
            (name, value) for name, value in fields.items()
            if name in LogContext.BINDABLE and value is not None
        )
        token = _bound_fields.set(merged)
        try:
            yield
        finally:
            _bound_fields.reset(token)

    @staticmethod
    def current() -> dict[str, str]:
        return dict(_bound_fields.get())

    @staticmethod
    def clear() -> None:
        _bound_fields.set({})


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _describe_error(exc: BaseException) -> dict[str, Any]:
    error: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    code = getattr(exc, "code", None)
    if code is not None:
        error["code"] = code
    error.update(
        (name, value) for name, value in vars(exc).items()
        if not name.startswith("_") and name != "code"
    )
    return error


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, workflow fields first."""

    def format(self, record: logging.LogRecord) -> str:
        extra = {
            name: value for name, value in vars(record).items()
            if name not in _RECORD_ATTRIBUTES
        }
        bound = _bound_fields.get()

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in WORKFLOW_FIELDS:
            payload[name] = extra.pop(name, bound.get(name))
        payload.update(extra)

        if record.exc_info and record.exc_info[1] is not None:
            payload["error"] = _describe_error(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_jsonable)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


_configured = False
_configure_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``expense_kernel`` logger.

    Later calls are ignored until ``reset_logging`` runs.  The logger does
    not propagate, so host applications see these lines only through the
    handler given here.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        target = handler or logging.StreamHandler(stream or sys.stderr)
        target.setFormatter(StructuredFormatter())
        root = logging.getLogger(LOGGER_NAMESPACE)
        root.addHandler(target)
        root.setLevel(level)
        root.propagate = False
        _configured = True


def reset_logging() -> None:
    """Detach all handlers and allow ``configure_logging`` again (tests)."""
    global _configured
    with _configure_lock:
        root = logging.getLogger(LOGGER_NAMESPACE)
        for h in list(root.handlers):
            root.removeHandler(h)
        root.setLevel(logging.NOTSET)
        root.propagate = True
        _configured = False
