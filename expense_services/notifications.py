"""
expense_services.notifications -- Transition notification sinks.

Events are published after the transaction that produced them commits.
Delivery is best effort: a failing sink is logged and skipped, it never
undoes or fails the transition.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from expense_kernel.domain.approval import ExpenseTransitionEvent, NotificationSink
from expense_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class LoggingNotificationSink:
    """Writes every transition to the structured log."""

    def publish(self, event: ExpenseTransitionEvent) -> None:
        logger.info(
            "expense_transition",
            extra={
                "expense_id": str(event.expense_id),
                "from_state": event.from_state.value,
                "to_state": event.to_state.value,
                "from_step": event.from_step,
                "to_step": event.to_step,
                "actor_id": str(event.actor_id),
                "occurred_at": event.occurred_at,
            },
        )


class InMemoryNotificationSink:
    """Collects events in order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[ExpenseTransitionEvent] = []

    def publish(self, event: ExpenseTransitionEvent) -> None:
        with self._lock:
            self.events.append(event)

    def for_expense(self, expense_id) -> list[ExpenseTransitionEvent]:
        with self._lock:
            return [e for e in self.events if e.expense_id == expense_id]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


def publish_all(
    sinks: Iterable[NotificationSink],
    events: Iterable[ExpenseTransitionEvent],
) -> None:
    """Deliver ``events`` to every sink, isolating sink failures."""
    events = tuple(events)
    for sink in sinks:
        for event in events:
            try:
                sink.publish(event)
            except Exception:
                logger.warning(
                    "notification_failed",
                    extra={
                        "sink": type(sink).__name__,
                        "expense_id": str(event.expense_id),
                        "to_state": event.to_state.value,
                    },
                    exc_info=True,
                )
