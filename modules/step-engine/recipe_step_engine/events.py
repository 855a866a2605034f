"""Explicit observer list for execution progress notifications."""

import inspect
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Event names
EXECUTION_STARTED = "execution:started"
EXECUTION_PLAN_CREATED = "execution:plan-created"
EXECUTION_COMPLETED = "execution:completed"
EXECUTION_FAILED = "execution:failed"
EXECUTION_CANCELLED = "execution:cancelled"
PHASE_STARTED = "phase:started"
PHASE_COMPLETED = "phase:completed"
STEP_STARTED = "step:started"
STEP_SKIPPED = "step:skipped"
STEP_RETRY = "step:retry"
STEP_COMPLETED = "step:completed"
STEP_FAILED = "step:failed"
STEP_CANCELLED = "step:cancelled"

WILDCARD = "*"

Observer = Callable[[str, dict[str, Any]], Awaitable[None] | None]


class EventEmitter:
    """Publishes named events to registered observers.

    Observers receive ``(event_name, payload)``; they may be plain functions
    or coroutine functions. Subscribing to ``"*"`` receives every event.
    An observer raising never affects the publisher: the error is logged.
    """

    def __init__(self) -> None:
        self._observers: dict[str, list[Observer]] = {}

    def on(self, event: str, observer: Observer) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        self._observers.setdefault(event, []).append(observer)
        return lambda: self.off(event, observer)

    def off(self, event: str, observer: Observer) -> bool:
        observers = self._observers.get(event, [])
        if observer in observers:
            observers.remove(observer)
            return True
        return False

    def listener_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(observers) for observers in self._observers.values())
        return len(self._observers.get(event, []))

    async def emit(self, event: str, payload: dict[str, Any] | None = None) -> None:
        """Deliver an event to its observers and to wildcard observers, in registration order."""
        payload = payload or {}
        for observer in [*self._observers.get(event, []), *self._observers.get(WILDCARD, [])]:
            try:
                outcome = observer(event, payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Observer for '{event}' raised: {e}", exc_info=True)
