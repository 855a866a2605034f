"""Cooperative cancellation of running executions."""

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field
from enum import Enum

from .events import EXECUTION_CANCELLED
from .events import EventEmitter
from .tools import Tool

logger = logging.getLogger(__name__)


class CancellationStatus(Enum):
    """Cancellation state of a registered execution."""

    NONE = "none"
    REQUESTED = "requested"  # Flag set, running steps finishing
    CANCELLED = "cancelled"  # Execution has returned


@dataclass
class ExecutionHandle:
    """Bookkeeping for one active execution."""

    execution_id: str
    status: CancellationStatus = CancellationStatus.NONE
    running_steps: dict[str, Tool] = field(default_factory=dict)
    cancelled_event: asyncio.Event = field(default_factory=asyncio.Event)


class CancellationManager:
    """Tracks active executions and the tools backing their running steps.

    Cancellation never interrupts an in-flight tool call. It stops the executor
    from dispatching further work, ends retry backoff waits early, and asks
    the tools of still-running steps to clean up.
    """

    def __init__(self, events: EventEmitter | None = None):
        self.events = events or EventEmitter()
        self._executions: dict[str, ExecutionHandle] = {}

    def register_execution(self, execution_id: str) -> ExecutionHandle:
        handle = ExecutionHandle(execution_id)
        self._executions[execution_id] = handle
        return handle

    def complete_execution(self, execution_id: str) -> None:
        """Forget an execution once its executor has returned."""
        handle = self._executions.pop(execution_id, None)
        if handle is not None and handle.status == CancellationStatus.REQUESTED:
            handle.status = CancellationStatus.CANCELLED

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._executions

    def is_cancelled(self, execution_id: str | None) -> bool:
        if execution_id is None:
            return False
        handle = self._executions.get(execution_id)
        return handle is not None and handle.status != CancellationStatus.NONE

    def get_status(self, execution_id: str) -> CancellationStatus:
        handle = self._executions.get(execution_id)
        return handle.status if handle is not None else CancellationStatus.NONE

    def get_active_executions(self) -> list[str]:
        return list(self._executions)

    def track_step(self, execution_id: str | None, step_name: str, tool: Tool) -> None:
        if execution_id is None:
            return
        handle = self._executions.get(execution_id)
        if handle is not None:
            handle.running_steps[step_name] = tool

    def untrack_step(self, execution_id: str | None, step_name: str) -> None:
        if execution_id is None:
            return
        handle = self._executions.get(execution_id)
        if handle is not None:
            handle.running_steps.pop(step_name, None)

    async def wait_for_cancellation(self, execution_id: str | None, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True early if the execution gets cancelled."""
        handle = self._executions.get(execution_id) if execution_id is not None else None
        if handle is None:
            await asyncio.sleep(timeout)
            return False
        try:
            await asyncio.wait_for(handle.cancelled_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation. Returns False for unknown or already cancelled executions."""
        handle = self._executions.get(execution_id)
        if handle is None or handle.status != CancellationStatus.NONE:
            return False

        handle.status = CancellationStatus.REQUESTED
        handle.cancelled_event.set()
        running = dict(handle.running_steps)
        logger.info(f"Cancelling execution {execution_id} ({len(running)} running step(s))")

        for step_name, tool in running.items():
            try:
                await tool.cleanup()
            except Exception as e:
                logger.warning(f"Cleanup of step '{step_name}' failed during cancellation: {e}", exc_info=True)

        await self.events.emit(
            EXECUTION_CANCELLED,
            {"execution_id": execution_id, "running_steps": list(running)},
        )
        return True

    async def cancel_all_executions(self) -> int:
        """Cancel every active execution. Returns how many were cancelled."""
        cancelled = 0
        for execution_id in list(self._executions):
            if await self.cancel_execution(execution_id):
                cancelled += 1
        return cancelled
