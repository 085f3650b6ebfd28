"""
Background task scheduling for the Vultr orchestration system.

Status polls, destruction polls and delayed renders are started through the
`TaskScheduler` so they can be observed, drained and cancelled.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..utils.clock import Clock
from ..utils.logging import get_logger

logger = get_logger(__name__)


class TaskType(Enum):
    """Types of background tasks."""

    STATUS_POLL = "status_poll"
    DESTRUCTION_POLL = "destruction_poll"
    SNAPSHOT_POLL = "snapshot_poll"
    RENDER = "render"


@dataclass(eq=False)
class Task:
    """A tracked background task."""

    task_type: TaskType
    instance_id: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    handle: asyncio.Task | None = None

    @property
    def name(self) -> str:
        if self.instance_id:
            return f"{self.task_type.value}:{self.instance_id}"
        return self.task_type.value

    def done(self) -> bool:
        return self.handle is None or self.handle.done()


class TaskScheduler:
    """Tracks asyncio tasks started on behalf of the orchestrator."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or Clock()
        self._tasks: set[Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        task_type: TaskType,
        coro: Awaitable[Any],
        instance_id: str | None = None,
        **metadata: Any,
    ) -> Task:
        """Run a coroutine in the background and track it until it finishes."""
        task = Task(
            task_type=task_type,
            instance_id=instance_id,
            created_at=self.clock.now(),
            metadata=metadata,
        )
        task.handle = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.handle.add_done_callback(lambda handle: self._finished(task, handle))
        logger.debug(f"Scheduled task: {task.name}")
        return task

    def call_later(
        self,
        delay: float,
        task_type: TaskType,
        factory: Callable[[], Awaitable[Any]],
        instance_id: str | None = None,
    ) -> Task:
        """Spawn factory() after sleeping delay seconds on the scheduler clock."""

        async def delayed() -> Any:
            await self.clock.sleep(delay)
            return await factory()

        return self.spawn(task_type, delayed(), instance_id=instance_id, delay=delay)

    def _finished(self, task: Task, handle: asyncio.Future) -> None:
        self._tasks.discard(task)
        if handle.cancelled():
            logger.debug(f"Task cancelled: {task.name}")
            return
        error = handle.exception()
        if error is not None:
            logger.error(f"❌ Task {task.name} failed: {error!r}")
        else:
            logger.debug(f"Task completed: {task.name}")

    def active_tasks(self, task_type: TaskType | None = None) -> list[Task]:
        return [
            t
            for t in self._tasks
            if not t.done() and (task_type is None or t.task_type is task_type)
        ]

    def is_active(self, task_type: TaskType, instance_id: str | None = None) -> bool:
        return any(
            t.instance_id == instance_id for t in self.active_tasks(task_type)
        )

    async def drain(self) -> None:
        """Wait until every tracked task, including ones spawned meanwhile, is done."""
        while True:
            pending = [t.handle for t in self._tasks if t.handle is not None]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
            # Let done callbacks run before the next check
            await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to unwind."""
        handles = [t.handle for t in self._tasks if t.handle is not None]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        logger.info(f"Cancelled {len(handles)} background task(s)")
