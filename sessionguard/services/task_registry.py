"""
Task registry for fire-and-forget background work

Every background coroutine (async event handlers, webhook deliveries) is
spawned through the registry so its failure is logged instead of lost, and so
shutdown can wait for in-flight work before cancelling what is left.
"""

import asyncio
from datetime import datetime
from typing import Any, Coroutine, Dict, Optional

import structlog

from sessionguard.utils.date_utils import utc_now

logger = structlog.get_logger(__name__)


class TaskInfo:
    """A tracked task and when it was spawned"""

    def __init__(self, task: asyncio.Task, name: str):
        self.task = task
        self.name = name
        self.created_at: datetime = utc_now()

    def __repr__(self):
        return f"TaskInfo(name={self.name}, done={self.task.done()})"


class TaskRegistry:
    """Registry of supervised background tasks"""

    def __init__(self):
        self._tasks: Dict[str, TaskInfo] = {}
        self._task_counter = 0
        self._shutting_down = False

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` on the running loop and track it until it finishes"""
        if name is None:
            name = f"task_{self._task_counter}"
        self._task_counter += 1

        task = asyncio.get_running_loop().create_task(coro, name=name)
        task_id = f"{name}_{id(task)}"
        self._tasks[task_id] = TaskInfo(task, name)
        task.add_done_callback(lambda done: self._on_task_done(task_id, done))

        logger.debug("task_registry.spawned", task_id=task_id)
        return task

    def _on_task_done(self, task_id: str, task: asyncio.Task) -> None:
        info = self._tasks.pop(task_id, None)
        name = info.name if info else task_id

        if task.cancelled():
            logger.debug("task_registry.task_cancelled", task=name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "task_registry.task_failed",
                task=name,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    def active_tasks(self) -> Dict[str, Dict[str, Any]]:
        """Unfinished tasks keyed by registry id"""
        return {
            task_id: {
                "name": info.name,
                "created_at": info.created_at.isoformat(),
                "done": info.task.done(),
            }
            for task_id, info in self._tasks.items()
            if not info.task.done()
        }

    def __len__(self) -> int:
        return sum(1 for info in self._tasks.values() if not info.task.done())

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for tracked tasks, including ones spawned while waiting.

        Returns True when nothing is left running, False on timeout.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            pending = {info.task for info in self._tasks.values() if not info.task.done()}
            if not pending:
                return True
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(pending, timeout=remaining)

    async def graceful_shutdown(self, timeout: float = 30.0) -> Dict[str, str]:
        """Drain within ``timeout``, then cancel whatever is still running"""
        logger.info("task_registry.shutdown_started", active=len(self))
        self._shutting_down = True

        snapshot = dict(self._tasks)
        drained = await self.drain(timeout)

        results: Dict[str, str] = {task_id: "completed" for task_id in snapshot}
        if not drained:
            stragglers = []
            for task_id, info in list(self._tasks.items()):
                if not info.task.done():
                    info.task.cancel()
                    stragglers.append(info.task)
                    results[task_id] = "cancelled"
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        logger.info(
            "task_registry.shutdown_complete",
            completed=sum(1 for r in results.values() if r == "completed"),
            cancelled=sum(1 for r in results.values() if r == "cancelled"),
        )
        return results

    def is_shutting_down(self) -> bool:
        return self._shutting_down


# Default registry used when a component is not handed its own
task_registry = TaskRegistry()
