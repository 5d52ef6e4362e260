"""
Supervision of long-running background loops.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional
from loguru import logger

from herald.constants import TASK_MONITOR_CHECK_INTERVAL_SECONDS

TaskFactory = Callable[[], Awaitable[None]]


class TaskSupervisor:
    """
    Starts named background tasks and restarts them if they die unexpectedly.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._task_factories: Dict[str, TaskFactory] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._running = False
        self.restart_counts: Dict[str, int] = {}

    @property
    def task_names(self) -> List[str]:
        return sorted(self._tasks)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def register_task(self, name: str, factory: TaskFactory) -> asyncio.Task:
        """
        Register and start a background task.

        Args:
            name: Unique name for the task
            factory: Coroutine factory that creates the task

        Returns:
            The created asyncio.Task
        """
        self._task_factories[name] = factory
        task = asyncio.create_task(factory(), name=name)
        self._tasks[name] = task
        logger.info(f"Background task '{name}' started")
        return task

    async def start_monitoring(self, check_interval: float = TASK_MONITOR_CHECK_INTERVAL_SECONDS):
        """Start the task monitor."""
        self._running = True
        self._monitor_task = asyncio.create_task(self._monitor_loop(check_interval), name="task_monitor")

    async def stop(self):
        """Stop all tasks and the monitor."""
        self._running = False

        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        for name, task in self._tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            logger.debug(f"Background task '{name}' stopped")
        self._tasks.clear()

    def restart_dead_tasks(self) -> List[str]:
        """
        Restart every registered task that finished with an error or returned.

        Cancelled tasks stay down. Returns the names that were restarted.
        """
        restarted = []
        for name, task in list(self._tasks.items()):
            if not task.done():
                continue
            if task.cancelled():
                logger.debug(f"Background task '{name}' was cancelled")
                continue

            exc = task.exception()
            if exc:
                logger.error(f"Background task '{name}' crashed: {exc}")
            else:
                logger.warning(f"Background task '{name}' exited")

            logger.warning(f"Restarting background task '{name}'")
            self._tasks[name] = asyncio.create_task(self._task_factories[name](), name=name)
            self.restart_counts[name] = self.restart_counts.get(name, 0) + 1
            restarted.append(name)
        return restarted

    async def _monitor_loop(self, check_interval: float):
        while self._running:
            try:
                await asyncio.sleep(check_interval)
                self.restart_dead_tasks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in task monitor: {e}")
