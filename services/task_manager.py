import asyncio
from typing import Awaitable, Dict, Set
from core.logger import logger

class TaskManager:
    """Background tasks belonging to one learning session, keyed by name."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._tasks: Dict[str, asyncio.Task] = {}
        self._all: Set[asyncio.Task] = set()

    def spawn(self, name: str, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.register_task(name, task)
        return task

    def register_task(self, name: str, task: asyncio.Task):
        """Register a new task under a name, cancelling any existing one."""
        self.cancel_task(name)
        self._tasks[name] = task
        self._all.add(task)
        logger.debug(f"Registered task {name}", owner=self.owner)

        # Add callback to remove from dict when done
        task.add_done_callback(lambda t: self._cleanup_task(name, t))

    def cancel_task(self, name: str):
        """Cancel the active task with this name if it exists."""
        if name in self._tasks:
            task = self._tasks[name]
            if not task.done():
                task.cancel()
                logger.debug(f"Cancelled active task {name}", owner=self.owner)
            del self._tasks[name]

    def cancel_all(self):
        current = asyncio.current_task()
        for name, task in list(self._tasks.items()):
            if task is current:
                continue
            self.cancel_task(name)

    async def wait_idle(self):
        """Wait until every task spawned so far (and any they spawn) is finished."""
        while True:
            pending = [t for t in self._all if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _cleanup_task(self, name: str, task: asyncio.Task):
        """Remove task from dict if it's still the registered one."""
        self._all.discard(task)
        if name in self._tasks and self._tasks[name] == task:
            del self._tasks[name]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Task {name} failed", owner=self.owner, exc_info=task.exception())
