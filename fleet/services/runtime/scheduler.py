"""
Cancellable delayed work keyed by (kind, bot_id).

Used for resume staggering and grace-period checks. Scheduling the same key
twice replaces the earlier task. Stopping or destroying a bot cancels every key
for it, so a late timer can never fire against an instance that already moved on.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

RESUME = "resume"
GRACE = "grace"

TaskKey = tuple[str, str]


class TaskScheduler:
    def __init__(self):
        self._tasks: dict[TaskKey, asyncio.Task] = {}

    def schedule(
        self,
        kind: str,
        bot_id: str,
        action: Callable[[], Awaitable[None]],
        delay: float = 0.0,
    ) -> asyncio.Task:
        """Run `action()` after `delay` seconds. Replaces any pending task with the same key."""
        key = (kind, bot_id)
        self.cancel(kind, bot_id)
        task = asyncio.create_task(self._run(key, action, delay), name=f"{kind}:{bot_id}")
        self._tasks[key] = task
        return task

    async def _run(self, key: TaskKey, action: Callable[[], Awaitable[None]], delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await action()
        except asyncio.CancelledError:
            logger.debug("scheduled_task_cancelled", kind=key[0], bot_id=key[1])
            return
        except Exception as exc:
            logger.error("scheduled_task_error", kind=key[0], bot_id=key[1], error=str(exc))
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, kind: str, bot_id: str) -> bool:
        task = self._tasks.pop((kind, bot_id), None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            # a task tearing down its own bot finishes normally
            return False
        task.cancel()
        return True

    def cancel_for(self, bot_id: str) -> int:
        cancelled = 0
        for kind, key_bot in list(self._tasks):
            if key_bot == bot_id and self.cancel(kind, key_bot):
                cancelled += 1
        if cancelled:
            logger.info("scheduled_tasks_cancelled", bot_id=bot_id, count=cancelled)
        return cancelled

    def pending(self, bot_id: Optional[str] = None) -> list[TaskKey]:
        return [
            key for key, task in self._tasks.items()
            if not task.done() and (bot_id is None or key[1] == bot_id)
        ]

    async def shutdown(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
