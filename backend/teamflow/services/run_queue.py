import asyncio
import logging
from typing import Awaitable, Callable, Coroutine

logger = logging.getLogger(__name__)

CancelHook = Callable[[str], Awaitable[None]]


class RunQueue:
    """In-process owner of the tasks that execute workflow runs.

    Runs are submitted from request handlers and continue after the response
    is sent. The queue keeps a reference to every task until it finishes so
    runs can be cancelled individually, awaited in tests, and cancelled as a
    whole on shutdown.

    A task cancelled before its first step never enters its coroutine, so
    ``submit`` accepts an ``on_cancel`` hook that the queue runs as a
    follow-up task whenever a run's task ends cancelled. ``join`` and
    ``shutdown`` wait for those follow-ups too.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, run_id: str, coro: Coroutine, on_cancel: CancelHook | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"workflow-run-{run_id}")
        self._track(run_id, task, on_cancel)
        return task

    def _track(self, run_id: str, task: asyncio.Task, on_cancel: CancelHook | None) -> None:
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._on_done(run_id, t, on_cancel))

    def _on_done(self, run_id: str, task: asyncio.Task, on_cancel: CancelHook | None) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if task.cancelled():
            logger.info(f"Run {run_id} task cancelled")
            if on_cancel is not None:
                followup = asyncio.get_running_loop().create_task(
                    on_cancel(run_id), name=f"workflow-run-{run_id}-cancelled"
                )
                self._track(run_id, followup, None)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Run {run_id} task crashed: {exc}", exc_info=exc)

    def is_pending(self, run_id: str) -> bool:
        return run_id in self._tasks

    def cancel(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        return task.cancel()

    async def join(self) -> None:
        """Wait until every submitted run, including ones submitted meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        if not self._tasks:
            return
        logger.info(f"Cancelling {len(self._tasks)} in-flight workflow runs")
        for task in list(self._tasks.values()):
            task.cancel()
        await self.join()
