"""
Background Tasks for Portal Generation
Asyncio-based worker pool running portal builds off the request path
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from etl.config import BACKGROUND_PROCESSING_CONFIG

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """
    Runs coroutine jobs as asyncio tasks with bounded concurrency

    `submit` returns immediately with the task, which doubles as the job's
    completion future. Jobs beyond the pool size wait on the semaphore.
    """

    def __init__(
        self,
        max_workers: int = BACKGROUND_PROCESSING_CONFIG['worker_pool_size'],
        shutdown_timeout: float = BACKGROUND_PROCESSING_CONFIG['shutdown_timeout_seconds'],
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.shutdown_timeout = shutdown_timeout
        self._semaphore = asyncio.Semaphore(max_workers)
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._completed = 0
        self._failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        job: Callable[..., Awaitable[Any]],
        *args: Any,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> asyncio.Task:
        """
        Schedule `job(*args, **kwargs)` on the pool

        Args:
            job: Coroutine function to run
            name: Task name used in logs

        Returns:
            The asyncio task wrapping the job
        """
        if self._closed:
            raise RuntimeError("Task manager is shut down")

        task = asyncio.create_task(self._run(job, args, kwargs, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Submitted background task {task.get_name()} ({self.pending} pending)")
        return task

    async def _run(self, job, args, kwargs, name):
        async with self._semaphore:
            try:
                result = await job(*args, **kwargs)
            except asyncio.CancelledError:
                logger.warning(f"Background task {name} cancelled")
                raise
            except Exception as e:
                self._failed += 1
                logger.error(f"Background task {name} failed: {e}", exc_info=True)
                raise
            self._completed += 1
            return result

    async def wait_all(self) -> None:
        """Wait for every outstanding task; job failures are not re-raised"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting jobs, give running ones `timeout` seconds, then cancel the rest"""
        self._closed = True
        timeout = self.shutdown_timeout if timeout is None else timeout
        tasks = list(self._tasks)
        if not tasks:
            return

        logger.info(f"Shutting down task manager with {len(tasks)} outstanding tasks")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} background tasks at shutdown")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'max_workers': self.max_workers,
            'pending': self.pending,
            'completed': self._completed,
            'failed': self._failed,
            'closed': self._closed,
        }
