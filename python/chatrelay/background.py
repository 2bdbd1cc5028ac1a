"""Background execution for work that outlives a request.

Two kinds of jobs:
- submit(): sync callables (blob writes and deletes, attachment rows) on a
  thread pool
- spawn(): coroutines (provider stream drains) as asyncio tasks

Jobs are fire-and-forget. Each runs inside an error boundary that logs the
failure with task context; nothing is ever raised back into the caller.
"""

import asyncio
import threading
import uuid
from collections.abc import Callable, Coroutine
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any

from chatrelay.logging import (
    clear_task_context,
    configure_task_logging,
    get_logger,
    get_request_id,
    user_id_var,
)

logger = get_logger(__name__)


def _new_task_id() -> str:
    return f"bg_{uuid.uuid4().hex[:12]}"


class BackgroundRunner:
    """Owns the thread pool and the set of live asyncio tasks."""

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="chatrelay-bg"
        )
        self._futures: set[Future] = set()
        self._tasks: set[asyncio.Task] = set()
        self._lock = threading.Lock()
        self._stats = {"submitted": 0, "completed": 0, "failed": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    # =========================================================================
    # Thread pool jobs
    # =========================================================================

    def submit(self, task_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> str:
        """Run fn(*args, **kwargs) on the pool. Returns the task id."""
        task_id = _new_task_id()
        request_id = get_request_id()
        user_id = user_id_var.get()

        def run() -> None:
            configure_task_logging(
                request_id=request_id, task_name=task_name, task_id=task_id, user_id=user_id
            )
            try:
                fn(*args, **kwargs)
                self._record("completed")
                logger.debug("background_task_completed")
            except Exception as e:
                self._record("failed")
                logger.exception("background_task_failed", error_type=type(e).__name__)
            finally:
                clear_task_context()

        future = self._executor.submit(run)
        with self._lock:
            self._stats["submitted"] += 1
            self._futures.add(future)
        future.add_done_callback(self._discard_future)
        return task_id

    def _discard_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _record(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    # =========================================================================
    # Async jobs
    # =========================================================================

    def spawn(self, coro: Coroutine[Any, Any, Any], task_name: str) -> asyncio.Task:
        """Schedule a coroutine on the running loop and keep it referenced."""
        task_id = _new_task_id()

        async def run() -> Any:
            configure_task_logging(
                request_id=get_request_id(),
                task_name=task_name,
                task_id=task_id,
                user_id=user_id_var.get(),
            )
            return await coro

        task = asyncio.get_running_loop().create_task(run(), name=task_name)
        with self._lock:
            self._stats["submitted"] += 1
            self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", task_name=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self._record("failed")
            logger.error(
                "background_task_failed",
                task_name=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            self._record("completed")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def wait_idle(self, timeout: float | None = 10.0) -> bool:
        """Block until every submitted thread job has finished.

        Returns False if the timeout elapsed first. Jobs submitted by
        jobs are waited for as well.
        """
        while True:
            with self._lock:
                pending = set(self._futures)
            if not pending:
                return True
            _, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                return False

    async def wait_tasks(self) -> None:
        """Wait until every spawned task has finished, including tasks they spawn."""
        while True:
            with self._lock:
                live = [t for t in self._tasks if not t.done()]
            if not live:
                return
            await asyncio.gather(*live, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel live tasks, then wait for thread jobs and stop the pool."""
        with self._lock:
            tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._executor.shutdown(wait=True)
        logger.info("background_runner_stopped", **self.stats)
