"""Background execution: supervised asyncio tasks and analysis dispatch."""

import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Keeps detached asyncio tasks alive and accounted for.

    Every task is held in a set until it finishes, failures are logged from a
    done-callback, and whatever is still running at shutdown is cancelled.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"Background task {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc!r}", exc_info=exc)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for every task submitted so far (including ones they submit)."""
        while True:
            pending = {t for t in self._tasks if not t.done()}
            if not pending:
                return
            await asyncio.wait(pending, timeout=timeout)
            if timeout is not None:
                return

    async def shutdown(self, timeout: float = 5.0) -> None:
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info(f"Waiting for {len(pending)} background tasks to finish")
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} background tasks at shutdown")
        logger.info("BackgroundRunner stopped")


class AnalysisDispatcher:
    """Starts an analysis run without blocking the caller.

    ``task_queue="celery"`` hands the job to a Celery worker, unless the
    Celery app fell back to eager mode, in which case the in-process runner
    is used so the request still returns immediately.
    """

    def __init__(self, runner: BackgroundRunner, orchestrator, task_queue: str = "inline"):
        self.runner = runner
        self.orchestrator = orchestrator
        self.task_queue = (task_queue or "inline").lower()

    def dispatch(self, job_id: str) -> str:
        if self.task_queue == "celery":
            from insight_engine.core.celery_app import celery_app
            from insight_engine.tasks import run_analysis_task

            if not celery_app.conf.task_always_eager:
                run_analysis_task.delay(job_id)
                logger.info(f"[{job_id}] Analysis queued on Celery")
                return "celery"
            logger.info(f"[{job_id}] Celery is in eager mode, running analysis in-process")

        self.runner.submit(self.orchestrator.run(job_id), name=f"analysis-{job_id}")
        logger.info(f"[{job_id}] Analysis started in background")
        return "inline"
