"""
Celery task bodies. Each task builds its own ServiceContainer, because the
store's connections belong to the event loop that opened them.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from insight_engine.core.celery_app import celery_app
from insight_engine.core.config import settings

logger = logging.getLogger(__name__)


def run_coroutine_blocking(coro):
    """
    Drive ``coro`` to completion from synchronous code and return its result.

    A worker process has no loop, so ``asyncio.run`` is enough. In eager mode
    the task is called from inside the API's loop, which cannot be re-entered;
    the coroutine then gets a fresh loop on a helper thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    logger.info("Called from a running event loop, using a helper thread.")
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="analysis") as pool:
        return pool.submit(asyncio.run, coro).result()


async def _run_analysis(job_id: str) -> None:
    from insight_engine.services.container import ServiceContainer

    container = ServiceContainer.from_settings(settings)
    await container.startup()
    try:
        await container.orchestrator.run(job_id)
    finally:
        await container.shutdown()


@celery_app.task(bind=True, name="insight_engine.tasks.run_analysis")
def run_analysis_task(self, job_id: str):
    """
    Worker entry point: parsing -> prompting -> researching -> synthesizing.
    The orchestrator records every outcome on the job itself.
    """
    logger.info(f"[{job_id}] Celery task {self.request.id} picked up analysis")
    try:
        run_coroutine_blocking(_run_analysis(job_id))
    except Exception as e:
        logger.error(f"[{job_id}] Analysis task crashed: {e}", exc_info=True)
