import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from insight_engine.services.dedup import DeduplicationGuard
from insight_engine.services.jobs import Job

logger = logging.getLogger(__name__)


@dataclass
class IntakeResult:
    job: Job
    is_duplicate: bool = False


class JobIntake:
    """
    Creates jobs for incoming submissions, suppressing near-duplicates.

    The scan-then-create step is serialised per process so two concurrent
    identical requests cannot both miss each other. Across processes the
    guard stays best-effort.
    """

    def __init__(self, store, guard: DeduplicationGuard):
        self.store = store
        self.guard = guard
        self._lock = asyncio.Lock()

    async def submit_text(
        self,
        email: str,
        text: str,
        marketing_opt_in: bool = False,
        now: Optional[datetime] = None,
    ) -> IntakeResult:
        async with self._lock:
            duplicate = await self.guard.check(email, text, now=now)
            if duplicate:
                return IntakeResult(job=duplicate, is_duplicate=True)

            job = Job.for_text(email, text, marketing_opt_in)
            if now is not None:
                job.created_at = now
            await self.store.create_job(job)

        logger.info(f"Job created with text content: {job.id}, text length: {len(text)}")
        return IntakeResult(job=job)

    async def submit_file(
        self,
        email: str,
        file_path: str,
        mime_type: str,
        marketing_opt_in: bool = False,
    ) -> Job:
        job = Job.for_file(email, file_path, mime_type, marketing_opt_in)
        await self.store.create_job(job)
        logger.info(f"Job created for uploaded file: {job.id} ({mime_type})")
        return job
