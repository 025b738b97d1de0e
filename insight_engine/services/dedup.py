"""
Deduplication guard for job intake.

Double clicks, client retries and network races tend to submit the same deck
several times within seconds. Before creating a job we scan the recent jobs:

1. same email AND same text within the last 60s  -> reuse that job
2. same text (any email) within the last 30s     -> reuse that job
3. otherwise                                     -> create a new job

Rule 2 merges genuinely distinct submissions of identical text from different
users inside the short window. That is accepted behaviour.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from insight_engine.services.jobs import Job, utcnow

logger = logging.getLogger(__name__)

SAME_EMAIL_WINDOW_SECONDS = 60.0
TEXT_ONLY_WINDOW_SECONDS = 30.0


def find_duplicate(
    jobs: Iterable[Job],
    email: str,
    text: str,
    now: Optional[datetime] = None,
    same_email_window: float = SAME_EMAIL_WINDOW_SECONDS,
    text_window: float = TEXT_ONLY_WINDOW_SECONDS,
) -> Optional[Job]:
    """Return the existing job this submission duplicates, if any. O(n) scan."""
    now = now or utcnow()
    jobs = list(jobs)

    email_cutoff = now - timedelta(seconds=same_email_window)
    for job in jobs:
        if job.email == email and job.text_content == text and job.created_at > email_cutoff:
            logger.info(f"Duplicate job found: {job.id}, status: {job.status.value}")
            return job

    text_cutoff = now - timedelta(seconds=text_window)
    for job in jobs:
        if job.text_content == text and job.created_at > text_cutoff:
            logger.info(f"Very recent duplicate job found: {job.id}, status: {job.status.value}")
            return job

    return None


class DeduplicationGuard:
    def __init__(
        self,
        store,
        same_email_window: float = SAME_EMAIL_WINDOW_SECONDS,
        text_window: float = TEXT_ONLY_WINDOW_SECONDS,
    ):
        self.store = store
        self.same_email_window = same_email_window
        self.text_window = text_window

    async def check(self, email: str, text: str, now: Optional[datetime] = None) -> Optional[Job]:
        jobs = await self.store.get_jobs()
        return find_duplicate(
            jobs,
            email,
            text,
            now=now,
            same_email_window=self.same_email_window,
            text_window=self.text_window,
        )
