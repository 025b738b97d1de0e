r"""
Analysis Orchestrator: drives one job through the pipeline.

    parsing -> prompting -> researching -> synthesizing -> complete
       \__________\____________\______________\__________-> error

Each stage's status is written before the stage's work starts, so a polling
client always sees the stage in progress. Provider-backed stages are bounded
by ``stage_timeout``. The first failure ends the job in "error" (no retries,
partial progress such as the research prompt is kept) and a best-effort
error email goes out. ``run()`` never raises; a cancelled run is recorded as
"error" before the cancellation propagates.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from insight_engine.services.jobs import Job, JobStatus
from insight_engine.services.llm_provider import LLMProvider
from insight_engine.services.notifications import Notifier
from insight_engine.services.prompts import render_prompt
from insight_engine.services.reconciler import ReconcileOutcome, ReconciliationConflict
from insight_engine.services.source_extractor import extract_sources
from insight_engine.services.storage import is_virtual_path

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_TEXT_INPUT_MESSAGE = "Document parsing not implemented for non-text files"
INTERRUPTED_MESSAGE = "Analysis interrupted"


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class UnsupportedInput(ValueError):
    """The job's input cannot be turned into text."""


class StageTimeout(TimeoutError):
    """A pipeline stage exceeded its time budget."""


class _Superseded(Exception):
    """Another writer already moved the job past the stage we were entering."""


class AnalysisOrchestrator:
    def __init__(
        self,
        store,
        provider: LLMProvider,
        reconciler,
        notifier: Notifier,
        prompt_model: str = "gpt-4o-mini",
        research_model: str = "gpt-4o",
        stage_timeout: float = 900.0,
        prompt_char_limit: int = 12000,
    ):
        self.store = store
        self.provider = provider
        self.reconciler = reconciler
        self.notifier = notifier
        self.prompt_model = prompt_model
        self.research_model = research_model
        self.stage_timeout = stage_timeout
        self.prompt_char_limit = prompt_char_limit

    async def run(self, job_id: str) -> None:
        logger.info(f"[{job_id}] ====== Analysis started ======")
        try:
            job = await self.store.get_job(job_id)
        except Exception as e:
            logger.error(f"[{job_id}] Could not load job: {e}")
            return
        if job is None:
            logger.error(f"Job {job_id} not found.")
            return

        try:
            await self._pipeline(job)
        except _Superseded as e:
            logger.warning(f"[{job_id}] Analysis stopped: {e}")
        except ReconciliationConflict as e:
            logger.warning(f"[{job_id}] Reconciliation skipped: {e}")
        except asyncio.CancelledError:
            logger.warning(f"[{job_id}] Analysis cancelled while {job.status.value}")
            await self._interrupt(job)
            raise
        except Exception as e:
            logger.error(f"[{job_id}] Analysis failed: {type(e).__name__}: {e}")
            await self._fail(job, e)

    # ─── Stages ──────────────────────────────────────────────────────────

    async def _pipeline(self, job: Job) -> None:
        await self._advance(job, JobStatus.PARSING)
        text = await self.parse(job)
        logger.info(f"[{job.id}] Text loaded. Text length: {len(text)}")

        await self._advance(job, JobStatus.PROMPTING)
        research_prompt = await self._bounded("prompting", self.generate_research_prompt(text))
        await self.store.update_job(job.id, deep_research_prompt=research_prompt)
        logger.info(f"[{job.id}] Deep research prompt generated.")

        await self._advance(job, JobStatus.RESEARCHING)
        research_text = await self._bounded("researching", self.research(research_prompt))
        sources = extract_sources(research_text)
        logger.info(f"[{job.id}] Deep research finished with {len(sources)} sources.")

        outcome: ReconcileOutcome = await self._bounded(
            "synthesizing", self.reconciler.reconcile(job.id, research_text, sources)
        )
        if outcome.ok:
            logger.info(f"[{job.id}] ====== Analysis complete ======")
        else:
            # the reconciler has already recorded the failure on the job
            logger.warning(f"[{job.id}] Synthesis ended in error: {outcome.error}")

    async def parse(self, job: Job) -> str:
        if job.text_content:
            return job.text_content
        if job.mime_type == "text/plain":
            if is_virtual_path(job.file_path):
                raise UnsupportedInput("Job has no text content to analyse")
            return await asyncio.to_thread(_read_text_file, job.file_path)
        raise UnsupportedInput(NON_TEXT_INPUT_MESSAGE)

    async def generate_research_prompt(self, text: str) -> str:
        user = render_prompt("research_brief_user", text=text[: self.prompt_char_limit])
        return await self.provider.complete(
            render_prompt("research_brief_system"), user, model=self.prompt_model
        )

    async def research(self, research_prompt: str) -> str:
        return await self.provider.complete(
            render_prompt("research_system"), research_prompt, model=self.research_model
        )

    # ─── Helpers ─────────────────────────────────────────────────────────

    async def _advance(self, job: Job, status: JobStatus) -> None:
        if not await self.store.transition(job.id, status):
            raise _Superseded(f"job no longer accepts status '{status.value}'")
        job.status = status

    async def _bounded(self, stage: str, work: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(work, timeout=self.stage_timeout)
        except asyncio.TimeoutError as e:
            raise StageTimeout(
                f"Stage '{stage}' timed out after {self.stage_timeout:g} seconds"
            ) from e

    async def _interrupt(self, job: Job) -> None:
        # no error email on shutdown
        try:
            await self.store.transition(job.id, JobStatus.ERROR, error=INTERRUPTED_MESSAGE)
        except Exception as e:
            logger.error(f"[{job.id}] Could not record interruption: {e}")

    async def _fail(self, job: Job, error: Exception) -> None:
        message = str(error) or type(error).__name__
        try:
            applied = await self.store.transition(job.id, JobStatus.ERROR, error=message)
        except Exception as e:
            logger.error(f"[{job.id}] Could not record failure: {e}")
            return
        if not applied:
            logger.warning(f"[{job.id}] Job already terminal, failure not recorded: {message}")
            return
        try:
            await self.notifier.send_error(job.email, job.id, message)
        except Exception as e:
            logger.warning(f"[{job.id}] Error email failed: {e}")


def _read_text_file(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        return handle.read()

