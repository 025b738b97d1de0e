"""
Completion Reconciler: turns raw research output into the final report.

    research text + numbered sources
        -> status "synthesizing"
        -> structuring model (JSON object)
        -> schema validation
        -> status "complete" + final_report
        -> completion email, file cleanup (best-effort)

Any structuring failure ends the job in "error" with a fixed message. The
same ``reconcile()`` is reached in-process or through the HTTP webhook
(``WebhookReconcilerClient``), and both paths behave identically.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from insight_engine.services.cleanup import cleanup_file, cleanup_old_files
from insight_engine.services.jobs import Job, JobStatus
from insight_engine.services.llm_provider import LLMProvider
from insight_engine.services.notifications import Notifier
from insight_engine.services.prompts import render_prompt
from insight_engine.services.report_schema import FinalReport
from insight_engine.services.source_extractor import Source

logger = logging.getLogger(__name__)

STRUCTURING_FAILED_MESSAGE = "Failed to structure final report."


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class JobNotFound(LookupError):
    """No job exists under the given id."""


class ReconciliationConflict(RuntimeError):
    """The job is already terminal or already being synthesised."""


class StructuringError(ValueError):
    """The structuring answer could not be turned into a FinalReport."""


@dataclass
class ReconcileOutcome:
    job_id: str
    status: JobStatus
    final_report: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.COMPLETE


def number_sources(sources: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    Normalise Source objects or ``{title, url}`` annotations into the
    ``{id, title, url}`` list, ids being 1-based positions.
    """
    numbered = []
    for index, source in enumerate(sources or [], start=1):
        if isinstance(source, Source):
            title, url = source.title, source.url
        elif isinstance(source, dict):
            title, url = source.get("title"), source.get("url")
        else:
            title, url = getattr(source, "title", None), getattr(source, "url", None)
        numbered.append({"id": index, "title": str(title or ""), "url": str(url or "")})
    return numbered


def parse_structured_report(raw: str, sources: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate the model's JSON answer and force ``sources`` to the given list."""
    try:
        data = json.loads(raw or "")
    except json.JSONDecodeError as e:
        raise StructuringError(f"Structuring model returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StructuringError(f"Expected a JSON object, got {type(data).__name__}")

    data["sources"] = sources
    try:
        report = FinalReport.model_validate(data)
    except ValidationError as e:
        raise StructuringError(f"Report failed schema validation: {e.error_count()} errors") from e
    return report.to_payload()


class CompletionReconciler:
    def __init__(
        self,
        store,
        provider: LLMProvider,
        notifier: Notifier,
        model: str = "gpt-4o-mini",
        upload_dir: Optional[str] = None,
        upload_max_age_seconds: int = 86400,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.model = model
        self.upload_dir = upload_dir
        self.upload_max_age_seconds = upload_max_age_seconds

    async def reconcile(self, job_id: str, research_text: str, sources: Iterable[Any]) -> ReconcileOutcome:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        if job.is_terminal or job.status == JobStatus.SYNTHESIZING:
            raise ReconciliationConflict(f"Job {job_id} is already {job.status.value}")

        if not await self.store.transition(job_id, JobStatus.SYNTHESIZING):
            raise ReconciliationConflict(f"Job {job_id} changed state before synthesis")
        logger.info(f"[{job_id}] Research received - status updated to synthesizing")

        sources_list = number_sources(sources)
        try:
            final_report = await self._structure(research_text or "", sources_list)
        except Exception as e:
            logger.error(f"[{job_id}] Final synthesis failed: {type(e).__name__}: {e}")
            await self.store.transition(job_id, JobStatus.ERROR, error=STRUCTURING_FAILED_MESSAGE)
            await self._notify_error(job, STRUCTURING_FAILED_MESSAGE)
            self._cleanup(job)
            return ReconcileOutcome(job_id, JobStatus.ERROR, error=STRUCTURING_FAILED_MESSAGE)

        if not await self.store.transition(job_id, JobStatus.COMPLETE, final_report=final_report):
            # another writer ended the job while we were structuring
            current = await self.store.get_job(job_id)
            status = current.status if current else JobStatus.ERROR
            logger.warning(f"[{job_id}] Final report discarded, job is already {status.value}")
            return ReconcileOutcome(job_id, status, error=current.error if current else None)

        logger.info(f"[{job_id}] Final report synthesized and saved.")
        await self._notify_complete(job)
        self._cleanup(job)
        return ReconcileOutcome(job_id, JobStatus.COMPLETE, final_report=final_report)

    async def record_failure(self, job_id: str, message: str = STRUCTURING_FAILED_MESSAGE) -> bool:
        """
        End a job that broke outside ``reconcile()``'s own error handling.
        Sends the error email and removes the upload like any other failure.
        Returns False when the job is unknown or already terminal.
        """
        if not await self.store.transition(job_id, JobStatus.ERROR, error=message):
            logger.warning(f"[{job_id}] Failure not recorded, job is missing or already terminal")
            return False
        job = await self.store.get_job(job_id)
        if job is not None:
            await self._notify_error(job, message)
            self._cleanup(job)
        return True

    async def _structure(self, research_text: str, sources_list: List[Dict[str, Any]]) -> Dict[str, Any]:
        user = render_prompt(
            "structuring_user",
            report_text=research_text,
            sources_json=json.dumps(sources_list, indent=2),
        )
        raw = await self.provider.complete(
            render_prompt("structuring_system"),
            user,
            model=self.model,
            json_output=True,
        )
        return parse_structured_report(raw, sources_list)

    async def _notify_complete(self, job: Job) -> None:
        try:
            await self.notifier.send_completion(job.email, job.id)
        except Exception as e:
            logger.warning(f"[{job.id}] Completion email failed: {e}")

    async def _notify_error(self, job: Job, message: str) -> None:
        try:
            await self.notifier.send_error(job.email, job.id, message)
        except Exception as e:
            logger.warning(f"[{job.id}] Error email failed: {e}")

    def _cleanup(self, job: Job) -> None:
        try:
            cleanup_file(job.file_path)
            if self.upload_dir:
                cleanup_old_files(self.upload_dir, self.upload_max_age_seconds)
        except Exception as e:
            logger.warning(f"[{job.id}] Cleanup failed: {e}")


# ─── HTTP Adapter ────────────────────────────────────────────────────────────

class WebhookError(RuntimeError):
    """The webhook could not be reached or did not know the job."""


class WebhookReconcilerClient:
    """
    Delivers research output to ``POST /api/webhook/research-complete``.

    A 5xx answer means the server-side reconciler already recorded the
    failure on the job; it is reported as an error outcome, not raised.
    """

    def __init__(self, base_url: str, timeout: float = 900.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def webhook_url(self) -> str:
        return f"{self.base_url}/api/webhook/research-complete"

    async def reconcile(self, job_id: str, research_text: str, sources: Iterable[Any]) -> ReconcileOutcome:
        annotations = [{"title": s["title"], "url": s["url"]} for s in number_sources(sources)]
        payload = {"content": [{"text": research_text, "annotations": annotations}]}
        logger.info(f"[{job_id}] Deep research finished. Calling webhook: {self.webhook_url()}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url(), params={"jobId": job_id}, json=payload)
        except httpx.HTTPError as e:
            raise WebhookError(f"Webhook unreachable: {type(e).__name__}: {e}") from e

        if response.status_code >= 500:
            logger.warning(f"[{job_id}] Webhook reported failure ({response.status_code})")
            return ReconcileOutcome(job_id, JobStatus.ERROR, error=STRUCTURING_FAILED_MESSAGE)
        if response.status_code == 409:
            raise ReconciliationConflict(f"Job {job_id} was already reconciled")
        if response.status_code == 404:
            raise JobNotFound(f"Webhook does not know job {job_id}")
        if response.status_code >= 400:
            raise WebhookError(f"Webhook rejected the request ({response.status_code})")

        body = response.json()
        return ReconcileOutcome(
            job_id,
            JobStatus(body.get("status", JobStatus.COMPLETE.value)),
            final_report=body.get("finalReport"),
        )
