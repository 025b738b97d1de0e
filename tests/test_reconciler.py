"""
test_reconciler.py
~~~~~~~~~~~~~~~~~~
Completion reconciliation: structured report parsing, status writes,
notifications, cleanup, idempotency, the HTTP webhook adapter, and parity
between the in-process and webhook paths.
"""
from __future__ import annotations

import json
import os
import time

import httpx
import pytest

from insight_engine.main import create_app
from insight_engine.services.jobs import Job, JobStatus
from insight_engine.services.orchestrator import AnalysisOrchestrator
from insight_engine.services.reconciler import (
    STRUCTURING_FAILED_MESSAGE,
    CompletionReconciler,
    JobNotFound,
    ReconciliationConflict,
    StructuringError,
    WebhookError,
    WebhookReconcilerClient,
    number_sources,
    parse_structured_report,
)
from insight_engine.services.report_schema import FinalReport
from insight_engine.services.source_extractor import Source, extract_sources

from tests.conftest import (
    PROMPT_MODEL,
    RESEARCH_MODEL,
    RESEARCH_TEXT,
    STRUCTURED_REPORT,
    STRUCTURING_MODEL,
    StubProvider,
)

SOURCES = [
    {"id": 1, "title": "Warehouse Automation Market Report 2023", "url": "https://example.com/market"},
    {"id": 2, "title": "Locus Robotics raises Series F", "url": "https://example.com/locus"},
]


async def researching_job(store, **overrides) -> Job:
    job = Job.for_text("founder@acme.io", "Acme deck")
    for key, value in overrides.items():
        setattr(job, key, value)
    await store.create_job(job)
    await store.transition(job.id, JobStatus.RESEARCHING)
    return job


def make_reconciler(store, provider, notifier, **kwargs) -> CompletionReconciler:
    return CompletionReconciler(store, provider, notifier, model=STRUCTURING_MODEL, **kwargs)


# ─── Report Parsing ──────────────────────────────────────────────────────────

class TestParseStructuredReport:

    def test_sources_replaced_by_given_list(self):
        report = parse_structured_report(STRUCTURED_REPORT, SOURCES)
        assert report["sources"] == SOURCES

    def test_camel_case_payload(self):
        report = parse_structured_report(STRUCTURED_REPORT, SOURCES)
        assert report["companyName"] == "Acme Robotics"
        assert report["insightScore"]["score"] == 72
        assert report["competitorLandscape"][0]["competitorName"] == "Locus"
        assert report["marketAnalysis"]["marketSize"][0]["value"] == 18.5

    def test_plain_string_swot_point(self):
        report = parse_structured_report(STRUCTURED_REPORT, SOURCES)
        assert report["swotAnalysis"]["opportunities"] == [{"point": "Labour shortages", "source_ids": []}]

    def test_invalid_json(self):
        with pytest.raises(StructuringError):
            parse_structured_report("not json at all", SOURCES)

    def test_non_object_json(self):
        with pytest.raises(StructuringError):
            parse_structured_report("[1, 2, 3]", SOURCES)

    def test_empty_answer(self):
        with pytest.raises(StructuringError):
            parse_structured_report("", SOURCES)


class TestFinalReportSchema:

    def test_lenient_numbers(self):
        report = FinalReport.model_validate({
            "valuation": {"low": "$1,500,000", "high": "unknown"},
            "marketAnalysis": {"marketSize": [{"metric": "SAM", "value": "2.5", "source_ids": "3"}]},
        })
        assert report.valuation.low == 1500000
        assert report.valuation.high is None
        assert report.market_analysis.market_size[0].value == 2.5
        assert report.market_analysis.market_size[0].source_ids == [3]

    def test_null_sections_get_defaults(self):
        report = FinalReport.model_validate({"swotAnalysis": None, "competitorLandscape": None})
        assert report.swot_analysis.strengths == []
        assert report.competitor_landscape == []

    def test_scalar_insight_score(self):
        assert FinalReport.model_validate({"insightScore": 64}).insight_score.score == 64

    def test_numeric_funding_stringified(self):
        report = FinalReport.model_validate({"competitorLandscape": [{"competitorName": "X", "funding": 5000000}]})
        assert report.competitor_landscape[0].funding == "5000000"

    def test_unknown_keys_kept(self):
        payload = FinalReport.model_validate({"riskRegister": ["a"]}).to_payload()
        assert payload["riskRegister"] == ["a"]


class TestNumberSources:

    def test_mixed_inputs_numbered_by_position(self):
        numbered = number_sources([
            Source(7, "A", "https://a.io"),
            {"title": "B", "url": "https://b.io"},
        ])
        assert numbered == [
            {"id": 1, "title": "A", "url": "https://a.io"},
            {"id": 2, "title": "B", "url": "https://b.io"},
        ]

    def test_none(self):
        assert number_sources(None) == []


# ─── Reconciliation ──────────────────────────────────────────────────────────

class TestReconcile:

    async def test_success(self, store, provider, notifier):
        job = await researching_job(store)
        outcome = await make_reconciler(store, provider, notifier).reconcile(
            job.id, RESEARCH_TEXT, extract_sources(RESEARCH_TEXT)
        )

        assert outcome.ok
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETE
        assert stored.error is None
        assert stored.final_report["sources"] == SOURCES
        assert stored.final_report == outcome.final_report
        assert notifier.sent == [("complete", "founder@acme.io", job.id)]

    async def test_structuring_call_uses_json_mode(self, store, provider, notifier):
        job = await researching_job(store)
        await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        call = provider.calls[-1]
        assert call["model"] == STRUCTURING_MODEL
        assert call["json_output"] is True
        assert RESEARCH_TEXT.strip() in call["user"]
        assert json.dumps(SOURCES, indent=2) in call["user"]

    async def test_invalid_json_ends_in_error(self, store, notifier):
        job = await researching_job(store)
        provider = StubProvider({STRUCTURING_MODEL: "Sorry, I cannot do that."})

        outcome = await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert not outcome.ok
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.error == STRUCTURING_FAILED_MESSAGE
        assert stored.final_report is None
        assert notifier.sent == [("error", "founder@acme.io", job.id, STRUCTURING_FAILED_MESSAGE)]

    async def test_provider_failure_ends_in_error(self, store, notifier):
        job = await researching_job(store)
        provider = StubProvider({STRUCTURING_MODEL: RuntimeError("upstream down")})

        outcome = await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert outcome.status == JobStatus.ERROR
        assert (await store.get_job(job.id)).error == STRUCTURING_FAILED_MESSAGE

    async def test_unknown_job(self, store, provider, notifier):
        with pytest.raises(JobNotFound):
            await make_reconciler(store, provider, notifier).reconcile("missing", RESEARCH_TEXT, SOURCES)

    @pytest.mark.parametrize("status, fields", [
        (JobStatus.COMPLETE, {"final_report": {"summary": "done"}}),
        (JobStatus.ERROR, {"error": "boom"}),
        (JobStatus.SYNTHESIZING, {}),
    ])
    async def test_second_delivery_is_rejected(self, store, provider, notifier, status, fields):
        job = await researching_job(store)
        await store.transition(job.id, status, **fields)
        before = await store.get_job(job.id)

        with pytest.raises(ReconciliationConflict):
            await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert await store.get_job(job.id) == before
        assert provider.calls == []
        assert notifier.sent == []

    async def test_job_errored_during_structuring_keeps_error(self, store, notifier):
        job = await researching_job(store)

        async def error_meanwhile(system, user):
            await store.transition(job.id, JobStatus.ERROR, error="Stage 'synthesizing' timed out")
            return STRUCTURED_REPORT

        provider = StubProvider({STRUCTURING_MODEL: error_meanwhile})
        outcome = await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert outcome.status == JobStatus.ERROR
        stored = await store.get_job(job.id)
        assert stored.final_report is None
        assert notifier.sent == []

    async def test_notification_failure_does_not_change_outcome(self, store, provider, notifier):
        async def broken(to, job_id):
            raise OSError("smtp down")

        notifier.send_completion = broken
        job = await researching_job(store)

        outcome = await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert outcome.ok
        assert (await store.get_job(job.id)).status == JobStatus.COMPLETE

    async def test_uploaded_file_removed_after_completion(self, store, provider, notifier, tmp_path):
        upload = tmp_path / "deck.txt"
        upload.write_text("Acme deck")
        job = await researching_job(store, file_path=str(upload))

        await make_reconciler(store, provider, notifier).reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert not upload.exists()

    async def test_stale_uploads_swept(self, store, provider, notifier, tmp_path):
        stale = tmp_path / "old.pdf"
        fresh = tmp_path / "new.pdf"
        stale.write_bytes(b"%PDF")
        fresh.write_bytes(b"%PDF")
        week_ago = time.time() - 7 * 86400
        os.utime(stale, (week_ago, week_ago))
        job = await researching_job(store)

        reconciler = make_reconciler(store, provider, notifier, upload_dir=str(tmp_path))
        await reconciler.reconcile(job.id, RESEARCH_TEXT, SOURCES)

        assert not stale.exists()
        assert fresh.exists()

    async def test_record_failure_notifies_and_cleans_up(self, store, provider, notifier, tmp_path):
        upload = tmp_path / "deck.txt"
        upload.write_text("Acme deck")
        job = await researching_job(store, file_path=str(upload))
        await store.transition(job.id, JobStatus.SYNTHESIZING)

        assert await make_reconciler(store, provider, notifier).record_failure(job.id)

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.error == STRUCTURING_FAILED_MESSAGE
        assert notifier.sent == [("error", "founder@acme.io", job.id, STRUCTURING_FAILED_MESSAGE)]
        assert not upload.exists()

    async def test_record_failure_on_terminal_job(self, store, provider, notifier):
        job = await researching_job(store)
        await store.transition(job.id, JobStatus.ERROR, error="boom")

        reconciler = make_reconciler(store, provider, notifier)

        assert await reconciler.record_failure(job.id) is False
        assert await reconciler.record_failure("missing") is False
        assert (await store.get_job(job.id)).error == "boom"
        assert notifier.sent == []


# ─── Webhook Adapter ─────────────────────────────────────────────────────────

class TestWebhookClient:

    def client(self, handler) -> WebhookReconcilerClient:
        return WebhookReconcilerClient("http://engine.local/", transport=httpx.MockTransport(handler))

    async def test_posts_research_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "status": "complete"})

        outcome = await self.client(handler).reconcile("job-1", RESEARCH_TEXT, SOURCES)

        assert outcome.ok
        assert seen["url"] == "http://engine.local/api/webhook/research-complete?jobId=job-1"
        assert seen["body"] == {"content": [{
            "text": RESEARCH_TEXT,
            "annotations": [{"title": s["title"], "url": s["url"]} for s in SOURCES],
        }]}

    async def test_server_error_is_an_error_outcome(self):
        outcome = await self.client(lambda r: httpx.Response(500, json={"error": "Failed to process report."})).reconcile(
            "job-1", RESEARCH_TEXT, SOURCES
        )
        assert outcome.status == JobStatus.ERROR

    async def test_conflict(self):
        with pytest.raises(ReconciliationConflict):
            await self.client(lambda r: httpx.Response(409, json={})).reconcile("job-1", "", [])

    async def test_not_found(self):
        with pytest.raises(JobNotFound):
            await self.client(lambda r: httpx.Response(404, json={})).reconcile("job-1", "", [])

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(WebhookError):
            await self.client(handler).reconcile("job-1", "", [])


# ─── Direct and Webhook Paths ────────────────────────────────────────────────

class TestWebhookParity:

    def webhook_orchestrator(self, container, provider, notifier) -> AnalysisOrchestrator:
        client = WebhookReconcilerClient(
            "http://testserver", transport=httpx.ASGITransport(app=create_app(container))
        )
        return AnalysisOrchestrator(
            container.store,
            provider,
            client,
            notifier,
            prompt_model=PROMPT_MODEL,
            research_model=RESEARCH_MODEL,
            stage_timeout=5,
        )

    async def outcome(self, orchestrator, container, notifier, text: str):
        job = Job.for_text("founder@acme.io", text)
        await container.store.create_job(job)
        await orchestrator.run(job.id)

        stored = await container.store.get_job(job.id)
        emails = [entry[:2] + entry[3:] for entry in notifier.sent if entry[2] == job.id]
        return stored.status, stored.error, stored.final_report, emails

    @pytest.mark.parametrize("structured", [STRUCTURED_REPORT, "not json"], ids=["complete", "structuring-failure"])
    async def test_same_result_either_way(self, container, provider, notifier, structured):
        provider.responses[STRUCTURING_MODEL] = structured

        direct = await self.outcome(container.orchestrator, container, notifier, "Acme deck, direct")
        via_webhook = await self.outcome(
            self.webhook_orchestrator(container, provider, notifier), container, notifier, "Acme deck, webhook"
        )

        assert via_webhook == direct
        assert len(direct[3]) == 1
