"""
test_background.py
~~~~~~~~~~~~~~~~~~
Detached task supervision and analysis dispatch (inline and Celery).
"""
from __future__ import annotations

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from insight_engine.services.background import AnalysisDispatcher, BackgroundRunner


class RecordingOrchestrator:
    def __init__(self):
        self.runs = []

    async def run(self, job_id):
        await asyncio.sleep(0)
        self.runs.append(job_id)


class TestBackgroundRunner:

    async def test_tasks_tracked_until_done(self):
        runner = BackgroundRunner()
        runner.submit(asyncio.sleep(0.01), name="nap")
        assert runner.active == 1

        await runner.join()
        assert runner.active == 0

    async def test_failures_are_contained(self):
        async def explode():
            raise RuntimeError("boom")

        runner = BackgroundRunner()
        task = runner.submit(explode(), name="explode")
        await runner.join()

        assert task.done()
        assert runner.active == 0

    async def test_shutdown_cancels_stragglers(self):
        runner = BackgroundRunner()
        task = runner.submit(asyncio.sleep(10), name="long")

        await runner.shutdown(timeout=0.01)

        assert task.cancelled()
        assert runner.active == 0


class TestAnalysisDispatcher:

    async def test_inline(self):
        orchestrator = RecordingOrchestrator()
        runner = BackgroundRunner()

        assert AnalysisDispatcher(runner, orchestrator, "inline").dispatch("job-1") == "inline"
        await runner.join()

        assert orchestrator.runs == ["job-1"]

    async def test_celery_worker(self, monkeypatch):
        from insight_engine.core.celery_app import celery_app
        from insight_engine import tasks

        delay = MagicMock()
        monkeypatch.setitem(celery_app.conf, "task_always_eager", False)
        monkeypatch.setattr(tasks.run_analysis_task, "delay", delay)
        orchestrator = RecordingOrchestrator()

        assert AnalysisDispatcher(BackgroundRunner(), orchestrator, "celery").dispatch("job-1") == "celery"
        delay.assert_called_once_with("job-1")
        assert orchestrator.runs == []

    async def test_celery_eager_falls_back_to_inline(self, monkeypatch):
        from insight_engine.core.celery_app import celery_app

        monkeypatch.setitem(celery_app.conf, "task_always_eager", True)
        orchestrator = RecordingOrchestrator()
        runner = BackgroundRunner()

        assert AnalysisDispatcher(runner, orchestrator, "CELERY").dispatch("job-1") == "inline"
        await runner.join()
        assert orchestrator.runs == ["job-1"]


@pytest.mark.parametrize("value, expected", [("", "inline"), (None, "inline"), ("Celery", "celery")])
def test_task_queue_normalised(value, expected):
    assert AnalysisDispatcher(BackgroundRunner(), RecordingOrchestrator(), value).task_queue == expected


class TestRunCoroutineBlocking:

    async def answer(self):
        await asyncio.sleep(0)
        return threading.current_thread().name

    def test_without_running_loop(self):
        from insight_engine.tasks import run_coroutine_blocking

        assert run_coroutine_blocking(self.answer()) == threading.current_thread().name

    async def test_inside_running_loop_uses_helper_thread(self):
        from insight_engine.tasks import run_coroutine_blocking

        assert run_coroutine_blocking(self.answer()).startswith("analysis")

    def test_errors_propagate(self):
        from insight_engine.tasks import run_coroutine_blocking

        async def explode():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            run_coroutine_blocking(explode())
