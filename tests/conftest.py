"""
Shared fixtures: in-memory job store, scripted LLM provider, recording
notifier, and a fully wired ServiceContainer / FastAPI app built on them.
"""
from __future__ import annotations

import inspect
from typing import Any, Dict, List, Optional

import pytest

from insight_engine.core.captcha import CaptchaVerifier
from insight_engine.core.config import Settings
from insight_engine.core.limiter import limiter
from insight_engine.services.container import ServiceContainer
from insight_engine.services.job_store import JobStore
from insight_engine.services.llm_provider import LLMProvider
from insight_engine.services.notifications import Notifier
from insight_engine.services.storage import LocalStorageProvider

PROMPT_MODEL = "prompt-model"
RESEARCH_MODEL = "research-model"
STRUCTURING_MODEL = "structuring-model"

RESEARCH_TEXT = """# Acme Robotics due diligence

Acme targets warehouse automation [^1^] and competes with Locus [^2^].

Sources:
1. [Warehouse Automation Market Report 2023] https://example.com/market
2. [Locus Robotics raises Series F] https://example.com/locus
"""

STRUCTURED_REPORT = """{
  "companyName": "Acme Robotics",
  "summary": "Acme automates warehouses.",
  "insightScore": {"score": 72, "rationale": "Strong market, crowded field."},
  "valuation": {"low": 20000000, "high": 35000000, "currency": "USD", "narrative": "Comparable rounds."},
  "swotAnalysis": {
    "strengths": [{"point": "Experienced team", "source_ids": [1]}],
    "weaknesses": [],
    "opportunities": ["Labour shortages"],
    "threats": [{"point": "Well funded rivals", "source_ids": [2]}]
  },
  "marketAnalysis": {"narrative": "Growing fast.", "marketSize": [{"metric": "TAM", "value": 18.5, "year": 2023, "source_ids": [1]}]},
  "competitorLandscape": [{"competitorName": "Locus", "funding": "$400M", "keyDifferentiator": "Scale", "source_ids": [2]}],
  "teamAnalysis": "Founders previously exited a logistics startup.",
  "sources": [{"id": 99, "title": "made up", "url": "https://invented.example"}]
}"""


class StubProvider(LLMProvider):
    """Answers by model name; an Exception value is raised, a callable is called."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system, user, *, model, json_output=False):
        self.calls.append({"system": system, "user": user, "model": model, "json_output": json_output})
        answer = self.responses.get(model, "")
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            answer = answer(system, user)
            if inspect.isawaitable(answer):
                answer = await answer
        return answer

    def models_called(self) -> List[str]:
        return [call["model"] for call in self.calls]


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__(base_url="https://insight.example")
        self.sent: List[tuple] = []

    async def send_completion(self, to, job_id):
        self.sent.append(("complete", to, job_id))
        return True

    async def send_error(self, to, job_id, error):
        self.sent.append(("error", to, job_id, error))
        return True


@pytest.fixture(autouse=True, scope="session")
def _disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="development",
        OPENAI_API_KEY="test-key",
        PROMPT_MODEL=PROMPT_MODEL,
        RESEARCH_MODEL=RESEARCH_MODEL,
        STRUCTURING_MODEL=STRUCTURING_MODEL,
        DATABASE_URL="",
        SQLITE_PATH="",
        REDIS_URL="",
        TASK_QUEUE="inline",
        STAGE_TIMEOUT_SECONDS=5.0,
        UPLOAD_DIR=str(tmp_path / "uploads"),
        SMTP_HOST="",
    )


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def provider() -> StubProvider:
    return StubProvider({
        PROMPT_MODEL: "Research Acme Robotics: market size, competitors, team.",
        RESEARCH_MODEL: RESEARCH_TEXT,
        STRUCTURING_MODEL: STRUCTURED_REPORT,
    })


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def container(test_settings, store, provider, notifier) -> ServiceContainer:
    return ServiceContainer.from_settings(
        test_settings,
        store=store,
        provider=provider,
        notifier=notifier,
        storage=LocalStorageProvider(test_settings.UPLOAD_DIR),
        captcha=CaptchaVerifier(secret="", skip=True),
    )
