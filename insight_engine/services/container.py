"""
Service container: builds every collaborator once from Settings and hands
them to the API and to background workers.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from insight_engine.core.captcha import CaptchaVerifier
from insight_engine.services.background import AnalysisDispatcher, BackgroundRunner
from insight_engine.services.dedup import DeduplicationGuard
from insight_engine.services.intake import JobIntake
from insight_engine.services.job_store import JobStore
from insight_engine.services.llm_provider import LLMProvider, OpenAIProvider
from insight_engine.services.notifications import Notifier
from insight_engine.services.orchestrator import AnalysisOrchestrator
from insight_engine.services.reconciler import CompletionReconciler, WebhookReconcilerClient
from insight_engine.services.storage import LocalStorageProvider, StorageProvider

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: object
    store: JobStore
    provider: LLMProvider
    notifier: Notifier
    storage: StorageProvider
    intake: JobIntake
    reconciler: CompletionReconciler
    orchestrator: AnalysisOrchestrator
    runner: BackgroundRunner
    dispatcher: AnalysisDispatcher
    captcha: CaptchaVerifier

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        store: Optional[JobStore] = None,
        provider: Optional[LLMProvider] = None,
        notifier: Optional[Notifier] = None,
        storage: Optional[StorageProvider] = None,
        captcha: Optional[CaptchaVerifier] = None,
    ) -> "ServiceContainer":
        store = store or JobStore.from_settings(settings)
        provider = provider or OpenAIProvider.from_settings(settings)
        notifier = notifier or Notifier.from_settings(settings)
        storage = storage or LocalStorageProvider(settings.UPLOAD_DIR)

        guard = DeduplicationGuard(
            store,
            same_email_window=settings.DEDUP_SAME_EMAIL_WINDOW_SECONDS,
            text_window=settings.DEDUP_TEXT_WINDOW_SECONDS,
        )
        reconciler = CompletionReconciler(
            store,
            provider,
            notifier,
            model=settings.STRUCTURING_MODEL,
            upload_dir=settings.UPLOAD_DIR,
            upload_max_age_seconds=settings.UPLOAD_MAX_AGE_SECONDS,
        )
        if settings.RECONCILE_VIA_WEBHOOK:
            stage_reconciler = WebhookReconcilerClient(
                settings.BASE_URL, timeout=settings.STAGE_TIMEOUT_SECONDS
            )
        else:
            stage_reconciler = reconciler

        orchestrator = AnalysisOrchestrator(
            store,
            provider,
            stage_reconciler,
            notifier,
            prompt_model=settings.PROMPT_MODEL,
            research_model=settings.RESEARCH_MODEL,
            stage_timeout=settings.STAGE_TIMEOUT_SECONDS,
            prompt_char_limit=settings.PROMPT_INPUT_CHAR_LIMIT,
        )
        runner = BackgroundRunner()
        return cls(
            settings=settings,
            store=store,
            provider=provider,
            notifier=notifier,
            storage=storage,
            intake=JobIntake(store, guard),
            reconciler=reconciler,
            orchestrator=orchestrator,
            runner=runner,
            dispatcher=AnalysisDispatcher(runner, orchestrator, settings.TASK_QUEUE),
            captcha=captcha or CaptchaVerifier.from_settings(settings),
        )

    async def startup(self) -> None:
        mode = await self.store.open()
        logger.info(f"Services ready (job store: {mode.value}, task queue: {self.dispatcher.task_queue})")

    async def shutdown(self) -> None:
        await self.runner.shutdown()
        await self.store.close()
