from fastapi import APIRouter

from insight_engine.api.routes import analysis, jobs, webhook

router = APIRouter()
router.include_router(jobs.router)
router.include_router(analysis.router)
router.include_router(webhook.router)
