"""
Webhook Route: receives finished research and runs the Completion Reconciler.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
import logging

from insight_engine.api.deps import get_container
from insight_engine.core.limiter import limiter, WEBHOOK_LIMIT
from insight_engine.services.container import ServiceContainer
from insight_engine.services.reconciler import JobNotFound, ReconciliationConflict

logger = logging.getLogger(__name__)
router = APIRouter()


class SourceAnnotation(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    url: Optional[str] = None


class ResearchContent(BaseModel):
    text: str = ""
    annotations: List[SourceAnnotation] = Field(default_factory=list)


class ResearchCompletePayload(BaseModel):
    content: List[ResearchContent] = Field(min_length=1)


@router.post("/webhook/research-complete")
@limiter.limit(WEBHOOK_LIMIT)
async def research_complete(
    request: Request,
    body: ResearchCompletePayload,
    jobId: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required.")

    research = body.content[0]
    try:
        outcome = await container.reconciler.reconcile(
            jobId,
            research.text,
            [annotation.model_dump() for annotation in research.annotations],
        )
    except JobNotFound:
        logger.error(f"[ERROR] Job not found for jobId: {jobId}")
        raise HTTPException(status_code=404, detail="Job not found.")
    except ReconciliationConflict as e:
        logger.warning(f"[{jobId}] Webhook rejected: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"[{jobId}] Webhook processing failed: {e}")
        try:
            await container.reconciler.record_failure(jobId)
        except Exception as store_error:
            logger.error(f"[{jobId}] Could not record failure: {store_error}")
        return JSONResponse(status_code=500, content={"error": "Failed to process report."})

    if not outcome.ok:
        return JSONResponse(status_code=500, content={"error": "Failed to process report."})
    return {"success": True, "status": outcome.status.value}
