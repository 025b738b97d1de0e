"""
Analysis Routes: start the pipeline for a job and poll its status.
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import logging

from insight_engine.api.deps import get_container
from insight_engine.api.routes.jobs import JobStatusResponse
from insight_engine.core.limiter import limiter, ANALYZE_LIMIT, STATUS_LIMIT
from insight_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter()


class StartAnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)


@router.post("/start-analysis", status_code=202)
@limiter.limit(ANALYZE_LIMIT)
async def start_analysis(
    request: Request,
    body: StartAnalysisRequest,
    container: ServiceContainer = Depends(get_container),
):
    """
    Launches the analysis in the background and returns immediately.
    Progress is observed by polling the job status.
    """
    try:
        job = await container.store.get_job(body.job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found.")

        logger.info(f"[{job.id}] Start requested (status: {job.status.value})")
        container.dispatcher.dispatch(job.id)
        return JSONResponse(status_code=202, content={"message": "Analysis started.", "jobId": job.id})

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to start analysis: {e}")
        raise HTTPException(status_code=500, detail="Internal server error.")


@router.get("/start-analysis", response_model=JobStatusResponse)
@limiter.limit(STATUS_LIMIT)
async def get_analysis_status(
    request: Request,
    jobId: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
):
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required.")

    job = await container.store.get_job(jobId)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found.")

    # Only return safe fields
    return job.public_view()
