"""
Job Routes: job intake (text and file) and job lookup.
"""
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from typing import Any, Dict, Optional
import logging
import os
import re

from insight_engine.api.deps import get_container
from insight_engine.core.captcha import CaptchaConfigurationError, CaptchaVerificationError
from insight_engine.core.config import settings
from insight_engine.core.file_validation import validate_file_signature
from insight_engine.core.limiter import limiter, CREATE_JOB_LIMIT, STATUS_LIMIT, UPLOAD_LIMIT
from insight_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)
router = APIRouter()

CHUNK_SIZE = 64 * 1024  # 64KB chunks


# ─── Data Models ─────────────────────────────────────────────────────────────

class CreateJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(min_length=1)
    email: str = Field(min_length=1)
    captcha_token: str = Field(alias="captchaToken", min_length=1)
    marketing_opt_in: bool = Field(default=False, alias="marketingOptIn")

    @field_validator("marketing_opt_in", mode="before")
    @classmethod
    def _form_boolean(cls, value: Any) -> bool:
        # form posts send the literal string "true"
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)


class CreateJobResponse(BaseModel):
    success: bool
    jobId: str
    message: str
    isDuplicate: bool = False


class JobStatusResponse(BaseModel):
    status: str
    error: Optional[str] = None
    finalReport: Optional[Dict[str, Any]] = None


# ─── Helpers ─────────────────────────────────────────────────────────────────

async def _read_intake_payload(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            payload = await request.json()
            return payload if isinstance(payload, dict) else {}
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed request body.")


async def verify_captcha_or_raise(container: ServiceContainer, token: str, request: Request) -> None:
    client_ip = request.client.host if request.client else None
    try:
        await container.captcha.verify(token, remote_ip=client_ip)
    except CaptchaConfigurationError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail=str(e))
    except CaptchaVerificationError as e:
        raise HTTPException(status_code=403, detail=str(e))


def _safe_filename(filename: str) -> str:
    # Remove path separators and non-alphanumeric chars (except .-_)
    base_name = os.path.basename(filename or "")
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", base_name) or "upload.txt"


# ─── Endpoints ───────────────────────────────────────────────────────────────

@router.post("/create-job", response_model=CreateJobResponse)
@limiter.limit(CREATE_JOB_LIMIT)
async def create_job(request: Request, container: ServiceContainer = Depends(get_container)):
    """
    Creates a job from client-side extracted deck text (form or JSON body).
    Near-duplicate submissions return the existing job instead.
    """
    payload = await _read_intake_payload(request)
    try:
        body = CreateJobRequest.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Missing required fields.")

    await verify_captcha_or_raise(container, body.captcha_token, request)

    try:
        result = await container.intake.submit_text(body.email, body.text, body.marketing_opt_in)
    except Exception as e:
        logger.error(f"Failed to create job: {e}")
        raise HTTPException(status_code=500, detail="Internal server error.")

    if result.is_duplicate:
        return CreateJobResponse(
            success=True,
            jobId=result.job.id,
            message="Duplicate job detected, using existing job",
            isDuplicate=True,
        )
    return CreateJobResponse(success=True, jobId=result.job.id, message="Job created successfully")


@router.post("/upload-file", status_code=202)
@limiter.limit(UPLOAD_LIMIT)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    email: str = Form(""),
    captchaToken: str = Form(""),
    marketingOptIn: str = Form("false"),
    container: ServiceContainer = Depends(get_container),
):
    """
    Stores an uploaded deck, creates its job and starts the analysis.
    Plain-text uploads are analysed; other document types end in an
    "error" status during parsing.
    """
    if not email or not captchaToken:
        raise HTTPException(status_code=400, detail="Email and CAPTCHA token are required.")

    await verify_captcha_or_raise(container, captchaToken, request)

    try:
        mime_type = await validate_file_signature(file)

        # Enforce file size limit (streaming, avoids loading entire file to RAM)
        max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
        size = 0
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_bytes:
                raise HTTPException(413, f"File too large. Max size: {settings.MAX_UPLOAD_SIZE_MB}MB")
        await file.seek(0)  # Reset for downstream read

        file_ref = container.storage.save_upload(file.file, _safe_filename(file.filename))
        logger.info(f"File saved to temporary storage: {file_ref}")

        job = await container.intake.submit_file(
            email, file_ref, mime_type, marketingOptIn.strip().lower() == "true"
        )
        container.dispatcher.dispatch(job.id)

        return JSONResponse(status_code=202, content={"message": "Analysis started.", "jobId": job.id})

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Upload failed: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error.")


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
@limiter.limit(STATUS_LIMIT)
async def get_job(request: Request, job_id: str, container: ServiceContainer = Depends(get_container)):
    """
    Job status for polling clients. Only safe fields are returned.
    """
    try:
        job = await container.store.get_job(job_id)
    except Exception as e:
        logger.error(f"Failed to fetch job {job_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.public_view()
