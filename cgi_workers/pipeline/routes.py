"""
FastAPI routes for the CGI generation pipeline.

Job Endpoints:
  POST /jobs                    — Submit a job (reserves 1 credit for image, 5 for video)
  GET  /jobs                    — List the caller's jobs, newest first
  GET  /jobs/{id}/status        — Poll job status / progress / artifacts / costs
  GET  /jobs/{id}/download      — Final output of a completed job

Credit Endpoints:
  GET  /credits                 — Caller's balance
  POST /internal/credits/grant  — Add credits (payment capture)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..auth_middleware import get_account_id
from .errors import InsufficientCredits, JobNotFound, ValidationError
from .models import (
    BalanceResponse,
    DownloadResponse,
    GrantRequest,
    JobStatusResponse,
    JobSubmitRequest,
    JobSummary,
)
from .service import JobService, get_job_service

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Job Router
# ═════════════════════════════════════════════════════════════════════════════

job_router = APIRouter(prefix="/jobs", tags=["jobs"])


@job_router.post("", response_model=JobStatusResponse)
async def submit_job(
    request: JobSubmitRequest,
    account_id: str = Depends(get_account_id),
    service: JobService = Depends(get_job_service),
):
    """
    Reserve credits → create job → start pipeline in the background.

    Errors:
      - 400: Missing image references or unknown content type
      - 402: Insufficient credits
    """
    try:
        job = await service.submit_job(
            owner_id=account_id,
            content_type=request.content_type,
            product_image_url=request.product_image_url,
            scene_image_url=request.scene_image_url,
            description=request.description,
            title=request.title,
        )
        return JobStatusResponse.from_job(job)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InsufficientCredits as e:
        raise HTTPException(status_code=402, detail=str(e))
    except Exception as e:
        logger.error(f"Job submission failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Job submission failed")


@job_router.get("", response_model=list[JobSummary])
async def list_jobs(
    account_id: str = Depends(get_account_id),
    service: JobService = Depends(get_job_service),
):
    """List the caller's jobs, newest first."""
    return service.list_jobs(account_id)


@job_router.get("/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    account_id: str = Depends(get_account_id),
    service: JobService = Depends(get_job_service),
):
    """Jobs owned by other accounts are reported as 404, same as unknown ids."""
    try:
        return service.get_job_status(job_id, account_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


@job_router.get("/{job_id}/download", response_model=DownloadResponse)
async def download_job(
    job_id: str,
    account_id: str = Depends(get_account_id),
    service: JobService = Depends(get_job_service),
):
    """
    Errors:
      - 404: Unknown job or not yours
      - 409: Job not completed
    """
    try:
        return service.get_download(job_id, account_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Credit Router
# ═════════════════════════════════════════════════════════════════════════════

credit_router = APIRouter(tags=["credits"])


@credit_router.get("/credits", response_model=BalanceResponse)
async def get_balance(
    account_id: str = Depends(get_account_id),
    service: JobService = Depends(get_job_service),
):
    return BalanceResponse(account_id=account_id, credits=service.get_balance(account_id))


@credit_router.post("/internal/credits/grant", response_model=BalanceResponse)
async def grant_credits(
    request: GrantRequest,
    service: JobService = Depends(get_job_service),
):
    """Called by payment capture after a successful purchase."""
    try:
        balance = service.grant_credits(request.account_id, request.amount)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BalanceResponse(account_id=request.account_id, credits=balance)
