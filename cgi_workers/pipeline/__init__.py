"""
CGI Generation Pipeline

Turns a product image + scene image into a CGI image, or a CGI image
followed by a short video:
  Description enhancement → Image generation → Video prompt → Video generation

Credits are reserved at submission and fully refunded if the job fails.
"""

from .models import ContentType, JobStage, JobStatus
from .orchestrator import PipelineExecutor
from .routes import credit_router, job_router
from .service import JobService, build_job_service, get_job_service

__all__ = [
    "ContentType",
    "JobStage",
    "JobStatus",
    "PipelineExecutor",
    "JobService",
    "build_job_service",
    "get_job_service",
    "job_router",
    "credit_router",
]
