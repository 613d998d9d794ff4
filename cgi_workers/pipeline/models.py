"""
Pydantic models and enums for the CGI generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────

class ContentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class JobStage(str, Enum):
    INITIAL = "initial"
    ENHANCING_DESCRIPTION = "enhancing_description"
    GENERATING_IMAGE = "generating_image"
    CREATING_VIDEO_PROMPT = "creating_video_prompt"
    GENERATING_VIDEO = "generating_video"
    COMPLETED = "completed"


# Forward order; a stage may only move to one with a higher index.
STAGE_ORDER = list(JobStage)

STAGE_PROGRESS = {
    JobStage.INITIAL: 0,
    JobStage.ENHANCING_DESCRIPTION: 10,
    JobStage.GENERATING_IMAGE: 35,
    JobStage.CREATING_VIDEO_PROMPT: 60,
    JobStage.GENERATING_VIDEO: 80,
    JobStage.COMPLETED: 100,
}


# ── Business constants ───────────────────────────────────────────────────────

CREDIT_COSTS = {
    ContentType.IMAGE: 1,
    ContentType.VIDEO: 5,
}

DEFAULT_TITLE = "New CGI project"

# Cost keys in Job.cost_breakdown
COST_DESCRIPTION = "description_enhancement"
COST_IMAGE = "image_generation"
COST_VIDEO_PROMPT = "video_prompt"
COST_VIDEO = "video_generation"

FALLBACK_DESCRIPTION_TEMPLATE = (
    "Photorealistic CGI product shot. Place the product naturally inside the "
    "scene, matching the scene's perspective, lighting and color temperature. "
    "Soft realistic shadows and reflections, sharp product detail, commercial "
    "advertising quality. {intent}"
)

FALLBACK_VIDEO_PROMPT_TEMPLATE = (
    "Slow cinematic camera push-in around the product, subtle parallax, "
    "gentle light sweep across the surface, smooth professional motion, "
    "product stays in focus. {intent}"
)


# ── Job record ───────────────────────────────────────────────────────────────

class JobInputs(BaseModel):
    product_image_url: str
    scene_image_url: str
    description: str = ""
    title: str = DEFAULT_TITLE


class JobArtifacts(BaseModel):
    enhanced_description: Optional[str] = None
    generated_image_url: Optional[str] = None
    video_prompt: Optional[str] = None
    output_url: Optional[str] = None


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    content_type: ContentType
    stage: JobStage = JobStage.INITIAL
    status: JobStatus = JobStatus.PROCESSING
    progress: int = Field(0, ge=0, le=100)
    credits_reserved: int
    credits_refunded: bool = False
    inputs: JobInputs
    cost_breakdown: dict[str, float] = Field(default_factory=dict)
    artifacts: JobArtifacts = Field(default_factory=JobArtifacts)
    video_provider: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_cost(self) -> float:
        return round(sum(self.cost_breakdown.values()), 6)


# ── API Request / Response Models ────────────────────────────────────────────

class JobSubmitRequest(BaseModel):
    content_type: Optional[str] = Field(None, description="'image' or 'video'")
    product_image_url: Optional[str] = None
    scene_image_url: Optional[str] = None
    description: str = ""
    title: Optional[str] = None


class JobStatusResponse(BaseModel):
    id: str
    title: str
    content_type: ContentType
    status: JobStatus
    stage: JobStage
    progress: int
    credits_reserved: int
    artifacts: JobArtifacts
    cost_breakdown: dict[str, float]
    total_cost: float
    video_provider: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            id=job.id,
            title=job.inputs.title,
            content_type=job.content_type,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            credits_reserved=job.credits_reserved,
            artifacts=job.artifacts,
            cost_breakdown=job.cost_breakdown,
            total_cost=job.total_cost,
            video_provider=job.video_provider,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobSummary(BaseModel):
    id: str
    title: str
    content_type: ContentType
    status: JobStatus
    stage: JobStage
    progress: int
    created_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            id=job.id,
            title=job.inputs.title,
            content_type=job.content_type,
            status=job.status,
            stage=job.stage,
            progress=job.progress,
            created_at=job.created_at,
        )


class DownloadResponse(BaseModel):
    download_url: str
    content_type: ContentType
    preview_url: Optional[str] = None


class BalanceResponse(BaseModel):
    account_id: str
    credits: int


class GrantRequest(BaseModel):
    account_id: str
    amount: int
