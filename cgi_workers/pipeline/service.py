"""
CGI Job Service — the submission / status / listing façade.

Submission order:
  1. Validate inputs (no credit movement on failure)
  2. Reserve credits for the content type (InsufficientCredits → no job)
  3. Create the job record (refund if this fails)
  4. Spawn the pipeline and return the initial job immediately

Storage is chosen from the environment: Redis ledger if REDIS_URL is
reachable, Supabase job store if its credentials are set, in-memory
otherwise.
"""

import os
import logging
from typing import Optional

import redis

from .. import metrics
from .errors import ValidationError
from .job_store import InMemoryJobStore, JobStore, SupabaseJobStore
from .ledger import CreditLedger, InMemoryCreditLedger, RedisCreditLedger
from .models import (
    CREDIT_COSTS,
    DEFAULT_TITLE,
    ContentType,
    DownloadResponse,
    Job,
    JobInputs,
    JobStatus,
    JobStatusResponse,
    JobSummary,
)
from .orchestrator import PipelineExecutor
from .providers import (
    FalImageGenerator,
    FalKlingVideoGenerator,
    GeminiDescriptionEnhancer,
    GeminiVideoPromptWriter,
    KieVeoVideoGenerator,
    OrderedFallback,
)

logger = logging.getLogger(__name__)


class JobService:

    def __init__(self, store: JobStore, ledger: CreditLedger, executor: PipelineExecutor):
        self.store = store
        self.ledger = ledger
        self.executor = executor

    # ── Submission ───────────────────────────────────────────────────────

    @staticmethod
    def _validate(
        owner_id: str,
        content_type,
        product_image_url: Optional[str],
        scene_image_url: Optional[str],
        description,
    ) -> ContentType:
        if not owner_id:
            raise ValidationError("An authenticated account is required")
        if not product_image_url or not str(product_image_url).strip():
            raise ValidationError("Product image reference is required")
        if not scene_image_url or not str(scene_image_url).strip():
            raise ValidationError("Scene image reference is required")
        if description is not None and not isinstance(description, str):
            raise ValidationError("Description must be text")
        try:
            return ContentType(content_type)
        except ValueError:
            allowed = ", ".join(c.value for c in ContentType)
            raise ValidationError(f"content_type must be one of: {allowed}")

    async def submit_job(
        self,
        owner_id: str,
        content_type: str,
        product_image_url: Optional[str],
        scene_image_url: Optional[str],
        description: str = "",
        title: Optional[str] = None,
    ) -> Job:
        metrics.inc_counter("requests.submit")
        ctype = self._validate(owner_id, content_type, product_image_url, scene_image_url, description)
        required = CREDIT_COSTS[ctype]

        self.ledger.reserve(owner_id, required)

        inputs = JobInputs(
            product_image_url=product_image_url.strip(),
            scene_image_url=scene_image_url.strip(),
            description=(description or "").strip(),
            title=(title or "").strip() or DEFAULT_TITLE,
        )
        try:
            job = self.store.create(owner_id, ctype, required, inputs)
        except Exception:
            logger.error(f"Job creation failed for {owner_id}; refunding {required} credit(s)", exc_info=True)
            self.ledger.refund(owner_id, required)
            raise

        self.executor.spawn(job.id)
        logger.info(f"[{job.id}] submitted by {owner_id}: {ctype.value}, {required} credit(s) reserved")
        return job

    # ── Status / listing ─────────────────────────────────────────────────

    def get_job_status(self, job_id: str, owner_id: str) -> JobStatusResponse:
        return JobStatusResponse.from_job(self.store.get(job_id, owner_id))

    def list_jobs(self, owner_id: str) -> list[JobSummary]:
        return [JobSummary.from_job(job) for job in self.store.list_by_owner(owner_id)]

    def get_download(self, job_id: str, owner_id: str) -> DownloadResponse:
        """Raises JobNotFound for unknown/foreign jobs, ValueError if not completed yet."""
        job = self.store.get(job_id, owner_id)
        if job.status != JobStatus.COMPLETED or not job.artifacts.output_url:
            raise ValueError(f"Job {job_id} is {job.status.value}; nothing to download")
        return DownloadResponse(
            download_url=job.artifacts.output_url,
            content_type=job.content_type,
            preview_url=job.artifacts.generated_image_url,
        )

    # ── Credits ──────────────────────────────────────────────────────────

    def get_balance(self, owner_id: str) -> int:
        return self.ledger.balance(owner_id)

    def grant_credits(self, owner_id: str, amount: int) -> int:
        if not owner_id:
            raise ValidationError("account_id is required")
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer")
        new_balance = self.ledger.grant(owner_id, amount)
        logger.info(f"Granted {amount} credit(s) to {owner_id}")
        return new_balance


# ═════════════════════════════════════════════════════════════════════════════
# Default wiring
# ═════════════════════════════════════════════════════════════════════════════

def _connect_redis():
    """Return a Redis client, or None when REDIS_URL is unset or unreachable."""
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None
    client = redis.from_url(redis_url, decode_responses=False)
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}; using in-memory credit ledger")
        return None
    logger.info(f"Redis connected: {redis_url[:30]}...")
    return client


def build_job_service() -> JobService:
    redis_client = _connect_redis()
    ledger = RedisCreditLedger(redis_client) if redis_client else InMemoryCreditLedger()

    if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        store = SupabaseJobStore()
    else:
        logger.warning("Supabase not configured; jobs are kept in memory")
        store = InMemoryJobStore()

    executor = PipelineExecutor(
        store=store,
        ledger=ledger,
        description_enhancer=GeminiDescriptionEnhancer(),
        image_generator=FalImageGenerator(),
        video_prompt_writer=GeminiVideoPromptWriter(),
        video_generator=OrderedFallback(
            "video_generation",
            [KieVeoVideoGenerator(), FalKlingVideoGenerator()],
        ),
    )
    return JobService(store, ledger, executor)


_service: Optional[JobService] = None


def get_job_service() -> JobService:
    """Lazy singleton; FastAPI routes depend on this."""
    global _service
    if _service is None:
        _service = build_job_service()
    return _service


def get_storage_backends(service: JobService) -> dict:
    return {
        "ledger": "redis" if isinstance(service.ledger, RedisCreditLedger) else "memory",
        "job_store": "supabase" if isinstance(service.store, SupabaseJobStore) else "memory",
    }
