"""
Job Store — job records keyed by id, scoped by owning account.

Backends:
  - SupabaseJobStore: `cgi_jobs` table via the service-role client.
  - InMemoryJobStore: dict + lock; used when Supabase is not configured.

Every update goes through apply_patch(), which rejects backwards stage
moves, decreasing progress, and any write to a terminal job.
"""

import os
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from supabase import create_client, Client

from .errors import InvalidTransition, JobNotFound
from .models import (
    ContentType,
    Job,
    JobInputs,
    JobStage,
    JobStatus,
    STAGE_ORDER,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "cgi_jobs"

_MERGED_FIELDS = ("artifacts", "cost_breakdown")


def apply_patch(job: Job, patch: dict) -> Job:
    """Return a new Job with `patch` applied, or raise InvalidTransition."""
    if job.is_terminal:
        raise InvalidTransition(f"Job {job.id} is {job.status.value}; it can no longer change")

    unknown = set(patch) - set(Job.model_fields)
    if unknown:
        raise InvalidTransition(f"Unknown job fields: {sorted(unknown)}")
    if "id" in patch or "owner_id" in patch or "credits_reserved" in patch:
        raise InvalidTransition("id, owner_id and credits_reserved are fixed for a job's lifetime")

    data = job.model_dump()
    for field, value in patch.items():
        if field in _MERGED_FIELDS:
            if hasattr(value, "model_dump"):
                value = value.model_dump(exclude_none=True)
            data[field] = {**data[field], **value}
        else:
            data[field] = value
    data["updated_at"] = datetime.now(timezone.utc)

    updated = Job.model_validate(data)

    if STAGE_ORDER.index(updated.stage) < STAGE_ORDER.index(job.stage):
        raise InvalidTransition(
            f"Job {job.id}: stage cannot move back from {job.stage.value} to {updated.stage.value}"
        )
    if updated.progress < job.progress:
        raise InvalidTransition(
            f"Job {job.id}: progress cannot decrease from {job.progress} to {updated.progress}"
        )
    if updated.status == JobStatus.COMPLETED and updated.stage != JobStage.COMPLETED:
        raise InvalidTransition(f"Job {job.id}: completed status requires the completed stage")
    if updated.stage == JobStage.COMPLETED and updated.status != JobStatus.COMPLETED:
        raise InvalidTransition(f"Job {job.id}: completed stage requires the completed status")

    return updated


class JobStore(ABC):

    @abstractmethod
    def create(
        self,
        owner_id: str,
        content_type: ContentType,
        credits_reserved: int,
        inputs: JobInputs,
    ) -> Job:
        ...

    @abstractmethod
    def get(self, job_id: str, owner_id: str) -> Job:
        """Owner-scoped lookup. A job owned by someone else raises JobNotFound."""

    @abstractmethod
    def get_by_id(self, job_id: str) -> Job:
        """Unscoped lookup for the pipeline executor."""

    @abstractmethod
    def update(self, job_id: str, patch: dict) -> Job:
        ...

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> list[Job]:
        """Most recent first."""

    @abstractmethod
    def count_by_status(self) -> dict[str, int]:
        ...


# ── In-memory ─────────────────────────────────────────────────────────────────

class InMemoryJobStore(JobStore):
    """Readers get deep copies, so a status poll never sees a half-applied patch."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, owner_id, content_type, credits_reserved, inputs) -> Job:
        job = Job(
            owner_id=owner_id,
            content_type=ContentType(content_type),
            credits_reserved=credits_reserved,
            inputs=inputs,
        )
        with self._lock:
            self._jobs[job.id] = job
        logger.info(f"[{job.id}] created for {owner_id} ({job.content_type.value})")
        return job.model_copy(deep=True)

    def get(self, job_id: str, owner_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.owner_id != owner_id:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def get_by_id(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job.model_copy(deep=True)

    def update(self, job_id: str, patch: dict) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            updated = apply_patch(job, patch)
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def list_by_owner(self, owner_id: str) -> list[Job]:
        with self._lock:
            # Newest insertion first, so the stable sort breaks created_at ties the same way
            jobs = [j.model_copy(deep=True) for j in reversed(self._jobs.values()) if j.owner_id == owner_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status.value] += 1
        return counts


# ── Supabase ──────────────────────────────────────────────────────────────────

_service_client: Optional[Client] = None


def _get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


def _job_to_row(job: Job) -> dict:
    data = job.model_dump(mode="json")
    data["user_id"] = data.pop("owner_id")
    return data


def _row_to_job(row: dict) -> Job:
    data = dict(row)
    data["owner_id"] = data.pop("user_id")
    return Job.model_validate(data)


class SupabaseJobStore(JobStore):
    """
    Row per job in `cgi_jobs`. The executor is the only writer for a job
    while it runs, so update() is a plain read-guard-write.
    """

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def _sb(self) -> Client:
        return self._client or _get_service_client()

    def _fetch(self, job_id: str) -> Optional[dict]:
        result = self._sb.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
        return result.data[0] if result.data else None

    def create(self, owner_id, content_type, credits_reserved, inputs) -> Job:
        job = Job(
            owner_id=owner_id,
            content_type=ContentType(content_type),
            credits_reserved=credits_reserved,
            inputs=inputs,
        )
        self._sb.table(JOBS_TABLE).insert(_job_to_row(job)).execute()
        logger.info(f"[{job.id}] created for {owner_id} ({job.content_type.value})")
        return job

    def get(self, job_id: str, owner_id: str) -> Job:
        result = (
            self._sb.table(JOBS_TABLE)
            .select("*")
            .eq("id", job_id)
            .eq("user_id", owner_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise JobNotFound(job_id)
        return _row_to_job(result.data[0])

    def get_by_id(self, job_id: str) -> Job:
        row = self._fetch(job_id)
        if row is None:
            raise JobNotFound(job_id)
        return _row_to_job(row)

    def update(self, job_id: str, patch: dict) -> Job:
        updated = apply_patch(self.get_by_id(job_id), patch)
        row = _job_to_row(updated)
        for fixed in ("id", "user_id", "created_at", "credits_reserved"):
            row.pop(fixed)
        self._sb.table(JOBS_TABLE).update(row).eq("id", job_id).execute()
        return updated

    def list_by_owner(self, owner_id: str) -> list[Job]:
        result = (
            self._sb.table(JOBS_TABLE)
            .select("*")
            .eq("user_id", owner_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [_row_to_job(row) for row in result.data or []]

    def count_by_status(self) -> dict[str, int]:
        counts = {}
        for status in JobStatus:
            result = (
                self._sb.table(JOBS_TABLE)
                .select("id", count="exact")
                .eq("status", status.value)
                .limit(1)
                .execute()
            )
            counts[status.value] = result.count or 0
        return counts
