"""
PipelineExecutor — runs one job through its fixed stage sequence.

  1. enhancing_description (10%)  — Gemini; on failure use a built-in template
  2. generating_image      (35%)  — fal.ai FLUX Kontext; on failure the job fails
     image jobs complete here (100%)
  3. creating_video_prompt (60%)  — Gemini; on failure use a built-in template
  4. generating_video      (80%)  — Kie.ai Veo, then fal.ai Kling; if both fail the job fails
  5. completed             (100%)

Each job runs in its own supervised asyncio task. Whatever goes wrong
inside a stage, the task ends with the job in a terminal state, and a
failed job always gets its reserved credits back.
"""

import time
import asyncio
import logging
from typing import Optional

from .. import metrics
from .errors import JobFailed, JobNotFound, ProviderError
from .job_store import JobStore
from .ledger import CreditLedger
from .models import (
    COST_DESCRIPTION,
    COST_IMAGE,
    COST_VIDEO,
    COST_VIDEO_PROMPT,
    FALLBACK_DESCRIPTION_TEMPLATE,
    FALLBACK_VIDEO_PROMPT_TEMPLATE,
    STAGE_PROGRESS,
    ContentType,
    Job,
    JobStage,
    JobStatus,
)
from .providers import OrderedFallback, ProviderAdapter

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30


class PipelineExecutor:
    """
    Usage:
        executor = PipelineExecutor(store, ledger, describer, imager, prompter, video)
        executor.spawn(job.id)        # returns immediately
        ...
        await executor.shutdown()     # on application exit
    """

    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        description_enhancer: ProviderAdapter,
        image_generator: ProviderAdapter,
        video_prompt_writer: ProviderAdapter,
        video_generator: ProviderAdapter | OrderedFallback,
    ):
        self._store = store
        self._ledger = ledger
        self._description_enhancer = description_enhancer
        self._image_generator = image_generator
        self._video_prompt_writer = video_prompt_writer
        self._video_generator = video_generator
        self._tasks: set[asyncio.Task] = set()

    # ── Task supervision ─────────────────────────────────────────────────

    def spawn(self, job_id: str) -> asyncio.Task:
        """Start the pipeline for `job_id` in the background."""
        task = asyncio.create_task(self.run(job_id), name=f"cgi-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        metrics.set_gauge("active_jobs", len(self._tasks))
        if task.cancelled():
            logger.warning(f"{task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"{task.get_name()} crashed: {exc!r}", exc_info=exc)

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def shutdown(self, timeout: float = SHUTDOWN_GRACE_SECONDS):
        """Wait for in-flight pipelines, then cancel the rest (they are failed and refunded)."""
        if not self._tasks:
            return
        logger.info(f"Waiting up to {timeout}s for {len(self._tasks)} running job(s)")
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Run ──────────────────────────────────────────────────────────────

    async def run(self, job_id: str) -> Optional[Job]:
        """Execute every stage for one job. Returns the terminal job record."""
        try:
            job = self._store.get_by_id(job_id)
        except JobNotFound:
            logger.error(f"[{job_id}] cannot run pipeline: job not found")
            return None

        metrics.set_gauge("active_jobs", len(self._tasks))
        started = time.monotonic()
        try:
            return await self._execute(job)
        except JobFailed as e:
            return self._fail(job, e.reason)
        except asyncio.CancelledError:
            self._fail(job, "Job cancelled before completion")
            raise
        except Exception as e:
            logger.error(f"[{job_id}] unexpected pipeline error: {e}", exc_info=True)
            metrics.record_error("pipeline", e.__class__.__name__, str(e), job.owner_id, job_id)
            return self._fail(job, f"Internal pipeline error: {e}")
        finally:
            metrics.record_latency("jobs.duration", (time.monotonic() - started) * 1000)

    async def _execute(self, job: Job) -> Job:
        inputs = job.inputs

        # ── Stage 1: Description enhancement ─────────────────────────
        self._advance(job.id, JobStage.ENHANCING_DESCRIPTION)
        description, cost = await self._call_or_template(
            job.id,
            self._description_enhancer,
            FALLBACK_DESCRIPTION_TEMPLATE,
            inputs.description,
            product_image_url=inputs.product_image_url,
            scene_image_url=inputs.scene_image_url,
            description=inputs.description,
        )
        self._store.update(job.id, {
            "artifacts": {"enhanced_description": description},
            "cost_breakdown": {COST_DESCRIPTION: cost},
        })

        # ── Stage 2: Image generation ────────────────────────────────
        self._advance(job.id, JobStage.GENERATING_IMAGE)
        try:
            image = await self._image_generator.call(
                description=description,
                scene_image_url=inputs.scene_image_url,
            )
        except ProviderError as e:
            raise JobFailed(job.id, f"Image generation failed: {e}") from e

        if job.content_type == ContentType.IMAGE:
            return self._complete(job, image.artifact, {COST_IMAGE: image.cost}, {
                "generated_image_url": image.artifact,
            })

        self._store.update(job.id, {
            "artifacts": {"generated_image_url": image.artifact},
            "cost_breakdown": {COST_IMAGE: image.cost},
        })

        # ── Stage 3: Video prompt ────────────────────────────────────
        self._advance(job.id, JobStage.CREATING_VIDEO_PROMPT)
        video_prompt, cost = await self._call_or_template(
            job.id,
            self._video_prompt_writer,
            FALLBACK_VIDEO_PROMPT_TEMPLATE,
            inputs.description,
            image_url=image.artifact,
            description=inputs.description,
        )
        self._store.update(job.id, {
            "artifacts": {"video_prompt": video_prompt},
            "cost_breakdown": {COST_VIDEO_PROMPT: cost},
        })

        # ── Stage 4: Video generation (primary, then fallback) ───────
        self._advance(job.id, JobStage.GENERATING_VIDEO)
        try:
            video = await self._video_generator.call(image_url=image.artifact, prompt=video_prompt)
        except ProviderError as e:
            raise JobFailed(job.id, f"Video generation failed: {e}") from e

        return self._complete(
            job, video.artifact, {COST_VIDEO: video.cost}, {}, video_provider=video.provider,
        )

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _call_or_template(
        self,
        job_id: str,
        adapter: ProviderAdapter,
        template: str,
        intent: str,
        **inputs,
    ) -> tuple[str, float]:
        """Enhancement stages never fail the job: a provider error yields the template text."""
        try:
            result = await adapter.call(**inputs)
            return result.artifact, result.cost
        except ProviderError as e:
            logger.warning(f"[{job_id}] {adapter.name} failed ({e.message}); using built-in template")
            return template.format(intent=intent or "").strip(), 0.0

    def _advance(self, job_id: str, stage: JobStage, **patch) -> Job:
        progress = STAGE_PROGRESS[stage]
        job = self._store.update(job_id, {"stage": stage, "progress": progress, **patch})
        logger.info(f"[{job_id}] {job.status.value} → {stage.value} ({progress}%)")
        return job

    def _complete(
        self,
        job: Job,
        output_url: str,
        costs: dict,
        artifacts: dict,
        video_provider: Optional[str] = None,
    ) -> Job:
        patch = {
            "status": JobStatus.COMPLETED,
            "artifacts": {**artifacts, "output_url": output_url},
            "cost_breakdown": costs,
        }
        if video_provider:
            patch["video_provider"] = video_provider

        done = self._advance(job.id, JobStage.COMPLETED, **patch)
        metrics.inc_counter("jobs.completed")
        logger.info(f"[{job.id}] completed: {output_url} (cost ${done.total_cost:.3f})")
        return done

    def _fail(self, job: Job, reason: str) -> Job:
        """
        Full refund of the reservation, then record the terminal failure.

        owner_id and credits_reserved never change after creation, so the
        refund works from the record `run` started with even when the store
        is unreachable. Store errors here are logged, never raised.
        """
        current = job
        try:
            current = self._store.get_by_id(job.id)
        except Exception as e:
            logger.error(f"[{job.id}] could not re-read job before failing it: {e}")
            metrics.record_error("job_store", e.__class__.__name__, str(e), job.owner_id, job.id)

        if current.is_terminal:
            logger.warning(f"[{job.id}] already {current.status.value}; not failing again")
            return current

        refunded = current.credits_refunded
        if not refunded:
            try:
                self._ledger.refund(job.owner_id, job.credits_reserved)
                refunded = True
            except Exception as e:
                logger.error(
                    f"[{job.id}] refund of {job.credits_reserved} credit(s) to "
                    f"{job.owner_id} failed: {e}",
                    exc_info=True,
                )
                metrics.record_error("refund", e.__class__.__name__, str(e), job.owner_id, job.id)

        terminal = {"status": JobStatus.FAILED, "error": reason, "credits_refunded": refunded}
        try:
            failed = self._store.update(job.id, terminal)
        except Exception as e:
            logger.error(f"[{job.id}] could not record failure in the job store: {e}", exc_info=True)
            metrics.record_error("job_store", e.__class__.__name__, str(e), job.owner_id, job.id)
            failed = current.model_copy(update=terminal)

        metrics.inc_counter("jobs.failed")
        metrics.record_error("pipeline", "JobFailed", reason, job.owner_id, job.id)
        logger.error(f"[{job.id}] failed at {failed.stage.value}: {reason}")
        return failed
