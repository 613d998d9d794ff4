"""
Tests for cgi_workers.pipeline.service
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from cgi_workers.pipeline.errors import InsufficientCredits, JobNotFound, ValidationError
from cgi_workers.pipeline.job_store import InMemoryJobStore
from cgi_workers.pipeline.ledger import InMemoryCreditLedger, RedisCreditLedger
from cgi_workers.pipeline.models import DEFAULT_TITLE, JobStage, JobStatus
from cgi_workers.pipeline.service import build_job_service, get_storage_backends

from conftest import ACCOUNT, OTHER_ACCOUNT, PRODUCT_URL, SCENE_URL, ScriptedAdapter, run_to_end


class TestSubmitJob:

    @pytest.mark.asyncio
    async def test_returns_initial_state_immediately(self, make_service):
        service = make_service(balance=5)
        job = await service.submit_job(ACCOUNT, "video", PRODUCT_URL, SCENE_URL, "ad")

        assert job.status == JobStatus.PROCESSING
        assert job.stage == JobStage.INITIAL
        assert job.progress == 0
        assert job.credits_reserved == 5
        assert service.get_balance(ACCOUNT) == 0
        await run_to_end(service)

    @pytest.mark.asyncio
    async def test_scenario_b_insufficient_credits_creates_no_job(self, make_service):
        service = make_service(balance=3)

        with pytest.raises(InsufficientCredits):
            await service.submit_job(ACCOUNT, "video", PRODUCT_URL, SCENE_URL)

        assert service.get_balance(ACCOUNT) == 3
        assert service.list_jobs(ACCOUNT) == []
        assert service.executor.active_count == 0

    @pytest.mark.parametrize("content_type,product,scene", [
        ("video", None, SCENE_URL),
        ("video", PRODUCT_URL, ""),
        ("video", "   ", SCENE_URL),
        ("gif", PRODUCT_URL, SCENE_URL),
        (None, PRODUCT_URL, SCENE_URL),
    ])
    @pytest.mark.asyncio
    async def test_validation_errors_move_no_credits(self, make_service, content_type, product, scene):
        service = make_service(balance=10)

        with pytest.raises(ValidationError):
            await service.submit_job(ACCOUNT, content_type, product, scene)

        assert service.get_balance(ACCOUNT) == 10
        assert service.list_jobs(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_missing_account_is_rejected(self, make_service):
        service = make_service()
        with pytest.raises(ValidationError):
            await service.submit_job("", "image", PRODUCT_URL, SCENE_URL)

    @pytest.mark.asyncio
    async def test_default_title_and_trimmed_inputs(self, make_service):
        service = make_service()
        job = await service.submit_job(ACCOUNT, "image", f"  {PRODUCT_URL} ", SCENE_URL, "  glossy  ", title="  ")
        assert job.inputs.title == DEFAULT_TITLE
        assert job.inputs.product_image_url == PRODUCT_URL
        assert job.inputs.description == "glossy"
        await run_to_end(service)

    @pytest.mark.asyncio
    async def test_store_failure_refunds_reservation(self, make_service):
        service = make_service(balance=5)
        service.store.create = MagicMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await service.submit_job(ACCOUNT, "video", PRODUCT_URL, SCENE_URL)
        assert service.get_balance(ACCOUNT) == 5


class TestQueries:

    @pytest.mark.asyncio
    async def test_status_projection(self, make_service):
        service = make_service()
        job = await service.submit_job(ACCOUNT, "image", PRODUCT_URL, SCENE_URL, title="Perfume")
        await run_to_end(service)

        status = service.get_job_status(job.id, ACCOUNT)
        assert status.status == JobStatus.COMPLETED
        assert status.progress == 100
        assert status.title == "Perfume"
        assert status.artifacts.output_url == "https://cdn.example.com/cgi.jpg"
        assert status.total_cost == pytest.approx(0.042)
        assert status.error is None

    @pytest.mark.asyncio
    async def test_status_of_foreign_job_is_not_found(self, make_service):
        service = make_service()
        job = await service.submit_job(ACCOUNT, "image", PRODUCT_URL, SCENE_URL)
        await run_to_end(service)

        with pytest.raises(JobNotFound):
            service.get_job_status(job.id, OTHER_ACCOUNT)
        assert service.list_jobs(OTHER_ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first(self, make_service):
        service = make_service()
        first = await service.submit_job(ACCOUNT, "image", PRODUCT_URL, SCENE_URL)
        await asyncio.sleep(0.001)
        second = await service.submit_job(ACCOUNT, "video", PRODUCT_URL, SCENE_URL)
        await run_to_end(service)

        assert [j.id for j in service.list_jobs(ACCOUNT)] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_download_completed_video(self, make_service):
        service = make_service()
        job = await service.submit_job(ACCOUNT, "video", PRODUCT_URL, SCENE_URL)
        await run_to_end(service)

        download = service.get_download(job.id, ACCOUNT)
        assert download.download_url == "https://cdn.example.com/primary.mp4"
        assert download.preview_url == "https://cdn.example.com/cgi.jpg"

    @pytest.mark.asyncio
    async def test_download_failed_job_is_refused(self, make_service):
        service = make_service(imager=ScriptedAdapter("imager", 0.04, RuntimeError("down")))
        job = await service.submit_job(ACCOUNT, "image", PRODUCT_URL, SCENE_URL)
        await run_to_end(service)

        with pytest.raises(ValueError):
            service.get_download(job.id, ACCOUNT)


class TestCredits:

    def test_grant_adds_credits(self, make_service):
        service = make_service(balance=0)
        assert service.grant_credits(ACCOUNT, 50) == 50
        assert service.get_balance(ACCOUNT) == 50

    @pytest.mark.parametrize("amount", [0, -5])
    def test_grant_rejects_non_positive(self, make_service, amount):
        service = make_service(balance=0)
        with pytest.raises(ValidationError):
            service.grant_credits(ACCOUNT, amount)


class TestWiring:

    def test_defaults_to_in_memory(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        service = build_job_service()
        assert isinstance(service.ledger, InMemoryCreditLedger)
        assert isinstance(service.store, InMemoryJobStore)
        assert get_storage_backends(service) == {"ledger": "memory", "job_store": "memory"}

    def test_uses_redis_when_reachable(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        with patch("cgi_workers.pipeline.service.redis.from_url") as from_url:
            service = build_job_service()
        from_url.return_value.ping.assert_called_once()
        assert isinstance(service.ledger, RedisCreditLedger)
