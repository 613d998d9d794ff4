import asyncio

import pytest

from cgi_workers import metrics
from cgi_workers.pipeline.job_store import InMemoryJobStore
from cgi_workers.pipeline.ledger import InMemoryCreditLedger
from cgi_workers.pipeline.orchestrator import PipelineExecutor
from cgi_workers.pipeline.providers import OrderedFallback, ProviderAdapter
from cgi_workers.pipeline.service import JobService

ACCOUNT = "acct-1"
OTHER_ACCOUNT = "acct-2"
PRODUCT_URL = "https://cdn.example.com/product.png"
SCENE_URL = "https://cdn.example.com/scene.jpg"

# Outcome marker: the adapter never returns, so only its timeout ends the call
HANG = object()

PRIMARY_VIDEO_COST = 0.40
FALLBACK_VIDEO_COST = 0.28


class ScriptedAdapter(ProviderAdapter):
    """Returns (or raises) the scripted outcomes in order; the last one repeats."""

    def __init__(self, name: str, cost: float, *outcomes, timeout: float = 1.0):
        super().__init__(timeout=timeout, poll_interval=0)
        self.name = name
        self.cost = cost
        self.outcomes = list(outcomes)
        self.calls = []

    async def _call(self, **inputs):
        self.calls.append(inputs)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingJobStore(InMemoryJobStore):
    """In-memory store that remembers every (stage, progress, status) it was written."""

    def __init__(self):
        super().__init__()
        self.history = []

    def update(self, job_id, patch):
        job = super().update(job_id, patch)
        self.history.append((job.stage, job.progress, job.status))
        return job


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def adapters():
    return {
        "describer": ScriptedAdapter("describer", 0.002, "A glossy bottle on a marble counter"),
        "imager": ScriptedAdapter("imager", 0.04, "https://cdn.example.com/cgi.jpg"),
        "prompter": ScriptedAdapter("prompter", 0.002, "Slow orbit around the bottle"),
        "primary_video": ScriptedAdapter("primary_video", PRIMARY_VIDEO_COST, "https://cdn.example.com/primary.mp4"),
        "fallback_video": ScriptedAdapter("fallback_video", FALLBACK_VIDEO_COST, "https://cdn.example.com/fallback.mp4"),
    }


@pytest.fixture
def make_service(adapters):
    """Build a JobService over in-memory backends with the scripted adapters."""

    def _make(balance: int = 10, store=None, **overrides):
        a = {**adapters, **overrides}
        if store is None:
            store = RecordingJobStore()
        ledger = InMemoryCreditLedger({ACCOUNT: balance})
        executor = PipelineExecutor(
            store=store,
            ledger=ledger,
            description_enhancer=a["describer"],
            image_generator=a["imager"],
            video_prompt_writer=a["prompter"],
            video_generator=OrderedFallback("video_generation", [a["primary_video"], a["fallback_video"]]),
        )
        return JobService(store, ledger, executor)

    return _make


async def run_to_end(service: JobService):
    """Wait for every spawned pipeline to finish."""
    await service.executor.shutdown(timeout=10)
