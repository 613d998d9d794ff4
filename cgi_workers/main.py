import os
import time
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline import credit_router, get_job_service, job_router
from .pipeline.service import get_storage_backends


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CGI worker starting up...")
    metrics.set_gauge("start_time", time.time())
    service = get_job_service()
    logger.info(f"Storage backends: {get_storage_backends(service)}")
    yield
    logger.info("CGI worker shutting down...")
    await service.executor.shutdown()


app = FastAPI(title="CGI Generator Worker", lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(job_router)
app.include_router(credit_router)


@app.get("/health")
def health_check():
    """Verify worker is running and which providers/backends are configured."""
    service = get_job_service()
    return {
        "status": "ok",
        "providers": {
            "gemini": bool(os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")),
            "fal": bool(os.environ.get("FAL_API_KEY")),
            "kie": bool(os.environ.get("KIE_API_KEY")),
        },
        "storage": get_storage_backends(service),
        "jobs": service.store.count_by_status(),
        "active_pipelines": service.executor.active_count,
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    metrics.set_gauge("active_jobs", get_job_service().executor.active_count)
    return metrics.get_snapshot()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
