"""HTTP surface for the job subsystem - FastAPI Server."""

from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from storefront_jobs import __version__
from storefront_jobs.config import Settings, get_settings
from storefront_jobs.jobs import JobProducer, RedisJobQueue
from storefront_jobs.jobs.queue import queue_from_settings
from storefront_jobs.logs import configure_logging
from storefront_jobs.metrics import MetricsCollector
from storefront_jobs.storage import OrderStorage

logger = structlog.get_logger()


class WebhookEvent(BaseModel):
    """Inbound webhook event to be processed in the background."""
    event: str
    payload: Any = None


class EnqueueResponse(BaseModel):
    """Response model for queued work."""
    status: str
    job_id: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[RedisJobQueue] = None,
    storage: Optional[OrderStorage] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment if omitted
        queue: Job queue; built from settings if omitted
        storage: Order storage; built from settings if omitted
    """
    settings = settings or get_settings()
    queue = queue or queue_from_settings(settings)
    storage = storage or OrderStorage(settings.sqlite_path, create=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info(
            "storefront_jobs_api_starting",
            version=__version__,
            queue=queue.queue_name,
        )
        await storage.initialize()

        yield

        await queue.close()
        await storage.close()
        logger.info("storefront_jobs_api_shutdown")

    app = FastAPI(
        title="Storefront Jobs",
        description="Background job intake, health and metrics for the storefront",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue = queue
    app.state.storage = storage
    app.state.producer = JobProducer(queue)
    app.state.metrics = MetricsCollector(queue, storage)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint. Only the database is fatal."""
        database_ok = await request.app.state.storage.ping()
        queue_ok = await request.app.state.queue.ping()

        body = {
            "status": "healthy" if database_ok else "unhealthy",
            "service": settings.service_name,
            "version": __version__,
            "checks": {
                "database": "connected" if database_ok else "disconnected",
                "queue": "connected" if queue_ok else "disconnected",
            },
        }
        return JSONResponse(body, status_code=200 if database_ok else 503)

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics, including the job queue length."""
        payload = await request.app.state.metrics.collect()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.post("/webhooks/events", response_model=EnqueueResponse, status_code=202)
    async def receive_webhook(event: WebhookEvent, request: Request):
        """Accept a webhook event and process it in the background."""
        producer: JobProducer = request.app.state.producer
        job_id = await producer.enqueue_webhook_job(event.event, event.payload)

        return EnqueueResponse(
            status="queued" if job_id else "not_queued",
            job_id=job_id,
        )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": settings.service_name,
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "webhook_events": "POST /webhooks/events",
            },
        }

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging(get_settings().log_level)
    uvicorn.run(
        "storefront_jobs.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level=get_settings().log_level.lower(),
    )
