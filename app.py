import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import AliasChoices, BaseModel, Field

from config import Settings
from graph.models import JobOptions, Lead
from graph.orchestrator import EnrichmentOrchestrator
from jobs.queue import JobQueue
from jobs.store import JobStore
from tools.errors import PersistenceConflict
from tools.headless import HeadlessRenderer
from tools.idempotency import Idem
from tools.llm import LLMClient
from tools.maps_resolver import ListingResolver
from tools.rate_limiter import RateLimiter
from tools.website import WebsiteClassifier

VERSION = "1.0.0"
MAX_SYNC_LEADS = 25

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")


class EnqueueRequest(BaseModel):
    leads: List[Lead] = Field(default_factory=list)
    options: JobOptions = Field(default_factory=JobOptions)
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ScoreRequest(BaseModel):
    leads: List[Lead] = Field(default_factory=list)
    use_cleaner: bool = Field(default=False, validation_alias=AliasChoices("use_cleaner", "useCleaner"))


@dataclass
class AppServices:
    """Everything the HTTP layer talks to, built once per process."""

    settings: Settings
    limiter: RateLimiter
    resolver: ListingResolver
    website: WebsiteClassifier
    llm: LLMClient
    orchestrator: EnrichmentOrchestrator
    store: JobStore
    queue: JobQueue
    idem: Idem

    async def close(self) -> None:
        await self.queue.shutdown()
        await self.resolver.close()
        await self.website.close()
        await self.store.close()
        await self.idem.close()


def build_services(settings: Settings) -> AppServices:
    limiter = RateLimiter(
        max_concurrency=settings.lookup_max_concurrency,
        min_delay=settings.lookup_min_delay,
        base_backoff=settings.lookup_base_backoff,
        max_backoff=settings.lookup_max_backoff,
        reset_after=settings.lookup_backoff_reset,
    )
    renderer = HeadlessRenderer(timeout=settings.maps_timeout) if settings.maps_headless else None
    resolver = ListingResolver(
        limiter,
        renderer=renderer,
        cache_ttl=settings.maps_cache_ttl,
        timeout=settings.maps_timeout,
    )
    website = WebsiteClassifier(timeout=settings.maps_timeout)
    llm = LLMClient(api_key=settings.openai_api_key, model=settings.openai_model, base_url=settings.openai_base_url)
    orchestrator = EnrichmentOrchestrator(
        resolver,
        website,
        llm,
        max_concurrency=settings.max_concurrency,
        score_batch_size=settings.score_batch_size,
        score_flush_delay=settings.score_flush_delay,
    )
    store = JobStore(settings.async_database_url)
    idem = Idem(redis_url=settings.redis_url or "")
    queue = JobQueue(
        store,
        orchestrator,
        stale_after=settings.job_stale_after,
        worker_id=settings.worker_id,
        idempotency=idem,
        poll_interval=settings.worker_poll_interval,
    )
    return AppServices(
        settings=settings,
        limiter=limiter,
        resolver=resolver,
        website=website,
        llm=llm,
        orchestrator=orchestrator,
        store=store,
        queue=queue,
        idem=idem,
    )


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    """Build the FastAPI app; ``services`` lets tests inject fakes."""
    settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or build_services(settings)
        app.state.services = svc
        await svc.store.create_schema()
        await svc.idem.connect()

        stop = asyncio.Event()
        worker = asyncio.ensure_future(svc.queue.run_worker(stop)) if settings.worker_enabled else None
        logger.info(f"Lead scoring service started as {settings.worker_id}")
        try:
            yield
        finally:
            stop.set()
            if worker is not None:
                await worker
            await svc.close()
            logger.info("Lead scoring service stopped")

    app = FastAPI(
        title="Lead Score Genius",
        description="Review enrichment and AI lead scoring with a durable job queue",
        version=VERSION,
        lifespan=lifespan,
    )

    def _services(request: Request) -> AppServices:
        return request.app.state.services

    @app.post("/jobs")
    async def enqueue_job(
        body: EnqueueRequest,
        request: Request,
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ):
        """Queue a batch of leads for background scoring and return the job right away."""
        if not body.leads:
            raise HTTPException(status_code=400, detail="At least one lead is required")

        svc = _services(request)
        job = await svc.queue.enqueue(body.leads, body.options, user_id=body.user_id, idempotency_key=idempotency_key)
        if not job.status.terminal:
            svc.queue.trigger(job.id)
        snapshot = await svc.queue.get_status(job.id)
        return {"job": snapshot.model_dump(mode="json")}

    @app.get("/jobs")
    async def list_jobs(request: Request, limit: int = 50, user_id: Optional[str] = None):
        jobs = await _services(request).queue.list(limit=max(1, min(limit, 200)), user_id=user_id)
        return {"jobs": [job.model_dump(mode="json") for job in jobs]}

    @app.get("/jobs/active")
    async def active_job(request: Request, user_id: Optional[str] = None):
        job = await _services(request).queue.active(user_id=user_id)
        return {"job": job.model_dump(mode="json") if job else None}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request):
        snapshot = await _services(request).queue.get_status(job_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": snapshot.model_dump(mode="json")}

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, request: Request, body: Optional[CancelRequest] = None):
        reason = body.reason if body else None
        try:
            snapshot = await _services(request).queue.cancel(job_id, reason)
        except PersistenceConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": snapshot.model_dump(mode="json")}

    @app.post("/score")
    async def score_leads(body: ScoreRequest, request: Request):
        """Score a small batch inline, without touching the job store."""
        if not body.leads:
            raise HTTPException(status_code=400, detail="At least one lead is required")
        if len(body.leads) > MAX_SYNC_LEADS:
            raise HTTPException(status_code=400, detail=f"Use /jobs for more than {MAX_SYNC_LEADS} leads")

        start_time = time.time()
        batch = await _services(request).orchestrator.process(body.leads, use_cleaner=body.use_cleaner)
        processing_time = time.time() - start_time
        logger.info(f"Scored {len(batch.results)} leads inline in {processing_time:.2f}s")
        return {
            "results": [result.model_dump(mode="json") for result in batch.results],
            "usage": batch.usage.model_dump(),
            "processing_time": processing_time,
        }

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        """Health check endpoint."""
        svc = _services(request)
        throttle = svc.limiter.throttle_state()
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": VERSION,
            "worker_id": svc.settings.worker_id,
            "services": {
                "redis": "connected" if svc.idem.r else "disconnected",
                "llm": "mock" if svc.llm.mock else "live",
                "headless": "enabled" if svc.resolver.renderer else "disabled",
            },
            "lookup_limiter": {
                "level": throttle.level,
                "throttled_for": max(0.0, throttle.until - time.monotonic()) if throttle.until else 0.0,
                "active": svc.limiter.active,
                "pending": svc.limiter.pending,
            },
        }

    # Error handlers
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead Score Genius")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_level="info",
    )
