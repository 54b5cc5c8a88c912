"""
Main FastAPI application for Newsdesk.
"""
from contextlib import asynccontextmanager

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from newsdesk import __version__
from newsdesk.api.routes import router, set_runtime
from newsdesk.config import get_settings
from newsdesk.core.log import configure_logging
from newsdesk.runtime import NewsdeskRuntime

logger = structlog.get_logger()

# Global instances
runtime: NewsdeskRuntime = None
ticker: AsyncIOScheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    global runtime, ticker

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    runtime = NewsdeskRuntime(settings)
    await runtime.initialize()
    set_runtime(runtime)

    # Catch-up and first tick
    await runtime.start()

    # Cadence decisions live in the durable scheduler; APScheduler only ticks it.
    ticker = AsyncIOScheduler(timezone="UTC")
    ticker.add_job(
        runtime.tick,
        IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        id="newsdesk_tick",
        name="Newsdesk scheduler tick",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    ticker.start()
    logger.info("Ticker started", tick_seconds=settings.scheduler_tick_seconds)

    yield

    # Shutdown
    logger.info("Shutting down")
    if ticker:
        ticker.shutdown(wait=False)
    set_runtime(None)
    await runtime.shutdown()


# Create FastAPI app
app = FastAPI(
    title="Newsdesk",
    description="AI research and news aggregation with scheduled digests.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    body = {
        "status": "healthy",
        "service": "newsdesk",
        "version": __version__,
    }
    if runtime is not None:
        scheduler = runtime.scheduler.status()
        body["scheduler"] = {kind: info["status"] for kind, info in scheduler.items()}
        if any(info["abandoned_slot"] for info in scheduler.values()):
            body["status"] = "degraded"
    return body


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Newsdesk API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "collect": "/api/v1/collect",
            "articles": "/api/v1/articles",
            "digests": "/api/v1/digests/{kind}",
            "status": "/api/v1/status",
        },
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "newsdesk.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
