"""
FastAPI routes for the Newsdesk API.

Thin layer: every handler delegates to the NewsdeskRuntime entry points.
"""
from datetime import datetime
from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from newsdesk.core.errors import DeliveryFailed, NewsdeskError, PersistenceUnavailable
from newsdesk.models.domain import Article, Category, DigestKind, SourceKind
from newsdesk.runtime import NewsdeskRuntime

logger = structlog.get_logger(__name__)
router = APIRouter()

_runtime: Optional[NewsdeskRuntime] = None


def set_runtime(runtime: Optional[NewsdeskRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> NewsdeskRuntime:
    """Dependency to get the process runtime."""
    if _runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Runtime not initialized")
    return _runtime


RuntimeDep = Annotated[NewsdeskRuntime, Depends(get_runtime)]


# ============================================================================
# Collection
# ============================================================================


@router.post("/collect")
async def trigger_collection(runtime: RuntimeDep):
    """
    Run a collection cycle now and wait for its report.

    Returns ``already_running`` when a cycle is in flight.
    """
    try:
        return await runtime.trigger_collection()
    except PersistenceUnavailable as e:
        logger.error("Collection failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except NewsdeskError as e:
        logger.error("Collection failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


# ============================================================================
# Articles
# ============================================================================


@router.get("/articles", response_model=list[Article])
async def list_articles(
    runtime: RuntimeDep,
    since: Optional[datetime] = Query(default=None, description="Start of the fetch-time window (UTC)"),
    until: Optional[datetime] = Query(default=None, description="End of the fetch-time window (UTC)"),
    category: Optional[Category] = None,
    min_score: Optional[float] = Query(default=None, ge=0.0, le=1.0),
    source_kind: Optional[SourceKind] = None,
    enriched_only: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
):
    """Live (unexpired) articles, newest first."""
    try:
        return await runtime.query_articles(
            since=since,
            until=until,
            category=category,
            min_score=min_score,
            source_kind=source_kind,
            enriched_only=enriched_only,
            limit=limit,
        )
    except PersistenceUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


# ============================================================================
# Digests & maintenance
# ============================================================================


@router.post("/digests/{kind}")
async def run_digest(kind: DigestKind, runtime: RuntimeDep):
    """Compose and deliver the current digest for ``kind`` (at most once per slot)."""
    try:
        return await runtime.run_digest(kind)
    except DeliveryFailed as e:
        logger.error("Digest delivery failed", kind=kind.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except NewsdeskError as e:
        logger.error("Digest run failed", kind=kind.value, error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/purge")
async def purge_expired(runtime: RuntimeDep):
    removed = await runtime.purge_expired()
    return {"removed": removed}


@router.get("/status")
async def get_status(runtime: RuntimeDep):
    """Scheduler state per kind plus store counters."""
    return await runtime.status()
