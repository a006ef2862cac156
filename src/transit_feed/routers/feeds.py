"""Feed loading endpoints.

Endpoints
---------
POST /feeds/load       – load a GTFS archive (cached by fingerprint)
GET  /feeds/progress   – progress of the running or last load
GET  /feeds/current    – metadata of the store currently served
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from transit_feed.logging import get_logger
from transit_feed.services.gtfs_static.cache import FeedStats
from transit_feed.services.gtfs_static.loader import FeedLoader
from transit_feed.services.gtfs_static.progress import LoadProgress

logger = get_logger(__name__)

router = APIRouter(prefix="/feeds", tags=["feeds"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class LoadFeedRequest(BaseModel):
    """Request body for loading a feed archive."""

    archive_path: str = Field(
        min_length=1,
        description="Filesystem path of the GTFS zip archive, as seen by the server.",
    )


class LoadFeedResponse(BaseModel):
    success: bool
    from_cache: bool
    stats: FeedStats
    fingerprint: str
    source_path: str
    duration_ms: int


class CurrentFeedResponse(BaseModel):
    fingerprint: str
    source_path: str
    source_size: int
    created_at: datetime
    stats: FeedStats
    columns: dict[str, list[str]]
    active_sessions: int


def _loader(request: Request) -> FeedLoader:
    return request.app.state.loader


# ---------------------------------------------------------------------------
# POST /feeds/load
# ---------------------------------------------------------------------------


@router.post(
    "/load",
    response_model=LoadFeedResponse,
    summary="Load a GTFS archive",
    description=(
        "Fingerprint the archive and serve its derived store, building the store "
        "first when no valid cache entry exists. Concurrent loads are queued."
    ),
)
async def load_feed(body: LoadFeedRequest, request: Request) -> dict[str, Any]:
    """Load a feed and make it the current store."""
    result = await _loader(request).load(body.archive_path)
    return {
        "success": result.success,
        "from_cache": result.from_cache,
        "stats": result.stats,
        "fingerprint": result.fingerprint,
        "source_path": result.source_path,
        "duration_ms": result.duration_ms,
    }


# ---------------------------------------------------------------------------
# GET /feeds/progress
# ---------------------------------------------------------------------------


@router.get("/progress", response_model=LoadProgress, summary="Current load progress")
async def get_progress(request: Request) -> LoadProgress:
    return _loader(request).progress.current


# ---------------------------------------------------------------------------
# GET /feeds/current
# ---------------------------------------------------------------------------


@router.get(
    "/current",
    response_model=CurrentFeedResponse,
    summary="Describe the current feed",
    description="Returns 409 until a feed has been loaded.",
)
async def get_current_feed(request: Request) -> dict[str, Any]:
    handle = _loader(request).registry.require()
    entry = handle.entry
    return {
        "fingerprint": entry.source_hash,
        "source_path": entry.source_path,
        "source_size": entry.source_size,
        "created_at": entry.created_at,
        "stats": entry.stats,
        "columns": entry.columns,
        "active_sessions": handle.active_sessions,
    }
