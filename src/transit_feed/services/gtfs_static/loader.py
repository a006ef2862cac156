"""Feed load orchestration: fingerprint, cache lookup, build, commit, swap."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from transit_feed.config import Settings, get_settings
from transit_feed.database import StoreHandle
from transit_feed.errors import FeedError
from transit_feed.logging import get_logger
from transit_feed.services.gtfs_static.cache import (
    STORE_FILENAME,
    CacheEntry,
    CacheManager,
    FeedStats,
    SourceArchive,
)
from transit_feed.services.gtfs_static.importer import StoreBuilder
from transit_feed.services.gtfs_static.progress import ProgressTracker

if TYPE_CHECKING:
    from pathlib import Path

    from transit_feed.database import StoreRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoadResult:
    success: bool
    from_cache: bool
    stats: FeedStats
    fingerprint: str
    source_path: str
    duration_ms: int


class FeedLoader:
    """Loads one archive at a time and publishes the resulting store.

    Concurrent ``load`` calls are serialized: a second request waits for the
    first to finish and then usually resolves from the cache.
    """

    def __init__(
        self,
        registry: StoreRegistry,
        settings: Settings | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.progress = progress or ProgressTracker()
        self.cache = CacheManager(self.settings.cache_dir, self.settings.cache_max_entries)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def load(self, archive_path: str | Path) -> LoadResult:
        """Load ``archive_path`` and make it the current store.

        Raises:
            FeedError: On any ingestion failure. Progress listeners receive an
                error notification before the exception propagates.
        """
        if self._lock.locked():
            logger.info("Load already running, waiting", archive_path=str(archive_path))

        async with self._lock:
            started = time.perf_counter()
            self.progress.start("Checking cache")
            try:
                entry, from_cache = await self._resolve(archive_path)
                await self._activate(entry, from_cache)
            except FeedError as exc:
                self.progress.fail(exc.user_message)
                logger.warning(
                    "Feed load failed",
                    archive_path=str(archive_path),
                    code=exc.code,
                    step=exc.step,
                    error=exc.user_message,
                )
                raise
            except Exception as exc:
                self.progress.fail("Unexpected error while loading the feed")
                logger.error("Feed load crashed", archive_path=str(archive_path), exc_info=exc)
                raise

            self.progress.report("Complete", 100)
            result = LoadResult(
                success=True,
                from_cache=from_cache,
                stats=entry.stats,
                fingerprint=entry.source_hash,
                source_path=entry.source_path,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            logger.info(
                "Feed loaded",
                fingerprint=entry.source_hash[:12],
                from_cache=from_cache,
                duration_ms=result.duration_ms,
                routes=entry.stats.route_count,
                trips=entry.stats.trip_count,
                stop_times=entry.stats.stop_time_count,
            )
            return result

    async def _resolve(self, archive_path: str | Path) -> tuple[CacheEntry, bool]:
        archive = await asyncio.to_thread(
            SourceArchive.from_path, archive_path, self.settings.fingerprint_window_bytes
        )
        entry = await asyncio.to_thread(self.cache.lookup, archive)
        if entry is not None:
            return entry, True
        entry = await asyncio.to_thread(self._build, archive)
        return entry, False

    def _build(self, archive: SourceArchive) -> CacheEntry:
        with self.cache.workspace(archive.fingerprint) as workspace:
            builder = StoreBuilder(self.settings, self.progress)
            report = builder.build(archive, workspace / STORE_FILENAME)
            return self.cache.commit(archive, workspace, report.to_stats(), report.columns)

    async def _activate(self, entry: CacheEntry, from_cache: bool) -> None:
        current = self.registry.current
        if from_cache and current is not None and current.fingerprint == entry.source_hash:
            logger.info("Store already current", fingerprint=entry.source_hash[:12])
        else:
            handle = StoreHandle(self.cache.store_path(entry), entry, echo=self.settings.debug)
            await self.registry.swap(handle)
        await asyncio.to_thread(self.cache.prune, entry.source_hash)
