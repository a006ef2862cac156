"""Static GTFS ingestion pipeline: archive to cached SQLite store."""

from transit_feed.services.gtfs_static.cache import CacheManager, SourceArchive
from transit_feed.services.gtfs_static.importer import StoreBuilder
from transit_feed.services.gtfs_static.loader import FeedLoader, LoadResult
from transit_feed.services.gtfs_static.normalizer import GtfsNormalizer
from transit_feed.services.gtfs_static.progress import ProgressTracker
from transit_feed.services.gtfs_static.reader import GtfsZipReader

__all__ = [
    "CacheManager",
    "FeedLoader",
    "GtfsNormalizer",
    "GtfsZipReader",
    "LoadResult",
    "ProgressTracker",
    "SourceArchive",
    "StoreBuilder",
]
