"""Content fingerprinting and the on-disk cache of derived stores.

Layout::

    <cache_dir>/<fingerprint>/feed.sqlite   derived store (read-only once committed)
    <cache_dir>/<fingerprint>/meta.json     CacheEntry sidecar
    <cache_dir>/.build-<prefix>-<uuid>/     scratch workspace of a running build

The fingerprint hashes only the first ``window`` bytes of the archive together
with its size and modification time. Two archives that differ only beyond the
window but share size and mtime map to the same fingerprint; that residual
risk is accepted in exchange for constant-time hashing of multi-GB feeds.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, ValidationError

from transit_feed.errors import ArchiveNotFound, CacheStale
from transit_feed.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = get_logger(__name__)

STORE_FILENAME = "feed.sqlite"
META_FILENAME = "meta.json"
WORKSPACE_PREFIX = ".build-"
_READ_BLOCK = 1024 * 1024


def fingerprint(path: Path, window: int, size: int, mtime_ns: int) -> str:
    """Hash the leading ``window`` bytes of ``path`` together with size and mtime."""
    digest = hashlib.sha256()
    remaining = window
    with path.open("rb") as fh:
        while remaining > 0:
            block = fh.read(min(_READ_BLOCK, remaining))
            if not block:
                break
            digest.update(block)
            remaining -= len(block)
    digest.update(f"|size={size}|mtime={mtime_ns}".encode())
    return digest.hexdigest()


@dataclass(frozen=True)
class SourceArchive:
    """Identity of a feed archive on disk."""

    path: Path
    size: int
    mtime_ns: int
    fingerprint: str

    @classmethod
    def from_path(cls, path: str | Path, window: int) -> SourceArchive:
        """Stat and fingerprint ``path``.

        Raises:
            ArchiveNotFound: If the path does not exist or is not a file.
        """
        resolved = Path(path).expanduser().resolve()
        if not resolved.is_file():
            raise ArchiveNotFound(str(path))
        stat = resolved.stat()
        return cls(
            path=resolved,
            size=stat.st_size,
            mtime_ns=stat.st_mtime_ns,
            fingerprint=fingerprint(resolved, window, stat.st_size, stat.st_mtime_ns),
        )


class FeedStats(BaseModel):
    """Row counts reported after a load."""

    route_count: int = 0
    trip_count: int = 0
    stop_count: int = 0
    stop_time_count: int = 0
    shape_point_count: int = 0
    table_counts: dict[str, int] = Field(default_factory=dict)
    skipped_rows: dict[str, int] = Field(default_factory=dict)


class CacheEntry(BaseModel):
    """Sidecar metadata persisted next to a derived store."""

    source_hash: str
    source_size: int
    source_mtime: int
    source_path: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stats: FeedStats = Field(default_factory=FeedStats)
    columns: dict[str, list[str]] = Field(default_factory=dict)

    def matches(self, archive: SourceArchive) -> bool:
        return (
            self.source_hash == archive.fingerprint
            and self.source_size == archive.size
            and self.source_mtime == archive.mtime_ns
        )


class CacheManager:
    """Maps archive fingerprints to committed derived stores."""

    def __init__(self, root: Path, max_entries: int = 1) -> None:
        self.root = Path(root)
        self.max_entries = max_entries

    def entry_dir(self, source_hash: str) -> Path:
        return self.root / source_hash

    def store_path(self, entry: CacheEntry) -> Path:
        return self.entry_dir(entry.source_hash) / STORE_FILENAME

    def lookup(self, archive: SourceArchive) -> CacheEntry | None:
        """Return the valid entry for ``archive`` or None.

        Stale entries (identity mismatch, unreadable metadata or a missing
        store file) are deleted so the caller falls through to a rebuild.
        Older fingerprints of the same source path stay until :meth:`prune`,
        since the current store may still be serving from one of them.
        """
        entry_dir = self.entry_dir(archive.fingerprint)
        if not entry_dir.exists():
            logger.info("Cache miss", fingerprint=archive.fingerprint[:12])
            return None

        try:
            entry = self._validate(entry_dir, archive)
        except CacheStale as exc:
            logger.warning(
                "Discarding stale cache entry",
                fingerprint=archive.fingerprint[:12],
                reason=exc.user_message,
            )
            self._remove(entry_dir)
            return None

        logger.info("Cache hit", fingerprint=archive.fingerprint[:12], path=str(entry_dir))
        return entry

    def _validate(self, entry_dir: Path, archive: SourceArchive) -> CacheEntry:
        entry = self._read_entry(entry_dir)
        if entry is None:
            raise CacheStale("metadata is missing or unreadable")
        if not entry.matches(archive):
            raise CacheStale("source archive identity changed")
        if not (entry_dir / STORE_FILENAME).is_file():
            raise CacheStale("derived store file is missing")
        return entry

    @contextmanager
    def workspace(self, source_hash: str) -> Iterator[Path]:
        """Yield a scratch build directory that is always removed on exit.

        After a successful :meth:`commit` the directory has been renamed into
        place, so there is nothing left to remove.
        """
        path = self.root / f"{WORKSPACE_PREFIX}{source_hash[:16]}-{uuid.uuid4().hex}"
        path.mkdir(parents=True)
        try:
            yield path
        finally:
            if path.exists():
                shutil.rmtree(path)
                logger.debug("Removed build workspace", path=str(path))

    def commit(
        self,
        archive: SourceArchive,
        workspace: Path,
        stats: FeedStats,
        columns: dict[str, list[str]],
    ) -> CacheEntry:
        """Publish a finished workspace as the cache entry for ``archive``."""
        entry = CacheEntry(
            source_hash=archive.fingerprint,
            source_size=archive.size,
            source_mtime=archive.mtime_ns,
            source_path=str(archive.path),
            stats=stats,
            columns=columns,
        )
        (workspace / META_FILENAME).write_text(entry.model_dump_json(indent=2), encoding="utf-8")

        target = self.entry_dir(archive.fingerprint)
        if target.exists():
            self._remove(target)
        os.replace(workspace, target)
        logger.info("Committed cache entry", fingerprint=archive.fingerprint[:12], path=str(target))
        return entry

    def prune(self, keep: str) -> list[str]:
        """Delete superseded entries and the oldest beyond ``max_entries``.

        An entry is superseded when it was built from the same source path as
        ``keep`` under an older fingerprint. ``keep`` itself is never removed.
        """
        entries = sorted(self._entries(), key=lambda item: item[1].created_at, reverse=True)
        kept_path = next((e.source_path for _, e in entries if e.source_hash == keep), None)
        kept = 1
        removed: list[str] = []
        for entry_dir, entry in entries:
            if entry.source_hash == keep:
                continue
            if entry.source_path == kept_path:
                logger.info(
                    "Removing superseded cache entry",
                    fingerprint=entry.source_hash[:12],
                    source_path=entry.source_path,
                )
            elif kept < self.max_entries:
                kept += 1
                continue
            self._remove(entry_dir)
            removed.append(entry.source_hash)
        if removed:
            logger.info("Pruned cache entries", removed=[h[:12] for h in removed])
        return removed

    def _entries(self) -> Iterator[tuple[Path, CacheEntry]]:
        if not self.root.is_dir():
            return
        for entry_dir in self.root.iterdir():
            if not entry_dir.is_dir() or entry_dir.name.startswith(WORKSPACE_PREFIX):
                continue
            entry = self._read_entry(entry_dir)
            if entry is not None:
                yield entry_dir, entry

    @staticmethod
    def _read_entry(entry_dir: Path) -> CacheEntry | None:
        meta_path = entry_dir / META_FILENAME
        try:
            return CacheEntry.model_validate_json(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            return None

    @staticmethod
    def _remove(entry_dir: Path) -> None:
        try:
            shutil.rmtree(entry_dir)
        except OSError as exc:
            logger.warning("Could not remove cache directory", path=str(entry_dir), error=str(exc))
