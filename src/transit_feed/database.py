"""Derived store connection and session management.

A :class:`StoreHandle` wraps the read-only async engine of one committed
store. The :class:`StoreRegistry` owns the single current handle; swapping in
a new handle retires the previous one, which disposes its engine as soon as
its last in-flight session exits.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from transit_feed.errors import StoreUnavailable
from transit_feed.logging import get_logger
from transit_feed.services.schedule.schema import SchemaCache

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from transit_feed.services.gtfs_static.cache import CacheEntry

logger = get_logger(__name__)


def store_url(path: Path) -> str:
    """Read-only SQLite URI for a committed store file."""
    return f"sqlite+aiosqlite:///file:{path.resolve().as_posix()}?mode=ro&uri=true"


def create_store_engine(path: Path, echo: bool = False) -> AsyncEngine:
    return create_async_engine(store_url(path), echo=echo)


class StoreHandle:
    """One opened derived store plus its per-store schema cache."""

    def __init__(self, path: Path, entry: CacheEntry, echo: bool = False) -> None:
        self.path = path
        self.entry = entry
        self.engine = create_store_engine(path, echo=echo)
        self.schema = SchemaCache()
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._active_sessions = 0
        self._retired = False
        self._disposed = False

    @property
    def fingerprint(self) -> str:
        return self.entry.source_hash

    @property
    def active_sessions(self) -> int:
        return self._active_sessions

    @property
    def disposed(self) -> bool:
        return self._disposed

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session, closed on exit including error paths."""
        if self._retired:
            raise StoreUnavailable()
        self._active_sessions += 1
        try:
            async with self._session_factory() as session:
                yield session
        finally:
            self._active_sessions -= 1
            if self._retired and self._active_sessions == 0:
                await self._dispose()

    @staticmethod
    async def driver_connection(session: AsyncSession) -> Any:
        """The aiosqlite connection checked out by ``session``."""
        connection = await session.connection()
        raw = await connection.get_raw_connection()
        return raw.driver_connection

    async def retire(self) -> None:
        """Stop handing out sessions; dispose once in-flight sessions drain."""
        self._retired = True
        if self._active_sessions == 0:
            await self._dispose()
        else:
            logger.info(
                "Store retired, waiting for sessions to drain",
                fingerprint=self.fingerprint[:12],
                active_sessions=self._active_sessions,
            )

    async def _dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.engine.dispose()
        logger.info("Store engine disposed", fingerprint=self.fingerprint[:12])


class StoreRegistry:
    """Owner of the current derived store."""

    def __init__(self) -> None:
        self._current: StoreHandle | None = None

    @property
    def current(self) -> StoreHandle | None:
        return self._current

    def require(self) -> StoreHandle:
        """Return the current handle.

        Raises:
            StoreUnavailable: If no feed has been loaded yet.
        """
        if self._current is None:
            raise StoreUnavailable()
        return self._current

    async def swap(self, handle: StoreHandle) -> StoreHandle | None:
        """Publish ``handle`` as current and retire the previous one."""
        previous = self._current
        self._current = handle
        logger.info(
            "Store swapped",
            fingerprint=handle.fingerprint[:12],
            previous=previous.fingerprint[:12] if previous else None,
        )
        if previous is not None and previous is not handle:
            await previous.retire()
        return previous

    async def check(self) -> bool:
        """Check the current store answers a trivial query."""
        handle = self._current
        if handle is None:
            return False
        try:
            async with handle.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Store health check failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Retire the current handle (application shutdown)."""
        handle, self._current = self._current, None
        if handle is not None:
            await handle.retire()
