"""Load progress reporting shared between the build thread and the API."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from transit_feed.logging import get_logger

logger = get_logger(__name__)


class LoadProgress(BaseModel):
    """One progress notification: ``{step, percent, error}``."""

    step: str
    percent: int = Field(ge=0, le=100)
    error: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


ProgressListener = Callable[[LoadProgress], None]


class ProgressTracker:
    """Thread-safe, monotonic progress state for one load at a time.

    ``report`` may be called from the build thread at high frequency; the
    percentage never decreases within one load. ``start`` resets the state for
    a new load and ``fail`` publishes an error notification.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = LoadProgress(step="Idle", percent=0)
        self._listeners: list[ProgressListener] = []

    @property
    def current(self) -> LoadProgress:
        with self._lock:
            return self._current

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def start(self, step: str = "Starting") -> None:
        self._publish(LoadProgress(step=step, percent=0), reset=True)

    def report(self, step: str, percent: float) -> None:
        """Publish a step; percentages below the current value are raised to it."""
        self._publish(LoadProgress(step=step, percent=_clamp(percent)))

    def fail(self, message: str) -> None:
        self._publish(LoadProgress(step=f"Error: {message}", percent=0, error=True), reset=True)

    def _publish(self, update: LoadProgress, *, reset: bool = False) -> None:
        with self._lock:
            if not reset and update.percent < self._current.percent:
                update = update.model_copy(update={"percent": self._current.percent})
            self._current = update
            listeners = list(self._listeners)
        logger.debug("Load progress", step=update.step, percent=update.percent, error=update.error)
        for listener in listeners:
            listener(update)

    def snapshot(self) -> dict[str, Any]:
        return self.current.model_dump(mode="json")


def _clamp(percent: float) -> int:
    return max(0, min(100, int(percent)))
