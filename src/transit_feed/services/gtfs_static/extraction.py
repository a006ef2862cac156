"""Adaptive extraction: bulk vs streamed decoding of archive members.

Small members are decompressed into memory and split into lines in one go.
Large archives, or members whose uncompressed size would exceed the memory
ceiling, are decompressed chunk by chunk: a running text buffer is split on
newlines and the trailing partial line is carried into the next chunk.

Both modes feed the same line consumers (:func:`group_stop_times` and the
generic record path), so they produce identical results for the same input.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from transit_feed.errors import MalformedArchive, MissingRequiredColumn
from transit_feed.logging import get_logger
from transit_feed.services.gtfs_static.normalizer import (
    GtfsNormalizer,
    NormalizationError,
    StopEvent,
)
from transit_feed.services.gtfs_static.parser import (
    missing_required,
    split_header,
    zip_record,
)
from transit_feed.services.gtfs_static.reader import EXTRACT_ERRORS

if TYPE_CHECKING:
    import zipfile
    from collections.abc import Callable, Iterable, Iterator

    from transit_feed.services.gtfs_static.reader import GtfsZipReader

logger = get_logger(__name__)


@dataclass(frozen=True)
class Bulk:
    """Decompress the member fully, then split it into lines."""

    mode = "bulk"


@dataclass(frozen=True)
class Streaming:
    """Decompress and decode the member ``chunk_size`` bytes at a time."""

    chunk_size: int
    mode = "streaming"


Strategy = Bulk | Streaming


def choose_strategy(
    archive_size: int,
    member_size: int,
    *,
    archive_threshold: int,
    member_ceiling: int,
    chunk_size: int,
) -> Strategy:
    """Pick the extraction mode for one member.

    Streaming is used when the archive is larger than ``archive_threshold`` or
    when the member would decompress to more than ``member_ceiling`` bytes.
    """
    if archive_size > archive_threshold or member_size > member_ceiling:
        return Streaming(chunk_size=chunk_size)
    return Bulk()


def split_chunks(chunks: Iterable[bytes]) -> Iterator[str]:
    """Decode byte chunks and yield complete lines.

    Multi-byte characters and lines may straddle chunk boundaries; the partial
    tail is kept until the next chunk arrives and flushed at end of stream.
    A leading UTF-8 BOM is dropped.
    """
    decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
    buffer = ""
    for chunk in chunks:
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer.rstrip("\r")


def split_text(data: bytes) -> list[str]:
    """Decode a fully extracted member and split it into lines."""
    text = data.decode("utf-8-sig", errors="replace")
    lines = [line.rstrip("\r") for line in text.split("\n")]
    if lines and not lines[-1]:
        lines.pop()
    return lines


class MemberLines:
    """Iterable over the decoded lines of one archive member.

    ``fraction`` tracks how much of the member has been consumed (0..1) and
    is used for progress reporting.
    """

    def __init__(self, reader: GtfsZipReader, info: zipfile.ZipInfo, strategy: Strategy) -> None:
        self._reader = reader
        self._info = info
        self.strategy = strategy
        self._consumed = 0
        self._total = max(info.file_size, 1)

    @property
    def fraction(self) -> float:
        return min(self._consumed / self._total, 1.0)

    def __iter__(self) -> Iterator[str]:
        logger.info(
            "Extracting member",
            member=self._info.filename,
            mode=self.strategy.mode,
            size_bytes=self._info.file_size,
        )
        if isinstance(self.strategy, Streaming):
            yield from split_chunks(self._read_chunks(self.strategy.chunk_size))
            return

        lines = split_text(self._reader.read_bytes(self._info))
        total = max(len(lines), 1)
        for idx, line in enumerate(lines):
            self._consumed = int(self._total * idx / total)
            yield line
        self._consumed = self._total

    def _read_chunks(self, chunk_size: int) -> Iterator[bytes]:
        try:
            with self._reader.open_binary(self._info) as fh:
                while chunk := fh.read(chunk_size):
                    self._consumed += len(chunk)
                    yield chunk
        except EXTRACT_ERRORS as exc:
            raise MalformedArchive(f"Could not extract {self._info.filename}") from exc


@dataclass
class StopTimeIndex:
    """stop_times grouped by trip, each trip ordered by stop_sequence."""

    trips: dict[str, list[StopEvent]] = field(default_factory=dict)
    rows: int = 0
    skipped: int = 0
    columns: list[str] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return self.rows - self.skipped


def group_stop_times(
    lines: Iterable[str],
    on_progress: Callable[[int], None] | None = None,
    interval: int = 100_000,
) -> StopTimeIndex:
    """Group stop_times lines by trip.

    Rows without a trip or stop id, or with a non-integer stop_sequence, are
    skipped and counted. ``on_progress`` receives the running row count every
    ``interval`` rows and is never called after the last row.

    Raises:
        MissingRequiredColumn: If the header lacks trip_id, stop_id or
            stop_sequence.
    """
    columns, rows = split_header(lines)
    index = StopTimeIndex(columns=[c for c in columns if c])
    if not columns:
        return index

    missing = missing_required("stop_times", columns)
    if missing:
        raise MissingRequiredColumn("stop_times", missing)

    trips = index.trips
    normalize = GtfsNormalizer.normalize_stop_time
    for values in rows:
        index.rows += 1
        try:
            trip_id, event = normalize(zip_record(columns, values))
        except NormalizationError:
            index.skipped += 1
        else:
            bucket = trips.get(trip_id)
            if bucket is None:
                trips[trip_id] = [event]
            else:
                bucket.append(event)
        if on_progress is not None and index.rows % interval == 0:
            on_progress(index.rows)

    for events in trips.values():
        events.sort(key=_sequence_key)

    if index.skipped:
        logger.warning("Skipped malformed stop_times rows", skipped=index.skipped)
    logger.info(
        "Grouped stop_times",
        trips=len(trips),
        rows=index.rows,
        skipped=index.skipped,
    )
    return index


def _sequence_key(event: StopEvent) -> int:
    return event.stop_sequence
