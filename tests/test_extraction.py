"""Tests for bulk/streaming extraction and stop_times grouping."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from transit_feed.errors import MissingRequiredColumn
from transit_feed.services.gtfs_static.extraction import (
    Bulk,
    MemberLines,
    Streaming,
    choose_strategy,
    group_stop_times,
    split_chunks,
    split_text,
)
from transit_feed.services.gtfs_static.reader import GtfsZipReader

from .fixtures.gtfs_fixture import STOP_TIMES_TXT, build_gtfs_zip, build_stop_times_text

if TYPE_CHECKING:
    from pathlib import Path

MIB = 1024 * 1024


def _chunks(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestChooseStrategy:
    def _choose(self, archive: int, member: int) -> object:
        return choose_strategy(
            archive,
            member,
            archive_threshold=100 * MIB,
            member_ceiling=200 * MIB,
            chunk_size=MIB,
        )

    def test_small_feed_is_bulk(self) -> None:
        assert self._choose(5 * MIB, 50 * MIB) == Bulk()

    def test_large_archive_streams(self) -> None:
        assert self._choose(101 * MIB, 10 * MIB) == Streaming(chunk_size=MIB)

    def test_large_member_streams(self) -> None:
        assert self._choose(50 * MIB, 201 * MIB) == Streaming(chunk_size=MIB)

    def test_threshold_is_exclusive(self) -> None:
        assert isinstance(self._choose(100 * MIB, 200 * MIB), Bulk)

    def test_modes_are_tagged(self) -> None:
        assert Bulk().mode == "bulk"
        assert Streaming(chunk_size=1).mode == "streaming"


class TestSplitChunks:
    def test_partial_line_carried_across_chunks(self) -> None:
        assert list(split_chunks([b"a,b\nc,", b"d\ne,f"])) == ["a,b", "c,d", "e,f"]

    def test_crlf_and_bom_handled(self) -> None:
        data = "\ufeffh1,h2\r\n1,2\r\n".encode()
        assert list(split_chunks(_chunks(data, 3))) == ["h1,h2", "1,2"]

    def test_multibyte_character_split_between_chunks(self) -> None:
        data = "stop\nGare de Lyon – Métro\n".encode()
        assert list(split_chunks(_chunks(data, 1))) == ["stop", "Gare de Lyon – Métro"]

    @pytest.mark.parametrize("size", [1, 2, 5, 13, 64, 4096])
    def test_matches_bulk_split(self, size: int) -> None:
        data = STOP_TIMES_TXT.encode()
        assert list(split_chunks(_chunks(data, size))) == split_text(data)


class TestGroupStopTimes:
    def test_events_sorted_numerically(self) -> None:
        lines = [
            "trip_id,stop_id,stop_sequence",
            "t1,s10,10",
            "t1,s2,2",
            "t1,s9,9",
        ]
        index = group_stop_times(lines)
        assert [e.stop_sequence for e in index.trips["t1"]] == [2, 9, 10]

    def test_malformed_rows_skipped_and_counted(self) -> None:
        lines = [
            "trip_id,stop_id,stop_sequence",
            "t1,s1,1",
            ",s2,2",
            "t1,,3",
            "t1,s4,four",
            "t1,s5,5",
        ]
        index = group_stop_times(lines)
        assert index.rows == 5
        assert index.skipped == 3
        assert [e.stop_id for e in index.trips["t1"]] == ["s1", "s5"]

    def test_missing_required_column_raises(self) -> None:
        with pytest.raises(MissingRequiredColumn, match="stop_sequence"):
            group_stop_times(["trip_id,stop_id", "t1,s1"])

    def test_empty_member_yields_empty_index(self) -> None:
        index = group_stop_times([])
        assert index.trips == {}
        assert index.event_count == 0

    def test_progress_reported_at_interval_only(self) -> None:
        lines = ["trip_id,stop_id,stop_sequence"] + [f"t1,s{i},{i}" for i in range(25)]
        calls: list[int] = []
        group_stop_times(lines, on_progress=calls.append, interval=10)
        assert calls == [10, 20]


class TestBulkStreamingEquivalence:
    def test_streamed_chunks_group_identically(self) -> None:
        data = build_stop_times_text(trips=12, stops_per_trip=9).encode()
        bulk = group_stop_times(split_text(data))
        # 7-byte chunks put boundaries in the middle of rows
        streamed = group_stop_times(split_chunks(_chunks(data, 7)))
        assert streamed.trips == bulk.trips
        assert streamed.rows == bulk.rows

    def test_member_lines_identical_in_both_modes(self, tmp_path: Path) -> None:
        stop_times = build_stop_times_text(trips=5, stops_per_trip=6)
        path = tmp_path / "feed.zip"
        path.write_bytes(build_gtfs_zip(stop_times=stop_times))

        with GtfsZipReader(path) as reader:
            info = reader.member("stop_times")
            bulk_lines = MemberLines(reader, info, Bulk())
            bulk = group_stop_times(bulk_lines)
            streamed_lines = MemberLines(reader, info, Streaming(chunk_size=11))
            streamed = group_stop_times(streamed_lines)

        assert streamed.trips == bulk.trips
        assert len(bulk.trips) == 5
        assert bulk_lines.fraction == 1.0
        assert streamed_lines.fraction == 1.0
