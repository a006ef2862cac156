"""Tests for GtfsZipReader - archive validation and member lookup."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from transit_feed.errors import MalformedArchive, MissingRequiredTable
from transit_feed.services.gtfs_static.reader import GtfsZipReader

from .fixtures.gtfs_fixture import build_gtfs_zip, build_invalid_zip, corrupt_member

if TYPE_CHECKING:
    from pathlib import Path


def _write(tmp_path: Path, data: bytes, name: str = "feed.zip") -> Path:
    path = tmp_path / name
    path.write_bytes(data)
    return path


class TestGtfsZipReader:
    """Tests for ZIP reader validation and member resolution."""

    def test_valid_zip_opens_successfully(self, tmp_path: Path) -> None:
        with GtfsZipReader(_write(tmp_path, build_gtfs_zip())) as reader:
            members = [reader.member(t) for t in ("stops", "routes", "trips", "stop_times")]
        assert [m.filename for m in members if m is not None] == [
            "stops.txt",
            "routes.txt",
            "trips.txt",
            "stop_times.txt",
        ]

    def test_missing_required_table_names_it(self, tmp_path: Path) -> None:
        path = _write(tmp_path, build_gtfs_zip(exclude_files={"stops.txt"}))
        with pytest.raises(MissingRequiredTable, match=r"stops\.txt") as exc_info:
            GtfsZipReader(path)
        assert exc_info.value.table == "stops"

    def test_first_missing_table_reported(self, tmp_path: Path) -> None:
        path = _write(tmp_path, build_gtfs_zip(exclude_files={"stop_times.txt", "routes.txt"}))
        with pytest.raises(MissingRequiredTable) as exc_info:
            GtfsZipReader(path)
        assert exc_info.value.table == "routes"

    def test_invalid_zip_raises_malformed(self, tmp_path: Path) -> None:
        with pytest.raises(MalformedArchive):
            GtfsZipReader(_write(tmp_path, build_invalid_zip()))

    def test_optional_tables_detected(self, tmp_path: Path) -> None:
        with GtfsZipReader(_write(tmp_path, build_gtfs_zip())) as reader:
            assert reader.member("calendar") is not None
            assert reader.member("shapes") is not None
            assert reader.member("fare_rules") is None

    def test_members_matched_case_insensitively(self, tmp_path: Path) -> None:
        data = build_gtfs_zip(
            exclude_files={"stops.txt"},
            extra_files={"Stops.TXT": "stop_id,stop_name,stop_lat,stop_lon\n1,A,0,0\n"},
        )
        with GtfsZipReader(_write(tmp_path, data)) as reader:
            info = reader.member("stops")
            assert info is not None
            assert info.filename == "Stops.TXT"

    def test_members_nested_in_folder(self, tmp_path: Path) -> None:
        with GtfsZipReader(_write(tmp_path, build_gtfs_zip(prefix="gtfs/"))) as reader:
            info = reader.member("stop_times")
            assert info is not None
            assert info.filename == "gtfs/stop_times.txt"

    def test_members_deeper_than_one_folder_ignored(self, tmp_path: Path) -> None:
        with pytest.raises(MissingRequiredTable):
            GtfsZipReader(_write(tmp_path, build_gtfs_zip(prefix="export/gtfs/")))

    def test_corrupt_member_raises_malformed(self, tmp_path: Path) -> None:
        data = corrupt_member(build_gtfs_zip(), "stop_times.txt")
        with GtfsZipReader(_write(tmp_path, data)) as reader:
            info = reader.member("stop_times")
            assert info is not None
            with pytest.raises(MalformedArchive, match=r"stop_times\.txt"):
                reader.read_bytes(info)

    def test_read_bytes_returns_member_content(self, tmp_path: Path) -> None:
        with GtfsZipReader(_write(tmp_path, build_gtfs_zip())) as reader:
            data = reader.read_bytes(reader.member("stops"))
        assert data.startswith(b"stop_id,stop_name")
