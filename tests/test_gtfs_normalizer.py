"""Tests for GtfsNormalizer and time parsing."""

from __future__ import annotations

import pytest

from transit_feed.services.gtfs_static.normalizer import (
    GtfsNormalizer,
    NormalizationError,
    StopEvent,
    TimeParseError,
    coerce_value,
    format_gtfs_time,
    normalize_gtfs_time,
    parse_gtfs_time,
)


class TestParseGtfsTime:
    """Tests for GTFS time string parsing (supports >24h)."""

    def test_normal_time(self) -> None:
        assert parse_gtfs_time("08:30:00") == 30600

    def test_midnight(self) -> None:
        assert parse_gtfs_time("00:00:00") == 0

    def test_past_midnight_25h(self) -> None:
        assert parse_gtfs_time("25:01:30") == 90090

    def test_single_digit_hour(self) -> None:
        assert parse_gtfs_time("5:00:00") == 18000

    def test_whitespace_stripped(self) -> None:
        assert parse_gtfs_time("  08:30:00  ") == 30600

    def test_invalid_format_too_few_parts(self) -> None:
        with pytest.raises(TimeParseError, match="Invalid GTFS time format"):
            parse_gtfs_time("08:30")

    def test_invalid_non_numeric(self) -> None:
        with pytest.raises(TimeParseError, match="Non-numeric"):
            parse_gtfs_time("ab:cd:ef")

    def test_invalid_minutes_over_59(self) -> None:
        with pytest.raises(TimeParseError, match="Invalid minutes"):
            parse_gtfs_time("08:60:00")

    def test_negative_hours(self) -> None:
        with pytest.raises(TimeParseError, match="Negative hours"):
            parse_gtfs_time("-1:00:00")


class TestTimeFormatting:
    def test_format_zero_pads(self) -> None:
        assert format_gtfs_time(18000) == "05:00:00"

    def test_format_past_midnight(self) -> None:
        assert format_gtfs_time(90090) == "25:01:30"

    def test_normalize_pads_single_digit_hour(self) -> None:
        assert normalize_gtfs_time("7:05:00") == "07:05:00"

    def test_normalize_keeps_empty(self) -> None:
        assert normalize_gtfs_time("") == ""
        assert normalize_gtfs_time(None) == ""

    def test_normalize_keeps_unparseable_value(self) -> None:
        assert normalize_gtfs_time("soon") == "soon"

    def test_padded_times_sort_chronologically(self) -> None:
        raw = ["10:00:00", "9:30:00", "25:00:00", "7:00:00"]
        assert sorted(normalize_gtfs_time(t) for t in raw) == [
            "07:00:00",
            "09:30:00",
            "10:00:00",
            "25:00:00",
        ]


class TestNormalizeStopTime:
    """Tests for stop_time normalization."""

    def test_valid_stop_time(self) -> None:
        row = {
            "trip_id": "t1",
            "stop_id": "s1",
            "stop_sequence": "3",
            "arrival_time": "8:30:00",
            "departure_time": "08:31:00",
            "pickup_type": "1",
        }
        trip_id, event = GtfsNormalizer.normalize_stop_time(row)
        assert trip_id == "t1"
        assert event == StopEvent(
            stop_id="s1",
            stop_sequence=3,
            arrival_time="08:30:00",
            departure_time="08:31:00",
            pickup_type=1,
            drop_off_type=0,
        )

    def test_missing_trip_id_raises(self) -> None:
        row = {"trip_id": "", "stop_id": "s1", "stop_sequence": "1"}
        with pytest.raises(NormalizationError, match="Missing trip_id"):
            GtfsNormalizer.normalize_stop_time(row)

    def test_missing_stop_id_raises(self) -> None:
        row = {"trip_id": "t1", "stop_id": " ", "stop_sequence": "1"}
        with pytest.raises(NormalizationError, match="Missing stop_id"):
            GtfsNormalizer.normalize_stop_time(row)

    def test_non_integer_sequence_raises(self) -> None:
        row = {"trip_id": "t1", "stop_id": "s1", "stop_sequence": "first"}
        with pytest.raises(NormalizationError, match="Invalid stop_sequence"):
            GtfsNormalizer.normalize_stop_time(row)

    def test_integral_float_sequence_accepted(self) -> None:
        row = {"trip_id": "t1", "stop_id": "s1", "stop_sequence": "4.0"}
        _, event = GtfsNormalizer.normalize_stop_time(row)
        assert event.stop_sequence == 4

    def test_blank_times_allowed(self) -> None:
        row = {"trip_id": "t1", "stop_id": "s1", "stop_sequence": "2"}
        _, event = GtfsNormalizer.normalize_stop_time(row)
        assert event.arrival_time == ""
        assert event.departure_time == ""


class TestNormalizeShapePoint:
    def test_valid_point(self) -> None:
        row = {
            "shape_id": "sh1",
            "shape_pt_lat": "49.28",
            "shape_pt_lon": "-123.11",
            "shape_pt_sequence": "7",
        }
        point = GtfsNormalizer.normalize_shape_point(row)
        assert (point.shape_id, point.lat, point.lon, point.sequence) == (
            "sh1",
            49.28,
            -123.11,
            7,
        )

    def test_non_numeric_lat_raises(self) -> None:
        row = {"shape_id": "sh1", "shape_pt_lat": "north", "shape_pt_lon": "-123.11"}
        with pytest.raises(NormalizationError, match="Invalid shape point"):
            GtfsNormalizer.normalize_shape_point(row)

    def test_missing_shape_id_raises(self) -> None:
        with pytest.raises(NormalizationError, match="Missing shape_id"):
            GtfsNormalizer.normalize_shape_point({"shape_pt_lat": "1", "shape_pt_lon": "2"})


class TestCoerceValue:
    def test_identifiers_stay_text(self) -> None:
        assert coerce_value("route_id", "001") == "001"

    def test_integer_columns(self) -> None:
        assert coerce_value("direction_id", "1") == 1
        assert coerce_value("direction_id", "") is None
        assert coerce_value("route_type", "bus") is None

    def test_real_columns(self) -> None:
        assert coerce_value("stop_lat", " 49.5 ") == 49.5
        assert coerce_value("stop_lat", "nan") is None

    def test_coerce_record_fills_missing_columns(self) -> None:
        record = GtfsNormalizer.coerce_record(
            ["stop_id", "stop_lat", "location_type"], {"stop_id": " s1 ", "stop_lat": "1.5"}
        )
        assert record == {"stop_id": "s1", "stop_lat": 1.5, "location_type": None}
