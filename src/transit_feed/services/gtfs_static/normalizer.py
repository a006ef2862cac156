"""GTFS value normalizer - typed columns, times and stop events."""

from __future__ import annotations

import math
from typing import Any, NamedTuple

from transit_feed.logging import get_logger

logger = get_logger(__name__)

# Columns stored with INTEGER affinity; anything else non-real is TEXT.
# Identifiers are never coerced ("001" must stay "001").
INTEGER_COLUMNS = frozenset(
    {
        "monday",
        "tuesday",
        "wednesday",
        "thursday",
        "friday",
        "saturday",
        "sunday",
        "exception_type",
        "route_type",
        "direction_id",
        "location_type",
        "wheelchair_boarding",
        "wheelchair_accessible",
        "bikes_allowed",
        "stop_sequence",
        "pickup_type",
        "drop_off_type",
        "timepoint",
        "shape_pt_sequence",
    }
)

REAL_COLUMNS = frozenset(
    {
        "stop_lat",
        "stop_lon",
        "shape_pt_lat",
        "shape_pt_lon",
        "shape_dist_traveled",
    }
)


class TimeParseError(Exception):
    """Raised when a GTFS time string cannot be parsed."""


class NormalizationError(Exception):
    """Raised when a row cannot be normalized."""


class StopEvent(NamedTuple):
    """One arrival/departure of a trip at a stop."""

    stop_id: str
    stop_sequence: int
    arrival_time: str
    departure_time: str
    pickup_type: int
    drop_off_type: int


class ShapePoint(NamedTuple):
    shape_id: str
    lat: float
    lon: float
    sequence: int


class GtfsNormalizer:
    """Normalizes raw GTFS records into store-ready values."""

    @staticmethod
    def normalize_stop_time(row: dict[str, str]) -> tuple[str, StopEvent]:
        """Normalize a stop_times.txt record.

        Returns:
            Tuple of (trip_id, StopEvent). Times are zero-padded so that
            lexical order equals chronological order.

        Raises:
            NormalizationError: If trip_id/stop_id are missing or the
                stop_sequence is not an integer.
        """
        trip_id = _clean_str(row.get("trip_id"))
        stop_id = _clean_str(row.get("stop_id"))
        seq_str = _clean_str(row.get("stop_sequence"))

        if not trip_id:
            raise NormalizationError("Missing trip_id in stop_times")
        if not stop_id:
            raise NormalizationError(f"Missing stop_id in stop_times for trip_id={trip_id}")

        stop_sequence = _int_or_default(seq_str, None)
        if stop_sequence is None:
            raise NormalizationError(f"Invalid stop_sequence={seq_str!r} for trip_id={trip_id}")

        return trip_id, StopEvent(
            stop_id=stop_id,
            stop_sequence=stop_sequence,
            arrival_time=normalize_gtfs_time(row.get("arrival_time", "")),
            departure_time=normalize_gtfs_time(row.get("departure_time", "")),
            pickup_type=_int_or_default(row.get("pickup_type"), 0),
            drop_off_type=_int_or_default(row.get("drop_off_type"), 0),
        )

    @staticmethod
    def normalize_shape_point(row: dict[str, str]) -> ShapePoint:
        """Normalize a shapes.txt record.

        Raises:
            NormalizationError: If shape_id is missing or lat/lon are not numbers.
        """
        shape_id = _clean_str(row.get("shape_id"))
        if not shape_id:
            raise NormalizationError("Missing shape_id")

        lat = _float_or_none(row.get("shape_pt_lat"))
        lon = _float_or_none(row.get("shape_pt_lon"))
        if lat is None or lon is None:
            raise NormalizationError(
                f"Invalid shape point for shape_id={shape_id}: "
                f"lat={row.get('shape_pt_lat')!r}, lon={row.get('shape_pt_lon')!r}"
            )

        return ShapePoint(
            shape_id=shape_id,
            lat=lat,
            lon=lon,
            sequence=_int_or_default(row.get("shape_pt_sequence"), 0),
        )

    @staticmethod
    def coerce_record(columns: list[str], row: dict[str, str]) -> dict[str, Any]:
        """Convert a generic record to column-typed values.

        Empty strings in numeric columns become NULL; unparseable numbers
        become NULL as well instead of failing the row.
        """
        return {column: coerce_value(column, row.get(column, "")) for column in columns}


def coerce_value(column: str, raw: str | None) -> Any:
    """Convert one raw field to the storage type of ``column``."""
    value = _clean_str(raw)
    if column in INTEGER_COLUMNS:
        return _int_or_default(value, None)
    if column in REAL_COLUMNS:
        return _float_or_none(value)
    return value


def parse_gtfs_time(time_str: str) -> int:
    """Parse a GTFS time string (H:MM:SS or HH:MM:SS) to seconds from midnight.

    Supports times >= 24:00:00 for trips spanning past midnight.

    Examples:
        "08:30:00" -> 30600
        "25:01:30" -> 90090
        "5:00:00" -> 18000

    Raises:
        TimeParseError: If the format is invalid.
    """
    time_str = time_str.strip()
    parts = time_str.split(":")
    if len(parts) != 3:
        msg = f"Invalid GTFS time format: {time_str!r} (expected HH:MM:SS)"
        raise TimeParseError(msg)

    try:
        hours = int(parts[0])
        minutes = int(parts[1])
        seconds = int(parts[2])
    except ValueError as exc:
        msg = f"Non-numeric components in GTFS time: {time_str!r}"
        raise TimeParseError(msg) from exc

    if minutes < 0 or minutes > 59 or seconds < 0 or seconds > 59:
        msg = f"Invalid minutes/seconds in GTFS time: {time_str!r}"
        raise TimeParseError(msg)

    if hours < 0:
        msg = f"Negative hours in GTFS time: {time_str!r}"
        raise TimeParseError(msg)

    return hours * 3600 + minutes * 60 + seconds


def format_gtfs_time(total_seconds: int) -> str:
    """Format seconds from midnight as a zero-padded GTFS time string."""
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def normalize_gtfs_time(time_str: str | None) -> str:
    """Zero-pad a GTFS time ("5:00:00" -> "05:00:00").

    Empty values stay empty and unparseable values are kept verbatim so that a
    bad time never drops a stop event.
    """
    value = _clean_str(time_str)
    if not value:
        return ""
    try:
        return format_gtfs_time(parse_gtfs_time(value))
    except TimeParseError:
        return value


def _int_or_default(value: Any, default: int | None) -> int | None:
    text = _clean_str(value)
    if not text:
        return default
    try:
        return int(text)
    except ValueError:
        try:
            number = float(text)
        except ValueError:
            return default
        return int(number) if number.is_integer() else default


def _float_or_none(value: Any) -> float | None:
    text = _clean_str(value)
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _clean_str(value: Any) -> str:
    """Trim whitespace from a value, return empty string for None."""
    if value is None:
        return ""
    return str(value).strip()
