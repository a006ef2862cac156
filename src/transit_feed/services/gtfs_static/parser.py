"""GTFS CSV parsing: quote-aware lines, header normalization, records."""

from __future__ import annotations

import csv
import io
import re
from functools import lru_cache
from typing import TYPE_CHECKING

from transit_feed.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

logger = get_logger(__name__)

BOM = "\ufeff"

# Required columns per GTFS table (subset the store and queries rely on)
REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "agency": (),
    "routes": ("route_id",),
    "trips": ("route_id", "service_id", "trip_id"),
    "stops": ("stop_id", "stop_name", "stop_lat", "stop_lon"),
    "stop_times": ("trip_id", "stop_id", "stop_sequence"),
    "calendar": (
        "service_id",
        "monday",
        "tuesday",
        "wednesday",
        "thursday",
        "friday",
        "saturday",
        "sunday",
        "start_date",
        "end_date",
    ),
    "calendar_dates": ("service_id", "date", "exception_type"),
    "shapes": ("shape_id", "shape_pt_lat", "shape_pt_lon"),
}

# Header spellings seen in the wild, keyed by their normalized form
HEADER_ALIASES: dict[str, str] = {
    "routeid": "route_id",
    "tripid": "trip_id",
    "serviceid": "service_id",
    "stopid": "stop_id",
    "shapeid": "shape_id",
    "agencyid": "agency_id",
    "blockid": "block_id",
    "parentstation": "parent_station",
    "routeshortname": "route_short_name",
    "routelongname": "route_long_name",
    "routetype": "route_type",
    "routecolor": "route_color",
    "routetextcolor": "route_text_color",
    "stopname": "stop_name",
    "stoplat": "stop_lat",
    "stoplon": "stop_lon",
    "stopsequence": "stop_sequence",
    "arrivaltime": "arrival_time",
    "departuretime": "departure_time",
    "pickuptype": "pickup_type",
    "dropofftype": "drop_off_type",
    "drop_offtype": "drop_off_type",
    "dropoff_type": "drop_off_type",
    "tripheadsign": "trip_headsign",
    "directionid": "direction_id",
    "startdate": "start_date",
    "enddate": "end_date",
    "exceptiontype": "exception_type",
    "shapeptlat": "shape_pt_lat",
    "shapeptlon": "shape_pt_lon",
    "shapeptsequence": "shape_pt_sequence",
}

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9_]")


def parse_line(line: str, delimiter: str = ",") -> list[str]:
    """Split one CSV line into trimmed field values.

    A quote character protects delimiters, and a doubled quote inside a quoted
    field is a literal quote. Lines without quotes take a plain split.
    """
    if '"' not in line:
        return [field.strip() for field in line.split(delimiter)]
    row = next(csv.reader((line,), delimiter=delimiter, skipinitialspace=True), [])
    return [field.strip() for field in row]


def format_line(fields: Sequence[str], delimiter: str = ",") -> str:
    """Serialize fields with the quoting rules :func:`parse_line` understands."""
    buf = io.StringIO()
    csv.writer(buf, delimiter=delimiter, lineterminator="").writerow(fields)
    return buf.getvalue()


@lru_cache(maxsize=2048)
def normalize_header(name: str) -> str:
    """Return the canonical column name for a raw header cell.

    Examples:
        "Route ID" -> "route_id"
        "\\ufeffstop_id" -> "stop_id"
        "RouteId" -> "route_id"
    """
    key = name.replace(BOM, "").strip().lower()
    key = _WHITESPACE_RE.sub("_", key)
    key = _INVALID_CHARS_RE.sub("", key)
    return HEADER_ALIASES.get(key, key)


def split_header(lines: Iterable[str]) -> tuple[list[str], Iterator[list[str]]]:
    """Consume the header line and return (columns, iterator of row fields).

    Blank lines after the header are skipped. Empty input yields no columns
    and no rows.
    """
    it = iter(lines)
    first = next(it, None)
    if first is None:
        return [], iter(())
    columns = [normalize_header(cell) for cell in parse_line(first.lstrip(BOM))]
    if not any(columns):
        return [], iter(())
    return columns, (parse_line(line) for line in it if line.strip())


def zip_record(columns: Sequence[str], values: Sequence[str]) -> dict[str, str]:
    """Map row values onto normalized column names.

    Missing trailing values become empty strings and surplus values are
    dropped. For duplicated column names the first occurrence wins.
    """
    record: dict[str, str] = {}
    for idx, column in enumerate(columns):
        if not column or column in record:
            continue
        record[column] = values[idx] if idx < len(values) else ""
    return record


def iter_records(lines: Iterable[str]) -> Iterator[dict[str, str]]:
    """Yield one normalized record per data line."""
    columns, rows = split_header(lines)
    for values in rows:
        yield zip_record(columns, values)


def parse_table(text: str) -> list[dict[str, str]]:
    """Parse a whole table held in memory into normalized records."""
    if not text:
        return []
    return list(iter_records(line.rstrip("\r") for line in text.split("\n")))


def unique_columns(columns: Iterable[str]) -> list[str]:
    """Drop empty and repeated column names, keeping header order."""
    seen: list[str] = []
    for column in columns:
        if column and column not in seen:
            seen.append(column)
    return seen


def missing_required(table: str, columns: Iterable[str]) -> list[str]:
    """Return the required columns of ``table`` absent from ``columns``."""
    present = set(columns)
    missing = [col for col in REQUIRED_COLUMNS.get(table, ()) if col not in present]
    if missing:
        logger.warning("Required columns missing", table=table, missing=missing)
    return missing
