"""Service-date resolution: which service ids run on a given date.

active = (weekly calendar rows in range with the weekday flag set)
         UNION (calendar_dates added on the date)
         EXCEPT (calendar_dates removed on the date)

The same rule exists twice: :func:`resolve_active_services` over plain rows and
:func:`active_services_select` as a SQL selectable the query layer embeds.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, union

from transit_feed.errors import InvalidDateFormat

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from sqlalchemy import Select

    from transit_feed.services.schedule.schema import TableSchema

DAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

EXCEPTION_ADDED = 1
EXCEPTION_REMOVED = 2

_DATE_RE = re.compile(r"\d{8}")


@dataclass(frozen=True)
class ServiceDateContext:
    target_date: date
    day_of_week_column: str
    active_service_ids: frozenset[str]

    @property
    def date_key(self) -> str:
        return format_service_date(self.target_date)


def parse_service_date(value: Any) -> date:
    """Parse a YYYYMMDD service date.

    Raises:
        InvalidDateFormat: If the value is not eight digits forming a real date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip() if value is not None else ""
    if not _DATE_RE.fullmatch(text):
        raise InvalidDateFormat(value)
    try:
        return datetime.strptime(text, "%Y%m%d").date()
    except ValueError as exc:
        raise InvalidDateFormat(value) from exc


def format_service_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def day_of_week_column(value: date) -> str:
    return DAY_COLUMNS[value.weekday()]


def resolve_active_services(
    calendar_rows: Iterable[Mapping[str, Any]],
    calendar_date_rows: Iterable[Mapping[str, Any]],
    target: Any,
) -> ServiceDateContext:
    """Compute the active service ids for ``target`` from raw rows."""
    target_date = parse_service_date(target)
    day = day_of_week_column(target_date)
    key = format_service_date(target_date)

    active = {
        str(row["service_id"])
        for row in calendar_rows
        if _flag(row.get(day))
        and str(row.get("start_date", "")).strip() <= key <= str(row.get("end_date", "")).strip()
    }

    removed: set[str] = set()
    for row in calendar_date_rows:
        if str(row.get("date", "")).strip() != key:
            continue
        exception_type = _flag_value(row.get("exception_type"))
        if exception_type == EXCEPTION_ADDED:
            active.add(str(row["service_id"]))
        elif exception_type == EXCEPTION_REMOVED:
            removed.add(str(row["service_id"]))

    return ServiceDateContext(
        target_date=target_date,
        day_of_week_column=day,
        active_service_ids=frozenset(active - removed),
    )


def active_services_select(
    calendar: TableSchema | None,
    calendar_dates: TableSchema | None,
    target: date,
) -> Select | None:
    """The active-service rule as a ``SELECT service_id`` for ``target``.

    Returns None when the store has neither calendar table; callers then apply
    no date filtering at all.
    """
    key = format_service_date(target)
    day = day_of_week_column(target)
    candidates: list[Select] = []

    if calendar is not None:
        candidates.append(
            select(calendar.col("service_id")).where(
                calendar.col(day) == 1,
                calendar.col("start_date") <= key,
                calendar.col("end_date") >= key,
            )
        )
    if calendar_dates is not None:
        candidates.append(
            select(calendar_dates.col("service_id")).where(
                calendar_dates.col("date") == key,
                calendar_dates.col("exception_type") == EXCEPTION_ADDED,
            )
        )
    if not candidates:
        return None

    source = candidates[0] if len(candidates) == 1 else union(*candidates)
    services = source.subquery("service_candidates")
    stmt = select(services.c.service_id)
    if calendar_dates is not None:
        removed = select(calendar_dates.col("service_id")).where(
            calendar_dates.col("date") == key,
            calendar_dates.col("exception_type") == EXCEPTION_REMOVED,
            calendar_dates.col("service_id").is_not(None),
        )
        stmt = stmt.where(services.c.service_id.not_in(removed))
    return stmt


def _flag_value(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _flag(value: Any) -> bool:
    return _flag_value(value) == 1
