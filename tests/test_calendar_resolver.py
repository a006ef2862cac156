"""Tests for service-date resolution, in Python and as SQL."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime

import pytest
from sqlalchemy import Engine, create_engine, text

from transit_feed.errors import InvalidDateFormat
from transit_feed.services.gtfs_static.parser import parse_table
from transit_feed.services.schedule.calendar import (
    active_services_select,
    day_of_week_column,
    format_service_date,
    parse_service_date,
    resolve_active_services,
)
from transit_feed.services.schedule.schema import TableSchema

from .fixtures.gtfs_fixture import (
    CALENDAR_DATES_TXT,
    CALENDAR_TXT,
    MONDAY,
    NEW_YEARS_DAY,
    SATURDAY,
    TUESDAY,
)

CALENDAR = parse_table(CALENDAR_TXT)
CALENDAR_DATES = parse_table(CALENDAR_DATES_TXT)


class TestParseServiceDate:
    def test_valid_date(self) -> None:
        assert parse_service_date("20240108") == date(2024, 1, 8)

    def test_surrounding_whitespace(self) -> None:
        assert parse_service_date(" 20240108 ") == date(2024, 1, 8)

    def test_date_objects_pass_through(self) -> None:
        assert parse_service_date(date(2024, 3, 1)) == date(2024, 3, 1)
        assert parse_service_date(datetime(2024, 3, 1, 12, 30)) == date(2024, 3, 1)

    @pytest.mark.parametrize("value", ["2024-01-08", "2024018", "202401080", "2024O108", "", None])
    def test_malformed_values_rejected(self, value: object) -> None:
        with pytest.raises(InvalidDateFormat):
            parse_service_date(value)

    def test_impossible_calendar_date_rejected(self) -> None:
        with pytest.raises(InvalidDateFormat, match="20240230"):
            parse_service_date("20240230")

    def test_format_round_trip(self) -> None:
        assert format_service_date(parse_service_date(MONDAY)) == MONDAY

    @pytest.mark.parametrize(
        ("value", "column"),
        [(MONDAY, "monday"), (TUESDAY, "tuesday"), (SATURDAY, "saturday"), ("20240114", "sunday")],
    )
    def test_day_of_week_column(self, value: str, column: str) -> None:
        assert day_of_week_column(parse_service_date(value)) == column


class TestResolveActiveServices:
    def test_regular_weekday(self) -> None:
        context = resolve_active_services(CALENDAR, CALENDAR_DATES, MONDAY)
        assert context.active_service_ids == frozenset({"WD"})
        assert context.day_of_week_column == "monday"
        assert context.date_key == MONDAY

    def test_regular_saturday(self) -> None:
        context = resolve_active_services(CALENDAR, CALENDAR_DATES, SATURDAY)
        assert context.active_service_ids == frozenset({"SA"})

    def test_exceptions_remove_and_add(self) -> None:
        context = resolve_active_services(CALENDAR, CALENDAR_DATES, NEW_YEARS_DAY)
        assert context.active_service_ids == frozenset({"SA"})

    def test_outside_calendar_range(self) -> None:
        context = resolve_active_services(CALENDAR, CALENDAR_DATES, "20250106")
        assert context.active_service_ids == frozenset()

    def test_calendar_dates_only_feed(self) -> None:
        context = resolve_active_services([], CALENDAR_DATES, NEW_YEARS_DAY)
        assert context.active_service_ids == frozenset({"SA"})

    def test_invalid_date_raises(self) -> None:
        with pytest.raises(InvalidDateFormat):
            resolve_active_services(CALENDAR, CALENDAR_DATES, "Jan 8")


@pytest.fixture
def calendar_db() -> Iterator[Engine]:
    engine = create_engine("sqlite://")
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE calendar (service_id TEXT, monday INTEGER, tuesday INTEGER, "
                "wednesday INTEGER, thursday INTEGER, friday INTEGER, saturday INTEGER, "
                "sunday INTEGER, start_date TEXT, end_date TEXT)"
            )
        )
        conn.execute(
            text("CREATE TABLE calendar_dates (service_id TEXT, date TEXT, exception_type INTEGER)")
        )
        conn.execute(
            text(
                "INSERT INTO calendar VALUES "
                "('WD', 1, 1, 1, 1, 1, 0, 0, '20240101', '20241231'), "
                "('SA', 0, 0, 0, 0, 0, 1, 0, '20240101', '20241231')"
            )
        )
        conn.execute(
            text(
                "INSERT INTO calendar_dates VALUES "
                f"('WD', '{NEW_YEARS_DAY}', 2), ('SA', '{NEW_YEARS_DAY}', 1)"
            )
        )
    yield engine
    engine.dispose()


def _schema(name: str, source: str) -> TableSchema:
    header = source.splitlines()[0]
    return TableSchema.from_columns(name, header.split(","))


class TestActiveServicesSelect:
    @pytest.mark.parametrize(
        ("target", "expected"),
        [(MONDAY, {"WD"}), (SATURDAY, {"SA"}), (NEW_YEARS_DAY, {"SA"}), ("20250106", set())],
    )
    def test_matches_python_resolver(
        self, calendar_db: Engine, target: str, expected: set[str]
    ) -> None:
        stmt = active_services_select(
            _schema("calendar", CALENDAR_TXT),
            _schema("calendar_dates", CALENDAR_DATES_TXT),
            parse_service_date(target),
        )
        assert stmt is not None
        with calendar_db.connect() as conn:
            active = set(conn.execute(stmt).scalars())
        assert active == expected
        resolved = resolve_active_services(CALENDAR, CALENDAR_DATES, target)
        assert active == set(resolved.active_service_ids)

    def test_calendar_only(self, calendar_db: Engine) -> None:
        stmt = active_services_select(
            _schema("calendar", CALENDAR_TXT), None, parse_service_date(NEW_YEARS_DAY)
        )
        with calendar_db.connect() as conn:
            assert set(conn.execute(stmt).scalars()) == {"WD"}

    def test_no_calendar_tables(self) -> None:
        assert active_services_select(None, None, parse_service_date(MONDAY)) is None
