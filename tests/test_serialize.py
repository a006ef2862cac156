"""Tests for JSON boundary conversion of query results."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, text

from transit_feed.services.schedule.serialize import to_boundary


class TestToBoundary:
    def test_scalars_pass_through(self) -> None:
        assert to_boundary("a") == "a"
        assert to_boundary(3) == 3
        assert to_boundary(True) is True
        assert to_boundary(None) is None

    def test_decimals(self) -> None:
        assert to_boundary(Decimal("12")) == 12
        assert isinstance(to_boundary(Decimal("12.0")), int)
        assert to_boundary(Decimal("1.5")) == 1.5
        assert to_boundary(Decimal("NaN")) is None

    def test_non_finite_floats_become_null(self) -> None:
        assert to_boundary(float("inf")) is None
        assert to_boundary(float("nan")) is None
        assert to_boundary(49.28) == 49.28

    def test_dates_iso_formatted(self) -> None:
        assert to_boundary(date(2024, 1, 8)) == "2024-01-08"

    def test_unrepresentable_values_dropped(self) -> None:
        value = {"keep": 1, "blob": b"\x00", "fn": len, "nested": [1, print, b"x", 2]}
        assert to_boundary(value) == {"keep": 1, "nested": [1, 2]}

    def test_tuples_and_sets_become_lists(self) -> None:
        assert to_boundary((1, 2)) == [1, 2]
        assert to_boundary({"a": frozenset({3})}) == {"a": [3]}

    def test_dropped_top_level_value_is_none(self) -> None:
        assert to_boundary(object()) is None

    def test_rows_converted_to_dicts(self) -> None:
        engine = create_engine("sqlite://")
        with engine.connect() as conn:
            rows = conn.execute(text("SELECT 'r1' AS route_id, 3 AS type, 1.5 AS lat")).all()
        engine.dispose()
        assert to_boundary(rows) == [{"route_id": "r1", "type": 3, "lat": 1.5}]
