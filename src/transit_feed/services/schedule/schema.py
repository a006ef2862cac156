"""Per-store schema cache and optional projection slots.

Feeds disagree on which optional columns they carry. Instead of assembling
SQL strings conditionally, every table declares a fixed tuple of
:class:`Slot` objects; :func:`project` keeps the slots whose column exists in
the loaded store and labels them with their response key.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import column, inspect, table

from transit_feed.errors import UnknownColumnReference
from transit_feed.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy import ColumnElement, TableClause
    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.orm import Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class Slot:
    """One response field backed by one store column."""

    key: str
    column: str
    required: bool = False


ROUTE_SLOTS = (
    Slot("route_id", "route_id", required=True),
    Slot("short_name", "route_short_name"),
    Slot("long_name", "route_long_name"),
    Slot("type", "route_type"),
    Slot("color", "route_color"),
    Slot("text_color", "route_text_color"),
    Slot("desc", "route_desc"),
)

TRIP_SLOTS = (
    Slot("trip_id", "trip_id", required=True),
    Slot("route_id", "route_id", required=True),
    Slot("service_id", "service_id", required=True),
    Slot("headsign", "trip_headsign"),
    Slot("trip_short_name", "trip_short_name"),
    Slot("direction_id", "direction_id"),
    Slot("shape_id", "shape_id"),
    Slot("block_id", "block_id"),
    Slot("wheelchair_accessible", "wheelchair_accessible"),
    Slot("bikes_allowed", "bikes_allowed"),
)

STOP_SLOTS = (
    Slot("stop_id", "stop_id", required=True),
    Slot("name", "stop_name", required=True),
    Slot("lat", "stop_lat", required=True),
    Slot("lon", "stop_lon", required=True),
    Slot("code", "stop_code"),
    Slot("desc", "stop_desc"),
    Slot("location_type", "location_type"),
    Slot("parent_station", "parent_station"),
    Slot("wheelchair_boarding", "wheelchair_boarding"),
    Slot("platform_code", "platform_code"),
)

STOP_EVENT_SLOTS = (
    Slot("stop_id", "stop_id", required=True),
    Slot("arrival_time", "arrival_time", required=True),
    Slot("departure_time", "departure_time", required=True),
    Slot("sequence", "stop_sequence", required=True),
    Slot("pickup_type", "pickup_type", required=True),
    Slot("drop_off_type", "drop_off_type", required=True),
)

# Route fields embedded in stop listings
ROUTE_SUMMARY_SLOTS = ROUTE_SLOTS[:6]


@dataclass(frozen=True)
class TableSchema:
    """Columns discovered for one table of the loaded store."""

    name: str
    columns: frozenset[str]
    table: TableClause = field(compare=False)

    @classmethod
    def from_columns(cls, name: str, columns: Iterable[str]) -> TableSchema:
        names = list(columns)
        return cls(
            name=name,
            columns=frozenset(names),
            table=table(name, *(column(col) for col in names)),
        )

    def has(self, *columns: str) -> bool:
        return all(col in self.columns for col in columns)

    def col(self, name: str) -> ColumnElement:
        """Return a column, raising if the store does not have it."""
        if name not in self.columns:
            raise UnknownColumnReference(self.name, name)
        return self.table.c[name]


class SchemaCache:
    """Lazily introspected column sets, keyed by table name.

    Lives on a store handle and is dropped with it, so a swapped-in store is
    always inspected afresh.
    """

    def __init__(self) -> None:
        self._tables: dict[str, TableSchema | None] = {}
        self._lock = asyncio.Lock()

    async def get(self, session: AsyncSession, name: str) -> TableSchema | None:
        """Return the schema of ``name``, or None if the store lacks the table."""
        if name in self._tables:
            return self._tables[name]
        async with self._lock:
            if name not in self._tables:
                columns = await session.run_sync(_inspect_columns, name)
                schema = None if columns is None else TableSchema.from_columns(name, columns)
                self._tables[name] = schema
                logger.debug(
                    "Introspected table",
                    table=name,
                    columns=None if columns is None else len(columns),
                )
        return self._tables[name]

    async def require(self, session: AsyncSession, name: str) -> TableSchema:
        schema = await self.get(session, name)
        if schema is None:
            raise UnknownColumnReference(name, "*")
        return schema


def _inspect_columns(session: Session, name: str) -> list[str] | None:
    inspector = inspect(session.connection())
    if not inspector.has_table(name):
        return None
    return [col["name"] for col in inspector.get_columns(name)]


def project(schema: TableSchema, slots: Iterable[Slot]) -> list[ColumnElement]:
    """Labelled columns for every slot the table can fill.

    Raises:
        UnknownColumnReference: If a required slot's column is missing.
    """
    projected: list[ColumnElement] = []
    for slot in slots:
        if slot.column in schema.columns:
            projected.append(schema.table.c[slot.column].label(slot.key))
        elif slot.required:
            raise UnknownColumnReference(schema.name, slot.column)
    return projected


def present_slots(schema: TableSchema, slots: Iterable[Slot]) -> list[Slot]:
    """Slots whose column exists in ``schema``."""
    return [slot for slot in slots if slot.column in schema.columns]
