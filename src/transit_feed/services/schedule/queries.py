"""Schema-adaptive read queries against the current derived store.

Every public method opens its own session on the current store handle,
runs under ``query_timeout_sec`` and returns JSON-safe lists of dicts.
Optional columns are only projected when the loaded feed has them, so the
shape of a response narrows with the feed instead of failing.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, literal, or_, select
from sqlalchemy.exc import OperationalError

from transit_feed.config import get_settings
from transit_feed.errors import InvalidRequest, QueryTimeout, UnknownColumnReference
from transit_feed.logging import get_logger, log_duration
from transit_feed.services.schedule.calendar import (
    EXCEPTION_ADDED,
    active_services_select,
    parse_service_date,
)
from transit_feed.services.schedule.schema import (
    ROUTE_SLOTS,
    ROUTE_SUMMARY_SLOTS,
    STOP_EVENT_SLOTS,
    STOP_SLOTS,
    TRIP_SLOTS,
    present_slots,
    project,
)
from transit_feed.services.schedule.serialize import to_boundary

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence
    from datetime import date

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.ext.asyncio import AsyncSession

    from transit_feed.database import StoreRegistry
    from transit_feed.services.schedule.schema import SchemaCache, Slot, TableSchema

logger = get_logger(__name__)

MAX_BATCH_TRIPS = 500

_MISSING_RE = re.compile(r"no such (column|table): ([\w.]+)")


class ScheduleQueries:
    """Read operations exposed by the schedule API."""

    def __init__(
        self,
        registry: StoreRegistry,
        timeout_sec: float | None = None,
        default_page_size: int | None = None,
        max_page_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.query_timeout_sec
        self.default_page_size = default_page_size or settings.default_page_size
        self.max_page_size = max_page_size or settings.max_page_size

    async def _run(
        self,
        request: str,
        operation: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Run ``operation(session, schema, *args)`` with a timeout.

        The session is closed before any error leaves this method. A statement
        still running at the deadline is interrupted on its connection.
        """
        handle = self.registry.require()
        with log_duration(logger, "Schedule query", request=request) as extra:
            try:
                async with handle.session() as session:
                    driver = await handle.driver_connection(session)
                    result = await self._within_deadline(
                        driver, operation(session, handle.schema, *args)
                    )
            except TimeoutError as exc:
                raise QueryTimeout(request, self.timeout_sec) from exc
            except OperationalError as exc:
                reference = _missing_reference(exc)
                if reference is None:
                    raise
                raise UnknownColumnReference(*reference) from exc
            extra["rows"] = len(result)
        return to_boundary(result)

    async def _within_deadline(self, driver: Any, awaitable: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout_sec)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if done:
            return task.result()

        # Thread-safe; aborts the statement running in the aiosqlite worker.
        await driver.interrupt()
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled():
            task.exception()
        raise TimeoutError

    # Routes

    async def routes(self) -> list[dict[str, Any]]:
        """All routes with agency name and trip count."""
        return await self._run("routes", _routes)

    async def trips_for_route(
        self, route_id: str, date: Any, direction_id: int | None = None
    ) -> list[dict[str, Any]]:
        """Trips of a route running on ``date`` ordered by first departure."""
        target = parse_service_date(date)
        return await self._run("trips_for_route", _trips_for_route, route_id, target, direction_id)

    async def bulk_route_data(
        self, route_id: str, date: Any, direction_id: int | None = None
    ) -> list[dict[str, Any]]:
        """Like :meth:`trips_for_route` with each trip's stop events nested."""
        target = parse_service_date(date)
        return await self._run("bulk_route_data", _bulk_route_data, route_id, target, direction_id)

    # Trips

    async def stop_events(self, trip_id: str) -> list[dict[str, Any]]:
        return await self._run("stop_events", _stop_events, [trip_id], False)

    async def stop_events_batch(self, trip_ids: Sequence[str]) -> dict[str, list[dict[str, Any]]]:
        """Stop events for several trips in one round trip, keyed by trip id.

        Trips without stop events are omitted.
        """
        unique = list(dict.fromkeys(trip_ids))
        if not unique:
            return {}
        if len(unique) > MAX_BATCH_TRIPS:
            raise InvalidRequest(f"At most {MAX_BATCH_TRIPS} trip ids per request")
        rows = await self._run("stop_events_batch", _stop_events, unique, True)
        grouped: dict[str, list[dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(row.pop("trip_id"), []).append(row)
        return {trip_id: grouped[trip_id] for trip_id in unique if trip_id in grouped}

    async def shape_points(self, shape_id: str) -> list[list[float]]:
        return await self._run("shape_points", _shape_points, shape_id)

    # Stops

    async def stops_paginated(
        self,
        search: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Stops ordered by name then id, with the routes serving each stop."""
        limit = self._page_limit(limit)
        if offset < 0:
            raise InvalidRequest("offset must be zero or greater")
        term = (search or "").strip() or None
        return await self._run("stops_paginated", _stops_paginated, term, offset, limit)

    async def stop_departures(
        self, stop_id: str, date: Any, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Departures from a stop on ``date`` ordered by departure time."""
        target = parse_service_date(date)
        limit = self._page_limit(limit)
        return await self._run("stop_departures", _stop_departures, stop_id, target, limit)

    # Calendar

    async def available_date_ranges(self) -> list[dict[str, str]]:
        return await self._run("available_date_ranges", _available_date_ranges)

    def _page_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.default_page_size
        if not 1 <= limit <= self.max_page_size:
            raise InvalidRequest(f"limit must be between 1 and {self.max_page_size}")
        return limit


async def _routes(session: AsyncSession, schema: SchemaCache) -> list[dict[str, Any]]:
    routes = await schema.require(session, "routes")
    trips = await schema.require(session, "trips")
    agency = await schema.get(session, "agency")

    trip_count = (
        select(func.count())
        .select_from(trips.table)
        .where(trips.col("route_id") == routes.col("route_id"))
        .scalar_subquery()
        .label("trip_count")
    )
    stmt = select(
        *project(routes, ROUTE_SLOTS),
        _agency_name(routes, agency).label("agency_name"),
        trip_count,
    ).order_by(*_route_order(routes))
    return _rows(await session.execute(stmt))


async def _trips_for_route(
    session: AsyncSession,
    schema: SchemaCache,
    route_id: str,
    target: date,
    direction_id: int | None,
) -> list[dict[str, Any]]:
    stmt = await _trip_select(session, schema, route_id, target, direction_id)
    return _rows(await session.execute(stmt))


async def _bulk_route_data(
    session: AsyncSession,
    schema: SchemaCache,
    route_id: str,
    target: date,
    direction_id: int | None,
) -> list[dict[str, Any]]:
    trips = await schema.require(session, "trips")
    stop_times = await schema.require(session, "stop_times")
    stops = await schema.require(session, "stops")

    events = (
        select(func.json_group_array(func.json_object(*_event_pairs(stop_times, stops))))
        .select_from(_stop_join(stop_times, stops))
        .where(stop_times.col("trip_id") == trips.col("trip_id"))
        .scalar_subquery()
        .label("stop_events")
    )
    stmt = await _trip_select(session, schema, route_id, target, direction_id)
    rows = _rows(await session.execute(stmt.add_columns(events)))
    for row in rows:
        nested = json.loads(row["stop_events"] or "[]")
        nested.sort(key=lambda event: event["sequence"])
        row["stop_events"] = nested
    return rows


async def _trip_select(
    session: AsyncSession,
    schema: SchemaCache,
    route_id: str,
    target: date,
    direction_id: int | None,
) -> Select:
    trips = await schema.require(session, "trips")
    stop_times = await schema.require(session, "stop_times")
    calendar = await schema.get(session, "calendar")
    calendar_dates = await schema.get(session, "calendar_dates")

    same_trip = stop_times.col("trip_id") == trips.col("trip_id")
    first_departure = (
        select(func.min(func.nullif(stop_times.col("departure_time"), "")))
        .where(same_trip)
        .scalar_subquery()
        .label("first_departure")
    )
    last_arrival = (
        select(func.max(func.nullif(stop_times.col("arrival_time"), "")))
        .where(same_trip)
        .scalar_subquery()
        .label("last_arrival")
    )
    stop_count = (
        select(func.count())
        .select_from(stop_times.table)
        .where(same_trip)
        .scalar_subquery()
        .label("stop_count")
    )

    stmt = select(*project(trips, TRIP_SLOTS), first_departure, last_arrival, stop_count).where(
        trips.col("route_id") == route_id
    )
    if direction_id is not None:
        if trips.has("direction_id"):
            stmt = stmt.where(trips.col("direction_id") == direction_id)
        else:
            logger.debug("Ignoring direction filter, column absent", route_id=route_id)

    services = active_services_select(calendar, calendar_dates, target)
    if services is not None:
        stmt = stmt.where(trips.col("service_id").in_(services))

    return stmt.order_by(first_departure, trips.col("trip_id"))


async def _stop_events(
    session: AsyncSession, schema: SchemaCache, trip_ids: list[str], keyed: bool
) -> list[dict[str, Any]]:
    stop_times = await schema.require(session, "stop_times")
    stops = await schema.require(session, "stops")

    columns = [stop_times.col(slot.column).label(slot.key) for slot in STOP_EVENT_SLOTS]
    columns += _stop_fields(stops)
    if keyed:
        columns.insert(0, stop_times.col("trip_id").label("trip_id"))
    if len(trip_ids) == 1:
        condition = stop_times.col("trip_id") == trip_ids[0]
    else:
        condition = stop_times.col("trip_id").in_(trip_ids)

    stmt = (
        select(*columns)
        .select_from(_stop_join(stop_times, stops))
        .where(condition)
        .order_by(stop_times.col("trip_id"), stop_times.col("stop_sequence"))
    )
    return _rows(await session.execute(stmt))


async def _shape_points(
    session: AsyncSession, schema: SchemaCache, shape_id: str
) -> list[list[float]]:
    shapes = await schema.get(session, "shapes")
    if shapes is None:
        return []
    stmt = (
        select(shapes.col("shape_pt_lat"), shapes.col("shape_pt_lon"))
        .where(shapes.col("shape_id") == shape_id)
        .order_by(shapes.col("shape_pt_sequence"))
    )
    return [[lat, lon] for lat, lon in await session.execute(stmt)]


async def _stops_paginated(
    session: AsyncSession,
    schema: SchemaCache,
    term: str | None,
    offset: int,
    limit: int,
) -> list[dict[str, Any]]:
    stops = await schema.require(session, "stops")
    routes = await schema.require(session, "routes")
    stop_routes = await schema.require(session, "stop_routes")

    serving = (
        select(func.json_group_array(func.json_object(*_slot_pairs(routes, ROUTE_SUMMARY_SLOTS))))
        .select_from(
            stop_routes.table.join(
                routes.table, routes.col("route_id") == stop_routes.col("route_id")
            )
        )
        .where(stop_routes.col("stop_id") == stops.col("stop_id"))
        .scalar_subquery()
        .label("routes")
    )

    stmt = select(*project(stops, STOP_SLOTS), serving)
    if term:
        searchable = [stops.col("stop_name"), stops.col("stop_id")]
        if stops.has("stop_code"):
            searchable.append(stops.col("stop_code"))
        stmt = stmt.where(or_(*(col.icontains(term, autoescape=True) for col in searchable)))

    stmt = (
        stmt.order_by(stops.col("stop_name").collate("NOCASE"), stops.col("stop_id"))
        .offset(offset)
        .limit(limit)
    )
    rows = _rows(await session.execute(stmt))
    for row in rows:
        served = json.loads(row["routes"] or "[]")
        served.sort(key=lambda route: (str(route.get("short_name") or ""), route["route_id"]))
        row["routes"] = served
        row["route_count"] = len(served)
    return rows


async def _stop_departures(
    session: AsyncSession,
    schema: SchemaCache,
    stop_id: str,
    target: date,
    limit: int,
) -> list[dict[str, Any]]:
    stop_times = await schema.require(session, "stop_times")
    trips = await schema.require(session, "trips")
    routes = await schema.require(session, "routes")
    calendar = await schema.get(session, "calendar")
    calendar_dates = await schema.get(session, "calendar_dates")

    columns: list[ColumnElement] = [
        stop_times.col("trip_id").label("trip_id"),
        trips.col("route_id").label("route_id"),
        trips.col("service_id").label("service_id"),
        stop_times.col("arrival_time").label("arrival_time"),
        stop_times.col("departure_time").label("departure_time"),
        stop_times.col("stop_sequence").label("sequence"),
    ]
    for slot in present_slots(trips, TRIP_SLOTS):
        if slot.key in ("headsign", "direction_id"):
            columns.append(trips.col(slot.column).label(slot.key))
    if routes.has("route_short_name"):
        columns.append(routes.col("route_short_name").label("route_short_name"))

    stmt = (
        select(*columns)
        .select_from(
            stop_times.table.join(trips.table, trips.col("trip_id") == stop_times.col("trip_id"))
            .outerjoin(routes.table, routes.col("route_id") == trips.col("route_id"))
        )
        .where(stop_times.col("stop_id") == stop_id)
    )
    services = active_services_select(calendar, calendar_dates, target)
    if services is not None:
        stmt = stmt.where(trips.col("service_id").in_(services))

    stmt = stmt.order_by(stop_times.col("departure_time"), stop_times.col("trip_id")).limit(limit)
    return _rows(await session.execute(stmt))


async def _available_date_ranges(
    session: AsyncSession, schema: SchemaCache
) -> list[dict[str, str]]:
    calendar = await schema.get(session, "calendar")
    calendar_dates = await schema.get(session, "calendar_dates")
    ranges: list[dict[str, str]] = []

    if calendar is not None:
        stmt = (
            select(calendar.col("start_date"), calendar.col("end_date"))
            .distinct()
            .order_by(calendar.col("start_date"), calendar.col("end_date"))
        )
        for start, end in await session.execute(stmt):
            if start and end:
                ranges.append({"start_date": str(start), "end_date": str(end)})

    if calendar_dates is not None:
        added_date = calendar_dates.col("date")
        stmt = select(func.min(added_date), func.max(added_date)).where(
            calendar_dates.col("exception_type") == EXCEPTION_ADDED
        )
        start, end = (await session.execute(stmt)).one()
        span = {"start_date": str(start), "end_date": str(end)}
        if start and end and span not in ranges:
            ranges.append(span)

    return ranges


def _agency_name(routes: TableSchema, agency: TableSchema | None) -> ColumnElement:
    """Agency name per route; single-agency feeds may omit routes.agency_id."""
    if agency is None or not agency.has("agency_name"):
        return literal("")
    first = select(agency.col("agency_name")).limit(1).scalar_subquery()
    if agency.has("agency_id") and routes.has("agency_id"):
        matched = (
            select(agency.col("agency_name"))
            .where(agency.col("agency_id") == routes.col("agency_id"))
            .limit(1)
            .scalar_subquery()
        )
        return func.coalesce(matched, first, "")
    return func.coalesce(first, "")


def _route_order(routes: TableSchema) -> list[ColumnElement]:
    order = [routes.col("route_short_name")] if routes.has("route_short_name") else []
    order.append(routes.col("route_id"))
    return order


def _stop_join(stop_times: TableSchema, stops: TableSchema) -> Any:
    return stop_times.table.outerjoin(
        stops.table, stops.col("stop_id") == stop_times.col("stop_id")
    )


def _stop_fields(stops: TableSchema) -> list[ColumnElement]:
    return [
        stops.col("stop_name").label("stop_name"),
        stops.col("stop_lat").label("lat"),
        stops.col("stop_lon").label("lon"),
    ]


def _event_pairs(stop_times: TableSchema, stops: TableSchema) -> list[Any]:
    pairs = _slot_pairs(stop_times, STOP_EVENT_SLOTS)
    for field in _stop_fields(stops):
        pairs += [field.name, field.element]
    return pairs


def _slot_pairs(schema: TableSchema, slots: Iterable[Slot]) -> list[Any]:
    """Flattened key/value arguments for ``json_object``."""
    pairs: list[Any] = []
    for slot in present_slots(schema, slots):
        pairs += [slot.key, schema.col(slot.column)]
    return pairs


def _rows(result: Any) -> list[dict[str, Any]]:
    return [dict(row._mapping) for row in result]


def _missing_reference(exc: OperationalError) -> tuple[str, str] | None:
    match = _MISSING_RE.search(str(exc.orig))
    if match is None:
        return None
    kind, name = match.groups()
    if kind == "table":
        return name, "*"
    table_name, _, column_name = name.rpartition(".")
    return table_name or "?", column_name
