"""Schedule query endpoints over the current feed.

Endpoints
---------
GET  /routes                          – all routes with agency and trip count
GET  /routes/{route_id}/trips         – trips running on a service date
GET  /routes/{route_id}/schedule      – same trips with nested stop events
GET  /trips/{trip_id}/stop-events     – ordered stop events of one trip
POST /trips/stop-events               – stop events of many trips at once
GET  /shapes/{shape_id}/points        – ordered [lat, lon] pairs
GET  /stops                           – paginated, searchable stop list
GET  /stops/{stop_id}/departures      – departures from a stop on a date
GET  /calendar/date-ranges            – service date ranges in the feed

Optional GTFS columns the feed does not carry are left out of the response
objects rather than returned as null.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from transit_feed.logging import get_logger
from transit_feed.services.schedule.queries import MAX_BATCH_TRIPS, ScheduleQueries

logger = get_logger(__name__)

router = APIRouter(tags=["schedule"])

ServiceDate = Annotated[
    str,
    Query(description="Service date in YYYYMMDD form", examples=["20240108"]),
]
DirectionId = Annotated[
    int | None,
    Query(ge=0, le=1, description="Only trips in this direction"),
]


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class RouteSummary(BaseModel):
    route_id: str
    short_name: str | None = None
    long_name: str | None = None
    type: int | None = None
    color: str | None = None
    text_color: str | None = None


class RouteOut(RouteSummary):
    desc: str | None = None
    agency_name: str
    trip_count: int


class TripOut(BaseModel):
    trip_id: str
    route_id: str
    service_id: str
    headsign: str | None = None
    trip_short_name: str | None = None
    direction_id: int | None = None
    shape_id: str | None = None
    block_id: str | None = None
    wheelchair_accessible: int | None = None
    bikes_allowed: int | None = None
    first_departure: str | None = None
    last_arrival: str | None = None
    stop_count: int


class StopEventOut(BaseModel):
    stop_id: str
    stop_name: str | None = None
    lat: float | None = None
    lon: float | None = None
    arrival_time: str
    departure_time: str
    sequence: int
    pickup_type: int
    drop_off_type: int


class TripScheduleOut(TripOut):
    stop_events: list[StopEventOut]


class StopEventsBatchRequest(BaseModel):
    trip_ids: list[str] = Field(min_length=1, max_length=MAX_BATCH_TRIPS)


class StopOut(BaseModel):
    stop_id: str
    name: str
    lat: float | None = None
    lon: float | None = None
    code: str | None = None
    desc: str | None = None
    location_type: int | None = None
    parent_station: str | None = None
    wheelchair_boarding: int | None = None
    platform_code: str | None = None
    routes: list[RouteSummary]
    route_count: int


class StopsPage(BaseModel):
    items: list[StopOut]
    limit: int
    offset: int
    count: int


class DepartureOut(BaseModel):
    trip_id: str
    route_id: str
    service_id: str
    route_short_name: str | None = None
    headsign: str | None = None
    direction_id: int | None = None
    arrival_time: str
    departure_time: str
    sequence: int


class DateRange(BaseModel):
    start_date: str
    end_date: str


def _queries(request: Request) -> ScheduleQueries:
    return request.app.state.queries


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get(
    "/routes",
    response_model=list[RouteOut],
    response_model_exclude_unset=True,
    summary="List routes",
)
async def list_routes(request: Request) -> list[dict[str, Any]]:
    return await _queries(request).routes()


@router.get(
    "/routes/{route_id}/trips",
    response_model=list[TripOut],
    response_model_exclude_unset=True,
    summary="Trips of a route on a service date",
    description="Trips whose service runs on `date`, ordered by first departure.",
)
async def list_route_trips(
    route_id: str,
    date: ServiceDate,
    request: Request,
    direction_id: DirectionId = None,
) -> list[dict[str, Any]]:
    return await _queries(request).trips_for_route(route_id, date, direction_id)


@router.get(
    "/routes/{route_id}/schedule",
    response_model=list[TripScheduleOut],
    response_model_exclude_unset=True,
    summary="Trips of a route with their stop events",
    description=(
        "Bulk variant of the trips endpoint: every trip carries its ordered "
        "stop events, fetched in a single query."
    ),
)
async def get_route_schedule(
    route_id: str,
    date: ServiceDate,
    request: Request,
    direction_id: DirectionId = None,
) -> list[dict[str, Any]]:
    return await _queries(request).bulk_route_data(route_id, date, direction_id)


# ---------------------------------------------------------------------------
# Trips and shapes
# ---------------------------------------------------------------------------


@router.get(
    "/trips/{trip_id}/stop-events",
    response_model=list[StopEventOut],
    response_model_exclude_unset=True,
    summary="Stop events of a trip",
)
async def get_trip_stop_events(trip_id: str, request: Request) -> list[dict[str, Any]]:
    return await _queries(request).stop_events(trip_id)


@router.post(
    "/trips/stop-events",
    response_model=dict[str, list[StopEventOut]],
    response_model_exclude_unset=True,
    summary="Stop events of several trips",
)
async def get_trips_stop_events(
    body: StopEventsBatchRequest, request: Request
) -> dict[str, list[dict[str, Any]]]:
    return await _queries(request).stop_events_batch(body.trip_ids)


@router.get(
    "/shapes/{shape_id}/points",
    response_model=list[list[float]],
    summary="Shape points as [lat, lon] pairs",
)
async def get_shape_points(shape_id: str, request: Request) -> list[list[float]]:
    return await _queries(request).shape_points(shape_id)


# ---------------------------------------------------------------------------
# Stops
# ---------------------------------------------------------------------------


@router.get(
    "/stops",
    response_model=StopsPage,
    response_model_exclude_unset=True,
    summary="Paginated stop list",
    description="Stops ordered by name then id; `search` matches name, id or code.",
)
async def list_stops(
    request: Request,
    search: Annotated[
        str | None,
        Query(max_length=200, description="Case-insensitive substring filter"),
    ] = None,
    offset: Annotated[int, Query(ge=0, description="Pagination offset")] = 0,
    limit: Annotated[
        int,
        Query(ge=1, le=200, description="Maximum number of stops to return"),
    ] = 50,
) -> dict[str, Any]:
    items = await _queries(request).stops_paginated(search=search, offset=offset, limit=limit)
    return {"items": items, "limit": limit, "offset": offset, "count": len(items)}


@router.get(
    "/stops/{stop_id}/departures",
    response_model=list[DepartureOut],
    response_model_exclude_unset=True,
    summary="Departures from a stop on a service date",
)
async def list_stop_departures(
    stop_id: str,
    date: ServiceDate,
    request: Request,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[dict[str, Any]]:
    return await _queries(request).stop_departures(stop_id, date, limit)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


@router.get(
    "/calendar/date-ranges",
    response_model=list[DateRange],
    summary="Service date ranges",
)
async def list_date_ranges(request: Request) -> list[dict[str, str]]:
    return await _queries(request).available_date_ranges()
