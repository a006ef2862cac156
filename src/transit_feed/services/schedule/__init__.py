"""Schedule queries over the loaded derived store."""

from transit_feed.services.schedule.calendar import (
    ServiceDateContext,
    parse_service_date,
    resolve_active_services,
)
from transit_feed.services.schedule.queries import ScheduleQueries
from transit_feed.services.schedule.schema import SchemaCache

__all__ = [
    "ScheduleQueries",
    "SchemaCache",
    "ServiceDateContext",
    "parse_service_date",
    "resolve_active_services",
]
