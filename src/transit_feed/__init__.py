"""Transit Feed Explorer: GTFS ingestion, caching and schedule queries."""

__version__ = "0.1.0"
