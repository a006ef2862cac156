"""Error taxonomy shared by the store builder, cache and query layer.

Every error that can cross the HTTP boundary derives from :class:`FeedError`
and carries a stable, user-presentable ``user_message`` plus a machine
``code``. Diagnostic detail (the failing build step, the original exception)
is kept on the instance and only rendered in development mode.
"""

from __future__ import annotations


class FeedError(Exception):
    """Base class for feed ingestion and query errors."""

    code = "feed_error"
    status_code = 500

    def __init__(self, user_message: str, *, step: str | None = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        self.step = step


class MissingRequiredTable(FeedError):
    """A required GTFS table is absent from the archive."""

    code = "missing_required_table"
    status_code = 422

    def __init__(self, table: str) -> None:
        super().__init__(f"The feed is missing the required table {table}.txt")
        self.table = table


class MissingRequiredColumn(FeedError):
    """A table header lacks columns the store cannot be built without."""

    code = "missing_required_column"
    status_code = 422

    def __init__(self, table: str, columns: list[str]) -> None:
        super().__init__(
            f"{table}.txt is missing required columns: {', '.join(sorted(columns))}"
        )
        self.table = table
        self.columns = sorted(columns)


class MalformedArchive(FeedError):
    """The source file is not a readable zip archive."""

    code = "malformed_archive"
    status_code = 422


class ArchiveNotFound(FeedError):
    code = "archive_not_found"
    status_code = 404

    def __init__(self, path: str) -> None:
        super().__init__(f"Feed archive not found: {path}")
        self.path = path


class FeedBuildError(FeedError):
    """Unexpected failure inside a build step."""

    code = "feed_build_failed"
    status_code = 500

    def __init__(self, step: str, reason: str) -> None:
        super().__init__(f"Loading the feed failed while {step.lower()}", step=step)
        self.reason = reason


class CacheStale(FeedError):
    """Cached store no longer matches its source archive.

    Internal only: the cache manager handles it by rebuilding.
    """

    code = "cache_stale"


class QueryTimeout(FeedError):
    code = "query_timeout"
    status_code = 504

    def __init__(self, request: str, timeout_sec: float) -> None:
        super().__init__(f"The {request} query did not finish within {timeout_sec:g}s")
        self.request = request
        self.timeout_sec = timeout_sec


class InvalidRequest(FeedError):
    code = "invalid_request"
    status_code = 422


class InvalidDateFormat(InvalidRequest):
    code = "invalid_date_format"

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid service date {value!r}, expected YYYYMMDD")
        self.value = value


class UnknownColumnReference(FeedError):
    """A query referenced a column the store does not have.

    Column availability is checked before queries are built, so this signals a
    schema assumption bug rather than bad input.
    """

    code = "unknown_column_reference"
    status_code = 500

    def __init__(self, table: str, column: str) -> None:
        super().__init__(f"The loaded feed has no column {table}.{column}")
        self.table = table
        self.column = column


class StoreUnavailable(FeedError):
    code = "store_unavailable"
    status_code = 409

    def __init__(self) -> None:
        super().__init__("No feed is loaded yet; load a GTFS archive first")
