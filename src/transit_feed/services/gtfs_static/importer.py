"""GTFS store builder - materializes an archive into a SQLite derived store.

One build is a linear pipeline of named steps. Each step publishes a
monotonically increasing progress percentage, and a failure inside a step is
re-raised with that step's name attached so callers can report where a load
broke. The builder only writes into the database path it is given; publishing
the result is the cache manager's job.
"""

from __future__ import annotations

import itertools
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)

from transit_feed.config import Settings, get_settings
from transit_feed.errors import FeedBuildError, FeedError, MissingRequiredColumn
from transit_feed.logging import get_logger
from transit_feed.services.gtfs_static.cache import FeedStats
from transit_feed.services.gtfs_static.extraction import (
    MemberLines,
    Strategy,
    choose_strategy,
    group_stop_times,
)
from transit_feed.services.gtfs_static.normalizer import (
    INTEGER_COLUMNS,
    REAL_COLUMNS,
    GtfsNormalizer,
    NormalizationError,
)
from transit_feed.services.gtfs_static.parser import (
    REQUIRED_COLUMNS,
    missing_required,
    split_header,
    unique_columns,
    zip_record,
)
from transit_feed.services.gtfs_static.progress import ProgressTracker
from transit_feed.services.gtfs_static.reader import GtfsZipReader

if TYPE_CHECKING:
    import zipfile
    from collections.abc import Iterable, Iterator
    from pathlib import Path

    from sqlalchemy.engine import Connection, Engine

    from transit_feed.services.gtfs_static.cache import SourceArchive
    from transit_feed.services.gtfs_static.extraction import StopTimeIndex

logger = get_logger(__name__)

# Generic tables in load order with the progress percent of their step
GENERIC_TABLES: tuple[tuple[str, int], ...] = (
    ("agency", 5),
    ("routes", 10),
    ("trips", 15),
    ("stops", 20),
    ("calendar", 25),
    ("calendar_dates", 30),
)

# Rows with an empty value in these columns are skipped
KEY_COLUMNS: dict[str, str] = {
    "routes": "route_id",
    "trips": "trip_id",
    "stops": "stop_id",
    "calendar": "service_id",
    "calendar_dates": "service_id",
}

STOP_TIME_COLUMNS = (
    "trip_id",
    "stop_id",
    "stop_sequence",
    "arrival_time",
    "departure_time",
    "pickup_type",
    "drop_off_type",
)

SHAPE_COLUMNS = ("shape_id", "shape_pt_lat", "shape_pt_lon", "shape_pt_sequence")

# (index name, table, columns); created only when every column exists
INDEX_SPECS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("ix_agency_agency_id", "agency", ("agency_id",)),
    ("ix_routes_route_id", "routes", ("route_id",)),
    ("ix_trips_route_id", "trips", ("route_id",)),
    ("ix_trips_trip_id", "trips", ("trip_id",)),
    ("ix_trips_service_id", "trips", ("service_id",)),
    ("ix_trips_direction_id", "trips", ("direction_id",)),
    ("ix_trips_shape_id", "trips", ("shape_id",)),
    ("ix_stops_stop_id", "stops", ("stop_id",)),
    ("ix_stops_stop_name", "stops", ("stop_name",)),
    ("ix_stops_parent_station", "stops", ("parent_station",)),
    ("ix_stop_times_trip_sequence", "stop_times", ("trip_id", "stop_sequence")),
    ("ix_stop_times_stop_id", "stop_times", ("stop_id",)),
    ("ix_calendar_service_id", "calendar", ("service_id",)),
    ("ix_calendar_dates_date_type", "calendar_dates", ("date", "exception_type")),
    ("ix_shapes_shape_sequence", "shapes", ("shape_id", "shape_pt_sequence")),
    ("ix_stop_routes_stop_id", "stop_routes", ("stop_id",)),
)

BUILD_PRAGMAS = (
    "PRAGMA journal_mode = OFF",
    "PRAGMA synchronous = OFF",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA cache_size = -64000",
)


class BuildReport:
    """Collects per-table row counts, skipped rows and discovered columns."""

    def __init__(self, source: str, fingerprint: str, build_id: str | None = None) -> None:
        self.build_id = build_id or str(uuid.uuid4())
        self.source = source
        self.fingerprint = fingerprint
        self.started_at = datetime.now(timezone.utc)
        self.ended_at: datetime | None = None
        self.duration_ms: int | None = None
        self.counts: dict[str, int] = {}
        self.skipped: dict[str, int] = {}
        self.columns: dict[str, list[str]] = {}
        self.strategies: dict[str, str] = {}
        self.indexes: list[str] = []

    def init_table(self, table: str, columns: Iterable[str]) -> None:
        self.columns[table] = list(columns)
        self.counts.setdefault(table, 0)

    def skip(self, table: str, rows: int = 1) -> None:
        if rows:
            self.skipped[table] = self.skipped.get(table, 0) + rows

    def has_columns(self, table: str, columns: Iterable[str]) -> bool:
        present = self.columns.get(table)
        return present is not None and all(col in present for col in columns)

    def finish(self) -> None:
        self.ended_at = datetime.now(timezone.utc)
        self.duration_ms = int((self.ended_at - self.started_at).total_seconds() * 1000)

    def to_stats(self) -> FeedStats:
        return FeedStats(
            route_count=self.counts.get("routes", 0),
            trip_count=self.counts.get("trips", 0),
            stop_count=self.counts.get("stops", 0),
            stop_time_count=self.counts.get("stop_times", 0),
            shape_point_count=self.counts.get("shapes", 0),
            table_counts=dict(self.counts),
            skipped_rows=dict(self.skipped),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "source": self.source,
            "fingerprint": self.fingerprint,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "counts": self.counts,
            "skipped": self.skipped,
            "strategies": self.strategies,
            "indexes": self.indexes,
        }


class StoreBuilder:
    """Builds the derived store for one archive.

    Synchronous over the sqlite3 driver; the loader runs it in a worker
    thread.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        progress: ProgressTracker | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.progress = progress or ProgressTracker()
        self.batch_size = self.settings.import_batch_size
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    def build(self, archive: SourceArchive, db_path: Path) -> BuildReport:
        """Materialize ``archive`` into a new SQLite file at ``db_path``.

        Raises:
            FeedError: Any taxonomy error, with ``step`` set to the failing step.
        """
        report = BuildReport(source=str(archive.path), fingerprint=archive.fingerprint)
        logger.info(
            "Starting store build",
            build_id=report.build_id,
            source=report.source,
            fingerprint=archive.fingerprint[:12],
            size_bytes=archive.size,
        )

        engine = _build_engine(db_path)
        try:
            with self._stage("Opening archive", 0):
                reader = GtfsZipReader(archive.path)

            with reader, engine.begin() as conn:
                for table, percent in GENERIC_TABLES:
                    with self._stage(f"Loading {table}", percent):
                        self._load_generic(conn, reader, table, report)

                with self._stage("Loading stop_times", 35):
                    self._load_stop_times(conn, reader, report)

                with self._stage("Loading shapes", 86):
                    self._load_shapes(conn, reader, report)

                with self._stage("Building stop routes", 90):
                    self._build_stop_routes(conn, report)

                with self._stage("Creating indexes", 91):
                    self._create_indexes(conn, report)

            with self._stage("Compacting store", 97):
                _compact(engine)

            with self._stage("Counting rows", 98), engine.connect() as conn:
                self._count_rows(conn, report)
        finally:
            engine.dispose()

        report.finish()
        logger.info("Store build complete", **report.to_dict())
        return report

    @contextmanager
    def _stage(self, step: str, percent: int) -> Iterator[None]:
        self.progress.report(step, percent)
        logger.info("Build step", step=step, percent=percent)
        try:
            yield
        except FeedError as exc:
            if exc.step is None:
                exc.step = step
            logger.warning("Build step rejected feed", step=step, error=exc.user_message)
            raise
        except Exception as exc:
            logger.error("Build step failed", step=step, error=str(exc), exc_info=exc)
            raise FeedBuildError(step, str(exc)) from exc

    def _strategy(self, reader: GtfsZipReader, info: zipfile.ZipInfo) -> Strategy:
        return choose_strategy(
            reader.archive_size,
            info.file_size,
            archive_threshold=self.settings.streaming_archive_threshold_bytes,
            member_ceiling=self.settings.streaming_member_ceiling_bytes,
            chunk_size=self.settings.stream_chunk_size,
        )

    def _open_member(
        self, reader: GtfsZipReader, table: str, report: BuildReport
    ) -> MemberLines | None:
        info = reader.member(table)
        if info is None:
            logger.info("Optional table absent", table=table)
            return None
        strategy = self._strategy(reader, info)
        report.strategies[table] = strategy.mode
        return MemberLines(reader, info, strategy)

    def _define_table(self, name: str, columns: Iterable[str]) -> Table:
        table = Table(name, self._metadata, *(_column(col) for col in columns))
        self._tables[name] = table
        return table

    def _load_generic(
        self, conn: Connection, reader: GtfsZipReader, table: str, report: BuildReport
    ) -> None:
        lines = self._open_member(reader, table, report)
        if lines is None:
            return

        raw_columns, rows = split_header(lines)
        columns = unique_columns(raw_columns)
        if not columns:
            # Header-only or empty member: keep the table queryable, zero rows
            columns = list(REQUIRED_COLUMNS.get(table, ()))
            rows = iter(())
            if not columns:
                logger.info("Empty optional table ignored", table=table)
                return
        else:
            missing = missing_required(table, columns)
            if missing:
                raise MissingRequiredColumn(table, missing)

        sa_table = self._define_table(table, columns)
        sa_table.create(conn)
        report.init_table(table, columns)

        key = KEY_COLUMNS.get(table)
        coerce = GtfsNormalizer.coerce_record
        skipped = 0

        def records() -> Iterator[dict[str, Any]]:
            nonlocal skipped
            for values in rows:
                record = zip_record(raw_columns, values)
                if key is not None and not record.get(key):
                    skipped += 1
                    continue
                yield coerce(columns, record)

        report.counts[table] = self._insert(conn, sa_table, records())
        report.skip(table, skipped)
        logger.info(
            "Materialized table",
            table=table,
            rows=report.counts[table],
            skipped=skipped,
            columns=len(columns),
        )

    def _load_stop_times(
        self, conn: Connection, reader: GtfsZipReader, report: BuildReport
    ) -> None:
        lines = self._open_member(reader, "stop_times", report)
        sa_table = self._define_table("stop_times", STOP_TIME_COLUMNS)
        sa_table.create(conn)
        report.init_table("stop_times", STOP_TIME_COLUMNS)
        if lines is None:
            return

        def on_progress(rows: int) -> None:
            self.progress.report("Loading stop_times", 35 + int(40 * lines.fraction))
            logger.debug("Grouping stop_times", rows=rows)

        index = group_stop_times(
            lines, on_progress=on_progress, interval=self.settings.progress_row_interval
        )
        self.progress.report("Writing stop_times", 75)

        report.counts["stop_times"] = self._insert(conn, sa_table, _stop_time_rows(index))
        report.skip("stop_times", index.skipped)
        self.progress.report("Writing stop_times", 85)
        logger.info(
            "Materialized table",
            table="stop_times",
            rows=report.counts["stop_times"],
            trips=len(index.trips),
            skipped=index.skipped,
        )

    def _load_shapes(self, conn: Connection, reader: GtfsZipReader, report: BuildReport) -> None:
        lines = self._open_member(reader, "shapes", report)
        if lines is None:
            return

        raw_columns, rows = split_header(lines)
        if raw_columns:
            missing = missing_required("shapes", raw_columns)
            if missing:
                raise MissingRequiredColumn("shapes", missing)

        sa_table = self._define_table("shapes", SHAPE_COLUMNS)
        sa_table.create(conn)
        report.init_table("shapes", SHAPE_COLUMNS)

        normalize = GtfsNormalizer.normalize_shape_point
        skipped = 0

        def records() -> Iterator[dict[str, Any]]:
            nonlocal skipped
            for values in rows:
                try:
                    point = normalize(zip_record(raw_columns, values))
                except NormalizationError:
                    skipped += 1
                    continue
                yield {
                    "shape_id": point.shape_id,
                    "shape_pt_lat": point.lat,
                    "shape_pt_lon": point.lon,
                    "shape_pt_sequence": point.sequence,
                }

        report.counts["shapes"] = self._insert(conn, sa_table, records())
        report.skip("shapes", skipped)
        logger.info(
            "Materialized table", table="shapes", rows=report.counts["shapes"], skipped=skipped
        )

    def _build_stop_routes(self, conn: Connection, report: BuildReport) -> None:
        """Derive the distinct (stop_id, route_id) pairs served by any trip."""
        stop_routes = self._define_table("stop_routes", ("stop_id", "route_id"))
        stop_routes.create(conn)
        report.init_table("stop_routes", ("stop_id", "route_id"))

        stop_times = self._tables["stop_times"]
        trips = self._tables["trips"]
        pairs = (
            select(stop_times.c.stop_id, trips.c.route_id)
            .join(trips, trips.c.trip_id == stop_times.c.trip_id)
            .distinct()
        )
        result = conn.execute(stop_routes.insert().from_select(["stop_id", "route_id"], pairs))
        report.counts["stop_routes"] = max(result.rowcount, 0)

    def _create_indexes(self, conn: Connection, report: BuildReport) -> None:
        candidates = [spec for spec in INDEX_SPECS if spec[1] in self._tables]
        for position, (name, table, columns) in enumerate(candidates, start=1):
            if not report.has_columns(table, columns):
                logger.info("Skipping index, columns absent", index=name, table=table)
                continue
            sa_table = self._tables[table]
            Index(name, *(sa_table.c[col] for col in columns)).create(conn)
            report.indexes.append(name)
            self.progress.report("Creating indexes", 91 + int(4 * position / len(candidates)))
        logger.info("Created indexes", indexes=report.indexes)

    def _count_rows(self, conn: Connection, report: BuildReport) -> None:
        for name, table in self._tables.items():
            report.counts[name] = conn.execute(select(func.count()).select_from(table)).scalar_one()

    def _insert(self, conn: Connection, table: Table, rows: Iterable[dict[str, Any]]) -> int:
        """Insert rows with executemany in batches of ``batch_size``."""
        statement = table.insert()
        total = 0
        iterator = iter(rows)
        while batch := list(itertools.islice(iterator, self.batch_size)):
            conn.execute(statement, batch)
            total += len(batch)
        return total


def _stop_time_rows(index: StopTimeIndex) -> Iterator[dict[str, Any]]:
    for trip_id, events in index.trips.items():
        for stop_event in events:
            yield {"trip_id": trip_id, **stop_event._asdict()}


def _column(name: str) -> Column:
    if name in INTEGER_COLUMNS:
        return Column(name, Integer)
    if name in REAL_COLUMNS:
        return Column(name, Float)
    return Column(name, Text)


def _build_engine(db_path: Path) -> Engine:
    engine = create_engine(f"sqlite:///{db_path}")

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        for pragma in BUILD_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    return engine


def _compact(engine: Engine) -> None:
    with engine.connect() as conn:
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        conn.exec_driver_sql("VACUUM")
        conn.exec_driver_sql("ANALYZE")
