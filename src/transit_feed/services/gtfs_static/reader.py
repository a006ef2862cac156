"""GTFS ZIP reader - locates table members and validates required ones."""

from __future__ import annotations

import zipfile
import zlib
from typing import IO, TYPE_CHECKING

from transit_feed.errors import MalformedArchive, MissingRequiredTable
from transit_feed.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

# Tables the store cannot be built without, in reporting order
REQUIRED_TABLES = ("routes", "trips", "stops", "stop_times")

# Optional tables we materialize if present
OPTIONAL_TABLES = ("agency", "calendar", "calendar_dates", "shapes")

ZIP_MAGIC = b"PK\x03\x04"

# Raised by zipfile while inflating a corrupt member
EXTRACT_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError)


class GtfsZipReader:
    """Opens a GTFS archive from disk and resolves table members.

    Member names are matched case-insensitively, and a feed zipped inside a
    single top-level folder (``feed/stops.txt``) is accepted.
    """

    def __init__(self, path: Path) -> None:
        """Open the archive at ``path``.

        Raises:
            MalformedArchive: If the file is not a valid ZIP.
            MissingRequiredTable: If a required table is missing.
        """
        self.path = path
        self._validate_magic()
        try:
            self._zip = zipfile.ZipFile(path)
        except zipfile.BadZipFile as exc:
            raise MalformedArchive(f"{path.name} is not a valid ZIP archive") from exc
        self._members = self._index_members()
        self._validate_required_tables()

    def _validate_magic(self) -> None:
        with self.path.open("rb") as fh:
            head = fh.read(4)
        if head != ZIP_MAGIC:
            raise MalformedArchive(f"{self.path.name} is not a valid ZIP archive")

    def _index_members(self) -> dict[str, zipfile.ZipInfo]:
        """Map table name -> member, preferring top-level members over ones one folder deep."""
        members: dict[str, zipfile.ZipInfo] = {}
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            filename = info.filename.replace("\\", "/")
            if filename.count("/") > 1:
                continue
            basename = filename.rsplit("/", 1)[-1].lower()
            if not basename.endswith(".txt"):
                continue
            table = basename[: -len(".txt")]
            current = members.get(table)
            if current is None or filename.count("/") < current.filename.count("/"):
                members[table] = info
        return members

    def _validate_required_tables(self) -> None:
        """Ensure all required GTFS tables exist in the archive."""
        for table in REQUIRED_TABLES:
            if table not in self._members:
                self.close()
                raise MissingRequiredTable(table)

        logger.info(
            "GTFS ZIP validated",
            path=str(self.path),
            optional_present=[t for t in OPTIONAL_TABLES if t in self._members],
            total_files=len(self._zip.namelist()),
        )

    @property
    def archive_size(self) -> int:
        return self.path.stat().st_size

    def member(self, table: str) -> zipfile.ZipInfo | None:
        """Return the member holding ``table``, or None if absent."""
        return self._members.get(table)

    def read_bytes(self, info: zipfile.ZipInfo) -> bytes:
        """Decompress a whole member into memory."""
        try:
            return self._zip.read(info)
        except EXTRACT_ERRORS as exc:
            raise MalformedArchive(f"Could not extract {info.filename}") from exc

    def open_binary(self, info: zipfile.ZipInfo) -> IO[bytes]:
        """Open a member for incremental (streamed) decompression."""
        return self._zip.open(info)

    def close(self) -> None:
        """Close the ZIP archive."""
        self._zip.close()

    def __enter__(self) -> GtfsZipReader:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
