"""Conversion of query results into JSON-safe values."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

_DROP = object()


def to_boundary(value: Any) -> Any:
    """Return ``value`` with only JSON-representable content.

    Decimals and integral floats become ints, other numbers stay floats,
    row mappings and sequences are converted recursively. Callables and
    anything else that has no JSON form are dropped from their container.
    """
    converted = _convert(value)
    return None if converted is _DROP else converted


def _convert(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return _DROP
    if callable(value):
        return _DROP
    if isinstance(value, Mapping) or hasattr(value, "_mapping"):
        mapping = value if isinstance(value, Mapping) else value._mapping
        result: dict[str, Any] = {}
        for key, item in mapping.items():
            converted = _convert(item)
            if converted is not _DROP:
                result[str(key)] = converted
        return result
    if isinstance(value, (list, tuple, set, frozenset)):
        return [item for item in map(_convert, value) if item is not _DROP]
    return _DROP
