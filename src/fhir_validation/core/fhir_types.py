# ============================================================================
# src/fhir_validation/core/fhir_types.py
# ============================================================================
"""
FHIR primitive helpers: id, date and dateTime formats.
"""

import re
from datetime import datetime, timezone
from typing import Optional

ID_PATTERN = re.compile(r"^[A-Za-z0-9\-\.]{1,64}$")

DATE_PATTERN = re.compile(r"^\d{4}(-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01]))?)?$")

DATETIME_PATTERN = re.compile(
    r"^\d{4}(-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01])"
    r"(T([01]\d|2[0-3]):[0-5]\d:([0-5]\d|60)(\.\d+)?(Z|[+-]((0\d|1[0-3]):[0-5]\d|14:00)))?)?)?$"
)

INSTANT_PATTERN = re.compile(
    r"^\d{4}-(0[1-9]|1[0-2])-(0[1-9]|[12]\d|3[01])"
    r"T([01]\d|2[0-3]):[0-5]\d:([0-5]\d|60)(\.\d+)?(Z|[+-]((0\d|1[0-3]):[0-5]\d|14:00))$"
)

FRACTION_PATTERN = re.compile(r"\.(\d+)")


def is_valid_id(value) -> bool:
    return isinstance(value, str) and bool(ID_PATTERN.match(value))


def parse_fhir_datetime(value) -> Optional[datetime]:
    """
    Parse a FHIR date or dateTime into an aware datetime.

    Partial dates resolve to their first instant; values without a zone
    are taken as UTC. Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not DATETIME_PATTERN.match(value):
        return None

    try:
        if len(value) == 4:
            parsed = datetime(int(value), 1, 1)
        elif len(value) == 7:
            parsed = datetime(int(value[:4]), int(value[5:7]), 1)
        else:
            parsed = datetime.fromisoformat(_isoformat_compatible(value))
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _isoformat_compatible(value: str) -> str:
    """Zone as an offset, fraction as microseconds, leap second clamped to :59."""
    value = value.replace("Z", "+00:00")
    value = FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return re.sub(r"(T\d\d:\d\d):60", r"\1:59", value)


def has_timezone(value: str) -> bool:
    """True if a dateTime string carries an explicit zone."""
    if "T" not in value:
        return False
    time_part = value.split("T", 1)[1]
    return time_part.endswith("Z") or "+" in time_part or "-" in time_part
