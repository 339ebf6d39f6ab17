"""
Wall-clock <-> UTC conversion for unit timezones.

Callers (the booking UI and the conversational bot) always speak naive
local time. Any zone suffix that sneaks into a string ("Z", "-03:00") is
discarded before parsing, so the same wall-clock text always maps to the
same instant for a given unit.

The regions served have no daylight saving, so each identifier maps to a
fixed offset. Unknown identifiers fall back to the Sao Paulo offset.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .core.errors import InvalidInput

DEFAULT_UTC_OFFSET_HOURS = -3

UTC_OFFSET_HOURS: dict[str, int] = {
    "America/Sao_Paulo": -3,
    "America/Fortaleza": -3,
    "America/Recife": -3,
    "America/Belem": -3,
    "America/Cuiaba": -4,
    "America/Manaus": -4,
    "America/Porto_Velho": -4,
    "America/Boa_Vista": -4,
    "America/Rio_Branco": -5,
    "America/Noronha": -2,
}

_ZONE_SUFFIX = re.compile(r"(\.\d+)?(Z|[+-]\d{2}:?\d{2})?$", re.IGNORECASE)
_LOCAL_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M")


def unit_tz(timezone_id: Optional[str]) -> timezone:
    hours = UTC_OFFSET_HOURS.get(timezone_id or "", DEFAULT_UTC_OFFSET_HOURS)
    return timezone(timedelta(hours=hours))


def strip_zone_suffix(value: str) -> str:
    """Drop fractional seconds and any trailing Z / ±HH:MM from the time part."""
    text = value.strip().replace(" ", "T", 1)
    if "T" not in text:
        return text
    day, clock = text.split("T", 1)
    return f"{day}T{_ZONE_SUFFIX.sub('', clock)}"


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except (ValueError, AttributeError):
        raise InvalidInput(f"Invalid date: {value!r} (expected YYYY-MM-DD)") from None


def parse_local_datetime(value: str) -> datetime:
    """Parse a local wall-clock string into a naive datetime."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("datetime is required")
    text = strip_zone_suffix(value)
    for fmt in _LOCAL_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise InvalidInput(f"Invalid datetime: {value!r} (expected YYYY-MM-DDTHH:MM[:SS])")


def to_utc(local_value: str | datetime, timezone_id: Optional[str]) -> datetime:
    """
    Interpret ``local_value`` as wall-clock time in the unit's timezone.

    A datetime that already carries tzinfo is treated like a suffixed
    string: its offset is ignored and only the wall-clock fields count.
    """
    if isinstance(local_value, datetime):
        naive = local_value.replace(tzinfo=None)
    else:
        naive = parse_local_datetime(local_value)
    return naive.replace(tzinfo=unit_tz(timezone_id)).astimezone(timezone.utc)


def to_local(instant: datetime, timezone_id: Optional[str]) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(unit_tz(timezone_id))


def day_bounds_utc(date_value: str | date, timezone_id: Optional[str]) -> tuple[datetime, datetime]:
    """UTC instants for 00:00:00 and 23:59:59 local on the given day, both inclusive."""
    day = parse_date(date_value) if isinstance(date_value, str) else date_value
    start_local = datetime(day.year, day.month, day.day, 0, 0, 0)
    end_local = datetime(day.year, day.month, day.day, 23, 59, 59)
    return to_utc(start_local, timezone_id), to_utc(end_local, timezone_id)


def local_now(timezone_id: Optional[str], now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return to_local(now, timezone_id)


def isoformat_utc(instant: datetime) -> str:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_local_date(instant: datetime, timezone_id: Optional[str]) -> str:
    return to_local(instant, timezone_id).strftime("%d/%m/%Y")


def format_local_time(instant: datetime, timezone_id: Optional[str]) -> str:
    return to_local(instant, timezone_id).strftime("%H:%M")
