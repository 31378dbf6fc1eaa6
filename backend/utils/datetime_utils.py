import math
from datetime import datetime, date, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_tz(tz_name: str | None) -> ZoneInfo:
    """Return the job timezone, falling back to UTC for unknown names."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except Exception:
            pass
    return ZoneInfo("UTC")


def to_timestamp(instant: datetime) -> dict[str, int]:
    """Encode an instant as the store's seconds/nanoseconds pair."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    delta = instant - epoch
    seconds = delta.days * 86400 + delta.seconds
    return {"seconds": seconds, "nanoseconds": delta.microseconds * 1000}


def to_instant(raw: Any, fallback: datetime) -> datetime:
    """
    Convert a store timestamp to an aware UTC datetime.

    Missing or malformed values (including a zero/zero pair) resolve to
    ``fallback``, which callers pass as the run's reference date.
    """
    if raw is None:
        return fallback
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.replace(tzinfo=timezone.utc)
        return raw.astimezone(timezone.utc)
    if not isinstance(raw, dict):
        return fallback

    seconds = raw.get("seconds", raw.get("_seconds"))
    nanoseconds = raw.get("nanoseconds", raw.get("_nanoseconds"))
    seconds = coerce_number(seconds)
    nanoseconds = coerce_number(nanoseconds)
    if not seconds and not nanoseconds:
        return fallback
    try:
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        return epoch + timedelta(seconds=seconds, microseconds=nanoseconds / 1000)
    except (OverflowError, ValueError):
        return fallback


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    return instant.astimezone(tz).date()


def date_only_equal(a: datetime, b: datetime, tz: ZoneInfo) -> bool:
    return local_date(a, tz) == local_date(b, tz)


def truncate_to_minute(instant: datetime) -> datetime:
    return instant.replace(second=0, microsecond=0)


def coerce_number(value: Any, default: float = 0) -> float:
    """Parse ``value`` as a number; return ``default`` for anything else."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return default if math.isnan(value) else value
    if value is None:
        return default
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if math.isnan(parsed) or math.isinf(parsed):
        return default
    if parsed.is_integer():
        return int(parsed)
    return parsed


def parse_reference_date(raw: Any, tz: ZoneInfo) -> datetime:
    """
    Parse an ISO date or datetime string into an aware UTC instant.

    Naive values are read as wall-clock time in the job timezone.
    Raises ValueError for anything unparsable.
    """
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValueError("empty reference date")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def parse_reminder_offset(raw: Any) -> timedelta | None:
    """
    Parse reminder strings such as ``"15 minute"`` or ``"1 hour"``.

    Absent values mean no offset. A non-numeric amount returns None so the
    caller can skip the row.
    """
    if raw is None or raw == "":
        return timedelta(0)
    parts = str(raw).split()
    try:
        amount = int(parts[0])
    except (IndexError, ValueError):
        return None
    unit = parts[1].lower().rstrip("s") if len(parts) > 1 else "minute"
    if unit == "hour":
        return timedelta(hours=amount)
    if unit == "minute":
        return timedelta(minutes=amount)
    return timedelta(0)
