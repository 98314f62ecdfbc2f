"""
Date coercion for revenue candidates.

Stored records carry their dates in whatever shape the writer used: store
timestamp objects, serialized ``{seconds, nanoseconds}`` maps, ISO strings,
epoch numbers or native dates. Everything becomes an aware UTC ``datetime``.
A record whose date can't be read is still counted, dated "now".
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# epoch values below this are seconds rather than milliseconds (1e11 s is year 5138)
_SECONDS_CUTOFF = 1e11

_CONVERTERS = ("toDate", "to_datetime", "ToDatetime")


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime:
    seconds = value if abs(value) < _SECONDS_CUTOFF else value / 1000
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def _from_string(text: str) -> Optional[datetime]:
    text = text.strip()
    if not text:
        return None
    try:
        return _from_epoch(float(text))
    except ValueError:
        pass
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return _utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _coerce(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    for name in _CONVERTERS:
        converter = getattr(value, name, None)
        if callable(converter):
            return _coerce(converter())
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
            return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds, microseconds=nanos / 1000)
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, str):
        return _from_string(value)
    return None


def parse_date(value: Any, now: Optional[datetime] = None) -> datetime:
    try:
        parsed = _coerce(value)
    except (OverflowError, ValueError, TypeError) as e:
        logger.warning("Unreadable date %r: %s", value, e)
        parsed = None
    if parsed is not None:
        return parsed

    fallback = now or datetime.now(timezone.utc)
    logger.warning("Could not parse date %r; using %s", value, fallback.isoformat())
    return _utc(fallback)


def first_present(document: dict, *fields: str) -> Any:
    for name in fields:
        value = document.get(name)
        if value is not None:
            return value
    return None
