import re
from datetime import date, datetime, time, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Naive UTC now; every datetime column in the booking store is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_rfc3339(value: datetime) -> str:
    """Serialize a naive-UTC datetime the way Google and Graph expect it."""
    return to_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def ranges_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    return start_a < end_b and end_a > start_b


_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO 8601 / RFC 3339 timestamp into naive UTC.

    Accepts a trailing ``Z``, offsets, date-only values (midnight UTC) and the
    seven-digit fractions Microsoft Graph emits. Values without an offset are
    taken to be UTC already.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(r"\1", text)
    if len(text) == 10:
        return datetime.combine(date.fromisoformat(text), time.min)
    return to_naive_utc(datetime.fromisoformat(text))


def as_naive_utc(value: Union[datetime, date]) -> datetime:
    """Normalize an icalendar date or datetime value to naive UTC."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return datetime.combine(value, time.min)


def to_epoch_ms(value: datetime) -> int:
    return int(to_naive_utc(value).replace(tzinfo=timezone.utc).timestamp() * 1000)


def from_epoch_ms(value: Union[int, str]) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)
