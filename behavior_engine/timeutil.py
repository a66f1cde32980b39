"""Epoch-millisecond helpers. Stored datetimes are naive UTC."""

from datetime import datetime, timedelta, timezone
import time

EPOCH = datetime(1970, 1, 1)


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return (value - EPOCH) // timedelta(milliseconds=1)
