from datetime import datetime, timezone
from typing import Union

# Every TIMESTAMP column in the database holds naive UTC.


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Union[datetime, int, float, str]) -> datetime:
    """
    Coerce an aware/naive datetime, ISO string or epoch value to naive UTC.

    Epoch values above 1e12 are taken as milliseconds, otherwise seconds.
    Naive datetimes are assumed to already be UTC.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise TypeError(f"Cannot convert {type(value).__name__} to a timestamp")
