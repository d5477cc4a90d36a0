# common/clock.py
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Return the current instant as a naive UTC datetime.

    All services persist naive UTC timestamps, so every "now" goes
    through this helper.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    """
    Normalise a datetime to naive UTC.

    Aware values are converted to UTC and stripped of their tzinfo;
    naive values are assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
