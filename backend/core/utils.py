from datetime import datetime, timezone


def as_utc(value: datetime) -> datetime:
    """
    Stored datetimes may come back naive (driver without tz_aware);
    they are always UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def start_of_day(value: datetime) -> datetime:
    return as_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)
