from datetime import datetime, timezone


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical). All stored datetimes are UTC-naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
