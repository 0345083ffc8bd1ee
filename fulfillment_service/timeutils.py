from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands DateTime(timezone=True) columns back without tzinfo
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value):
    value = as_utc(value)
    return value.isoformat() if value else None
