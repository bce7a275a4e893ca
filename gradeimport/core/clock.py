from datetime import datetime, timezone


def utcnow() -> datetime:
    # SQLite hands back naive datetimes, so everything stored is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)
