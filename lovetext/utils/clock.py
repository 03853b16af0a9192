from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(timestamp) -> datetime | None:
    """Stripe sends epoch seconds; convert to naive UTC."""
    if timestamp in (None, ""):
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)
