from datetime import datetime, timezone


def date_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    "Formats a datetime the way the API server expects it in query args"

    # naive datetimes are taken to be in UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
