from __future__ import annotations

from datetime import datetime, timezone


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string, epoch milliseconds or datetime into an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool):
        raise ValueError(f"invalid_timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            raise ValueError("invalid_timestamp: empty")
        if raw.isdigit():
            dt = datetime.fromtimestamp(int(raw) / 1000.0, tz=timezone.utc)
        else:
            if raw.endswith(("Z", "z")):
                raw = raw[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(raw)
            except ValueError as e:
                raise ValueError(f"invalid_timestamp: {value!r}") from e
    else:
        raise ValueError(f"invalid_timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value) -> str:
    """Canonical storage form: UTC, millisecond precision, ``Z`` suffix.

    Every timestamp column holds this form so text ordering is chronological.
    """
    dt = parse_timestamp(value)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))
