from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def dt_to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def iso_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    return ensure_utc(datetime.fromisoformat(s))


def ms_to_dt(ms: int | float) -> datetime:
    """Epoch milliseconds (as used in exported records) to an aware datetime."""
    return datetime.fromtimestamp(float(ms) / 1000.0, tz=timezone.utc)
