from __future__ import annotations

from datetime import datetime, timedelta, timezone

from syncwarden.domain.state import weekday_index


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_next_run_utc(now: datetime, target_hour: int, target_weekday: int | str | None = None) -> datetime:
    """Return the next UTC instant at ``target_hour:00`` strictly after ``now``.

    Daily schedules run today when the hour is still ahead, otherwise tomorrow.
    Weekly schedules (``target_weekday`` as ``datetime.weekday()`` index or a
    weekday name) roll to the following week when today is the target day but
    the hour has already passed.
    """
    if not 0 <= int(target_hour) <= 23:
        raise ValueError("target_hour must be between 0 and 23")
    current = _as_utc(now)
    candidate = current.replace(hour=int(target_hour), minute=0, second=0, microsecond=0)

    if target_weekday is None:
        if current >= candidate:
            candidate += timedelta(days=1)
        return candidate

    weekday = weekday_index(target_weekday) if isinstance(target_weekday, str) else int(target_weekday)
    if not 0 <= weekday <= 6:
        raise ValueError("target_weekday must be between 0 (Monday) and 6 (Sunday)")
    days_ahead = (weekday - current.weekday()) % 7
    candidate += timedelta(days=days_ahead)
    if candidate <= current:
        candidate += timedelta(days=7)
    return candidate
