from __future__ import annotations

from datetime import datetime


def now_local() -> datetime:
    return datetime.now().astimezone()


def ensure_local(dt: datetime | None) -> datetime | None:
    """Gateway timestamps arrive as aware UTC; naive values are taken as local wall time."""
    if dt is None:
        return None
    return dt.astimezone() if dt.tzinfo else dt.replace(tzinfo=now_local().tzinfo)


def elapsed_ms(start: datetime) -> int:
    return int((now_local() - start).total_seconds() * 1000)
