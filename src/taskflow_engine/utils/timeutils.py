from datetime import datetime, timedelta, timezone
from typing import Optional


def format_utc_offset(offset_seconds: int) -> str:
    sign = "+" if offset_seconds >= 0 else "-"
    hours, remainder = divmod(abs(int(offset_seconds)), 3600)
    return f"UTC{sign}{hours:02d}:{remainder // 60:02d}"


def readable_from_utc_to_local(moment: Optional[datetime] = None, offset_seconds: int = 0) -> str:
    """Human readable wall-clock time at a fixed UTC offset.

    Naive datetimes are treated as UTC.
    """
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(timezone(timedelta(seconds=int(offset_seconds))))
    return f"{local.strftime('%A, %d %B %Y %H:%M')} ({format_utc_offset(offset_seconds)})"


def from_epoch_ms(value: Optional[int]) -> datetime:
    """Naive UTC datetime for an epoch-milliseconds cursor; ``None`` means now."""
    if value is None:
        return datetime.utcnow()
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
