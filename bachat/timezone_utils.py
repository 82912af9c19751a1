from __future__ import annotations

import os
import re
from datetime import date, datetime, time
from typing import Optional, Union

from zoneinfo import ZoneInfo

LOCAL_TZ = ZoneInfo(os.getenv("BACHAT_TIMEZONE", "Asia/Kolkata"))

MONTH_ID_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


DatetimeLike = Optional[Union[datetime, date]]


def now_local() -> datetime:
    return datetime.now(tz=LOCAL_TZ)


def ensure_local_datetime(value: DatetimeLike) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=LOCAL_TZ)
    if value.tzinfo is None:
        # naive values coming back from the database were stored in local time
        return value.replace(tzinfo=LOCAL_TZ)
    return value.astimezone(LOCAL_TZ)


def parse_local_range_value(raw: str, *, is_range_end: bool = False) -> datetime:
    """Parse date/datetime strings and convert them into local-aware datetimes."""
    text = (raw or "").strip()
    if not text:
        raise ValueError("Empty date value")
    try:
        parsed_date = date.fromisoformat(text)
        base_time = time.max if is_range_end else time.min
        return datetime.combine(parsed_date, base_time, tzinfo=LOCAL_TZ)
    except ValueError:
        pass
    try:
        parsed_dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc
    converted = ensure_local_datetime(parsed_dt)
    if converted is None:
        raise ValueError("Unable to convert date")
    return converted


def parse_month_id(raw: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` month-id into ``(year, month)``."""
    match = MONTH_ID_RE.match((raw or "").strip())
    if not match:
        raise ValueError("month_id must look like YYYY-MM")
    return int(match.group(1)), int(match.group(2))


def normalize_month_id(raw: str) -> str:
    year, month = parse_month_id(raw)
    return f"{year:04d}-{month:02d}"


def month_id_for(value: DatetimeLike) -> str:
    if value is None:
        raise ValueError("A date is required to derive a month_id")
    if isinstance(value, datetime):
        value = ensure_local_datetime(value)
    return f"{value.year:04d}-{value.month:02d}"


def previous_month_id(month_id: str) -> str:
    year, month = parse_month_id(month_id)
    if month == 1:
        return f"{year - 1:04d}-12"
    return f"{year:04d}-{month - 1:02d}"


def month_start(month_id: str) -> date:
    year, month = parse_month_id(month_id)
    return date(year, month, 1)
