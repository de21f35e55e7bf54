from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from qrattend.models import TimeStatus, Workplace
from qrattend.settings import get_settings

logger = logging.getLogger("qrattend.time_status")

_OPEN_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
FALLBACK_TIMEZONE = "Asia/Kolkata"


@dataclass(frozen=True, slots=True)
class CheckinTimeStatus:
    time_status: TimeStatus | None
    minutes_late: int | None


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


@lru_cache(maxsize=128)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def workplace_timezone(workplace: Workplace) -> ZoneInfo:
    for candidate in (workplace.timezone_name, get_settings().attendance_timezone):
        name = (candidate or "").strip()
        if not name:
            continue
        try:
            return _zone(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "invalid_timezone_name",
                extra={"workplace_id": workplace.id, "timezone_name": name},
            )
    return _zone(FALLBACK_TIMEZONE)


def local_day(workplace: Workplace, ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(workplace_timezone(workplace)).date()


def day_bounds_utc(workplace: Workplace, day: date) -> tuple[datetime, datetime]:
    tz = workplace_timezone(workplace)
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def local_day_bounds_utc(workplace: Workplace, reference_ts_utc: datetime) -> tuple[datetime, datetime]:
    return day_bounds_utc(workplace, local_day(workplace, reference_ts_utc))


def parse_open_time(open_time: str | None) -> int | None:
    """Minutes since midnight for an ``H:MM`` / ``HH:MM`` value, else None."""
    if not open_time or not isinstance(open_time, str):
        return None
    match = _OPEN_TIME_RE.match(open_time.strip())
    if match is None:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def grace_minutes_for(workplace: Workplace) -> int:
    if not workplace.grace_enabled:
        return 0
    if workplace.grace_minutes is None:
        return max(0, get_settings().default_grace_minutes)
    return max(0, int(workplace.grace_minutes))


def compute_checkin_time_status(workplace: Workplace, now_utc: datetime | None = None) -> CheckinTimeStatus:
    open_minutes = parse_open_time(workplace.open_time)
    if open_minutes is None:
        return CheckinTimeStatus(time_status=None, minutes_late=None)

    local_now = normalize_ts(now_utc).astimezone(workplace_timezone(workplace))
    now_minutes = local_now.hour * 60 + local_now.minute
    minutes_late = max(0, now_minutes - (open_minutes + grace_minutes_for(workplace)))
    return CheckinTimeStatus(
        time_status=TimeStatus.LATE if minutes_late > 0 else TimeStatus.ON_TIME,
        minutes_late=minutes_late,
    )
