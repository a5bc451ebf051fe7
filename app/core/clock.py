from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from app.config import settings

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values (SQLite) are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def service_timezone(name: Optional[str] = None) -> tzinfo:
    name = name or settings.SERVICE_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def service_date(moment: datetime, tz_name: Optional[str] = None) -> date:
    """Calendar date of a moment in the service time zone"""
    return as_utc(moment).astimezone(service_timezone(tz_name)).date()
