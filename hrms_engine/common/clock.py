"""Local wall-clock helpers; every business date is taken in settings.TIMEZONE."""

from datetime import date, datetime
from zoneinfo import ZoneInfo

from hrms_engine.config import settings


def local_tz() -> ZoneInfo:
    return ZoneInfo(settings.TIMEZONE)


def local_now() -> datetime:
    return datetime.now(local_tz())


def local_today() -> date:
    return local_now().date()
