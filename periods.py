"""Calendar windows in the ledger's single time reference.

Every timestamp the ledger stores is a naive datetime expressed in the
configured ``LEDGER_TIMEZONE``. ``local_now`` is the only place the wall clock
is read and the only place a zone is applied; month windows and month
comparisons work on those naive values directly.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def local_now(timezone: Optional[str] = None) -> datetime:
    tz = ZoneInfo(timezone or get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def _month_end_date(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_window(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = datetime.combine(date(year, month, 1), time.min)
    end = datetime.combine(_month_end_date(year, month), time.max)
    return Period(month_key(year, month), start, end)


def current_month(now: datetime) -> tuple[int, int]:
    return now.year, now.month


def previous_month(now: datetime) -> tuple[int, int]:
    if now.month == 1:
        return now.year - 1, 12
    return now.year, now.month - 1


def same_month(a: datetime, b: datetime) -> bool:
    return a.year == b.year and a.month == b.month
