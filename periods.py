from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    """One calendar month. ``month`` is 0-indexed (0 = January)."""

    month: int
    year: int


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def resolve_period(
    month: Optional[int] = None,
    year: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    return Period(
        month=month if isinstance(month, int) else today.month - 1,
        year=year if isinstance(year, int) else today.year,
    )


def period_ordinal(period: Period) -> int:
    return period.year * 12 + period.month


def shift_period(period: Period, months: int) -> Period:
    total = period_ordinal(period) + months
    return Period(month=total % 12, year=total // 12)


def previous_period(period: Period) -> Period:
    return shift_period(period, -1)


def create_month_range(period: Period) -> tuple[datetime, datetime]:
    # Normalise so out-of-range months roll over the way day-0 arithmetic does.
    first = shift_period(Period(month=0, year=period.year), period.month)
    following = shift_period(first, 1)
    start = datetime(first.year, first.month + 1, 1)
    last_day = date(following.year, following.month + 1, 1) - timedelta(days=1)
    end = datetime.combine(last_day, time(23, 59, 59, 999000))
    return start, end
