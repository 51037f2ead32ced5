from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


class TrendGranularity(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"

    @property
    def bucket_format(self) -> str:
        # SQLite strftime patterns; %W counts weeks starting on Monday.
        return {
            TrendGranularity.daily: "%Y-%m-%d",
            TrendGranularity.weekly: "%Y-%W",
            TrendGranularity.monthly: "%Y-%m",
            TrendGranularity.yearly: "%Y",
        }[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "TrendGranularity":
        try:
            return cls(value) if value else cls.daily
        except ValueError:
            return cls.daily


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    first = date(year, month, 1)
    end = add_months(first, 1) - date.resolution
    return Period(f"{year:04d}-{month:02d}", first, end)


def month_period_for(d: date) -> Period:
    return month_period(d.year, d.month)


def previous_month_period(period: Period) -> Period:
    prev_first = add_months(month_start(period.start), -1)
    return month_period(prev_first.year, prev_first.month)


def preceding_period(period: Period) -> Period:
    """The period of equal length ending the day before ``period`` starts."""
    try:
        prev_end = period.start - timedelta(days=1)
        prev_start = prev_end - timedelta(days=period.days - 1)
    except OverflowError as exc:
        raise ValueError("No preceding period exists for this date range") from exc
    return Period("previous", prev_start, prev_end)


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    if not start and not end:
        return month_period_for(today)
    if not start or not end:
        raise ValueError("Both start and end dates are required")
    try:
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
    except ValueError as exc:
        raise ValueError("Dates must use the YYYY-MM-DD format") from exc
    if start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period("custom", start_date, end_date)
