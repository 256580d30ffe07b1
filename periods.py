import re
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class Period:
    """An inclusive ``[start, end]`` range of ledger timestamps."""

    slug: str
    start: datetime
    end: datetime


def parse_year_month(value: str) -> tuple[int, int]:
    match = _YEAR_MONTH_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM")
    return year, month


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_period(year_month: str) -> Period:
    year, month = parse_year_month(year_month)
    return Period(
        format_year_month(year, month),
        datetime.combine(date(year, month, 1), time.min),
        datetime.combine(month_end(year, month), time.max),
    )


def day_period(start: Optional[date], end: Optional[date]) -> Period:
    start_date = start or date(1970, 1, 1)
    end_date = end or date(3000, 12, 31)
    if start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period(
        "custom",
        datetime.combine(start_date, time.min),
        datetime.combine(end_date, time.max),
    )
