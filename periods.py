import calendar
import re
from dataclasses import dataclass
from datetime import date

MONTH_KEY_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class Period:
    """Half-open calendar range: start inclusive, end exclusive."""

    slug: str
    start: date
    end: date


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def parse_month_key(value: str) -> tuple[int, int]:
    match = MONTH_KEY_RE.match(value)
    if not match:
        raise ValueError(f"Invalid month key: {value!r} (expected YYYY-MM)")
    return int(match.group(1)), int(match.group(2))


def add_months(first: date, count: int) -> date:
    month_index = (first.year * 12) + (first.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    start = date(year, month, 1)
    return Period(f"{year:04d}-{month:02d}", start, add_months(start, 1))


def current_month(today: date) -> Period:
    return month_period(today.year, today.month)


def trailing_months(today: date, count: int) -> list[Period]:
    """The last ``count`` calendar months ending with today's, oldest first."""
    first_this = today.replace(day=1)
    months: list[Period] = []
    for offset in range(count - 1, -1, -1):
        start = add_months(first_this, -offset)
        months.append(month_period(start.year, start.month))
    return months


def short_month_label(period: Period) -> str:
    return calendar.month_abbr[period.start.month]


def long_month_label(period: Period) -> str:
    return calendar.month_name[period.start.month]
