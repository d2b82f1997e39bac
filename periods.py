import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import InvalidYearMonth

YEAR_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    @property
    def start_date(self) -> str:
        return self.start.isoformat()

    @property
    def end_date(self) -> str:
        return self.end.isoformat()

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


def is_valid_year_month(value: Optional[str]) -> bool:
    return bool(value) and YEAR_MONTH_RE.match(value) is not None


def parse_year_month(value: Optional[str]) -> tuple[int, int]:
    """Split ``YYYY-MM`` into ``(year, month)`` with a 1-based month."""
    if not is_valid_year_month(value):
        raise InvalidYearMonth(value)
    year_str, month_str = value.split("-", 1)
    return int(year_str), int(month_str)


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def current_year_month(today: Optional[date] = None) -> str:
    today = today or date.today()
    return format_year_month(today.year, today.month)


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + count
    return index // 12, index % 12 + 1


def prev_year_month(year_month: str) -> str:
    year, month = parse_year_month(year_month)
    return format_year_month(*add_months(year, month, -1))


def next_year_month(year_month: str) -> str:
    year, month = parse_year_month(year_month)
    return format_year_month(*add_months(year, month, 1))


def list_year_months_in_range(from_year_month: str, to_year_month: str) -> list[str]:
    """All months from ``from_year_month`` to ``to_year_month`` inclusive.

    Returns an empty list when either bound is malformed or the range is reversed.
    """
    if not is_valid_year_month(from_year_month) or not is_valid_year_month(
        to_year_month
    ):
        return []
    if to_year_month < from_year_month:
        return []
    out: list[str] = []
    current = from_year_month
    while current <= to_year_month:
        out.append(current)
        current = next_year_month(current)
    return out


def reference_previous_month_range(anchor_year_month: str, months: int) -> DateRange:
    """The ``months``-long window that ends the month before the anchor.

    ``2025-02`` with 6 months gives 2024-08-01 .. 2025-01-31; the anchor month
    itself is never part of the window.
    """
    if months < 1:
        raise ValueError("Reference period must be at least one month")
    year, month = parse_year_month(anchor_year_month)
    end_year, end_month = add_months(year, month, -1)
    start_year, start_month = add_months(end_year, end_month, -(months - 1))
    return DateRange(
        month_start(start_year, start_month), month_end(end_year, end_month)
    )


def reference_current_month_range(
    anchor_year_month: str, *, today: Optional[date] = None
) -> DateRange:
    """First of the anchor month through today (current month) or month end."""
    today = today or date.today()
    year, month = parse_year_month(anchor_year_month)
    if (year, month) == (today.year, today.month):
        return DateRange(month_start(year, month), today)
    return DateRange(month_start(year, month), month_end(year, month))
