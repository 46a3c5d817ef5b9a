from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from finbook.errors import InvalidPeriodError


@dataclass(frozen=True)
class DateRange:
    """Half-open range: includes ``start``, excludes ``end``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("start must be on or before end.")

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


def validate_year(year: object) -> int:
    if isinstance(year, bool) or not isinstance(year, int):
        raise InvalidPeriodError(f"Year must be an integer, got {year!r}.")
    if year <= 0:
        raise InvalidPeriodError(f"Year must be positive, got {year}.")
    # datetime.date cannot represent the end of year 9999.
    if year >= 9999:
        raise InvalidPeriodError(f"Year {year} is out of range.")
    return year


def validate_month(month: object) -> int:
    if isinstance(month, bool) or not isinstance(month, int):
        raise InvalidPeriodError(f"Month must be an integer, got {month!r}.")
    if not 1 <= month <= 12:
        raise InvalidPeriodError(f"Month must be between 1 and 12, got {month}.")
    return month


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_range(year: int, month: int) -> DateRange:
    validate_year(year)
    validate_month(month)
    start = date(year, month, 1)
    return DateRange(start=start, end=shift_month(start, 1))


def year_range(year: int) -> DateRange:
    validate_year(year)
    return DateRange(start=date(year, 1, 1), end=date(year + 1, 1, 1))


def format_period(year: int, month: int | None = None) -> str:
    if month is None:
        return f"{year}"
    return f"{year}-{month:02d}"
