"""
Granularities and Periods

The rollup hierarchy as a closed enum plus the period arithmetic every level
needs: which finer level a granularity is built from, how many days one of
its rows covers, and how calendar periods (ISO weeks, months, quarters,
years) map onto date ranges.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sales_rollups.exceptions import RequestValidationError


class Granularity(str, Enum):
    """Levels of the rollup hierarchy, finest first"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: Any) -> "Granularity":
        """Parse a granularity name, raising a validation error for unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = [g.value for g in cls]
            raise RequestValidationError(
                f"Unknown granularity {value!r}; expected one of {allowed}"
            ) from None

    @property
    def rank(self) -> int:
        return HIERARCHY.index(self)

    @property
    def source(self) -> Optional["Granularity"]:
        """The level this granularity is built from (None means raw source rows)."""
        return SOURCE_LEVEL[self]

    @property
    def period_name(self) -> str:
        return PERIOD_NAMES[self]

    @property
    def unit_days(self) -> int:
        """Nominal number of days covered by one row of this level."""
        return UNIT_DAYS[self]

    @property
    def has_growth(self) -> bool:
        return self in GROWTH_LEVELS


HIERARCHY: Tuple[Granularity, ...] = (
    Granularity.HOURLY,
    Granularity.DAILY,
    Granularity.WEEKLY,
    Granularity.MONTHLY,
    Granularity.QUARTERLY,
    Granularity.YEARLY,
)

# Weeks do not nest inside months, so monthly rolls up from daily.
SOURCE_LEVEL: Dict[Granularity, Optional[Granularity]] = {
    Granularity.HOURLY: None,
    Granularity.DAILY: Granularity.HOURLY,
    Granularity.WEEKLY: Granularity.DAILY,
    Granularity.MONTHLY: Granularity.DAILY,
    Granularity.QUARTERLY: Granularity.MONTHLY,
    Granularity.YEARLY: Granularity.QUARTERLY,
}

PERIOD_NAMES: Dict[Granularity, str] = {
    Granularity.HOURLY: "hour",
    Granularity.DAILY: "day",
    Granularity.WEEKLY: "week",
    Granularity.MONTHLY: "month",
    Granularity.QUARTERLY: "quarter",
    Granularity.YEARLY: "year",
}

UNIT_DAYS: Dict[Granularity, int] = {
    Granularity.HOURLY: 1,
    Granularity.DAILY: 1,
    Granularity.WEEKLY: 7,
    Granularity.MONTHLY: 30,
    Granularity.QUARTERLY: 91,
    Granularity.YEARLY: 365,
}

GROWTH_LEVELS = frozenset({
    Granularity.WEEKLY,
    Granularity.MONTHLY,
    Granularity.QUARTERLY,
    Granularity.YEARLY,
})

HOURS_PER_DAY = 24


# =============================================================================
# CALENDAR HELPERS
# =============================================================================

def month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def days_in_year(year: int) -> int:
    return 366 if calendar.isleap(year) else 365


def inclusive_days(start: date, end: date) -> int:
    """Number of days in [start, end]; 0 when the range is empty."""
    return max((end - start).days + 1, 0)


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def parse_date(value: Any, field: str = "date") -> date:
    """Coerce a date or ISO string, raising a validation error otherwise."""
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise RequestValidationError(f"Invalid {field}: {value!r}") from None


# =============================================================================
# PERIODS
# =============================================================================

_WEEK_RE = re.compile(r"^(\d{4})-W(\d{1,2})$")
_QUARTER_RE = re.compile(r"^(\d{4})-Q([1-4])$")
_MONTH_RE = re.compile(r"^(\d{4})-(\d{1,2})$")
_YEAR_RE = re.compile(r"^(\d{4})$")


@dataclass(frozen=True)
class Period:
    """
    One time bucket at a granularity.

    Hourly periods span a whole business date; the hour is part of the
    record, not of the period.
    """
    granularity: Granularity
    start: date
    end: date
    year: int
    number: Optional[int] = None

    # ----- construction -----

    @classmethod
    def containing(cls, granularity: Granularity, day: date) -> "Period":
        """The period of ``granularity`` that contains ``day``."""
        granularity = Granularity.parse(granularity)
        if granularity in (Granularity.HOURLY, Granularity.DAILY):
            return cls(granularity, day, day, day.year)
        if granularity == Granularity.WEEKLY:
            iso_year, iso_week, iso_weekday = day.isocalendar()
            monday = day - timedelta(days=iso_weekday - 1)
            return cls(granularity, monday, monday + timedelta(days=6), iso_year, iso_week)
        if granularity == Granularity.MONTHLY:
            return cls.for_month(day.year, day.month)
        if granularity == Granularity.QUARTERLY:
            return cls.for_quarter(day.year, (day.month - 1) // 3 + 1)
        return cls.for_year(day.year)

    @classmethod
    def for_week(cls, year: int, week: int) -> "Period":
        try:
            monday = date.fromisocalendar(year, week, 1)
        except ValueError:
            raise RequestValidationError(f"Invalid ISO week {year}-W{week}") from None
        return cls(Granularity.WEEKLY, monday, monday + timedelta(days=6), year, week)

    @classmethod
    def for_month(cls, year: int, month: int) -> "Period":
        if not 1 <= month <= 12:
            raise RequestValidationError(f"Invalid month {year}-{month}")
        return cls(Granularity.MONTHLY, date(year, month, 1), month_end(year, month), year, month)

    @classmethod
    def for_quarter(cls, year: int, quarter: int) -> "Period":
        if not 1 <= quarter <= 4:
            raise RequestValidationError(f"Invalid quarter {year}-Q{quarter}")
        first_month = (quarter - 1) * 3 + 1
        return cls(
            Granularity.QUARTERLY,
            date(year, first_month, 1),
            month_end(year, first_month + 2),
            year,
            quarter,
        )

    @classmethod
    def for_year(cls, year: int) -> "Period":
        return cls(Granularity.YEARLY, date(year, 1, 1), date(year, 12, 31), year)

    @classmethod
    def of(cls, granularity: Any, value: Any) -> "Period":
        """
        Normalize a period identifier for a granularity.

        Accepts a Period, a date (or ISO date string) that the period contains,
        ``(year, number)`` tuples, ``"2025-W03"``, ``"2025-01"``, ``"2025-Q1"``
        and bare years.
        """
        granularity = Granularity.parse(granularity)

        if isinstance(value, Period):
            if value.granularity != granularity:
                raise RequestValidationError(
                    f"Period {value.label} is {value.granularity.value}, not {granularity.value}"
                )
            return value
        if isinstance(value, date):
            return cls.containing(granularity, value)

        if isinstance(value, (tuple, list)) and len(value) == 2:
            year, number = int(value[0]), int(value[1])
            return cls._from_number(granularity, year, number)

        if isinstance(value, int):
            if granularity != Granularity.YEARLY:
                raise RequestValidationError(
                    f"A bare year identifies a yearly period, not {granularity.value}"
                )
            return cls.for_year(value)

        text = str(value).strip()
        for pattern, expected in (
            (_WEEK_RE, Granularity.WEEKLY),
            (_QUARTER_RE, Granularity.QUARTERLY),
            (_MONTH_RE, Granularity.MONTHLY),
        ):
            match = pattern.match(text)
            if match:
                if granularity != expected:
                    raise RequestValidationError(
                        f"Period {text!r} does not identify a {granularity.value} period"
                    )
                return cls._from_number(granularity, int(match.group(1)), int(match.group(2)))
        if _YEAR_RE.match(text):
            return cls.of(granularity, int(text))

        return cls.containing(granularity, parse_date(text, "period"))

    @classmethod
    def _from_number(cls, granularity: Granularity, year: int, number: int) -> "Period":
        if granularity == Granularity.WEEKLY:
            return cls.for_week(year, number)
        if granularity == Granularity.MONTHLY:
            return cls.for_month(year, number)
        if granularity == Granularity.QUARTERLY:
            return cls.for_quarter(year, number)
        raise RequestValidationError(
            f"{granularity.value} periods are not identified by (year, number)"
        )

    # ----- navigation -----

    def prior(self) -> "Period":
        """The immediately preceding period at the same granularity."""
        return Period.containing(self.granularity, self.start - timedelta(days=1))

    def same_period_prior_year(self) -> "Period":
        if self.granularity == Granularity.MONTHLY:
            return Period.for_month(self.year - 1, self.number)
        if self.granularity == Granularity.QUARTERLY:
            return Period.for_quarter(self.year - 1, self.number)
        if self.granularity == Granularity.YEARLY:
            return Period.for_year(self.year - 1)
        raise ValueError(f"No year-over-year counterpart for {self.granularity.value} periods")

    @property
    def days(self) -> int:
        return inclusive_days(self.start, self.end)

    def iter_days(self) -> Iterator[date]:
        return iter_days(self.start, self.end)

    @property
    def label(self) -> str:
        if self.granularity in (Granularity.HOURLY, Granularity.DAILY):
            return self.start.isoformat()
        if self.granularity == Granularity.WEEKLY:
            return f"{self.year}-W{self.number:02d}"
        if self.granularity == Granularity.MONTHLY:
            return f"{self.year}-{self.number:02d}"
        if self.granularity == Granularity.QUARTERLY:
            return f"{self.year}-Q{self.number}"
        return str(self.year)

    def key_values(self) -> Dict[str, Any]:
        """Column values identifying this period in its rollup table."""
        if self.granularity in (Granularity.HOURLY, Granularity.DAILY):
            return {"business_date": self.start}
        values: Dict[str, Any] = {"year_num": self.year}
        if self.granularity == Granularity.WEEKLY:
            values["week_num"] = self.number
        elif self.granularity == Granularity.MONTHLY:
            values["month_num"] = self.number
        elif self.granularity == Granularity.QUARTERLY:
            values["quarter_num"] = self.number
        return values

    def descriptive_values(self) -> Dict[str, Any]:
        """Non-key calendar columns stored alongside the period key."""
        if self.granularity in (Granularity.HOURLY, Granularity.DAILY):
            return {}
        values: Dict[str, Any] = {
            "period_start_date": self.start,
            "period_end_date": self.end,
        }
        if self.granularity == Granularity.MONTHLY:
            values["month_name"] = calendar.month_name[self.number]
        return values

    def __str__(self) -> str:
        return f"{self.granularity.value}:{self.label}"


def periods_in_range(granularity: Granularity, start: date, end: date) -> List[Period]:
    """All periods of ``granularity`` that overlap [start, end], in order."""
    granularity = Granularity.parse(granularity)
    periods: List[Period] = []
    if start > end:
        return periods
    current = Period.containing(granularity, start)
    while current.start <= end:
        periods.append(current)
        current = Period.containing(granularity, current.end + timedelta(days=1))
    return periods
