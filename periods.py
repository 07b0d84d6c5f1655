from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from errors import ValidationError
from models import BillFrequency, BudgetPeriod

# Biweekly billing blocks are counted from this Monday.
BIWEEKLY_EPOCH = date(1970, 1, 5)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def bounds(self) -> tuple[datetime, datetime]:
        """Inclusive start and exclusive end as datetimes."""
        return (
            datetime.combine(self.start, time.min),
            datetime.combine(self.end + timedelta(days=1), time.min),
        )


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def current_period(period: BudgetPeriod, *, today: Optional[date] = None) -> Period:
    today = today or date.today()
    if period == BudgetPeriod.weekly:
        start = today - timedelta(days=today.weekday())
        return Period("weekly", start, start + timedelta(days=6))
    if period == BudgetPeriod.yearly:
        return Period("yearly", date(today.year, 1, 1), date(today.year, 12, 31))
    if period == BudgetPeriod.custom:
        raise ValidationError("Custom budgets require start and end dates")

    first = today.replace(day=1)
    return Period("monthly", first, _month_end(first))


def budget_window(
    period: BudgetPeriod,
    start: Optional[date],
    end: Optional[date],
    *,
    today: Optional[date] = None,
) -> Period:
    if start and end:
        if start > end:
            raise ValidationError("Start date must be before end date")
        return Period(period.value, start, end)
    fallback = current_period(period, today=today)
    return Period(period.value, start or fallback.start, end or fallback.end)


def billing_period_start(frequency: BillFrequency, moment: datetime) -> datetime:
    """Start of the billing period containing ``moment``.

    Custom frequencies have no calendar of their own and fall back to daily.
    """
    day = moment.date()
    if frequency == BillFrequency.weekly:
        day = day - timedelta(days=day.weekday())
    elif frequency == BillFrequency.biweekly:
        offset = (day - BIWEEKLY_EPOCH).days % 14
        day = day - timedelta(days=offset)
    elif frequency == BillFrequency.monthly:
        day = day.replace(day=1)
    elif frequency == BillFrequency.yearly:
        day = date(day.year, 1, 1)
    return datetime.combine(day, time.min)


def same_billing_period(
    frequency: BillFrequency, previous: Optional[datetime], now: datetime
) -> bool:
    if previous is None:
        return False
    return previous >= billing_period_start(frequency, now)
