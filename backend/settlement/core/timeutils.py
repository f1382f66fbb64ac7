"""UTC helpers.

Every timestamp the engine stores is naive UTC. Aware datetimes coming in
from callers are converted to UTC and stripped of tzinfo before they touch
the database or get compared with stored values.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """[start, end) of a UTC calendar month."""
    start = datetime(year, month, 1)
    return start, start + relativedelta(months=1)


def previous_month(now: Optional[datetime] = None) -> Tuple[int, int]:
    ref = (now or utcnow()).replace(day=1) - relativedelta(months=1)
    return ref.year, ref.month


def money(value) -> Decimal:
    """Round to currency minor units, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
