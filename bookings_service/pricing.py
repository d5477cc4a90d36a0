# bookings_service/pricing.py
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple, Union

CENTS = Decimal("0.01")
ONE_DAY = timedelta(days=1)


class PriceQuote(NamedTuple):
    total_days: int
    total_price: Decimal


def count_days(start: datetime, end: datetime) -> int:
    """
    Number of billable days between two instants, partial days rounded up.

    Raises
    ------
    ValueError
        If end is not strictly after start.
    """
    if end <= start:
        raise ValueError("end must be after start")
    return max(1, math.ceil((end - start) / ONE_DAY))


def calculate_price(
    start: datetime,
    end: datetime,
    rate_per_day: Union[Decimal, int, str],
) -> PriceQuote:
    """
    Price a rental period at a daily rate.

    Parameters
    ----------
    start, end : datetime
        Rental period; end must be strictly after start.
    rate_per_day : Decimal
        Positive daily rate. Floats go through str() before Decimal.

    Returns
    -------
    PriceQuote
        total_days (at least 1) and total_price rounded half-up to cents.
    """
    rate = Decimal(str(rate_per_day))
    if rate <= 0:
        raise ValueError("rate_per_day must be positive")
    days = count_days(start, end)
    total = (rate * days).quantize(CENTS, rounding=ROUND_HALF_UP)
    return PriceQuote(total_days=days, total_price=total)
