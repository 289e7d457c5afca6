"""Billing period calculation utilities.

Calendar-aware date arithmetic for subscription plans and ISO 8601 duration
strings (trial periods). Months and years are calendar units: the day of
month is clamped to the last day of the target month, so Jan 31 + 1 month
is the last day of February and Feb 29 + 1 year is Feb 28.
"""

import calendar
import re
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple, Optional, Union

from author_billing.models.subscription import PlanType

DEFAULT_LIFETIME_YEARS = 100
CENT = Decimal("0.01")
MONTHS_PER_YEAR = 12

# Plan type -> ISO 8601 period of one billing cycle
PLAN_PERIODS = {
    PlanType.MONTHLY: "P1M",
    PlanType.YEARLY: "P1Y",
}

_DURATION_PATTERN = re.compile(r"^(\d+)?([DWMY])$")


class BillingPeriod(NamedTuple):
    """Expiration and next billing instants of one period."""

    expires_at: datetime
    next_billing_date: Optional[datetime]


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month.

    Args:
        start: Starting instant
        months: Number of months to add (may be negative)

    Returns:
        Shifted instant with the same time of day and tzinfo

    Examples:
        >>> add_months(datetime(2024, 1, 31), 1)
        datetime.datetime(2024, 2, 29, 0, 0)
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_years(start: datetime, years: int) -> datetime:
    """Add calendar years (Feb 29 maps to Feb 28 in non-leap years)."""
    return add_months(start, years * MONTHS_PER_YEAR)


def parse_duration(period: str) -> tuple[int, str]:
    """Parse an ISO 8601 duration string into (number, unit).

    Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y where [n] defaults to 1.

    Args:
        period: ISO 8601 duration string (e.g., "P14D", "P1M")

    Returns:
        Tuple of positive count and unit letter

    Raises:
        ValueError: If the period string is invalid or unsupported
    """
    if not period or not isinstance(period, str):
        raise ValueError("Period must be a non-empty string")

    period = period.strip().upper()

    if not period.startswith("P"):
        raise ValueError(f"Invalid period format: '{period}'. Must start with 'P'")

    duration_str = period[1:]
    if not duration_str:
        raise ValueError(f"Invalid period format: '{period}'. No duration specified")

    match = _DURATION_PATTERN.match(duration_str)
    if not match:
        raise ValueError(
            f"Unsupported period format: '{period}'. "
            "Supported formats: P[n]D, P[n]W, P[n]M, P[n]Y"
        )

    number_str, unit = match.groups()
    number = int(number_str) if number_str else 1
    if number <= 0:
        raise ValueError(f"Period number must be positive, got: {number}")
    return number, unit


def add_duration(start: datetime, period: str) -> datetime:
    """Add an ISO 8601 duration to an instant using calendar arithmetic.

    Args:
        start: Starting instant
        period: ISO 8601 duration string

    Returns:
        Instant after the duration

    Raises:
        ValueError: If the period string is invalid
    """
    number, unit = parse_duration(period)
    if unit == "D":
        return start + timedelta(days=number)
    if unit == "W":
        return start + timedelta(weeks=number)
    if unit == "M":
        return add_months(start, number)
    return add_years(start, number)


def validate_duration(period: str) -> bool:
    """Check whether a string is a supported ISO 8601 duration."""
    try:
        parse_duration(period)
        return True
    except (ValueError, TypeError):
        return False


def parse_plan_type(value: Union[str, PlanType]) -> PlanType:
    """Convert a plan name to PlanType.

    Raises:
        ValueError: If the plan type is unknown
    """
    if isinstance(value, PlanType):
        return value
    try:
        return PlanType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(p.value for p in PlanType)
        raise ValueError(f"Unknown plan type: '{value}'. Supported plans: {allowed}") from None


def calculate_billing_period(
    start: datetime,
    plan_type: Union[str, PlanType],
    lifetime_years: int = DEFAULT_LIFETIME_YEARS,
) -> BillingPeriod:
    """Compute expiration and next billing date for a period starting at start.

    Lifetime plans expire lifetime_years after start and have no next
    billing date.

    Args:
        start: Period start instant
        plan_type: Plan type
        lifetime_years: Horizon used for lifetime plans

    Returns:
        BillingPeriod(expires_at, next_billing_date)

    Raises:
        ValueError: If the plan type is unknown
    """
    plan = parse_plan_type(plan_type)

    if plan == PlanType.LIFETIME:
        return BillingPeriod(add_years(start, lifetime_years), None)

    expires_at = add_duration(start, PLAN_PERIODS[plan])
    return BillingPeriod(expires_at, expires_at)


def quantize_amount(amount: Decimal) -> Decimal:
    """Round a money amount to cents."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def apply_discount(amount: Decimal, percent: Optional[Decimal]) -> Decimal:
    """Apply a percentage discount to an amount.

    Examples:
        >>> apply_discount(Decimal("500"), Decimal("10"))
        Decimal('450.00')
    """
    if not percent:
        return quantize_amount(amount)
    return quantize_amount(amount * (Decimal("100") - Decimal(percent)) / Decimal("100"))


def monthly_equivalent(price: Decimal, plan_type: Union[str, PlanType]) -> Decimal:
    """Normalize a recurring price to a monthly figure.

    Yearly prices are divided by 12; lifetime plans have no recurring revenue.
    """
    plan = parse_plan_type(plan_type)
    if plan == PlanType.LIFETIME:
        return Decimal("0")
    if plan == PlanType.YEARLY:
        return Decimal(price) / MONTHS_PER_YEAR
    return Decimal(price)
