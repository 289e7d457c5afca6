"""Utility functions and helpers for the billing engine."""

from author_billing.utils.billing_period import (
    BillingPeriod,
    add_duration,
    add_months,
    add_years,
    apply_discount,
    calculate_billing_period,
    monthly_equivalent,
    parse_duration,
    parse_plan_type,
    quantize_amount,
    validate_duration,
)
from author_billing.utils.id_generator import (
    generate_payment_id,
    generate_subscription_id,
    validate_payment_id,
    validate_subscription_id,
)

__all__ = [
    # Identifier generation
    "generate_subscription_id",
    "generate_payment_id",
    "validate_subscription_id",
    "validate_payment_id",
    # Plan and period calculation
    "BillingPeriod",
    "calculate_billing_period",
    "parse_plan_type",
    "add_months",
    "add_years",
    "add_duration",
    "parse_duration",
    "validate_duration",
    # Money
    "apply_discount",
    "quantize_amount",
    "monthly_equivalent",
]
