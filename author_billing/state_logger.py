"""State change logging for subscriptions and author counters.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime
from typing import Any, Optional

from author_billing.logging_config import get_logger

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def log_subscription_status_change(
    subscription_id: str,
    author_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Subscription ID
        author_id: Author the subscription belongs to
        old_status: Previous status value
        new_status: New status value
        reason: Reason for status change
        **extra_context: Additional context (subscriber_id, etc.)
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        author_id=author_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_auto_renewal_change(
    subscription_id: str,
    author_id: str,
    old_value: bool,
    new_value: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log auto-renewal setting change."""
    logger.info(
        "auto_renewal_changed",
        subscription_id=subscription_id,
        author_id=author_id,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        **extra_context,
    )


def log_period_change(
    subscription_id: str,
    author_id: str,
    old_expires_at: Optional[datetime],
    new_expires_at: datetime,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log the start of a new billing period.

    Args:
        subscription_id: Subscription ID
        author_id: Author the subscription belongs to
        old_expires_at: Previous period end (None for a new subscription)
        new_expires_at: New period end
        reason: Reason for change (purchase, renewal, trial)
        **extra_context: Additional context
    """
    logger.info(
        "billing_period_changed",
        subscription_id=subscription_id,
        author_id=author_id,
        old_expires_at=_iso(old_expires_at),
        new_expires_at=_iso(new_expires_at),
        reason=reason,
        **extra_context,
    )


def log_payment_attempt(
    subscription_id: str,
    author_id: str,
    status: str,
    **extra_context: Any,
) -> None:
    """Log a recorded payment attempt."""
    logger.info(
        "payment_recorded",
        subscription_id=subscription_id,
        author_id=author_id,
        status=status,
        **extra_context,
    )


def log_subscriber_count_change(
    author_id: str,
    old_count: int,
    new_count: int,
    subscription_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Log an author subscriber_count mutation."""
    logger.info(
        "subscriber_count_changed",
        author_id=author_id,
        old_count=old_count,
        new_count=new_count,
        delta=new_count - old_count,
        subscription_id=subscription_id,
        reason=reason,
    )
