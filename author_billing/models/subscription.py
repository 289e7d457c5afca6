"""Subscription state and lifecycle models.

Includes subscription statuses, plan types, payment references and the
author aggregate record.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PlanType(str, Enum):
    """Billing cadence for a subscription."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    PENDING = "pending"  # Created, initial charge not settled yet
    ACTIVE = "active"  # Paid period running
    TRIAL = "trial"  # Free trial period running
    CANCELLED = "cancelled"  # Cancelled by the subscriber or a failed purchase
    EXPIRED = "expired"  # Period ended without renewal


# Statuses counted in the author's subscriber_count
COUNTED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})

# At most one subscription per (subscriber, author) may be in these statuses
HOLDING_STATUSES = frozenset(
    {SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}
)

TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


class PaymentStatus(str, Enum):
    """Outcome of a single charge attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REQUIRES_ACTION = "requires_action"


class PaymentReference(BaseModel):
    """Record of the most recent payment attempt for a subscription."""

    external_payment_id: Optional[str] = Field(None, description="Processor payment identifier")
    payment_system: str = Field(..., description="Payment processor name")
    amount: Decimal = Field(..., ge=0, description="Amount requested")
    currency: str = Field(..., description="ISO 4217 currency code")
    status: PaymentStatus = Field(..., description="Charge outcome")
    captured: bool = Field(default=False, description="Whether funds were captured")
    failure_reason: Optional[str] = Field(None, description="Gateway failure reason")
    redirect_url: Optional[str] = Field(None, description="3-D Secure redirect URL")
    attempted_at: datetime = Field(..., description="When the charge was attempted")


class SubscriptionRecord(BaseModel):
    """Internal subscription record tracking status, period and accounting."""

    subscription_id: str = Field(..., description="Unique subscription ID")
    subscriber_id: str = Field(..., description="Reader identity")
    author_id: str = Field(..., description="Content-provider identity")
    plan_type: PlanType = Field(..., description="Billing cadence")

    # Pricing
    price: Decimal = Field(..., ge=0, description="Recurring price snapshot")
    currency: str = Field(default="RUB", description="Currency code")
    discount_percent: Optional[Decimal] = Field(None, description="Discount applied to the first charge")
    discount_code: Optional[str] = Field(None, description="Redeemed discount code")

    # State
    status: SubscriptionStatus = Field(default=SubscriptionStatus.PENDING, description="Current status")
    auto_renewal: bool = Field(default=True, description="Renew at period end instead of expiring")

    # Period
    started_at: Optional[datetime] = Field(None, description="Current period start")
    expires_at: Optional[datetime] = Field(None, description="Current period end")
    next_billing_date: Optional[datetime] = Field(None, description="Next recurring charge (None for lifetime)")
    trial_expires_at: Optional[datetime] = Field(None, description="Trial end")

    # Cancellation
    cancelled_at: Optional[datetime] = Field(None, description="When the subscription was cancelled")
    cancellation_reason: Optional[str] = Field(None, description="Reason supplied on cancellation")

    # Accounting
    total_paid: Decimal = Field(default=Decimal("0"), ge=0, description="Running total of captured payments")
    payment_token: str = Field(..., exclude=True, description="Opaque payment method token")
    last_payment: Optional[PaymentReference] = Field(None, description="Most recent payment attempt")
    renewal_count: int = Field(default=0, description="Number of successful renewals")

    # In-flight renewal bookkeeping
    renewal_claimed_at: Optional[datetime] = Field(None, description="Sweeper renewal charge in flight since")
    renewal_from_status: Optional[SubscriptionStatus] = Field(
        None, description="Status to restore if a manual renewal charge fails"
    )

    created_at: datetime = Field(..., description="Record creation time")
    updated_at: datetime = Field(..., description="Last modification time")

    @property
    def is_counted(self) -> bool:
        return self.status in COUNTED_STATUSES

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change subscription status and log the transition.

        Args:
            new_status: New status to transition to
            reason: Reason for status change
        """
        from author_billing.state_logger import log_subscription_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                subscription_id=self.subscription_id,
                author_id=self.author_id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                subscriber_id=self.subscriber_id,
            )

    def set_auto_renewal(self, auto_renewal: bool, reason: Optional[str] = None) -> None:
        """Change auto-renewal setting and log the change.

        Args:
            auto_renewal: New auto-renewal value
            reason: Reason for change
        """
        from author_billing.state_logger import log_auto_renewal_change

        old_value = self.auto_renewal
        if old_value != auto_renewal:
            self.auto_renewal = auto_renewal
            log_auto_renewal_change(
                subscription_id=self.subscription_id,
                author_id=self.author_id,
                old_value=old_value,
                new_value=auto_renewal,
                reason=reason,
                subscriber_id=self.subscriber_id,
            )

    def set_period(
        self,
        started_at: datetime,
        expires_at: datetime,
        next_billing_date: Optional[datetime],
        reason: str,
    ) -> None:
        """Start a new billing period and log the change.

        Args:
            started_at: Period start
            expires_at: Period end
            next_billing_date: Next recurring charge, None for lifetime plans
            reason: Reason for the new period (purchase, renewal, trial)
        """
        from author_billing.state_logger import log_period_change

        old_expires_at = self.expires_at
        self.started_at = started_at
        self.expires_at = expires_at
        self.next_billing_date = next_billing_date
        log_period_change(
            subscription_id=self.subscription_id,
            author_id=self.author_id,
            old_expires_at=old_expires_at,
            new_expires_at=expires_at,
            reason=reason,
            plan_type=self.plan_type.value,
            renewal_count=self.renewal_count,
        )

    def record_payment(self, payment: PaymentReference) -> None:
        """Store the latest payment attempt and accumulate captured funds.

        Args:
            payment: Payment attempt to record
        """
        from author_billing.state_logger import log_payment_attempt

        self.last_payment = payment
        if payment.captured:
            self.total_paid += payment.amount
        log_payment_attempt(
            subscription_id=self.subscription_id,
            author_id=self.author_id,
            status=payment.status.value,
            amount=str(payment.amount),
            captured=payment.captured,
            external_payment_id=payment.external_payment_id,
            failure_reason=payment.failure_reason,
            total_paid=str(self.total_paid),
        )

    class Config:
        json_schema_extra = {
            "example": {
                "subscription_id": "sub_3f2a9c1d8e7b6a50",
                "subscriber_id": "reader-42",
                "author_id": "author-1",
                "plan_type": "monthly",
                "price": "500.00",
                "currency": "RUB",
                "status": "active",
                "auto_renewal": True,
                "started_at": "2024-01-15T10:00:00Z",
                "expires_at": "2024-02-15T10:00:00Z",
                "next_billing_date": "2024-02-15T10:00:00Z",
                "total_paid": "500.00",
                "renewal_count": 0,
                "created_at": "2024-01-15T10:00:00Z",
                "updated_at": "2024-01-15T10:00:00Z",
            }
        }


class AuthorRecord(BaseModel):
    """Author pricing and aggregate counters owned by the billing engine."""

    author_id: str = Field(..., description="Author identifier")
    display_name: Optional[str] = Field(None, description="Human-readable author name")
    subscription_price: Decimal = Field(..., ge=0, description="Monthly subscription price")
    yearly_price: Optional[Decimal] = Field(None, ge=0, description="Yearly price")
    lifetime_price: Optional[Decimal] = Field(None, ge=0, description="Lifetime price")
    trial_period: Optional[str] = Field(None, description="ISO 8601 trial duration")
    subscriber_count: int = Field(default=0, ge=0, description="Subscriptions in active or trial status")

    def price_for(self, plan_type: PlanType) -> Decimal:
        """Current list price for a plan, falling back to the monthly price."""
        if plan_type == PlanType.YEARLY and self.yearly_price is not None:
            return self.yearly_price
        if plan_type == PlanType.LIFETIME and self.lifetime_price is not None:
            return self.lifetime_price
        return self.subscription_price
