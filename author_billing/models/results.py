"""Result models returned by the lifecycle engine, sweeper and accountant."""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .subscription import PaymentStatus, SubscriptionRecord


class PaymentOutcome(BaseModel):
    """Payment outcome of a create or renew call."""

    status: PaymentStatus = Field(..., description="Charge outcome")
    amount: Decimal = Field(..., description="Amount charged")
    external_payment_id: Optional[str] = Field(None, description="Processor payment identifier")
    failure_reason: Optional[str] = Field(None, description="Why the charge failed")
    redirect_url: Optional[str] = Field(None, description="3-D Secure redirect URL")

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED


class SubscriptionResult(BaseModel):
    """Final subscription state plus the payment outcome that produced it."""

    subscription: SubscriptionRecord
    payment: Optional[PaymentOutcome] = Field(None, description="None when no charge was made (trial)")

    @property
    def payment_failed(self) -> bool:
        return self.payment is not None and self.payment.status == PaymentStatus.FAILED


class SweepReport(BaseModel):
    """Outcome counts of a single sweeper pass."""

    renewed: list[str] = Field(default_factory=list, description="Subscriptions renewed")
    renewal_failed: list[str] = Field(default_factory=list, description="Renewals that expired on failure")
    expired: list[str] = Field(default_factory=list, description="Subscriptions expired")
    skipped: list[str] = Field(default_factory=list, description="Already handled by another worker")
    errors: list[str] = Field(default_factory=list, description="Subscriptions whose transition raised")
    abandoned_pending: list[str] = Field(default_factory=list, description="Unconfirmed purchases cancelled")

    @property
    def processed(self) -> int:
        return len(self.renewed) + len(self.renewal_failed) + len(self.expired)


class CounterDiscrepancy(BaseModel):
    """A subscriber_count that drifted from the subscription rows."""

    author_id: str
    stored_count: int
    actual_count: int


class AuthorStats(BaseModel):
    """Subscription statistics for an author dashboard."""

    author_id: str = Field(..., alias="authorId")
    total_subscriptions: int = Field(..., alias="totalSubscriptions")
    active_subscriptions: int = Field(..., alias="activeSubscriptions")
    trial_subscriptions: int = Field(..., alias="trialSubscriptions")
    subscriber_count: int = Field(..., alias="subscriberCount")
    monthly_revenue: Decimal = Field(..., alias="monthlyRevenue")
    total_revenue: Decimal = Field(..., alias="totalRevenue")
    currency: str = Field(..., alias="currency")

    class Config:
        populate_by_name = True
