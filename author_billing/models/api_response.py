"""API response models for subscription and control endpoints.

Subscriptions are rendered through SubscriptionView, which never carries the
payment token.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .results import PaymentOutcome, SubscriptionResult, SweepReport
from .subscription import PlanType, SubscriptionRecord, SubscriptionStatus


class SubscriptionView(BaseModel):
    """Public representation of a subscription."""

    subscription_id: str = Field(..., description="Subscription ID")
    subscriber_id: str = Field(..., description="Reader identity")
    author_id: str = Field(..., description="Author identity")
    plan_type: PlanType = Field(..., description="Billing cadence")
    status: SubscriptionStatus = Field(..., description="Current status")
    price: Decimal = Field(..., description="Recurring price")
    currency: str = Field(..., description="Currency code")
    discount_percent: Optional[Decimal] = Field(None, description="Discount applied to the first charge")
    auto_renewal: bool = Field(..., description="Renews at period end")
    started_at: Optional[datetime] = Field(None, description="Current period start")
    expires_at: Optional[datetime] = Field(None, description="Current period end")
    next_billing_date: Optional[datetime] = Field(None, description="Next recurring charge")
    trial_expires_at: Optional[datetime] = Field(None, description="Trial end")
    cancelled_at: Optional[datetime] = Field(None, description="Cancellation time")
    cancellation_reason: Optional[str] = Field(None, description="Cancellation reason")
    total_paid: Decimal = Field(..., description="Captured payments to date")
    renewal_count: int = Field(..., description="Successful renewals")

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionView":
        return cls(**record.model_dump(include=set(cls.model_fields)))


class SubscriptionResponse(BaseModel):
    """Subscription plus the payment outcome of the call that produced it."""

    subscription: SubscriptionView
    payment: Optional[PaymentOutcome] = Field(None, description="Charge outcome (absent for trials)")
    redirect_url: Optional[str] = Field(None, description="3-D Secure URL when the charge needs action")
    message: str = Field(..., description="Human-readable summary")

    @classmethod
    def from_result(cls, result: SubscriptionResult, message: str) -> "SubscriptionResponse":
        payment = result.payment
        return cls(
            subscription=SubscriptionView.from_record(result.subscription),
            payment=payment,
            redirect_url=payment.redirect_url if payment else None,
            message=message,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "subscription": {
                    "subscription_id": "sub_3f2a9c1d8e7b6a50",
                    "subscriber_id": "reader-42",
                    "author_id": "author-1",
                    "plan_type": "monthly",
                    "status": "active",
                    "price": "500.00",
                    "currency": "RUB",
                    "auto_renewal": True,
                    "expires_at": "2024-02-15T10:00:00Z",
                    "total_paid": "500.00",
                    "renewal_count": 0,
                },
                "payment": {"status": "succeeded", "amount": "500.00", "external_payment_id": "payment_..."},
                "message": "Subscription created",
            }
        }


class AccessResponse(BaseModel):
    """Whether a reader may see an author's paid content right now."""

    subscriber_id: str
    author_id: str
    has_access: bool
    subscription_id: Optional[str] = Field(None, description="Subscription granting access")


class TimeResponse(BaseModel):
    """Virtual clock state after a time control call."""

    previous_time: datetime = Field(..., description="Virtual time before the call")
    current_time: datetime = Field(..., description="Virtual time after the call")
    sweep: Optional[SweepReport] = Field(None, description="Sweep run after moving time")
    message: str = Field(..., description="Success message")


class ReconcileResponse(BaseModel):
    """Outcome of a subscriber_count reconciliation."""

    corrected: int = Field(..., description="Authors whose counter was corrected")
    discrepancies: list = Field(default_factory=list, description="Stored vs actual counts")


class StatusResponse(BaseModel):
    """Service status response."""

    status: str = Field(..., description="Service status")
    current_time: datetime = Field(..., description="Current (virtual) time")
    time_offset_seconds: float = Field(..., description="Offset from real time")
    time_frozen: bool = Field(..., description="Whether virtual time is frozen")
    sweeper_running: bool = Field(..., description="Whether the background sweeper is scheduled")
    statistics: dict = Field(..., description="Store statistics")


class ResetResponse(BaseModel):
    """Response after resetting service state."""

    subscriptions_deleted: int = Field(..., description="Number of subscriptions deleted")
    authors_seeded: int = Field(..., description="Authors re-seeded from configuration")
    time_reset: bool = Field(..., description="Whether time was reset")
    message: str = Field(..., description="Success message")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error message")
    details: Optional[str] = Field(None, description="Additional error details")
    field: Optional[str] = Field(None, description="Offending input field for validation errors")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "Subscription not found",
                "details": "Subscription not found: sub_3f2a9c1d8e7b6a50",
            }
        }
