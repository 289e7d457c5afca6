"""API request models for subscription and control endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .subscription import PlanType


class CreateSubscriptionRequest(BaseModel):
    """Request to subscribe a reader to an author."""

    subscriber_id: str = Field(..., min_length=1, description="Reader identity")
    author_id: str = Field(..., min_length=1, description="Author identity")
    plan_type: PlanType = Field(default=PlanType.MONTHLY, description="Billing cadence")
    payment_token: str = Field(..., min_length=1, description="Opaque payment method token")
    discount_code: Optional[str] = Field(None, description="Promotional code for the first charge")
    start_trial: bool = Field(default=False, description="Start with the author's free trial if eligible")

    class Config:
        json_schema_extra = {
            "example": {
                "subscriber_id": "reader-42",
                "author_id": "author-1",
                "plan_type": "monthly",
                "payment_token": "pm_card_visa_4242",
                "discount_code": "WELCOME10",
                "start_trial": False,
            }
        }


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel a subscription."""

    reason: Optional[str] = Field(None, max_length=500, description="Free-text cancellation reason")
    immediately: bool = Field(
        default=False,
        description="End access now instead of at the end of the paid period",
    )
    subscriber_id: Optional[str] = Field(None, description="Caller identity, checked against the owner")

    class Config:
        json_schema_extra = {
            "example": {
                "reason": "Too expensive",
                "immediately": False,
                "subscriber_id": "reader-42",
            }
        }


class PaymentConfirmationRequest(BaseModel):
    """3-D Secure callback from the payment processor."""

    external_payment_id: str = Field(..., min_length=1, description="Processor payment identifier")
    succeeded: bool = Field(..., description="Whether the challenge succeeded and funds were captured")
    failure_reason: Optional[str] = Field(None, description="Processor failure reason")


class AutoRenewalRequest(BaseModel):
    """Request to toggle auto-renewal."""

    auto_renewal: bool = Field(..., description="Renew at period end")


class AdvanceTimeRequest(BaseModel):
    """Request to advance virtual time."""

    days: Optional[int] = Field(None, ge=0, description="Days to advance")
    hours: Optional[int] = Field(None, ge=0, description="Hours to advance")
    minutes: Optional[int] = Field(None, ge=0, description="Minutes to advance")

    class Config:
        json_schema_extra = {
            "example": {
                "days": 31,
                "hours": 0,
                "minutes": 0,
            }
        }


class SetTimeRequest(BaseModel):
    """Request to move virtual time to an absolute instant."""

    instant: datetime = Field(..., description="Target instant (ISO 8601, UTC if no offset)")


class AuthorPricingRequest(BaseModel):
    """Create an author or change its list prices."""

    display_name: Optional[str] = Field(None, description="Human-readable author name")
    subscription_price: Decimal = Field(..., ge=0, description="Monthly price")
    yearly_price: Optional[Decimal] = Field(None, ge=0, description="Yearly price")
    lifetime_price: Optional[Decimal] = Field(None, ge=0, description="Lifetime price")
    trial_period: Optional[str] = Field(None, description="ISO 8601 trial duration (e.g. P14D)")

    class Config:
        json_schema_extra = {
            "example": {
                "display_name": "Anna K.",
                "subscription_price": "500.00",
                "yearly_price": "5000.00",
                "trial_period": "P14D",
            }
        }
