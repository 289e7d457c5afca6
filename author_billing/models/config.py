"""Billing configuration models.

Models from billing.yaml configuration.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

SUPPORTED_CURRENCIES = ("RUB", "USD", "EUR")


class AuthorDefinition(BaseModel):
    """Author pricing definition from configuration."""

    author_id: str = Field(..., description="Author identifier")
    display_name: Optional[str] = Field(None, description="Human-readable author name")
    subscription_price: Decimal = Field(..., ge=0, description="Monthly subscription price")
    yearly_price: Optional[Decimal] = Field(None, ge=0, description="Yearly price (defaults to subscription_price)")
    lifetime_price: Optional[Decimal] = Field(None, ge=0, description="Lifetime price (defaults to subscription_price)")
    trial_period: Optional[str] = Field(None, description="ISO 8601 trial duration (e.g., P14D)")

    @field_validator("trial_period")
    @classmethod
    def _check_trial_period(cls, value: Optional[str]) -> Optional[str]:
        from author_billing.utils.billing_period import validate_duration

        if value is not None and not validate_duration(value):
            raise ValueError(f"Invalid trial_period: {value}")
        return value

    class Config:
        json_schema_extra = {
            "example": {
                "author_id": "author-1",
                "display_name": "Jane Writer",
                "subscription_price": "500",
                "yearly_price": "5000",
                "lifetime_price": "20000",
                "trial_period": "P14D",
            }
        }


class DiscountDefinition(BaseModel):
    """Discount code definition."""

    code: str = Field(..., description="Discount code entered by the subscriber")
    percent: Decimal = Field(..., gt=0, le=100, description="Discount percentage applied to the first charge")
    active: bool = Field(default=True, description="Whether the code can be redeemed")
    valid_until: Optional[datetime] = Field(None, description="Expiry of the code (UTC)")
    author_id: Optional[str] = Field(None, description="Restrict the code to one author")


class GatewayConfig(BaseModel):
    """Payment gateway adapter settings."""

    provider: str = Field(default="emulated", description="Gateway implementation")
    payment_system: str = Field(default="yukassa", description="Processor name recorded on payments")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Charge timeout, treated as failure")
    max_workers: int = Field(default=8, gt=0, description="Concurrent gateway calls")
    decline_token_prefix: str = Field(default="decline_", description="Emulated tokens that are declined")
    challenge_token_prefix: str = Field(default="3ds_", description="Emulated tokens that require 3-D Secure")
    redirect_base_url: str = Field(
        default="https://pay.example.com/3ds",
        description="Base URL for 3-D Secure redirects",
    )
    simulate_failures: bool = Field(default=False, description="Randomly fail emulated charges")
    failure_rate: float = Field(default=0.05, ge=0.0, le=1.0, description="Emulated failure rate (0.0-1.0)")
    latency_seconds: float = Field(default=0.0, ge=0.0, description="Artificial emulated latency")


class SweeperConfig(BaseModel):
    """Expiration sweeper schedule."""

    enabled: bool = Field(default=True, description="Run the sweeper in the background")
    interval_seconds: int = Field(default=300, gt=0, description="Sweep interval")
    reconcile_interval_seconds: int = Field(default=3600, gt=0, description="Counter reconciliation interval")
    pending_timeout_minutes: int = Field(default=30, gt=0, description="Abandon unconfirmed purchases after")
    renewal_claim_ttl_seconds: int = Field(default=120, gt=0, description="Reclaim in-flight renewals after")


class EventsConfig(BaseModel):
    """Lifecycle event publishing (Pub/Sub)."""

    enabled: bool = Field(default=False, description="Publish lifecycle events")
    project_id: str = Field(default="billing-local", description="GCP project ID")
    topic: str = Field(default="subscription-events", description="Pub/Sub topic name")


class BillingConfig(BaseModel):
    """Complete billing.yaml configuration."""

    currency: str = Field(default="RUB", description="Settlement currency (ISO 4217)")
    lifetime_years: int = Field(default=100, gt=0, description="Far-future horizon for lifetime plans")
    id_prefix: str = Field(default="sub", description="Prefix for generated subscription IDs")
    authors: list[AuthorDefinition] = Field(default_factory=list, description="Author pricing seeds")
    discounts: list[DiscountDefinition] = Field(default_factory=list, description="Discount codes")
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    sweeper: SweeperConfig = Field(default_factory=SweeperConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, value: str) -> str:
        value = value.upper()
        if value not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency: {value}. Supported: {', '.join(SUPPORTED_CURRENCIES)}")
        return value
