"""Lifecycle event models published to Pub/Sub."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LifecycleEventType(str, Enum):
    """Subscription lifecycle event types."""

    TRIAL_STARTED = "trial_started"  # Free trial began
    ACTIVATED = "activated"  # Initial charge captured
    PAYMENT_ACTION_REQUIRED = "payment_action_required"  # 3-D Secure pending
    PAYMENT_FAILED = "payment_failed"  # Initial charge declined
    CANCEL_SCHEDULED = "cancel_scheduled"  # Auto-renewal turned off
    CANCELLED = "cancelled"  # Cancelled immediately
    RENEWED = "renewed"  # New period paid
    RENEWAL_FAILED = "renewal_failed"  # Renewal charge declined
    EXPIRED = "expired"  # Period ended without renewal


class SubscriptionEvent(BaseModel):
    """Message published for every subscription lifecycle transition."""

    version: str = Field(default="1.0", description="Event schema version")
    event_type: LifecycleEventType = Field(..., description="Type of lifecycle event")
    subscription_id: str = Field(..., description="Subscription ID")
    subscriber_id: str = Field(..., description="Reader identity")
    author_id: str = Field(..., description="Author identity")
    status: str = Field(..., description="Subscription status after the transition")
    plan_type: str = Field(..., description="Plan type")
    event_time: datetime = Field(..., description="Event timestamp (UTC)")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "event_type": "renewed",
                "subscription_id": "sub_3f2a9c1d8e7b6a50",
                "subscriber_id": "reader-42",
                "author_id": "author-1",
                "status": "active",
                "plan_type": "monthly",
                "event_time": "2024-02-15T10:00:00Z",
            }
        }
