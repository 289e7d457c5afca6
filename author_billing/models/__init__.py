"""Pydantic models for API requests, responses, and domain objects."""

# Configuration models
from .config import (
    AuthorDefinition,
    DiscountDefinition,
    GatewayConfig,
    SweeperConfig,
    EventsConfig,
    BillingConfig,
)

# Subscription models
from .subscription import (
    PlanType,
    SubscriptionStatus,
    PaymentStatus,
    PaymentReference,
    SubscriptionRecord,
    AuthorRecord,
    COUNTED_STATUSES,
    HOLDING_STATUSES,
    TERMINAL_STATUSES,
)

# Result models
from .results import (
    PaymentOutcome,
    SubscriptionResult,
    SweepReport,
    CounterDiscrepancy,
    AuthorStats,
)

# Event models
from .events import (
    LifecycleEventType,
    SubscriptionEvent,
)

# API request models
from .api_request import (
    CreateSubscriptionRequest,
    CancelSubscriptionRequest,
    PaymentConfirmationRequest,
    AutoRenewalRequest,
    AdvanceTimeRequest,
    SetTimeRequest,
    AuthorPricingRequest,
)

# API response models
from .api_response import (
    SubscriptionView,
    SubscriptionResponse,
    AccessResponse,
    TimeResponse,
    ReconcileResponse,
    StatusResponse,
    ResetResponse,
    ErrorResponse,
)

__all__ = [
    # Configuration
    "AuthorDefinition",
    "DiscountDefinition",
    "GatewayConfig",
    "SweeperConfig",
    "EventsConfig",
    "BillingConfig",
    # Subscription
    "PlanType",
    "SubscriptionStatus",
    "PaymentStatus",
    "PaymentReference",
    "SubscriptionRecord",
    "AuthorRecord",
    "COUNTED_STATUSES",
    "HOLDING_STATUSES",
    "TERMINAL_STATUSES",
    # Results
    "PaymentOutcome",
    "SubscriptionResult",
    "SweepReport",
    "CounterDiscrepancy",
    "AuthorStats",
    # Events
    "LifecycleEventType",
    "SubscriptionEvent",
    # API requests
    "CreateSubscriptionRequest",
    "CancelSubscriptionRequest",
    "PaymentConfirmationRequest",
    "AutoRenewalRequest",
    "AdvanceTimeRequest",
    "SetTimeRequest",
    "AuthorPricingRequest",
    # API responses
    "SubscriptionView",
    "SubscriptionResponse",
    "AccessResponse",
    "TimeResponse",
    "ReconcileResponse",
    "StatusResponse",
    "ResetResponse",
    "ErrorResponse",
]
