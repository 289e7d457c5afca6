"""Subscription API.

Implements:
- POST /subscriptions/create - Subscribe a reader to an author
- POST /subscriptions/{subscription_id}/cancel - Cancel now or at period end
- POST /subscriptions/{subscription_id}/renew - Reactivate a cancelled/expired subscription
- POST /subscriptions/{subscription_id}/payment-confirmation - 3-D Secure callback
- PUT /subscriptions/{subscription_id}/auto-renewal - Toggle auto-renewal
- GET /subscriptions/{subscription_id} - Subscription details
- GET /subscriptions/user/{subscriber_id} - A reader's subscriptions
- GET /subscriptions/author/{author_id}/subscribers - An author's subscribers
- GET /subscriptions/access - Content access check
- GET /subscriptions/stats/{author_id} - Author dashboard statistics
"""

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from author_billing.logging_config import get_logger
from author_billing.models import (
    AccessResponse,
    AuthorStats,
    AutoRenewalRequest,
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    PaymentConfirmationRequest,
    PaymentStatus,
    SubscriptionResponse,
    SubscriptionResult,
    SubscriptionStatus,
    SubscriptionView,
)
from author_billing.repositories.subscription_store import (
    AuthorNotFoundError,
    SubscriptionNotFoundError,
)
from author_billing.services.revenue_accountant import get_revenue_accountant
from author_billing.services.subscription_engine import (
    DuplicateActiveSubscriptionError,
    SubscriptionAccessError,
    SubscriptionConflictError,
    SubscriptionError,
    SubscriptionValidationError,
    get_subscription_engine,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Subscriptions"], prefix="/subscriptions")

HANDLED_ERRORS = (SubscriptionError, SubscriptionNotFoundError, AuthorNotFoundError)


def _http_error(exc: Exception) -> HTTPException:
    """Map an engine or store exception to an HTTP error."""
    if isinstance(exc, SubscriptionValidationError):
        return HTTPException(
            status_code=422,
            detail={"error": "Validation failed", "message": str(exc), "field": exc.field},
        )
    if isinstance(exc, DuplicateActiveSubscriptionError):
        return HTTPException(
            status_code=409,
            detail={
                "error": "Duplicate subscription",
                "message": str(exc),
                "existing_subscription_id": exc.existing_subscription_id,
            },
        )
    if isinstance(exc, SubscriptionConflictError):
        return HTTPException(status_code=409, detail={"error": "Conflict", "message": str(exc)})
    if isinstance(exc, SubscriptionAccessError):
        return HTTPException(status_code=403, detail={"error": "Forbidden", "message": str(exc)})
    if isinstance(exc, SubscriptionNotFoundError):
        return HTTPException(status_code=404, detail={"error": "Subscription not found", "message": str(exc)})
    if isinstance(exc, AuthorNotFoundError):
        return HTTPException(status_code=404, detail={"error": "Author not found", "message": str(exc)})
    return HTTPException(status_code=400, detail={"error": "Subscription error", "message": str(exc)})


def _payment_required(result: SubscriptionResult) -> HTTPException:
    subscription = result.subscription
    return HTTPException(
        status_code=402,
        detail={
            "error": "Payment failed",
            "message": "The payment was declined; try another payment method",
            "subscription_id": subscription.subscription_id,
            "status": subscription.status.value,
            "failure_reason": result.payment.failure_reason if result.payment else None,
        },
    )


@router.post(
    "/create",
    response_model=SubscriptionResponse,
    status_code=201,
    summary="Create subscription",
)
def create_subscription(request: CreateSubscriptionRequest) -> SubscriptionResponse:
    """Subscribe a reader to an author and take the first payment.

    Raises:
        402: Payment declined (the subscription is kept as cancelled)
        404: Author not found
        409: Reader already holds a subscription to this author
        422: Invalid input
    """
    logger.info(
        "create_subscription_request",
        subscriber_id=request.subscriber_id,
        author_id=request.author_id,
        plan_type=request.plan_type.value,
        start_trial=request.start_trial,
    )

    try:
        result = get_subscription_engine().create_subscription(
            subscriber_id=request.subscriber_id,
            author_id=request.author_id,
            plan_type=request.plan_type,
            payment_token=request.payment_token,
            discount_code=request.discount_code,
            with_trial=request.start_trial,
        )
    except HANDLED_ERRORS as e:
        logger.warning("create_subscription_rejected", error=str(e), error_type=type(e).__name__)
        raise _http_error(e)

    if result.payment_failed:
        logger.warning(
            "create_subscription_payment_failed",
            subscription_id=result.subscription.subscription_id,
            failure_reason=result.payment.failure_reason,
        )
        raise _payment_required(result)

    if result.payment is not None and result.payment.status == PaymentStatus.REQUIRES_ACTION:
        message = "Payment requires confirmation"
    elif result.subscription.status == SubscriptionStatus.TRIAL:
        message = "Trial started"
    else:
        message = "Subscription created"

    logger.info(
        "create_subscription_success",
        subscription_id=result.subscription.subscription_id,
        status=result.subscription.status.value,
    )
    return SubscriptionResponse.from_result(result, message)


@router.get(
    "/user/{subscriber_id}",
    response_model=List[SubscriptionView],
    summary="List a reader's subscriptions",
)
def list_subscriber_subscriptions(
    subscriber_id: str,
    status: Optional[SubscriptionStatus] = Query(None, description="Filter by status"),
) -> List[SubscriptionView]:
    subscriptions = get_subscription_engine().get_subscriber_subscriptions(subscriber_id, status)
    return [SubscriptionView.from_record(s) for s in subscriptions]


@router.get(
    "/author/{author_id}/subscribers",
    response_model=List[SubscriptionView],
    summary="List an author's subscribers",
)
def list_author_subscribers(
    author_id: str,
    status: SubscriptionStatus = Query(SubscriptionStatus.ACTIVE, description="Subscription status"),
) -> List[SubscriptionView]:
    try:
        subscriptions = get_subscription_engine().get_author_subscribers(author_id, status)
    except HANDLED_ERRORS as e:
        raise _http_error(e)
    return [SubscriptionView.from_record(s) for s in subscriptions]


@router.get(
    "/access",
    response_model=AccessResponse,
    summary="Check content access",
)
def check_access(
    subscriber_id: str = Query(..., min_length=1),
    author_id: str = Query(..., min_length=1),
) -> AccessResponse:
    """Whether the reader may see the author's paid content right now."""
    subscription = get_subscription_engine().get_access_subscription(subscriber_id, author_id)
    return AccessResponse(
        subscriber_id=subscriber_id,
        author_id=author_id,
        has_access=subscription is not None,
        subscription_id=subscription.subscription_id if subscription else None,
    )


@router.get(
    "/stats/{author_id}",
    response_model=AuthorStats,
    summary="Author statistics",
)
def get_author_stats(author_id: str) -> AuthorStats:
    """Subscriber counts and revenue for an author dashboard."""
    try:
        return get_revenue_accountant().get_author_stats(author_id)
    except AuthorNotFoundError as e:
        raise _http_error(e)


@router.get(
    "/{subscription_id}",
    response_model=SubscriptionView,
    summary="Get subscription",
)
def get_subscription(subscription_id: str) -> SubscriptionView:
    try:
        return SubscriptionView.from_record(get_subscription_engine().get_subscription(subscription_id))
    except HANDLED_ERRORS as e:
        raise _http_error(e)


@router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionView,
    summary="Cancel subscription",
)
def cancel_subscription(
    subscription_id: str,
    request: Optional[CancelSubscriptionRequest] = None,
) -> SubscriptionView:
    """Cancel immediately, or turn off auto-renewal and keep access until the period ends.

    Cancelling an already cancelled subscription returns it unchanged.
    """
    request = request or CancelSubscriptionRequest()
    logger.info(
        "cancel_subscription_request",
        subscription_id=subscription_id,
        immediately=request.immediately,
    )

    try:
        subscription = get_subscription_engine().cancel_subscription(
            subscription_id,
            reason=request.reason,
            immediately=request.immediately,
            requested_by=request.subscriber_id,
        )
    except HANDLED_ERRORS as e:
        logger.warning("cancel_subscription_rejected", subscription_id=subscription_id, error=str(e))
        raise _http_error(e)

    return SubscriptionView.from_record(subscription)


@router.post(
    "/{subscription_id}/renew",
    response_model=SubscriptionResponse,
    summary="Renew subscription",
)
def renew_subscription(subscription_id: str) -> SubscriptionResponse:
    """Start a new paid period for a cancelled or expired subscription.

    Raises:
        402: Payment declined (the subscription returns to its previous status)
        409: Subscription cannot be renewed in its current state
    """
    logger.info("renew_subscription_request", subscription_id=subscription_id)

    try:
        result = get_subscription_engine().renew_subscription(subscription_id)
    except HANDLED_ERRORS as e:
        logger.warning("renew_subscription_rejected", subscription_id=subscription_id, error=str(e))
        raise _http_error(e)

    if result.payment is None:
        raise HTTPException(
            status_code=409,
            detail={"error": "Conflict", "message": "A renewal for this subscription is already in progress"},
        )
    if not result.payment.succeeded:
        raise _payment_required(result)

    return SubscriptionResponse.from_result(result, "Subscription renewed")


@router.post(
    "/{subscription_id}/payment-confirmation",
    response_model=SubscriptionResponse,
    summary="Confirm 3-D Secure payment",
)
def confirm_payment(subscription_id: str, request: PaymentConfirmationRequest) -> SubscriptionResponse:
    """Processor callback settling a purchase that required 3-D Secure."""
    logger.info(
        "payment_confirmation_request",
        subscription_id=subscription_id,
        external_payment_id=request.external_payment_id,
        succeeded=request.succeeded,
    )

    try:
        result = get_subscription_engine().confirm_payment(
            subscription_id,
            external_payment_id=request.external_payment_id,
            succeeded=request.succeeded,
            failure_reason=request.failure_reason,
        )
    except HANDLED_ERRORS as e:
        raise _http_error(e)

    if result.payment_failed:
        raise _payment_required(result)
    return SubscriptionResponse.from_result(result, "Payment confirmed")


@router.put(
    "/{subscription_id}/auto-renewal",
    response_model=SubscriptionView,
    summary="Toggle auto-renewal",
)
def set_auto_renewal(subscription_id: str, request: AutoRenewalRequest) -> SubscriptionView:
    try:
        subscription = get_subscription_engine().set_auto_renewal(subscription_id, request.auto_renewal)
    except HANDLED_ERRORS as e:
        raise _http_error(e)
    return SubscriptionView.from_record(subscription)
