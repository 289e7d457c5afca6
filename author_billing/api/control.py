"""Control API for operators and test orchestration.

Implements:
- POST /control/time/advance - Fast-forward virtual time and sweep
- POST /control/time/set - Jump virtual time to an instant and sweep
- POST /control/time/reset - Return to real time
- POST /control/sweep - Run one expiration sweep now
- POST /control/reconcile - Recompute subscriber counts
- PUT /control/authors/{author_id} - Create an author or change its prices
- GET /control/status - Service status and statistics
- POST /control/reset - Reset all state
"""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from author_billing.config import get_config
from author_billing.logging_config import get_logger
from author_billing.models import (
    AdvanceTimeRequest,
    AuthorDefinition,
    AuthorPricingRequest,
    AuthorRecord,
    ReconcileResponse,
    ResetResponse,
    SetTimeRequest,
    StatusResponse,
    SweepReport,
    TimeResponse,
)
from author_billing.repositories.subscription_store import get_subscription_store
from author_billing.services.expiration_sweeper import get_expiration_sweeper
from author_billing.services.time_controller import get_time_controller

logger = get_logger(__name__)
router = APIRouter(tags=["Control API"], prefix="/control")


@router.post(
    "/time/advance",
    response_model=TimeResponse,
    summary="Advance virtual time",
)
def advance_time(request: AdvanceTimeRequest) -> TimeResponse:
    """Advance virtual time, then sweep what became due.

    Renewals, expirations and abandoned purchases at the new time are
    processed before the response is returned.

    Raises:
        400: Invalid time parameters
    """
    logger.info(
        "advance_time_request",
        days=request.days,
        hours=request.hours,
        minutes=request.minutes,
    )

    try:
        result = get_time_controller().advance_time(
            days=request.days or 0, hours=request.hours or 0, minutes=request.minutes or 0
        )
    except ValueError as e:
        logger.error("invalid_time_request", error=str(e))
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid request",
                "message": str(e),
            },
        )

    report: SweepReport = result["sweep"]
    logger.info(
        "advance_time_success",
        previous_time=result["old_time"].isoformat(),
        current_time=result["new_time"].isoformat(),
        processed=report.processed if report else 0,
    )

    return TimeResponse(
        previous_time=result["old_time"],
        current_time=result["new_time"],
        sweep=report,
        message=f"Advanced time by {request.days or 0} days, {request.hours or 0} hours, {request.minutes or 0} minutes",
    )


@router.post(
    "/time/set",
    response_model=TimeResponse,
    summary="Set virtual time",
)
def set_time(request: SetTimeRequest) -> TimeResponse:
    """Move virtual time forward to an absolute instant, then sweep.

    Raises:
        400: Instant is in the virtual past
    """
    logger.info("set_time_request", instant=request.instant.isoformat())

    try:
        result = get_time_controller().set_time(request.instant)
    except ValueError as e:
        logger.error("invalid_time_request", error=str(e))
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Invalid request",
                "message": str(e),
            },
        )

    return TimeResponse(
        previous_time=result["old_time"],
        current_time=result["new_time"],
        sweep=result["sweep"],
        message=f"Time set to {result['new_time'].isoformat()}",
    )


@router.post(
    "/time/reset",
    response_model=TimeResponse,
    summary="Reset to real time",
)
def reset_time() -> TimeResponse:
    logger.info("reset_time_request")
    result = get_time_controller().reset_time()
    return TimeResponse(
        previous_time=result["old_time"],
        current_time=result["new_time"],
        message="Time reset to real current time",
    )


@router.post(
    "/sweep",
    response_model=SweepReport,
    summary="Run expiration sweep",
)
def run_sweep() -> SweepReport:
    """Run one sweep at the current virtual time."""
    logger.info("sweep_request")
    return get_expiration_sweeper().sweep()


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile subscriber counts",
)
def reconcile() -> ReconcileResponse:
    """Recompute every author's subscriber_count from the subscription rows."""
    logger.info("reconcile_request")
    discrepancies = get_expiration_sweeper().reconcile()
    return ReconcileResponse(
        corrected=len(discrepancies),
        discrepancies=[d.model_dump() for d in discrepancies],
    )


@router.put(
    "/authors/{author_id}",
    response_model=AuthorRecord,
    summary="Create or reprice author",
)
def upsert_author(author_id: str, request: AuthorPricingRequest) -> AuthorRecord:
    """Create an author or replace its list prices.

    Existing subscriptions keep their price; new subscriptions and manual
    renewals are charged the new price. The subscriber count is kept.

    Raises:
        422: Invalid trial period
    """
    logger.info("upsert_author_request", author_id=author_id)

    try:
        definition = AuthorDefinition(author_id=author_id, **request.model_dump())
    except ValidationError as e:
        logger.warning("invalid_author_pricing", author_id=author_id, error=str(e))
        raise HTTPException(
            status_code=422,
            detail={
                "error": "Validation failed",
                "message": str(e),
                "field": "trial_period",
            },
        )

    store = get_subscription_store()
    if store.find_author(author_id) is None:
        author = store.upsert_author(AuthorRecord(**definition.model_dump()))
        logger.info("author_created", author_id=author_id)
    else:
        author = store.update_author_pricing(author_id, **definition.model_dump(exclude={"author_id"}))
    return author


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Get service status",
)
def get_status() -> StatusResponse:
    """Current virtual time, sweeper state and store statistics."""
    logger.debug("get_status_request")

    time_controller = get_time_controller()
    return StatusResponse(
        status="running",
        current_time=time_controller.now(),
        time_offset_seconds=time_controller.offset.total_seconds(),
        time_frozen=time_controller.is_frozen,
        sweeper_running=get_expiration_sweeper().running,
        statistics=get_subscription_store().get_statistics(),
    )


@router.post(
    "/reset",
    response_model=ResetResponse,
    summary="Reset all state",
)
def reset_state() -> ResetResponse:
    """Reset all service state.

    This clears all subscriptions and authors, re-seeds authors from the
    configuration and returns to real time. Useful between test runs.
    """
    logger.info("reset_state_request")

    try:
        store = get_subscription_store()
        subscriptions_count = store.get_statistics()["total_subscriptions"]

        store.clear()
        authors_seeded = store.seed_authors(get_config().authors)
        get_time_controller().reset_time()

        logger.info(
            "reset_state_success",
            subscriptions_deleted=subscriptions_count,
            authors_seeded=authors_seeded,
        )

        return ResetResponse(
            subscriptions_deleted=subscriptions_count,
            authors_seeded=authors_seeded,
            time_reset=True,
            message="Billing state reset successfully",
        )
    except Exception as e:
        logger.error("reset_state_failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail={
                "error": "Internal error",
                "message": str(e),
            },
        )
