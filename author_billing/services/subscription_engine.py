"""Subscription lifecycle state machine.

Responsibilities:
- Create subscriptions (trial or paid) and settle the initial charge
- Cancel immediately or at period end
- Renew manually (cancelled/expired) or on behalf of the sweeper (due active/trial)
- Expire subscriptions whose period ended
- Keep the author's subscriber_count in step with every transition

Gateway calls are made outside the store lock while the record sits in a
transitional state (pending, or active with a renewal claim). Every write goes
through SubscriptionStore.apply_transition, so a racing second operation sees
the already-transitioned record and becomes a no-op.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Union

from author_billing.config import Config, get_config
from author_billing.logging_config import get_logger
from author_billing.models import (
    COUNTED_STATUSES,
    TERMINAL_STATUSES,
    LifecycleEventType,
    PaymentOutcome,
    PaymentReference,
    PaymentStatus,
    PlanType,
    SubscriptionRecord,
    SubscriptionResult,
    SubscriptionStatus,
)
from author_billing.repositories.discount_repository import (
    DiscountRepository,
    get_discount_repository,
)
from author_billing.repositories.subscription_store import (
    DuplicateSubscriptionError,
    SubscriptionStore,
    get_subscription_store,
)
from author_billing.services.payment_gateway import (
    GatewayExecutor,
    PaymentGateway,
    create_payment_gateway,
)
from author_billing.utils import (
    add_duration,
    apply_discount,
    calculate_billing_period,
    generate_subscription_id,
    parse_plan_type,
    quantize_amount,
)

logger = get_logger(__name__)

REASON_PAYMENT_TIMEOUT = "payment_confirmation_timeout"
REASON_AUTH_REQUIRED = "authentication_required"


class SubscriptionError(Exception):
    """Base exception for subscription errors."""

    pass


class SubscriptionValidationError(SubscriptionError):
    """Raised for invalid input, before any state change."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SubscriptionConflictError(SubscriptionError):
    """Raised when an operation conflicts with existing subscription state."""

    pass


class DuplicateActiveSubscriptionError(SubscriptionConflictError):
    """Raised when the subscriber already holds a subscription to the author."""

    def __init__(self, message: str, existing_subscription_id: Optional[str] = None):
        super().__init__(message)
        self.existing_subscription_id = existing_subscription_id


class InvalidSubscriptionStateError(SubscriptionConflictError):
    """Raised when an operation is invalid for the current subscription state."""

    pass


class SubscriptionAccessError(SubscriptionError):
    """Raised when a caller acts on a subscription it does not own."""

    pass


class SubscriptionEngine:
    """Subscription lifecycle management engine.

    Integrates the store (persistence and counters), the payment gateway,
    discount codes, the clock and lifecycle event publishing.
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        payment_gateway: Optional[PaymentGateway] = None,
        discount_repository: Optional[DiscountRepository] = None,
        clock=None,
        config: Optional[Config] = None,
        event_dispatcher=None,
    ):
        """Initialize subscription engine.

        Args:
            subscription_store: Subscription storage (defaults to global instance)
            payment_gateway: Gateway to charge through (defaults to configured provider)
            discount_repository: Discount codes (defaults to global instance)
            clock: Object with now() returning an aware UTC datetime
                (defaults to the global time controller)
            config: Configuration (defaults to global config)
            event_dispatcher: Lifecycle event publisher (defaults to global instance)
        """
        self.config = config or get_config()
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        if discount_repository is None:
            discount_repository = DiscountRepository(config) if config else get_discount_repository()
        self.discounts = discount_repository

        gateway_settings = self.config.gateway_settings
        self.gateway = GatewayExecutor(
            payment_gateway or create_payment_gateway(self.config),
            timeout_seconds=gateway_settings.timeout_seconds,
            max_workers=gateway_settings.max_workers,
        )
        self._payment_system = gateway_settings.payment_system
        self._claim_ttl = timedelta(seconds=self.config.sweeper_settings.renewal_claim_ttl_seconds)

        self._clock = clock  # Lazy loaded to avoid circular import
        self._event_dispatcher = event_dispatcher  # Lazy loaded

        logger.info("subscription_engine_initialized", payment_system=self._payment_system)

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _get_clock(self):
        if self._clock is None:
            from author_billing.services.time_controller import get_time_controller

            self._clock = get_time_controller()
        return self._clock

    def _get_event_dispatcher(self):
        if self._event_dispatcher is None:
            from author_billing.services.event_dispatcher import get_event_dispatcher

            self._event_dispatcher = get_event_dispatcher()
        return self._event_dispatcher

    def now(self) -> datetime:
        return self._get_clock().now()

    def _publish_event(self, event_type: LifecycleEventType, subscription: SubscriptionRecord) -> None:
        """Publish a lifecycle event; never fails the committed transition."""
        try:
            self._get_event_dispatcher().publish(event_type, subscription, self.now())
        except Exception as e:
            logger.error(
                "event_publish_failed",
                event_type=event_type.value,
                subscription_id=subscription.subscription_id,
                error=str(e),
                exc_info=True,
            )

    def _charge(self, subscription: SubscriptionRecord, amount, off_session: bool = False) -> PaymentReference:
        """Charge outside the store lock and describe the attempt.

        Off-session charges (renewals) cannot complete a 3-D Secure
        challenge, so requires_action is recorded as a failure.
        """
        attempted_at = self.now()
        result = self.gateway.charge(amount, subscription.currency, subscription.payment_token)

        status = result.status
        failure_reason = result.failure_reason
        if off_session and status == PaymentStatus.REQUIRES_ACTION:
            status = PaymentStatus.FAILED
            failure_reason = REASON_AUTH_REQUIRED

        logger.info(
            "payment_charged",
            subscription_id=subscription.subscription_id,
            amount=str(amount),
            currency=subscription.currency,
            status=status.value,
            failure_reason=failure_reason,
            off_session=off_session,
        )
        return PaymentReference(
            external_payment_id=result.external_payment_id,
            payment_system=self._payment_system,
            amount=amount,
            currency=subscription.currency,
            status=status,
            captured=status == PaymentStatus.SUCCEEDED,
            failure_reason=failure_reason,
            redirect_url=result.redirect_url if status == PaymentStatus.REQUIRES_ACTION else None,
            attempted_at=attempted_at,
        )

    @staticmethod
    def _outcome(payment: PaymentReference) -> PaymentOutcome:
        return PaymentOutcome(
            status=payment.status,
            amount=payment.amount,
            external_payment_id=payment.external_payment_id,
            failure_reason=payment.failure_reason,
            redirect_url=payment.redirect_url,
        )

    def _claim_is_free(self, subscription: SubscriptionRecord, now: datetime) -> bool:
        claimed_at = subscription.renewal_claimed_at
        return claimed_at is None or claimed_at <= now - self._claim_ttl

    def _period(self, start: datetime, plan_type: PlanType):
        return calculate_billing_period(start, plan_type, self.config.lifetime_years)

    def _record_unsettled_payment(
        self, subscription_id: str, payment: PaymentReference, guard=None
    ) -> SubscriptionRecord:
        """Keep a captured payment whose transition lost a race.

        The subscription already moved on (cancelled, abandoned or reclaimed);
        the captured funds are still added to total_paid so revenue and the
        out-of-band refund check see them.
        """
        if payment.captured:
            logger.warning(
                "captured_payment_without_transition",
                subscription_id=subscription_id,
                external_payment_id=payment.external_payment_id,
                amount=str(payment.amount),
            )
            updated = self.store.apply_transition(
                subscription_id, frozenset(SubscriptionStatus), lambda s: s.record_payment(payment), guard=guard
            )
            if updated is not None:
                return updated
        return self.store.get(subscription_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _validate_create(
        self,
        subscriber_id: str,
        author_id: str,
        plan_type: Union[str, PlanType],
        payment_token: str,
    ) -> PlanType:
        for field, value in (
            ("subscriber_id", subscriber_id),
            ("author_id", author_id),
            ("payment_token", payment_token),
        ):
            if not isinstance(value, str) or not value.strip():
                raise SubscriptionValidationError(f"{field} is required", field=field)
        try:
            return parse_plan_type(plan_type)
        except ValueError as e:
            raise SubscriptionValidationError(str(e), field="plan_type") from e

    def create_subscription(
        self,
        subscriber_id: str,
        author_id: str,
        plan_type: Union[str, PlanType],
        payment_token: str,
        discount_code: Optional[str] = None,
        with_trial: bool = False,
    ) -> SubscriptionResult:
        """Create a subscription and settle its first charge.

        Args:
            subscriber_id: Reader identity
            author_id: Author identity
            plan_type: monthly, yearly or lifetime
            payment_token: Opaque payment method token
            discount_code: Optional code discounting the first charge
            with_trial: Start with the author's free trial when eligible

        Returns:
            SubscriptionResult with the final record and the payment outcome
            (active on success, cancelled on decline, pending when 3-D Secure
            is required, trial without payment)

        Raises:
            SubscriptionValidationError: If input is invalid
            AuthorNotFoundError: If the author does not exist
            DuplicateActiveSubscriptionError: If the pair already holds a subscription
        """
        plan = self._validate_create(subscriber_id, author_id, plan_type, payment_token)
        author = self.store.get_author(author_id)
        now = self.now()

        trial = bool(
            with_trial
            and author.trial_period
            and not self.store.has_prior_subscription(subscriber_id, author_id)
        )
        if with_trial and not trial:
            logger.info(
                "trial_not_eligible",
                subscriber_id=subscriber_id,
                author_id=author_id,
                has_trial_period=bool(author.trial_period),
            )

        discount = None
        if trial:
            if discount_code:
                logger.info("discount_code_ignored_for_trial", discount_code=discount_code, author_id=author_id)
        else:
            discount = self.discounts.resolve(discount_code, author_id, now)

        record = SubscriptionRecord(
            subscription_id=generate_subscription_id(self.config.id_prefix),
            subscriber_id=subscriber_id,
            author_id=author_id,
            plan_type=plan,
            price=quantize_amount(author.price_for(plan)),
            currency=self.config.currency,
            discount_percent=discount.percent if discount else None,
            discount_code=discount.code if discount else None,
            status=SubscriptionStatus.TRIAL if trial else SubscriptionStatus.PENDING,
            payment_token=payment_token,
            created_at=now,
            updated_at=now,
        )
        record.started_at = now
        if trial:
            trial_end = add_duration(now, author.trial_period)
            record.expires_at = trial_end
            record.next_billing_date = trial_end
            record.trial_expires_at = trial_end
        else:
            # The paid period runs from the purchase, however late 3-D Secure settles it
            period = self._period(now, plan)
            record.expires_at = period.expires_at
            record.next_billing_date = period.next_billing_date

        try:
            stored = self.store.insert(record)
        except DuplicateSubscriptionError as e:
            logger.warning(
                "duplicate_subscription_rejected",
                subscriber_id=subscriber_id,
                author_id=author_id,
                existing_subscription_id=e.existing_subscription_id,
            )
            raise DuplicateActiveSubscriptionError(
                f"Subscriber {subscriber_id} already has a subscription to author {author_id}",
                existing_subscription_id=e.existing_subscription_id,
            ) from e

        logger.info(
            "subscription_created",
            subscription_id=stored.subscription_id,
            subscriber_id=subscriber_id,
            author_id=author_id,
            plan_type=plan.value,
            price=str(stored.price),
            status=stored.status.value,
            discount_code=stored.discount_code,
        )

        if trial:
            self._publish_event(LifecycleEventType.TRIAL_STARTED, stored)
            return SubscriptionResult(subscription=stored, payment=None)

        amount = apply_discount(stored.price, stored.discount_percent)
        payment = self._charge(stored, amount)
        return self._settle_initial_charge(stored, payment)

    def _settle_initial_charge(self, subscription: SubscriptionRecord, payment: PaymentReference) -> SubscriptionResult:
        """Move a pending purchase to active, cancelled, or keep it pending for 3-D Secure."""
        now = self.now()

        if payment.status == PaymentStatus.SUCCEEDED:

            def mutate(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                s.set_period(s.started_at, s.expires_at, s.next_billing_date, reason="purchase")
                s.set_status(SubscriptionStatus.ACTIVE, reason="payment_succeeded")
                s.updated_at = now

            event_type = LifecycleEventType.ACTIVATED

        elif payment.status == PaymentStatus.REQUIRES_ACTION:

            def mutate(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                s.updated_at = now

            event_type = LifecycleEventType.PAYMENT_ACTION_REQUIRED

        else:

            def mutate(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                s.set_status(SubscriptionStatus.CANCELLED, reason="payment_failed")
                s.set_auto_renewal(False, reason="payment_failed")
                s.cancelled_at = now
                s.cancellation_reason = f"payment_failed: {payment.failure_reason}"
                s.updated_at = now

            event_type = LifecycleEventType.PAYMENT_FAILED

        updated = self.store.apply_transition(
            subscription.subscription_id,
            {SubscriptionStatus.PENDING},
            mutate,
            guard=lambda s: s.renewal_from_status is None,
        )
        if updated is None:
            # Abandoned while the charge was in flight
            updated = self._record_unsettled_payment(subscription.subscription_id, payment)
        else:
            self._publish_event(event_type, updated)

        return SubscriptionResult(subscription=updated, payment=self._outcome(payment))

    def confirm_payment(
        self,
        subscription_id: str,
        external_payment_id: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
    ) -> SubscriptionResult:
        """Settle a purchase that was waiting on 3-D Secure.

        Repeated callbacks for the same payment return the settled state. A
        success arriving after the purchase was abandoned is kept as captured
        funds without reactivating it.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            SubscriptionValidationError: If the payment ID is not the one awaited
            InvalidSubscriptionStateError: If no confirmation is awaited
        """
        subscription = self.store.get(subscription_id)
        last = subscription.last_payment
        if last is None or last.external_payment_id != external_payment_id:
            raise SubscriptionValidationError(
                f"Payment {external_payment_id} does not belong to subscription {subscription_id}",
                field="external_payment_id",
            )

        if subscription.status != SubscriptionStatus.PENDING:
            if succeeded and last.status == PaymentStatus.REQUIRES_ACTION:
                # Captured after the purchase was abandoned
                captured = last.model_copy(
                    update={
                        "status": PaymentStatus.SUCCEEDED,
                        "captured": True,
                        "redirect_url": None,
                        "attempted_at": self.now(),
                    }
                )
                updated = self._record_unsettled_payment(
                    subscription_id,
                    captured,
                    guard=lambda s: s.last_payment is not None
                    and s.last_payment.external_payment_id == external_payment_id
                    and s.last_payment.status == PaymentStatus.REQUIRES_ACTION,
                )
                return SubscriptionResult(subscription=updated, payment=self._outcome(captured))
            logger.info(
                "payment_confirmation_duplicate",
                subscription_id=subscription_id,
                external_payment_id=external_payment_id,
                status=subscription.status.value,
            )
            return SubscriptionResult(subscription=subscription, payment=self._outcome(last))

        if last.status != PaymentStatus.REQUIRES_ACTION:
            raise InvalidSubscriptionStateError(f"Subscription {subscription_id} is not awaiting confirmation")

        payment = last.model_copy(
            update={
                "status": PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED,
                "captured": succeeded,
                "failure_reason": None if succeeded else (failure_reason or "authentication_failed"),
                "redirect_url": None,
                "attempted_at": self.now(),
            }
        )
        return self._settle_initial_charge(subscription, payment)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel_subscription(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        immediately: bool = False,
        requested_by: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Cancel a subscription now or at the end of the paid period.

        Args:
            subscription_id: Subscription to cancel
            reason: Free-text cancellation reason
            immediately: End access now (counter -1) instead of turning off
                auto-renewal and letting the sweeper expire it
            requested_by: Caller identity; must match the subscriber when given

        Returns:
            Updated subscription (unchanged if already cancelled)

        Raises:
            SubscriptionNotFoundError: If subscription not found
            SubscriptionAccessError: If requested_by is not the subscriber
            InvalidSubscriptionStateError: If pending or expired
        """
        subscription = self.store.get(subscription_id)

        if requested_by is not None and requested_by != subscription.subscriber_id:
            logger.warning(
                "cancel_access_denied",
                subscription_id=subscription_id,
                requested_by=requested_by,
            )
            raise SubscriptionAccessError(f"Subscription {subscription_id} does not belong to {requested_by}")

        if subscription.status == SubscriptionStatus.CANCELLED:
            logger.info("subscription_already_cancelled", subscription_id=subscription_id)
            return subscription

        if subscription.status not in COUNTED_STATUSES:
            raise InvalidSubscriptionStateError(
                f"Cannot cancel subscription in {subscription.status.value} state"
            )

        now = self.now()
        if immediately:

            def mutate(s: SubscriptionRecord) -> None:
                s.set_status(SubscriptionStatus.CANCELLED, reason="cancelled_immediately")
                s.set_auto_renewal(False, reason="cancelled")
                s.cancelled_at = now
                s.cancellation_reason = reason
                s.renewal_claimed_at = None
                s.updated_at = now

            event_type = LifecycleEventType.CANCELLED
        else:

            def mutate(s: SubscriptionRecord) -> None:
                s.set_auto_renewal(False, reason="cancel_at_period_end")
                s.cancellation_reason = reason
                s.updated_at = now

            event_type = LifecycleEventType.CANCEL_SCHEDULED

        updated = self.store.apply_transition(subscription_id, COUNTED_STATUSES, mutate)
        if updated is None:
            current = self.store.get(subscription_id)
            if current.status == SubscriptionStatus.CANCELLED:
                return current
            raise InvalidSubscriptionStateError(
                f"Cannot cancel subscription in {current.status.value} state"
            )

        logger.info(
            "subscription_cancelled",
            subscription_id=subscription_id,
            immediately=immediately,
            reason=reason,
            expires_at=updated.expires_at.isoformat() if updated.expires_at else None,
        )
        self._publish_event(event_type, updated)
        return updated

    # ------------------------------------------------------------------
    # Renew
    # ------------------------------------------------------------------

    def renew_subscription(self, subscription_id: str) -> SubscriptionResult:
        """Start a new paid period.

        Cancelled and expired subscriptions are reactivated on explicit request.
        Active and trial subscriptions are renewed once their period has ended
        and auto-renewal is on (the sweeper path); the counter is unchanged.

        Returns:
            SubscriptionResult; a renewal already in flight elsewhere returns
            the current record with payment None

        Raises:
            SubscriptionNotFoundError: If subscription not found
            AuthorNotFoundError: If the author no longer exists (manual path)
            InvalidSubscriptionStateError: If pending, not due, or auto-renewal is off
            DuplicateActiveSubscriptionError: If the pair already holds another subscription
        """
        subscription = self.store.get(subscription_id)
        now = self.now()

        if subscription.status in TERMINAL_STATUSES:
            return self._renew_manually(subscription)

        if subscription.status in COUNTED_STATUSES:
            if not subscription.auto_renewal:
                raise InvalidSubscriptionStateError(
                    f"Subscription {subscription_id} has auto-renewal turned off"
                )
            if subscription.expires_at > now:
                raise InvalidSubscriptionStateError(
                    f"Subscription {subscription_id} is not due for renewal until "
                    f"{subscription.expires_at.isoformat()}"
                )
            return self._renew_due(subscription, now)

        raise InvalidSubscriptionStateError(
            f"Cannot renew subscription in {subscription.status.value} state"
        )

    def _renew_manually(self, subscription: SubscriptionRecord) -> SubscriptionResult:
        subscription_id = subscription.subscription_id
        author = self.store.get_author(subscription.author_id)
        price = quantize_amount(author.price_for(subscription.plan_type))
        claimed_at = self.now()

        def claim(s: SubscriptionRecord) -> None:
            s.renewal_from_status = s.status
            s.set_status(SubscriptionStatus.PENDING, reason="manual_renewal")
            s.updated_at = claimed_at

        try:
            claimed = self.store.apply_transition(subscription_id, TERMINAL_STATUSES, claim)
        except DuplicateSubscriptionError as e:
            raise DuplicateActiveSubscriptionError(
                f"Subscriber {subscription.subscriber_id} already has a subscription "
                f"to author {subscription.author_id}",
                existing_subscription_id=e.existing_subscription_id,
            ) from e
        if claimed is None:
            raise SubscriptionConflictError(f"Subscription {subscription_id} changed state during renewal")

        payment = self._charge(claimed, price, off_session=True)
        now = self.now()

        if payment.captured:
            period = self._period(now, claimed.plan_type)

            def settle(s: SubscriptionRecord) -> None:
                s.price = price
                s.record_payment(payment)
                s.renewal_count += 1
                s.set_period(now, period.expires_at, period.next_billing_date, reason="manual_renewal")
                s.set_status(SubscriptionStatus.ACTIVE, reason="renewal_succeeded")
                s.set_auto_renewal(True, reason="manual_renewal")
                s.cancelled_at = None
                s.cancellation_reason = None
                s.renewal_from_status = None
                s.updated_at = now

            event_type = LifecycleEventType.RENEWED
        else:

            def settle(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                s.set_status(
                    s.renewal_from_status or SubscriptionStatus.EXPIRED,
                    reason=f"renewal_failed: {payment.failure_reason}",
                )
                s.renewal_from_status = None
                s.updated_at = now

            event_type = LifecycleEventType.RENEWAL_FAILED

        updated = self.store.apply_transition(
            subscription_id,
            {SubscriptionStatus.PENDING},
            settle,
            guard=lambda s: s.renewal_from_status is not None,
        )
        if updated is None:
            updated = self._record_unsettled_payment(subscription_id, payment)
        else:
            logger.info(
                "subscription_renewed" if payment.captured else "subscription_renewal_failed",
                subscription_id=subscription_id,
                manual=True,
                status=updated.status.value,
                price=str(price),
            )
            self._publish_event(event_type, updated)

        return SubscriptionResult(subscription=updated, payment=self._outcome(payment))

    def _renew_due(self, subscription: SubscriptionRecord, now: datetime) -> SubscriptionResult:
        subscription_id = subscription.subscription_id

        def due(s: SubscriptionRecord) -> bool:
            return s.auto_renewal and s.expires_at <= now and self._claim_is_free(s, now)

        def claim(s: SubscriptionRecord) -> None:
            s.renewal_claimed_at = now
            s.updated_at = now

        claimed = self.store.apply_transition(subscription_id, COUNTED_STATUSES, claim, guard=due)
        if claimed is None:
            logger.info("renewal_skipped", subscription_id=subscription_id)
            return SubscriptionResult(subscription=self.store.get(subscription_id), payment=None)

        was_trial = claimed.status == SubscriptionStatus.TRIAL
        payment = self._charge(claimed, claimed.price, off_session=True)
        settled_at = self.now()

        if payment.captured:
            period = self._period(settled_at, claimed.plan_type)

            def settle(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                if not was_trial:
                    s.renewal_count += 1
                s.set_period(
                    settled_at,
                    period.expires_at,
                    period.next_billing_date,
                    reason="trial_conversion" if was_trial else "renewal",
                )
                s.set_status(SubscriptionStatus.ACTIVE, reason="trial_converted" if was_trial else "renewal_succeeded")
                s.renewal_claimed_at = None
                s.updated_at = settled_at

            event_type = LifecycleEventType.ACTIVATED if was_trial else LifecycleEventType.RENEWED
        else:

            def settle(s: SubscriptionRecord) -> None:
                s.record_payment(payment)
                s.set_status(SubscriptionStatus.EXPIRED, reason=f"renewal_failed: {payment.failure_reason}")
                s.renewal_claimed_at = None
                s.updated_at = settled_at

            event_type = LifecycleEventType.RENEWAL_FAILED

        updated = self.store.apply_transition(
            subscription_id,
            COUNTED_STATUSES,
            settle,
            guard=lambda s: s.renewal_claimed_at == now,
        )
        if updated is None:
            # Cancelled immediately or reclaimed while the charge was in flight
            updated = self._record_unsettled_payment(subscription_id, payment)
        else:
            logger.info(
                "subscription_renewed" if payment.captured else "subscription_renewal_failed",
                subscription_id=subscription_id,
                manual=False,
                status=updated.status.value,
                renewal_count=updated.renewal_count,
            )
            self._publish_event(event_type, updated)

        return SubscriptionResult(subscription=updated, payment=self._outcome(payment))

    # ------------------------------------------------------------------
    # Expire / abandon
    # ------------------------------------------------------------------

    def expire_subscription(self, subscription_id: str) -> SubscriptionRecord:
        """End a subscription whose period has passed (counter -1).

        Already expired or cancelled subscriptions are returned unchanged, as
        are subscriptions with a renewal charge in flight.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            InvalidSubscriptionStateError: If pending or not yet due
        """
        subscription = self.store.get(subscription_id)
        if subscription.status in TERMINAL_STATUSES:
            logger.debug("expire_skipped", subscription_id=subscription_id, status=subscription.status.value)
            return subscription
        if subscription.status == SubscriptionStatus.PENDING:
            raise InvalidSubscriptionStateError(f"Cannot expire pending subscription {subscription_id}")

        now = self.now()
        if subscription.expires_at > now:
            raise InvalidSubscriptionStateError(
                f"Subscription {subscription_id} does not expire until {subscription.expires_at.isoformat()}"
            )

        def mutate(s: SubscriptionRecord) -> None:
            s.set_status(SubscriptionStatus.EXPIRED, reason="period_ended")
            s.renewal_claimed_at = None
            s.updated_at = now

        updated = self.store.apply_transition(
            subscription_id,
            COUNTED_STATUSES,
            mutate,
            guard=lambda s: s.expires_at <= now and self._claim_is_free(s, now),
        )
        if updated is None:
            return self.store.get(subscription_id)

        logger.info("subscription_expired", subscription_id=subscription_id, author_id=updated.author_id)
        self._publish_event(LifecycleEventType.EXPIRED, updated)
        return updated

    def abandon_pending(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        """Give up on a pending subscription whose payment never settled.

        Purchases are cancelled; interrupted manual renewals return to the
        status they were renewed from.

        Returns:
            Updated subscription, or None if it is no longer stale and pending
        """
        now = self.now()
        cutoff = now - timedelta(minutes=self.config.sweeper_settings.pending_timeout_minutes)

        def mutate(s: SubscriptionRecord) -> None:
            if s.renewal_from_status is not None:
                s.set_status(s.renewal_from_status, reason=REASON_PAYMENT_TIMEOUT)
                s.renewal_from_status = None
            else:
                s.set_status(SubscriptionStatus.CANCELLED, reason=REASON_PAYMENT_TIMEOUT)
                s.set_auto_renewal(False, reason=REASON_PAYMENT_TIMEOUT)
                s.cancelled_at = now
                s.cancellation_reason = REASON_PAYMENT_TIMEOUT
            s.updated_at = now

        updated = self.store.apply_transition(
            subscription_id,
            {SubscriptionStatus.PENDING},
            mutate,
            guard=lambda s: s.updated_at < cutoff,
        )
        if updated is None:
            return None

        logger.info("pending_subscription_abandoned", subscription_id=subscription_id, status=updated.status.value)
        self._publish_event(LifecycleEventType.PAYMENT_FAILED, updated)
        return updated

    # ------------------------------------------------------------------
    # Settings and reads
    # ------------------------------------------------------------------

    def set_auto_renewal(self, subscription_id: str, enabled: bool) -> SubscriptionRecord:
        """Turn auto-renewal on or off for an active or trial subscription.

        Raises:
            SubscriptionNotFoundError: If subscription not found
            InvalidSubscriptionStateError: If not active or trial
        """
        now = self.now()

        def mutate(s: SubscriptionRecord) -> None:
            s.set_auto_renewal(enabled, reason="subscriber_request")
            if enabled:
                s.cancellation_reason = None
            s.updated_at = now

        updated = self.store.apply_transition(subscription_id, COUNTED_STATUSES, mutate)
        if updated is None:
            current = self.store.get(subscription_id)
            raise InvalidSubscriptionStateError(
                f"Cannot change auto-renewal in {current.status.value} state"
            )
        if not enabled:
            self._publish_event(LifecycleEventType.CANCEL_SCHEDULED, updated)
        return updated

    def get_subscription(self, subscription_id: str) -> SubscriptionRecord:
        """Get subscription by ID.

        Raises:
            SubscriptionNotFoundError: If subscription not found
        """
        return self.store.get(subscription_id)

    def get_subscriber_subscriptions(
        self, subscriber_id: str, status: Optional[SubscriptionStatus] = None
    ) -> List[SubscriptionRecord]:
        """Get a subscriber's subscriptions, newest first."""
        return self.store.get_by_subscriber(subscriber_id, status)

    def get_author_subscribers(
        self, author_id: str, status: Optional[SubscriptionStatus] = SubscriptionStatus.ACTIVE
    ) -> List[SubscriptionRecord]:
        """Get an author's subscriptions (active by default).

        Raises:
            AuthorNotFoundError: If author not found
        """
        self.store.get_author(author_id)
        return self.store.get_by_author(author_id, status)

    def get_access_subscription(self, subscriber_id: str, author_id: str) -> Optional[SubscriptionRecord]:
        """Subscription currently granting the subscriber access to the author, if any."""
        holding = self.store.find_holding(subscriber_id, author_id)
        if holding is None or not holding.is_counted:
            return None
        if holding.expires_at is None or holding.expires_at <= self.now():
            return None
        return holding

    def has_access(self, subscriber_id: str, author_id: str) -> bool:
        """Check whether the subscriber may read the author's paid content now."""
        return self.get_access_subscription(subscriber_id, author_id) is not None

    def shutdown(self) -> None:
        self.gateway.shutdown()


_engine_instance: Optional[SubscriptionEngine] = None


def get_subscription_engine() -> SubscriptionEngine:
    """Get global subscription engine instance (singleton)."""
    global _engine_instance
    if _engine_instance is None:
        _engine_instance = SubscriptionEngine()
    return _engine_instance


def reset_subscription_engine() -> None:
    """Drop the global engine so the next call rebuilds it."""
    global _engine_instance
    if _engine_instance is not None:
        _engine_instance.shutdown()
    _engine_instance = None
