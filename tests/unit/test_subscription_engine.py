"""Unit tests for SubscriptionEngine service."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from author_billing.models import LifecycleEventType, PaymentStatus, PlanType, SubscriptionStatus
from author_billing.repositories.subscription_store import AuthorNotFoundError, SubscriptionNotFoundError, SubscriptionStore
from author_billing.services.revenue_accountant import RevenueAccountant
from author_billing.services.subscription_engine import (
    REASON_AUTH_REQUIRED,
    REASON_PAYMENT_TIMEOUT,
    DuplicateActiveSubscriptionError,
    InvalidSubscriptionStateError,
    SubscriptionAccessError,
    SubscriptionEngine,
    SubscriptionValidationError,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def published_types(events):
    return [call.args[0] for call in events.publish.call_args_list]


def subscriber_count(store, author_id="author-1") -> int:
    return store.get_author(author_id).subscriber_count


@pytest.fixture
def active(engine):
    """Paid monthly subscription to author-1 created at 2024-01-15T10:00Z."""
    return engine.create_subscription("reader-1", "author-1", "monthly", "pm_card_visa").subscription


class TestCreateSubscription:
    """Tests for subscription creation and the initial charge."""

    def test_monthly_purchase_activates(self, engine, store, gateway):
        """Test a successful monthly purchase."""
        result = engine.create_subscription("reader-1", "author-1", PlanType.MONTHLY, "pm_card_visa")
        subscription = result.subscription

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.price == Decimal("500.00")
        assert subscription.currency == "RUB"
        assert subscription.started_at == utc(2024, 1, 15, 10, 0)
        assert subscription.expires_at == utc(2024, 2, 15, 10, 0)
        assert subscription.next_billing_date == subscription.expires_at
        assert subscription.auto_renewal is True
        assert subscription.total_paid == Decimal("500.00")
        assert subscription.renewal_count == 0
        assert subscription.subscription_id.startswith("sub_")

        assert result.payment.status == PaymentStatus.SUCCEEDED
        assert result.payment.amount == Decimal("500.00")
        assert gateway.calls == [(Decimal("500.00"), "RUB", "pm_card_visa")]
        assert subscriber_count(store) == 1

    def test_yearly_purchase(self, engine):
        """Test yearly plans use the yearly price and a one-year period."""
        subscription = engine.create_subscription("reader-1", "author-1", "yearly", "pm").subscription

        assert subscription.price == Decimal("5000.00")
        assert subscription.expires_at == utc(2025, 1, 15, 10, 0)

    def test_lifetime_purchase(self, engine):
        """Test lifetime plans expire far in the future with no next billing date."""
        subscription = engine.create_subscription("reader-1", "author-1", "lifetime", "pm").subscription

        assert subscription.price == Decimal("20000.00")
        assert subscription.expires_at == utc(2124, 1, 15, 10, 0)
        assert subscription.next_billing_date is None

    def test_plan_without_own_price_uses_monthly_price(self, engine):
        """Test an author without a yearly price charges the monthly price."""
        subscription = engine.create_subscription("reader-1", "author-2", "yearly", "pm").subscription

        assert subscription.price == Decimal("300.00")

    def test_declined_payment_cancels(self, engine, store, gateway):
        """Test a declined first charge leaves a cancelled subscription."""
        gateway.decline("card_declined")

        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm")
        subscription = result.subscription

        assert result.payment_failed
        assert result.payment.failure_reason == "card_declined"
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.auto_renewal is False
        assert subscription.cancellation_reason == "payment_failed: card_declined"
        assert subscription.total_paid == Decimal("0")
        assert subscriber_count(store) == 0

    def test_gateway_exception_fails_closed(self, engine, store, gateway):
        """Test a gateway error is treated as a failed payment."""
        gateway.raise_error(RuntimeError("connection reset"))

        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm")

        assert result.payment.failure_reason == "gateway_error"
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert subscriber_count(store) == 0

    def test_requires_action_stays_pending(self, engine, store, gateway):
        """Test a 3-D Secure challenge keeps the subscription pending."""
        gateway.require_action()

        result = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")

        assert result.subscription.status == SubscriptionStatus.PENDING
        assert result.payment.status == PaymentStatus.REQUIRES_ACTION
        assert result.payment.redirect_url.startswith("https://pay.example.com/3ds/")
        assert subscriber_count(store) == 0

    def test_duplicate_subscription_rejected(self, engine, gateway, active):
        """Test a second subscription to the same author is rejected before charging."""
        with pytest.raises(DuplicateActiveSubscriptionError) as exc_info:
            engine.create_subscription("reader-1", "author-1", "yearly", "pm")

        assert exc_info.value.existing_subscription_id == active.subscription_id
        assert len(gateway.calls) == 1

    def test_pending_subscription_blocks_duplicate(self, engine, gateway):
        """Test a purchase awaiting confirmation holds the pair."""
        gateway.require_action()
        engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")

        with pytest.raises(DuplicateActiveSubscriptionError):
            engine.create_subscription("reader-1", "author-1", "monthly", "pm")

    def test_resubscribe_after_failed_payment(self, engine, gateway):
        """Test a cancelled purchase does not block a new one."""
        gateway.decline()
        engine.create_subscription("reader-1", "author-1", "monthly", "decline_card")

        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm")

        assert result.subscription.status == SubscriptionStatus.ACTIVE

    def test_same_reader_different_authors(self, engine, store):
        """Test one reader may subscribe to several authors."""
        engine.create_subscription("reader-1", "author-1", "monthly", "pm")
        engine.create_subscription("reader-1", "author-2", "monthly", "pm")

        assert subscriber_count(store, "author-1") == 1
        assert subscriber_count(store, "author-2") == 1

    def test_unknown_author(self, engine, store):
        """Test subscribing to an unknown author fails without creating anything."""
        with pytest.raises(AuthorNotFoundError):
            engine.create_subscription("reader-1", "author-404", "monthly", "pm")

        assert store.count() == 0

    @pytest.mark.parametrize(
        "field,kwargs",
        [
            ("subscriber_id", {"subscriber_id": "  "}),
            ("author_id", {"author_id": ""}),
            ("payment_token", {"payment_token": ""}),
            ("plan_type", {"plan_type": "weekly"}),
        ],
    )
    def test_invalid_input(self, engine, gateway, field, kwargs):
        """Test invalid input is rejected before any side effect."""
        args = {"subscriber_id": "reader-1", "author_id": "author-1", "plan_type": "monthly", "payment_token": "pm"}
        args.update(kwargs)

        with pytest.raises(SubscriptionValidationError) as exc_info:
            engine.create_subscription(**args)

        assert exc_info.value.field == field
        assert gateway.calls == []


class TestDiscounts:
    """Tests for discount codes on the first charge."""

    def test_discount_applies_to_first_charge(self, engine, gateway):
        """Test the discounted amount is charged while the recurring price stays."""
        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm", discount_code="welcome10")
        subscription = result.subscription

        assert gateway.calls[0][0] == Decimal("450.00")
        assert subscription.price == Decimal("500.00")
        assert subscription.total_paid == Decimal("450.00")
        assert subscription.discount_percent == Decimal("10")
        assert subscription.discount_code == "WELCOME10"

    def test_author_restricted_code(self, engine, gateway):
        """Test a code restricted to another author is ignored."""
        engine.create_subscription("reader-1", "author-2", "monthly", "pm", discount_code="ANNA50")

        assert gateway.calls[0][0] == Decimal("300.00")

    @pytest.mark.parametrize("code", ["SPRING2024", "NEWYEAR", "NOSUCHCODE"])
    def test_unusable_codes_charge_full_price(self, engine, gateway, code):
        """Test inactive, expired and unknown codes fall back to full price."""
        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm", discount_code=code)

        assert gateway.calls[0][0] == Decimal("500.00")
        assert result.subscription.discount_percent is None


class TestTrial:
    """Tests for free trials."""

    def test_trial_starts_without_charge(self, engine, store, gateway, events):
        """Test an eligible reader starts a trial without being charged."""
        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm", with_trial=True)
        subscription = result.subscription

        assert result.payment is None
        assert gateway.calls == []
        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.trial_expires_at == utc(2024, 1, 29, 10, 0)
        assert subscription.expires_at == subscription.trial_expires_at
        assert subscription.total_paid == Decimal("0")
        assert subscriber_count(store) == 1
        assert published_types(events) == [LifecycleEventType.TRIAL_STARTED]

    def test_trial_ignores_discount(self, engine):
        """Test discount codes are not recorded on trials."""
        subscription = engine.create_subscription(
            "reader-1", "author-1", "monthly", "pm", discount_code="WELCOME10", with_trial=True
        ).subscription

        assert subscription.discount_percent is None

    def test_no_trial_for_returning_reader(self, engine, gateway, active):
        """Test a reader who subscribed before pays immediately."""
        engine.cancel_subscription(active.subscription_id, immediately=True)

        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm", with_trial=True)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert len(gateway.calls) == 2

    def test_no_trial_when_author_has_none(self, engine, gateway):
        """Test authors without a trial period charge immediately."""
        result = engine.create_subscription("reader-1", "author-2", "monthly", "pm", with_trial=True)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert len(gateway.calls) == 1


class TestConfirmPayment:
    """Tests for settling 3-D Secure purchases."""

    @pytest.fixture
    def pending(self, engine, gateway):
        gateway.require_action()
        return engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")

    def test_confirm_success_activates(self, engine, store, pending):
        """Test a confirmed challenge activates the subscription."""
        payment_id = pending.payment.external_payment_id

        result = engine.confirm_payment(pending.subscription.subscription_id, payment_id, succeeded=True)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.total_paid == Decimal("500.00")
        assert subscriber_count(store) == 1

    def test_confirm_failure_cancels(self, engine, store, pending):
        """Test a failed challenge cancels the purchase."""
        payment_id = pending.payment.external_payment_id

        result = engine.confirm_payment(
            pending.subscription.subscription_id, payment_id, succeeded=False, failure_reason="3ds_failed"
        )

        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.subscription.cancellation_reason == "payment_failed: 3ds_failed"
        assert subscriber_count(store) == 0

    def test_repeated_confirmation_is_idempotent(self, engine, pending):
        """Test a duplicate callback does not charge twice."""
        subscription_id = pending.subscription.subscription_id
        payment_id = pending.payment.external_payment_id

        engine.confirm_payment(subscription_id, payment_id, succeeded=True)
        result = engine.confirm_payment(subscription_id, payment_id, succeeded=True)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.total_paid == Decimal("500.00")

    def test_unknown_payment_id(self, engine, pending):
        """Test a callback for another payment is rejected."""
        with pytest.raises(SubscriptionValidationError):
            engine.confirm_payment(pending.subscription.subscription_id, "payment_other", succeeded=True)

    def test_delayed_confirmation_keeps_purchase_period(self, engine, clock, pending):
        """Test the paid period starts at purchase, not at confirmation."""
        clock.advance_time(minutes=20, run_sweep=False)

        result = engine.confirm_payment(
            pending.subscription.subscription_id, pending.payment.external_payment_id, succeeded=True
        )

        assert result.subscription.started_at == utc(2024, 1, 15, 10, 0)
        assert result.subscription.expires_at == utc(2024, 2, 15, 10, 0)


class TestCancelSubscription:
    """Tests for cancellation."""

    def test_cancel_immediately(self, engine, store, clock, active, events):
        """Test immediate cancellation ends access and decrements the counter."""
        cancelled = engine.cancel_subscription(active.subscription_id, reason="too expensive", immediately=True)

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == clock.now()
        assert cancelled.cancellation_reason == "too expensive"
        assert cancelled.auto_renewal is False
        assert subscriber_count(store) == 0
        assert published_types(events)[-1] == LifecycleEventType.CANCELLED

    def test_cancel_at_period_end(self, engine, store, active, events):
        """Test cancelling at period end keeps access and the counter."""
        updated = engine.cancel_subscription(active.subscription_id, reason="pause")

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.auto_renewal is False
        assert updated.cancellation_reason == "pause"
        assert updated.expires_at == active.expires_at
        assert subscriber_count(store) == 1
        assert published_types(events)[-1] == LifecycleEventType.CANCEL_SCHEDULED

    def test_cancel_twice_is_idempotent(self, engine, store, active):
        """Test cancelling an already cancelled subscription changes nothing."""
        engine.cancel_subscription(active.subscription_id, immediately=True)
        again = engine.cancel_subscription(active.subscription_id, immediately=True)

        assert again.status == SubscriptionStatus.CANCELLED
        assert subscriber_count(store) == 0

    def test_cancel_trial(self, engine, store):
        """Test a trial can be cancelled immediately."""
        trial = engine.create_subscription("reader-1", "author-1", "monthly", "pm", with_trial=True).subscription

        engine.cancel_subscription(trial.subscription_id, immediately=True)

        assert subscriber_count(store) == 0

    def test_cancel_by_other_reader(self, engine, store, active):
        """Test only the subscriber may cancel."""
        with pytest.raises(SubscriptionAccessError):
            engine.cancel_subscription(active.subscription_id, immediately=True, requested_by="reader-2")

        assert store.get(active.subscription_id).status == SubscriptionStatus.ACTIVE

    def test_cancel_pending(self, engine, gateway):
        """Test a purchase awaiting payment cannot be cancelled."""
        gateway.require_action()
        pending = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card").subscription

        with pytest.raises(InvalidSubscriptionStateError):
            engine.cancel_subscription(pending.subscription_id)

    def test_cancel_expired(self, engine, clock, active):
        """Test an expired subscription cannot be cancelled."""
        clock.advance_time(days=31, run_sweep=False)
        engine.expire_subscription(active.subscription_id)

        with pytest.raises(InvalidSubscriptionStateError):
            engine.cancel_subscription(active.subscription_id)

    def test_cancel_unknown(self, engine):
        """Test cancelling an unknown subscription."""
        with pytest.raises(SubscriptionNotFoundError):
            engine.cancel_subscription("sub_0000000000000000")


class TestRenewSubscription:
    """Tests for manual and due renewals."""

    def test_manual_renewal_of_cancelled(self, engine, store, active):
        """Test a cancelled subscription is reactivated with a new period."""
        engine.cancel_subscription(active.subscription_id, reason="oops", immediately=True)

        result = engine.renew_subscription(active.subscription_id)
        renewed = result.subscription

        assert result.payment.succeeded
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.renewal_count == 1
        assert renewed.total_paid == Decimal("1000.00")
        assert renewed.auto_renewal is True
        assert renewed.cancelled_at is None
        assert renewed.cancellation_reason is None
        assert renewed.started_at == utc(2024, 1, 15, 10, 0)
        assert renewed.expires_at == utc(2024, 2, 15, 10, 0)
        assert subscriber_count(store) == 1

    def test_manual_renewal_charges_current_price(self, engine, store, gateway, active):
        """Test manual renewals take the author's current list price."""
        engine.cancel_subscription(active.subscription_id, immediately=True)
        store.update_author_pricing("author-1", subscription_price=Decimal("600"))

        renewed = engine.renew_subscription(active.subscription_id).subscription

        assert gateway.calls[-1][0] == Decimal("600.00")
        assert renewed.price == Decimal("600.00")
        assert renewed.total_paid == Decimal("1100.00")

    def test_manual_renewal_declined(self, engine, store, gateway, active):
        """Test a declined manual renewal restores the previous status."""
        engine.cancel_subscription(active.subscription_id, immediately=True)
        gateway.decline("insufficient_funds")

        result = engine.renew_subscription(active.subscription_id)

        assert not result.payment.succeeded
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.subscription.renewal_from_status is None
        assert result.subscription.total_paid == Decimal("500.00")
        assert subscriber_count(store) == 0

    def test_manual_renewal_needing_authentication_fails(self, engine, store, gateway, active):
        """Test manual renewals are charged off-session, so a 3-D Secure answer is a failure."""
        engine.cancel_subscription(active.subscription_id, immediately=True)
        gateway.require_action()

        result = engine.renew_subscription(active.subscription_id)

        assert result.payment.failure_reason == REASON_AUTH_REQUIRED
        assert result.payment.redirect_url is None
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert subscriber_count(store) == 0

    def test_manual_renewal_of_expired(self, engine, store, clock, active):
        """Test an expired subscription can be renewed."""
        clock.advance_time(days=31, run_sweep=False)
        engine.expire_subscription(active.subscription_id)

        renewed = engine.renew_subscription(active.subscription_id).subscription

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.started_at == clock.now()
        assert subscriber_count(store) == 1

    def test_manual_renewal_blocked_by_newer_subscription(self, engine, active):
        """Test renewing an old subscription while a newer one holds the pair."""
        engine.cancel_subscription(active.subscription_id, immediately=True)
        engine.create_subscription("reader-1", "author-1", "monthly", "pm")

        with pytest.raises(DuplicateActiveSubscriptionError):
            engine.renew_subscription(active.subscription_id)

    def test_due_renewal_extends_period(self, engine, store, clock, active, events):
        """Test a due auto-renewal charges the snapshot price and keeps the counter."""
        clock.advance_time(days=31, run_sweep=False)
        store.update_author_pricing("author-1", subscription_price=Decimal("900"))

        result = engine.renew_subscription(active.subscription_id)
        renewed = result.subscription

        assert result.payment.amount == Decimal("500.00")
        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.renewal_count == 1
        assert renewed.started_at == utc(2024, 2, 15, 10, 0)
        assert renewed.expires_at == utc(2024, 3, 15, 10, 0)
        assert renewed.renewal_claimed_at is None
        assert subscriber_count(store) == 1
        assert published_types(events)[-1] == LifecycleEventType.RENEWED

    def test_due_renewal_requires_action_expires(self, engine, store, clock, gateway, active):
        """Test a renewal needing 3-D Secure cannot complete off-session."""
        clock.advance_time(days=31, run_sweep=False)
        gateway.require_action()

        result = engine.renew_subscription(active.subscription_id)

        assert result.payment.failure_reason == REASON_AUTH_REQUIRED
        assert result.subscription.status == SubscriptionStatus.EXPIRED
        assert subscriber_count(store) == 0

    def test_renew_not_due(self, engine, active):
        """Test an active subscription cannot renew before its period ends."""
        with pytest.raises(InvalidSubscriptionStateError):
            engine.renew_subscription(active.subscription_id)

    def test_renew_with_auto_renewal_off(self, engine, clock, active):
        """Test a due subscription with auto-renewal off is not renewed."""
        engine.cancel_subscription(active.subscription_id)
        clock.advance_time(days=31, run_sweep=False)

        with pytest.raises(InvalidSubscriptionStateError):
            engine.renew_subscription(active.subscription_id)

    def test_renew_pending(self, engine, gateway):
        """Test a pending purchase cannot be renewed."""
        gateway.require_action()
        pending = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card").subscription

        with pytest.raises(InvalidSubscriptionStateError):
            engine.renew_subscription(pending.subscription_id)


class TestExpireSubscription:
    """Tests for expiration."""

    def test_expire_due(self, engine, store, clock, active, events):
        """Test an ended period expires and decrements the counter."""
        clock.advance_time(days=31, run_sweep=False)

        expired = engine.expire_subscription(active.subscription_id)

        assert expired.status == SubscriptionStatus.EXPIRED
        assert subscriber_count(store) == 0
        assert published_types(events)[-1] == LifecycleEventType.EXPIRED

    def test_expire_twice(self, engine, store, clock, active):
        """Test expiring an expired subscription does not decrement again."""
        clock.advance_time(days=31, run_sweep=False)
        engine.expire_subscription(active.subscription_id)

        again = engine.expire_subscription(active.subscription_id)

        assert again.status == SubscriptionStatus.EXPIRED
        assert subscriber_count(store) == 0

    def test_expire_cancelled_is_noop(self, engine, store, active):
        """Test expiring a cancelled subscription leaves it cancelled."""
        engine.cancel_subscription(active.subscription_id, immediately=True)

        result = engine.expire_subscription(active.subscription_id)

        assert result.status == SubscriptionStatus.CANCELLED

    def test_expire_not_due(self, engine, active):
        """Test a running period cannot be expired."""
        with pytest.raises(InvalidSubscriptionStateError):
            engine.expire_subscription(active.subscription_id)


class TestAbandonPending:
    """Tests for abandoning unconfirmed purchases."""

    def test_stale_purchase_cancelled(self, engine, clock, gateway):
        """Test a purchase unconfirmed past the timeout is cancelled."""
        gateway.require_action()
        pending = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card").subscription
        clock.advance_time(minutes=31, run_sweep=False)

        abandoned = engine.abandon_pending(pending.subscription_id)

        assert abandoned.status == SubscriptionStatus.CANCELLED
        assert abandoned.cancellation_reason == REASON_PAYMENT_TIMEOUT

    def test_recent_purchase_kept(self, engine, clock, gateway):
        """Test a purchase within the timeout is left pending."""
        gateway.require_action()
        pending = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card").subscription
        clock.advance_time(minutes=5, run_sweep=False)

        assert engine.abandon_pending(pending.subscription_id) is None

    def test_late_confirmation_after_abandon(self, engine, store, clock, gateway):
        """Test a confirmation arriving after abandonment keeps the funds without reactivating."""
        gateway.require_action()
        result = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")
        subscription_id = result.subscription.subscription_id
        clock.advance_time(minutes=31, run_sweep=False)
        engine.abandon_pending(subscription_id)

        late = engine.confirm_payment(subscription_id, result.payment.external_payment_id, succeeded=True)

        assert late.subscription.status == SubscriptionStatus.CANCELLED
        assert late.subscription.total_paid == Decimal("500.00")
        assert late.payment.status == PaymentStatus.SUCCEEDED
        assert subscriber_count(store) == 0
        assert RevenueAccountant(subscription_store=store, currency="RUB").total_revenue("author-1") == Decimal("500.00")

    def test_repeated_late_confirmation_counted_once(self, engine, store, clock, gateway):
        """Test a duplicate late callback does not add the funds twice."""
        gateway.require_action()
        result = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")
        subscription_id = result.subscription.subscription_id
        clock.advance_time(minutes=31, run_sweep=False)
        engine.abandon_pending(subscription_id)

        engine.confirm_payment(subscription_id, result.payment.external_payment_id, succeeded=True)
        again = engine.confirm_payment(subscription_id, result.payment.external_payment_id, succeeded=True)

        assert again.subscription.total_paid == Decimal("500.00")

    def test_late_failed_confirmation_is_ignored(self, engine, clock, gateway):
        gateway.require_action()
        result = engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")
        subscription_id = result.subscription.subscription_id
        clock.advance_time(minutes=31, run_sweep=False)
        engine.abandon_pending(subscription_id)

        late = engine.confirm_payment(subscription_id, result.payment.external_payment_id, succeeded=False)

        assert late.subscription.total_paid == Decimal("0")
        assert late.subscription.cancellation_reason == REASON_PAYMENT_TIMEOUT


class TestAutoRenewalAndAccess:
    """Tests for auto-renewal toggling and access checks."""

    def test_toggle_auto_renewal(self, engine, active):
        """Test turning auto-renewal off and back on."""
        engine.cancel_subscription(active.subscription_id, reason="thinking")

        updated = engine.set_auto_renewal(active.subscription_id, True)

        assert updated.auto_renewal is True
        assert updated.cancellation_reason is None

    def test_auto_renewal_on_cancelled(self, engine, active):
        """Test auto-renewal cannot change on a cancelled subscription."""
        engine.cancel_subscription(active.subscription_id, immediately=True)

        with pytest.raises(InvalidSubscriptionStateError):
            engine.set_auto_renewal(active.subscription_id, True)

    def test_access_follows_period(self, engine, clock, active):
        """Test access lasts until the period ends, even before the sweeper runs."""
        assert engine.has_access("reader-1", "author-1")
        assert not engine.has_access("reader-2", "author-1")

        clock.advance_time(days=31, run_sweep=False)

        assert not engine.has_access("reader-1", "author-1")

    def test_no_access_while_pending(self, engine, gateway):
        """Test a purchase awaiting payment does not grant access."""
        gateway.require_action()
        engine.create_subscription("reader-1", "author-1", "monthly", "3ds_card")

        assert not engine.has_access("reader-1", "author-1")

    def test_author_subscribers(self, engine, active):
        """Test listing an author's active subscribers."""
        engine.create_subscription("reader-2", "author-1", "monthly", "pm")
        engine.cancel_subscription(active.subscription_id, immediately=True)

        subscribers = engine.get_author_subscribers("author-1")

        assert [s.subscriber_id for s in subscribers] == ["reader-2"]
        assert len(engine.get_author_subscribers("author-1", status=None)) == 2

    def test_author_subscribers_unknown_author(self, engine):
        with pytest.raises(AuthorNotFoundError):
            engine.get_author_subscribers("author-404")


class TestEvents:
    """Tests for lifecycle event publishing."""

    def test_purchase_publishes_activated(self, engine, events, active):
        event_type, subscription, event_time = events.publish.call_args.args

        assert event_type == LifecycleEventType.ACTIVATED
        assert subscription.subscription_id == active.subscription_id
        assert event_time == utc(2024, 1, 15, 10, 0)

    def test_publish_failure_does_not_fail_transition(self, engine, store, events):
        """Test a broken publisher never undoes a committed transition."""
        events.publish.side_effect = RuntimeError("pubsub down")

        result = engine.create_subscription("reader-1", "author-1", "monthly", "pm")

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert subscriber_count(store) == 1


class TestEngineConstruction:
    """Tests for wiring the engine to its collaborators."""

    def test_uses_injected_store_without_subscriptions(self, config, clock, gateway, events):
        """Test a seeded but empty store is used instead of the global one."""
        seeded = SubscriptionStore()
        seeded.seed_authors(config.authors)
        engine = SubscriptionEngine(
            subscription_store=seeded,
            payment_gateway=gateway,
            clock=clock,
            config=config,
            event_dispatcher=events,
        )
        try:
            assert len(seeded) == 0
            assert engine.store is seeded

            result = engine.create_subscription("reader-1", "author-1", "monthly", "pm")

            assert seeded.get(result.subscription.subscription_id).status == SubscriptionStatus.ACTIVE
        finally:
            engine.shutdown()
