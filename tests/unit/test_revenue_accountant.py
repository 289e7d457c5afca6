"""Unit tests for RevenueAccountant."""

from decimal import Decimal

import pytest

from author_billing.models import PlanType, SubscriptionStatus
from author_billing.repositories.subscription_store import AuthorNotFoundError
from author_billing.services.revenue_accountant import RevenueAccountant


@pytest.fixture
def accountant(store):
    return RevenueAccountant(subscription_store=store, currency="RUB")


class TestMonthlyRevenue:
    """Test recurring revenue projection."""

    def test_no_subscriptions(self, accountant, store):
        """Test an empty seeded store is read, not the global one."""
        assert accountant.store is store
        assert accountant.monthly_revenue("author-1") == Decimal("0.00")

    def test_plans_normalized_to_month(self, accountant, store, make_record):
        """Test yearly prices count as price/12 and lifetime as nothing."""
        store.insert(make_record(price=Decimal("500.00")))
        store.insert(make_record(plan_type=PlanType.YEARLY, price=Decimal("5000.00")))
        store.insert(make_record(plan_type=PlanType.LIFETIME, price=Decimal("20000.00")))

        assert accountant.monthly_revenue("author-1") == Decimal("916.67")

    def test_only_active_counts(self, accountant, store, make_record):
        store.insert(make_record(price=Decimal("500.00")))
        store.insert(make_record(status=SubscriptionStatus.TRIAL))
        store.insert(make_record(status=SubscriptionStatus.CANCELLED))
        store.insert(make_record(status=SubscriptionStatus.EXPIRED))
        store.insert(make_record(author_id="author-2", price=Decimal("300.00")))

        assert accountant.monthly_revenue("author-1") == Decimal("500.00")


class TestTotalRevenue:
    """Test captured revenue."""

    def test_includes_ended_subscriptions(self, accountant, store, make_record):
        store.insert(make_record(total_paid=Decimal("1000.00")))
        store.insert(make_record(status=SubscriptionStatus.EXPIRED, total_paid=Decimal("450.00")))
        store.insert(make_record(status=SubscriptionStatus.CANCELLED, total_paid=Decimal("0")))

        assert accountant.total_revenue("author-1") == Decimal("1450.00")

    def test_unknown_author(self, accountant):
        with pytest.raises(AuthorNotFoundError):
            accountant.total_revenue("author-404")


class TestAuthorStats:
    """Test dashboard statistics."""

    def test_stats(self, accountant, store, make_record):
        store.insert(make_record(total_paid=Decimal("500.00")))
        store.insert(make_record(status=SubscriptionStatus.TRIAL))
        store.insert(make_record(status=SubscriptionStatus.EXPIRED, total_paid=Decimal("500.00")))

        stats = accountant.get_author_stats("author-1")

        assert stats.total_subscriptions == 3
        assert stats.active_subscriptions == 1
        assert stats.trial_subscriptions == 1
        assert stats.subscriber_count == 2
        assert stats.monthly_revenue == Decimal("500.00")
        assert stats.total_revenue == Decimal("1000.00")
        assert stats.currency == "RUB"

    def test_stats_serialize_camel_case(self, accountant):
        data = accountant.get_author_stats("author-2").model_dump(by_alias=True)

        assert data["authorId"] == "author-2"
        assert data["subscriberCount"] == 0
        assert "monthlyRevenue" in data
