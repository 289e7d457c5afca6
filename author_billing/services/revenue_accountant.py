"""Revenue and subscriber statistics for author dashboards.

Figures are projections of the subscription rows, recomputed on every call
from one consistent store snapshot; nothing is cached.
"""

from decimal import Decimal
from typing import Iterable, Optional

from author_billing.logging_config import get_logger
from author_billing.models import AuthorStats, SubscriptionRecord, SubscriptionStatus
from author_billing.repositories.subscription_store import SubscriptionStore, get_subscription_store
from author_billing.utils import monthly_equivalent, quantize_amount

logger = get_logger(__name__)


def _monthly_revenue(subscriptions: Iterable[SubscriptionRecord]) -> Decimal:
    total = sum(
        (
            monthly_equivalent(s.price, s.plan_type)
            for s in subscriptions
            if s.status == SubscriptionStatus.ACTIVE
        ),
        Decimal("0"),
    )
    return quantize_amount(total)


def _total_revenue(subscriptions: Iterable[SubscriptionRecord]) -> Decimal:
    return quantize_amount(sum((s.total_paid for s in subscriptions), Decimal("0")))


class RevenueAccountant:
    """Read-only revenue projections per author."""

    def __init__(self, subscription_store: Optional[SubscriptionStore] = None, currency: Optional[str] = None):
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self._currency = currency

    def _get_currency(self) -> str:
        if self._currency is None:
            from author_billing.config import get_config

            self._currency = get_config().currency
        return self._currency

    def monthly_revenue(self, author_id: str) -> Decimal:
        """Recurring revenue per month from active subscriptions.

        Yearly prices count as price/12; lifetime plans count as 0.

        Raises:
            AuthorNotFoundError: If author not found
        """
        _, subscriptions = self.store.snapshot_author(author_id)
        return _monthly_revenue(subscriptions)

    def total_revenue(self, author_id: str) -> Decimal:
        """Sum of captured payments over all of the author's subscriptions.

        Raises:
            AuthorNotFoundError: If author not found
        """
        _, subscriptions = self.store.snapshot_author(author_id)
        return _total_revenue(subscriptions)

    def get_author_stats(self, author_id: str) -> AuthorStats:
        """Dashboard statistics computed from a single snapshot.

        Raises:
            AuthorNotFoundError: If author not found
        """
        author, subscriptions = self.store.snapshot_author(author_id)
        stats = AuthorStats(
            author_id=author_id,
            total_subscriptions=len(subscriptions),
            active_subscriptions=sum(1 for s in subscriptions if s.status == SubscriptionStatus.ACTIVE),
            trial_subscriptions=sum(1 for s in subscriptions if s.status == SubscriptionStatus.TRIAL),
            subscriber_count=author.subscriber_count,
            monthly_revenue=_monthly_revenue(subscriptions),
            total_revenue=_total_revenue(subscriptions),
            currency=self._get_currency(),
        )
        logger.debug("author_stats_computed", author_id=author_id, total_subscriptions=stats.total_subscriptions)
        return stats


_accountant_instance: Optional[RevenueAccountant] = None


def get_revenue_accountant() -> RevenueAccountant:
    """Get global revenue accountant instance (singleton)."""
    global _accountant_instance
    if _accountant_instance is None:
        _accountant_instance = RevenueAccountant()
    return _accountant_instance
