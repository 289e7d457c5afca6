"""Subscription store - in-memory storage for subscriptions and author counters.

The atomic unit is one subscription record plus its author's subscriber_count:
every mutation that changes whether a subscription is counted applies the
record write and the counter delta under the same lock, or neither.
"""

import bisect
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from author_billing.logging_config import get_logger
from author_billing.models.config import AuthorDefinition
from author_billing.models.results import CounterDiscrepancy
from author_billing.models.subscription import (
    COUNTED_STATUSES,
    HOLDING_STATUSES,
    AuthorRecord,
    SubscriptionRecord,
    SubscriptionStatus,
)
from author_billing.state_logger import log_subscriber_count_change

logger = get_logger(__name__)

Mutation = Callable[[SubscriptionRecord], None]
Guard = Callable[[SubscriptionRecord], bool]


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription is not found in the store."""

    pass


class AuthorNotFoundError(Exception):
    """Raised when an author is not found in the store."""

    pass


class DuplicateSubscriptionError(Exception):
    """Raised when a (subscriber, author) pair already holds a subscription."""

    def __init__(self, subscriber_id: str, author_id: str, existing_subscription_id: str):
        self.subscriber_id = subscriber_id
        self.author_id = author_id
        self.existing_subscription_id = existing_subscription_id
        super().__init__(
            f"Subscriber {subscriber_id} already holds subscription "
            f"{existing_subscription_id} for author {author_id}"
        )


class CounterConsistencyError(Exception):
    """Raised when a counter update cannot be applied; nothing is committed."""

    pass


class SubscriptionStore:
    """In-memory storage for subscription records and author aggregates.

    Thread-safe storage with lookup by subscription_id, subscriber, (author, status)
    and (status, expires_at). Records handed out are copies; state only changes
    through insert() and apply_transition().
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._authors: Dict[str, AuthorRecord] = {}
        self._by_subscriber: Dict[str, Set[str]] = defaultdict(set)
        self._by_status: Dict[SubscriptionStatus, Set[str]] = defaultdict(set)
        self._by_author_status: Dict[Tuple[str, SubscriptionStatus], Set[str]] = defaultdict(set)
        self._holding_pairs: Dict[Tuple[str, str], str] = {}
        # (expires_at, subscription_id) of counted subscriptions, kept sorted
        self._expiry_index: List[Tuple[datetime, str]] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Authors
    # ------------------------------------------------------------------

    def add_author(self, author: AuthorRecord) -> None:
        """Add an author.

        Raises:
            ValueError: If the author already exists
        """
        with self._lock:
            if author.author_id in self._authors:
                raise ValueError(f"Author '{author.author_id}' already exists")
            self._authors[author.author_id] = author.model_copy(deep=True)

    def upsert_author(self, author: AuthorRecord) -> AuthorRecord:
        """Create an author or replace its pricing, keeping the maintained counter.

        Returns:
            Stored AuthorRecord
        """
        with self._lock:
            existing = self._authors.get(author.author_id)
            stored = author.model_copy(deep=True)
            stored.subscriber_count = existing.subscriber_count if existing else 0
            self._authors[author.author_id] = stored
            return stored.model_copy(deep=True)

    def update_author_pricing(self, author_id: str, **pricing: Any) -> AuthorRecord:
        """Change an author's list prices or trial period.

        Existing subscriptions keep their price snapshot; only new
        subscriptions and manual renewals see the new price.

        Raises:
            AuthorNotFoundError: If author not found
            ValueError: If a field is not a pricing field
        """
        allowed = {"display_name", "subscription_price", "yearly_price", "lifetime_price", "trial_period"}
        unknown = set(pricing) - allowed
        if unknown:
            raise ValueError(f"Not pricing fields: {sorted(unknown)}")
        with self._lock:
            author = self._require_author(author_id)
            updated = AuthorRecord.model_validate({**author.model_dump(), **pricing})
            self._authors[author_id] = updated
            logger.info("author_pricing_updated", author_id=author_id, fields=sorted(pricing))
            return updated.model_copy(deep=True)

    def seed_authors(self, definitions: Iterable[AuthorDefinition]) -> int:
        """Upsert author pricing from configuration.

        Returns:
            Number of authors seeded
        """
        seeded = 0
        for definition in definitions:
            self.upsert_author(AuthorRecord(**definition.model_dump()))
            seeded += 1
        return seeded

    def get_author(self, author_id: str) -> AuthorRecord:
        """Get author by ID.

        Raises:
            AuthorNotFoundError: If author not found
        """
        with self._lock:
            return self._require_author(author_id).model_copy(deep=True)

    def find_author(self, author_id: str) -> Optional[AuthorRecord]:
        """Find author by ID (returns None if not found)."""
        with self._lock:
            author = self._authors.get(author_id)
            return author.model_copy(deep=True) if author else None

    def get_all_authors(self) -> List[AuthorRecord]:
        """Get all authors."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._authors.values()]

    # ------------------------------------------------------------------
    # Atomic writes
    # ------------------------------------------------------------------

    def insert(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        """Insert a new subscription.

        The duplicate check over holding statuses, the insert and the counter
        increment for a counted initial status form one atomic unit.

        Args:
            subscription: New SubscriptionRecord

        Returns:
            Stored copy

        Raises:
            ValueError: If the subscription ID already exists
            AuthorNotFoundError: If the author does not exist
            DuplicateSubscriptionError: If the pair already holds a subscription
        """
        with self._lock:
            if subscription.subscription_id in self._subscriptions:
                raise ValueError(
                    f"Subscription with ID '{subscription.subscription_id}' already exists"
                )
            author = self._require_author(subscription.author_id)

            if subscription.status in HOLDING_STATUSES:
                self._check_pair_free(subscription)

            stored = subscription.model_copy(deep=True)
            self._subscriptions[stored.subscription_id] = stored
            self._index_add(stored)

            if stored.is_counted:
                self._change_count(author, 1, stored.subscription_id, reason="insert")

            return stored.model_copy(deep=True)

    def apply_transition(
        self,
        subscription_id: str,
        expected_statuses: Iterable[SubscriptionStatus],
        mutate: Mutation,
        guard: Optional[Guard] = None,
    ) -> Optional[SubscriptionRecord]:
        """Compare-and-set a subscription and its author's counter.

        Under the store lock: verify the current status (and optional guard),
        apply mutate to a copy, derive the counter delta from the counted
        statuses, validate the counter and pair exclusivity, then commit the
        record and the counter together.

        Args:
            subscription_id: Subscription to transition
            expected_statuses: Statuses the transition is valid from
            mutate: Function applying the change to a copy of the record
            guard: Extra precondition evaluated on the current record

        Returns:
            Updated copy, or None when the precondition no longer holds

        Raises:
            SubscriptionNotFoundError: If subscription not found
            DuplicateSubscriptionError: If re-entering a holding status would
                give the pair a second holding subscription
            CounterConsistencyError: If the counter update is impossible;
                nothing is committed
        """
        expected = frozenset(expected_statuses)
        with self._lock:
            current = self._require(subscription_id)
            if current.status not in expected:
                return None
            if guard is not None and not guard(current):
                return None

            updated = current.model_copy(deep=True)
            mutate(updated)

            if (updated.subscriber_id, updated.author_id) != (current.subscriber_id, current.author_id):
                raise CounterConsistencyError(
                    f"Subscription {subscription_id} cannot change subscriber or author"
                )

            delta = int(updated.is_counted) - int(current.is_counted)
            author = self._authors.get(current.author_id)
            if delta:
                if author is None:
                    raise CounterConsistencyError(
                        f"Author {current.author_id} missing for counted transition of {subscription_id}"
                    )
                if author.subscriber_count + delta < 0:
                    raise CounterConsistencyError(
                        f"subscriber_count for {current.author_id} would become negative"
                    )

            if updated.status in HOLDING_STATUSES and current.status not in HOLDING_STATUSES:
                self._check_pair_free(updated)

            self._index_remove(current)
            self._subscriptions[subscription_id] = updated
            self._index_add(updated)

            if delta:
                self._change_count(
                    author,
                    delta,
                    subscription_id,
                    reason=f"{current.status.value}->{updated.status.value}",
                )

            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, subscription_id: str) -> SubscriptionRecord:
        """Get subscription by ID.

        Raises:
            SubscriptionNotFoundError: If subscription not found
        """
        with self._lock:
            return self._require(subscription_id).model_copy(deep=True)

    def find(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        """Find subscription by ID (returns None if not found)."""
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            return subscription.model_copy(deep=True) if subscription else None

    def get_by_subscriber(
        self, subscriber_id: str, status: Optional[SubscriptionStatus] = None
    ) -> List[SubscriptionRecord]:
        """Get a subscriber's subscriptions, newest first."""
        with self._lock:
            records = [self._subscriptions[sid] for sid in self._by_subscriber.get(subscriber_id, ())]
            if status is not None:
                records = [r for r in records if r.status == status]
            return self._sorted_copies(records)

    def get_by_author(
        self, author_id: str, status: Optional[SubscriptionStatus] = None
    ) -> List[SubscriptionRecord]:
        """Get an author's subscriptions, optionally filtered by status, newest first."""
        with self._lock:
            statuses = [status] if status is not None else list(SubscriptionStatus)
            records = [
                self._subscriptions[sid]
                for s in statuses
                for sid in self._by_author_status.get((author_id, s), ())
            ]
            return self._sorted_copies(records)

    def find_holding(self, subscriber_id: str, author_id: str) -> Optional[SubscriptionRecord]:
        """Find the pair's pending/active/trial subscription, if any."""
        with self._lock:
            sid = self._holding_pairs.get((subscriber_id, author_id))
            return self._subscriptions[sid].model_copy(deep=True) if sid else None

    def has_prior_subscription(self, subscriber_id: str, author_id: str) -> bool:
        """Check whether the subscriber ever subscribed to the author."""
        with self._lock:
            return any(
                self._subscriptions[sid].author_id == author_id
                for sid in self._by_subscriber.get(subscriber_id, ())
            )

    def get_due(self, now: datetime, limit: Optional[int] = None) -> List[SubscriptionRecord]:
        """Get active/trial subscriptions whose expires_at <= now.

        Served from the (status, expires_at) index in expiry order.
        """
        with self._lock:
            due = []
            for expires_at, sid in self._expiry_index:
                if expires_at > now or (limit is not None and len(due) >= limit):
                    break
                due.append(self._subscriptions[sid].model_copy(deep=True))
            return due

    def get_stale_pending(self, pending_since: datetime) -> List[SubscriptionRecord]:
        """Get pending subscriptions last touched before a given instant."""
        with self._lock:
            return self._sorted_copies(
                self._subscriptions[sid]
                for sid in self._by_status.get(SubscriptionStatus.PENDING, ())
                if self._subscriptions[sid].updated_at < pending_since
            )

    def snapshot_author(self, author_id: str) -> Tuple[AuthorRecord, List[SubscriptionRecord]]:
        """Read an author and all of its subscriptions as one consistent snapshot.

        Raises:
            AuthorNotFoundError: If author not found
        """
        with self._lock:
            author = self._require_author(author_id).model_copy(deep=True)
            return author, self.get_by_author(author_id)

    def get_all(self) -> List[SubscriptionRecord]:
        """Get all subscriptions in the store."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._subscriptions.values()]

    def count(self) -> int:
        """Get total number of subscriptions."""
        with self._lock:
            return len(self._subscriptions)

    def count_by_status(self, status: SubscriptionStatus) -> int:
        """Get count of subscriptions in a specific status."""
        with self._lock:
            return len(self._by_status.get(status, ()))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reconcile_subscriber_counts(self) -> List[CounterDiscrepancy]:
        """Recompute every author's subscriber_count from the subscription rows.

        Discrepancies are corrected in place and returned.
        """
        with self._lock:
            actual: Dict[str, int] = defaultdict(int)
            for subscription in self._subscriptions.values():
                if subscription.status in COUNTED_STATUSES:
                    actual[subscription.author_id] += 1

            discrepancies = []
            for author in self._authors.values():
                expected = actual.get(author.author_id, 0)
                if author.subscriber_count != expected:
                    discrepancies.append(
                        CounterDiscrepancy(
                            author_id=author.author_id,
                            stored_count=author.subscriber_count,
                            actual_count=expected,
                        )
                    )
                    logger.warning(
                        "subscriber_count_drift_corrected",
                        author_id=author.author_id,
                        stored_count=author.subscriber_count,
                        actual_count=expected,
                    )
                    author.subscriber_count = expected
            return discrepancies

    def clear(self) -> None:
        """Clear all subscriptions and authors.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._subscriptions.clear()
            self._authors.clear()
            self._by_subscriber.clear()
            self._by_status.clear()
            self._by_author_status.clear()
            self._holding_pairs.clear()
            self._expiry_index.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics (totals per status, authors, subscribers)."""
        with self._lock:
            stats = {
                "total_subscriptions": len(self._subscriptions),
                "authors": len(self._authors),
                "unique_subscribers": len([s for s, ids in self._by_subscriber.items() if ids]),
                "auto_renewal": sum(1 for s in self._subscriptions.values() if s.auto_renewal),
            }
            for status in SubscriptionStatus:
                stats[status.value] = len(self._by_status.get(status, ()))
            return stats

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _require(self, subscription_id: str) -> SubscriptionRecord:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def _require_author(self, author_id: str) -> AuthorRecord:
        author = self._authors.get(author_id)
        if author is None:
            raise AuthorNotFoundError(f"Author not found: {author_id}")
        return author

    def _check_pair_free(self, subscription: SubscriptionRecord) -> None:
        pair = (subscription.subscriber_id, subscription.author_id)
        holder = self._holding_pairs.get(pair)
        if holder is not None and holder != subscription.subscription_id:
            raise DuplicateSubscriptionError(subscription.subscriber_id, subscription.author_id, holder)

    def _change_count(self, author: AuthorRecord, delta: int, subscription_id: str, reason: str) -> None:
        old_count = author.subscriber_count
        author.subscriber_count = old_count + delta
        log_subscriber_count_change(
            author_id=author.author_id,
            old_count=old_count,
            new_count=author.subscriber_count,
            subscription_id=subscription_id,
            reason=reason,
        )

    def _index_add(self, record: SubscriptionRecord) -> None:
        sid = record.subscription_id
        self._by_subscriber[record.subscriber_id].add(sid)
        self._by_status[record.status].add(sid)
        self._by_author_status[(record.author_id, record.status)].add(sid)
        if record.status in HOLDING_STATUSES:
            self._holding_pairs[(record.subscriber_id, record.author_id)] = sid
        if record.status in COUNTED_STATUSES and record.expires_at is not None:
            bisect.insort(self._expiry_index, (record.expires_at, sid))

    def _index_remove(self, record: SubscriptionRecord) -> None:
        sid = record.subscription_id
        self._by_subscriber[record.subscriber_id].discard(sid)
        self._by_status[record.status].discard(sid)
        self._by_author_status[(record.author_id, record.status)].discard(sid)
        pair = (record.subscriber_id, record.author_id)
        if self._holding_pairs.get(pair) == sid:
            del self._holding_pairs[pair]
        if record.status in COUNTED_STATUSES and record.expires_at is not None:
            key = (record.expires_at, sid)
            i = bisect.bisect_left(self._expiry_index, key)
            if i < len(self._expiry_index) and self._expiry_index[i] == key:
                del self._expiry_index[i]

    @staticmethod
    def _sorted_copies(records: Iterable[SubscriptionRecord]) -> List[SubscriptionRecord]:
        ordered = sorted(records, key=lambda r: (r.created_at, r.subscription_id), reverse=True)
        return [r.model_copy(deep=True) for r in ordered]

    def __len__(self) -> int:
        """Get number of subscriptions in store."""
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        """Check if subscription exists in store."""
        with self._lock:
            return subscription_id in self._subscriptions

    def __repr__(self) -> str:
        """String representation of store."""
        return f"SubscriptionStore(subscriptions={self.count()}, authors={len(self._authors)})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton).

    Returns:
        SubscriptionStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data).

    Warning: This removes all subscription data. Use with caution.
    """
    get_subscription_store().clear()
