"""Shared fixtures: configuration, frozen clock, seeded store and a scripted gateway."""

import threading
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from author_billing.config import Config
from author_billing.models import PaymentStatus, PlanType, SubscriptionRecord, SubscriptionStatus
from author_billing.repositories.subscription_store import SubscriptionStore
from author_billing.services.expiration_sweeper import ExpirationSweeper
from author_billing.services.payment_gateway import ChargeResult, PaymentGateway
from author_billing.services.subscription_engine import SubscriptionEngine
from author_billing.services.time_controller import TimeController
from author_billing.utils import generate_payment_id

FROZEN_NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

BILLING_YAML = """
currency: RUB
lifetime_years: 100
id_prefix: sub

authors:
  - author_id: author-1
    display_name: Anna Petrova
    subscription_price: "500"
    yearly_price: "5000"
    lifetime_price: "20000"
    trial_period: P14D
  - author_id: author-2
    display_name: Ivan Smirnov
    subscription_price: "300"

discounts:
  - code: WELCOME10
    percent: "10"
  - code: ANNA50
    percent: "50"
    author_id: author-1
  - code: SPRING2024
    percent: "20"
    active: false
  - code: NEWYEAR
    percent: "25"
    valid_until: 2024-01-10T00:00:00Z

gateway:
  provider: emulated
  payment_system: yukassa
  timeout_seconds: 2
  max_workers: 4

sweeper:
  enabled: false
  interval_seconds: 300
  reconcile_interval_seconds: 3600
  pending_timeout_minutes: 30
  renewal_claim_ttl_seconds: 120

events:
  enabled: false
"""


class StubGateway(PaymentGateway):
    """Gateway answering from a queue of scripted results; succeeds when the queue is empty."""

    def __init__(self):
        self.calls = []
        self._results = deque()
        self._lock = threading.Lock()

    def succeed(self) -> None:
        self._results.append(ChargeResult(status=PaymentStatus.SUCCEEDED, external_payment_id=generate_payment_id()))

    def decline(self, reason: str = "card_declined") -> None:
        self._results.append(ChargeResult.failed(reason, external_payment_id=generate_payment_id()))

    def require_action(self) -> None:
        payment_id = generate_payment_id()
        self._results.append(
            ChargeResult(
                status=PaymentStatus.REQUIRES_ACTION,
                external_payment_id=payment_id,
                redirect_url=f"https://pay.example.com/3ds/{payment_id}",
            )
        )

    def raise_error(self, error: Exception) -> None:
        self._results.append(error)

    def charge(self, amount, currency, payment_token):
        with self._lock:
            self.calls.append((amount, currency, payment_token))
            result = self._results.popleft() if self._results else None
        if result is None:
            return ChargeResult(status=PaymentStatus.SUCCEEDED, external_payment_id=generate_payment_id())
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config_path(tmp_path):
    """billing.yaml written to a temporary directory."""
    path = tmp_path / "billing.yaml"
    path.write_text(BILLING_YAML, encoding="utf-8")
    return str(path)


@pytest.fixture
def config(config_path):
    return Config(config_path)


@pytest.fixture
def clock():
    """Time controller frozen at 2024-01-15T10:00Z."""
    return TimeController(frozen_at=FROZEN_NOW)


@pytest.fixture
def store(config):
    """Fresh store seeded with the configured authors."""
    store = SubscriptionStore()
    store.seed_authors(config.authors)
    yield store
    store.clear()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def events():
    """Event dispatcher double."""
    dispatcher = MagicMock()
    dispatcher.publish.return_value = True
    return dispatcher


@pytest.fixture
def engine(store, gateway, clock, config, events):
    engine = SubscriptionEngine(
        subscription_store=store,
        payment_gateway=gateway,
        clock=clock,
        config=config,
        event_dispatcher=events,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def sweeper(engine, config, clock):
    """Sweeper bound to the test clock, so advancing time sweeps with it."""
    sweeper = ExpirationSweeper(engine=engine, config=config)
    clock.bind_sweeper(sweeper)
    yield sweeper
    sweeper.shutdown()


@pytest.fixture
def make_record():
    """Factory for subscription records inserted directly into a store."""
    counter = {"n": 0}

    def factory(**overrides) -> SubscriptionRecord:
        counter["n"] += 1
        values = {
            "subscription_id": f"sub_{counter['n']:016x}",
            "subscriber_id": f"reader-{counter['n']}",
            "author_id": "author-1",
            "plan_type": PlanType.MONTHLY,
            "price": Decimal("500.00"),
            "currency": "RUB",
            "status": SubscriptionStatus.ACTIVE,
            "payment_token": "pm_card_visa",
            "started_at": FROZEN_NOW,
            "expires_at": datetime(2024, 2, 15, 10, 0, tzinfo=timezone.utc),
            "next_billing_date": datetime(2024, 2, 15, 10, 0, tzinfo=timezone.utc),
            "created_at": FROZEN_NOW,
            "updated_at": FROZEN_NOW,
        }
        values.update(overrides)
        return SubscriptionRecord(**values)

    return factory
