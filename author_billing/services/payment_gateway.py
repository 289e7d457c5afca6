"""Payment gateway adapter.

The engine only sees PaymentGateway.charge(); the processor behind it is
picked from the gateway section of the configuration. The emulated processor
decides outcomes from the payment token, which keeps tests deterministic:

- tokens starting with the decline prefix are declined (card_declined)
- tokens starting with the challenge prefix need 3-D Secure (requires_action)
- everything else succeeds, unless random failures are enabled
"""

import random
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from author_billing.config import Config, get_config
from author_billing.logging_config import get_logger
from author_billing.models import GatewayConfig, PaymentStatus
from author_billing.utils import generate_payment_id

logger = get_logger(__name__)

REASON_TIMEOUT = "gateway_timeout"
REASON_ERROR = "gateway_error"


class ChargeResult(BaseModel):
    """Answer of the processor to a single charge."""

    status: PaymentStatus = Field(..., description="Charge outcome")
    external_payment_id: Optional[str] = Field(None, description="Processor payment identifier")
    failure_reason: Optional[str] = Field(None, description="Why the charge failed")
    redirect_url: Optional[str] = Field(None, description="3-D Secure redirect URL")

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    @classmethod
    def failed(cls, reason: str, external_payment_id: Optional[str] = None) -> "ChargeResult":
        return cls(status=PaymentStatus.FAILED, failure_reason=reason, external_payment_id=external_payment_id)


class PaymentGateway(ABC):
    """Processor-agnostic charge interface."""

    @abstractmethod
    def charge(self, amount: Decimal, currency: str, payment_token: str) -> ChargeResult:
        """Charge an amount against an opaque payment token.

        Implementations may raise; callers treat exceptions as a failed charge.
        """


class EmulatedPaymentGateway(PaymentGateway):
    """Local stand-in for the payment processor."""

    def __init__(self, settings: Optional[GatewayConfig] = None):
        self._settings = settings or GatewayConfig()

    def charge(self, amount: Decimal, currency: str, payment_token: str) -> ChargeResult:
        settings = self._settings
        if settings.latency_seconds:
            time.sleep(settings.latency_seconds)

        payment_id = generate_payment_id()

        if payment_token.startswith(settings.decline_token_prefix):
            return ChargeResult.failed("card_declined", external_payment_id=payment_id)

        if payment_token.startswith(settings.challenge_token_prefix):
            return ChargeResult(
                status=PaymentStatus.REQUIRES_ACTION,
                external_payment_id=payment_id,
                redirect_url=f"{settings.redirect_base_url.rstrip('/')}/{payment_id}",
            )

        if settings.simulate_failures and random.random() < settings.failure_rate:
            return ChargeResult.failed("insufficient_funds", external_payment_id=payment_id)

        return ChargeResult(status=PaymentStatus.SUCCEEDED, external_payment_id=payment_id)

    def __repr__(self) -> str:
        return f"EmulatedPaymentGateway(payment_system={self._settings.payment_system!r})"


class GatewayExecutor:
    """Runs gateway charges on a bounded pool with a hard timeout.

    A charge that times out or raises is reported as failed; the worker
    thread of a timed-out call is left to finish on its own.
    """

    def __init__(self, gateway: PaymentGateway, timeout_seconds: float = 10.0, max_workers: int = 8):
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateway")

    def charge(self, amount: Decimal, currency: str, payment_token: str) -> ChargeResult:
        future = None
        try:
            future = self._pool.submit(self.gateway.charge, amount, currency, payment_token)
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            if future is not None:
                future.cancel()
            logger.error(
                "gateway_charge_timeout",
                amount=str(amount),
                currency=currency,
                timeout_seconds=self.timeout_seconds,
            )
            return ChargeResult.failed(REASON_TIMEOUT)
        except Exception as e:
            logger.error(
                "gateway_charge_error",
                amount=str(amount),
                currency=currency,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return ChargeResult.failed(REASON_ERROR)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


def create_payment_gateway(config: Optional[Config] = None) -> PaymentGateway:
    """Build the gateway named by gateway.provider.

    Raises:
        ValueError: If the provider is unknown
    """
    settings = (config or get_config()).gateway_settings
    if settings.provider == "emulated":
        return EmulatedPaymentGateway(settings)
    raise ValueError(f"Unknown payment gateway provider: {settings.provider}")
