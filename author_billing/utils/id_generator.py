"""Subscription and payment identifier generation.

Subscription IDs: {prefix}_{16 hex chars}
Payment IDs:      payment_{16 hex chars}_{unix millis}
"""

import re
import time
import uuid
from typing import Optional

_SUBSCRIPTION_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]+_[a-f0-9]{16}$")
_PAYMENT_ID_PATTERN = re.compile(r"^payment_[a-f0-9]{16}_\d{13}$")


def generate_subscription_id(prefix: Optional[str] = None) -> str:
    """Generate a unique subscription ID.

    Args:
        prefix: ID prefix (defaults to config id_prefix)

    Returns:
        Unique subscription ID, e.g. sub_a1b2c3d4e5f6a7b8
    """
    if prefix is None:
        from author_billing.config import get_config

        prefix = get_config().id_prefix

    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def generate_payment_id() -> str:
    """Generate a processor-style payment identifier.

    Returns:
        Payment ID, e.g. payment_a1b2c3d4e5f6a7b8_1700000000000
    """
    timestamp = int(time.time() * 1000)
    return f"payment_{uuid.uuid4().hex[:16]}_{timestamp}"


def validate_subscription_id(subscription_id: str) -> bool:
    """Check subscription ID format."""
    if not subscription_id or not isinstance(subscription_id, str):
        return False
    return bool(_SUBSCRIPTION_ID_PATTERN.match(subscription_id))


def validate_payment_id(payment_id: str) -> bool:
    """Check payment ID format."""
    if not payment_id or not isinstance(payment_id, str):
        return False
    return bool(_PAYMENT_ID_PATTERN.match(payment_id))
