"""Discount repository - loads and resolves promotional codes.

Loads from the discounts section of config/billing.yaml. Codes are matched
case-insensitively.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from author_billing.config import Config, get_config
from author_billing.logging_config import get_logger
from author_billing.models import DiscountDefinition

logger = get_logger(__name__)


class DiscountRepository:
    """Repository for discount code definitions.

    Read-only after load; thread-safe for lookups.
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize discount repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
        """
        self._config = config or get_config()
        self._discounts_by_code: Dict[str, DiscountDefinition] = {}
        self._load_discounts()

    def _load_discounts(self) -> None:
        self._discounts_by_code.clear()
        for discount in self._config.discounts:
            self._discounts_by_code[discount.code.upper()] = discount

    def find_by_code(self, code: str) -> Optional[DiscountDefinition]:
        """Find discount definition by code (returns None if not found)."""
        return self._discounts_by_code.get(code.strip().upper())

    def resolve(self, code: Optional[str], author_id: str, at: datetime) -> Optional[DiscountDefinition]:
        """Resolve a code that may be redeemed for an author at a given instant.

        Unknown, inactive, expired and foreign-author codes resolve to None;
        the purchase then proceeds at full price.

        Args:
            code: Code entered by the subscriber (None or blank means no code)
            author_id: Author being subscribed to
            at: Redemption instant

        Returns:
            DiscountDefinition if redeemable, None otherwise
        """
        if not code or not code.strip():
            return None

        discount = self.find_by_code(code)
        rejection = None
        if discount is None:
            rejection = "unknown"
        elif not discount.active:
            rejection = "inactive"
        elif discount.author_id is not None and discount.author_id != author_id:
            rejection = "wrong_author"
        elif discount.valid_until is not None and _as_utc(discount.valid_until) < at:
            rejection = "expired"

        if rejection:
            logger.warning(
                "discount_code_ignored",
                discount_code=code,
                author_id=author_id,
                rejection=rejection,
            )
            return None
        return discount

    def get_all(self) -> List[DiscountDefinition]:
        """Get all discount definitions."""
        return list(self._discounts_by_code.values())

    def reload(self) -> None:
        """Reload discount definitions from configuration."""
        self._config.reload()
        self._load_discounts()

    def __len__(self) -> int:
        return len(self._discounts_by_code)

    def __contains__(self, code: str) -> bool:
        return code.strip().upper() in self._discounts_by_code

    def __repr__(self) -> str:
        return f"DiscountRepository(discounts={len(self._discounts_by_code)})"


def _as_utc(value: datetime) -> datetime:
    # YAML timestamps without an offset are read as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# Global repository instance
_repository_instance: Optional[DiscountRepository] = None


def get_discount_repository(config: Optional[Config] = None) -> DiscountRepository:
    """Get global discount repository instance (singleton).

    Args:
        config: Optional configuration instance (only used on first call)
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = DiscountRepository(config)
    return _repository_instance


def reload_discount_repository() -> None:
    """Reload global discount repository from configuration."""
    global _repository_instance
    if _repository_instance:
        _repository_instance.reload()
    else:
        _repository_instance = DiscountRepository()
