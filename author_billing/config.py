"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from author_billing.models.config import (
    AuthorDefinition,
    BillingConfig,
    DiscountDefinition,
    EventsConfig,
    GatewayConfig,
    SweeperConfig,
)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads billing.yaml and provides validated access to:
    - Author pricing seeds and discount codes
    - Payment gateway settings
    - Sweeper schedule
    - Lifecycle event publishing
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._billing_config: Optional[BillingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._billing_config = BillingConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    @property
    def billing(self) -> BillingConfig:
        """Get validated billing configuration."""
        if self._billing_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._billing_config

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def currency(self) -> str:
        """Settlement currency (e.g., "RUB")."""
        return self.billing.currency

    @property
    def lifetime_years(self) -> int:
        """Far-future horizon used for lifetime plans."""
        return self.billing.lifetime_years

    @property
    def id_prefix(self) -> str:
        """Prefix for generated subscription IDs."""
        return self.billing.id_prefix

    @property
    def authors(self) -> list[AuthorDefinition]:
        """Author pricing seeds."""
        return self.billing.authors

    @property
    def discounts(self) -> list[DiscountDefinition]:
        """Configured discount codes."""
        return self.billing.discounts

    @property
    def gateway_settings(self) -> GatewayConfig:
        """Payment gateway settings."""
        return self.billing.gateway

    @property
    def sweeper_settings(self) -> SweeperConfig:
        """Expiration sweeper schedule."""
        return self.billing.sweeper

    @property
    def events_settings(self) -> EventsConfig:
        """Lifecycle event publishing settings."""
        return self.billing.events

    def get_author_definition(self, author_id: str) -> Optional[AuthorDefinition]:
        """Get an author seed by ID, or None."""
        for author in self.billing.authors:
            if author.author_id == author_id:
                return author
        return None

    def reload(self) -> None:
        """Reload configuration from disk.

        Useful for development when billing.yaml is modified.
        """
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()
