"""
Stripe Configuration Management

Configuration for Stripe API keys, webhook secrets and environment-specific settings.
"""

import os
import logging
from dataclasses import dataclass
from enum import Enum

from .exceptions import ConfigurationException

logger = logging.getLogger(__name__)


class StripeEnvironment(str, Enum):
    """Stripe environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class StripeConfig:
    """Stripe configuration settings"""
    environment: StripeEnvironment
    secret_key: str
    webhook_secret: str

    # API settings
    api_version: str = "2023-10-16"
    max_retries: int = 3
    timeout: int = 30

    # Billing settings
    default_currency: str = "usd"

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.environment == StripeEnvironment.PRODUCTION:
            if not self.secret_key.startswith("sk_live_"):
                raise ConfigurationException("Production environment requires live secret key")
        elif not self.secret_key.startswith("sk_test_"):
            logger.warning("Non-production environment should use test secret key")

        if self.webhook_secret and not self.webhook_secret.startswith("whsec_"):
            raise ConfigurationException("Invalid webhook secret format")

    @property
    def is_production(self) -> bool:
        """Check if this is a production configuration"""
        return self.environment == StripeEnvironment.PRODUCTION


class StripeConfigManager:
    """Manages Stripe configuration across environments"""

    def __init__(self):
        self._config = None
        self._environment = self._detect_environment()

    def _detect_environment(self) -> StripeEnvironment:
        """Detect current environment"""
        env = os.getenv("BILLING_ENVIRONMENT", "development").lower()

        if env == "production":
            return StripeEnvironment.PRODUCTION
        elif env == "staging":
            return StripeEnvironment.STAGING
        else:
            return StripeEnvironment.DEVELOPMENT

    def get_config(self) -> StripeConfig:
        """Get Stripe configuration for current environment"""
        if self._config is None:
            self._config = self._load_config()

        return self._config

    def _load_config(self) -> StripeConfig:
        """Load configuration from environment variables"""
        if self._environment == StripeEnvironment.PRODUCTION:
            key_prefix = "STRIPE_LIVE_"
        else:
            key_prefix = "STRIPE_TEST_"

        secret_key = os.getenv(f"{key_prefix}SECRET_KEY")
        webhook_secret = os.getenv(f"{key_prefix}WEBHOOK_SECRET")

        if not secret_key:
            raise ConfigurationException(f"Missing {key_prefix}SECRET_KEY environment variable")

        config = StripeConfig(
            environment=self._environment,
            secret_key=secret_key,
            webhook_secret=webhook_secret or "",
            api_version=os.getenv("STRIPE_API_VERSION", "2023-10-16"),
            max_retries=int(os.getenv("STRIPE_MAX_RETRIES", "3")),
            timeout=int(os.getenv("STRIPE_TIMEOUT", "30")),
            default_currency=os.getenv("STRIPE_DEFAULT_CURRENCY", "usd").lower()
        )

        logger.info(f"Loaded Stripe configuration for {self._environment.value} environment")
        return config


# Global config manager instance
stripe_config_manager = StripeConfigManager()


def get_stripe_config() -> StripeConfig:
    """Get current Stripe configuration"""
    return stripe_config_manager.get_config()
