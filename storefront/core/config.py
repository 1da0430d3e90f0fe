"""
Configuration management for the storefront backend.

Loads settings from a YAML config file, then applies environment overrides.
Instances are passed explicitly to the app factory and services; there is no
process-wide config object.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()


def _project_root() -> Path:
    """Return project root (parent of storefront package)."""
    return Path(__file__).resolve().parent.parent.parent


DEFAULT_CONFIG_PATH = _project_root() / "config" / "default.yaml"


@dataclass
class StorefrontConfig:
    """Configuration for the storefront system."""

    # Database
    database_url: str = "sqlite:///./storefront.db"
    echo_sql: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    statement_timeout_ms: int = 30000   # connection-level ceiling (Postgres only)

    # Checkout
    checkout_max_retries: int = 3
    checkout_retry_backoff_seconds: float = 0.05
    shipping_rates: Dict[str, int] = field(default_factory=dict)  # delivery_zone -> cents

    # Guest carts
    guest_cookie_name: str = "cartSessionId"
    guest_cookie_max_age_days: int = 30

    # Runtime
    env: str = "development"
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("production", "prod")

    def shipping_cost_for(self, delivery_zone: Optional[str]) -> int:
        """Shipping cost in cents for a delivery zone; unknown zones ship free."""
        if not delivery_zone:
            return 0
        return int(self.shipping_rates.get(delivery_zone, 0))

    @classmethod
    def from_yaml(cls, config_path: Optional[Path] = None) -> "StorefrontConfig":
        """Load configuration from YAML file."""
        path = config_path or DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        database_config = data.get('database', {})
        checkout_config = data.get('checkout', {})
        cart_config = data.get('cart', {})
        runtime_config = data.get('runtime', {})

        return cls(
            database_url=database_config.get('url', 'sqlite:///./storefront.db'),
            echo_sql=database_config.get('echo', False),
            pool_size=database_config.get('pool_size', 10),
            max_overflow=database_config.get('max_overflow', 20),
            statement_timeout_ms=database_config.get('statement_timeout_ms', 30000),
            checkout_max_retries=checkout_config.get('max_retries', 3),
            checkout_retry_backoff_seconds=checkout_config.get('retry_backoff_seconds', 0.05),
            shipping_rates=dict(checkout_config.get('shipping_rates', {}) or {}),
            guest_cookie_name=cart_config.get('guest_cookie_name', 'cartSessionId'),
            guest_cookie_max_age_days=cart_config.get('guest_cookie_max_age_days', 30),
            env=runtime_config.get('env', 'development'),
            log_level=runtime_config.get('log_level', 'INFO'),
        )

    def with_env_overrides(self) -> "StorefrontConfig":
        """Apply DATABASE_URL, LOG_LEVEL, ENV and STATEMENT_TIMEOUT_MS from the environment."""
        if os.getenv("DATABASE_URL"):
            self.database_url = os.environ["DATABASE_URL"]
        if os.getenv("LOG_LEVEL"):
            self.log_level = os.environ["LOG_LEVEL"].upper()
        if os.getenv("ENV"):
            self.env = os.environ["ENV"]
        if os.getenv("STATEMENT_TIMEOUT_MS"):
            self.statement_timeout_ms = int(os.environ["STATEMENT_TIMEOUT_MS"])
        return self


def load_config(config_path: Optional[Path] = None) -> StorefrontConfig:
    """Build a config from YAML defaults plus environment overrides."""
    return StorefrontConfig.from_yaml(config_path).with_env_overrides()
