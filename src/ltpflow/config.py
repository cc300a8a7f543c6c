"""
Configuration for the LTP ingestion service.

Loads environment variables (optionally from a .env file) into a flat,
typed configuration object shared by all components.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_INDICES = ["NIFTY", "BANKNIFTY", "FINNIFTY", "MIDCPNIFTY", "SENSEX"]

# Strike increments used by the exchange for each index's option chain
DEFAULT_STRIKE_DIFFS = {
    "NIFTY": 50.0,
    "BANKNIFTY": 100.0,
    "FINNIFTY": 50.0,
    "MIDCPNIFTY": 25.0,
    "SENSEX": 100.0,
}
FALLBACK_STRIKE_DIFF = 50.0


@dataclass
class IngestConfig:
    """
    Ingestion service configuration loaded from environment variables.

    Flat structure with sensible defaults; only the database location is
    required outside of test environments.
    """

    # Database Configuration
    database_url: Optional[str] = None
    db_pool_size: int = 10

    # MQTT Configuration
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: str = "ltpflow"
    mqtt_reconnect_delay: float = 1.0
    mqtt_max_reconnect_delay: float = 60.0

    # Instrument universe and option window
    index_prefix: str = "index"
    indices: List[str] = field(default_factory=lambda: list(DEFAULT_INDICES))
    strike_range: int = 10
    strike_diffs: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_STRIKE_DIFFS))
    expiry_dates: Dict[str, str] = field(default_factory=dict)

    # Token resolver
    resolver_base_url: str = "https://api.trado.trade"
    resolver_timeout: float = 10.0
    resolver_max_concurrency: int = 8

    # Batch persistence
    batch_size: int = 100
    batch_interval: float = 5.0  # seconds
    flush_timeout: float = 30.0  # seconds
    flush_retry_attempts: int = 3
    spill_path: Optional[str] = None

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    def get_strike_diff(self, index_name: str) -> float:
        """Strike increment for an index, falling back to the common 50-point step."""
        return self.strike_diffs.get(index_name.upper(), FALLBACK_STRIKE_DIFF)

    def get_expiry_date(self, index_name: str) -> Optional[str]:
        return self.expiry_dates.get(index_name.upper())

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If a value is out of range
        """
        if self.batch_size <= 0:
            raise ValueError("BATCH_SIZE must be positive")
        if self.batch_interval <= 0:
            raise ValueError("BATCH_INTERVAL must be positive")
        if self.flush_timeout <= 0:
            raise ValueError("FLUSH_TIMEOUT must be positive")
        if self.flush_retry_attempts < 1:
            raise ValueError("FLUSH_RETRY_ATTEMPTS must be >= 1")
        if self.strike_range < 0:
            raise ValueError("STRIKE_RANGE must be >= 0")
        if self.resolver_max_concurrency < 1:
            raise ValueError("RESOLVER_MAX_CONCURRENCY must be >= 1")
        if not self.indices:
            raise ValueError("INDICES cannot be empty")
        for index_name, diff in self.strike_diffs.items():
            if diff <= 0:
                raise ValueError(f"Strike increment for {index_name} must be positive, got {diff}")

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """
        Load configuration from environment variables.

        Returns:
            IngestConfig instance

        Raises:
            ValueError: If the database location is missing or a value is invalid
        """
        load_dotenv()

        environment = os.getenv("ENVIRONMENT", "local")

        database_url = os.getenv("DATABASE_URL") or _database_url_from_parts()
        if not database_url and environment != "test":
            raise ValueError("DATABASE_URL or DB_HOST/DB_USER/DB_NAME environment variables are required")

        indices = _parse_list(os.getenv("INDICES")) or list(DEFAULT_INDICES)

        # Per-index overrides: STRIKE_DIFF_NIFTY=50, EXPIRY_DATE_NIFTY=2025-01-30
        strike_diffs = dict(DEFAULT_STRIKE_DIFFS)
        expiry_dates: Dict[str, str] = {}
        for index_name in indices:
            diff = os.getenv(f"STRIKE_DIFF_{index_name}")
            if diff:
                strike_diffs[index_name] = float(diff)
            expiry = os.getenv(f"EXPIRY_DATE_{index_name}")
            if expiry:
                expiry_dates[index_name] = expiry.strip()

        config = cls(
            database_url=database_url,
            db_pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
            mqtt_host=os.getenv("MQTT_HOST", "localhost"),
            mqtt_port=int(os.getenv("MQTT_PORT", "1883")),
            mqtt_username=os.getenv("MQTT_USERNAME") or None,
            mqtt_password=os.getenv("MQTT_PASSWORD") or None,
            mqtt_client_id=os.getenv("MQTT_CLIENT_ID", "ltpflow"),
            mqtt_reconnect_delay=float(os.getenv("MQTT_RECONNECT_DELAY", "1.0")),
            mqtt_max_reconnect_delay=float(os.getenv("MQTT_MAX_RECONNECT_DELAY", "60.0")),
            index_prefix=os.getenv("INDEX_PREFIX", "index"),
            indices=indices,
            strike_range=int(os.getenv("STRIKE_RANGE", "10")),
            strike_diffs=strike_diffs,
            expiry_dates=expiry_dates,
            resolver_base_url=os.getenv("RESOLVER_BASE_URL", "https://api.trado.trade"),
            resolver_timeout=float(os.getenv("RESOLVER_TIMEOUT", "10")),
            resolver_max_concurrency=int(os.getenv("RESOLVER_MAX_CONCURRENCY", "8")),
            batch_size=int(os.getenv("BATCH_SIZE", "100")),
            batch_interval=float(os.getenv("BATCH_INTERVAL", "5.0")),
            flush_timeout=float(os.getenv("FLUSH_TIMEOUT", "30.0")),
            flush_retry_attempts=int(os.getenv("FLUSH_RETRY_ATTEMPTS", "3")),
            spill_path=os.getenv("SPILL_PATH") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

        config.validate()

        missing_expiry = [name for name in config.indices if name not in config.expiry_dates]
        if missing_expiry:
            logger.warning(
                f"No expiry date configured for {', '.join(missing_expiry)}; "
                f"option subscriptions will be skipped for these indices"
            )

        return config


def _parse_list(value: Optional[str]) -> List[str]:
    """Parse a comma-separated list into upper-cased, non-empty names."""
    if not value:
        return []
    return [item.strip().upper() for item in value.split(",") if item.strip()]


def _database_url_from_parts() -> Optional[str]:
    """Build a postgres DSN from DB_* variables when DATABASE_URL is absent."""
    host = os.getenv("DB_HOST")
    user = os.getenv("DB_USER")
    name = os.getenv("DB_NAME")
    if not (host and user and name):
        return None
    password = os.getenv("DB_PASSWORD", "")
    port = os.getenv("DB_PORT", "5432")
    auth = f"{user}:{password}" if password else user
    return f"postgresql://{auth}@{host}:{port}/{name}"
