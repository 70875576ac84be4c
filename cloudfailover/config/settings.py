"""Process settings loaded from environment variables (and a local .env file)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from cloudfailover import constants
from cloudfailover.errors import ConfigurationError

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration."""

    # Declaration persistence
    declaration_path: str = field(default_factory=lambda: os.environ.get(
        "CFO_DECLARATION_PATH", "/var/lib/cloud-failover/declaration.json"))

    # Local device (iControl REST)
    device_host: str = field(default_factory=lambda: os.environ.get("CFO_DEVICE_HOST", "localhost"))
    device_port: int = 443
    device_user: str = field(default_factory=lambda: os.environ.get("CFO_DEVICE_USER", "admin"))
    device_password: str = field(default_factory=lambda: os.environ.get("CFO_DEVICE_PASSWORD", "admin"))
    device_timeout_s: float = 30.0

    # HTTP control surface
    api_host: str = field(default_factory=lambda: os.environ.get("CFO_API_HOST", "127.0.0.1"))
    api_port: int = 8100
    api_token: str = field(default_factory=lambda: os.environ.get("CFO_API_TOKEN", ""))

    # Cloud API retry policy
    cloud_retry_attempts: int = constants.MAX_RETRIES
    cloud_retry_interval_s: float = constants.RETRY_INTERVAL_S

    # Optional region override, otherwise read from instance metadata
    aws_region: str = field(default_factory=lambda: os.environ.get("CFO_AWS_REGION", ""))

    # Logging
    log_dir: str = field(default_factory=lambda: os.environ.get("CFO_LOG_DIR", "/var/log/cloud-failover"))
    log_level: str = field(default_factory=lambda: os.environ.get("CFO_LOG_LEVEL", "INFO"))
    log_retention_days: int = 7

    @classmethod
    def from_env(cls) -> Settings:
        """Create settings from environment, raising on malformed numeric values."""
        return cls(
            device_port=_env_int("CFO_DEVICE_PORT", 443),
            device_timeout_s=_env_float("CFO_DEVICE_TIMEOUT_S", 30.0),
            api_port=_env_int("CFO_API_PORT", 8100),
            cloud_retry_attempts=_env_int("CFO_CLOUD_RETRY_ATTEMPTS", constants.MAX_RETRIES),
            cloud_retry_interval_s=_env_float("CFO_CLOUD_RETRY_INTERVAL_S", constants.RETRY_INTERVAL_S),
            log_retention_days=_env_int("CFO_LOG_RETENTION_DAYS", 7),
        )
