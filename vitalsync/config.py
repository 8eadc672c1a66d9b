"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Clinical thresholds are configuration, never hard-coded in views
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from vitalsync.domain.models import METRIC_UNITS, ReferenceRange, VitalMetric

# Load environment variables from .env file
load_dotenv()


DEFAULT_REFERENCE_RANGES: dict[VitalMetric, ReferenceRange] = {
    metric: ReferenceRange(metric=metric, low=low, high=high, unit=METRIC_UNITS[metric])
    for metric, (low, high) in {
        VitalMetric.HEART_RATE: (60.0, 100.0),
        VitalMetric.BLOOD_PRESSURE: (90.0, 140.0),
        VitalMetric.TEMPERATURE: (97.0, 99.0),
        VitalMetric.OXYGEN_SATURATION: (95.0, 100.0),
    }.items()
}


class APIConfig(BaseModel):
    """REST and push endpoints of the system of record."""

    base_url: str = Field(default="http://localhost:5000/api", description="REST API base URL")
    socket_url: str = Field(default="ws://localhost:5000/ws", description="Push channel URL")
    token: str | None = Field(default=None, description="Bearer credential for the session")
    timeout_seconds: float = Field(default=10.0, gt=0.0, description="Per-request timeout")


class ConnectionConfig(BaseModel):
    """Reconnect policy for the persistent push connection."""

    base_delay_seconds: float = Field(default=1.0, gt=0.0, description="First backoff delay")
    max_delay_seconds: float = Field(default=30.0, gt=0.0, description="Backoff delay cap")
    multiplier: float = Field(default=2.0, ge=1.0, description="Exponential growth factor")
    jitter: bool = Field(default=True, description="Add +/-25% random variation to delays")
    stable_after_seconds: float = Field(
        default=30.0, ge=0.0, description="Connected time after which backoff resets"
    )
    max_reconnect_attempts: int | None = Field(
        default=None, gt=0, description="Give up after this many failed attempts (None = never)"
    )

    @model_validator(mode="after")
    def cap_not_below_base(self) -> "ConnectionConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before reconnect attempt `attempt` (0-indexed), without jitter."""
        return min(self.max_delay_seconds, self.base_delay_seconds * self.multiplier**attempt)


class CacheConfig(BaseModel):
    """Pull scheduling for the subscription cache."""

    refresh_interval_seconds: float = Field(
        default=30.0, gt=0.0, description="Periodic refetch interval for observed keys"
    )
    invalidation_debounce_seconds: float = Field(
        default=0.05, ge=0.0, description="Delay collapsing bursts of invalidations per key"
    )
    tombstone_retention_seconds: float = Field(
        default=300.0, gt=0.0, description="How long a dismissed alert is remembered without a newer alert list"
    )


class VitalsConfig(BaseModel):
    """Reference range table used by the reading classifier."""

    reference_ranges: dict[VitalMetric, ReferenceRange] = Field(
        default_factory=lambda: dict(DEFAULT_REFERENCE_RANGES)
    )

    @model_validator(mode="after")
    def ranges_match_metrics(self) -> "VitalsConfig":
        for metric, reference in self.reference_ranges.items():
            if reference.metric != metric:
                raise ValueError(f"range for {metric.value} is keyed under the wrong metric")
        return self


class RiskConfig(BaseModel):
    """The single table of risk thresholds shared by every dashboard view."""

    medication_threshold: int = Field(
        default=3, ge=0, description="More medications than this raises risk to medium"
    )
    history_length_threshold: int = Field(
        default=80, ge=0, description="Longer medical history than this raises risk to medium"
    )


class PersistenceConfig(BaseModel):
    """Durable local fallback for alert state across reloads."""

    enabled: bool = Field(default=True, description="Mirror the alert list to disk")
    path: str = Field(default="./.vitalsync/alerts.json", description="Snapshot file path")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    api: APIConfig = Field(default_factory=APIConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    vitals: VitalsConfig = Field(default_factory=VitalsConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _parse_range(metric: VitalMetric, raw: str | None) -> ReferenceRange:
    default = DEFAULT_REFERENCE_RANGES[metric]
    if not raw:
        return default
    name = f"RANGE_{metric.value.upper()}"
    try:
        low, high = (float(part) for part in raw.split(","))
    except ValueError as e:
        raise ValueError(f"{name} must be two numbers as 'low,high', got {raw!r}") from e
    return ReferenceRange(metric=metric, low=low, high=high, unit=default.unit)


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    api_config = APIConfig(
        base_url=os.getenv("API_URL", "http://localhost:5000/api"),
        socket_url=os.getenv("SOCKET_URL", "ws://localhost:5000/ws"),
        token=os.getenv("API_TOKEN") or None,
        timeout_seconds=float(os.getenv("API_TIMEOUT_SECONDS", "10.0")),
    )

    max_attempts = os.getenv("RECONNECT_MAX_ATTEMPTS")
    connection_config = ConnectionConfig(
        base_delay_seconds=float(os.getenv("RECONNECT_BASE_DELAY_SECONDS", "1.0")),
        max_delay_seconds=float(os.getenv("RECONNECT_MAX_DELAY_SECONDS", "30.0")),
        jitter=_parse_bool(os.getenv("RECONNECT_JITTER"), True),
        stable_after_seconds=float(os.getenv("RECONNECT_STABLE_AFTER_SECONDS", "30.0")),
        max_reconnect_attempts=int(max_attempts) if max_attempts else None,
    )

    cache_config = CacheConfig(
        refresh_interval_seconds=float(os.getenv("REFRESH_INTERVAL_SECONDS", "30.0")),
        invalidation_debounce_seconds=float(os.getenv("INVALIDATION_DEBOUNCE_SECONDS", "0.05")),
        tombstone_retention_seconds=float(os.getenv("TOMBSTONE_RETENTION_SECONDS", "300.0")),
    )

    # RANGE_HEART_RATE="55,105" overrides a single metric
    vitals_config = VitalsConfig(
        reference_ranges={
            metric: _parse_range(metric, os.getenv(f"RANGE_{metric.value.upper()}"))
            for metric in VitalMetric
        }
    )

    risk_config = RiskConfig(
        medication_threshold=int(os.getenv("RISK_MEDICATION_THRESHOLD", "3")),
        history_length_threshold=int(os.getenv("RISK_HISTORY_LENGTH_THRESHOLD", "80")),
    )

    persistence_config = PersistenceConfig(
        enabled=_parse_bool(os.getenv("PERSISTENCE_ENABLED"), True),
        path=os.getenv("PERSISTENCE_PATH", "./.vitalsync/alerts.json"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        api=api_config,
        connection=connection_config,
        cache=cache_config,
        vitals=vitals_config,
        risk=risk_config,
        persistence=persistence_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if not config.api.token:
            print("No API_TOKEN set; the push channel will connect without a credential")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nENDPOINTS")
    print(f"REST API: {config.api.base_url}")
    print(f"Push Channel: {config.api.socket_url}")

    print("\nRECONNECT POLICY")
    print(f"Base Delay: {config.connection.base_delay_seconds}s")
    print(f"Max Delay: {config.connection.max_delay_seconds}s")
    print(f"Max Attempts: {config.connection.max_reconnect_attempts or 'unlimited'}")

    print("\nREFERENCE RANGES")
    for metric, reference in config.vitals.reference_ranges.items():
        print(f"{metric.value}: {reference.low:g}-{reference.high:g} {reference.unit}")

    print("\nRISK THRESHOLDS")
    print(f"Medications: > {config.risk.medication_threshold}")
    print(f"History Length: > {config.risk.history_length_threshold}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
