from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Admission control settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Redis settings (optional, in-memory store otherwise)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_seconds: float = 0.25  # Per round trip; timeout fails open

    # Token bucket settings
    rate_limit_rate: float = 100.0  # Tokens refilled per second
    rate_limit_capacity: int = 500  # Burst size
    rate_limit_requested: int = 1  # Tokens consumed per check
    rate_limit_key_prefix: str = "ratelimit"

    # Per-identity concurrency settings
    concurrency_capacity: int = 10
    concurrency_ttl_seconds: int = 60  # Abandoned slots are pruned after this
    concurrency_key_prefix: str = "concurrency"

    # Fleet load shedding settings
    fleet_capacity: int = 1000
    fleet_identity: str = "__fleet__"

    # Worker utilization shedding settings
    shed_good_threshold: float = 0.7
    shed_bad_threshold: float = 0.8
    shed_full_seconds: float = 120.0  # Zero to full shedding at 100% utilization
    shed_grace_seconds: float = 28.0  # Max catch-up integrated by one check
    utilization_poll_interval_seconds: float = 8.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "store_timeout_seconds",
        "rate_limit_rate",
        "shed_full_seconds",
        "shed_grace_seconds",
        "utilization_poll_interval_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate rates and durations are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator(
        "rate_limit_capacity",
        "rate_limit_requested",
        "concurrency_capacity",
        "concurrency_ttl_seconds",
        "fleet_capacity",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate capacities are at least 1."""
        if v < 1:
            raise ValueError("capacity values must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_shed_thresholds(self) -> "Settings":
        """Validate 0 < good < bad < 1."""
        if not 0 < self.shed_good_threshold < self.shed_bad_threshold < 1:
            raise ValueError(
                "shedding thresholds must satisfy 0 < good < bad < 1"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
