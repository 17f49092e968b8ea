"""Configuration for the trust kernel.

Settings are read from environment variables prefixed ``TRUST_KERNEL_``
or from a ``.env`` file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from trust_kernel.models.trust import TrustWeights


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TRUST_KERNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: str = Field(
        default=":memory:",
        description="SQLite database path; ':memory:' for an ephemeral store",
    )

    # Trust policy
    cold_start_trust_total: int = Field(
        default=70,
        ge=0,
        le=100,
        description="Trust total given to a tenant that has no snapshot yet",
    )
    trust_weights: TrustWeights = Field(
        default_factory=TrustWeights,
        description="Relative weights of the trust sub-signals",
    )
    trust_recompute_schedule: str = Field(
        default="0 * * * *",
        description="Cron expression of the external score recomputation job",
    )

    # Campaigns
    max_dry_run_recipients: int = Field(
        default=50,
        description="Maximum DRY_RUN send receipts written per campaign",
    )
    max_suppressed_receipts: int = Field(
        default=200,
        description="Maximum SUPPRESSED send receipts written per campaign",
    )

    # Receipts
    receipt_list_limit_max: int = Field(
        default=200,
        description="Upper bound on receipts returned by a single listing",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(
        default=False,
        description="Render log lines as JSON instead of console key/values",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
