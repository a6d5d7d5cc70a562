"""Timeout settings configuration for ledger migration operations.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MigrationTimeoutSettings(BaseSettings):
    """Network and bridge timeout configuration."""

    rpc_timeout: float = Field(
        30.0, alias="RPC_TIMEOUT", description="Single ledger/gateway request timeout in seconds"
    )

    receipt_timeout: float = Field(
        300.0, alias="RECEIPT_TIMEOUT", description="Wait for transaction inclusion in seconds"
    )

    receipt_poll_interval: float = Field(
        2.0, alias="RECEIPT_POLL_INTERVAL", description="Receipt polling interval in seconds"
    )

    bridge_poll_interval: float = Field(
        10.0, alias="BRIDGE_POLL_INTERVAL", description="Secondary balance polling interval in seconds"
    )

    bridge_timeout: float = Field(
        1800.0, alias="BRIDGE_TIMEOUT", description="Maximum wait for relayed funds in seconds"
    )

    transient_retries: int = Field(
        3, alias="TRANSIENT_RETRIES", description="Attempts for one-off ledger reads before giving up"
    )

    transient_retry_delay: float = Field(
        1.0, alias="TRANSIENT_RETRY_DELAY", description="Base delay between those attempts in seconds"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


# Global settings instance
timeout_settings = MigrationTimeoutSettings()

# Timeout constants for easy import
RPC_TIMEOUT: float = timeout_settings.rpc_timeout
RECEIPT_TIMEOUT: float = timeout_settings.receipt_timeout
RECEIPT_POLL_INTERVAL: float = timeout_settings.receipt_poll_interval
BRIDGE_POLL_INTERVAL: float = timeout_settings.bridge_poll_interval
BRIDGE_TIMEOUT: float = timeout_settings.bridge_timeout
TRANSIENT_RETRIES: int = timeout_settings.transient_retries
TRANSIENT_RETRY_DELAY: float = timeout_settings.transient_retry_delay
