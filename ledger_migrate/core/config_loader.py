"""Configuration management for the ledger migration tool."""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from ..constants import (
    DEFAULT_DIVISOR,
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_PARALLELISM,
    DEFAULT_SYNC_BATCH_SIZE,
)
from ..utils import normalize_address
from .exceptions import ConfigurationError

logger = structlog.get_logger()


class LedgerEndpoints(BaseModel):
    """Where the ledgers, the signing gateway and the membership data live."""

    legacy_ledger: str | None = None  # Address of the ledger being migrated from
    new_ledger: str | None = None  # Address of the replacement ledger
    factory_address: str | None = None  # Deploys the new ledger when none is given
    signer_address: str | None = None  # Operating wallet held by the gateway
    gateway_url: str | None = None
    membership_url: str | None = None
    members_file: str | None = None  # Offline membership snapshot, used instead of the API

    @field_validator("legacy_ledger", "new_ledger", "factory_address", "signer_address", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        return normalize_address(value) if value else None


class MigrationOptions(BaseModel):
    """Operator controls for a migration run."""

    divisor: int = Field(default=DEFAULT_DIVISOR, ge=1)
    parallelism: int = Field(default=DEFAULT_PARALLELISM, ge=1)
    batch_size: int | None = Field(default=None, ge=1)  # Accounts per round, defaults to parallelism
    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=0)
    skip_funding_check: bool = False
    skip_member_sync: bool = False
    dry_run: bool = False
    whitelist: list[str] = Field(default_factory=list)
    sync_batch_size: int = Field(default=DEFAULT_SYNC_BATCH_SIZE, ge=1)
    max_transient_failures: int = Field(default=10, ge=1)
    max_rounds: int | None = Field(default=None, ge=1)
    progress_db: str = "migration-progress.db"
    report_path: str | None = None

    @field_validator("whitelist", mode="before")
    @classmethod
    def _normalize_whitelist(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [v for v in re.split(r"[,\s]+", value) if v]
        return [normalize_address(v) for v in value or []]

    @property
    def round_size(self) -> int:
        return self.batch_size or self.parallelism


class MigrationConfig(BaseSettings):
    """Main configuration for a migration run."""

    ledgers: LedgerEndpoints = Field(default_factory=LedgerEndpoints)
    options: MigrationOptions = Field(default_factory=MigrationOptions)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    config_file: str = Field(default="migration.yml", alias="MIGRATION_CONFIG")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_for_run(self) -> None:
        """Check that everything a live run needs is present.

        Raises:
            ConfigurationError: Listing every missing setting
        """
        missing = [
            name
            for name in ("legacy_ledger", "signer_address", "gateway_url")
            if not getattr(self.ledgers, name)
        ]
        if not (self.ledgers.new_ledger or self.ledgers.factory_address):
            missing.append("new_ledger or factory_address")
        if not (self.ledgers.membership_url or self.ledgers.members_file):
            missing.append("membership_url or members_file")
        if missing:
            raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")
        if self.ledgers.legacy_ledger == self.ledgers.new_ledger:
            raise ConfigurationError("Legacy and new ledger addresses must differ")
        if self.options.dry_run and not self.ledgers.new_ledger:
            raise ConfigurationError("A dry run can't deploy the new ledger; pass its address")


# Environment variables that override individual settings
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "MIGRATION_LEGACY_LEDGER": ("ledgers", "legacy_ledger"),
    "MIGRATION_NEW_LEDGER": ("ledgers", "new_ledger"),
    "MIGRATION_FACTORY_ADDRESS": ("ledgers", "factory_address"),
    "MIGRATION_SIGNER_ADDRESS": ("ledgers", "signer_address"),
    "MIGRATION_GATEWAY_URL": ("ledgers", "gateway_url"),
    "MIGRATION_MEMBERSHIP_URL": ("ledgers", "membership_url"),
    "MIGRATION_MEMBERS_FILE": ("ledgers", "members_file"),
    "MIGRATION_DIVISOR": ("options", "divisor"),
    "MIGRATION_PARALLELISM": ("options", "parallelism"),
    "MIGRATION_DUST_THRESHOLD": ("options", "dust_threshold"),
    "MIGRATION_PROGRESS_DB": ("options", "progress_db"),
}


def load_config(config_path: str | None = None) -> MigrationConfig:
    """Load configuration from multiple sources (synchronous interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration

    Note:
        For async code, use load_config_async() instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(load_config_async(config_path))
    raise RuntimeError(
        "load_config() cannot be called from within an async context. "
        "Use 'await load_config_async()' instead."
    )


async def load_config_async(config_path: str | None = None) -> MigrationConfig:
    """Load configuration from multiple sources (async interface).

    Precedence, lowest first: defaults, YAML file, environment variables.

    Raises:
        ConfigurationError: If the file or any value is invalid
    """
    load_dotenv()

    path = Path(config_path or os.getenv("MIGRATION_CONFIG", "migration.yml"))
    data: dict[str, Any] = {"ledgers": {}, "options": {}}
    if path.exists():
        yaml_config = await _load_yaml_config(path)
        sections = {k: v for k, v in yaml_config.items() if k in ("ledgers", "options", "log_level") and v}
        _merge_config(data, sections)
    elif config_path:
        raise ConfigurationError(f"Config file not found: {path}")

    _apply_env_overrides(data)

    try:
        config = MigrationConfig(
            ledgers=LedgerEndpoints(**data["ledgers"]),
            options=MigrationOptions(**data["options"]),
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if "log_level" in data:
        config.log_level = str(data["log_level"])
    config.config_file = str(path)
    return config


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Apply environment variable overrides."""
    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            data[section][key] = value
    if whitelist := os.getenv("MIGRATION_WHITELIST"):
        data["options"]["whitelist"] = whitelist
    if os.getenv("LOG_LEVEL"):
        data["log_level"] = os.getenv("LOG_LEVEL")


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)
        content = _expand_yaml_config(content)
        loaded = yaml.safe_load(content)
        if not isinstance(loaded, dict):
            return {}
        return loaded
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e


def _expand_yaml_config(content: str) -> str:
    """Securely expand environment variables with allowlist."""

    allowed_env_vars = {
        "HOME",
        "USER",
        "XDG_DATA_HOME",
        "MIGRATION_GATEWAY_URL",
        "MIGRATION_MEMBERSHIP_URL",
        "MIGRATION_SIGNER_ADDRESS",
        "MIGRATION_DATA_DIR",
    }

    def replace_var(match):
        var_name = match.group(1)
        if var_name in allowed_env_vars:
            return os.getenv(var_name, match.group(0))  # Keep original if not found
        logger.warning(
            "Environment variable not in allowlist, skipping expansion", variable=var_name
        )
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)


def _merge_config(base: dict[str, Any], update: dict[str, Any]) -> None:
    """Merge configuration dictionaries with deep merging."""
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_config(base[key], value)
        else:
            base[key] = value
