"""
State Reconstruction - Configuration.

============================================================
ENGINE CONFIGURATION
============================================================

Configurable pieces:
- Ledger addresses (package, farm, token locker, vaults)
- Transport settings for the RPC event source
- Epoch schedule limits, emission week length and on-chain time units
- Default allocation sets
- Health thresholds

Configuration can be loaded from:
- Default values
- Environment variables (optionally via a .env file)
- YAML config file

Config objects are passed explicitly; there is no global instance.

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from state_reconstruction.allocations import validate_allocations
from state_reconstruction.exceptions import ConfigurationError
from state_reconstruction.models import AllocationSet


logger = logging.getLogger(__name__)


ENV_PREFIX = "STATE_ENGINE_"

FARM_MODULE = "farm"
LOCKER_MODULE = "victory_token_locker"
FACTORY_MODULE = "factory"
EMISSION_MODULE = "global_emission_controller"


def _default_victory_allocations() -> AllocationSet:
    return AllocationSet(week=200, three_month=800, year=2500, three_year=6500)


def _default_sui_allocations() -> AllocationSet:
    return AllocationSet(week=1000, three_month=2000, year=3000, three_year=4000)


# =============================================================
# HEALTH
# =============================================================


@dataclass
class HealthConfig:
    """
    Thresholds for the dashboard health diagnostic.

    - HEALTHY: no issues
    - WARNING: 1..warning_max_issues issues
    - ERROR:   more than warning_max_issues issues
    """
    warning_max_issues: int = 2
    low_sui_reward_threshold: int = 1_000_000_000  # 1 SUI in MIST

    def __post_init__(self) -> None:
        if self.warning_max_issues < 1:
            raise ConfigurationError(
                "warning_max_issues must be at least 1",
                config_key="warning_max_issues",
            )
        if self.low_sui_reward_threshold < 0:
            raise ConfigurationError(
                "low_sui_reward_threshold must not be negative",
                config_key="low_sui_reward_threshold",
            )

    def to_dict(self) -> Dict[str, int]:
        return {
            "warning_max_issues": self.warning_max_issues,
            "low_sui_reward_threshold": self.low_sui_reward_threshold,
        }


# =============================================================
# MAIN CONFIGURATION
# =============================================================


@dataclass
class EngineConfig:
    """Main configuration for the reconstruction engine and its event source."""

    # Ledger addresses
    package_id: str = "0x1c4e4703ee8437fb0e6aff11d8e371a4ea2bab91dff917460c621411e5b1460a"
    farm_id: str = "0xb5ab79d892b77acef1f9274aed799a57ff05ee5a5c3a9f47b11fd6987781b04f"
    token_locker_id: str = "0xec61078a8a9f4d678c817a1f7d59624a029cc14a4567b38e45317c406404238a"
    locked_vault_id: str = "0x48922a823fab3638b4083e31682995c711991edb7b159eaf40ded6fd8b9ce952"
    victory_reward_vault_id: str = "0xa1672957106853989b1e3334b5d41516f14acbec023131bad9ad17b3d9c587db"
    sui_reward_vault_id: str = "0x944329b2b3cffc2c52a8a6cc3068696b6b88035da1a7b67fba6e19c31c61d7dc"

    # Transport
    rpc_url: str = "https://fullnode.testnet.sui.io:443"
    request_timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_backoff_base: float = 1.5
    event_page_limit: int = 50
    max_events_per_type: int = 1000

    # Schedule
    onchain_time_scale_ms: int = 1000  # Move payload timestamps are seconds
    max_epochs: int = 156  # three years of weekly epochs
    emission_week_ms: int = 604_800_000

    # Allocation defaults when the locker object omits a field
    default_victory_allocations: AllocationSet = field(default_factory=_default_victory_allocations)
    default_sui_allocations: AllocationSet = field(default_factory=_default_sui_allocations)

    health: HealthConfig = field(default_factory=HealthConfig)

    def event_type(self, module: str, name: str) -> str:
        """Fully-qualified Move event type, e.g. "0x..::farm::PoolCreated"."""
        return f"{self.package_id}::{module}::{name}"

    def validate(self) -> None:
        """Raise ConfigurationError on unusable values."""
        if not self.package_id:
            raise ConfigurationError("package_id is required", config_key="package_id")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError(
                "request_timeout_seconds must be positive",
                config_key="request_timeout_seconds",
            )
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must be at least 1", config_key="max_retries")
        if self.event_page_limit < 1 or self.max_events_per_type < 1:
            raise ConfigurationError(
                "event limits must be positive",
                config_key="event_page_limit",
            )
        if self.onchain_time_scale_ms < 1:
            raise ConfigurationError(
                "onchain_time_scale_ms must be positive",
                config_key="onchain_time_scale_ms",
            )
        if self.max_epochs < 1:
            raise ConfigurationError("max_epochs must be positive", config_key="max_epochs")
        if self.emission_week_ms < 1:
            raise ConfigurationError("emission_week_ms must be positive", config_key="emission_week_ms")

        for key in ("default_victory_allocations", "default_sui_allocations"):
            result = validate_allocations(getattr(self, key))
            if not result.valid:
                raise ConfigurationError(
                    f"{key} is invalid: {'; '.join(result.errors)}",
                    config_key=key,
                )

    @classmethod
    def from_env(cls, dotenv_path: Optional[Union[str, Path]] = None) -> "EngineConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - STATE_ENGINE_PACKAGE_ID
        - STATE_ENGINE_FARM_ID
        - STATE_ENGINE_TOKEN_LOCKER_ID
        - STATE_ENGINE_LOCKED_VAULT_ID
        - STATE_ENGINE_VICTORY_REWARD_VAULT_ID
        - STATE_ENGINE_SUI_REWARD_VAULT_ID
        - STATE_ENGINE_RPC_URL
        - STATE_ENGINE_REQUEST_TIMEOUT
        - STATE_ENGINE_MAX_RETRIES
        - STATE_ENGINE_MAX_EVENTS_PER_TYPE
        - STATE_ENGINE_MAX_EPOCHS
        - STATE_ENGINE_EMISSION_WEEK_MS
        - STATE_ENGINE_WARNING_MAX_ISSUES
        """
        load_dotenv(dotenv_path)
        config = cls()

        for attr in (
            "package_id",
            "farm_id",
            "token_locker_id",
            "locked_vault_id",
            "victory_reward_vault_id",
            "sui_reward_vault_id",
            "rpc_url",
        ):
            value = os.getenv(f"{ENV_PREFIX}{attr.upper()}")
            if value:
                setattr(config, attr, value)

        try:
            if os.getenv(f"{ENV_PREFIX}REQUEST_TIMEOUT"):
                config.request_timeout_seconds = float(os.getenv(f"{ENV_PREFIX}REQUEST_TIMEOUT"))
            if os.getenv(f"{ENV_PREFIX}MAX_RETRIES"):
                config.max_retries = int(os.getenv(f"{ENV_PREFIX}MAX_RETRIES"))
            if os.getenv(f"{ENV_PREFIX}MAX_EVENTS_PER_TYPE"):
                config.max_events_per_type = int(os.getenv(f"{ENV_PREFIX}MAX_EVENTS_PER_TYPE"))
            if os.getenv(f"{ENV_PREFIX}MAX_EPOCHS"):
                config.max_epochs = int(os.getenv(f"{ENV_PREFIX}MAX_EPOCHS"))
            if os.getenv(f"{ENV_PREFIX}EMISSION_WEEK_MS"):
                config.emission_week_ms = int(os.getenv(f"{ENV_PREFIX}EMISSION_WEEK_MS"))
            if os.getenv(f"{ENV_PREFIX}WARNING_MAX_ISSUES"):
                config.health = HealthConfig(
                    warning_max_issues=int(os.getenv(f"{ENV_PREFIX}WARNING_MAX_ISSUES")),
                    low_sui_reward_threshold=config.health.low_sui_reward_threshold,
                )
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid numeric environment value: {e}",
                original_error=e,
            ) from e

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load configuration from a YAML file; falls back to defaults on failure."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return cls.from_dict(data)
        except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load YAML config from {path}: {e}")
            return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build from a plain mapping, ignoring unknown keys."""
        config = cls()
        for key, value in data.items():
            if key == "health" and isinstance(value, dict):
                config.health = HealthConfig(**value)
            elif key in ("default_victory_allocations", "default_sui_allocations") and isinstance(value, dict):
                setattr(config, key, AllocationSet(**{k: v for k, v in value.items() if k != "total"}))
            elif hasattr(config, key) and not key.startswith("_"):
                setattr(config, key, value)
            else:
                logger.debug(f"Ignoring unknown config key '{key}'")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_id": self.package_id,
            "farm_id": self.farm_id,
            "token_locker_id": self.token_locker_id,
            "locked_vault_id": self.locked_vault_id,
            "victory_reward_vault_id": self.victory_reward_vault_id,
            "sui_reward_vault_id": self.sui_reward_vault_id,
            "rpc_url": self.rpc_url,
            "request_timeout_seconds": self.request_timeout_seconds,
            "max_retries": self.max_retries,
            "retry_backoff_base": self.retry_backoff_base,
            "event_page_limit": self.event_page_limit,
            "max_events_per_type": self.max_events_per_type,
            "onchain_time_scale_ms": self.onchain_time_scale_ms,
            "max_epochs": self.max_epochs,
            "emission_week_ms": self.emission_week_ms,
            "default_victory_allocations": self.default_victory_allocations.to_dict(),
            "default_sui_allocations": self.default_sui_allocations.to_dict(),
            "health": self.health.to_dict(),
        }
