"""Tests for engine configuration loading and validation."""

import os

import pytest

from state_reconstruction.config import ENV_PREFIX, EngineConfig, HealthConfig
from state_reconstruction.exceptions import ConfigurationError
from state_reconstruction.models import AllocationSet


@pytest.fixture
def isolated_env(monkeypatch):
    """Private copy of os.environ so .env loading cannot leak between tests."""
    environ = {k: v for k, v in os.environ.items() if not k.startswith(ENV_PREFIX)}
    monkeypatch.setattr(os, "environ", environ)
    return environ


class TestDefaults:
    """Tests for default values and validate()."""

    def test_defaults_are_valid(self):
        config = EngineConfig()

        config.validate()

        assert config.max_retries == 2
        assert config.retry_backoff_base == 1.5
        assert config.onchain_time_scale_ms == 1000
        assert config.default_victory_allocations == AllocationSet(200, 800, 2500, 6500)
        assert config.default_sui_allocations == AllocationSet(1000, 2000, 3000, 4000)

    def test_event_type(self):
        config = EngineConfig(package_id="0xabc")

        assert config.event_type("farm", "PoolCreated") == "0xabc::farm::PoolCreated"

    @pytest.mark.parametrize("overrides,key", [
        ({"package_id": ""}, "package_id"),
        ({"request_timeout_seconds": 0}, "request_timeout_seconds"),
        ({"max_retries": 0}, "max_retries"),
        ({"event_page_limit": 0}, "event_page_limit"),
        ({"max_epochs": 0}, "max_epochs"),
        ({"emission_week_ms": 0}, "emission_week_ms"),
        ({"default_sui_allocations": AllocationSet(1000, 2000, 3000, 3999)}, "default_sui_allocations"),
    ])
    def test_invalid_values(self, overrides, key):
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(**overrides).validate()

        assert exc_info.value.config_key == key

    def test_health_config_validation(self):
        with pytest.raises(ConfigurationError):
            HealthConfig(warning_max_issues=0)
        with pytest.raises(ConfigurationError):
            HealthConfig(low_sui_reward_threshold=-1)


class TestFromDict:
    """Tests for from_dict and from_yaml."""

    def test_from_dict(self):
        config = EngineConfig.from_dict({
            "rpc_url": "http://localhost:9000",
            "max_epochs": 52,
            "health": {"warning_max_issues": 4},
            "default_sui_allocations": {"week": 2500, "three_month": 2500, "year": 2500, "three_year": 2500, "total": 10000},
            "not_a_setting": True,
        })

        assert config.rpc_url == "http://localhost:9000"
        assert config.max_epochs == 52
        assert config.health.warning_max_issues == 4
        assert config.default_sui_allocations == AllocationSet(2500, 2500, 2500, 2500)
        assert not hasattr(config, "not_a_setting")

    def test_to_dict_round_trip(self):
        config = EngineConfig(max_epochs=10, health=HealthConfig(warning_max_issues=3))

        assert EngineConfig.from_dict(config.to_dict()) == config

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text(
            "package_id: '0xfeed'\n"
            "max_retries: 4\n"
            "health:\n"
            "  low_sui_reward_threshold: 5\n"
        )

        config = EngineConfig.from_yaml(path)

        assert config.package_id == "0xfeed"
        assert config.max_retries == 4
        assert config.health.low_sui_reward_threshold == 5

    def test_from_yaml_missing_file(self, tmp_path):
        assert EngineConfig.from_yaml(tmp_path / "missing.yaml") == EngineConfig()

    def test_from_yaml_invalid_file(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("max_retries: [unclosed\n")

        assert EngineConfig.from_yaml(path) == EngineConfig()


class TestFromEnv:
    """Tests for from_env."""

    def test_environment_overrides(self, isolated_env, tmp_path):
        isolated_env[f"{ENV_PREFIX}RPC_URL"] = "http://node:9000"
        isolated_env[f"{ENV_PREFIX}MAX_RETRIES"] = "5"
        isolated_env[f"{ENV_PREFIX}WARNING_MAX_ISSUES"] = "4"
        isolated_env[f"{ENV_PREFIX}EMISSION_WEEK_MS"] = "4200000"

        config = EngineConfig.from_env(tmp_path / "absent.env")

        assert config.rpc_url == "http://node:9000"
        assert config.max_retries == 5
        assert config.emission_week_ms == 4_200_000
        assert config.health.warning_max_issues == 4
        assert config.package_id == EngineConfig().package_id

    def test_dotenv_file(self, isolated_env, tmp_path):
        path = tmp_path / ".env"
        path.write_text(f"{ENV_PREFIX}PACKAGE_ID=0xfeed\n{ENV_PREFIX}MAX_EPOCHS=12\n")

        config = EngineConfig.from_env(path)

        assert config.package_id == "0xfeed"
        assert config.max_epochs == 12

    def test_invalid_number(self, isolated_env, tmp_path):
        isolated_env[f"{ENV_PREFIX}MAX_RETRIES"] = "many"

        with pytest.raises(ConfigurationError, match="Invalid numeric environment value"):
            EngineConfig.from_env(tmp_path / "absent.env")
