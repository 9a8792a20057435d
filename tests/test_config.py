"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_CREATE_TIMEOUT_SECONDS,
    DEFAULT_LRO_TRANSPORT_RETRY_BUDGET,
    DEFAULT_SOFT_DELETE_CONSECUTIVE_OBSERVATIONS,
    MAX_OPERATION_TIMEOUT_SECONDS,
    EngineConfig,
    TimeoutsConfig,
)
from provisioner.errors import ConfigurationError

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class TestEngineConfig:
    """Tests for EngineConfig validation."""

    def test_defaults(self) -> None:
        """Test a minimal configuration uses the documented defaults."""
        config = EngineConfig(subscription_id=SUBSCRIPTION_ID)

        assert config.timeouts.create_seconds == DEFAULT_CREATE_TIMEOUT_SECONDS
        assert config.lro_transport_retry_budget == DEFAULT_LRO_TRANSPORT_RETRY_BUDGET
        assert config.soft_delete_consecutive_observations == DEFAULT_SOFT_DELETE_CONSECUTIVE_OBSERVATIONS
        assert config.purge_soft_delete_on_destroy is True
        assert config.lock_timeout_seconds == 0
        assert config.state_file == Path("provisioner.state.json")

    def test_missing_subscription(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(subscription_id="")

        assert "AZURE_SUBSCRIPTION_ID is required" in str(exc_info.value)

    def test_invalid_subscription(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(subscription_id="not-a-guid")

        assert "valid GUID" in str(exc_info.value)

    def test_arm_endpoint_must_be_https(self) -> None:
        """Test that a plain http Resource Manager endpoint is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(subscription_id=SUBSCRIPTION_ID, arm_endpoint="http://management.local")

        assert "AZURE_RESOURCE_MANAGER_URL" in str(exc_info.value)

    def test_invalid_location(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(subscription_id=SUBSCRIPTION_ID, location="west europe")

        assert "AZURE_LOCATION" in str(exc_info.value)

    @pytest.mark.parametrize("seconds", [0, -1, MAX_OPERATION_TIMEOUT_SECONDS + 1])
    def test_timeout_out_of_range(self, seconds: float) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(
                subscription_id=SUBSCRIPTION_ID,
                timeouts=TimeoutsConfig(delete_seconds=seconds),
            )

        assert "DELETE_TIMEOUT" in str(exc_info.value)

    def test_collects_every_error(self) -> None:
        """Test that all problems are reported in one exception."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineConfig(
                subscription_id=SUBSCRIPTION_ID,
                lro_transport_retry_budget=-1,
                soft_delete_consecutive_observations=0,
                lock_timeout_seconds=-5,
                transient_retry_attempts=0,
                log_level="LOUD",
            )

        message = str(exc_info.value)
        assert "LRO_TRANSPORT_RETRY_BUDGET" in message
        assert "SOFT_DELETE_CONSECUTIVE_OBSERVATIONS" in message
        assert "LOCK_TIMEOUT" in message
        assert "TRANSIENT_RETRY_ATTEMPTS" in message
        assert "PROVISIONER_LOG_LEVEL" in message

    def test_zero_retry_budget_is_allowed(self) -> None:
        config = EngineConfig(subscription_id=SUBSCRIPTION_ID, lro_transport_retry_budget=0)
        assert config.lro_transport_retry_budget == 0


class TestFromEnv:
    """Tests for EngineConfig.from_env."""

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "AZURE_LOCATION": "local",
            "AZURE_RESOURCE_MANAGER_URL": "https://management.local.azurestack.external",
            "AZURE_CLIENT_ID": "abcdef01-0000-0000-0000-000000000000",
            "PROVISIONER_STATE_FILE": str(tmp_path / "state.json"),
            "PROVISIONER_LOG_LEVEL": "debug",
            "CREATE_TIMEOUT": "120",
            "LRO_POLL_INTERVAL": "2.5",
            "LRO_TRANSPORT_RETRY_BUDGET": "5",
            "SOFT_DELETE_CONSECUTIVE_OBSERVATIONS": "4",
            "PURGE_SOFT_DELETE_ON_DESTROY": "false",
            "LOCK_TIMEOUT": "60",
        }

        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.location == "local"
        assert config.arm_endpoint == "https://management.local.azurestack.external"
        assert config.managed_identity_client_id == "abcdef01-0000-0000-0000-000000000000"
        assert config.state_file == tmp_path / "state.json"
        assert config.log_level == "DEBUG"
        assert config.timeouts.create_seconds == 120
        assert config.lro_poll_interval_seconds == 2.5
        assert config.lro_transport_retry_budget == 5
        assert config.soft_delete_consecutive_observations == 4
        assert config.purge_soft_delete_on_destroy is False
        assert config.lock_timeout_seconds == 60

    def test_empty_optional_values_are_none(self) -> None:
        env = {"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID, "AZURE_LOCATION": "", "AZURE_CLIENT_ID": ""}

        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.location is None
        assert config.managed_identity_client_id is None
        assert config.arm_endpoint is None

    def test_missing_subscription(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError):
                EngineConfig.from_env()

    @pytest.mark.parametrize(
        ("key", "value"),
        [("READ_TIMEOUT", "five minutes"), ("LRO_TRANSPORT_RETRY_BUDGET", "2.5")],
    )
    def test_malformed_number(self, key: str, value: str) -> None:
        with patch.dict(os.environ, {"AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID, key: value}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                EngineConfig.from_env()

        assert key in str(exc_info.value)
