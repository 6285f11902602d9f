"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from provisioner.config import (
    Config,
    ConfigurationError,
    RetrySettings,
    StorageAuthMode,
)
from provisioner.resources import AccessMode

SUBSCRIPTION = "12345678-1234-1234-1234-123456789012"


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        config = Config(prefix="hpc-demo", location="westeurope", subscription_id=SUBSCRIPTION)

        assert config.storage_auth_mode == StorageAuthMode.KEYLESS
        assert config.effective_resource_group == "rg-hpc-demo"
        assert config.effective_owner == "hpc-demo"
        assert config.interactive is True
        assert config.effective_templates_dir == Path("templates")

    def test_explicit_resource_group_wins(self) -> None:
        config = Config(
            prefix="hpc-demo",
            location="westeurope",
            subscription_id=SUBSCRIPTION,
            resource_group_name="rg-custom",
        )
        assert config.effective_resource_group == "rg-custom"

    def test_all_errors_reported_together(self) -> None:
        """Every problem is collected in one ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(prefix="", location="", subscription_id="not-a-guid")

        message = str(exc_info.value)
        assert "HPC_PREFIX is required" in message
        assert "AZURE_LOCATION is required" in message
        assert "valid GUID" in message

    @pytest.mark.parametrize("prefix", ["1hpc", "hpc_demo", "a", "HPC-DEMO", "hpc-"])
    def test_invalid_prefix(self, prefix: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(prefix=prefix, location="westeurope", subscription_id=SUBSCRIPTION)
        assert "HPC_PREFIX" in str(exc_info.value)

    def test_invalid_remediation_code(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                prefix="hpc-demo",
                location="westeurope",
                subscription_id=SUBSCRIPTION,
                remediation_code="OpenEverything",
            )
        assert "HPC_REMEDIATION" in str(exc_info.value)

    @pytest.mark.parametrize("code", ["PublicNetwork", "privateendpoint", "3", " Custom "])
    def test_valid_remediation_codes(self, code: str) -> None:
        config = Config(
            prefix="hpc-demo",
            location="westeurope",
            subscription_id=SUBSCRIPTION,
            remediation_code=code,
        )
        assert config.remediation_code == code

    def test_revert_after_bounds(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                prefix="hpc-demo",
                location="westeurope",
                subscription_id=SUBSCRIPTION,
                revert_after_seconds=0,
            )
        assert "HPC_REVERT_AFTER" in str(exc_info.value)

    def test_run_timeout_bounds(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                prefix="hpc-demo",
                location="westeurope",
                subscription_id=SUBSCRIPTION,
                run_timeout_seconds=5,
            )
        assert "HPC_RUN_TIMEOUT" in str(exc_info.value)

    def test_missing_paths_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                prefix="hpc-demo",
                location="westeurope",
                subscription_id=SUBSCRIPTION,
                spec_file=tmp_path / "missing.yaml",
                templates_dir=tmp_path / "missing",
            )
        message = str(exc_info.value)
        assert "Spec file does not exist" in message
        assert "Templates directory does not exist" in message

    def test_invalid_retry_settings(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(
                prefix="hpc-demo",
                location="westeurope",
                subscription_id=SUBSCRIPTION,
                retry=RetrySettings(role_max_attempts=0, backoff_multiplier=0.5),
            )
        message = str(exc_info.value)
        assert "role_max_attempts" in message
        assert "backoff_multiplier" in message

    def test_auth_mode_maps_to_access_mode(self) -> None:
        assert StorageAuthMode.KEYLESS.access_mode == AccessMode.KEYLESS
        assert StorageAuthMode.KEY_VAULT_BACKED.access_mode == AccessMode.SHARED_KEY


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_from_env(self, tmp_path: Path) -> None:
        env = {
            "HPC_PREFIX": "hpc-demo",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION,
            "AZURE_LOCATION": "northeurope",
            "HPC_STORAGE_AUTH_MODE": "KeyVaultBacked",
            "HPC_REMEDIATION": "2",
            "HPC_CREATE_PRIVATE_ENDPOINT": "true",
            "HPC_REVERT_AFTER": "600",
            "HPC_INTERACTIVE": "false",
            "HPC_TEMPLATES_DIR": str(tmp_path),
            "HPC_RETRY_ROLE_ATTEMPTS": "7",
            "HPC_RETRY_IDENTITY_DELAY": "1.5",
            "AZURE_TENANT_ID": "tenant-1",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.location == "northeurope"
        assert config.storage_auth_mode == StorageAuthMode.KEY_VAULT_BACKED
        assert config.remediation_code == "2"
        assert config.create_private_endpoint is True
        assert config.revert_after_seconds == 600
        assert config.interactive is False
        assert config.templates_dir == tmp_path
        assert config.retry.role_max_attempts == 7
        assert config.retry.identity_base_delay_seconds == 1.5
        assert config.tenant_id == "tenant-1"

    def test_overrides_win_over_environment(self) -> None:
        env = {
            "HPC_PREFIX": "hpc-env",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION,
            "AZURE_LOCATION": "northeurope",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env(prefix="hpc-cli", location=None)

        assert config.prefix == "hpc-cli"
        assert config.location == "northeurope"

    def test_non_integer_rejected(self) -> None:
        env = {
            "HPC_PREFIX": "hpc-demo",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION,
            "AZURE_LOCATION": "northeurope",
            "HPC_RUN_TIMEOUT": "soon",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "HPC_RUN_TIMEOUT must be an integer" in str(exc_info.value)

    def test_unknown_auth_mode_rejected(self) -> None:
        env = {
            "HPC_PREFIX": "hpc-demo",
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION,
            "AZURE_LOCATION": "northeurope",
            "HPC_STORAGE_AUTH_MODE": "AccountKey",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "HPC_STORAGE_AUTH_MODE" in str(exc_info.value)

    def test_missing_required_variables(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "HPC_PREFIX is required" in str(exc_info.value)
