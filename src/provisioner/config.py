"""Configuration management with validation.

All run parameters are validated at construction time. Every problem is
collected and reported in a single ConfigurationError so the operator can fix
the whole command line in one pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .naming import resource_group_name as default_resource_group_name
from .resources import AccessMode


class StorageAuthMode(str, Enum):
    """How the staging storage account authenticates callers."""

    KEY_VAULT_BACKED = "KeyVaultBacked"
    KEYLESS = "Keyless"

    @property
    def access_mode(self) -> AccessMode:
        if self is StorageAuthMode.KEYLESS:
            return AccessMode.KEYLESS
        return AccessMode.SHARED_KEY


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Timing defaults with documented bounds
DEFAULT_RUN_TIMEOUT_SECONDS = 3600
MIN_RUN_TIMEOUT_SECONDS = 60
MAX_RUN_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_CALL_TIMEOUT_SECONDS = 900
MAX_REVERT_AFTER_SECONDS = 24 * 3600

# Retry defaults, taken from the propagation delays observed in practice
DEFAULT_CREATE_MAX_ATTEMPTS = 3
DEFAULT_CREATE_BASE_DELAY_SECONDS = 5.0
DEFAULT_ROLE_MAX_ATTEMPTS = 5
DEFAULT_ROLE_BASE_DELAY_SECONDS = 3.0
DEFAULT_IDENTITY_MAX_ATTEMPTS = 12
DEFAULT_IDENTITY_BASE_DELAY_SECONDS = 5.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_SECONDS = 60.0

# File limits
MAX_SPEC_FILE_SIZE_BYTES = 256 * 1024
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024

MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Remediation short codes (case-insensitive) and their numeric menu aliases
VALID_REMEDIATION_CODES = frozenset(
    {"publicnetwork", "privateendpoint", "policyexemption", "custom", "1", "2", "3", "4"}
)

DEFAULT_TEMPLATES_DIR = Path("templates")

# Input validation patterns
VALID_PREFIX_PATTERN = r"^[a-z][a-z0-9-]{1,30}[a-z0-9]$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z][a-z0-9-]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[a-zA-Z0-9._()-]+$"
VALID_ADMIN_USERNAME_PATTERN = r"^[a-z_][a-z0-9_-]{0,31}$"


@dataclass(frozen=True)
class RetrySettings:
    """Per-operation-class retry knobs.

    The observed propagation windows differ between identity creation and
    role assignment, so each class carries its own attempts and base delay.
    """

    create_max_attempts: int = DEFAULT_CREATE_MAX_ATTEMPTS
    create_base_delay_seconds: float = DEFAULT_CREATE_BASE_DELAY_SECONDS
    role_max_attempts: int = DEFAULT_ROLE_MAX_ATTEMPTS
    role_base_delay_seconds: float = DEFAULT_ROLE_BASE_DELAY_SECONDS
    identity_max_attempts: int = DEFAULT_IDENTITY_MAX_ATTEMPTS
    identity_base_delay_seconds: float = DEFAULT_IDENTITY_BASE_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS

    def validate(self) -> list[str]:
        errors: list[str] = []
        for name in ("create_max_attempts", "role_max_attempts", "identity_max_attempts"):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be at least 1")
        for name in (
            "create_base_delay_seconds",
            "role_base_delay_seconds",
            "identity_base_delay_seconds",
            "max_delay_seconds",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} cannot be negative")
        if self.backoff_multiplier < 1:
            errors.append("backoff_multiplier must be >= 1")
        return errors


@dataclass(frozen=True)
class Config:
    """Run configuration for a single provisioning run."""

    # Required fields
    prefix: str
    location: str
    subscription_id: str

    resource_group_name: str | None = None
    admin_username: str = "hpcadmin"
    admin_ssh_public_key: str | None = None

    storage_auth_mode: StorageAuthMode = StorageAuthMode.KEYLESS

    # Remediation inputs
    remediation_code: str | None = None
    remediation_text: str | None = None
    create_private_endpoint: bool = False
    revert_after_seconds: int | None = None
    interactive: bool = True

    # Paths
    spec_file: Path | None = None
    templates_dir: Path | None = None

    # Timing
    run_timeout_seconds: int = DEFAULT_RUN_TIMEOUT_SECONDS
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS

    # Behavior
    force_fresh: bool = False
    managed_identity_client_id: str | None = None
    owner: str | None = None
    tenant_id: str | None = None

    retry: RetrySettings = field(default_factory=RetrySettings)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.prefix:
            errors.append("HPC_PREFIX is required")
        elif not re.match(VALID_PREFIX_PATTERN, self.prefix):
            errors.append(f"HPC_PREFIX must match pattern {VALID_PREFIX_PATTERN}: {self.prefix}")

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid region name: {self.location}")

        if self.resource_group_name is not None:
            if len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
                errors.append(
                    f"HPC_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
                )
            elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
                errors.append(f"HPC_RESOURCE_GROUP contains invalid characters: {self.resource_group_name}")

        if not re.match(VALID_ADMIN_USERNAME_PATTERN, self.admin_username):
            errors.append(f"HPC_ADMIN_USERNAME is not a valid Linux user name: {self.admin_username}")

        if not (MIN_RUN_TIMEOUT_SECONDS <= self.run_timeout_seconds <= MAX_RUN_TIMEOUT_SECONDS):
            errors.append(
                f"HPC_RUN_TIMEOUT must be between {MIN_RUN_TIMEOUT_SECONDS} "
                f"and {MAX_RUN_TIMEOUT_SECONDS} seconds"
            )

        if self.call_timeout_seconds < 1:
            errors.append("HPC_CALL_TIMEOUT must be at least 1 second")

        if self.revert_after_seconds is not None and not (
            0 < self.revert_after_seconds <= MAX_REVERT_AFTER_SECONDS
        ):
            errors.append(f"HPC_REVERT_AFTER must be between 1 and {MAX_REVERT_AFTER_SECONDS} seconds")

        if self.spec_file is not None and not self.spec_file.exists():
            errors.append(f"Spec file does not exist: {self.spec_file}")

        if self.templates_dir is not None and not self.templates_dir.is_dir():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if self.remediation_code is not None and (
            self.remediation_code.strip().lower() not in VALID_REMEDIATION_CODES
        ):
            errors.append(
                f"HPC_REMEDIATION must be one of {sorted(VALID_REMEDIATION_CODES)}: "
                f"{self.remediation_code}"
            )

        errors.extend(self.retry.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def effective_resource_group(self) -> str:
        """Resource group to deploy into (derived from prefix when unset)."""
        if self.resource_group_name:
            return self.resource_group_name
        return default_resource_group_name(self.prefix)

    @property
    def effective_owner(self) -> str:
        return self.owner or self.prefix

    @property
    def effective_templates_dir(self) -> Path:
        return self.templates_dir or DEFAULT_TEMPLATES_DIR

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides that are not None replace the environment value
        (used by the CLI so options win over the environment).

        Environment Variables:
            HPC_PREFIX: Human prefix used to derive every resource name
            AZURE_LOCATION: Region for all resources
            AZURE_SUBSCRIPTION_ID: Target subscription
            HPC_RESOURCE_GROUP: Resource group name (default: rg-<prefix>)
            HPC_ADMIN_USERNAME: Cluster admin user (default: hpcadmin)
            HPC_ADMIN_SSH_KEY: Cluster admin SSH public key
            HPC_STORAGE_AUTH_MODE: KeyVaultBacked or Keyless (default: Keyless)
            HPC_REMEDIATION: Remediation short code
            HPC_REMEDIATION_TEXT: Descriptive remediation request
            HPC_CREATE_PRIVATE_ENDPOINT: Automate private endpoint setup (default: false)
            HPC_REVERT_AFTER: Seconds before public access is reverted
            HPC_INTERACTIVE: Offer the numbered menu when no choice given (default: true)
            HPC_SPEC_FILE: Path to the deployment spec YAML
            HPC_TEMPLATES_DIR: Directory holding compiled ARM templates
            HPC_RUN_TIMEOUT: Deadline for the whole run in seconds (default: 3600)
            HPC_CALL_TIMEOUT: Timeout for a single cloud call (default: 900)
            HPC_FORCE_FRESH: Delete and recreate the resource group (default: false)
            AZURE_MANAGED_IDENTITY_CLIENT_ID: Use this user-assigned identity
            AZURE_TENANT_ID: Tenant of the key vault (required for certificates)
            HPC_OWNER: Value of the owner tag (default: prefix)

        Retry Variables:
            HPC_RETRY_CREATE_ATTEMPTS, HPC_RETRY_CREATE_DELAY,
            HPC_RETRY_ROLE_ATTEMPTS, HPC_RETRY_ROLE_DELAY,
            HPC_RETRY_IDENTITY_ATTEMPTS, HPC_RETRY_IDENTITY_DELAY,
            HPC_RETRY_MULTIPLIER, HPC_RETRY_MAX_DELAY
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key)
            if not value:
                return None
            return get_int(key, 0)

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        def get_auth_mode(value: str | None) -> StorageAuthMode:
            if not value:
                return StorageAuthMode.KEYLESS
            try:
                return StorageAuthMode(value)
            except ValueError as e:
                valid = [m.value for m in StorageAuthMode]
                raise ConfigurationError(
                    f"HPC_STORAGE_AUTH_MODE must be one of {valid}: {value}"
                ) from e

        values: dict[str, Any] = dict(
            prefix=os.environ.get("HPC_PREFIX", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group_name=os.environ.get("HPC_RESOURCE_GROUP") or None,
            admin_username=os.environ.get("HPC_ADMIN_USERNAME", "hpcadmin"),
            admin_ssh_public_key=os.environ.get("HPC_ADMIN_SSH_KEY") or None,
            storage_auth_mode=get_auth_mode(os.environ.get("HPC_STORAGE_AUTH_MODE")),
            remediation_code=os.environ.get("HPC_REMEDIATION") or None,
            remediation_text=os.environ.get("HPC_REMEDIATION_TEXT") or None,
            create_private_endpoint=get_bool("HPC_CREATE_PRIVATE_ENDPOINT", False),
            revert_after_seconds=get_optional_int("HPC_REVERT_AFTER"),
            interactive=get_bool("HPC_INTERACTIVE", True),
            spec_file=get_path("HPC_SPEC_FILE"),
            templates_dir=get_path("HPC_TEMPLATES_DIR"),
            run_timeout_seconds=get_int("HPC_RUN_TIMEOUT", DEFAULT_RUN_TIMEOUT_SECONDS),
            call_timeout_seconds=get_int("HPC_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            force_fresh=get_bool("HPC_FORCE_FRESH", False),
            managed_identity_client_id=os.environ.get("AZURE_MANAGED_IDENTITY_CLIENT_ID") or None,
            owner=os.environ.get("HPC_OWNER") or None,
            tenant_id=os.environ.get("AZURE_TENANT_ID") or None,
            retry=RetrySettings(
                create_max_attempts=get_int("HPC_RETRY_CREATE_ATTEMPTS", DEFAULT_CREATE_MAX_ATTEMPTS),
                create_base_delay_seconds=get_float(
                    "HPC_RETRY_CREATE_DELAY", DEFAULT_CREATE_BASE_DELAY_SECONDS
                ),
                role_max_attempts=get_int("HPC_RETRY_ROLE_ATTEMPTS", DEFAULT_ROLE_MAX_ATTEMPTS),
                role_base_delay_seconds=get_float(
                    "HPC_RETRY_ROLE_DELAY", DEFAULT_ROLE_BASE_DELAY_SECONDS
                ),
                identity_max_attempts=get_int(
                    "HPC_RETRY_IDENTITY_ATTEMPTS", DEFAULT_IDENTITY_MAX_ATTEMPTS
                ),
                identity_base_delay_seconds=get_float(
                    "HPC_RETRY_IDENTITY_DELAY", DEFAULT_IDENTITY_BASE_DELAY_SECONDS
                ),
                backoff_multiplier=get_float("HPC_RETRY_MULTIPLIER", DEFAULT_BACKOFF_MULTIPLIER),
                max_delay_seconds=get_float("HPC_RETRY_MAX_DELAY", DEFAULT_MAX_DELAY_SECONDS),
            ),
        )
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
