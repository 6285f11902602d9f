"""Security enforcement for secretless provisioning.

This module enforces the secretless security model where:
- Runs authenticate with a managed identity or the operator's Azure CLI session
- NO service principal secrets or passwords are allowed
- NO storage account keys leave the cloud side (see certificates.py)

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET must never be present in the environment
2. Only ManagedIdentityCredential or AzureCliCredential are used
3. All authentication flows through Entra ID
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "AZURE_STORAGE_KEY",
    "AZURE_STORAGE_CONNECTION_STRING",
)

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION: {env_var} is set.

The provisioner only authenticates through Entra ID (managed identity or
'az login'). Secrets in the environment are not allowed.

RESOLUTION:
  1. Unset {env_var}
  2. Run 'az login', or run on a host with a managed identity
  3. Set AZURE_MANAGED_IDENTITY_CLIENT_ID for a user-assigned identity
"""


class SecretlessViolationError(Exception):
    """Raised when secretless architecture is violated.

    This is a fatal security error that prevents the run from starting.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    This MUST be called before any Azure SDK usage.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "run_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified"},
    )


def get_credential(client_id: str | None = None) -> TokenCredential:
    """Get an Entra ID credential after verifying secretless architecture.

    This is the ONLY way to obtain credentials in this codebase.

    Args:
        client_id: Client ID of a user-assigned managed identity. When None the
                   operator's Azure CLI session is used.

    Returns:
        ManagedIdentityCredential or AzureCliCredential.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using Azure CLI session credential")
    return AzureCliCredential()


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event (credential minting, access changes).

    Args:
        event_type: Type of security event (token, network, role, ...).
        target_resource: Azure resource being accessed.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
