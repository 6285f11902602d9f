"""Certificate staging strategies.

The staging artifact's access mode picks the strategy:

- SharedKey (CLI ``KeyVaultBacked``): an inline Azure CLI deployment script
  issues the certificate and drops the PFX into the staging container using a
  time-bounded service SAS minted from the account key on the server side.
  Fails with SharedKeyAuthDenied when shared-key access is disabled.
- Keyless: native certificate creation in the key vault. No SAS and no
  account key is ever requested.

SECURITY: Every credential minted for the staging artifact is recorded on
it, and the artifact refuses any credential its access mode does not allow.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Protocol

from .cloud import CloudClient
from .context import RunContext
from .errors import ErrorCode, PolicyDenied, TransientUnavailable
from .models import CertificatePolicy
from .resources import AccessMode, IssuedCredential, StagingArtifact
from .retry import RetryExecutor, RetryPolicies
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

# Lifetime of the SAS handed to the staging script
STAGING_TOKEN_LIFETIME = timedelta(hours=1)

# Runs inside the deployment script container (Azure CLI image)
STAGING_SCRIPT = """\
set -euo pipefail
echo "$CERT_POLICY" > policy.json
az keyvault certificate create \\
  --vault-name "$VAULT_NAME" \\
  --name "$CERT_NAME" \\
  --policy @policy.json
az keyvault secret download \\
  --vault-name "$VAULT_NAME" \\
  --name "$CERT_NAME" \\
  --encoding base64 \\
  --file "$CERT_NAME.pfx"
az storage blob upload \\
  --account-name "$STORAGE_ACCOUNT" \\
  --container-name "$CONTAINER" \\
  --name "$CERT_NAME.pfx" \\
  --file "$CERT_NAME.pfx" \\
  --sas-token "$CONTAINER_SAS" \\
  --overwrite
echo "{\\"certificateName\\": \\"$CERT_NAME\\"}" > "$AZ_SCRIPTS_OUTPUT_PATH"
"""


class CertificateStrategy(Protocol):
    """Creates the cluster certificate for one access mode."""

    access_mode: AccessMode

    async def stage(
        self, context: RunContext, vault_uri: str, policy: CertificatePolicy
    ) -> dict[str, Any]:
        """Issue the certificate and return its id, secret id and thumbprint."""
        ...


async def await_certificate(
    cloud: CloudClient,
    executor: RetryExecutor,
    policies: RetryPolicies,
    vault_uri: str,
    name: str,
) -> dict[str, Any]:
    """Wait (through the executor) until the certificate is issued."""

    def require() -> dict[str, Any]:
        certificate = cloud.get_certificate(vault_uri, name)
        if certificate is None:
            raise TransientUnavailable(f"Certificate '{name}' not issued yet")
        return certificate

    result = await executor.execute(
        require, policies.creation, operation_name=f"await certificate {name}"
    )
    return result.value


async def existing_certificate(
    cloud: CloudClient,
    executor: RetryExecutor,
    policies: RetryPolicies,
    vault_uri: str,
    name: str,
) -> dict[str, Any] | None:
    result = await executor.execute(
        lambda: cloud.get_certificate(vault_uri, name),
        policies.creation,
        operation_name=f"get certificate {name}",
    )
    return result.value


class KeylessCertificateStrategy:
    """Native creation in the key vault. Never touches storage credentials."""

    access_mode = AccessMode.KEYLESS

    def __init__(self, cloud: CloudClient, executor: RetryExecutor, policies: RetryPolicies) -> None:
        self._cloud = cloud
        self._executor = executor
        self._policies = policies

    async def stage(
        self, context: RunContext, vault_uri: str, policy: CertificatePolicy
    ) -> dict[str, Any]:
        existing = await existing_certificate(
            self._cloud, self._executor, self._policies, vault_uri, policy.name
        )
        if existing is not None:
            logger.info("Certificate already issued", extra={"certificate": policy.name})
            return existing

        await self._executor.execute(
            lambda: self._cloud.create_certificate(vault_uri, policy.name, policy),
            self._policies.creation,
            operation_name=f"create certificate {policy.name}",
        )
        return await await_certificate(
            self._cloud, self._executor, self._policies, vault_uri, policy.name
        )


class SharedKeyCertificateStrategy:
    """Inline staging script fed with a time-bounded service SAS."""

    access_mode = AccessMode.SHARED_KEY

    def __init__(self, cloud: CloudClient, executor: RetryExecutor, policies: RetryPolicies) -> None:
        self._cloud = cloud
        self._executor = executor
        self._policies = policies

    async def stage(
        self, context: RunContext, vault_uri: str, policy: CertificatePolicy
    ) -> dict[str, Any]:
        layout = context.layout
        storage = layout.storage_account()
        staging = self._require_staging(context)

        observed = await self._executor.execute(
            lambda: self._cloud.get_resource(storage),
            self._policies.creation,
            operation_name=f"read storage account {storage.name}",
        )
        properties = (observed.value or {}).get("properties") or {}
        if properties.get("allowSharedKeyAccess") is False:
            raise PolicyDenied(
                f"Storage account '{storage.name}' has shared key access disabled "
                "(allowSharedKeyAccess: false)",
                ErrorCode.SHARED_KEY_AUTH_DENIED,
            )

        existing = await existing_certificate(
            self._cloud, self._executor, self._policies, vault_uri, policy.name
        )
        if existing is not None:
            logger.info("Certificate already issued", extra={"certificate": policy.name})
            return existing

        minted = await self._executor.execute(
            lambda: self._cloud.mint_container_token(
                storage, staging.container_name, STAGING_TOKEN_LIFETIME, staging.access_mode
            ),
            self._policies.creation,
            operation_name=f"mint container token {staging.container_name}",
        )
        token = minted.value
        staging.record_credential(IssuedCredential(kind=token.kind, expires_at=token.expires_at))
        log_security_audit_event(
            "token",
            target_resource=staging.storage_account_ref,
            action=f"mint_{token.kind.value}",
            result="success",
        )

        environment = {
            "VAULT_NAME": vault_uri.split("//", 1)[-1].split(".", 1)[0],
            "CERT_NAME": policy.name,
            "CERT_POLICY": json.dumps(policy.to_key_vault_policy()),
            "STORAGE_ACCOUNT": storage.name,
            "CONTAINER": staging.container_name,
            "CONTAINER_SAS": token.token,
        }
        if staging.identity_ref:
            environment["IDENTITY_RESOURCE_ID"] = staging.identity_ref

        try:
            await self._executor.execute(
                lambda: self._cloud.run_remote_command(storage, STAGING_SCRIPT, environment),
                self._policies.creation,
                operation_name=f"staging script for {policy.name}",
            )
        except PolicyDenied as e:
            # A policy blocking the script is a policy blocking secret-based auth
            if e.code == ErrorCode.SHARED_KEY_AUTH_DENIED:
                raise
            denied = PolicyDenied(str(e), ErrorCode.SHARED_KEY_AUTH_DENIED)
            denied.attempts = e.attempts
            raise denied from e
        return await await_certificate(
            self._cloud, self._executor, self._policies, vault_uri, policy.name
        )

    @staticmethod
    def _require_staging(context: RunContext) -> StagingArtifact:
        if context.staging is None:
            raise PolicyDenied(
                "No staging artifact recorded; storage step did not run",
                ErrorCode.POLICY_VIOLATION,
            )
        return context.staging


def strategy_for(
    access_mode: AccessMode,
    cloud: CloudClient,
    executor: RetryExecutor,
    policies: RetryPolicies,
) -> CertificateStrategy:
    if access_mode == AccessMode.KEYLESS:
        return KeylessCertificateStrategy(cloud, executor, policies)
    return SharedKeyCertificateStrategy(cloud, executor, policies)
