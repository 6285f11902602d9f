"""Cloud client boundary.

The orchestrator talks to Azure only through the CloudClient protocol. Methods
are blocking; the retry executor runs them in the thread pool. Raw Azure SDK
errors escape as AzureError and are classified by the executor, so nothing
above this module ever sees an HTTP status or error text.

AzureCloudClient implements the protocol with:
- azure-mgmt-resource ResourceManagementClient (generic resources, deployments)
- azure-core PipelineClient for ARM actions (ListServiceSas) and the Key Vault
  certificate data plane
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RequestIdPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.core.exceptions import ARMErrorFormat
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    GenericResource,
    Identity,
    IdentityUserAssignedIdentitiesValue,
    ResourceGroup,
    Sku,
)

from .errors import CredentialPolicyError, ErrorCode, PolicyDenied, classify_message
from .models import CertificatePolicy
from .resources import AccessMode, CredentialKind, ResourceDescriptor, ResourceKind

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
KEY_VAULT_SCOPE = "https://vault.azure.net/.default"
KEY_VAULT_API_VERSION = "7.4"
STORAGE_API_VERSION = "2023-01-01"
DEPLOYMENT_SCRIPT_API_VERSION = "2023-08-01"
AZ_CLI_VERSION = "2.61.0"

# Namespace for deterministic role assignment/definition ids
ROLE_NAMESPACE = uuid.UUID("6f1c5e2a-3b7d-4e59-9a0c-2d8f4b1e7c63")

# Descriptor property keys that live at the top level of the ARM body, per kind
TOP_LEVEL_KEYS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.STORAGE_ACCOUNT: ("sku", "kind"),
}

# Kinds addressed without a location (children and global resources)
LOCATIONLESS_KINDS = frozenset(
    {
        ResourceKind.SUBNET,
        ResourceKind.STORAGE_CONTAINER,
        ResourceKind.DNS_ZONE_GROUP,
    }
)
GLOBAL_KINDS = frozenset({ResourceKind.PRIVATE_DNS_ZONE, ResourceKind.DNS_ZONE_LINK})


@dataclass(frozen=True)
class ContainerToken:
    """A minted, time-bounded container token. The token value is never logged."""

    kind: CredentialKind
    expires_at: datetime
    token: str = field(repr=False)


class CloudClient(Protocol):
    """Capability set the orchestrator depends on."""

    subscription_id: str

    def get_resource(self, descriptor: ResourceDescriptor) -> dict[str, Any] | None:
        """Return the observed resource (id, location, properties, tags) or None."""
        ...

    def ensure_resource(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        """Create or update the resource to the descriptor's desired shape."""
        ...

    def delete_resource(self, descriptor: ResourceDescriptor) -> bool:
        """Delete the resource. Returns False when it did not exist."""
        ...

    def assign_role(self, principal_id: str, scope: str, role_definition_id: str) -> str:
        """Grant a role to a principal at scope. Returns the assignment id."""
        ...

    def ensure_role_definition(
        self,
        name: str,
        scope: str,
        actions: list[str],
        data_actions: list[str],
        description: str,
    ) -> str:
        """Create or update a custom role definition. Returns its id."""
        ...

    def create_certificate(
        self, vault_uri: str, name: str, policy: CertificatePolicy
    ) -> dict[str, Any]:
        """Start native certificate creation in a key vault."""
        ...

    def get_certificate(self, vault_uri: str, name: str) -> dict[str, Any] | None:
        """Return the issued certificate (id, thumbprint) or None."""
        ...

    def mint_container_token(
        self,
        storage: ResourceDescriptor,
        container: str,
        expires_in: timedelta,
        access_mode: AccessMode,
    ) -> ContainerToken:
        """Mint a delegated, time-bounded token for one container."""
        ...

    def run_remote_command(
        self,
        target: ResourceDescriptor,
        script: str,
        environment: dict[str, str],
    ) -> dict[str, Any]:
        """Run an inline script in the target's resource group. Returns its outputs."""
        ...

    def deploy_template(
        self,
        resource_group: str,
        name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> dict[str, Any]:
        """Deploy an ARM template and return its outputs as plain values."""
        ...


def role_assignment_name(principal_id: str, role_definition_id: str, scope: str) -> str:
    """Deterministic assignment GUID so re-runs address the same assignment."""
    return str(uuid.uuid5(ROLE_NAMESPACE, f"{principal_id}|{role_definition_id}|{scope}".lower()))


def role_definition_name(name: str, scope: str) -> str:
    return str(uuid.uuid5(ROLE_NAMESPACE, f"roledef|{name}|{scope}".lower()))


def flatten_outputs(outputs: dict[str, Any] | None) -> dict[str, Any]:
    """Turn ARM ``{"key": {"type": ..., "value": ...}}`` outputs into plain values."""
    if not outputs:
        return {}
    flattened: dict[str, Any] = {}
    for key, entry in outputs.items():
        if isinstance(entry, dict) and "value" in entry:
            flattened[key] = entry["value"]
        else:
            flattened[key] = entry
    return flattened


def user_assigned_identity(identity_id: str) -> Identity:
    return Identity(
        type="UserAssigned",
        user_assigned_identities={identity_id: IdentityUserAssignedIdentitiesValue()},
    )


def split_arm_body(descriptor: ResourceDescriptor) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split desired properties into (top-level fields, ARM properties).

    Only kinds listed in TOP_LEVEL_KEYS carry top-level fields. ``sku`` is
    given as a plain dict and ``kind`` as a string.
    """
    lifted = TOP_LEVEL_KEYS.get(descriptor.kind, ())
    top_level: dict[str, Any] = {}
    properties: dict[str, Any] = {}
    for key, value in descriptor.properties.items():
        if key not in lifted:
            properties[key] = value
        elif key == "sku":
            top_level["sku"] = Sku(**value)
        else:
            top_level[key] = value
    return top_level, properties


class AzureCloudClient:
    """CloudClient backed by the Azure SDK.

    SECURITY: The credential comes from security.get_credential(), which
    refuses to run when secrets are present in the environment.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        resource_client: ResourceManagementClient | None = None,
    ) -> None:
        self.subscription_id = subscription_id
        self._credential = credential
        self._resources = resource_client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )
        self._arm = self._pipeline_client(ARM_ENDPOINT, ARM_SCOPE)
        self._vaults: dict[str, PipelineClient] = {}

    def _pipeline_client(self, base_url: str, scope: str) -> PipelineClient:
        return PipelineClient(
            base_url=base_url,
            policies=[
                RequestIdPolicy(),
                HeadersPolicy(),
                BearerTokenCredentialPolicy(self._credential, scope),
                HttpLoggingPolicy(),
            ],
        )

    def _vault_client(self, vault_uri: str) -> PipelineClient:
        vault_uri = vault_uri.rstrip("/")
        if vault_uri not in self._vaults:
            self._vaults[vault_uri] = self._pipeline_client(vault_uri, KEY_VAULT_SCOPE)
        return self._vaults[vault_uri]

    @staticmethod
    def _send(client: PipelineClient, request: HttpRequest) -> Any:
        response = client.send_request(request)
        if response.status_code == 404:
            raise ResourceNotFoundError(response=response)
        if response.status_code >= 400:
            raise HttpResponseError(response=response, error_format=ARMErrorFormat)
        return response

    # =========================================================================
    # Generic resources
    # =========================================================================

    def get_resource(self, descriptor: ResourceDescriptor) -> dict[str, Any] | None:
        try:
            if descriptor.kind == ResourceKind.RESOURCE_GROUP:
                group = self._resources.resource_groups.get(descriptor.name)
                return group.as_dict()
            resource = self._resources.resources.get_by_id(
                descriptor.resource_id(self.subscription_id),
                descriptor.api_version,
            )
            return resource.as_dict()
        except ResourceNotFoundError:
            return None

    def ensure_resource(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        if descriptor.kind == ResourceKind.RESOURCE_GROUP:
            group = self._resources.resource_groups.create_or_update(
                descriptor.name,
                ResourceGroup(location=descriptor.location, tags=descriptor.tags or None),
            )
            return group.as_dict()

        top_level, properties = split_arm_body(descriptor)
        location: str | None = descriptor.location
        if descriptor.kind in LOCATIONLESS_KINDS:
            location = None
        elif descriptor.kind in GLOBAL_KINDS:
            location = "global"

        body = GenericResource(
            location=location,
            tags=descriptor.tags or None,
            properties=properties,
            **top_level,
        )
        poller = self._resources.resources.begin_create_or_update_by_id(
            descriptor.resource_id(self.subscription_id),
            descriptor.api_version,
            body,
        )
        return poller.result().as_dict()

    def delete_resource(self, descriptor: ResourceDescriptor) -> bool:
        try:
            if descriptor.kind == ResourceKind.RESOURCE_GROUP:
                self._resources.resource_groups.begin_delete(descriptor.name).result()
            else:
                self._resources.resources.begin_delete_by_id(
                    descriptor.resource_id(self.subscription_id),
                    descriptor.api_version,
                ).result()
        except ResourceNotFoundError:
            return False
        return True

    # =========================================================================
    # Authorization
    # =========================================================================

    def assign_role(self, principal_id: str, scope: str, role_definition_id: str) -> str:
        name = role_assignment_name(principal_id, role_definition_id, scope)
        assignment_id = f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}"
        body = GenericResource(
            properties={
                "roleDefinitionId": role_definition_id,
                "principalId": principal_id,
                "principalType": "ServicePrincipal",
            }
        )
        self._resources.resources.begin_create_or_update_by_id(
            assignment_id, "2022-04-01", body
        ).result()
        return assignment_id

    def ensure_role_definition(
        self,
        name: str,
        scope: str,
        actions: list[str],
        data_actions: list[str],
        description: str,
    ) -> str:
        guid = role_definition_name(name, scope)
        definition_id = f"{scope}/providers/Microsoft.Authorization/roleDefinitions/{guid}"
        body = GenericResource(
            properties={
                "roleName": name,
                "description": description,
                "type": "CustomRole",
                "permissions": [
                    {
                        "actions": actions,
                        "notActions": [],
                        "dataActions": data_actions,
                        "notDataActions": [],
                    }
                ],
                "assignableScopes": [scope],
            }
        )
        self._resources.resources.begin_create_or_update_by_id(
            definition_id, "2022-04-01", body
        ).result()
        return definition_id

    # =========================================================================
    # Key Vault certificates (data plane)
    # =========================================================================

    def create_certificate(
        self, vault_uri: str, name: str, policy: CertificatePolicy
    ) -> dict[str, Any]:
        client = self._vault_client(vault_uri)
        request = HttpRequest(
            "POST",
            f"{vault_uri.rstrip('/')}/certificates/{name}/create",
            params={"api-version": KEY_VAULT_API_VERSION},
            json={"policy": policy.to_key_vault_policy()},
        )
        operation = self._send(client, request).json()
        logger.info(
            "Certificate creation requested",
            extra={"vault": vault_uri, "certificate": name, "status": operation.get("status")},
        )
        return {"id": operation.get("id"), "status": operation.get("status")}

    def get_certificate(self, vault_uri: str, name: str) -> dict[str, Any] | None:
        client = self._vault_client(vault_uri)
        request = HttpRequest(
            "GET",
            f"{vault_uri.rstrip('/')}/certificates/{name}",
            params={"api-version": KEY_VAULT_API_VERSION},
        )
        try:
            body = self._send(client, request).json()
        except ResourceNotFoundError:
            return None
        if not body.get("x5t"):
            # Creation still pending
            return None
        return {
            "id": body.get("id"),
            "secret_id": body.get("sid"),
            "thumbprint": body.get("x5t"),
            "subject": body.get("policy", {}).get("x509_props", {}).get("subject"),
        }

    # =========================================================================
    # Staging storage
    # =========================================================================

    def mint_container_token(
        self,
        storage: ResourceDescriptor,
        container: str,
        expires_in: timedelta,
        access_mode: AccessMode,
    ) -> ContainerToken:
        if access_mode == AccessMode.KEYLESS:
            # SECURITY: Keyless staging never requests account-key material
            raise CredentialPolicyError(
                "Keyless staging does not mint container tokens; certificates are created natively"
            )

        expires_at = datetime.now(UTC) + expires_in
        storage_id = storage.resource_id(self.subscription_id)
        request = HttpRequest(
            "POST",
            f"{ARM_ENDPOINT}{storage_id}/ListServiceSas",
            params={"api-version": STORAGE_API_VERSION},
            json={
                "canonicalizedResource": f"/blob/{storage.name}/{container}",
                "signedResource": "c",
                "signedPermission": "rcw",
                "signedProtocol": "https",
                "signedExpiry": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        )
        body = self._send(self._arm, request).json()
        return ContainerToken(
            kind=CredentialKind.SERVICE_SAS,
            expires_at=expires_at,
            token=body["serviceSasToken"],
        )

    # =========================================================================
    # Remote commands and templates
    # =========================================================================

    def run_remote_command(
        self,
        target: ResourceDescriptor,
        script: str,
        environment: dict[str, str],
    ) -> dict[str, Any]:
        """Run ``script`` as an Azure CLI deployment script next to ``target``.

        Environment values are passed as secure values so they never appear
        in deployment history.
        """
        script_name = f"ds-{target.name}"[:64]
        script_id = (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{target.resource_group}"
            f"/providers/Microsoft.Resources/deploymentScripts/{script_name}"
        )
        identity_id = environment.get("IDENTITY_RESOURCE_ID")
        body = GenericResource(
            location=target.location,
            kind="AzureCLI",
            identity=user_assigned_identity(identity_id) if identity_id else None,
            properties={
                "azCliVersion": AZ_CLI_VERSION,
                "scriptContent": script,
                "environmentVariables": [
                    {"name": key, "secureValue": value}
                    for key, value in sorted(environment.items())
                ],
                "retentionInterval": "PT1H",
                "cleanupPreference": "OnSuccess",
                "timeout": "PT30M",
                "forceUpdateTag": uuid.uuid4().hex,
            },
        )
        result = self._resources.resources.begin_create_or_update_by_id(
            script_id, DEPLOYMENT_SCRIPT_API_VERSION, body
        ).result()
        properties = result.properties or {}
        status = properties.get("status") or {}
        error = status.get("error")
        if properties.get("provisioningState") == "Failed" or error:
            message = (error or {}).get("message") or "deployment script failed"
            code = classify_message(message)
            if code in (ErrorCode.SHARED_KEY_AUTH_DENIED, ErrorCode.POLICY_VIOLATION):
                raise PolicyDenied(message, code)
            raise HttpResponseError(message=message)
        return properties.get("outputs") or {}

    def deploy_template(
        self,
        resource_group: str,
        name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> dict[str, Any]:
        deployment = Deployment(
            properties=DeploymentProperties(
                mode=DeploymentMode.INCREMENTAL,
                template=template,
                parameters=parameters,
            )
        )
        poller = self._resources.deployments.begin_create_or_update(
            resource_group, name, deployment
        )
        result = poller.result()
        return flatten_outputs(result.properties.outputs if result.properties else None)
