"""Runtime records: resource descriptors, provisioning results, staging artifacts.

Descriptors are read-only after creation. Results are immutable once
finalized; the run history is append-only.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .errors import CredentialPolicyError, ErrorSignature


class ResourceKind(str, Enum):
    """Resource kinds the orchestrator knows how to address."""

    RESOURCE_GROUP = "ResourceGroup"
    MANAGED_IDENTITY = "ManagedIdentity"
    VNET = "VNet"
    SUBNET = "Subnet"
    NSG = "NSG"
    STORAGE_ACCOUNT = "StorageAccount"
    CERTIFICATE = "Certificate"
    ROLE_ASSIGNMENT = "RoleAssignment"
    CLUSTER_DEPLOYMENT = "ClusterDeployment"
    ROLE_DEFINITION = "RoleDefinition"
    KEY_VAULT = "KeyVault"
    STORAGE_CONTAINER = "StorageContainer"
    PRIVATE_ENDPOINT = "PrivateEndpoint"
    PRIVATE_DNS_ZONE = "PrivateDnsZone"
    DNS_ZONE_LINK = "DnsZoneLink"
    DNS_ZONE_GROUP = "DnsZoneGroup"


# ARM resource type and API version per kind. Child kinds are addressed
# below their parent's id using the last segment of the type.
ARM_TYPES: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.RESOURCE_GROUP: ("Microsoft.Resources/resourceGroups", "2022-09-01"),
    ResourceKind.MANAGED_IDENTITY: (
        "Microsoft.ManagedIdentity/userAssignedIdentities",
        "2023-01-31",
    ),
    ResourceKind.VNET: ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    ResourceKind.SUBNET: ("Microsoft.Network/virtualNetworks/subnets", "2023-09-01"),
    ResourceKind.NSG: ("Microsoft.Network/networkSecurityGroups", "2023-09-01"),
    ResourceKind.STORAGE_ACCOUNT: ("Microsoft.Storage/storageAccounts", "2023-01-01"),
    ResourceKind.STORAGE_CONTAINER: (
        "Microsoft.Storage/storageAccounts/blobServices/containers",
        "2023-01-01",
    ),
    ResourceKind.KEY_VAULT: ("Microsoft.KeyVault/vaults", "2023-07-01"),
    ResourceKind.CERTIFICATE: ("Microsoft.KeyVault/vaults/certificates", "7.4"),
    ResourceKind.ROLE_ASSIGNMENT: ("Microsoft.Authorization/roleAssignments", "2022-04-01"),
    ResourceKind.ROLE_DEFINITION: ("Microsoft.Authorization/roleDefinitions", "2022-04-01"),
    ResourceKind.CLUSTER_DEPLOYMENT: ("Microsoft.Resources/deployments", "2022-09-01"),
    ResourceKind.PRIVATE_ENDPOINT: ("Microsoft.Network/privateEndpoints", "2023-09-01"),
    ResourceKind.PRIVATE_DNS_ZONE: ("Microsoft.Network/privateDnsZones", "2020-06-01"),
    ResourceKind.DNS_ZONE_LINK: (
        "Microsoft.Network/privateDnsZones/virtualNetworkLinks",
        "2020-06-01",
    ),
    ResourceKind.DNS_ZONE_GROUP: (
        "Microsoft.Network/privateEndpoints/privateDnsZoneGroups",
        "2023-09-01",
    ),
}


@dataclass(frozen=True)
class ResourceDescriptor:
    """Desired shape of a single resource.

    Identity is (kind, name, parent). ``parent`` is either another descriptor
    (child resources such as subnets) or None for resources that live directly
    in ``resource_group``.
    """

    kind: ResourceKind
    name: str
    location: str
    resource_group: str
    parent: ResourceDescriptor | None = None
    properties: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    tags: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def key(self) -> tuple[str, str, str]:
        parent_key = "/".join(self.parent.key) if self.parent is not None else self.resource_group
        return (self.kind.value, self.name, parent_key)

    @property
    def arm_type(self) -> str:
        return ARM_TYPES[self.kind][0]

    @property
    def api_version(self) -> str:
        return ARM_TYPES[self.kind][1]

    def resource_id(self, subscription_id: str) -> str:
        """Compute the ARM resource id for this descriptor."""
        group_id = f"/subscriptions/{subscription_id}/resourceGroups/{self.resource_group}"
        if self.kind == ResourceKind.RESOURCE_GROUP:
            return f"/subscriptions/{subscription_id}/resourceGroups/{self.name}"
        if self.parent is not None:
            child_segment = self.arm_type.rsplit("/", 1)[-1]
            parent_id = self.parent.resource_id(subscription_id)
            if self.kind == ResourceKind.STORAGE_CONTAINER:
                return f"{parent_id}/blobServices/default/containers/{self.name}"
            return f"{parent_id}/{child_segment}/{self.name}"
        return f"{group_id}/providers/{self.arm_type}/{self.name}"

    def with_properties(self, **properties: Any) -> ResourceDescriptor:
        """Return a copy with additional desired properties."""
        return replace(self, properties={**self.properties, **properties})


class ProvisioningState(str, Enum):
    """Lifecycle state of a single step's result."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


TERMINAL_STATES = frozenset(
    {ProvisioningState.SUCCEEDED, ProvisioningState.FAILED, ProvisioningState.SKIPPED}
)


@dataclass(frozen=True)
class ProvisioningResult:
    """Outcome of one pipeline step. Immutable once finalized."""

    step: str
    provisioning_state: ProvisioningState = ProvisioningState.PENDING
    resource_id: str | None = None
    error_signature: ErrorSignature | None = None
    attempts: int = 0
    warnings: tuple[str, ...] = ()
    outputs: dict[str, Any] = field(default_factory=dict, compare=False)
    via: str = "pipeline"
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @classmethod
    def start(cls, step: str) -> ProvisioningResult:
        return cls(step=step)

    @property
    def finalized(self) -> bool:
        return self.provisioning_state in TERMINAL_STATES

    def finish(
        self,
        state: ProvisioningState,
        *,
        resource_id: str | None = None,
        error_signature: ErrorSignature | None = None,
        attempts: int = 0,
        warnings: tuple[str, ...] | list[str] = (),
        outputs: dict[str, Any] | None = None,
        via: str | None = None,
    ) -> ProvisioningResult:
        """Return the finalized copy of this pending result."""
        if self.finalized:
            raise ValueError(f"Result for step '{self.step}' is already finalized")
        if state == ProvisioningState.PENDING:
            raise ValueError("Cannot finish a result in Pending state")
        return replace(
            self,
            provisioning_state=state,
            resource_id=resource_id,
            error_signature=error_signature,
            attempts=attempts,
            warnings=tuple(warnings),
            outputs=dict(outputs or {}),
            via=via or self.via,
            finished_at=datetime.now(UTC),
        )

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "state": self.provisioning_state.value,
            "resource_id": self.resource_id,
            "error": self.error_signature.to_dict() if self.error_signature else None,
            "attempts": self.attempts,
            "warnings": list(self.warnings),
            "via": self.via,
            "duration_seconds": self.duration_seconds,
        }


class ProvisioningHistory:
    """Append-only record of finalized step results for one run."""

    def __init__(self) -> None:
        self._results: list[ProvisioningResult] = []

    def append(self, result: ProvisioningResult) -> None:
        if not result.finalized:
            raise ValueError(f"Refusing to record non-finalized result for '{result.step}'")
        self._results.append(result)

    def latest(self, step: str) -> ProvisioningResult | None:
        for result in reversed(self._results):
            if result.step == step:
                return result
        return None

    def states(self) -> dict[str, ProvisioningState]:
        """Latest state per step, in first-seen order."""
        states: dict[str, ProvisioningState] = {}
        for result in self._results:
            states[result.step] = result.provisioning_state
        return states

    def failed(self) -> list[ProvisioningResult]:
        latest = {r.step: r for r in self._results}
        return [r for r in latest.values() if r.provisioning_state == ProvisioningState.FAILED]

    def __iter__(self) -> Iterator[ProvisioningResult]:
        return iter(tuple(self._results))

    def __len__(self) -> int:
        return len(self._results)


class AccessMode(str, Enum):
    """How the staging artifact's storage is accessed."""

    SHARED_KEY = "SharedKey"
    KEYLESS = "Keyless"


class CredentialKind(str, Enum):
    """Credentials that may be issued against a staging artifact."""

    ACCOUNT_KEY = "AccountKey"
    SERVICE_SAS = "ServiceSas"
    USER_DELEGATION_SAS = "UserDelegationSas"


@dataclass(frozen=True)
class IssuedCredential:
    """Record of a credential minted for the staging artifact (never the secret)."""

    kind: CredentialKind
    expires_at: datetime | None
    issued_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def lifetime(self) -> timedelta | None:
        if self.expires_at is None:
            return None
        return self.expires_at - self.issued_at


# Upper bound on any delegated token lifetime
MAX_DELEGATED_TOKEN_LIFETIME = timedelta(hours=4)


@dataclass
class StagingArtifact:
    """Transient storage location used to host the certificate payload.

    INVARIANT: with access_mode == KEYLESS no long-lived secret is ever
    issued. Only user-delegation tokens with a bounded expiry are accepted.
    """

    storage_account_ref: str
    container_name: str
    identity_ref: str | None
    access_mode: AccessMode
    issued_credentials: list[IssuedCredential] = field(default_factory=list)

    def record_credential(self, credential: IssuedCredential) -> None:
        """Record an issued credential, enforcing the access-mode invariant."""
        if credential.expires_at is None:
            if self.access_mode == AccessMode.KEYLESS or credential.kind != CredentialKind.ACCOUNT_KEY:
                raise CredentialPolicyError(
                    f"{credential.kind.value} without expiry is not allowed for "
                    f"{self.access_mode.value} staging"
                )
        if self.access_mode == AccessMode.KEYLESS:
            if credential.kind != CredentialKind.USER_DELEGATION_SAS:
                raise CredentialPolicyError(
                    f"{credential.kind.value} is not allowed for Keyless staging; "
                    "only user-delegation tokens may be issued"
                )
        lifetime = credential.lifetime
        if lifetime is not None and lifetime > MAX_DELEGATED_TOKEN_LIFETIME:
            raise CredentialPolicyError(
                f"Delegated token lifetime {lifetime} exceeds {MAX_DELEGATED_TOKEN_LIFETIME}"
            )
        self.issued_credentials.append(credential)

    @property
    def has_long_lived_secret(self) -> bool:
        return any(c.expires_at is None for c in self.issued_credentials)
