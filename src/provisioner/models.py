"""Pydantic models for the deployment spec with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Defaults matching the reference HPC layout, so a run works without a spec file
"""

from __future__ import annotations

import ipaddress
import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# =============================================================================
# Network
# =============================================================================

# Azure reserves five addresses per subnet; /29 is the smallest it accepts
MAX_SUBNET_PREFIX_LENGTH = 29


class SubnetConfig(BaseModel):
    """Virtual network subnet configuration."""

    model_config = {"extra": "ignore"}  # Allow extra fields for forward compatibility

    name: Annotated[str, Field(min_length=1, max_length=80)]
    prefix: str = Field(alias="addressPrefix")
    # Service delegation, e.g. Microsoft.StorageCache/amlFilesystems
    delegation: str | None = None

    @field_validator("prefix")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(f"prefix must be a CIDR block with a prefix length (e.g., 10.0.0.0/24), got '{v}'")
        try:
            network = ipaddress.ip_network(v, strict=True)
        except ValueError as e:
            raise ValueError(f"prefix must be a valid CIDR block (e.g., 10.0.0.0/24): {e}") from e
        if network.prefixlen > MAX_SUBNET_PREFIX_LENGTH:
            raise ValueError(
                f"prefix '{v}' is smaller than the Azure minimum subnet /{MAX_SUBNET_PREFIX_LENGTH}"
            )
        return v


def _default_subnets() -> list[SubnetConfig]:
    return [
        SubnetConfig(name="default", addressPrefix="10.0.0.0/24"),
        SubnetConfig(name="lustre", addressPrefix="10.0.4.0/22"),
        SubnetConfig(name="aks", addressPrefix="10.0.8.0/22"),
    ]


def _default_private_endpoint_subnet() -> SubnetConfig:
    return SubnetConfig(name="priv-endpoint", addressPrefix="10.0.255.0/27")


class NetworkConfig(BaseModel):
    """Virtual network, subnets and NSG for the cluster."""

    model_config = {"extra": "ignore"}

    address_space: str = Field("10.0.0.0/16", alias="addressSpace")
    subnets: list[SubnetConfig] = Field(default_factory=_default_subnets)
    private_endpoint_subnet: SubnetConfig = Field(
        default_factory=_default_private_endpoint_subnet, alias="privateEndpointSubnet"
    )
    # Subnet the cluster nodes attach to
    cluster_subnet: str = Field("default", alias="clusterSubnet")
    allow_ssh_from: list[str] = Field(default_factory=list, alias="allowSshFrom")

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(f"addressSpace must be a CIDR block with a prefix length, got '{v}'")
        try:
            ipaddress.ip_network(v, strict=True)
        except ValueError as e:
            raise ValueError(f"addressSpace must be a valid CIDR block: {e}") from e
        return v

    @model_validator(mode="after")
    def validate_subnets(self) -> NetworkConfig:
        space = ipaddress.ip_network(self.address_space)
        all_subnets = [*self.subnets, self.private_endpoint_subnet]

        names = [s.name for s in all_subnets]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate subnet names: {sorted(duplicates)}")

        networks = []
        for subnet in all_subnets:
            network = ipaddress.ip_network(subnet.prefix)
            if not network.subnet_of(space):  # type: ignore[arg-type]
                raise ValueError(
                    f"Subnet '{subnet.name}' ({subnet.prefix}) is outside {self.address_space}"
                )
            networks.append((subnet.name, network))

        for i, (name_a, net_a) in enumerate(networks):
            for name_b, net_b in networks[i + 1 :]:
                if net_a.overlaps(net_b):
                    raise ValueError(f"Subnets '{name_a}' and '{name_b}' overlap")

        if self.cluster_subnet not in {s.name for s in self.subnets}:
            raise ValueError(f"clusterSubnet '{self.cluster_subnet}' is not a declared subnet")
        return self


# =============================================================================
# Storage
# =============================================================================


class StorageConfig(BaseModel):
    """Staging storage account configuration."""

    model_config = {"extra": "ignore"}

    sku: str = "Standard_LRS"
    kind: str = "StorageV2"
    container: Annotated[str, Field(min_length=3, max_length=63)] = "staging"
    minimum_tls_version: str = Field("TLS1_2", alias="minimumTlsVersion")

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid = {"Standard_LRS", "Standard_GRS", "Standard_ZRS", "Premium_LRS"}
        if v not in valid:
            raise ValueError(f"sku must be one of {valid}")
        return v

    @field_validator("container")
    @classmethod
    def validate_container(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9](?!.*--)[a-z0-9-]*[a-z0-9]$", v):
            raise ValueError("container must be lowercase letters, digits and single hyphens")
        return v

    @field_validator("minimum_tls_version")
    @classmethod
    def validate_tls(cls, v: str) -> str:
        if v not in {"TLS1_2", "TLS1_3"}:
            raise ValueError("minimumTlsVersion must be TLS1_2 or newer")
        return v


# =============================================================================
# Certificate
# =============================================================================

VALID_KEY_USAGES = frozenset(
    {
        "digitalSignature",
        "nonRepudiation",
        "keyEncipherment",
        "dataEncipherment",
        "keyAgreement",
        "keyCertSign",
        "cRLSign",
    }
)

OID_PATTERN = r"^[0-2](\.\d+)+$"


class CertificatePolicy(BaseModel):
    """Desired certificate properties.

    The same policy is used by every creation path (staging script, native
    creation, and the repair engine), so the issued certificate is identical
    whichever path succeeds.
    """

    model_config = {"extra": "ignore", "frozen": True}

    enabled: bool = True
    name: Annotated[str, Field(min_length=1, max_length=127)] = "cluster-cert"
    subject: str = "CN=hpc-cluster"
    validity_months: Annotated[int, Field(ge=1, le=120, alias="validityMonths")] = 12
    key_type: str = Field("RSA", alias="keyType")
    key_size: int = Field(2048, alias="keySize")
    key_usage: tuple[str, ...] = Field(
        ("digitalSignature", "keyEncipherment"), alias="keyUsage"
    )
    enhanced_key_usage: tuple[str, ...] = Field(
        ("1.3.6.1.5.5.7.3.1", "1.3.6.1.5.5.7.3.2"), alias="enhancedKeyUsage"
    )

    @field_validator("subject")
    @classmethod
    def validate_subject(cls, v: str) -> str:
        if not v.startswith("CN="):
            raise ValueError("subject must start with 'CN='")
        return v

    @field_validator("key_size")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        if v not in (2048, 3072, 4096):
            raise ValueError("keySize must be 2048, 3072 or 4096")
        return v

    @field_validator("key_usage")
    @classmethod
    def validate_key_usage(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        unknown = set(v) - VALID_KEY_USAGES
        if unknown:
            raise ValueError(f"Unknown keyUsage values: {sorted(unknown)}")
        return v

    @field_validator("enhanced_key_usage")
    @classmethod
    def validate_ekus(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for oid in v:
            if not re.match(OID_PATTERN, oid):
                raise ValueError(f"Invalid EKU OID: {oid}")
        return v

    def to_key_vault_policy(self) -> dict[str, Any]:
        """Render as a Key Vault certificate policy body."""
        return {
            "key_props": {
                "exportable": True,
                "kty": self.key_type,
                "key_size": self.key_size,
                "reuse_key": False,
            },
            "secret_props": {"contentType": "application/x-pkcs12"},
            "x509_props": {
                "subject": self.subject,
                "ekus": list(self.enhanced_key_usage),
                "key_usage": list(self.key_usage),
                "validity_months": self.validity_months,
            },
            "issuer": {"name": "Self"},
        }


class KeyVaultConfig(BaseModel):
    """Key vault hosting the cluster certificate."""

    model_config = {"extra": "ignore"}

    sku: str = "standard"
    soft_delete_retention_days: Annotated[int, Field(ge=7, le=90, alias="softDeleteRetentionDays")] = 7

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid = {"standard", "premium"}
        if v not in valid:
            raise ValueError(f"sku must be one of {valid}")
        return v


# =============================================================================
# Role
# =============================================================================

# Built-in role definition GUIDs
BUILT_IN_ROLES: dict[str, str] = {
    "Storage Blob Data Contributor": "ba92f5b4-2d11-453d-a403-e96b0029c9fe",
    "Storage Blob Delegator": "db58b8e5-c6ad-4a2a-8342-4190687cbf4a",
    "Key Vault Certificates Officer": "a4417e6f-fecd-4de8-b567-7b0420556985",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
}


class RoleConfig(BaseModel):
    """Role granted to the cluster identity on the staging storage account.

    Either a built-in role name, or a custom role built from ``actions`` and
    ``dataActions`` (ensured as a role definition before the assignment).
    """

    model_config = {"extra": "ignore"}

    built_in_role: str | None = Field("Storage Blob Data Contributor", alias="builtInRole")
    custom_role_name: str | None = Field(None, alias="customRoleName")
    description: str = "HPC cluster access to staging storage"
    actions: list[str] = Field(default_factory=list)
    data_actions: list[str] = Field(default_factory=list, alias="dataActions")

    @property
    def is_custom(self) -> bool:
        return bool(self.actions or self.data_actions)

    @model_validator(mode="after")
    def validate_role(self) -> RoleConfig:
        if not self.is_custom:
            if not self.built_in_role:
                raise ValueError("Either builtInRole or custom actions must be set")
            if self.built_in_role not in BUILT_IN_ROLES:
                raise ValueError(
                    f"Unknown builtInRole '{self.built_in_role}'. Known: {sorted(BUILT_IN_ROLES)}"
                )
        return self

    def built_in_role_definition_id(self, subscription_id: str) -> str:
        if self.built_in_role is None:
            raise ValueError("No built-in role configured")
        guid = BUILT_IN_ROLES[self.built_in_role]
        return (
            f"/subscriptions/{subscription_id}/providers/"
            f"Microsoft.Authorization/roleDefinitions/{guid}"
        )


# =============================================================================
# Cluster
# =============================================================================


class ClusterConfig(BaseModel):
    """Compute cluster deployment from a compiled ARM template."""

    model_config = {"extra": "ignore"}

    template: Annotated[str, Field(min_length=1)] = "cluster"
    vm_size: str = Field("Standard_D4s_v3", alias="vmSize")
    node_count: Annotated[int, Field(ge=1, le=1000, alias="nodeCount")] = 2
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        # SECURITY: template names are file stems, never paths
        if not re.match(r"^[a-zA-Z0-9_-]+$", v):
            raise ValueError("template must be a file stem (letters, digits, '-', '_')")
        return v

    def to_arm_parameters(self, resolved: dict[str, Any]) -> dict[str, Any]:
        """Convert to ARM template parameters.

        Args:
            resolved: Values produced by earlier steps (subnet id, identity id, ...).
        """
        params: dict[str, Any] = {
            "vmSize": {"value": self.vm_size},
            "nodeCount": {"value": self.node_count},
        }
        for key, value in resolved.items():
            if value is not None:
                params[key] = {"value": value}
        # Explicit spec parameters win over derived values
        for key, value in self.parameters.items():
            params[key] = {"value": value}
        return params


# =============================================================================
# Deployment Spec
# =============================================================================


class DeploymentSpec(BaseModel):
    """Everything one HPC environment deployment needs besides run config."""

    model_config = {"extra": "ignore"}

    purpose: str = "hpc"
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    key_vault: KeyVaultConfig = Field(default_factory=KeyVaultConfig, alias="keyVault")
    certificate: CertificatePolicy = Field(default_factory=CertificatePolicy)
    role: RoleConfig = Field(default_factory=RoleConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: dict[str, str]) -> dict[str, str]:
        if len(v) > 50:
            raise ValueError("At most 50 tags are allowed")
        for key in v:
            if len(key) > 512 or any(c in key for c in "<>%&\\?/"):
                raise ValueError(f"Invalid tag name: {key}")
        return v
