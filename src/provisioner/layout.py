"""Deterministic resource layout for one deployment.

Every descriptor a run touches is derived here from (prefix, subscription,
resource group, spec). Resource ids of dependencies are computed rather than
read back, so any step, the decision engine and teardown all address the
same resources without sharing state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from .config import Config
from .models import DeploymentSpec, SubnetConfig
from .naming import resource_name
from .resources import AccessMode, ResourceDescriptor, ResourceKind

PRIVATE_BLOB_DNS_ZONE = "privatelink.blob.core.windows.net"
DNS_ZONE_GROUP_NAME = "default"
BLOB_GROUP_ID = "blob"
CREATED_BY = "hpc-provisioner"


class ResourceLayout:
    """Descriptor factory for one (config, spec) pair."""

    def __init__(self, config: Config, spec: DeploymentSpec, created_at: datetime) -> None:
        self._config = config
        self._spec = spec
        self._created_at = created_at

    @property
    def subscription_id(self) -> str:
        return self._config.subscription_id

    @property
    def resource_group_name(self) -> str:
        return self._config.effective_resource_group

    @property
    def location(self) -> str:
        return self._config.location

    @property
    def tags(self) -> dict[str, str]:
        """Standard tags merged with spec tags (standard tags win)."""
        return {
            **self._spec.tags,
            "owner": self._config.effective_owner,
            "purpose": self._spec.purpose,
            "createdBy": CREATED_BY,
            "createdAt": self._created_at.date().isoformat(),
        }

    def _describe(
        self,
        kind: ResourceKind,
        name: str,
        properties: dict[str, Any] | None = None,
        parent: ResourceDescriptor | None = None,
        tagged: bool = True,
    ) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=kind,
            name=name,
            location=self.location,
            resource_group=self.resource_group_name,
            parent=parent,
            properties=properties or {},
            tags=self.tags if tagged else {},
        )

    def _scoped_name(self, kind: ResourceKind) -> str:
        return resource_name(
            kind, self._config.prefix, self.subscription_id, self.resource_group_name
        )

    # =========================================================================
    # Core resources
    # =========================================================================

    def resource_group(self) -> ResourceDescriptor:
        return self._describe(ResourceKind.RESOURCE_GROUP, self.resource_group_name)

    def identity(self) -> ResourceDescriptor:
        return self._describe(
            ResourceKind.MANAGED_IDENTITY,
            resource_name(ResourceKind.MANAGED_IDENTITY, self._config.prefix),
        )

    def nsg(self) -> ResourceDescriptor:
        rules = []
        for priority, source in enumerate(self._spec.network.allow_ssh_from, start=100):
            rules.append(
                {
                    "name": f"allow-ssh-{priority}",
                    "properties": {
                        "priority": priority,
                        "direction": "Inbound",
                        "access": "Allow",
                        "protocol": "Tcp",
                        "sourceAddressPrefix": source,
                        "sourcePortRange": "*",
                        "destinationAddressPrefix": "*",
                        "destinationPortRange": "22",
                    },
                }
            )
        return self._describe(
            ResourceKind.NSG,
            resource_name(ResourceKind.NSG, self._config.prefix),
            {"securityRules": rules},
        )

    def vnet(self) -> ResourceDescriptor:
        return self._describe(
            ResourceKind.VNET,
            resource_name(ResourceKind.VNET, self._config.prefix),
            {"addressSpace": {"addressPrefixes": [self._spec.network.address_space]}},
        )

    def subnet(self, subnet: SubnetConfig, *, private_endpoints: bool = False) -> ResourceDescriptor:
        properties: dict[str, Any] = {"addressPrefix": subnet.prefix}
        if private_endpoints:
            properties["privateEndpointNetworkPolicies"] = "Disabled"
        else:
            properties["networkSecurityGroup"] = {"id": self.nsg().resource_id(self.subscription_id)}
        if subnet.delegation:
            properties["delegations"] = [
                {
                    "name": f"{subnet.name}-delegation",
                    "properties": {"serviceName": subnet.delegation},
                }
            ]
        return self._describe(
            ResourceKind.SUBNET, subnet.name, properties, parent=self.vnet(), tagged=False
        )

    def subnets(self) -> list[ResourceDescriptor]:
        """All subnets, private endpoint subnet last."""
        network = self._spec.network
        return [
            *(self.subnet(s) for s in network.subnets),
            self.subnet(network.private_endpoint_subnet, private_endpoints=True),
        ]

    def cluster_subnet(self) -> ResourceDescriptor:
        wanted = self._spec.network.cluster_subnet
        subnet = next(s for s in self._spec.network.subnets if s.name == wanted)
        return self.subnet(subnet)

    def private_endpoint_subnet(self) -> ResourceDescriptor:
        return self.subnet(self._spec.network.private_endpoint_subnet, private_endpoints=True)

    def storage_account(self) -> ResourceDescriptor:
        storage = self._spec.storage
        access_mode = self._config.storage_auth_mode.access_mode
        return self._describe(
            ResourceKind.STORAGE_ACCOUNT,
            self._scoped_name(ResourceKind.STORAGE_ACCOUNT),
            {
                "sku": {"name": storage.sku},
                "kind": storage.kind,
                "minimumTlsVersion": storage.minimum_tls_version,
                "supportsHttpsTrafficOnly": True,
                "allowBlobPublicAccess": False,
                # SECURITY: shared keys stay disabled unless the run needs them
                "allowSharedKeyAccess": access_mode == AccessMode.SHARED_KEY,
                "publicNetworkAccess": "Enabled",
                "networkAcls": {"defaultAction": "Allow", "bypass": "AzureServices"},
            },
        )

    def storage_container(self) -> ResourceDescriptor:
        return self._describe(
            ResourceKind.STORAGE_CONTAINER,
            self._spec.storage.container,
            {"publicAccess": "None"},
            parent=self.storage_account(),
            tagged=False,
        )

    def storage_network_access(
        self, public_network_access: str, default_action: str
    ) -> ResourceDescriptor:
        """Storage account descriptor carrying only network access settings."""
        return self._describe(
            ResourceKind.STORAGE_ACCOUNT,
            self._scoped_name(ResourceKind.STORAGE_ACCOUNT),
            {
                "publicNetworkAccess": public_network_access,
                "networkAcls": {"defaultAction": default_action, "bypass": "AzureServices"},
            },
        )

    def key_vault(self) -> ResourceDescriptor:
        vault = self._spec.key_vault
        return self._describe(
            ResourceKind.KEY_VAULT,
            self._scoped_name(ResourceKind.KEY_VAULT),
            {
                "tenantId": self._config.tenant_id,
                "sku": {"family": "A", "name": vault.sku},
                "enableRbacAuthorization": True,
                "softDeleteRetentionInDays": vault.soft_delete_retention_days,
                "publicNetworkAccess": "Enabled",
            },
        )

    def default_vault_uri(self) -> str:
        return f"https://{self.key_vault().name}.vault.azure.net"

    def cluster_deployment_name(self) -> str:
        return resource_name(ResourceKind.CLUSTER_DEPLOYMENT, self._config.prefix)

    # =========================================================================
    # Private connectivity
    # =========================================================================

    def private_endpoint(self) -> ResourceDescriptor:
        storage = self.storage_account()
        name = resource_name(ResourceKind.PRIVATE_ENDPOINT, storage.name)
        return self._describe(
            ResourceKind.PRIVATE_ENDPOINT,
            name,
            {
                "subnet": {"id": self.private_endpoint_subnet().resource_id(self.subscription_id)},
                "privateLinkServiceConnections": [
                    {
                        "name": f"{name}-conn",
                        "properties": {
                            "privateLinkServiceId": storage.resource_id(self.subscription_id),
                            "groupIds": [BLOB_GROUP_ID],
                        },
                    }
                ],
            },
        )

    def private_dns_zone(self) -> ResourceDescriptor:
        return self._describe(ResourceKind.PRIVATE_DNS_ZONE, PRIVATE_BLOB_DNS_ZONE)

    def dns_zone_link(self) -> ResourceDescriptor:
        vnet = self.vnet()
        return self._describe(
            ResourceKind.DNS_ZONE_LINK,
            f"{vnet.name}-dns-link",
            {
                "virtualNetwork": {"id": vnet.resource_id(self.subscription_id)},
                "registrationEnabled": False,
            },
            parent=self.private_dns_zone(),
        )

    def dns_zone_group(self) -> ResourceDescriptor:
        zone = self.private_dns_zone()
        return self._describe(
            ResourceKind.DNS_ZONE_GROUP,
            DNS_ZONE_GROUP_NAME,
            {
                "privateDnsZoneConfigs": [
                    {
                        "name": zone.name.replace(".", "-"),
                        "properties": {"privateDnsZoneId": zone.resource_id(self.subscription_id)},
                    }
                ]
            },
            parent=self.private_endpoint(),
            tagged=False,
        )
