"""Private endpoint sub-pipeline for the staging storage account.

Runs on the same pipeline engine, ensurer and executor as the main
provisioning run:

    endpoint -> dns_zone -> dns_link -> zone_group -> storage_lockdown

The last step locks the storage account to ``defaultAction: Deny`` so that
blob traffic only flows through the private endpoint.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from .cloud import CloudClient
from .context import RunContext
from .ensurer import ResourceEnsurer
from .pipeline import ProvisioningPipeline, Step, StepOutput
from .retry import RetryExecutor, RetryPolicies

logger = logging.getLogger(__name__)

STEP_PREFIX = "private_link."


class PrivateLinkState(str, Enum):
    """States of the private endpoint sub-pipeline."""

    NOT_STARTED = "NotStarted"
    ENDPOINT_READY = "EndpointReady"
    DNS_ZONE_READY = "DnsZoneReady"
    DNS_LINKED = "DnsLinked"
    ZONE_GROUP_READY = "ZoneGroupReady"
    STORAGE_LOCKED = "StorageLocked"
    DONE = "Done"
    FAILED = "Failed"


class PrivateLinkSteps:
    """Steps of the private endpoint sub-pipeline."""

    def __init__(
        self,
        cloud: CloudClient,
        ensurer: ResourceEnsurer,
        executor: RetryExecutor,
        policies: RetryPolicies,
    ) -> None:
        self._cloud = cloud
        self._ensurer = ensurer
        self._executor = executor
        self._policies = policies

    def build_pipeline(self) -> ProvisioningPipeline:
        def step(name: str, reaches: PrivateLinkState, action, *depends_on: str) -> Step:
            return Step(
                f"{STEP_PREFIX}{name}",
                reaches.value,
                action,
                depends_on=tuple(f"{STEP_PREFIX}{d}" for d in depends_on),
            )

        return ProvisioningPipeline(
            [
                step("endpoint", PrivateLinkState.ENDPOINT_READY, self.endpoint),
                step("dns_zone", PrivateLinkState.DNS_ZONE_READY, self.dns_zone),
                step("dns_link", PrivateLinkState.DNS_LINKED, self.dns_link, "dns_zone"),
                step(
                    "zone_group",
                    PrivateLinkState.ZONE_GROUP_READY,
                    self.zone_group,
                    "endpoint",
                    "dns_zone",
                ),
                step(
                    "storage_lockdown",
                    PrivateLinkState.STORAGE_LOCKED,
                    self.storage_lockdown,
                    "zone_group",
                ),
            ],
            name="private_link",
            initial_state=PrivateLinkState.NOT_STARTED.value,
            done_state=PrivateLinkState.DONE.value,
        )

    async def endpoint(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.ensure(ctx.layout.private_endpoint())
        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={"private_endpoint_id": outcome.resource_id},
            attempts=outcome.attempts,
        )

    async def dns_zone(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.ensure(ctx.layout.private_dns_zone())
        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={"private_dns_zone_id": outcome.resource_id},
            attempts=outcome.attempts,
        )

    async def dns_link(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.ensure(ctx.layout.dns_zone_link())
        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={"dns_zone_link_id": outcome.resource_id},
            attempts=outcome.attempts,
        )

    async def zone_group(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.ensure(ctx.layout.dns_zone_group())
        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={"dns_zone_group_id": outcome.resource_id},
            attempts=outcome.attempts,
        )

    async def storage_lockdown(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.update(
            ctx.layout.storage_network_access("Enabled", "Deny")
        )
        logger.info(
            "Storage account locked to private endpoint traffic",
            extra={"storage_account_id": outcome.resource_id, "changed": outcome.updated},
        )
        return StepOutput(resource_id=outcome.resource_id, attempts=outcome.attempts)

    async def list_connections(self, ctx: RunContext) -> list[dict[str, Any]]:
        """Private endpoint connections currently on the storage account."""
        storage = ctx.layout.storage_account()
        observed = await self._executor.execute(
            lambda: self._cloud.get_resource(storage),
            self._policies.creation,
            operation_name=f"list private endpoint connections {storage.name}",
        )
        properties = (observed.value or {}).get("properties") or {}
        connections = []
        for connection in properties.get("privateEndpointConnections") or []:
            details = connection.get("properties") or {}
            state = details.get("privateLinkServiceConnectionState") or {}
            connections.append(
                {
                    "name": connection.get("name"),
                    "private_endpoint_id": (details.get("privateEndpoint") or {}).get("id"),
                    "status": state.get("status"),
                    "description": state.get("description"),
                }
            )
        return connections
