"""Post-deployment decision engine.

Executes the remediation chosen through a DecisionSource against the staging
storage account. Every action is idempotent:

- EnablePublicNetwork: open network access, optionally revert after a delay
- PrivateEndpointGuidance: ordered manual plan, no cloud calls
- PrivateEndpointAutomated: private endpoint sub-pipeline
- PolicyExemptionGuidance: exemption plan scoped to the storage account
- Custom: records the operator's text, nothing is automated
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .cloud import CloudClient
from .context import RunContext
from .decision import Decision, DecisionSource, RemediationAction
from .ensurer import ResourceEnsurer
from .errors import CloudError, ErrorSignature, RetryExhaustedError
from .layout import BLOB_GROUP_ID, DNS_ZONE_GROUP_NAME
from .pipeline import PipelineOutcome
from .private_link import PrivateLinkSteps
from .retry import RetryExecutor, RetryPolicies

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecisionOutcome:
    """What the decision engine did (or why it did nothing)."""

    action: RemediationAction | None
    executed: bool
    message: str
    source: str | None = None
    plan: tuple[str, ...] = ()
    text: str | None = None
    changed: tuple[str, ...] = ()
    reverted: bool = False
    error: ErrorSignature | None = None
    sub_pipeline: PipelineOutcome | None = None
    connections: tuple[dict[str, Any], ...] = ()

    @property
    def skipped(self) -> bool:
        return self.action is None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value if self.action else None,
            "executed": self.executed,
            "source": self.source,
            "message": self.message,
            "plan": list(self.plan),
            "changed": list(self.changed),
            "reverted": self.reverted,
            "error": self.error.to_dict() if self.error else None,
        }


class DecisionEngine:
    """Runs the remediation selected by an injected DecisionSource."""

    def __init__(
        self,
        context: RunContext,
        cloud: CloudClient,
        ensurer: ResourceEnsurer,
        executor: RetryExecutor,
        policies: RetryPolicies,
        source: DecisionSource,
    ) -> None:
        self._context = context
        self._cloud = cloud
        self._ensurer = ensurer
        self._executor = executor
        self._policies = policies
        self._source = source

    async def run(self) -> DecisionOutcome:
        decision = self._source.decide()
        if decision is None:
            logger.info("Remediation skipped", extra={"source": self._source.name})
            return DecisionOutcome(
                action=None,
                executed=False,
                source=self._source.name,
                message="Remediation skipped: no valid choice was made",
            )

        action = decision.action(self._context.config.create_private_endpoint)
        logger.info(
            "Remediation selected",
            extra={
                "choice": decision.choice.value,
                "action": action.value,
                "source": decision.source,
            },
        )
        return await self.execute(action, decision)

    async def execute(self, action: RemediationAction, decision: Decision) -> DecisionOutcome:
        try:
            match action:
                case RemediationAction.ENABLE_PUBLIC_NETWORK:
                    return await self.enable_public_network(decision)
                case RemediationAction.PRIVATE_ENDPOINT_GUIDANCE:
                    return self.private_endpoint_guidance(decision)
                case RemediationAction.PRIVATE_ENDPOINT_AUTOMATED:
                    return await self.private_endpoint_automated(decision)
                case RemediationAction.POLICY_EXEMPTION_GUIDANCE:
                    return self.policy_exemption_guidance(decision)
                case _:
                    return self.custom(decision)
        except (CloudError, RetryExhaustedError) as e:
            logger.error(
                "Remediation failed",
                extra={"action": action.value, "error_code": e.signature.code.value},
            )
            return DecisionOutcome(
                action=action,
                executed=False,
                source=decision.source,
                message=f"{action.value} failed: {e.signature.message}",
                error=e.signature,
            )

    # =========================================================================
    # Actions
    # =========================================================================

    async def enable_public_network(self, decision: Decision) -> DecisionOutcome:
        layout = self._context.layout
        storage = layout.storage_account()
        observed = await self._executor.execute(
            lambda: self._cloud.get_resource(storage),
            self._policies.creation,
            operation_name=f"read network access {storage.name}",
        )
        properties = (observed.value or {}).get("properties") or {}
        # Azure defaults when the fields are absent
        previous_access = properties.get("publicNetworkAccess") or "Enabled"
        previous_action = (properties.get("networkAcls") or {}).get("defaultAction") or "Allow"

        opened = await self._ensurer.update(layout.storage_network_access("Enabled", "Allow"))
        changed = (opened.resource_id,) if opened.updated else ()
        message = f"Public network access enabled on '{storage.name}'"

        revert_after = self._context.config.revert_after_seconds
        if not revert_after:
            return DecisionOutcome(
                action=RemediationAction.ENABLE_PUBLIC_NETWORK,
                executed=True,
                source=decision.source,
                message=message,
                changed=changed,
            )

        logger.info(
            "Waiting before reverting network access",
            extra={"storage_account": storage.name, "revert_after_seconds": revert_after},
        )
        if not await self._context.token.wait(revert_after):
            logger.warning(
                "Revert wait interrupted; network access stays open",
                extra={"storage_account": storage.name},
            )
            return DecisionOutcome(
                action=RemediationAction.ENABLE_PUBLIC_NETWORK,
                executed=True,
                source=decision.source,
                message=f"{message}; revert cancelled, access remains open",
                changed=changed,
            )

        await self._ensurer.update(
            layout.storage_network_access(previous_access, previous_action),
            self._policies.revert,
        )
        logger.info(
            "Network access reverted",
            extra={
                "storage_account": storage.name,
                "public_network_access": previous_access,
                "default_action": previous_action,
            },
        )
        return DecisionOutcome(
            action=RemediationAction.ENABLE_PUBLIC_NETWORK,
            executed=True,
            source=decision.source,
            message=f"{message}; reverted after {revert_after}s",
            changed=changed,
            reverted=True,
        )

    def private_endpoint_guidance(self, decision: Decision) -> DecisionOutcome:
        layout = self._context.layout
        storage = layout.storage_account()
        endpoint = layout.private_endpoint()
        subnet = layout.private_endpoint_subnet()
        vnet = layout.vnet()
        zone = layout.private_dns_zone()
        link = layout.dns_zone_link()
        group = layout.resource_group_name

        plan = (
            f"1. Create private endpoint '{endpoint.name}' in subnet '{subnet.name}' of VNet "
            f"'{vnet.name}' for storage account '{storage.name}' (group id '{BLOB_GROUP_ID}'):\n"
            f"   az network private-endpoint create -g {group} -n {endpoint.name} "
            f"--vnet-name {vnet.name} --subnet {subnet.name} "
            f"--private-connection-resource-id {storage.resource_id(layout.subscription_id)} "
            f"--group-id {BLOB_GROUP_ID} --connection-name {endpoint.name}-conn",
            f"2. Create private DNS zone '{zone.name}':\n"
            f"   az network private-dns zone create -g {group} -n {zone.name}",
            f"3. Link the zone to VNet '{vnet.name}':\n"
            f"   az network private-dns link vnet create -g {group} -z {zone.name} "
            f"-n {link.name} -v {vnet.name} -e false",
            f"4. Attach the zone to the endpoint with DNS zone group '{DNS_ZONE_GROUP_NAME}':\n"
            f"   az network private-endpoint dns-zone-group create -g {group} "
            f"--endpoint-name {endpoint.name} -n {DNS_ZONE_GROUP_NAME} "
            f"--private-dns-zone {zone.name} --zone-name blob",
            f"5. Deny public traffic on '{storage.name}':\n"
            f"   az storage account update -g {group} -n {storage.name} "
            "--default-action Deny --bypass AzureServices",
            f"6. Verify the endpoint connection is Approved:\n"
            f"   az storage account show -g {group} -n {storage.name} "
            "--query privateEndpointConnections",
        )
        return DecisionOutcome(
            action=RemediationAction.PRIVATE_ENDPOINT_GUIDANCE,
            executed=True,
            source=decision.source,
            message="Private endpoint guidance (no changes made)",
            plan=plan,
        )

    async def private_endpoint_automated(self, decision: Decision) -> DecisionOutcome:
        steps = PrivateLinkSteps(self._cloud, self._ensurer, self._executor, self._policies)
        outcome = await steps.build_pipeline().run(self._context)
        if not outcome.success:
            return DecisionOutcome(
                action=RemediationAction.PRIVATE_ENDPOINT_AUTOMATED,
                executed=False,
                source=decision.source,
                message=f"Private endpoint setup failed at {outcome.failed_step}",
                error=outcome.error,
                sub_pipeline=outcome,
            )

        connections = await steps.list_connections(self._context)
        changed = tuple(
            result.resource_id
            for result in self._context.history
            if result.step.startswith("private_link.") and result.resource_id
        )
        return DecisionOutcome(
            action=RemediationAction.PRIVATE_ENDPOINT_AUTOMATED,
            executed=True,
            source=decision.source,
            message=f"Private endpoint configured ({len(connections)} connection(s))",
            changed=changed,
            sub_pipeline=outcome,
            connections=tuple(connections),
        )

    def policy_exemption_guidance(self, decision: Decision) -> DecisionOutcome:
        layout = self._context.layout
        storage_id = layout.storage_account().resource_id(layout.subscription_id)
        plan = (
            "1. Find the policy assignment that denies the staging storage account:\n"
            f"   az policy state list --resource {storage_id} "
            "--filter \"complianceState eq 'NonCompliant'\"",
            f"2. Request an exemption scoped to the storage account only:\n"
            f"   scope: {storage_id}",
            "3. Create the exemption once approved (time-bound, category Waiver):\n"
            f"   az policy exemption create -n {layout.storage_account().name}-staging "
            f"--scope {storage_id} --policy-assignment <assignment-id> "
            "--exemption-category Waiver --expires-on <date>",
            "4. Re-run the deployment with the same parameters.",
        )
        return DecisionOutcome(
            action=RemediationAction.POLICY_EXEMPTION_GUIDANCE,
            executed=True,
            source=decision.source,
            message=f"Policy exemption guidance for {storage_id} (no changes made)",
            plan=plan,
        )

    def custom(self, decision: Decision) -> DecisionOutcome:
        text = decision.text or ""
        logger.info("Custom remediation recorded", extra={"text": text})
        return DecisionOutcome(
            action=RemediationAction.CUSTOM,
            executed=True,
            source=decision.source,
            message="Custom remediation recorded; no automated action",
            text=text,
        )
