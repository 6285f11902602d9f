"""Provisioning steps for the HPC environment.

Each step converges its resources through the ensurer (wrapped by the retry
executor) and hands its outputs back to the pipeline. Optional steps raise
SkipStep instead of swallowing a failure, so the outcome is recorded as
Skipped with a warning.

Order and dependencies:

    resource_group -> identity -> network -> storage
        -> role_assignment (optional)
        -> certificate (optional, depends on role_assignment)
        -> cluster (depends on certificate when one is requested)
"""

from __future__ import annotations

import logging
from typing import Any

from .certificates import strategy_for
from .cloud import CloudClient, role_assignment_name
from .context import RunContext
from .ensurer import ResourceEnsurer
from .errors import (
    AlreadyExistsConflict,
    ErrorCode,
    PolicyDenied,
    ResourceMissing,
    RetryExhaustedError,
    UnclassifiedCloudError,
)
from .pipeline import PipelineState, ProvisioningPipeline, SkipStep, Step, StepOutput
from .resources import ResourceDescriptor, StagingArtifact
from .retry import RetryExecutor, RetryPolicies
from .spec_loader import SpecLoadError, load_template

logger = logging.getLogger(__name__)

# Step names, shared with the repair engine and the CLI
RESOURCE_GROUP_STEP = "resource_group"
IDENTITY_STEP = "identity"
NETWORK_STEP = "network"
STORAGE_STEP = "storage"
ROLE_ASSIGNMENT_STEP = "role_assignment"
CERTIFICATE_STEP = "certificate"
CLUSTER_STEP = "cluster"


class StepCatalogue:
    """Builds the provisioning pipeline over one set of collaborators."""

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

    def build_pipeline(self, certificate_enabled: bool = True) -> ProvisioningPipeline:
        """Without a requested certificate the cluster does not wait for one."""
        cluster_depends_on = (CERTIFICATE_STEP,) if certificate_enabled else ()
        return ProvisioningPipeline(
            [
                Step(RESOURCE_GROUP_STEP, PipelineState.RESOURCE_GROUP_READY.value, self.resource_group),
                Step(IDENTITY_STEP, PipelineState.IDENTITY_READY.value, self.identity),
                Step(NETWORK_STEP, PipelineState.NETWORK_READY.value, self.network),
                Step(STORAGE_STEP, PipelineState.STORAGE_READY.value, self.storage),
                Step(
                    ROLE_ASSIGNMENT_STEP,
                    PipelineState.ROLE_ASSIGNED.value,
                    self.role_assignment,
                    depends_on=(IDENTITY_STEP, STORAGE_STEP),
                    optional=True,
                ),
                Step(
                    CERTIFICATE_STEP,
                    PipelineState.CERTIFICATE_STAGED.value,
                    self.certificate,
                    depends_on=(ROLE_ASSIGNMENT_STEP,),
                    optional=True,
                ),
                Step(
                    CLUSTER_STEP,
                    PipelineState.CLUSTER_DEPLOYED.value,
                    self.cluster,
                    depends_on=cluster_depends_on,
                ),
            ],
            name="provisioning",
        )

    # =========================================================================
    # Core infrastructure
    # =========================================================================

    async def resource_group(self, ctx: RunContext) -> StepOutput:
        outcome = await self._ensurer.ensure(
            ctx.layout.resource_group(), force_fresh=ctx.config.force_fresh
        )
        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={"resource_group_id": outcome.resource_id},
            attempts=outcome.attempts,
        )

    async def identity(self, ctx: RunContext) -> StepOutput:
        descriptor = ctx.layout.identity()
        outcome = await self._ensurer.ensure(descriptor)

        warnings: list[str] = []
        principal_id = outcome.properties.get("principalId")
        if not principal_id:
            try:
                principal_id = await self._await_principal(descriptor)
            except RetryExhaustedError as e:
                warnings.append(
                    f"Identity principal not resolvable after {e.attempts} attempts; "
                    "role assignment will be skipped"
                )
                principal_id = None

        return StepOutput(
            resource_id=outcome.resource_id,
            outputs={
                "identity_id": outcome.resource_id,
                "principal_id": principal_id,
                "client_id": outcome.properties.get("clientId"),
            },
            warnings=tuple(warnings),
            attempts=outcome.attempts,
        )

    async def _await_principal(self, descriptor: ResourceDescriptor) -> str:
        def read_principal() -> str:
            observed = self._cloud.get_resource(descriptor) or {}
            principal_id = (observed.get("properties") or {}).get("principalId")
            if not principal_id:
                raise ResourceMissing(f"Principal of identity '{descriptor.name}' not visible yet")
            return principal_id

        result = await self._executor.execute(
            read_principal,
            self._policies.identity_propagation,
            operation_name=f"resolve principal {descriptor.name}",
        )
        return result.value

    async def network(self, ctx: RunContext) -> StepOutput:
        layout = ctx.layout
        attempts = 0
        nsg = await self._ensurer.ensure(layout.nsg())
        vnet = await self._ensurer.ensure(layout.vnet())
        attempts += nsg.attempts + vnet.attempts

        subnet_ids: dict[str, str] = {}
        for descriptor in layout.subnets():
            outcome = await self._ensurer.ensure(descriptor)
            subnet_ids[descriptor.name] = outcome.resource_id
            attempts += outcome.attempts

        return StepOutput(
            resource_id=vnet.resource_id,
            outputs={
                "nsg_id": nsg.resource_id,
                "vnet_id": vnet.resource_id,
                "subnet_ids": subnet_ids,
                "cluster_subnet_id": subnet_ids[layout.cluster_subnet().name],
                "private_endpoint_subnet_id": subnet_ids[layout.private_endpoint_subnet().name],
            },
            attempts=attempts,
        )

    async def storage(self, ctx: RunContext) -> StepOutput:
        layout = ctx.layout
        account = await self._ensurer.ensure(layout.storage_account())
        container_descriptor = layout.storage_container()
        container = await self._ensurer.ensure(container_descriptor)

        ctx.staging = StagingArtifact(
            storage_account_ref=account.resource_id,
            container_name=container_descriptor.name,
            identity_ref=ctx.output("identity_id"),
            access_mode=ctx.config.storage_auth_mode.access_mode,
        )
        return StepOutput(
            resource_id=account.resource_id,
            outputs={
                "storage_account_id": account.resource_id,
                "storage_account_name": layout.storage_account().name,
                "container_name": container_descriptor.name,
                "container_id": container.resource_id,
            },
            attempts=account.attempts + container.attempts,
        )

    # =========================================================================
    # Optional steps
    # =========================================================================

    async def role_assignment(self, ctx: RunContext) -> StepOutput:
        principal_id = ctx.output("principal_id")
        if not principal_id:
            raise SkipStep("Identity principal could not be resolved; role not assigned")

        role = ctx.spec.role
        scope = ctx.output("storage_account_id")
        attempts = 0
        if role.is_custom:
            role_name = role.custom_role_name or f"{ctx.config.prefix}-hpc-staging"
            assignable_scope = ctx.layout.resource_group().resource_id(ctx.subscription_id)
            definition = await self._executor.execute(
                lambda: self._cloud.ensure_role_definition(
                    role_name,
                    assignable_scope,
                    list(role.actions),
                    list(role.data_actions),
                    role.description,
                ),
                self._policies.creation,
                operation_name=f"ensure role definition {role_name}",
            )
            role_definition_id = definition.value
            attempts += definition.attempts
        else:
            role_definition_id = role.built_in_role_definition_id(ctx.subscription_id)

        try:
            assigned = await self._executor.execute(
                lambda: self._cloud.assign_role(principal_id, scope, role_definition_id),
                self._policies.role_propagation,
                operation_name="assign staging role",
            )
        except AlreadyExistsConflict as e:
            assignment_id = (
                f"{scope}/providers/Microsoft.Authorization/roleAssignments/"
                f"{role_assignment_name(principal_id, role_definition_id, scope)}"
            )
            logger.info("Role assignment already exists", extra={"assignment_id": assignment_id})
            return StepOutput(
                resource_id=assignment_id,
                outputs={"role_assignment_id": assignment_id, "role_definition_id": role_definition_id},
                attempts=attempts + e.attempts,
            )
        except RetryExhaustedError as e:
            raise SkipStep(
                f"Role assignment did not propagate after {e.attempts} attempts "
                f"({e.signature.code.value})"
            ) from e

        return StepOutput(
            resource_id=assigned.value,
            outputs={"role_assignment_id": assigned.value, "role_definition_id": role_definition_id},
            attempts=attempts + assigned.attempts,
        )

    async def certificate(self, ctx: RunContext) -> StepOutput:
        policy = ctx.spec.certificate
        if not policy.enabled:
            raise SkipStep("No certificate requested")
        if not ctx.config.tenant_id:
            raise SkipStep("Key vault prerequisite unavailable: AZURE_TENANT_ID is not set")

        try:
            vault = await self._ensurer.ensure(ctx.layout.key_vault())
        except PolicyDenied as e:
            raise SkipStep(f"Key vault prerequisite unavailable: {e}") from e

        vault_uri = vault.properties.get("vaultUri") or ctx.layout.default_vault_uri()
        # Recorded before staging so a repair can target the same vault
        ctx.outputs["vault_uri"] = vault_uri
        ctx.outputs["key_vault_id"] = vault.resource_id

        strategy = strategy_for(
            ctx.config.storage_auth_mode.access_mode, self._cloud, self._executor, self._policies
        )
        logger.info(
            "Staging certificate",
            extra={"certificate": policy.name, "access_mode": strategy.access_mode.value},
        )
        certificate = await strategy.stage(ctx, vault_uri, policy)
        return StepOutput(
            resource_id=certificate.get("id"),
            outputs=certificate_outputs(certificate, vault_uri),
            attempts=vault.attempts,
        )

    # =========================================================================
    # Cluster
    # =========================================================================

    async def cluster(self, ctx: RunContext) -> StepOutput:
        cluster = ctx.spec.cluster
        try:
            template = load_template(ctx.config.effective_templates_dir, cluster.template)
        except SpecLoadError as e:
            raise UnclassifiedCloudError(str(e), ErrorCode.UNCLASSIFIED) from e

        parameters = cluster.to_arm_parameters(
            declared_parameters(template, self._resolved_parameters(ctx))
        )
        name = ctx.layout.cluster_deployment_name()
        deployed = await self._executor.execute(
            lambda: self._cloud.deploy_template(ctx.resource_group, name, template, parameters),
            self._policies.creation,
            operation_name=f"deploy cluster {name}",
        )
        outputs = deployed.value
        return StepOutput(
            resource_id=outputs.get("clusterResourceId"),
            outputs={
                "cluster_resource_id": outputs.get("clusterResourceId"),
                "cluster_endpoint": outputs.get("clusterEndpoint"),
            },
            attempts=deployed.attempts,
        )

    @staticmethod
    def _resolved_parameters(ctx: RunContext) -> dict[str, Any]:
        return {
            "location": ctx.location,
            "adminUsername": ctx.config.admin_username,
            "adminSshPublicKey": ctx.config.admin_ssh_public_key,
            "subnetId": ctx.output("cluster_subnet_id"),
            "identityId": ctx.output("identity_id"),
            "storageAccountName": ctx.output("storage_account_name"),
            "keyVaultUri": ctx.output("vault_uri"),
            "certificateSecretId": ctx.output("certificate_secret_id"),
            "tags": ctx.layout.tags,
        }


def certificate_outputs(certificate: dict[str, Any], vault_uri: str) -> dict[str, Any]:
    return {
        "vault_uri": vault_uri,
        "certificate_id": certificate.get("id"),
        "certificate_secret_id": certificate.get("secret_id"),
        "certificate_thumbprint": certificate.get("thumbprint"),
    }


def declared_parameters(template: dict[str, Any], resolved: dict[str, Any]) -> dict[str, Any]:
    """Keep only the resolved values the template declares as parameters.

    ARM rejects deployments that pass undeclared parameters.
    """
    declared = template.get("parameters") or {}
    return {key: value for key, value in resolved.items() if key in declared}

