"""Tests for the certificate repair engine."""

from __future__ import annotations

import pytest
from azure_mock import MockCloudClient, make_engines

from provisioner.context import RunContext
from provisioner.errors import ErrorCode, ErrorSignature, PolicyDenied
from provisioner.repair import REPAIR_VIA, NoActionNeeded, RepairAction, RepairEngine
from provisioner.resources import ProvisioningResult, ProvisioningState
from provisioner.steps import CERTIFICATE_STEP

VAULT = "https://kv-hpc-demo.vault.azure.net"

DENIED = ErrorSignature(
    ErrorCode.SHARED_KEY_AUTH_DENIED,
    "Key based authentication is not permitted on this storage account.",
)


def record_certificate(
    context: RunContext,
    state: ProvisioningState,
    error: ErrorSignature | None = None,
) -> None:
    context.history.append(
        ProvisioningResult.start(CERTIFICATE_STEP).finish(state, error_signature=error)
    )


def repair_engine(context: RunContext, cloud: MockCloudClient) -> RepairEngine:
    engines = make_engines(context, cloud)
    return RepairEngine(context, cloud, engines.executor, engines.policies)


class TestInspect:
    """Tests for RepairEngine.inspect()."""

    def test_step_not_run(self, context: RunContext, cloud: MockCloudClient) -> None:
        decision = repair_engine(context, cloud).inspect()

        assert isinstance(decision, NoActionNeeded)
        assert decision.escalate is False

    def test_succeeded_step_needs_nothing(self, context: RunContext, cloud: MockCloudClient) -> None:
        record_certificate(context, ProvisioningState.SUCCEEDED)

        decision = repair_engine(context, cloud).inspect()

        assert isinstance(decision, NoActionNeeded)
        assert "Succeeded" in decision.reason

    def test_other_signature_escalates(self, context: RunContext, cloud: MockCloudClient) -> None:
        context.outputs["vault_uri"] = VAULT
        other = ErrorSignature(ErrorCode.POLICY_VIOLATION, "Key vault creation denied")
        record_certificate(context, ProvisioningState.FAILED, other)

        decision = repair_engine(context, cloud).inspect()

        assert isinstance(decision, NoActionNeeded)
        assert decision.escalate is True
        assert decision.error_signature == other
        assert decision.reason == "No action for signature PolicyViolation; escalate"

    def test_missing_vault_escalates(self, context: RunContext, cloud: MockCloudClient) -> None:
        record_certificate(context, ProvisioningState.FAILED, DENIED)

        decision = repair_engine(context, cloud).inspect()

        assert isinstance(decision, NoActionNeeded)
        assert decision.escalate is True

    def test_shared_key_denial_yields_action(
        self, context: RunContext, cloud: MockCloudClient
    ) -> None:
        context.outputs["vault_uri"] = VAULT
        record_certificate(context, ProvisioningState.FAILED, DENIED)

        decision = repair_engine(context, cloud).inspect()

        assert isinstance(decision, RepairAction)
        assert decision.step == CERTIFICATE_STEP
        assert decision.vault_uri == VAULT
        assert decision.policy == context.spec.certificate

    def test_only_latest_result_counts(self, context: RunContext, cloud: MockCloudClient) -> None:
        context.outputs["vault_uri"] = VAULT
        record_certificate(context, ProvisioningState.FAILED, DENIED)
        record_certificate(context, ProvisioningState.SUCCEEDED)

        assert isinstance(repair_engine(context, cloud).inspect(), NoActionNeeded)


class TestApply:
    """Tests for RepairEngine.apply()."""

    def _action(self, context: RunContext) -> RepairAction:
        return RepairAction(CERTIFICATE_STEP, VAULT, context.spec.certificate, DENIED)

    @pytest.mark.asyncio
    async def test_creates_certificate_natively(
        self, context: RunContext, cloud: MockCloudClient
    ) -> None:
        outcome = await repair_engine(context, cloud).apply(self._action(context))

        assert outcome.success
        assert outcome.created is True
        assert outcome.result.via == REPAIR_VIA
        assert outcome.result.provisioning_state == ProvisioningState.SUCCEEDED
        assert context.history.latest(CERTIFICATE_STEP) == outcome.result
        assert context.output("certificate_thumbprint") == "thumb-cluster-cert"
        assert cloud.count("create_certificate") == 1
        assert cloud.count("run_remote_command") == 0
        assert cloud.count("mint_container_token") == 0

    @pytest.mark.asyncio
    async def test_existing_certificate_not_recreated(
        self, context: RunContext, cloud: MockCloudClient
    ) -> None:
        cloud.create_certificate(VAULT, "cluster-cert", context.spec.certificate)

        outcome = await repair_engine(context, cloud).apply(self._action(context))

        assert outcome.success
        assert outcome.created is False
        assert "already present" in outcome.message
        assert cloud.count("create_certificate") == 1

    @pytest.mark.asyncio
    async def test_creation_failure_recorded(
        self, context: RunContext, cloud: MockCloudClient
    ) -> None:
        cloud.fail("create_certificate", PolicyDenied("Certificate issuance denied"), times=5)

        outcome = await repair_engine(context, cloud).apply(self._action(context))

        assert outcome.success is False
        assert outcome.created is False
        assert outcome.result.error_signature.code == ErrorCode.POLICY_VIOLATION
        assert outcome.result.via == REPAIR_VIA
        assert cloud.count("create_certificate") == 1
