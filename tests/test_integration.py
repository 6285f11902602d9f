"""End-to-end runs against the in-memory cloud.

These tests exercise the full provisioner flow (pipeline, repair engine and
decision engine) without Azure connectivity.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from azure_mock import MockAzureContext, MockCloudClient, make_config, make_context

from provisioner.config import Config, StorageAuthMode
from provisioner.context import CancellationToken
from provisioner.decision import PresetDecisionSource, RemediationAction, RemediationChoice
from provisioner.errors import ErrorCode, ErrorSignature, PolicyDenied, QuotaExceeded
from provisioner.main import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    JsonFormatter,
    Provisioner,
    RunReport,
    run_deployment,
)
from provisioner.models import DeploymentSpec
from provisioner.pipeline import PipelineOutcome
from provisioner.remediation import DecisionOutcome
from provisioner.repair import NoActionNeeded, RepairOutcome
from provisioner.resources import ProvisioningState, ResourceKind
from provisioner.security import SecretlessViolationError
from provisioner.spec_loader import SpecLoadError
from provisioner.steps import CERTIFICATE_STEP, CLUSTER_STEP, ROLE_ASSIGNMENT_STEP


async def deploy(config: Config, cloud: MockCloudClient, **kwargs: object) -> RunReport:
    return await run_deployment(config, cloud=cloud, install_signal_handlers=False, **kwargs)


class TestKeylessDeployment:
    """Full keyless run."""

    @pytest.mark.asyncio
    async def test_reaches_done_without_secrets(
        self, templates_dir: Path, cloud: MockCloudClient
    ) -> None:
        report = await deploy(make_config(templates_dir), cloud)

        assert report.pipeline.state == "Done"
        assert report.exit_code == EXIT_SUCCESS
        assert report.repair is None
        assert report.decision.skipped
        assert cloud.minted_tokens == []
        assert cloud.count("run_remote_command") == 0
        assert len(cloud.state.deployments) == 1

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, templates_dir: Path, cloud: MockCloudClient) -> None:
        config = make_config(templates_dir)
        await deploy(config, cloud)
        resources = cloud.state.resource_count

        report = await deploy(config, cloud)

        assert report.exit_code == EXIT_SUCCESS
        assert cloud.state.resource_count == resources
        assert cloud.count("create_certificate") == 1

    @pytest.mark.asyncio
    async def test_patched_cloud_client_factory(self, templates_dir: Path) -> None:
        """Without an explicit client the default factory is used."""
        with MockAzureContext() as ctx:
            report = await run_deployment(
                make_config(templates_dir), install_signal_handlers=False
            )

            assert report.exit_code == EXIT_SUCCESS
            assert ctx.get_deployment_count() == 1
            assert ctx.cloud.count("mint_container_token") == 0


class TestSkipPropagation:
    """Skipped optional steps and the required steps that depend on them."""

    @pytest.mark.asyncio
    async def test_unresolved_principal_skips_dependents(self, templates_dir: Path) -> None:
        cloud = MockCloudClient(principal_delay=10)

        report = await deploy(make_config(templates_dir), cloud)

        states = report.context.history.states()
        assert report.pipeline.state == "Done"
        assert report.pipeline.skipped_required == (CLUSTER_STEP,)
        assert report.exit_code == EXIT_FAILURE
        assert states[ROLE_ASSIGNMENT_STEP] == ProvisioningState.SKIPPED
        assert states[CERTIFICATE_STEP] == ProvisioningState.SKIPPED
        assert states[CLUSTER_STEP] == ProvisioningState.SKIPPED
        assert cloud.count("deploy_template") == 0

    @pytest.mark.asyncio
    async def test_missing_tenant_fails_run(self, templates_dir: Path, cloud: MockCloudClient) -> None:
        report = await deploy(make_config(templates_dir, tenant_id=None), cloud)

        assert report.context.history.latest(CLUSTER_STEP).provisioning_state == ProvisioningState.SKIPPED
        assert report.exit_code == EXIT_FAILURE
        assert cloud.count("deploy_template") == 0

    @pytest.mark.asyncio
    async def test_disabled_certificate_deploys_cluster(
        self, templates_dir: Path, cloud: MockCloudClient
    ) -> None:
        spec_file = templates_dir.parent / "spec.yaml"
        spec_file.write_text("certificate:\n  enabled: false\n")

        report = await deploy(make_config(templates_dir, spec_file=spec_file), cloud)

        states = report.context.history.states()
        assert states[CERTIFICATE_STEP] == ProvisioningState.SKIPPED
        assert states[CLUSTER_STEP] == ProvisioningState.SUCCEEDED
        assert report.exit_code == EXIT_SUCCESS
        assert cloud.count("deploy_template") == 1


class TestRepair:
    """Repair engine narrowing after a blocked staging script."""

    @pytest.mark.asyncio
    async def test_shared_key_denial_is_repaired(self, templates_dir: Path) -> None:
        cloud = MockCloudClient(deny_shared_key=True)
        config = make_config(templates_dir, storage_auth_mode=StorageAuthMode.KEY_VAULT_BACKED)

        report = await deploy(config, cloud)

        assert isinstance(report.repair, RepairOutcome)
        assert report.repair.success
        assert report.pipeline.state == "Done"
        assert report.exit_code == EXIT_SUCCESS
        history = report.context.history
        assert history.latest(CERTIFICATE_STEP).via == "repair"
        assert history.latest(CLUSTER_STEP).provisioning_state == ProvisioningState.SUCCEEDED
        assert cloud.minted_tokens == []
        assert cloud.count("deploy_template") == 1

    @pytest.mark.asyncio
    async def test_other_failures_escalate(self, templates_dir: Path, cloud: MockCloudClient) -> None:
        cloud.fail("deploy_template", PolicyDenied("VM SKU not allowed by policy"))

        report = await deploy(make_config(templates_dir), cloud)

        assert report.exit_code == EXIT_FAILURE
        assert report.pipeline.failed_step == CLUSTER_STEP
        assert isinstance(report.repair, NoActionNeeded)
        assert report.repair.escalate is False
        assert cloud.count("create_certificate") == 1

    @pytest.mark.asyncio
    async def test_quota_aborts_before_repair_and_decision(
        self, templates_dir: Path, cloud: MockCloudClient
    ) -> None:
        cloud.fail("deploy_template", QuotaExceeded("Operation could not be completed: cores quota"))
        config = make_config(templates_dir, remediation_code="PublicNetwork")

        report = await deploy(config, cloud)

        assert report.pipeline.aborted
        assert report.exit_code == EXIT_FAILURE
        assert report.repair is None
        assert report.decision is None


class TestDecision:
    """Decision engine after provisioning."""

    @pytest.mark.asyncio
    async def test_short_code_guidance_creates_nothing(
        self, templates_dir: Path, cloud: MockCloudClient
    ) -> None:
        config = make_config(templates_dir, remediation_code="2")

        report = await deploy(config, cloud)

        assert report.decision.action == RemediationAction.PRIVATE_ENDPOINT_GUIDANCE
        assert report.decision.source == "short-code"
        assert report.exit_code == EXIT_SUCCESS
        assert cloud.count("ensure_resource", ResourceKind.PRIVATE_ENDPOINT) == 0

    @pytest.mark.asyncio
    async def test_explicit_source_is_used(self, templates_dir: Path, cloud: MockCloudClient) -> None:
        report = await deploy(
            make_config(templates_dir, create_private_endpoint=True),
            cloud,
            decision_source=PresetDecisionSource(RemediationChoice.PRIVATE_ENDPOINT),
        )

        assert report.decision.action == RemediationAction.PRIVATE_ENDPOINT_AUTOMATED
        assert report.decision.success
        assert cloud.count("ensure_resource", ResourceKind.PRIVATE_ENDPOINT) == 1

    def test_failed_decision_fails_run(self, templates_dir: Path) -> None:
        context = make_context(make_config(templates_dir))
        decision = DecisionOutcome(
            action=RemediationAction.ENABLE_PUBLIC_NETWORK,
            executed=False,
            message="Remediation failed",
            error=ErrorSignature(ErrorCode.POLICY_VIOLATION, "disallowed by policy"),
        )

        report = RunReport(context=context, pipeline=PipelineOutcome(state="Done"), decision=decision)

        assert report.exit_code == EXIT_FAILURE


class TestRunGuards:
    """Refusals before any cloud call."""

    @pytest.mark.asyncio
    async def test_secret_in_environment_blocks_run(
        self, templates_dir: Path, cloud: MockCloudClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "not-allowed")

        with pytest.raises(SecretlessViolationError):
            await deploy(make_config(templates_dir), cloud)

        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_invalid_spec_blocks_run(
        self, templates_dir: Path, tmp_path: Path, cloud: MockCloudClient
    ) -> None:
        spec_file = tmp_path / "spec.yaml"
        spec_file.write_text("cluster:\n  nodeCount: -1\n")

        with pytest.raises(SpecLoadError):
            await deploy(make_config(templates_dir, spec_file=spec_file), cloud)

        assert cloud.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_run_reports_failure(
        self, templates_dir: Path, cloud: MockCloudClient
    ) -> None:
        token = CancellationToken()
        token.cancel()
        provisioner = Provisioner(make_config(templates_dir), DeploymentSpec(), cloud, token=token)

        report = await provisioner.run()

        assert report.cancelled
        assert report.exit_code == EXIT_FAILURE
        assert cloud.calls == []


class TestLogging:
    """Provenance and JSON log output."""

    @pytest.mark.asyncio
    async def test_provenance_logged(
        self, templates_dir: Path, cloud: MockCloudClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO):
            await deploy(make_config(templates_dir), cloud)

        [record] = [r for r in caplog.records if r.getMessage() == "Run provenance"]
        assert record.final_state == "Done"
        assert record.provenance["storage_auth_mode"] == "Keyless"
        assert record.provenance["step_summary"]["succeeded"] == 7

    def test_json_formatter_includes_extra_fields(self) -> None:
        record = logging.LogRecord("provisioner", logging.INFO, __file__, 1, "Step done", None, None)
        record.step = "storage"

        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "Step done"
        assert payload["level"] == "INFO"
        assert payload["step"] == "storage"
        assert payload["timestamp"].endswith("Z")
