"""Main entry point for the HPC environment provisioner.

SECRETLESS ARCHITECTURE:
- Authentication uses the operator's Azure CLI session or a user-assigned
  managed identity, never a client secret or storage key in the environment
- Keyless staging never requests an account key or SAS
- SharedKey staging only mints time-bounded service SAS tokens

One run:
1. Provisioning pipeline (resource group through cluster deployment)
2. On failure: report step, signature and attempts, then consult the repair
   engine. A successful repair resumes the pipeline after the repaired step
3. Post-deployment decision engine (network remediation)

Exit codes: 0 success or decision executed, 1 fatal provisioning failure,
2 configuration or security error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from .cloud import AzureCloudClient, CloudClient
from .config import Config, ConfigurationError
from .context import CancellationToken, RunContext
from .decision import DecisionSource, select_source
from .ensurer import ResourceEnsurer
from .errors import OperationCancelled
from .models import DeploymentSpec
from .pipeline import PipelineOutcome
from .provenance import get_provenance_logger
from .remediation import DecisionEngine, DecisionOutcome
from .repair import NoActionNeeded, RepairAction, RepairEngine, RepairOutcome
from .retry import RetryExecutor, RetryPolicies
from .security import SecretlessViolationError, enforce_secretless_architecture, get_credential
from .spec_loader import SpecLoadError, load_spec
from .steps import CERTIFICATE_STEP, StepCatalogue

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2

# Standard LogRecord attributes that are not structured fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@dataclass
class RunReport:
    """Everything one run produced."""

    context: RunContext
    pipeline: PipelineOutcome
    repair: RepairOutcome | NoActionNeeded | None = None
    decision: DecisionOutcome | None = None
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        if self.cancelled or not self.pipeline.success:
            return EXIT_FAILURE
        if self.pipeline.skipped_required:
            return EXIT_FAILURE
        if self.decision is not None and not self.decision.success:
            return EXIT_FAILURE
        return EXIT_SUCCESS


class Provisioner:
    """Wires the engines for one run over a CloudClient."""

    def __init__(
        self,
        config: Config,
        spec: DeploymentSpec,
        cloud: CloudClient,
        *,
        token: CancellationToken | None = None,
        decision_source: DecisionSource | None = None,
    ) -> None:
        self.token = token or CancellationToken(config.run_timeout_seconds)
        self.context = RunContext(config=config, spec=spec, token=self.token)
        self.policies = RetryPolicies.from_settings(config.retry)
        self.executor = RetryExecutor(self.token, config.call_timeout_seconds)
        self.ensurer = ResourceEnsurer(cloud, self.executor, self.policies)
        self.pipeline = StepCatalogue(cloud, self.ensurer, self.executor, self.policies).build_pipeline(
            spec.certificate.enabled
        )
        self.repair = RepairEngine(self.context, cloud, self.executor, self.policies)
        self.decision = DecisionEngine(
            self.context,
            cloud,
            self.ensurer,
            self.executor,
            self.policies,
            decision_source or select_source(config),
        )

    def shutdown(self) -> None:
        """Request cancellation of every pending wait."""
        logger.info("Shutdown requested")
        self.token.cancel()

    async def run(self) -> RunReport:
        try:
            return await self._run()
        except OperationCancelled as e:
            logger.error("Run cancelled", extra={"error": str(e)})
            return RunReport(
                context=self.context,
                pipeline=PipelineOutcome(state="Cancelled", failed_step="cancelled"),
                cancelled=True,
            )

    async def _run(self) -> RunReport:
        outcome = await self.pipeline.run(self.context)
        report = RunReport(context=self.context, pipeline=outcome)

        if not outcome.success:
            logger.error(
                "Provisioning failed",
                extra={
                    "step": outcome.failed_step,
                    "error_code": outcome.error.code.value if outcome.error else None,
                    "error": outcome.error.message if outcome.error else None,
                    "attempts": outcome.attempts,
                },
            )
            if outcome.aborted:
                logger.error("Quota exceeded; run aborted")
                return report

            inspection = self.repair.inspect()
            if isinstance(inspection, RepairAction):
                repaired = await self.repair.apply(inspection)
                report.repair = repaired
                if repaired.success:
                    report.pipeline = await self.pipeline.resume_after(self.context, CERTIFICATE_STEP)
            else:
                report.repair = inspection
                logger.warning(
                    "Repair engine: no action",
                    extra={"reason": inspection.reason, "escalate": inspection.escalate},
                )

        if self.context.output("storage_account_id") is None:
            report.decision = DecisionOutcome(
                action=None,
                executed=False,
                message="Remediation skipped: staging storage account was not provisioned",
            )
            return report

        report.decision = await self.decision.run()
        return report


def _record_provenance(
    config: Config,
    report: RunReport | None,
    started: float,
    error: Exception | None,
) -> None:
    provenance_logger = get_provenance_logger()
    provenance = provenance_logger.create_provenance(
        subscription_id=config.subscription_id,
        resource_group=config.effective_resource_group,
        location=config.location,
        prefix=config.prefix,
        storage_auth_mode=config.storage_auth_mode.value,
        operator=config.effective_owner,
    )
    if report is not None:
        provenance.record_history(report.context.history)
        provenance.final_state = report.pipeline.state
        provenance.failed_step = report.pipeline.failed_step
        if isinstance(report.repair, RepairOutcome):
            provenance.repair = report.repair.message
        elif isinstance(report.repair, NoActionNeeded):
            provenance.repair = f"no action: {report.repair.reason}"
        if report.decision is not None:
            provenance.remediation = report.decision.to_dict()
    if error is not None:
        provenance.error = str(error)
        provenance.error_type = type(error).__name__
    provenance.duration_seconds = time.monotonic() - started
    provenance_logger.log_provenance(provenance)


def default_cloud_client(config: Config) -> CloudClient:
    """AzureCloudClient authenticated with the configured credential."""
    credential = get_credential(config.managed_identity_client_id)
    return AzureCloudClient(credential, config.subscription_id)


async def run_deployment(
    config: Config,
    *,
    cloud: CloudClient | None = None,
    decision_source: DecisionSource | None = None,
    install_signal_handlers: bool = True,
) -> RunReport:
    """Run one deployment end to end.

    Raises:
        SecretlessViolationError: Credentials found in the environment.
        SpecLoadError: The deployment spec is invalid.
    """
    enforce_secretless_architecture()
    spec = load_spec(config.spec_file)

    logger.info(
        "Starting HPC provisioning run",
        extra={
            "prefix": config.prefix,
            "subscription_id": config.subscription_id,
            "resource_group": config.effective_resource_group,
            "location": config.location,
            "storage_auth_mode": config.storage_auth_mode.value,
        },
    )

    if cloud is None:
        cloud = default_cloud_client(config)

    provisioner = Provisioner(config, spec, cloud, decision_source=decision_source)

    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT) if install_signal_handlers else ()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        provisioner.shutdown()

    for sig in signals:
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    started = time.monotonic()
    try:
        report = await provisioner.run()
    except Exception as e:
        _record_provenance(config, None, started, e)
        raise
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    _record_provenance(config, report, started, None)
    return report


async def main() -> int:
    """Run the provisioner from environment configuration.

    Returns:
        Exit code (0 success, 1 provisioning failure, 2 configuration error).
    """
    setup_logging()

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIGURATION

    try:
        report = await run_deployment(config)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_CONFIGURATION
    except SpecLoadError as e:
        logger.error("Deployment spec loading failed", extra={"error": str(e)})
        return EXIT_CONFIGURATION

    logger.info(
        "Run finished",
        extra={"final_state": report.pipeline.state, "exit_code": report.exit_code},
    )
    return report.exit_code


def run() -> None:
    """Entry point for the provisioner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
