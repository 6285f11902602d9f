"""Run provenance for audit.

One structured record per run answers:
- "Which steps succeeded, were skipped or failed, and after how many attempts?"
- "Was the certificate step repaired, and which remediation was applied?"
- "Which version of the provisioner ran, against which subscription?"

The record is emitted through the standard logger, so it lands wherever the
JSON log stream is collected.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .resources import ProvisioningHistory, ProvisioningState

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class StepSummary:
    """Counts of step outcomes in a run."""

    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    repaired: int = 0

    @classmethod
    def from_history(cls, history: ProvisioningHistory) -> StepSummary:
        summary = cls()
        latest = {}
        for result in history:
            latest[result.step] = result
        for result in latest.values():
            match result.provisioning_state:
                case ProvisioningState.SUCCEEDED:
                    summary.succeeded += 1
                case ProvisioningState.SKIPPED:
                    summary.skipped += 1
                case ProvisioningState.FAILED:
                    summary.failed += 1
            if result.via == "repair" and result.provisioning_state == ProvisioningState.SUCCEEDED:
                summary.repaired += 1
        return summary


@dataclass
class RunProvenance:
    """Complete provenance record for one provisioning run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    provisioner_version: str = PROVISIONER_VERSION
    operator: str = ""
    git_commit_sha: str = ""

    # Azure context
    subscription_id: str = ""
    resource_group: str = ""
    location: str = ""
    prefix: str = ""
    storage_auth_mode: str = ""

    # Outcome
    final_state: str = ""
    failed_step: str | None = None
    steps: list[dict[str, Any]] = field(default_factory=list)
    step_summary: StepSummary = field(default_factory=StepSummary)
    repair: str | None = None
    remediation: dict[str, Any] | None = None

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def record_history(self, history: ProvisioningHistory) -> None:
        self.steps = [result.to_dict() for result in history]
        self.step_summary = StepSummary.from_history(history)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Emits run provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self,
        subscription_id: str,
        resource_group: str,
        location: str,
        prefix: str,
        storage_auth_mode: str,
        operator: str,
    ) -> RunProvenance:
        return RunProvenance(
            provisioner_version=PROVISIONER_VERSION,
            operator=operator,
            git_commit_sha=self._git_commit_sha,
            subscription_id=subscription_id,
            resource_group=resource_group,
            location=location,
            prefix=prefix,
            storage_auth_mode=storage_auth_mode,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Level is ERROR when the run failed, WARNING when steps were skipped,
        INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error or provenance.failed_step:
            log_level = logging.ERROR
        elif provenance.step_summary.skipped > 0:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flattened for querying
                "resource_group": provenance.resource_group,
                "final_state": provenance.final_state,
                "failed_step": provenance.failed_step,
                "steps_skipped": provenance.step_summary.skipped,
                "steps_repaired": provenance.step_summary.repaired,
                "provisioner_version": provenance.provisioner_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
