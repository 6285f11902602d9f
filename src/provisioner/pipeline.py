"""Sequential provisioning pipeline engine.

The engine walks an ordered list of steps. Each step's action converges one
or more resources through the ensurer and executor and returns a StepOutput.
The engine owns the state machine and the skip rules:

- Succeeded or Skipped: move forward to the step's ``reaches`` state
- Failed: stop in Failed(step), recording step name, signature and attempts
- A step whose ``depends_on`` contains a Skipped step is auto-skipped
- A required step that ends Skipped is listed in ``skipped_required``
- QuotaExceeded stops the run even inside optional steps

The engine keeps no state of its own; everything lives in the RunContext
history, so the same inputs always give the same terminal state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .context import RunContext
from .errors import (
    CloudError,
    ErrorCategory,
    ErrorCode,
    ErrorSignature,
    RetryExhaustedError,
)
from .resources import ProvisioningResult, ProvisioningState

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """States of the main provisioning pipeline."""

    NOT_STARTED = "NotStarted"
    RESOURCE_GROUP_READY = "ResourceGroupReady"
    IDENTITY_READY = "IdentityReady"
    NETWORK_READY = "NetworkReady"
    STORAGE_READY = "StorageReady"
    ROLE_ASSIGNED = "RoleAssigned"
    CERTIFICATE_STAGED = "CertificateStaged"
    CLUSTER_DEPLOYED = "ClusterDeployed"
    DONE = "Done"
    FAILED = "Failed"


class SkipStep(Exception):
    """Raised by an optional step's action to degrade it to Skipped."""

    def __init__(self, reason: str, outputs: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.outputs = outputs or {}


@dataclass(frozen=True)
class StepOutput:
    """What a successful step action hands back to the engine."""

    resource_id: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()
    attempts: int = 1


StepAction = Callable[[RunContext], Awaitable[StepOutput]]


@dataclass(frozen=True)
class Step:
    """One pipeline step."""

    name: str
    reaches: str
    action: StepAction
    depends_on: tuple[str, ...] = ()
    optional: bool = False


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal state of a pipeline run."""

    state: str
    failed_step: str | None = None
    error: ErrorSignature | None = None
    attempts: int = 0
    last_reached: str = PipelineState.NOT_STARTED.value
    skipped_required: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.failed_step is None

    @property
    def aborted(self) -> bool:
        """Failure that must stop the whole run (quota)."""
        return self.error is not None and self.error.category == ErrorCategory.QUOTA_EXCEEDED


class ProvisioningPipeline:
    """Runs steps strictly in order against a RunContext."""

    def __init__(
        self,
        steps: Sequence[Step],
        *,
        name: str = "provisioning",
        initial_state: str = PipelineState.NOT_STARTED.value,
        done_state: str = PipelineState.DONE.value,
    ) -> None:
        names = [s.name for s in steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names in pipeline '{name}': {names}")
        for index, step in enumerate(steps):
            unknown = [d for d in step.depends_on if d not in names[:index]]
            if unknown:
                raise ValueError(
                    f"Step '{step.name}' depends on steps not run before it: {unknown}"
                )
        self._steps = tuple(steps)
        self._name = name
        self._initial_state = initial_state
        self._done_state = done_state

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self._steps]

    async def run(self, context: RunContext) -> PipelineOutcome:
        """Run every step from the beginning."""
        logger.info("Pipeline started", extra={"pipeline": self._name, "steps": self.step_names})
        return await self._run_from(context, 0, self._initial_state)

    async def resume_after(self, context: RunContext, step_name: str) -> PipelineOutcome:
        """Continue with the steps after ``step_name``.

        Only valid once the history holds a Succeeded result for that step,
        e.g. recorded by the repair engine.
        """
        if step_name not in self.step_names:
            raise ValueError(f"Unknown step '{step_name}' in pipeline '{self._name}'")
        latest = context.history.latest(step_name)
        if latest is None or latest.provisioning_state != ProvisioningState.SUCCEEDED:
            raise ValueError(f"Cannot resume after '{step_name}': it has not succeeded")

        index = self.step_names.index(step_name)
        logger.info(
            "Pipeline resumed",
            extra={"pipeline": self._name, "after_step": step_name, "via": latest.via},
        )
        return await self._run_from(context, index + 1, self._steps[index].reaches)

    async def _run_from(self, context: RunContext, start: int, state: str) -> PipelineOutcome:
        for step in self._steps[start:]:
            result = await self._run_step(step, context)
            context.history.append(result)

            if result.provisioning_state == ProvisioningState.FAILED:
                outcome = PipelineOutcome(
                    state=PipelineState.FAILED.value,
                    failed_step=step.name,
                    error=result.error_signature,
                    attempts=result.attempts,
                    last_reached=state,
                )
                logger.error(
                    "Pipeline step failed",
                    extra={
                        "pipeline": self._name,
                        "step": step.name,
                        "error_code": result.error_signature.code.value
                        if result.error_signature
                        else None,
                        "error": result.error_signature.message
                        if result.error_signature
                        else None,
                        "attempts": result.attempts,
                        "aborted": outcome.aborted,
                    },
                )
                return outcome

            state = step.reaches
            logger.info(
                "Pipeline transition",
                extra={
                    "pipeline": self._name,
                    "step": step.name,
                    "step_state": result.provisioning_state.value,
                    "reached": state,
                },
            )

        skipped_required = tuple(
            s.name
            for s in self._steps
            if not s.optional
            and (latest := context.history.latest(s.name)) is not None
            and latest.provisioning_state == ProvisioningState.SKIPPED
        )
        if skipped_required:
            logger.warning(
                "Required steps were skipped",
                extra={"pipeline": self._name, "steps": list(skipped_required)},
            )
        logger.info("Pipeline completed", extra={"pipeline": self._name})
        return PipelineOutcome(
            state=self._done_state, last_reached=state, skipped_required=skipped_required
        )

    async def _run_step(self, step: Step, context: RunContext) -> ProvisioningResult:
        pending = ProvisioningResult.start(step.name)

        skipped_deps = [
            dep
            for dep in step.depends_on
            if (latest := context.history.latest(dep)) is not None
            and latest.provisioning_state == ProvisioningState.SKIPPED
        ]
        if skipped_deps:
            warning = f"Skipped because dependencies were skipped: {', '.join(skipped_deps)}"
            logger.warning(warning, extra={"step": step.name})
            return pending.finish(ProvisioningState.SKIPPED, warnings=[warning])

        try:
            output = await step.action(context)
        except SkipStep as e:
            if not step.optional:
                return pending.finish(
                    ProvisioningState.FAILED,
                    error_signature=ErrorSignature(
                        ErrorCode.UNCLASSIFIED,
                        f"Required step cannot be skipped: {e.reason}",
                    ),
                )
            logger.warning(
                "Optional step skipped",
                extra={"step": step.name, "reason": e.reason},
            )
            context.outputs.update(e.outputs)
            return pending.finish(
                ProvisioningState.SKIPPED,
                warnings=[e.reason],
                outputs=e.outputs,
            )
        except RetryExhaustedError as e:
            return pending.finish(
                ProvisioningState.FAILED,
                error_signature=e.signature,
                attempts=e.attempts,
            )
        except CloudError as e:
            return pending.finish(
                ProvisioningState.FAILED,
                error_signature=e.signature,
                attempts=e.attempts or 1,
            )

        context.outputs.update(output.outputs)
        for warning in output.warnings:
            logger.warning(warning, extra={"step": step.name})
        return pending.finish(
            ProvisioningState.SUCCEEDED,
            resource_id=output.resource_id,
            attempts=output.attempts,
            warnings=output.warnings,
            outputs=output.outputs,
        )
