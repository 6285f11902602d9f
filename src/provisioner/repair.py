"""Deployment-script repair engine.

When certificate staging through the inline script is blocked because policy
denies shared-key (secret based) storage access, the repair engine creates
the same certificate natively in the key vault instead.

The engine is deliberately narrow:
- Only the certificate step's latest result is inspected
- Only the SharedKeyAuthDenied signature yields a RepairAction
- Every other failure is surfaced unchanged as NoActionNeeded ("escalate")

SAFETY: apply() never re-runs the staging script. It checks whether the
certificate already exists and otherwise issues exactly one creation call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .certificates import await_certificate, existing_certificate
from .cloud import CloudClient
from .context import RunContext
from .errors import CloudError, ErrorCode, ErrorSignature, RetryExhaustedError
from .models import CertificatePolicy
from .resources import ProvisioningHistory, ProvisioningResult, ProvisioningState
from .retry import RetryExecutor, RetryPolicies, RetryPolicy
from .steps import CERTIFICATE_STEP, certificate_outputs

logger = logging.getLogger(__name__)

REPAIR_VIA = "repair"

# One creation call, no retries
SINGLE_CALL = RetryPolicy(max_attempts=1, base_delay=0)


@dataclass(frozen=True)
class RepairAction:
    """Native certificate creation replacing a blocked staging script."""

    step: str
    vault_uri: str
    policy: CertificatePolicy
    error_signature: ErrorSignature


@dataclass(frozen=True)
class NoActionNeeded:
    """Nothing the engine can repair; the original error is surfaced."""

    reason: str
    error_signature: ErrorSignature | None = None

    @property
    def escalate(self) -> bool:
        return self.error_signature is not None


@dataclass(frozen=True)
class RepairOutcome:
    """Result of applying a RepairAction."""

    success: bool
    created: bool
    result: ProvisioningResult
    message: str


class RepairEngine:
    """Inspects the run history and repairs blocked certificate staging."""

    def __init__(
        self,
        context: RunContext,
        cloud: CloudClient,
        executor: RetryExecutor,
        policies: RetryPolicies,
    ) -> None:
        self._context = context
        self._cloud = cloud
        self._executor = executor
        self._policies = policies

    def inspect(self, history: ProvisioningHistory | None = None) -> RepairAction | NoActionNeeded:
        """Decide whether the certificate step can be repaired."""
        history = history if history is not None else self._context.history
        latest = history.latest(CERTIFICATE_STEP)

        if latest is None:
            return NoActionNeeded("Certificate step has not run")
        if latest.provisioning_state != ProvisioningState.FAILED:
            return NoActionNeeded(
                f"Certificate step is {latest.provisioning_state.value}; nothing to repair"
            )

        signature = latest.error_signature
        if signature is None or signature.code != ErrorCode.SHARED_KEY_AUTH_DENIED:
            code = signature.code.value if signature else "unknown"
            return NoActionNeeded(
                f"No action for signature {code}; escalate",
                error_signature=signature,
            )

        vault_uri = self._context.output("vault_uri")
        if not vault_uri:
            return NoActionNeeded(
                "Shared-key access denied but no key vault was recorded; escalate",
                error_signature=signature,
            )

        return RepairAction(
            step=CERTIFICATE_STEP,
            vault_uri=vault_uri,
            policy=self._context.spec.certificate,
            error_signature=signature,
        )

    async def apply(self, action: RepairAction) -> RepairOutcome:
        """Create the certificate natively and record the step as repaired."""
        policy = action.policy
        pending = ProvisioningResult.start(action.step)
        logger.info(
            "Repairing certificate staging with native creation",
            extra={"certificate": policy.name, "vault": action.vault_uri},
        )

        created = False
        try:
            certificate = await existing_certificate(
                self._cloud, self._executor, self._policies, action.vault_uri, policy.name
            )
            if certificate is None:
                await self._executor.execute(
                    lambda: self._cloud.create_certificate(action.vault_uri, policy.name, policy),
                    SINGLE_CALL,
                    operation_name=f"repair: create certificate {policy.name}",
                )
                created = True
                certificate = await await_certificate(
                    self._cloud, self._executor, self._policies, action.vault_uri, policy.name
                )
        except (CloudError, RetryExhaustedError) as e:
            signature = e.signature
            result = pending.finish(
                ProvisioningState.FAILED,
                error_signature=signature,
                attempts=e.attempts or 1,
                via=REPAIR_VIA,
            )
            self._context.history.append(result)
            logger.error(
                "Repair failed",
                extra={"certificate": policy.name, "error_code": signature.code.value},
            )
            return RepairOutcome(
                success=False,
                created=created,
                result=result,
                message=f"Repair failed: {signature.message}",
            )

        outputs = certificate_outputs(certificate, action.vault_uri)
        result = pending.finish(
            ProvisioningState.SUCCEEDED,
            resource_id=certificate.get("id"),
            attempts=1,
            warnings=[f"Staging script blocked ({action.error_signature.code.value}); "
                      "certificate created natively"],
            outputs=outputs,
            via=REPAIR_VIA,
        )
        self._context.history.append(result)
        self._context.outputs.update(outputs)
        message = (
            f"Certificate '{policy.name}' created natively"
            if created
            else f"Certificate '{policy.name}' already present"
        )
        logger.info(message, extra={"certificate": policy.name, "created": created})
        return RepairOutcome(success=True, created=created, result=result, message=message)
