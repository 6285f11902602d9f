"""Removal of the staging resources.

Deletes dependents before what they depend on:

    DNS zone group -> DNS zone link -> private DNS zone -> private endpoint
        -> storage account -> managed identity

The network and the resource group are left in place.

SAFETY: Nothing is deleted without confirmation. Every delete goes through
the retry executor with the destructive policy and an explicit opt-in, and
the first failure stops the teardown so no dependency is removed before its
dependents.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from .cloud import CloudClient
from .errors import CloudError, ErrorSignature, RetryExhaustedError
from .layout import ResourceLayout
from .resources import ResourceDescriptor
from .retry import RetryExecutor, RetryPolicies
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


def teardown_plan(layout: ResourceLayout) -> list[ResourceDescriptor]:
    """Resources to remove, in deletion order."""
    return [
        layout.dns_zone_group(),
        layout.dns_zone_link(),
        layout.private_dns_zone(),
        layout.private_endpoint(),
        layout.storage_account(),
        layout.identity(),
    ]


@dataclass
class TeardownResult:
    """What a teardown removed."""

    aborted: bool = False
    deleted: list[str] = field(default_factory=list)
    absent: list[str] = field(default_factory=list)
    failed: str | None = None
    error: ErrorSignature | None = None

    @property
    def success(self) -> bool:
        return not self.aborted and self.failed is None


class Teardown:
    """Removes the staging resources of one deployment."""

    def __init__(self, cloud: CloudClient, executor: RetryExecutor, policies: RetryPolicies) -> None:
        self._cloud = cloud
        self._executor = executor
        self._policies = policies

    async def run(
        self,
        layout: ResourceLayout,
        confirm: Callable[[list[ResourceDescriptor]], bool],
    ) -> TeardownResult:
        plan = teardown_plan(layout)
        if not confirm(plan):
            logger.info("Teardown aborted by operator; no resources were deleted")
            return TeardownResult(aborted=True)

        result = TeardownResult()
        for descriptor in plan:
            label = f"{descriptor.kind.value} {descriptor.name}"
            try:
                deleted = await self._executor.execute(
                    lambda d=descriptor: self._cloud.delete_resource(d),
                    self._policies.destructive,
                    operation_name=f"delete {label}",
                    allow_destructive=True,
                )
            except (CloudError, RetryExhaustedError) as e:
                logger.error(
                    "Teardown stopped",
                    extra={"resource": label, "error_code": e.signature.code.value},
                )
                result.failed = label
                result.error = e.signature
                return result

            if deleted.value:
                result.deleted.append(label)
                log_security_audit_event(
                    "teardown",
                    target_resource=descriptor.resource_id(layout.subscription_id),
                    action="delete",
                    result="success",
                )
            else:
                result.absent.append(label)
            logger.info(
                "Teardown step",
                extra={"resource": label, "deleted": deleted.value},
            )
        return result
