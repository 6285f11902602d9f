"""Idempotent resource ensurer.

ensure() converges one resource to its descriptor without ever destroying it:

1. Look the resource up by (kind, name, parent)
2. Found and minimum requirements met: return it untouched
3. Found but missing a required field: non-destructive converge (PUT of the
   desired properties merged over the observed ones)
4. Not found: create it. An "already exists" answer means a concurrent or
   earlier create won, so the resource is re-read and reported as success.
   If the re-read finds nothing the name is held outside this scope
   (NameUnavailable, not retried)

SAFETY: The only deletion path is force_fresh on a resource group, which goes
through the retry executor with an explicit destructive opt-in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from azure.core.exceptions import AzureError

from .cloud import TOP_LEVEL_KEYS, CloudClient
from .errors import (
    AlreadyExistsConflict,
    ErrorCode,
    PolicyDenied,
    ResourceMissing,
    UnclassifiedCloudError,
    classify_error,
)
from .resources import ResourceDescriptor, ResourceKind
from .retry import RetryExecutor, RetryPolicies, RetryPolicy

logger = logging.getLogger(__name__)

TLS_ORDER = ("TLS1_0", "TLS1_1", "TLS1_2", "TLS1_3")
MINIMUM_TLS = "TLS1_2"


@dataclass(frozen=True)
class EnsureOutcome:
    """Result of one ensure call."""

    resource_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    created: bool = False
    updated: bool = False
    attempts: int = 1
    observed: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def unchanged(self) -> bool:
        return not (self.created or self.updated)


def _subnet_requirements(desired: dict[str, Any], observed: dict[str, Any]) -> list[str]:
    wanted = {
        d.get("properties", {}).get("serviceName")
        for d in desired.get("delegations", [])
    }
    present = {
        d.get("properties", {}).get("serviceName")
        for d in observed.get("delegations") or []
    }
    return [f"delegation:{name}" for name in sorted(n for n in wanted - present if n)]


def _storage_requirements(desired: dict[str, Any], observed: dict[str, Any]) -> list[str]:
    tls = observed.get("minimumTlsVersion")
    if tls not in TLS_ORDER or TLS_ORDER.index(tls) < TLS_ORDER.index(MINIMUM_TLS):
        return ["minimumTlsVersion"]
    return []


def _key_vault_requirements(desired: dict[str, Any], observed: dict[str, Any]) -> list[str]:
    if desired.get("enableRbacAuthorization") and not observed.get("enableRbacAuthorization"):
        return ["enableRbacAuthorization"]
    return []


def _vnet_requirements(desired: dict[str, Any], observed: dict[str, Any]) -> list[str]:
    wanted = set(desired.get("addressSpace", {}).get("addressPrefixes", []))
    present = set((observed.get("addressSpace") or {}).get("addressPrefixes") or [])
    return [f"addressPrefix:{p}" for p in sorted(wanted - present)]


RequirementCheck = Callable[[dict[str, Any], dict[str, Any]], list[str]]

MINIMUM_REQUIREMENTS: dict[ResourceKind, RequirementCheck] = {
    ResourceKind.SUBNET: _subnet_requirements,
    ResourceKind.STORAGE_ACCOUNT: _storage_requirements,
    ResourceKind.KEY_VAULT: _key_vault_requirements,
    ResourceKind.VNET: _vnet_requirements,
}


def missing_requirements(descriptor: ResourceDescriptor, observed: dict[str, Any]) -> list[str]:
    """Required fields the observed resource lacks (empty when satisfied)."""
    check = MINIMUM_REQUIREMENTS.get(descriptor.kind)
    if check is None:
        return []
    return check(descriptor.properties, observed.get("properties") or {})


def minimum_requirements_met(descriptor: ResourceDescriptor, observed: dict[str, Any]) -> bool:
    return not missing_requirements(descriptor, observed)


def normalize_location(location: str | None) -> str:
    return (location or "").replace(" ", "").lower()


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` over ``base``; nested mappings merge, everything else replaces."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ResourceEnsurer:
    """Converges single resources through the retry executor."""

    def __init__(
        self,
        cloud: CloudClient,
        executor: RetryExecutor,
        policies: RetryPolicies,
    ) -> None:
        self._cloud = cloud
        self._executor = executor
        self._policies = policies

    async def ensure(
        self,
        descriptor: ResourceDescriptor,
        policy: RetryPolicy | None = None,
        *,
        force_fresh: bool = False,
    ) -> EnsureOutcome:
        """Ensure ``descriptor`` exists in its minimum required shape.

        Args:
            descriptor: Desired resource.
            policy: Retry policy (defaults to the creation policy).
            force_fresh: Delete and recreate. Only valid for resource groups.

        Returns:
            EnsureOutcome describing what happened.

        Raises:
            ValueError: force_fresh requested for a non-root resource.
            CloudError / RetryExhaustedError / OperationCancelled: from the executor.
        """
        if force_fresh and descriptor.kind != ResourceKind.RESOURCE_GROUP:
            raise ValueError(
                f"force_fresh is only valid for ResourceGroup, not {descriptor.kind.value}"
            )

        if force_fresh:
            logger.warning(
                "Force fresh: deleting resource group before recreate",
                extra={"resource_group": descriptor.name},
            )
            await self._executor.execute(
                lambda: self._cloud.delete_resource(descriptor),
                self._policies.destructive,
                operation_name=f"delete {descriptor.kind.value} {descriptor.name}",
                allow_destructive=True,
            )

        result = await self._executor.execute(
            lambda: self._converge(descriptor),
            policy or self._policies.creation,
            operation_name=f"ensure {descriptor.kind.value} {descriptor.name}",
        )
        return replace(result.value, attempts=result.attempts)

    async def update(
        self,
        descriptor: ResourceDescriptor,
        policy: RetryPolicy | None = None,
    ) -> EnsureOutcome:
        """Apply ``descriptor.properties`` to an existing resource.

        Unlike ensure(), the given properties are applied even when the
        minimum requirements are already met. They are merged over the
        observed properties, so nothing else on the resource changes. A
        resource already carrying the values is left untouched.

        Raises:
            ResourceMissing: The resource does not exist (not retried by default).
        """
        result = await self._executor.execute(
            lambda: self._apply(descriptor),
            policy or self._policies.creation,
            operation_name=f"update {descriptor.kind.value} {descriptor.name}",
        )
        return replace(result.value, attempts=result.attempts)

    def _apply(self, descriptor: ResourceDescriptor) -> EnsureOutcome:
        observed = self._cloud.get_resource(descriptor)
        if observed is None:
            raise ResourceMissing(f"{descriptor.kind.value} {descriptor.name} does not exist")

        current = observed.get("properties") or {}
        if deep_merge(current, descriptor.properties) == current:
            return self._outcome(descriptor, observed)

        lifted = {
            key: observed[key]
            for key in TOP_LEVEL_KEYS.get(descriptor.kind, ())
            if observed.get(key) is not None
        }
        merged = deep_merge({**lifted, **current}, descriptor.properties)
        logger.info(
            "Updating resource properties",
            extra={
                "kind": descriptor.kind.value,
                "resource_name": descriptor.name,
                "fields": sorted(descriptor.properties),
            },
        )
        updated = self._cloud.ensure_resource(replace(descriptor, properties=merged))
        return self._outcome(descriptor, updated, updated=True)

    def _converge(self, descriptor: ResourceDescriptor) -> EnsureOutcome:
        observed = self._cloud.get_resource(descriptor)

        if observed is None:
            return self._create(descriptor)

        if descriptor.kind == ResourceKind.RESOURCE_GROUP:
            self._check_location(descriptor, observed)

        missing = missing_requirements(descriptor, observed)
        if not missing:
            logger.info(
                "Resource already in desired shape",
                extra={"kind": descriptor.kind.value, "resource_name": descriptor.name},
            )
            return self._outcome(descriptor, observed)

        logger.info(
            "Converging resource missing required fields",
            extra={
                "kind": descriptor.kind.value,
                "resource_name": descriptor.name,
                "missing": missing,
            },
        )
        merged = deep_merge(observed.get("properties") or {}, descriptor.properties)
        converged = self._cloud.ensure_resource(replace(descriptor, properties=merged))
        return self._outcome(descriptor, converged, updated=True)

    def _create(self, descriptor: ResourceDescriptor) -> EnsureOutcome:
        try:
            created = self._cloud.ensure_resource(descriptor)
        except AzureError as e:
            error = classify_error(e)
            if not isinstance(error, AlreadyExistsConflict):
                raise error from e
            return self._reread(descriptor)
        except AlreadyExistsConflict:
            return self._reread(descriptor)

        logger.info(
            "Resource created",
            extra={"kind": descriptor.kind.value, "resource_name": descriptor.name},
        )
        return self._outcome(descriptor, created, created=True)

    def _reread(self, descriptor: ResourceDescriptor) -> EnsureOutcome:
        observed = self._cloud.get_resource(descriptor)
        if observed is None:
            raise UnclassifiedCloudError(
                f"{descriptor.kind.value} name '{descriptor.name}' is already in use "
                "outside this resource group or by a soft-deleted resource",
                ErrorCode.NAME_UNAVAILABLE,
            )
        logger.info(
            "Create hit existing resource, treating as success",
            extra={"kind": descriptor.kind.value, "resource_name": descriptor.name},
        )
        return self._outcome(descriptor, observed)

    def _check_location(self, descriptor: ResourceDescriptor, observed: dict[str, Any]) -> None:
        existing = normalize_location(observed.get("location"))
        if existing and existing != normalize_location(descriptor.location):
            raise PolicyDenied(
                f"Resource group '{descriptor.name}' exists in '{observed.get('location')}', "
                f"not '{descriptor.location}'",
                ErrorCode.LOCATION_MISMATCH,
            )

    def _outcome(
        self,
        descriptor: ResourceDescriptor,
        observed: dict[str, Any],
        *,
        created: bool = False,
        updated: bool = False,
    ) -> EnsureOutcome:
        return EnsureOutcome(
            resource_id=observed.get("id") or descriptor.resource_id(self._cloud.subscription_id),
            properties=dict(observed.get("properties") or {}),
            created=created,
            updated=updated,
            observed=observed,
        )
