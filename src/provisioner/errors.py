"""Error taxonomy and boundary classification for cloud failures.

Raw Azure errors are adapted into structured signatures exactly once, at the
cloud client boundary. Everything above the boundary (retry predicates, skip
logic, the repair engine) matches on ErrorCode values, never on message text.

CATEGORIES:
- Transient: retryable (propagation delay, throttling, resource still deleting)
- Conflict: resource already exists in the desired shape, treated as success
  (a name held by another owner or a soft-deleted resource is NameUnavailable,
  which is not a conflict and not retried)
- PolicyDenied: fatal for the step, may be picked up by the repair engine
- QuotaExceeded: fatal for the whole run
- Unclassified: fatal, surfaced verbatim
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ServiceRequestError,
    ServiceResponseError,
)


class ErrorCategory(str, Enum):
    """Coarse classification that drives propagation policy."""

    TRANSIENT = "Transient"
    CONFLICT = "Conflict"
    POLICY_DENIED = "PolicyDenied"
    QUOTA_EXCEEDED = "QuotaExceeded"
    UNCLASSIFIED = "Unclassified"


class ErrorCode(str, Enum):
    """Stable error signatures recognized by the orchestrator."""

    # Transient
    PRINCIPAL_NOT_FOUND = "PrincipalNotFound"
    AUTHORIZATION_PENDING = "AuthorizationPending"
    RESOURCE_DELETING = "ResourceDeleting"
    THROTTLED = "Throttled"
    TRANSIENT_UNAVAILABLE = "TransientUnavailable"

    # Conflict
    ALREADY_EXISTS = "AlreadyExists"

    # Policy
    SHARED_KEY_AUTH_DENIED = "SharedKeyAuthDenied"
    POLICY_VIOLATION = "PolicyViolation"
    LOCATION_MISMATCH = "LocationMismatch"

    # Quota
    QUOTA_EXCEEDED = "QuotaExceeded"

    # Everything else
    NAME_UNAVAILABLE = "NameUnavailable"
    NOT_FOUND = "NotFound"
    UNCLASSIFIED = "Unclassified"


CODE_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.PRINCIPAL_NOT_FOUND: ErrorCategory.TRANSIENT,
    ErrorCode.AUTHORIZATION_PENDING: ErrorCategory.TRANSIENT,
    ErrorCode.RESOURCE_DELETING: ErrorCategory.TRANSIENT,
    ErrorCode.THROTTLED: ErrorCategory.TRANSIENT,
    ErrorCode.TRANSIENT_UNAVAILABLE: ErrorCategory.TRANSIENT,
    ErrorCode.ALREADY_EXISTS: ErrorCategory.CONFLICT,
    ErrorCode.SHARED_KEY_AUTH_DENIED: ErrorCategory.POLICY_DENIED,
    ErrorCode.POLICY_VIOLATION: ErrorCategory.POLICY_DENIED,
    ErrorCode.LOCATION_MISMATCH: ErrorCategory.POLICY_DENIED,
    ErrorCode.QUOTA_EXCEEDED: ErrorCategory.QUOTA_EXCEEDED,
    ErrorCode.NAME_UNAVAILABLE: ErrorCategory.UNCLASSIFIED,
    ErrorCode.NOT_FOUND: ErrorCategory.UNCLASSIFIED,
    ErrorCode.UNCLASSIFIED: ErrorCategory.UNCLASSIFIED,
}


@dataclass(frozen=True)
class ErrorSignature:
    """Structured code + message recorded in a ProvisioningResult."""

    code: ErrorCode
    message: str

    @property
    def category(self) -> ErrorCategory:
        return CODE_CATEGORIES[self.code]

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
        }


class CloudError(Exception):
    """Base class for classified cloud failures."""

    default_code: ErrorCode = ErrorCode.UNCLASSIFIED

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.signature = ErrorSignature(code=code or self.default_code, message=message)
        # Set by the retry executor once the error leaves it
        self.attempts = 0

    @property
    def code(self) -> ErrorCode:
        return self.signature.code

    @property
    def category(self) -> ErrorCategory:
        return self.signature.category


class TransientUnavailable(CloudError):
    """Retryable failure: propagation delay, throttling, deletion in progress."""

    default_code = ErrorCode.TRANSIENT_UNAVAILABLE


class AlreadyExistsConflict(CloudError):
    """Create call hit an existing resource. Treated as success by the ensurer."""

    default_code = ErrorCode.ALREADY_EXISTS


class PolicyDenied(CloudError):
    """A policy assignment or platform constraint refused the operation."""

    default_code = ErrorCode.POLICY_VIOLATION


class QuotaExceeded(CloudError):
    """Subscription or regional quota exhausted. Aborts the whole run."""

    default_code = ErrorCode.QUOTA_EXCEEDED


class UnclassifiedCloudError(CloudError):
    """Any failure without a recognized signature."""

    default_code = ErrorCode.UNCLASSIFIED


class ResourceMissing(CloudError):
    """Lookup target does not exist."""

    default_code = ErrorCode.NOT_FOUND


class RetryExhaustedError(Exception):
    """Raised when a retryable operation keeps failing past max_attempts."""

    def __init__(self, operation_name: str, last_error: CloudError, attempts: int) -> None:
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )
        self.operation_name = operation_name
        self.last_error = last_error
        self.attempts = attempts

    @property
    def signature(self) -> ErrorSignature:
        return self.last_error.signature


class OperationCancelled(Exception):
    """Raised when the run's cancellation token fires during a wait."""

    pass


class CredentialPolicyError(Exception):
    """Raised when a credential would violate the staging artifact's access mode."""

    pass


_CATEGORY_EXCEPTIONS: dict[ErrorCategory, type[CloudError]] = {
    ErrorCategory.TRANSIENT: TransientUnavailable,
    ErrorCategory.CONFLICT: AlreadyExistsConflict,
    ErrorCategory.POLICY_DENIED: PolicyDenied,
    ErrorCategory.QUOTA_EXCEEDED: QuotaExceeded,
    ErrorCategory.UNCLASSIFIED: UnclassifiedCloudError,
}

# ARM error codes (error.code) that map directly onto a signature
_ARM_CODES: dict[str, ErrorCode] = {
    "principalnotfound": ErrorCode.PRINCIPAL_NOT_FOUND,
    "authorizationfailed": ErrorCode.AUTHORIZATION_PENDING,
    "resourcegroupbeingdeleted": ErrorCode.RESOURCE_DELETING,
    "storageaccountisbeingdeleted": ErrorCode.RESOURCE_DELETING,
    "anotheroperationinprogress": ErrorCode.TRANSIENT_UNAVAILABLE,
    "retryableerror": ErrorCode.TRANSIENT_UNAVAILABLE,
    "toomanyrequests": ErrorCode.THROTTLED,
    "roleassignmentexists": ErrorCode.ALREADY_EXISTS,
    "conflict": ErrorCode.ALREADY_EXISTS,
    "storageaccountalreadytaken": ErrorCode.NAME_UNAVAILABLE,
    "vaultalreadyexists": ErrorCode.NAME_UNAVAILABLE,
    "conflictingvaultname": ErrorCode.NAME_UNAVAILABLE,
    "keybasedauthenticationnotpermitted": ErrorCode.SHARED_KEY_AUTH_DENIED,
    "requestdisallowedbypolicy": ErrorCode.POLICY_VIOLATION,
    "invalidresourcegrouplocation": ErrorCode.LOCATION_MISMATCH,
    "quotaexceeded": ErrorCode.QUOTA_EXCEEDED,
    "operationnotallowed": ErrorCode.QUOTA_EXCEEDED,
    "resourcenotfound": ErrorCode.NOT_FOUND,
    "resourcegroupnotfound": ErrorCode.NOT_FOUND,
}

# Message fragments, checked in order. Shared-key patterns come before the
# generic policy pattern because a denied key is reported through policy too.
_MESSAGE_PATTERNS: tuple[tuple[re.Pattern[str], ErrorCode], ...] = (
    (re.compile(r"key based authentication is not permitted", re.I), ErrorCode.SHARED_KEY_AUTH_DENIED),
    (re.compile(r"allowSharedKeyAccess", re.I), ErrorCode.SHARED_KEY_AUTH_DENIED),
    (re.compile(r"shared ?key access.*(disabled|not permitted|denied)", re.I), ErrorCode.SHARED_KEY_AUTH_DENIED),
    (re.compile(r"does not exist in the directory", re.I), ErrorCode.PRINCIPAL_NOT_FOUND),
    (re.compile(r"principal .* (not found|does not exist)", re.I), ErrorCode.PRINCIPAL_NOT_FOUND),
    (re.compile(r"does not have authorization", re.I), ErrorCode.AUTHORIZATION_PENDING),
    (re.compile(r"being deleted|deprovisioning", re.I), ErrorCode.RESOURCE_DELETING),
    (re.compile(r"disallowed by policy", re.I), ErrorCode.POLICY_VIOLATION),
    (re.compile(r"quota", re.I), ErrorCode.QUOTA_EXCEEDED),
    (
        re.compile(r"already taken|already in use|in (a )?deleted state|soft[- ]?deleted", re.I),
        ErrorCode.NAME_UNAVAILABLE,
    ),
    (re.compile(r"already exists", re.I), ErrorCode.ALREADY_EXISTS),
)


def error_for_code(code: ErrorCode, message: str) -> CloudError:
    """Build the exception type matching a signature code."""
    if code == ErrorCode.NOT_FOUND:
        return ResourceMissing(message)
    return _CATEGORY_EXCEPTIONS[CODE_CATEGORIES[code]](message, code)


def _code_from_status(status_code: int | None) -> ErrorCode | None:
    match status_code:
        case 404:
            return ErrorCode.NOT_FOUND
        case 409:
            return ErrorCode.ALREADY_EXISTS
        case 429:
            return ErrorCode.THROTTLED
        case 500 | 502 | 503 | 504:
            return ErrorCode.TRANSIENT_UNAVAILABLE
        case _:
            return None


def classify_message(message: str) -> ErrorCode:
    """Map free-form error text to a signature (used for script output too)."""
    for pattern, code in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return code
    return ErrorCode.UNCLASSIFIED


def classify_error(error: AzureError) -> CloudError:
    """Adapt an Azure SDK exception into a classified CloudError.

    Precedence: ARM error code, then message text, then HTTP status.
    Message text wins over status because ARM reports policy denials and
    principal propagation failures as plain 400/403 responses.
    """
    message = str(getattr(error, "message", None) or error)

    if isinstance(error, ResourceExistsError):
        arm_code = error.error.code if error.error is not None else None
        if (arm_code and _ARM_CODES.get(arm_code.lower()) == ErrorCode.NAME_UNAVAILABLE) or (
            classify_message(message) == ErrorCode.NAME_UNAVAILABLE
        ):
            return error_for_code(ErrorCode.NAME_UNAVAILABLE, message)
        return AlreadyExistsConflict(message)

    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientUnavailable(message)

    if isinstance(error, HttpResponseError):
        arm_code = error.error.code if error.error is not None else None
        if arm_code:
            mapped = _ARM_CODES.get(arm_code.lower())
            if mapped is not None:
                # AuthorizationFailed is only transient right after a grant;
                # a denial by policy carries policy text in the message.
                if mapped == ErrorCode.AUTHORIZATION_PENDING:
                    from_text = classify_message(message)
                    if from_text != ErrorCode.UNCLASSIFIED:
                        mapped = from_text
                return error_for_code(mapped, message)

        from_text = classify_message(message)
        if from_text != ErrorCode.UNCLASSIFIED:
            return error_for_code(from_text, message)

        from_status = _code_from_status(error.status_code)
        if from_status is not None:
            return error_for_code(from_status, message)

    return UnclassifiedCloudError(message)
