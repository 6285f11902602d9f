"""Tests for error classification at the cloud boundary."""

from __future__ import annotations

import pytest
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ODataV4Format,
    ResourceExistsError,
    ServiceRequestError,
)

from provisioner.errors import (
    AlreadyExistsConflict,
    CloudError,
    ErrorCategory,
    ErrorCode,
    ErrorSignature,
    PolicyDenied,
    QuotaExceeded,
    ResourceMissing,
    RetryExhaustedError,
    TransientUnavailable,
    UnclassifiedCloudError,
    classify_error,
    classify_message,
    error_for_code,
)


def http_error(message: str, *, code: str | None = None, status: int | None = None) -> HttpResponseError:
    """HttpResponseError carrying an optional ARM error code and HTTP status."""
    error = HttpResponseError(message=message)
    if code is not None:
        error.error = ODataV4Format({"error": {"code": code, "message": message}})
    error.status_code = status
    return error


class TestClassifyError:
    """Tests for classify_error()."""

    def test_principal_not_found_code_is_transient(self) -> None:
        """PrincipalNotFound right after identity creation is retryable."""
        error = classify_error(
            http_error("Principal abc does not exist in the directory", code="PrincipalNotFound")
        )
        assert isinstance(error, TransientUnavailable)
        assert error.code == ErrorCode.PRINCIPAL_NOT_FOUND
        assert error.category == ErrorCategory.TRANSIENT

    def test_authorization_failed_without_policy_text_is_pending(self) -> None:
        """AuthorizationFailed alone means the grant has not propagated yet."""
        error = classify_error(
            http_error("The client does not have authorization to perform action", code="AuthorizationFailed")
        )
        assert error.code == ErrorCode.AUTHORIZATION_PENDING

    def test_authorization_failed_with_policy_text_is_policy(self) -> None:
        """Policy text in the message wins over the AuthorizationFailed code."""
        error = classify_error(
            http_error(
                "Resource 'st1' was disallowed by policy 'deny-public-storage'",
                code="AuthorizationFailed",
            )
        )
        assert isinstance(error, PolicyDenied)
        assert error.code == ErrorCode.POLICY_VIOLATION

    def test_key_based_auth_code_maps_to_shared_key_denied(self) -> None:
        error = classify_error(
            http_error("Key based authentication is not permitted", code="KeyBasedAuthenticationNotPermitted")
        )
        assert isinstance(error, PolicyDenied)
        assert error.code == ErrorCode.SHARED_KEY_AUTH_DENIED

    def test_shared_key_message_without_code(self) -> None:
        """Script output carries no ARM code, only text."""
        error = classify_error(
            http_error("Key based authentication is not permitted on this storage account.")
        )
        assert error.code == ErrorCode.SHARED_KEY_AUTH_DENIED
        assert error.category == ErrorCategory.POLICY_DENIED

    def test_quota_exceeded(self) -> None:
        error = classify_error(http_error("Operation could not be completed", code="QuotaExceeded"))
        assert isinstance(error, QuotaExceeded)
        assert error.category == ErrorCategory.QUOTA_EXCEEDED

    def test_status_429_is_throttled(self) -> None:
        error = classify_error(http_error("Slow down", status=429))
        assert error.code == ErrorCode.THROTTLED

    def test_status_404_is_missing(self) -> None:
        error = classify_error(http_error("Gone", status=404))
        assert isinstance(error, ResourceMissing)

    def test_status_503_is_transient(self) -> None:
        error = classify_error(http_error("Service unavailable", status=503))
        assert isinstance(error, TransientUnavailable)

    def test_resource_exists_is_conflict(self) -> None:
        error = classify_error(ResourceExistsError(message="The resource already exists"))
        assert isinstance(error, AlreadyExistsConflict)
        assert error.category == ErrorCategory.CONFLICT

    @pytest.mark.parametrize(
        "message",
        [
            "The storage account named sthpcdemo1a2b3c is already taken.",
            "The vault name 'kvhpcdemo' is already in use.",
            "A vault with the same name already exists in deleted state.",
        ],
    )
    def test_name_taken_is_not_conflict(self, message: str) -> None:
        error = classify_error(ResourceExistsError(message=message))
        assert isinstance(error, UnclassifiedCloudError)
        assert error.code == ErrorCode.NAME_UNAVAILABLE

    @pytest.mark.parametrize("code", ["StorageAccountAlreadyTaken", "VaultAlreadyExists"])
    def test_name_taken_arm_codes(self, code: str) -> None:
        error = classify_error(http_error("Conflict", code=code, status=409))
        assert error.code == ErrorCode.NAME_UNAVAILABLE
        assert error.category == ErrorCategory.UNCLASSIFIED

    def test_connection_error_is_transient(self) -> None:
        error = classify_error(ServiceRequestError("Connection reset"))
        assert isinstance(error, TransientUnavailable)

    def test_unknown_error_is_unclassified(self) -> None:
        error = classify_error(AzureError("Something odd happened"))
        assert isinstance(error, UnclassifiedCloudError)
        assert error.signature.message == "Something odd happened"

    def test_message_wins_over_status(self) -> None:
        """ARM reports policy denials as plain 403s."""
        error = classify_error(http_error("Request disallowed by policy", status=403))
        assert error.code == ErrorCode.POLICY_VIOLATION


class TestClassifyMessage:
    """Tests for classify_message()."""

    def test_shared_key_checked_before_policy(self) -> None:
        """A denied key reported through policy is still SharedKeyAuthDenied."""
        message = "allowSharedKeyAccess must be false; request disallowed by policy"
        assert classify_message(message) == ErrorCode.SHARED_KEY_AUTH_DENIED

    def test_resource_deleting(self) -> None:
        assert classify_message("Resource group is being deleted") == ErrorCode.RESOURCE_DELETING

    def test_unmatched_text(self) -> None:
        assert classify_message("boom") == ErrorCode.UNCLASSIFIED


class TestErrorTypes:
    """Tests for the error hierarchy."""

    def test_error_for_code_not_found(self) -> None:
        assert isinstance(error_for_code(ErrorCode.NOT_FOUND, "missing"), ResourceMissing)

    def test_error_for_code_uses_category(self) -> None:
        error = error_for_code(ErrorCode.LOCATION_MISMATCH, "wrong region")
        assert isinstance(error, PolicyDenied)
        assert error.code == ErrorCode.LOCATION_MISMATCH

    def test_signature_to_dict(self) -> None:
        signature = ErrorSignature(ErrorCode.THROTTLED, "slow down")
        assert signature.to_dict() == {
            "code": "Throttled",
            "category": "Transient",
            "message": "slow down",
        }

    def test_cloud_error_defaults(self) -> None:
        error = CloudError("boom")
        assert error.code == ErrorCode.UNCLASSIFIED
        assert error.attempts == 0

    def test_retry_exhausted_exposes_last_signature(self) -> None:
        last = TransientUnavailable("still propagating", ErrorCode.PRINCIPAL_NOT_FOUND)
        exhausted = RetryExhaustedError("assign role", last, 5)

        assert exhausted.signature.code == ErrorCode.PRINCIPAL_NOT_FOUND
        assert exhausted.attempts == 5
        assert "after 5 attempts" in str(exhausted)
