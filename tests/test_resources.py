"""Tests for resource descriptors, step results and the staging artifact."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from provisioner.errors import CredentialPolicyError, ErrorCode, ErrorSignature
from provisioner.resources import (
    AccessMode,
    CredentialKind,
    IssuedCredential,
    ProvisioningHistory,
    ProvisioningResult,
    ProvisioningState,
    ResourceDescriptor,
    ResourceKind,
    StagingArtifact,
)

SUB = "00000000-0000-0000-0000-000000000001"


def _storage() -> ResourceDescriptor:
    return ResourceDescriptor(
        kind=ResourceKind.STORAGE_ACCOUNT,
        name="sthpcdemo123abc",
        location="westeurope",
        resource_group="rg-hpc-demo",
    )


class TestResourceDescriptor:
    """Tests for ResourceDescriptor addressing."""

    def test_group_scoped_id(self) -> None:
        assert _storage().resource_id(SUB) == (
            f"/subscriptions/{SUB}/resourceGroups/rg-hpc-demo/providers/"
            "Microsoft.Storage/storageAccounts/sthpcdemo123abc"
        )

    def test_resource_group_id(self) -> None:
        group = ResourceDescriptor(
            kind=ResourceKind.RESOURCE_GROUP,
            name="rg-hpc-demo",
            location="westeurope",
            resource_group="rg-hpc-demo",
        )
        assert group.resource_id(SUB) == f"/subscriptions/{SUB}/resourceGroups/rg-hpc-demo"

    def test_child_ids(self) -> None:
        vnet = ResourceDescriptor(
            kind=ResourceKind.VNET, name="vnet-hpc", location="westeurope", resource_group="rg"
        )
        subnet = ResourceDescriptor(
            kind=ResourceKind.SUBNET,
            name="default",
            location="westeurope",
            resource_group="rg",
            parent=vnet,
        )
        container = ResourceDescriptor(
            kind=ResourceKind.STORAGE_CONTAINER,
            name="staging",
            location="westeurope",
            resource_group="rg-hpc-demo",
            parent=_storage(),
        )

        assert subnet.resource_id(SUB).endswith("/virtualNetworks/vnet-hpc/subnets/default")
        assert container.resource_id(SUB).endswith(
            "/storageAccounts/sthpcdemo123abc/blobServices/default/containers/staging"
        )

    def test_identity_ignores_properties(self) -> None:
        """Identity is (kind, name, parent); desired properties do not change it."""
        plain = _storage()
        shaped = plain.with_properties(minimumTlsVersion="TLS1_2")

        assert plain == shaped
        assert plain.key == shaped.key
        assert shaped.properties == {"minimumTlsVersion": "TLS1_2"}
        assert plain.properties == {}


class TestProvisioningResult:
    """Tests for ProvisioningResult lifecycle."""

    def test_finish_finalizes(self) -> None:
        result = ProvisioningResult.start("storage").finish(
            ProvisioningState.SUCCEEDED, resource_id="/st/1", attempts=2, warnings=["slow"]
        )

        assert result.finalized
        assert result.attempts == 2
        assert result.warnings == ("slow",)
        assert result.to_dict()["state"] == "Succeeded"

    def test_cannot_finish_twice(self) -> None:
        result = ProvisioningResult.start("storage").finish(ProvisioningState.SKIPPED)

        with pytest.raises(ValueError, match="already finalized"):
            result.finish(ProvisioningState.FAILED)

    def test_cannot_finish_as_pending(self) -> None:
        with pytest.raises(ValueError):
            ProvisioningResult.start("storage").finish(ProvisioningState.PENDING)

    def test_error_signature_serialized(self) -> None:
        signature = ErrorSignature(code=ErrorCode.QUOTA_EXCEEDED, message="cores")
        result = ProvisioningResult.start("cluster").finish(
            ProvisioningState.FAILED, error_signature=signature
        )

        assert result.to_dict()["error"]["code"] == "QuotaExceeded"


class TestProvisioningHistory:
    """Tests for the append-only history."""

    def test_rejects_pending(self) -> None:
        history = ProvisioningHistory()
        with pytest.raises(ValueError):
            history.append(ProvisioningResult.start("storage"))

    def test_latest_result_wins(self) -> None:
        history = ProvisioningHistory()
        history.append(ProvisioningResult.start("certificate").finish(ProvisioningState.FAILED))
        history.append(
            ProvisioningResult.start("certificate").finish(
                ProvisioningState.SUCCEEDED, via="repair"
            )
        )

        assert len(history) == 2
        assert history.latest("certificate").via == "repair"
        assert history.states() == {"certificate": ProvisioningState.SUCCEEDED}
        assert history.failed() == []


class TestStagingArtifact:
    """Tests for the staging credential invariants."""

    def _artifact(self, mode: AccessMode) -> StagingArtifact:
        return StagingArtifact(
            storage_account_ref="/st/1",
            container_name="staging",
            identity_ref="/id/1",
            access_mode=mode,
        )

    def test_keyless_accepts_bounded_delegation(self) -> None:
        artifact = self._artifact(AccessMode.KEYLESS)
        artifact.record_credential(
            IssuedCredential(
                kind=CredentialKind.USER_DELEGATION_SAS,
                expires_at=datetime.now(UTC) + timedelta(hours=1),
            )
        )

        assert len(artifact.issued_credentials) == 1
        assert artifact.has_long_lived_secret is False

    @pytest.mark.parametrize(
        ("kind", "expiry"),
        [
            (CredentialKind.ACCOUNT_KEY, None),
            (CredentialKind.SERVICE_SAS, timedelta(hours=1)),
            (CredentialKind.USER_DELEGATION_SAS, None),
        ],
    )
    def test_keyless_rejects_other_credentials(
        self, kind: CredentialKind, expiry: timedelta | None
    ) -> None:
        artifact = self._artifact(AccessMode.KEYLESS)
        expires_at = datetime.now(UTC) + expiry if expiry is not None else None

        with pytest.raises(CredentialPolicyError):
            artifact.record_credential(IssuedCredential(kind=kind, expires_at=expires_at))

        assert artifact.issued_credentials == []

    def test_delegated_lifetime_bounded(self) -> None:
        artifact = self._artifact(AccessMode.SHARED_KEY)

        with pytest.raises(CredentialPolicyError, match="exceeds"):
            artifact.record_credential(
                IssuedCredential(
                    kind=CredentialKind.SERVICE_SAS,
                    expires_at=datetime.now(UTC) + timedelta(hours=12),
                )
            )

    def test_shared_key_allows_account_key(self) -> None:
        artifact = self._artifact(AccessMode.SHARED_KEY)
        artifact.record_credential(IssuedCredential(kind=CredentialKind.ACCOUNT_KEY, expires_at=None))

        assert artifact.has_long_lived_secret is True
