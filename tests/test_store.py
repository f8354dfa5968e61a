from __future__ import annotations

import pytest

from velero_store_manager.errors import ValidationError
from velero_store_manager.models import (
    AWSStore,
    AzureStore,
    BackendEndpoint,
    GCPStore,
    NFSConfig,
    NFSStore,
    OtherStore,
    SettingsRequest,
    Store,
)
from velero_store_manager.store import (
    REDACTED_VALUE,
    build_store,
    diff_provider,
    provider_to_mapping,
    redact_store,
    settings_request_from_mapping,
    validate_store,
)

_AWS = AWSStore(region="us-east-1", access_key_id="AKIA", secret_access_key="secret")


def _backend_endpoint() -> BackendEndpoint:
    return BackendEndpoint(
        endpoint="http://kotsadm-fs-minio.kotsadm:9000",
        public_url="http://10.96.0.15:9000",
        region="us-east-1",
        bucket="velero",
        access_key_id="minio-key",
        secret_access_key="minio-secret",
        object_store_cluster_ip="10.96.0.15",
        nfs_config=NFSConfig(server="10.0.0.4", path="/exports"),
    )


def test_diff_provider_with_identical_settings_returns_none() -> None:
    current = Store(bucket="snapshots", path="", provider=_AWS)

    assert diff_provider(AWSStore(region="us-east-1", access_key_id="AKIA", secret_access_key="secret"), current) is None


def test_diff_provider_is_idempotent_after_applying_the_change() -> None:
    current = Store(bucket="snapshots", path="", provider=_AWS)
    submitted = AWSStore(region="us-west-2", access_key_id="AKIA", secret_access_key="secret")

    changed = diff_provider(submitted, current)
    applied = Store(bucket="snapshots", path="", provider=changed)

    assert changed is not None
    assert diff_provider(submitted, applied) is None


def test_diff_provider_with_instance_role_ignores_static_keys() -> None:
    current = Store(bucket="b", path="", provider=AWSStore(region="us-east-1", use_instance_role=True))
    submitted = AWSStore(region="us-east-1", access_key_id="stale", secret_access_key="stale", use_instance_role=True)

    assert diff_provider(submitted, current) is None


def test_diff_provider_with_redacted_secret_keeps_persisted_secret() -> None:
    current = Store(bucket="b", path="", provider=_AWS)
    submitted = AWSStore(region="eu-west-1", access_key_id="AKIA", secret_access_key=REDACTED_VALUE)

    changed = diff_provider(submitted, current)

    assert changed == AWSStore(region="eu-west-1", access_key_id="AKIA", secret_access_key="secret")


def test_build_store_with_redacted_secret_for_new_provider_kind_is_rejected() -> None:
    current = Store(bucket="b", path="", provider=_AWS)
    request = SettingsRequest(
        provider="other",
        bucket="b",
        provider_store=OtherStore(
            region="us-east-1",
            access_key_id="AKIA",
            secret_access_key=REDACTED_VALUE,
            endpoint="http://s3.example.com",
        ),
    )

    with pytest.raises(ValidationError, match="other secret access key must be provided"):
        build_store(request, current)


def test_diff_provider_with_different_provider_kind_is_a_change() -> None:
    current = Store(bucket="b", path="", provider=_AWS)
    submitted = OtherStore(region="us-east-1", access_key_id="AKIA", secret_access_key="secret", endpoint="http://s3")

    assert diff_provider(submitted, current) == submitted


def test_diff_provider_for_gcp_compares_only_the_active_credential() -> None:
    current = Store(bucket="b", path="", provider=GCPStore(json_file='{"type": "service_account"}'))
    submitted = GCPStore(service_account="ignored@example.iam", json_file='{"type": "service_account"}')

    assert diff_provider(submitted, current) is None


def test_build_store_with_unchanged_settings_returns_current_store() -> None:
    current = Store(bucket="snapshots", path="cluster-a", provider=_AWS)
    request = SettingsRequest(provider="aws", bucket="snapshots", path="cluster-a", provider_store=_AWS)

    update = build_store(request, current)

    assert update.changed is False
    assert update.store is current


def test_build_store_with_new_path_is_a_change() -> None:
    current = Store(bucket="snapshots", path="cluster-a", provider=_AWS)
    request = SettingsRequest(provider="aws", bucket="snapshots", path="cluster-b", provider_store=_AWS)

    update = build_store(request, current)

    assert update.changed is True
    assert update.store.path == "cluster-b"


def test_build_store_for_nfs_uses_backend_endpoint_and_fixed_bucket() -> None:
    update = build_store(SettingsRequest(provider="nfs", nfs=NFSConfig(server="10.0.0.4", path="/exports")), None, _backend_endpoint())

    assert update.changed is True
    assert update.store.bucket == "velero"
    assert update.store.provider == NFSStore(
        region="us-east-1",
        access_key_id="minio-key",
        secret_access_key="minio-secret",
        endpoint="http://kotsadm-fs-minio.kotsadm:9000",
        object_store_cluster_ip="10.96.0.15",
    )


def test_build_store_for_nfs_without_backend_raises_validation_error() -> None:
    with pytest.raises(ValidationError, match="self-hosted backend"):
        build_store(SettingsRequest(provider="nfs"), None)


def test_build_store_with_unknown_provider_raises_validation_error() -> None:
    with pytest.raises(ValidationError, match="unsupported storage provider"):
        build_store(SettingsRequest(provider="dropbox"), None)


@pytest.mark.parametrize(
    ("store", "message"),
    [
        (Store(bucket="", path="", provider=_AWS), "bucket is required"),
        (Store(bucket="b", path="", provider=AWSStore(access_key_id="a", secret_access_key="s")), "aws region"),
        (Store(bucket="b", path="", provider=AWSStore(region="r", access_key_id="a")), "secret access key"),
        (Store(bucket="b", path="", provider=GCPStore(json_file="{not json")), "not valid json"),
        (Store(bucket="b", path="", provider=GCPStore(use_instance_role=True)), "service account"),
        (
            Store(
                bucket="b",
                path="",
                provider=AzureStore(resource_group="rg", storage_account="sa", subscription_id="sub", cloud_name="Mars"),
            ),
            "unsupported azure cloud name",
        ),
        (Store(bucket="b", path="", provider=OtherStore(region="r", access_key_id="a", secret_access_key="s")), "endpoint"),
    ],
)
def test_validate_store_rejects_incomplete_settings(store: Store, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_store(store)


def test_validate_store_accepts_aws_instance_role_without_keys() -> None:
    validate_store(Store(bucket="b", path="", provider=AWSStore(region="us-east-1", use_instance_role=True)))


def test_redact_store_hides_only_populated_secrets() -> None:
    redacted = redact_store(Store(bucket="b", path="", provider=_AWS))

    assert redacted.provider.secret_access_key == REDACTED_VALUE
    assert redacted.provider.access_key_id == "AKIA"
    unset = Store(bucket="b", path="", provider=AWSStore(region="r", use_instance_role=True))
    assert redact_store(unset) is unset


def test_settings_request_from_mapping_parses_provider_payload() -> None:
    request = settings_request_from_mapping(
        {
            "provider": "aws",
            "bucket": "snapshots",
            "path": "prod",
            "aws": {"region": "us-east-1", "accessKeyID": "AKIA", "secretAccessKey": "secret", "useInstanceRole": False},
        }
    )

    assert request.provider == "aws"
    assert request.bucket == "snapshots"
    assert request.provider_store == _AWS
    assert provider_to_mapping(request.provider_store)["accessKeyID"] == "AKIA"


def test_settings_request_from_mapping_parses_nfs_payload_with_force_reset() -> None:
    request = settings_request_from_mapping({"nfs": {"server": " 10.0.0.4 ", "path": "/exports", "forceReset": True}})

    assert request.provider == "nfs"
    assert request.nfs == NFSConfig(server="10.0.0.4", path="/exports")
    assert request.force_reset is True


def test_settings_request_from_mapping_with_incomplete_nfs_payload_raises() -> None:
    with pytest.raises(ValidationError, match="nfs server and path are required"):
        settings_request_from_mapping({"nfs": {"server": "10.0.0.4"}})


def test_settings_request_from_mapping_with_internal_flag_requests_internal_store() -> None:
    assert settings_request_from_mapping({"internal": True}).provider == "internal"
