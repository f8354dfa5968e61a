from __future__ import annotations

from dataclasses import dataclass, fields, replace
import json
from typing import Any, Mapping

from .errors import ValidationError
from .models import (
    PROVIDER_TYPES,
    AWSStore,
    AzureStore,
    BackendEndpoint,
    GCPStore,
    InternalStore,
    NFSConfig,
    NFSStore,
    OtherStore,
    ProviderStore,
    SettingsRequest,
    Store,
)

REDACTED_VALUE = "--- REDACTED ---"
SELF_HOSTED_BUCKET = "velero"

AZURE_CLOUD_NAMES = (
    "AzurePublicCloud",
    "AzureUSGovernmentCloud",
    "AzureChinaCloud",
    "AzureGermanCloud",
)

# Fields compared when deciding whether a submitted provider differs from the persisted one.
_COMPARED_FIELDS: dict[type, tuple[str, ...]] = {
    AWSStore: ("region", "access_key_id", "secret_access_key", "use_instance_role"),
    AzureStore: (
        "resource_group",
        "storage_account",
        "subscription_id",
        "tenant_id",
        "client_id",
        "client_secret",
        "cloud_name",
    ),
    GCPStore: ("service_account", "json_file", "use_instance_role"),
    OtherStore: ("region", "access_key_id", "secret_access_key", "endpoint"),
    InternalStore: ("region", "access_key_id", "secret_access_key", "endpoint"),
    NFSStore: ("region", "access_key_id", "secret_access_key", "endpoint"),
}

_SECRET_FIELDS: dict[type, tuple[str, ...]] = {
    AWSStore: ("secret_access_key",),
    AzureStore: ("client_secret",),
    GCPStore: ("json_file",),
    OtherStore: ("secret_access_key",),
    InternalStore: ("secret_access_key",),
    NFSStore: ("secret_access_key",),
}

# JSON keys used by the admin API for each provider payload.
_API_FIELD_NAMES: dict[type, dict[str, str]] = {
    AWSStore: {
        "region": "region",
        "accessKeyID": "access_key_id",
        "secretAccessKey": "secret_access_key",
        "useInstanceRole": "use_instance_role",
    },
    AzureStore: {
        "resourceGroup": "resource_group",
        "storageAccount": "storage_account",
        "subscriptionId": "subscription_id",
        "tenantId": "tenant_id",
        "clientId": "client_id",
        "clientSecret": "client_secret",
        "cloudName": "cloud_name",
    },
    GCPStore: {
        "serviceAccount": "service_account",
        "jsonFile": "json_file",
        "useInstanceRole": "use_instance_role",
    },
    OtherStore: {
        "region": "region",
        "accessKeyID": "access_key_id",
        "secretAccessKey": "secret_access_key",
        "endpoint": "endpoint",
    },
}


@dataclass(frozen=True)
class StoreUpdate:
    store: Store
    changed: bool


def canonical_provider(provider: ProviderStore) -> ProviderStore:
    if isinstance(provider, AWSStore) and provider.use_instance_role:
        return replace(provider, access_key_id="", secret_access_key="")
    if isinstance(provider, GCPStore):
        if provider.use_instance_role:
            return replace(provider, json_file="")
        return replace(provider, service_account="")
    return provider


def _comparable_fields(provider: ProviderStore) -> tuple[str, ...]:
    try:
        return _COMPARED_FIELDS[type(provider)]
    except KeyError as error:
        raise ValidationError(f"unsupported storage provider type: {type(provider).__name__}") from error


def _restore_redacted(submitted: ProviderStore, persisted: ProviderStore | None) -> ProviderStore:
    if persisted is None or type(persisted) is not type(submitted):
        return submitted
    restored = {
        name: getattr(persisted, name)
        for name in _SECRET_FIELDS[type(submitted)]
        if getattr(submitted, name) == REDACTED_VALUE
    }
    return replace(submitted, **restored) if restored else submitted


def diff_provider(submitted: ProviderStore, current: Store | None) -> ProviderStore | None:
    """Return the provider settings to apply, or ``None`` when nothing changed."""
    compared = _comparable_fields(submitted)
    persisted = current.provider if current is not None else None
    candidate = canonical_provider(_restore_redacted(submitted, persisted))

    if persisted is None or type(persisted) is not type(submitted):
        return candidate

    persisted = canonical_provider(persisted)
    for name in compared:
        if getattr(candidate, name) != getattr(persisted, name):
            return candidate
    return None


def build_store(
    request: SettingsRequest,
    current: Store | None,
    backend: BackendEndpoint | None = None,
) -> StoreUpdate:
    provider_kind = request.provider.strip().lower()
    if provider_kind not in PROVIDER_TYPES:
        raise ValidationError(f"unsupported storage provider: {request.provider!r}")

    if provider_kind in {InternalStore.kind, NFSStore.kind}:
        submitted = _self_hosted_provider(provider_kind, backend)
        bucket = backend.bucket if backend is not None else SELF_HOSTED_BUCKET
        path = ""
    else:
        if request.provider_store is None or request.provider_store.kind != provider_kind:
            raise ValidationError(f"missing settings for storage provider '{provider_kind}'")
        submitted = request.provider_store
        bucket = request.bucket.strip()
        path = request.path.strip()

    changed_provider = diff_provider(submitted, current)
    location_changed = current is None or current.bucket != bucket or current.path != path
    if changed_provider is None and not location_changed and current is not None:
        return StoreUpdate(store=current, changed=False)

    provider = changed_provider if changed_provider is not None else current.provider  # type: ignore[union-attr]
    store = Store(bucket=bucket, path=path, provider=provider)
    validate_store(store)
    return StoreUpdate(store=store, changed=True)


def _self_hosted_provider(provider_kind: str, backend: BackendEndpoint | None) -> ProviderStore:
    if backend is None:
        raise ValidationError(f"storage provider '{provider_kind}' requires a provisioned self-hosted backend")
    provider_type = InternalStore if provider_kind == InternalStore.kind else NFSStore
    return provider_type(
        region=backend.region,
        access_key_id=backend.access_key_id,
        secret_access_key=backend.secret_access_key,
        endpoint=backend.endpoint,
        object_store_cluster_ip=backend.object_store_cluster_ip,
    )


def validate_store(store: Store) -> None:
    provider = store.provider
    if not store.bucket:
        raise ValidationError("bucket is required")
    for name in _SECRET_FIELDS.get(type(provider), ()):
        if getattr(provider, name) == REDACTED_VALUE:
            raise ValidationError(
                f"{provider.kind} {name.replace('_', ' ')} must be provided; there is no stored value to keep"
            )

    if isinstance(provider, AWSStore):
        if not provider.region:
            raise ValidationError("aws region is required")
        if not provider.use_instance_role:
            if not provider.access_key_id:
                raise ValidationError("aws access key id is required")
            if not provider.secret_access_key:
                raise ValidationError("aws secret access key is required")
        return

    if isinstance(provider, AzureStore):
        for name in ("resource_group", "storage_account", "subscription_id"):
            if not getattr(provider, name):
                raise ValidationError(f"azure {name.replace('_', ' ')} is required")
        if provider.cloud_name not in AZURE_CLOUD_NAMES:
            raise ValidationError(f"unsupported azure cloud name: {provider.cloud_name!r}")
        return

    if isinstance(provider, GCPStore):
        if provider.use_instance_role:
            if not provider.service_account:
                raise ValidationError("gcp service account is required when using the instance role")
            return
        if not provider.json_file:
            raise ValidationError("gcp json file is required")
        try:
            json.loads(provider.json_file)
        except ValueError as error:
            raise ValidationError(f"gcp json file is not valid json: {error}") from error
        return

    if isinstance(provider, (OtherStore, InternalStore, NFSStore)):
        for name in ("region", "access_key_id", "secret_access_key", "endpoint"):
            if not getattr(provider, name):
                raise ValidationError(f"{provider.kind} {name.replace('_', ' ')} is required")
        return

    raise ValidationError(f"unsupported storage provider type: {type(provider).__name__}")


def redact_store(store: Store) -> Store:
    provider = store.provider
    redacted = {
        name: REDACTED_VALUE
        for name in _SECRET_FIELDS[type(provider)]
        if getattr(provider, name)
    }
    if not redacted:
        return store
    return replace(store, provider=replace(provider, **redacted))


def settings_request_from_mapping(data: Mapping[str, Any]) -> SettingsRequest:
    """Build a request from the admin API payload shape."""
    nfs_payload = data.get("nfs")
    if nfs_payload:
        server = str(nfs_payload.get("server") or "").strip()
        path = str(nfs_payload.get("path") or "").strip()
        if not server or not path:
            raise ValidationError("nfs server and path are required")
        return SettingsRequest(
            provider=NFSStore.kind,
            nfs=NFSConfig(server=server, path=path),
            force_reset=bool(nfs_payload.get("forceReset", False)),
        )

    if data.get("internal"):
        return SettingsRequest(provider=InternalStore.kind)

    provider_kind = str(data.get("provider") or "").strip().lower()
    provider_type = PROVIDER_TYPES.get(provider_kind)
    if provider_type is None or provider_type not in _API_FIELD_NAMES:
        raise ValidationError(f"unsupported storage provider: {data.get('provider')!r}")

    payload = data.get(provider_kind) or {}
    if not isinstance(payload, Mapping):
        raise ValidationError(f"settings for storage provider '{provider_kind}' must be an object")

    return SettingsRequest(
        provider=provider_kind,
        bucket=str(data.get("bucket") or ""),
        path=str(data.get("path") or ""),
        provider_store=_provider_from_payload(provider_type, payload),
    )


def provider_to_mapping(provider: ProviderStore) -> dict[str, Any]:
    names = _API_FIELD_NAMES.get(type(provider))
    if names is None:
        return {field_info.name: getattr(provider, field_info.name) for field_info in fields(provider)}
    return {api_name: getattr(provider, attribute) for api_name, attribute in names.items()}


def _provider_from_payload(provider_type: type, payload: Mapping[str, Any]) -> ProviderStore:
    kwargs: dict[str, Any] = {}
    for api_name, attribute in _API_FIELD_NAMES[provider_type].items():
        if api_name not in payload or payload[api_name] is None:
            continue
        value = payload[api_name]
        kwargs[attribute] = bool(value) if attribute == "use_instance_role" else str(value)
    return provider_type(**kwargs)
