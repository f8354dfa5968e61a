from __future__ import annotations

import base64
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .backend import BACKEND_NAME, BACKEND_PORT
from .credentials import (
    format_aws_credentials,
    format_azure_credentials,
    parse_aws_credentials,
    parse_azure_credentials,
)
from .detect import (
    BACKUP_STORAGE_LOCATION_PLURAL,
    DEFAULT_BACKUP_STORAGE_LOCATION,
    VELERO_API_GROUP,
    VELERO_API_VERSION,
)
from .errors import FatalInstallError, ValidationError
from .k8s import KubernetesClients, error_message
from .logging import get_logger
from .models import (
    AWSStore,
    AzureStore,
    BackendEndpoint,
    GCPStore,
    InternalStore,
    NFSStore,
    OtherStore,
    ProviderStore,
    Store,
)

logger = get_logger(__name__)

CLOUD_CREDENTIALS_SECRET = "cloud-credentials"
CLOUD_CREDENTIALS_KEY = "cloud"

INTERNAL_STORE_NAMESPACE = "rook-ceph"
INTERNAL_STORE_SECRET = "rook-ceph-object-user-rook-ceph-store-kurl"
INTERNAL_STORE_SERVICE = "rook-ceph-rgw-rook-ceph-store"
INTERNAL_STORE_ENDPOINT = f"http://{INTERNAL_STORE_SERVICE}.{INTERNAL_STORE_NAMESPACE}"
INTERNAL_STORE_BUCKET = "velero"
INTERNAL_STORE_REGION = "us-east-1"


class BackupLocationStore:
    """Reads and writes the engine's default backup storage location and its credentials secret."""

    def __init__(self, *, clients: KubernetesClients, namespace: str) -> None:
        self.clients = clients
        self.namespace = namespace

    def read_store(self) -> Store | None:
        location = self._read_location()
        if location is None:
            return None
        spec = location.get("spec") or {}
        object_storage = spec.get("objectStorage") or {}
        provider = _provider_from_location(
            provider_name=spec.get("provider") or "",
            location_config=spec.get("config") or {},
            credentials=self._read_credentials(),
        )
        return Store(
            bucket=object_storage.get("bucket") or "",
            path=object_storage.get("prefix") or "",
            provider=provider,
        )

    def write_store(self, store: Store) -> None:
        provider_name, location_config, credentials = location_settings(store)
        location = self._read_location()
        if location is None:
            raise FatalInstallError(
                stage="store",
                reason=f"backup storage location '{DEFAULT_BACKUP_STORAGE_LOCATION}' not found in {self.namespace}",
            )

        try:
            self._write_credentials(credentials)
        except ApiException as error:
            raise FatalInstallError(stage="store/credentials", reason=error_message(error)) from error

        spec = dict(location.get("spec") or {})
        object_storage = dict(spec.get("objectStorage") or {})
        object_storage["bucket"] = store.bucket
        object_storage["prefix"] = store.path
        spec.update(provider=provider_name, objectStorage=object_storage, config=location_config)
        location["spec"] = spec
        try:
            self.clients.custom_objects_api.replace_namespaced_custom_object(
                group=VELERO_API_GROUP,
                version=VELERO_API_VERSION,
                namespace=self.namespace,
                plural=BACKUP_STORAGE_LOCATION_PLURAL,
                name=DEFAULT_BACKUP_STORAGE_LOCATION,
                body=location,
            )
        except ApiException as error:
            raise FatalInstallError(
                stage="store/location",
                reason=error_message(error),
                partially_applied=True,
            ) from error
        logger.info("backup_location_updated", provider=store.provider_kind, bucket=store.bucket, namespace=self.namespace)

    def _read_location(self) -> dict[str, Any] | None:
        try:
            return self.clients.custom_objects_api.get_namespaced_custom_object(
                group=VELERO_API_GROUP,
                version=VELERO_API_VERSION,
                namespace=self.namespace,
                plural=BACKUP_STORAGE_LOCATION_PLURAL,
                name=DEFAULT_BACKUP_STORAGE_LOCATION,
            )
        except ApiException as error:
            if error.status == 404:
                return None
            raise FatalInstallError(stage="store/read", reason=error_message(error)) from error

    def _read_credentials(self) -> bytes:
        try:
            secret = self.clients.core_api.read_namespaced_secret(name=CLOUD_CREDENTIALS_SECRET, namespace=self.namespace)
        except ApiException as error:
            if error.status == 404:
                return b""
            raise FatalInstallError(stage="store/read", reason=error_message(error)) from error
        encoded = (secret.data or {}).get(CLOUD_CREDENTIALS_KEY)
        return base64.b64decode(encoded) if encoded else b""

    def _write_credentials(self, credentials: bytes) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=CLOUD_CREDENTIALS_SECRET),
            data={CLOUD_CREDENTIALS_KEY: base64.b64encode(credentials).decode("ascii")},
        )
        try:
            self.clients.core_api.replace_namespaced_secret(
                name=CLOUD_CREDENTIALS_SECRET,
                namespace=self.namespace,
                body=body,
            )
        except ApiException as error:
            if error.status != 404:
                raise
            self.clients.core_api.create_namespaced_secret(namespace=self.namespace, body=body)


def location_settings(store: Store) -> tuple[str, dict[str, str], bytes]:
    """Map a store to the engine's ``(provider, location config, credentials file)``."""
    provider = store.provider
    if isinstance(provider, AWSStore):
        credentials = b""
        if not provider.use_instance_role:
            credentials = format_aws_credentials(provider.access_key_id, provider.secret_access_key)
        return "aws", {"region": provider.region}, credentials

    if isinstance(provider, (OtherStore, InternalStore, NFSStore)):
        location_config = {
            "region": provider.region,
            "s3Url": provider.endpoint,
            "s3ForcePathStyle": "true",
        }
        if isinstance(provider, (InternalStore, NFSStore)) and provider.object_store_cluster_ip:
            port_suffix = f":{BACKEND_PORT}" if isinstance(provider, NFSStore) else ""
            location_config["publicUrl"] = f"http://{provider.object_store_cluster_ip}{port_suffix}"
        return "aws", location_config, format_aws_credentials(provider.access_key_id, provider.secret_access_key)

    if isinstance(provider, GCPStore):
        location_config = {"serviceAccount": provider.service_account} if provider.use_instance_role else {}
        credentials = b"" if provider.use_instance_role else provider.json_file.encode("utf-8")
        return "gcp", location_config, credentials

    if isinstance(provider, AzureStore):
        location_config = {
            "resourceGroup": provider.resource_group,
            "storageAccount": provider.storage_account,
            "subscriptionId": provider.subscription_id,
        }
        credentials = format_azure_credentials(
            subscription_id=provider.subscription_id,
            tenant_id=provider.tenant_id,
            client_id=provider.client_id,
            client_secret=provider.client_secret,
            resource_group=provider.resource_group,
            cloud_name=provider.cloud_name,
        )
        return "azure", location_config, credentials

    raise ValidationError(f"unsupported storage provider type: {type(provider).__name__}")


def internal_backend_endpoint(clients: KubernetesClients) -> BackendEndpoint:
    """Build the endpoint of the embedded cluster's built-in object store."""
    try:
        secret = clients.core_api.read_namespaced_secret(name=INTERNAL_STORE_SECRET, namespace=INTERNAL_STORE_NAMESPACE)
        service = clients.core_api.read_namespaced_service(
            name=INTERNAL_STORE_SERVICE,
            namespace=INTERNAL_STORE_NAMESPACE,
        )
    except ApiException as error:
        raise ValidationError(
            f"the internal object store is not available in this cluster: {error_message(error)}"
        ) from error

    data = secret.data or {}
    cluster_ip = (service.spec.cluster_ip if service.spec else None) or ""
    return BackendEndpoint(
        endpoint=INTERNAL_STORE_ENDPOINT,
        public_url=f"http://{cluster_ip}" if cluster_ip else "",
        region=INTERNAL_STORE_REGION,
        bucket=INTERNAL_STORE_BUCKET,
        access_key_id=base64.b64decode(data.get("AccessKey") or "").decode("utf-8"),
        secret_access_key=base64.b64decode(data.get("SecretKey") or "").decode("utf-8"),
        object_store_cluster_ip=cluster_ip,
    )


def _provider_from_location(
    *,
    provider_name: str,
    location_config: dict[str, str],
    credentials: bytes,
) -> ProviderStore:
    if provider_name == "aws":
        access_key_id, secret_access_key = parse_aws_credentials(credentials) if credentials else ("", "")
        endpoint = location_config.get("s3Url") or ""
        region = location_config.get("region") or ""
        if not endpoint:
            return AWSStore(
                region=region,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                use_instance_role=not access_key_id,
            )
        if endpoint == INTERNAL_STORE_ENDPOINT:
            provider_type: type = InternalStore
        elif endpoint.startswith(f"http://{BACKEND_NAME}."):
            provider_type = NFSStore
        else:
            return OtherStore(
                region=region,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                endpoint=endpoint,
            )
        public_url = location_config.get("publicUrl") or ""
        cluster_ip = public_url.removeprefix("http://").split(":", 1)[0] if public_url else ""
        return provider_type(
            region=region,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            endpoint=endpoint,
            object_store_cluster_ip=cluster_ip,
        )

    if provider_name == "gcp":
        service_account = location_config.get("serviceAccount") or ""
        return GCPStore(
            service_account=service_account,
            json_file=credentials.decode("utf-8"),
            use_instance_role=bool(service_account) and not credentials,
        )

    if provider_name == "azure":
        values = parse_azure_credentials(credentials)
        return AzureStore(
            resource_group=location_config.get("resourceGroup") or values["resource_group"],
            storage_account=location_config.get("storageAccount") or "",
            subscription_id=location_config.get("subscriptionId") or values["subscription_id"],
            tenant_id=values["tenant_id"],
            client_id=values["client_id"],
            client_secret=values["client_secret"],
            cloud_name=values["cloud_name"] or "AzurePublicCloud",
        )

    raise ValidationError(f"unsupported backup storage location provider: {provider_name!r}")
