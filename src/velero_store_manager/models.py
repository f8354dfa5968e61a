from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Union

HEALTH_READY = "Ready"
HEALTH_NOT_READY = "NotReady"

WORKLOAD_KIND_APP = "app"
WORKLOAD_KIND_CLUSTER = "cluster"


@dataclass(frozen=True)
class AWSStore:
    kind: ClassVar[str] = "aws"

    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    use_instance_role: bool = False


@dataclass(frozen=True)
class AzureStore:
    kind: ClassVar[str] = "azure"

    resource_group: str = ""
    storage_account: str = ""
    subscription_id: str = ""
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    cloud_name: str = "AzurePublicCloud"


@dataclass(frozen=True)
class GCPStore:
    kind: ClassVar[str] = "gcp"

    service_account: str = ""
    json_file: str = ""
    use_instance_role: bool = False


@dataclass(frozen=True)
class OtherStore:
    kind: ClassVar[str] = "other"

    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    endpoint: str = ""


@dataclass(frozen=True)
class InternalStore:
    kind: ClassVar[str] = "internal"

    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    endpoint: str = ""
    object_store_cluster_ip: str = ""


@dataclass(frozen=True)
class NFSStore:
    kind: ClassVar[str] = "nfs"

    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    endpoint: str = ""
    object_store_cluster_ip: str = ""


ProviderStore = Union[AWSStore, AzureStore, GCPStore, OtherStore, InternalStore, NFSStore]

PROVIDER_TYPES: dict[str, type] = {
    provider_type.kind: provider_type
    for provider_type in (AWSStore, AzureStore, GCPStore, OtherStore, InternalStore, NFSStore)
}


@dataclass(frozen=True)
class Store:
    bucket: str
    path: str
    provider: ProviderStore

    @property
    def provider_kind(self) -> str:
        return self.provider.kind


@dataclass(frozen=True)
class NFSConfig:
    server: str
    path: str


@dataclass(frozen=True)
class SettingsRequest:
    """A storage destination update as submitted by an operator."""

    provider: str
    bucket: str = ""
    path: str = ""
    provider_store: ProviderStore | None = None
    nfs: NFSConfig | None = None
    force_reset: bool = False


@dataclass(frozen=True)
class BackendEndpoint:
    endpoint: str
    public_url: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    object_store_cluster_ip: str
    nfs_config: NFSConfig | None = None


@dataclass(frozen=True)
class EngineStatus:
    version: str | None = None
    health: str = HEALTH_NOT_READY
    companion_version: str | None = None
    companion_health: str = HEALTH_NOT_READY
    plugins: tuple[str, ...] = ()
    namespace: str = ""

    @property
    def is_ready(self) -> bool:
        return self.health == HEALTH_READY

    @property
    def is_companion_ready(self) -> bool:
        return self.companion_health == HEALTH_READY


@dataclass(frozen=True)
class DetectionResult:
    state: str
    engine_status: EngineStatus | None = None
    cause: Exception | None = None

    FOUND: ClassVar[str] = "found"
    NOT_FOUND: ClassVar[str] = "not_found"
    FAILED: ClassVar[str] = "detection_failed"

    @classmethod
    def found(cls, status: EngineStatus) -> DetectionResult:
        return cls(state=cls.FOUND, engine_status=status)

    @classmethod
    def not_found(cls) -> DetectionResult:
        return cls(state=cls.NOT_FOUND)

    @classmethod
    def failed(cls, cause: Exception) -> DetectionResult:
        return cls(state=cls.FAILED, cause=cause)

    @property
    def status(self) -> EngineStatus | None:
        return self.engine_status if self.state == self.FOUND else None

    @property
    def is_installed(self) -> bool:
        return self.state == self.FOUND


@dataclass(frozen=True)
class RegistryOptions:
    endpoint: str = ""
    namespace: str = ""
    username: str = ""
    password: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.endpoint.strip())

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and bool(self.password)


@dataclass(frozen=True)
class RewrittenImages:
    velero: str
    aws_plugin: str
    restic_restore_helper: str
    image_pull_secrets: tuple[str, ...] = ()


@dataclass(frozen=True)
class Workload:
    id: str
    kind: str
    snapshot_schedule: str = ""
    snapshot_ttl: str = ""


@dataclass(frozen=True)
class ScheduleEntry:
    owner_id: str
    cron_expression: str
    retention: str
    created_at: datetime


@dataclass(frozen=True)
class PendingSnapshotRequest:
    id: str
    owner_id: str
    scheduled_at: datetime


@dataclass(frozen=True)
class SnapshotTTL:
    input_value: str
    input_time_unit: str
    converted: str


@dataclass(frozen=True)
class SnapshotConfig:
    auto_enabled: bool
    schedule: str
    ttl: SnapshotTTL


@dataclass(frozen=True)
class SettingsResult:
    success: bool
    store: Store | None = None
    nfs_config: NFSConfig | None = None
    installed: bool = False
    changed: bool = False
    ready: bool = True
    message: str = ""
    minimal_rbac: bool = False


@dataclass(frozen=True)
class GlobalSnapshotSettings:
    engine_version: str | None = None
    engine_plugins: tuple[str, ...] = ()
    is_engine_running: bool = False
    companion_version: str | None = None
    is_companion_running: bool = False
    is_embedded_cluster: bool = False
    store: Store | None = None
    nfs_config: NFSConfig | None = None
    warnings: list[str] = field(default_factory=list)
