from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from .models import RegistryOptions


def _default_namespace() -> str:
    return os.getenv("VSM_NAMESPACE") or os.getenv("POD_NAMESPACE") or "default"


@dataclass(frozen=True)
class AppConfig:
    namespace: str = _default_namespace()
    engine_namespace: str = os.getenv("VSM_ENGINE_NAMESPACE", "velero")
    metadata_db_path: Path = Path(os.getenv("VSM_METADATA_DB_PATH", "./data/snapshots.db"))
    readiness_timeout_seconds: int = int(os.getenv("VSM_READINESS_TIMEOUT_SECONDS", "120"))
    backend_ready_timeout_seconds: int = int(os.getenv("VSM_BACKEND_READY_TIMEOUT_SECONDS", "300"))
    poll_interval_seconds: float = float(os.getenv("VSM_POLL_INTERVAL_SECONDS", "2"))
    velero_binary: str = os.getenv("VSM_VELERO_BINARY", "velero")
    log_level: str = os.getenv("VSM_LOG_LEVEL", "INFO")
    log_format: str = os.getenv("VSM_LOG_FORMAT", "console")
    registry_endpoint: str = os.getenv("VSM_REGISTRY_ENDPOINT", "")
    registry_namespace: str = os.getenv("VSM_REGISTRY_NAMESPACE", "")
    registry_username: str = os.getenv("VSM_REGISTRY_USERNAME", "")
    registry_password: str = os.getenv("VSM_REGISTRY_PASSWORD", "")

    def registry_options(self) -> RegistryOptions:
        return RegistryOptions(
            endpoint=self.registry_endpoint,
            namespace=self.registry_namespace,
            username=self.registry_username,
            password=self.registry_password,
        )


def ensure_directories(config: AppConfig) -> None:
    config.metadata_db_path.parent.mkdir(parents=True, exist_ok=True)
