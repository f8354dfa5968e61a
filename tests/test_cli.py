from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import Mock

import pytest
import structlog
from typer.testing import CliRunner

from velero_store_manager.cli import app
from velero_store_manager.config import AppConfig
from velero_store_manager.errors import ConflictError, ValidationError
from velero_store_manager.models import (
    AWSStore,
    GlobalSnapshotSettings,
    NFSConfig,
    SettingsRequest,
    SettingsResult,
    Store,
)

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


def _use_configurator(monkeypatch: pytest.MonkeyPatch, configurator: Mock) -> None:
    monkeypatch.setattr("velero_store_manager.cli.build_configurator", lambda ctx: configurator)


def _use_database(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "velero_store_manager.cli.AppConfig",
        lambda: AppConfig(metadata_db_path=tmp_path / "data" / "snapshots.db"),
    )


def test_configure_nfs_without_conflict_reports_update(monkeypatch: pytest.MonkeyPatch) -> None:
    configurator = Mock()
    configurator.configure_nfs.return_value = SettingsResult(success=True, changed=True)
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-nfs", "--server", "10.0.0.4", "--path", "/exports"])

    assert result.exit_code == 0
    assert "Snapshot storage destination updated." in result.output
    configurator.configure_nfs.assert_called_once_with(NFSConfig(server="10.0.0.4", path="/exports"), force_reset=False)


def test_configure_nfs_with_conflict_and_confirmation_forces_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    nfs_config = NFSConfig(server="b", path="/y")
    configurator = Mock()
    configurator.configure_nfs.side_effect = [
        ConflictError(desired=nfs_config, current=NFSConfig(server="a", path="/x")),
        SettingsResult(success=True, changed=True),
    ]
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-nfs", "--server", "b", "--path", "/y"], input="y\n")

    assert result.exit_code == 0
    assert "already configured against NFS share a:/x" in result.output
    assert configurator.configure_nfs.call_args_list[1].kwargs == {"force_reset": True}


def test_configure_nfs_with_declined_reset_exits_with_conflict_code(monkeypatch: pytest.MonkeyPatch) -> None:
    configurator = Mock()
    configurator.configure_nfs.side_effect = ConflictError(
        desired=NFSConfig(server="b", path="/y"),
        current=NFSConfig(server="a", path="/x"),
    )
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-nfs", "--server", "b", "--path", "/y"], input="n\n")

    assert result.exit_code == 3
    assert configurator.configure_nfs.call_count == 1


def test_configure_nfs_with_yes_skips_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    configurator = Mock()
    configurator.configure_nfs.side_effect = [
        ConflictError(desired=NFSConfig(server="b", path="/y"), current=NFSConfig(server="a", path="/x")),
        SettingsResult(success=True, changed=True, ready=False, message="timed out"),
    ]
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-nfs", "--server", "b", "--path", "/y", "--yes"])

    assert result.exit_code == 0
    assert configurator.configure_nfs.call_count == 2


def test_configure_store_reads_yaml_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text(
        "provider: aws\n"
        "bucket: snapshots\n"
        "aws:\n"
        "  region: us-east-1\n"
        "  accessKeyID: AKIA\n"
        "  secretAccessKey: secret\n",
        encoding="utf-8",
    )
    configurator = Mock()
    configurator.update_settings.return_value = SettingsResult(success=True, installed=True)
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-store", "--from-file", str(settings_file)])

    assert result.exit_code == 0
    assert "Backup engine installed." in result.output
    request = configurator.update_settings.call_args.args[0]
    assert request == SettingsRequest(
        provider="aws",
        bucket="snapshots",
        provider_store=AWSStore(region="us-east-1", access_key_id="AKIA", secret_access_key="secret"),
    )


def test_configure_store_with_invalid_settings_exits_with_validation_code(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    settings_file = tmp_path / "settings.yaml"
    settings_file.write_text("provider: aws\nbucket: snapshots\naws: {}\n", encoding="utf-8")
    configurator = Mock()
    configurator.update_settings.side_effect = ValidationError("aws region is required")
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-store", "--from-file", str(settings_file)])

    assert result.exit_code == 2
    assert "aws region is required" in result.output


def test_status_json_reports_engine_and_redacted_store(monkeypatch: pytest.MonkeyPatch) -> None:
    configurator = Mock()
    configurator.get_settings.return_value = GlobalSnapshotSettings(
        engine_version="v1.5.1",
        engine_plugins=("velero-plugin-for-aws",),
        is_engine_running=True,
        store=Store(
            bucket="snapshots",
            path="",
            provider=AWSStore(region="us-east-1", access_key_id="AKIA", secret_access_key="--- REDACTED ---"),
        ),
    )
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["status", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["engineVersion"] == "v1.5.1"
    assert data["store"]["provider"] == "aws"
    assert data["store"]["aws"]["secretAccessKey"] == "--- REDACTED ---"


def test_snapshot_config_set_then_show_round_trips_through_database(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _use_database(monkeypatch, tmp_path)

    set_result = runner.invoke(
        app,
        ["snapshot-config", "set", "app-1", "--schedule", "@daily", "--ttl-value", "2", "--ttl-unit", "weeks"],
    )
    show_result = runner.invoke(app, ["snapshot-config", "show", "app-1"])

    assert set_result.exit_code == 0
    assert show_result.exit_code == 0
    shown = json.loads(show_result.output)
    assert shown["auto_enabled"] is True
    assert shown["schedule"] == "@daily"
    assert shown["ttl"] == {"input_value": "2", "input_time_unit": "week", "converted": "336h"}


def test_snapshot_config_set_with_bad_cron_exits_with_validation_code(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    _use_database(monkeypatch, tmp_path)

    result = runner.invoke(app, ["snapshot-config", "set", "app-1", "--schedule", "not-a-cron"])

    assert result.exit_code == 2
    assert "not-a-cron" in result.output


def test_configure_nfs_with_minimal_rbac_exits_with_distinct_code(monkeypatch: pytest.MonkeyPatch) -> None:
    configurator = Mock()
    configurator.configure_nfs.return_value = SettingsResult(
        success=False,
        minimal_rbac=True,
        message="The current identity cannot create cluster-scoped resources",
    )
    _use_configurator(monkeypatch, configurator)

    result = runner.invoke(app, ["configure-nfs", "--server", "10.0.0.4", "--path", "/exports"])

    assert result.exit_code == 4
    assert "cannot create cluster-scoped resources" in result.output
