from __future__ import annotations

import json
import logging

import pytest
import structlog

from velero_store_manager.logging import configure_logging, get_logger
from velero_store_manager.store import REDACTED_VALUE


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers.clear()


def test_configure_logging_renders_json_events_on_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("INFO", "json")

    get_logger("velero_store_manager.tests").info("backend_configured", server="10.0.0.4", path="/exports")

    captured = capsys.readouterr()
    event = json.loads(captured.err.strip().splitlines()[-1])
    assert captured.out == ""
    assert event["event"] == "backend_configured"
    assert event["level"] == "info"
    assert event["server"] == "10.0.0.4"


def test_configure_logging_masks_secret_fields(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("DEBUG", "json")

    get_logger("velero_store_manager.tests").debug("store_written", secret_access_key="s3cr3t", bucket="velero")

    event = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
    assert event["secret_access_key"] == REDACTED_VALUE
    assert event["bucket"] == "velero"


def test_configure_logging_filters_below_level(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("WARNING", "json")

    get_logger("velero_store_manager.tests").info("engine_ready", namespace="velero")

    assert capsys.readouterr().err == ""
