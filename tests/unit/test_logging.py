"""
Unit Tests - Logging and Metrics Configuration
"""
import json
import logging
from unittest.mock import patch

import pytest
import structlog

from sales_rollups.config import get_settings
from sales_rollups.config.logging import configure_logging, run_context, start_metrics_server


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestConfigureLogging:
    """Tests for structured log output"""

    def test_json_lines_carry_run_context(self, capsys, restore_logging):
        """Test bound run context and app fields appear on every line"""
        configure_logging("DEBUG")

        with run_context(run_id="run-7", stage="daily"):
            structlog.get_logger("sales_rollups.test").info("Unit built", records=3)

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        event = next(line for line in lines if line["event"] == "Unit built")
        assert event["run_id"] == "run-7"
        assert event["stage"] == "daily"
        assert event["records"] == 3
        assert event["app"] == get_settings().app_name
        assert event["level"] == "info"

    def test_context_is_released(self):
        """Test values bound by run_context do not leak past the block"""
        with run_context(run_id="run-8"):
            assert structlog.contextvars.get_contextvars()["run_id"] == "run-8"

        assert "run_id" not in structlog.contextvars.get_contextvars()


class TestMetricsServer:
    """Tests for the metrics endpoint"""

    def test_default_port_from_settings(self):
        """Test the configured Prometheus port is used by default"""
        with patch("sales_rollups.config.logging.start_http_server") as server:
            port = start_metrics_server()

        server.assert_called_once_with(get_settings().monitoring.prometheus_port)
        assert port == get_settings().monitoring.prometheus_port

    def test_explicit_port(self):
        """Test an explicit port overrides the settings"""
        with patch("sales_rollups.config.logging.start_http_server") as server:
            start_metrics_server(9200)

        server.assert_called_once_with(9200)
