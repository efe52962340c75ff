"""
Tests for configuration and structured logging
"""

import json
import logging
import pytest
from decimal import Decimal

from pydantic import ValidationError

from loan_engine.config import LoanEngineConfig, OverpaymentPolicy
from loan_engine.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:
    """Test LoanEngineConfig"""

    def test_defaults(self):
        """Defaults match the business rules"""
        config = LoanEngineConfig()
        assert config.currency == "NGN"
        assert config.overpayment_policy == OverpaymentPolicy.REJECT
        assert config.penalty_daily_rate_pct == Decimal("0.1")
        assert config.default_monthly_threshold == Decimal("3000000")
        assert config.threshold_search_months == 12
        assert config.serial_prefix == "LH"
        assert config.api_port == 8090

    def test_environment_override(self, monkeypatch):
        """LOAN_ENGINE_* variables override defaults"""
        monkeypatch.setenv("LOAN_ENGINE_OVERPAYMENT_POLICY", "credit")
        monkeypatch.setenv("LOAN_ENGINE_DEFAULT_MONTHLY_THRESHOLD", "5000000")
        monkeypatch.setenv("LOAN_ENGINE_CURRENCY", "usd")

        config = LoanEngineConfig()
        assert config.overpayment_policy == OverpaymentPolicy.CREDIT
        assert config.default_monthly_threshold == Decimal("5000000")
        assert config.currency == "USD"

    def test_invalid_values(self):
        """Bad settings fail at load time"""
        with pytest.raises(ValidationError):
            LoanEngineConfig(log_format="xml")
        with pytest.raises(ValidationError):
            LoanEngineConfig(threshold_search_months=0)

    def test_sqlite_path(self):
        """sqlite:/// URLs map to a file path"""
        assert LoanEngineConfig(database_url="sqlite:///data/loans.db").sqlite_path == "data/loans.db"
        assert LoanEngineConfig(database_url="sqlite:///").sqlite_path == ":memory:"


class TestLogging:
    """Test structured logging"""

    def test_json_formatter(self):
        """Structured fields appear in the JSON line and None values are dropped"""
        record = logging.LogRecord("loan_engine.test", logging.INFO, __file__, 1,
                                   "Loan disbursed", None, None)
        record.action = "disburse_loan"
        record.resource = "L1"
        record.extra = {"loan_number": "LH/2026/001"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Loan disbursed"
        assert entry["component"] == "test"
        assert entry["action"] == "disburse_loan"
        assert entry["extra"] == {"loan_number": "LH/2026/001"}
        assert "user_id" not in entry

    def test_setup_logging_text(self, capsys):
        """Text format writes plain lines to stderr"""
        logger = setup_logging("INFO", logger_name="loan_engine.textcheck", log_format="text")
        logger.info("hello")

        captured = capsys.readouterr()
        assert "INFO loan_engine.textcheck: hello" in captured.err

    def test_log_action_respects_level(self, capsys):
        """Messages below the configured level are not emitted"""
        logger = setup_logging("WARNING", logger_name="loan_engine.levelcheck")
        log_action(logger, "info", "quiet", action="noop")
        log_action(logger, "warning", "loud", action="threshold_alert", resource="2026-03")

        lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
        assert [line["message"] for line in lines] == ["loud"]
        assert lines[0]["resource"] == "2026-03"

    def test_component_loggers(self):
        """Bare component names are placed under the engine logger"""
        assert get_logger("thresholds").name == "loan_engine.thresholds"
        assert get_logger("loan_engine.register").name == "loan_engine.register"
        assert get_logger().name == "loan_engine"
