"""
Tests for configuration, structured logging and amount handling
"""

import json
import logging
import pytest
from decimal import Decimal

from loan_core import config as config_module
from loan_core.amounts import format_amount, parse_amount, require_positive
from loan_core.config import LoanCoreConfig, reload_config
from loan_core.exceptions import InvalidAmount
from loan_core.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("LOANCORE_DATABASE_URL", "LOANCORE_ALLOW_OVERPAYMENT", "LOANCORE_LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)
        config = LoanCoreConfig()

        assert config.database_url == "sqlite:///loan_core.db"
        assert config.api_port == 8090
        assert config.allow_overpayment is False
        assert config.amount_precision == 2
        assert config.default_branch_id == "main_branch"
        assert config.default_page_limit == 20
        assert config.max_page_limit == 100
        assert config.enable_audit_logging is True

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOANCORE_ALLOW_OVERPAYMENT", "true")
        monkeypatch.setenv("LOANCORE_DEFAULT_BRANCH_ID", "khulna")
        monkeypatch.setenv("LOANCORE_MAX_PAGE_LIMIT", "50")

        config = reload_config()
        try:
            assert config.allow_overpayment is True
            assert config.default_branch_id == "khulna"
            assert config.max_page_limit == 50
            assert config_module.get_config() is config
        finally:
            monkeypatch.undo()
            reload_config()

    def test_keyword_arguments_win(self):
        assert LoanCoreConfig(database_url="memory://").database_url == "memory://"


class TestLogging:

    def make_record(self, **attributes):
        record = logging.LogRecord("loan_core.test", logging.INFO, __file__, 1, "loan created", (), None)
        for key, value in attributes.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_fields(self):
        record = self.make_record(user_id="off-1", action="create_loan", resource="loan:L1",
                                  extra={"status": "Active"})
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "loan created"
        assert entry["user_id"] == "off-1"
        assert entry["action"] == "create_loan"
        assert entry["resource"] == "loan:L1"
        assert entry["extra"] == {"status": "Active"}
        assert "timestamp" in entry

    def test_json_formatter_drops_missing_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))
        assert "user_id" not in entry
        assert "correlation_id" not in entry

    def test_log_action_to_file(self, tmp_path):
        log_file = tmp_path / "loan_core.log"
        logger = setup_logging("INFO", logger_name="loan_core.test_file", log_file=str(log_file))
        try:
            log_action(logger, "info", "payment recorded", user_id="teller-1",
                       action="record_payment", resource="loan:L9", correlation_id="req-1")
            for handler in logger.handlers:
                handler.flush()

            entry = json.loads(log_file.read_text().strip().splitlines()[-1])
            assert entry["action"] == "record_payment"
            assert entry["resource"] == "loan:L9"
            assert entry["correlation_id"] == "req-1"
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "text.log"
        logger = setup_logging("DEBUG", logger_name="loan_core.test_text", log_format="text",
                               log_file=str(log_file))
        try:
            logger.warning("stale version")
            for handler in logger.handlers:
                handler.flush()
            line = log_file.read_text().strip()
            assert "WARNING [loan_core.test_text] stale version" in line
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()

    def test_log_action_respects_level(self, tmp_path):
        log_file = tmp_path / "quiet.log"
        logger = setup_logging("WARNING", logger_name="loan_core.test_quiet", log_file=str(log_file))
        try:
            log_action(logger, "info", "not written")
            for handler in logger.handlers:
                handler.flush()
            assert log_file.read_text() == ""
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
                handler.close()


class TestAmounts:

    @pytest.mark.parametrize("raw,expected", [
        ("100", Decimal("100.00")),
        ("1,250.50", Decimal("1250.50")),
        ("৳ 100000", Decimal("100000.00")),
        ("$ 1,000", Decimal("1000.00")),
        ("1500 Tk", Decimal("1500.00")),
        ("BDT 250.5", Decimal("250.50")),
        (".5", Decimal("0.50")),
        (42, Decimal("42.00")),
        (Decimal("0.125"), Decimal("0.13")),
    ])
    def test_parse(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [1.5, True, None, "", "NaN", "Infinity"])
    def test_parse_rejects(self, raw):
        with pytest.raises(InvalidAmount):
            parse_amount(raw)

    @pytest.mark.parametrize("raw", ["1e5", "1E5", "12abc34", "5-", "1.2.3", "$$5", "Tk", "--5", "0x10"])
    def test_malformed_strings_rejected(self, raw):
        with pytest.raises(InvalidAmount):
            parse_amount(raw)

    @pytest.mark.parametrize("raw", ["1" + "0" * 30, 10 ** 30, Decimal("1E+40")])
    def test_oversized_amount_rejected(self, raw):
        with pytest.raises(InvalidAmount):
            parse_amount(raw)

    def test_require_positive(self):
        with pytest.raises(InvalidAmount):
            require_positive("0.004")
        assert require_positive("0.005") == Decimal("0.01")

    def test_format_is_fixed_precision(self):
        assert format_amount(Decimal("5")) == "5.00"
        assert format_amount(Decimal("-700")) == "-700.00"
        assert format_amount(Decimal("1.005"), 3) == "1.005"
