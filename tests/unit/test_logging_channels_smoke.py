import logging
from pathlib import Path

import pytest

from core.config.settings import LoggingSettings, Settings
from core.logging import (
    configure_logging,
    get_api_logger_safe,
    get_audit_logger_safe,
    get_broker_logger_safe,
    get_error_logger_safe,
    get_statistics,
    get_trading_logger_safe,
)
from core.logging.enhanced_logging import build_processors, reset_logging


@pytest.fixture
def logs_dir(tmp_path):
    logs_dir = tmp_path / "logs"
    reset_logging()
    yield logs_dir
    root = logging.getLogger()
    for handler in list(root.handlers):
        if Path(getattr(handler, "baseFilename", "/")).is_relative_to(tmp_path):
            root.removeHandler(handler)
            handler.close()
    reset_logging()


def test_logging_channels_write_files(logs_dir):
    settings = Settings(
        environment="testing",
        logging=LoggingSettings(logs_dir=str(logs_dir), file_enabled=True, multi_channel_enabled=True,
                                console_enabled=False),
    )
    configure_logging(settings)

    get_trading_logger_safe("test").info("trading smoke message")
    get_broker_logger_safe("test").info("broker smoke message")
    get_api_logger_safe("test").info("api smoke message")
    get_audit_logger_safe("test").info("audit smoke message")
    get_error_logger_safe("test").error("error smoke message")

    for name in ("trading.log", "broker.log", "api.log", "audit.log", "error.log"):
        path = logs_dir / name
        assert path.exists(), f"expected log file not found: {path}"
        assert path.stat().st_size > 0, f"expected log file to have content: {path}"

    assert "trading smoke message" not in (logs_dir / "broker.log").read_text()

    stats = get_statistics()
    assert stats["configured"] is True
    assert "trading" in stats["channels"]


def test_sensitive_keys_are_redacted():
    redact = build_processors(Settings())[-1]
    event = redact(None, "info", {
        "event": "login",
        "access_token": "abc",
        "request": {"API_SECRET": "s", "symbol": "RELIANCE"},
        "rows": [{"jKey": "k"}],
    })
    assert event["access_token"] == "[REDACTED]"
    assert event["request"] == {"API_SECRET": "[REDACTED]", "symbol": "RELIANCE"}
    assert event["rows"] == [{"jKey": "[REDACTED]"}]
