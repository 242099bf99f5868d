import json
import logging
import sys

import pytest
from flask import Flask

from registry_app.utils.logging_config import JSONFormatter, setup_logging


def _build_app(**config):
    app = Flask(__name__)
    app.config.update(config)
    return app


def _managed_handlers(logger):
    return [handler for handler in logger.handlers if getattr(handler, "_registry_handler", False)]


@pytest.fixture(autouse=True)
def restore_registry_loggers(app):
    yield
    setup_logging(app)


def test_json_formatter_includes_extra_fields():
    formatter = JSONFormatter(app_name="registry", app_version="1.0")
    record = logging.LogRecord("registry_app.exchange", logging.INFO, __file__, 10, "Batch committed", (), None)
    record.job_id = 42
    record.batch_size = 100

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "Batch committed"
    assert payload["level"] == "INFO"
    assert payload["app"] == "registry"
    assert payload["version"] == "1.0"
    assert payload["logger"] == "registry_app.exchange"
    assert payload["job_id"] == 42
    assert payload["batch_size"] == 100


def test_setup_logging_is_idempotent():
    app = _build_app(LOG_LEVEL="WARNING", ENABLE_CONSOLE_LOGGING=True, ENABLE_FILE_LOGGING=False)

    setup_logging(app)
    setup_logging(app)

    registry_logger = logging.getLogger("registry_app")
    assert len(_managed_handlers(app.logger)) == 1
    assert len(_managed_handlers(registry_logger)) == 1
    assert registry_logger.level == logging.WARNING


def test_file_logging_writes_to_log_dir(tmp_path):
    app = _build_app(
        LOG_LEVEL="INFO",
        LOG_FORMAT="text",
        ENABLE_CONSOLE_LOGGING=False,
        ENABLE_FILE_LOGGING=True,
        LOG_DIR=str(tmp_path / "logs"),
    )

    setup_logging(app)
    logging.getLogger("registry_app.exchange").info("Import finished")
    for handler in _managed_handlers(app.logger):
        handler.flush()

    content = (tmp_path / "logs" / "registry.log").read_text(encoding="utf-8")
    assert "Import finished" in content


def test_json_formatter_omits_unset_app_fields_and_renders_exceptions():
    formatter = JSONFormatter()
    try:
        raise RuntimeError("store unavailable")
    except RuntimeError:
        record = logging.LogRecord(
            "registry_app.exchange", logging.ERROR, __file__, 20, "Import failed", (), sys.exc_info()
        )

    payload = json.loads(formatter.format(record))

    assert "app" not in payload
    assert "version" not in payload
    assert payload["level"] == "ERROR"
    assert "store unavailable" in payload["exc_info"]
