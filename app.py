# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from registry_app.exchange import init_exchange  # noqa: E402
from registry_app.models import Client, ExchangeJob, Organization, db  # noqa: E402
from registry_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

app = Flask(__name__)

flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    # Refuse to boot with missing or weak secrets
    validate_and_exit(flask_env)

for config_object in CONFIG_BY_ENV.get(flask_env, CONFIG_BY_ENV["development"]):
    app.config.from_object(config_object)

db.init_app(app)
setup_logging(app)
init_exchange(app)


def configure_sqlite_engine(engine, *, enable_foreign_keys: bool) -> None:
    """
    Apply connection pragmas and hand transaction control to SQLAlchemy.

    pysqlite's implicit transaction handling breaks SAVEPOINT, which the
    importer and bulk executor rely on for per-row isolation. Disabling it and
    emitting BEGIN ourselves restores nested transactions.
    """
    if getattr(engine, "_registry_sqlite_configured", False):
        return

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        dbapi_connection.isolation_level = None
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    def _on_begin(conn):  # pragma: no cover - instrumentation
        conn.exec_driver_sql("BEGIN")

    event.listen(engine, "connect", _on_connect)
    event.listen(engine, "begin", _on_begin)
    engine._registry_sqlite_configured = True  # type: ignore[attr-defined]


with app.app_context():
    if db.engine.url.drivername.startswith("sqlite"):
        configure_sqlite_engine(db.engine, enable_foreign_keys=not app.config.get("TESTING", False))
    # Tests build their own schema per test
    if not app.config.get("TESTING", False):
        db.create_all()


@app.shell_context_processor
def _shell_context():
    return {"db": db, "Organization": Organization, "Client": Client, "ExchangeJob": ExchangeJob}
