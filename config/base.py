# config/base.py
import os
import warnings

_CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(_CONFIG_DIR)
DEV_SECRET_KEY = "dev-secret-key-change-in-production"


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """
    Parse an environment integer, falling back to ``default`` when invalid or out of bounds.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number


def _resolve_secret_key(flask_env):
    """
    Read SECRET_KEY from the environment.

    Production refuses to start without one; development falls back to a
    well-known key with a warning.
    """
    secret_key = os.environ.get("SECRET_KEY")
    if secret_key:
        return secret_key
    if flask_env == "production":
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if flask_env == "testing":
        return "test-secret-key-placeholder"
    warnings.warn(
        "SECRET_KEY not set. Using default for development only. "
        "This is insecure and should not be used in production.",
        UserWarning,
    )
    return DEV_SECRET_KEY


def _instance_sqlite_uri(filename):
    instance_path = os.path.join(PROJECT_ROOT, "instance")
    os.makedirs(instance_path, exist_ok=True)
    # SQLite URIs need forward slashes on Windows too
    return "sqlite:///" + os.path.join(instance_path, filename).replace("\\", "/")


SQLITE_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")

    SECRET_KEY = _resolve_secret_key(_flask_env)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Exchange feature switches
    EXCHANGE_ENABLED = _coerce_bool(os.environ.get("EXCHANGE_ENABLED"), default=True)
    EXCHANGE_WORKER_ENABLED = _coerce_bool(os.environ.get("EXCHANGE_WORKER_ENABLED"), default=False)

    # Import pipeline
    EXCHANGE_BATCH_SIZE = _coerce_int(os.environ.get("EXCHANGE_BATCH_SIZE"), 100, minimum=1, maximum=10000)
    EXCHANGE_MAX_UPLOAD_MB = _coerce_int(os.environ.get("EXCHANGE_MAX_UPLOAD_MB"), 25, minimum=1)
    EXCHANGE_DEFAULT_ENCODING = os.environ.get("EXCHANGE_DEFAULT_ENCODING", "utf-8-sig")
    EXCHANGE_DUPLICATE_KEY_FIELD = os.environ.get("EXCHANGE_DUPLICATE_KEY_FIELD", "tax_id")

    # Uploaded files and export artifacts; defaults to <instance>/exchange
    EXCHANGE_ARTIFACT_DIR = os.environ.get("EXCHANGE_ARTIFACT_DIR")

    # Bulk mutations
    EXCHANGE_BULK_MAX_TARGETS = _coerce_int(os.environ.get("EXCHANGE_BULK_MAX_TARGETS"), 100, minimum=1)
    EXCHANGE_BULK_MAX_HARD_DELETE = _coerce_int(os.environ.get("EXCHANGE_BULK_MAX_HARD_DELETE"), 50, minimum=1)

    EXCHANGE_JOBS_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("EXCHANGE_JOBS_PAGE_SIZE_DEFAULT"), 25, minimum=5, maximum=500
    )

    # Worker limits, in seconds
    EXCHANGE_TASK_TIME_LIMIT = _coerce_int(os.environ.get("EXCHANGE_TASK_TIME_LIMIT"), 30 * 60, minimum=60)
    EXCHANGE_TASK_SOFT_TIME_LIMIT = _coerce_int(
        os.environ.get("EXCHANGE_TASK_SOFT_TIME_LIMIT"), 25 * 60, minimum=60
    )

    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _instance_sqlite_uri("registry_dev.db")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = SQLITE_ENGINE_OPTIONS
    EXCHANGE_WORKER_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    _uri = os.environ.get("DATABASE_URL")
    # Heroku-style URLs use the scheme SQLAlchemy 1.4 dropped
    if _uri and _uri.startswith("postgres://"):
        _uri = _uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _uri
    SQLALCHEMY_ECHO = False
