# config/validation.py

"""
Startup checks for the client registry environment.

Each check inspects the process environment and returns a list of problems;
``validate_and_exit`` aborts boot when any production check fails.
"""

import os
import sys
from typing import Callable, List, Mapping, Tuple

PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key", "dev-secret-key-change-in-production"}

POSITIVE_INT_SETTINGS = (
    "EXCHANGE_BATCH_SIZE",
    "EXCHANGE_MAX_UPLOAD_MB",
    "EXCHANGE_BULK_MAX_TARGETS",
    "EXCHANGE_BULK_MAX_HARD_DELETE",
)


def _is_true(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "false").strip().lower() in {"1", "true", "yes", "on"}


def _check_secret_key(env: Mapping[str, str]) -> List[str]:
    secret_key = env.get("SECRET_KEY", "")
    if not secret_key or secret_key in PLACEHOLDER_SECRETS:
        return [
            "SECRET_KEY is required in production and must not be a placeholder value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        ]
    return []


def _check_database_url(env: Mapping[str, str]) -> List[str]:
    if not env.get("DATABASE_URL"):
        return ["DATABASE_URL is required in production. Set it to your PostgreSQL connection string."]
    return []


def _check_worker_transport(env: Mapping[str, str]) -> List[str]:
    # Queued jobs need a broker every worker host can reach; the SQLite default is local-only.
    if "EXCHANGE_ENABLED" in env and not _is_true(env, "EXCHANGE_ENABLED"):
        return []
    if not _is_true(env, "EXCHANGE_WORKER_ENABLED"):
        return []
    return [
        f"{name} is required when EXCHANGE_WORKER_ENABLED=true"
        for name in ("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND")
        if not env.get(name)
    ]


def _check_positive_ints(env: Mapping[str, str]) -> List[str]:
    errors = []
    for name in POSITIVE_INT_SETTINGS:
        raw = env.get(name)
        if raw is None:
            continue
        try:
            valid = int(raw) >= 1
        except ValueError:
            valid = False
        if not valid:
            errors.append(f"{name} must be a positive integer, got {raw!r}")
    return errors


PRODUCTION_CHECKS: Tuple[Callable[[Mapping[str, str]], List[str]], ...] = (
    _check_secret_key,
    _check_database_url,
    _check_worker_transport,
    _check_positive_ints,
)


def validate_environment(flask_env: str = None, env: Mapping[str, str] = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing).
            If None, reads from FLASK_ENV.
        env: Mapping to inspect instead of ``os.environ``.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    env = os.environ if env is None else env
    if flask_env is None:
        flask_env = env.get("FLASK_ENV", "development")

    if flask_env != "production":
        return True, []

    errors: List[str] = []
    for check in PRODUCTION_CHECKS:
        errors.extend(check(env))
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Validate the environment and exit with status 1 when it is unusable."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    banner = "=" * 80
    lines = [banner, "ENVIRONMENT VALIDATION FAILED", banner, ""]
    lines.extend(f"{index}. {error}" for index, error in enumerate(errors, 1))
    lines.extend(["", "Check your .env file or environment variables.", banner])
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
