# config/validation.py

"""
Startup validation of the environment for production deployments.

Only ``FLASK_ENV=production`` is checked; development and testing fall back
to the defaults in ``config.base``.
"""

import json
import os
import sys
from typing import List, Tuple

from croniter import croniter

PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key", "change-me"}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() in {"1", "true", "yes", "on"}


def _check_core(errors: List[str]) -> None:
    if os.environ.get("SECRET_KEY", "") in PLACEHOLDER_SECRETS:
        errors.append(
            "SECRET_KEY is required in production and must not be a placeholder. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production (the directory store connection string).")


def _check_worker(errors: List[str]) -> None:
    if _env_flag("DIRECTORY_WORKER_ENABLED") and not os.environ.get("CELERY_BROKER_URL"):
        errors.append("CELERY_BROKER_URL is required when DIRECTORY_WORKER_ENABLED=true")

    raw = os.environ.get("CELERY_CONFIG")
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, dict):
            errors.append("CELERY_CONFIG must be a JSON object when provided")


def _check_schedule(errors: List[str]) -> None:
    expression = os.environ.get("DIRECTORY_SCHEDULE_CRON")
    if expression and not croniter.is_valid(expression):
        errors.append(f"DIRECTORY_SCHEDULE_CRON is not a valid cron expression: {expression}")


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate the environment for ``flask_env`` (defaults to ``FLASK_ENV``).

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors: List[str] = []
    _check_core(errors)
    _check_worker(errors)
    _check_schedule(errors)
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every validation failure to stderr and exit with status 1."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    print(rule, file=sys.stderr)
    print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
    print(rule, file=sys.stderr)
    for i, error in enumerate(errors, 1):
        print(f"{i}. {error}", file=sys.stderr)
    print(rule, file=sys.stderr)
    print("Please check your .env file or environment variables.", file=sys.stderr)
    sys.exit(1)
