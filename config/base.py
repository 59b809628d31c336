# config.py
import os
from datetime import timedelta


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


def _parse_name_list(value):
    """
    Parse a comma-separated normalizer list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized identifiers.
    """
    if not value:
        return ()

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names)


def _parse_int(value, default, *, minimum=None, maximum=None):
    """
    Parse an integer environment value, clamping to the optional bounds.
    """
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    if maximum is not None and number > maximum:
        number = maximum
    return number


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Directory sync configuration
    DIRECTORY_ENABLED = _coerce_bool(os.environ.get("DIRECTORY_ENABLED"), default=False)
    DIRECTORY_NORMALIZERS = _parse_name_list(
        os.environ.get("DIRECTORY_NORMALIZERS", "csv,https_csv,oneroster,inline")
    )

    if DIRECTORY_ENABLED and not DIRECTORY_NORMALIZERS:
        raise ValueError(
            "DIRECTORY_ENABLED is true but DIRECTORY_NORMALIZERS is empty. " "Provide at least one normalizer name."
        )

    DIRECTORY_WORKER_ENABLED = _coerce_bool(os.environ.get("DIRECTORY_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    DIRECTORY_PREVIEW_TTL_DAYS = _parse_int(os.environ.get("DIRECTORY_PREVIEW_TTL_DAYS"), 14, minimum=1)
    DIRECTORY_MAX_RUN_ERRORS = _parse_int(os.environ.get("DIRECTORY_MAX_RUN_ERRORS"), 50, minimum=1, maximum=1000)
    DIRECTORY_DIFF_SAMPLE_LIMIT = _parse_int(os.environ.get("DIRECTORY_DIFF_SAMPLE_LIMIT"), 200, minimum=1)
    DIRECTORY_FETCH_TIMEOUT_SECONDS = _parse_int(os.environ.get("DIRECTORY_FETCH_TIMEOUT_SECONDS"), 60, minimum=1)
    DIRECTORY_RUN_STALE_AFTER_SECONDS = _parse_int(
        os.environ.get("DIRECTORY_RUN_STALE_AFTER_SECONDS"), 3600, minimum=60
    )
    DIRECTORY_SCHEDULE_BATCH_LIMIT = _parse_int(
        os.environ.get("DIRECTORY_SCHEDULE_BATCH_LIMIT"), 25, minimum=1, maximum=100
    )
    DIRECTORY_SCHEDULE_CRON = os.environ.get("DIRECTORY_SCHEDULE_CRON", "*/15 * * * *")
    DIRECTORY_ONEROSTER_PAGE_SIZE = _parse_int(
        os.environ.get("DIRECTORY_ONEROSTER_PAGE_SIZE"), 100, minimum=1, maximum=1000
    )
    DIRECTORY_APPROVALS_LIST_LIMIT = _parse_int(
        os.environ.get("DIRECTORY_APPROVALS_LIST_LIMIT"), 50, minimum=1, maximum=200
    )
    DIRECTORY_TASK_TIME_LIMIT = _parse_int(os.environ.get("DIRECTORY_TASK_TIME_LIMIT"), 15 * 60, minimum=30)
    DIRECTORY_TASK_SOFT_TIME_LIMIT = _parse_int(
        os.environ.get("DIRECTORY_TASK_SOFT_TIME_LIMIT"), 12 * 60, minimum=30
    )

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for database to avoid conflicts
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "directory_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
