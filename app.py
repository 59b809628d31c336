# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify
from flask_login import LoginManager
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
from flask_app.directory import init_directory  # noqa: E402
from flask_app.models import User, db  # noqa: E402
from flask_app.routes import init_routes  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

app = Flask(__name__)

flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

for config_object in CONFIG_BY_ENV.get(flask_env, CONFIG_BY_ENV["development"]):
    app.config.from_object(config_object)

db.init_app(app)
login_manager = LoginManager()
login_manager.init_app(app)
app.extensions["login_manager"] = login_manager

setup_logging(app)


def _sqlite_pragma_hook(*, enable_foreign_keys: bool):
    """Build a connect listener so concurrent runs and the worker share the file safely."""
    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if enable_foreign_keys else ())

    def _apply_pragmas(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        try:
            cursor = dbapi_connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _apply_pragmas


with app.app_context():
    engine = db.engine
    if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_directory_pragmas", False):
        event.listen(engine, "connect", _sqlite_pragma_hook(enable_foreign_keys=not app.config.get("TESTING")))
        engine._directory_pragmas = True  # type: ignore[attr-defined]
    # Tests build their own schema per test
    if not app.config.get("TESTING", False):
        db.create_all()


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (ValueError, TypeError):
        return None
    except Exception as e:
        current_app.logger.error(f"Error loading user {user_id}: {str(e)}")
        return None


def _json_failure(message, reason, status):
    return jsonify({"error": message, "reason": reason}), status


@login_manager.unauthorized_handler
def unauthorized():
    return _json_failure("Authentication required.", "unauthenticated", 401)


init_routes(app)
init_directory(app)


@app.errorhandler(404)
def not_found_error(error):
    return _json_failure("Not found.", "not_found", 404)


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return _json_failure("Internal error.", "internal_error", 500)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
