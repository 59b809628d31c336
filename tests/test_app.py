import json
import logging

from flask import Flask
from flask_login import LoginManager

from app import load_user
from flask_app.models import User, db
from flask_app.utils.logging_config import setup_logging


class TestAppWiring:
    """Application factory wiring"""

    def test_app_uses_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite:///:memory:"

    def test_database_is_bound(self, app):
        assert db.engine is not None

    def test_login_manager_is_registered(self, app):
        assert isinstance(app.extensions.get("login_manager"), LoginManager)

    def test_user_loader_returns_user(self, app, user_factory):
        user = user_factory("loader")
        assert load_user(str(user.id)).id == user.id
        assert load_user("not-a-number") is None
        assert load_user("999") is None

    def test_directory_blueprint_and_cli_mounted(self, app):
        assert "directory" in app.blueprints
        assert "directory" in app.cli.commands

    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/nonexistent-route")

        assert response.status_code == 404
        assert response.get_json()["reason"] == "not_found"


class TestSessionLogin:
    def test_login_requires_credentials(self, client):
        response = client.post("/login", json={"username": "admin"})

        assert response.status_code == 400
        assert response.get_json()["reason"] == "invalid_request"

    def test_login_rejects_bad_password(self, client, admin_user):
        response = client.post("/login", json={"username": "admin", "password": "wrong"})

        assert response.status_code == 401

    def test_inactive_user_cannot_log_in(self, client, user_factory):
        user_factory("dormant", is_active=False)

        response = client.post("/login", data={"username": "dormant", "password": "pass12345"})

        assert response.status_code == 401

    def test_login_reports_role_and_scope(self, client, user_factory):
        user_factory("principal", directory_role="school_admin", school_id="sch-1", district_id="dist-1")

        response = client.post("/login", data={"username": "principal", "password": "pass12345"})

        assert response.status_code == 200
        payload = response.get_json()
        assert payload["directory_role"] == "school_admin"
        assert payload["school_id"] == "sch-1"
        assert User.find_by_username("principal").last_login is not None

    def test_logout_requires_session(self, client, login, admin_user):
        assert client.post("/logout").status_code == 401

        login("admin", password="adminpass123")
        assert client.post("/logout").get_json() == {"ok": True}


class TestLoggingSetup:
    def _app(self, **config):
        app = Flask("logging-test")
        app.config.update(config)
        return app

    def test_console_handler_uses_text_format_by_default(self):
        app = self._app(ENABLE_CONSOLE_LOGGING=True, LOG_LEVEL="debug")

        logger = setup_logging(app)

        assert logger.level == logging.DEBUG
        (handler,) = logger.handlers
        assert isinstance(handler, logging.StreamHandler)
        assert "%(levelname)s" in handler.formatter._fmt

    def test_json_format_writes_extra_fields(self, tmp_path):
        app = self._app(
            ENABLE_CONSOLE_LOGGING=False,
            ENABLE_FILE_LOGGING=True,
            LOG_DIR=str(tmp_path),
            LOG_FORMAT="json",
        )

        logger = setup_logging(app)
        logger.info("Directory run queued", extra={"directory_run_id": 7})
        for handler in logger.handlers:
            handler.flush()

        lines = (tmp_path / "directory.log").read_text().splitlines()
        record = json.loads(lines[-1])
        assert record["message"] == "Directory run queued"
        assert record["level"] == "INFO"
        assert record["directory_run_id"] == 7

    def test_setup_is_idempotent(self):
        app = self._app(ENABLE_CONSOLE_LOGGING=True)

        setup_logging(app)
        setup_logging(app)

        assert len(app.logger.handlers) == 1


class TestMetricsEndpoint:
    def test_metrics_hidden_when_monitoring_disabled(self, client):
        assert client.get("/metrics").status_code == 404

    def test_metrics_exposes_directory_counters(self, app, client, monkeypatch):
        monkeypatch.setitem(app.config, "MONITORING_ENABLED", True)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert b"directory_sync_runs_total" in response.data
        assert b"directory_api_requests_total" in response.data
