# conftest.py

import os

import pytest
from werkzeug.security import generate_password_hash

# Set testing environment BEFORE importing app so app.py picks TestingConfig
# and mounts the directory blueprint at import time.
os.environ["FLASK_ENV"] = "testing"
os.environ.setdefault("DIRECTORY_ENABLED", "true")

from app import app as flask_app  # noqa: E402
from flask_app.models import User, db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Flask application with a clean schema for every test"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "DIRECTORY_ENABLED": True,
            "DIRECTORY_WORKER_ENABLED": False,
            "CELERY_CONFIG": None,
        }
    )
    # Drop any Celery app configured by a previous test; it is rebuilt lazily.
    flask_app.extensions["directory"]["celery_app"] = None
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def user_factory(app):
    """Persist users with a directory role and tenant assignment"""

    def _factory(
        username,
        *,
        password="pass12345",
        directory_role="viewer",
        school_id=None,
        district_id=None,
        is_super_admin=False,
        is_active=True,
    ):
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=generate_password_hash(password),
            directory_role=directory_role,
            school_id=school_id,
            district_id=district_id,
            is_super_admin=is_super_admin,
            is_active=is_active,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _factory


@pytest.fixture
def admin_user(user_factory):
    return user_factory("admin", password="adminpass123", directory_role="admin")


@pytest.fixture
def login(client):
    """Log ``client`` in as ``username``; returns the response"""

    def _login(username, password="pass12345"):
        response = client.post("/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.get_json()
        return response

    return _login


def pytest_configure(config):
    """Register markers and keep the testing environment pinned"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Add unit/integration markers based on the test path"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
