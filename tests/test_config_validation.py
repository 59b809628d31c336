"""Production environment validation"""

import pytest

from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "a-real-secret",
    "DATABASE_URL": "postgresql://directory@db/directory",
}


@pytest.fixture
def production_env(monkeypatch):
    for key in ("DIRECTORY_WORKER_ENABLED", "CELERY_BROKER_URL", "CELERY_CONFIG", "DIRECTORY_SCHEDULE_CRON"):
        monkeypatch.delenv(key, raising=False)
    for key, value in PRODUCTION_ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


class TestValidateEnvironment:
    def test_non_production_skips_checks(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)

        assert validate_environment("development") == (True, [])

    def test_valid_production_environment(self, production_env):
        assert validate_environment("production") == (True, [])

    def test_default_secret_key_is_rejected(self, production_env):
        production_env.setenv("SECRET_KEY", "your-secret-key")

        is_valid, errors = validate_environment("production")

        assert not is_valid
        assert any("SECRET_KEY" in error for error in errors)

    def test_worker_requires_broker_url(self, production_env):
        production_env.setenv("DIRECTORY_WORKER_ENABLED", "true")

        is_valid, errors = validate_environment("production")

        assert not is_valid
        assert errors == ["CELERY_BROKER_URL is required when DIRECTORY_WORKER_ENABLED=true"]

    def test_celery_config_and_cron_are_checked(self, production_env):
        production_env.setenv("CELERY_CONFIG", "{not json")
        production_env.setenv("DIRECTORY_SCHEDULE_CRON", "every tuesday")

        _, errors = validate_environment("production")

        assert len(errors) == 2
        assert errors[0].startswith("CELERY_CONFIG")
        assert errors[1].startswith("DIRECTORY_SCHEDULE_CRON")

    def test_validate_and_exit_stops_on_errors(self, production_env, capsys):
        production_env.delenv("DATABASE_URL")

        with pytest.raises(SystemExit) as excinfo:
            validate_and_exit("production")

        assert excinfo.value.code == 1
        assert "DATABASE_URL" in capsys.readouterr().err
