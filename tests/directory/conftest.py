from __future__ import annotations

import pytest

from flask_app.directory import get_celery_app
from flask_app.models import DirectoryContact, DirectorySource, build_scope_key, db

from directory_helpers import DISTRICT_ID, SCHOOL_ID, FrozenClock


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def source_factory(app):
    def _factory(
        *,
        rows=None,
        name="Roster feed",
        school_id=SCHOOL_ID,
        district_id=DISTRICT_ID,
        source_type="inline",
        config=None,
        is_enabled=True,
        schedule_cron=None,
        schedule_timezone=None,
        deactivate_missing_default=False,
        last_run_at=None,
    ) -> DirectorySource:
        if config is None:
            config = {"rows": list(rows or [])}
        source = DirectorySource(
            name=name,
            school_id=school_id,
            district_id=district_id,
            source_type=source_type,
            config_json=config,
            is_enabled=is_enabled,
            schedule_cron=schedule_cron,
            schedule_timezone=schedule_timezone,
            deactivate_missing_default=deactivate_missing_default,
            last_run_at=last_run_at,
        )
        db.session.add(source)
        db.session.commit()
        return source

    return _factory


@pytest.fixture
def contact_factory(app):
    def _factory(
        external_id,
        email=None,
        *,
        school_id=SCHOOL_ID,
        district_id=DISTRICT_ID,
        first_name="Ada",
        last_name="Lovelace",
        contact_type="parent_guardian",
        is_active=True,
    ) -> DirectoryContact:
        contact = DirectoryContact(
            scope_key=build_scope_key(school_id, district_id),
            school_id=school_id,
            district_id=district_id,
            external_id=external_id,
            email=email or f"{external_id}@example.org",
            first_name=first_name,
            last_name=last_name,
            contact_type=contact_type,
            is_active=is_active,
        )
        db.session.add(contact)
        db.session.commit()
        return contact

    return _factory


@pytest.fixture
def eager_worker(app):
    """Enable the worker with Celery running tasks inline."""
    app.config.update(
        {
            "DIRECTORY_WORKER_ENABLED": True,
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        }
    )
    app.extensions["directory"]["worker_enabled"] = True
    app.extensions["directory"]["celery_app"] = None
    celery_app = get_celery_app(app)
    yield celery_app
    app.extensions["directory"]["worker_enabled"] = False
    app.extensions["directory"]["celery_app"] = None
