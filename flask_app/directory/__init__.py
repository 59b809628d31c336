"""
Directory reconciliation feature package.

Provides conditional blueprint and CLI registration along with normalizer
registry validation while remaining lightweight when the feature is disabled.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from flask_app.utils.directory import get_directory_normalizers, is_directory_enabled

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import directory_cli, get_disabled_directory_group
from .registry import NormalizerDescriptor, get_normalizer_registry, resolve_normalizers
from .views import directory_blueprint

DIRECTORY_EXTENSION_KEY = EXTENSION_KEY

__all__ = [
    "init_directory",
    "DIRECTORY_EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        DIRECTORY_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_normalizers": (),
            "active_normalizers": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = directory_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(directory_cli)
    else:
        app.cli.add_command(get_disabled_directory_group())


def init_directory(app: Flask) -> None:
    """
    Conditionally mount the directory blueprint and CLI based on configuration.

    State lives in ``app.extensions['directory']`` for reuse by the API layer,
    the CLI and the Celery tasks.
    """
    enabled = is_directory_enabled(app)
    configured: Tuple[str, ...] = get_directory_normalizers(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_normalizers": configured,
            "worker_enabled": bool(app.config.get("DIRECTORY_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_normalizers"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Directory sync disabled via DIRECTORY_ENABLED flag; skipping registration.")
        return

    active: Iterable[NormalizerDescriptor] = resolve_normalizers(configured, get_normalizer_registry())
    state["active_normalizers"] = tuple(active)
    ensure_celery_app(app, state)

    if directory_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(directory_blueprint)
    elif directory_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Directory blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    names = ", ".join(descriptor.name for descriptor in state["active_normalizers"]) or "none"
    app.logger.info("Directory sync enabled with normalizers: %s", names)
