"""
Utility helpers for directory feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_directory_enabled(app=None) -> bool:
    """Return True when the directory sync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("DIRECTORY_ENABLED", False))


def get_directory_normalizers(app=None) -> Tuple[str, ...]:
    """Return the configured normalizer identifiers."""
    config = _get_config(app)
    normalizers: Iterable[str] = config.get("DIRECTORY_NORMALIZERS", ())
    return tuple(normalizers)
