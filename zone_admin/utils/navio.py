"""
Utility helpers for Navio feature flag checks and service construction.
"""

from __future__ import annotations

from flask import current_app

EXTENSION_KEY = "navio"


def _get_app(app=None):
    return app if app is not None else current_app


def is_navio_enabled(app=None) -> bool:
    """Return True when the Navio pipeline feature flag is enabled."""
    return bool(_get_app(app).config.get("NAVIO_ENABLED", False))


def is_worker_enabled(app=None) -> bool:
    return bool(_get_app(app).config.get("NAVIO_WORKER_ENABLED", False))


def get_pipeline_service(app=None, **overrides):
    """
    Build a ``NavioPipelineService`` for the current app.

    ``client`` and ``classifier`` registered on ``app.extensions['navio']``
    take precedence over the configured ones, which lets tests and one-off
    scripts plug in their own collaborators.
    """
    from zone_admin.navio.pipeline.service import NavioPipelineService

    state = _get_app(app).extensions.get(EXTENSION_KEY, {})
    kwargs = {
        "client": state.get("client"),
        "classifier": state.get("classifier"),
        "sleep": state.get("sleep"),
    }
    kwargs.update(overrides)
    return NavioPipelineService(**{key: value for key, value in kwargs.items() if value is not None})
