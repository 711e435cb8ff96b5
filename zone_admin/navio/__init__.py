"""
Navio delivery-zone pipeline.

Mounts the blueprint, CLI group and (optionally) the Celery worker based on
``NAVIO_ENABLED`` / ``NAVIO_WORKER_ENABLED``.
"""

from __future__ import annotations

from flask import Flask

from zone_admin.utils.navio import EXTENSION_KEY as NAVIO_EXTENSION_KEY
from zone_admin.utils.navio import is_navio_enabled, is_worker_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_navio_group, navio_cli
from .views import navio_blueprint

__all__ = ["init_navio", "NAVIO_EXTENSION_KEY", "get_celery_app"]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        NAVIO_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
            "client": None,
            "classifier": None,
            "sleep": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    command_name = navio_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(navio_cli)
    else:
        app.cli.add_command(get_disabled_navio_group())


def init_navio(app: Flask) -> None:
    """
    Register the Navio blueprint and CLI when the feature flag is on.

    State lives in ``app.extensions['navio']``; ``client``, ``classifier`` and
    ``sleep`` entries there replace the configured collaborators.
    """
    enabled = is_navio_enabled(app)
    worker_enabled = is_worker_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": worker_enabled})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Navio pipeline disabled via NAVIO_ENABLED flag; skipping registration.")
        return

    if worker_enabled:
        ensure_celery_app(app, state)

    if navio_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(navio_blueprint)
    elif navio_blueprint.name not in app.blueprints:
        app.logger.warning("Navio blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    app.logger.info(
        "Navio pipeline enabled",
        extra={"navio_worker_enabled": worker_enabled, "navio_api_url": app.config.get("NAVIO_API_URL")},
    )
