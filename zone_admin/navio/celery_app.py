"""
Celery configuration for the Navio background worker.

Long-running loops (full import, full commit, geo sync) can be handed to a
worker instead of being driven from a request. Defaults to the SQLite
transport under the instance folder so no Redis is needed locally.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "navio"
DEFAULT_SQLITE_FILENAME = "navio_celery.sqlite"
EXTENSION_KEY = "navio"


def _sqlite_path(app: Flask) -> Path:
    """SQLite file shared by the broker and result backend.

    Relative ``CELERY_SQLITE_PATH`` values resolve against the instance folder.
    """
    path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _connection_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker_url and result_backend):
        sqlite_file = _sqlite_path(app).as_posix()
        broker_url = broker_url or f"sqla+sqlite:///{sqlite_file}"
        result_backend = result_backend or f"db+sqlite:///{sqlite_file}"
    return broker_url, result_backend


def _extra_conf(app: Flask) -> Mapping[str, Any]:
    """``CELERY_CONFIG`` as a mapping; accepts a dict or a JSON string."""
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
        return {}
    if not isinstance(parsed, dict):
        app.logger.warning("CELERY_CONFIG must be a JSON object; ignoring value.")
        return {}
    return parsed


def create_celery_app(app: Flask) -> Celery:
    broker_url, result_backend = _connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("zone_admin.navio.tasks",),
    )

    # One worker process, one task at a time: batches are strictly sequential.
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("NAVIO_TASK_TIME_LIMIT", 60 * 60),
        task_soft_time_limit=app.config.get("NAVIO_TASK_SOFT_TIME_LIMIT", 55 * 60),
        worker_hijack_root_logger=False,
    )
    extra_conf = _extra_conf(app)
    if extra_conf:
        celery_app.conf.update(extra_conf)

    app.logger.info(
        "Navio Celery app created",
        extra={
            "navio_celery_broker_url": broker_url,
            "navio_celery_result_backend": result_backend,
            "navio_celery_overrides": sorted(extra_conf),
        },
    )
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance from the navio extension state, created on demand when enabled."""
    state: dict[str, Any] | None = app.extensions.get(EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
