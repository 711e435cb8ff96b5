"""
Navio blueprint: the pipeline operation surface plus staging, history and
health endpoints.

Every pipeline mode is synchronous and bounded to one unit of work; long
loops are either driven by the caller one step at a time or handed to the
Celery worker through ``/navio/jobs``.
"""

from __future__ import annotations

from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from zone_admin.models import OperationType
from zone_admin.utils.navio import get_pipeline_service, is_navio_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import (
    DataIntegrityError,
    NavioPipelineError,
    NetworkTransient,
    PartialBatchFailure,
    UpstreamRateLimited,
    ValidationError,
)
from .pipeline.operation_log import OperationLogService, serialize_operation
from .pipeline.service import PIPELINE_MODES

navio_blueprint = Blueprint("navio", __name__, url_prefix="/navio")

JOB_TASKS = {
    "import": "navio.pipeline.run_import",
    "commit": "navio.pipeline.run_commit",
    "geo_sync": "navio.pipeline.run_geo_sync",
}


def _json_error(message: str, status: HTTPStatus, **extra):
    payload = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _pipeline_error_response(exc: NavioPipelineError):
    if isinstance(exc, PartialBatchFailure):
        return jsonify({**exc.as_dict(), "status": "paused"}), HTTPStatus.CONFLICT
    progress = exc.progress()
    if isinstance(exc, ValidationError):
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST, **progress)
    if isinstance(exc, DataIntegrityError):
        return _json_error(str(exc), HTTPStatus.CONFLICT, kind="data_integrity", **progress)
    if isinstance(exc, UpstreamRateLimited):
        response, status = _json_error(
            str(exc), HTTPStatus.TOO_MANY_REQUESTS, retry_after=exc.retry_after, **progress
        )
        if exc.retry_after:
            response.headers["Retry-After"] = str(int(exc.retry_after))
        return response, status
    if isinstance(exc, NetworkTransient):
        return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE, **progress)
    return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR, **progress)


def _ensure_enabled():
    if not is_navio_enabled(current_app):
        return _json_error("Navio pipeline is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _user_id() -> str | None:
    return request.headers.get("X-User-Id") or None


def _run(action, *, label: str):
    """Execute a service call and map pipeline errors onto JSON responses."""
    disabled = _ensure_enabled()
    if disabled:
        return disabled
    try:
        result = action(get_pipeline_service())
    except NavioPipelineError as exc:
        current_app.logger.warning(
            "Navio %s failed: %s",
            label,
            exc,
            extra={"navio_operation": label, "navio_error_type": type(exc).__name__},
        )
        return _pipeline_error_response(exc)
    return jsonify(result), HTTPStatus.OK


@navio_blueprint.get("/health")
def navio_healthcheck():
    state = current_app.extensions.get("navio", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "worker_enabled": state.get("worker_enabled", False),
                "modes": list(PIPELINE_MODES),
            }
        ),
        200,
    )


@navio_blueprint.get("/worker_health")
def navio_worker_health():
    """Ping the worker through the heartbeat task."""
    state = current_app.extensions.get("navio", {})
    enabled = state.get("enabled", False)
    worker_enabled = state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "navio_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled or not worker_enabled:
        payload["status"] = "disabled"
        if enabled:
            payload["message"] = "Worker flag disabled; start the worker or set NAVIO_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("navio.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover - broker failures
        current_app.logger.exception("Navio worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


@navio_blueprint.post("/pipeline")
def navio_pipeline():
    payload = request.get_json(silent=True) or {}
    mode = payload.get("mode")
    if not mode:
        return _json_error("mode is required.", HTTPStatus.BAD_REQUEST, modes=list(PIPELINE_MODES))
    return _run(lambda service: service.dispatch(mode, payload, user_id=_user_id()), label=str(mode))


@navio_blueprint.post("/staging/approve")
def navio_staging_approve():
    payload = request.get_json(silent=True) or {}
    return _run(
        lambda service: service.approve(
            payload.get("city_ids"), batch_id=payload.get("batch_id"), user_id=_user_id()
        ),
        label="approve",
    )


@navio_blueprint.post("/staging/reject")
def navio_staging_reject():
    payload = request.get_json(silent=True) or {}
    return _run(
        lambda service: service.reject(payload.get("city_ids"), batch_id=payload.get("batch_id"), user_id=_user_id()),
        label="reject",
    )


@navio_blueprint.post("/staging/resolve")
def navio_staging_resolve():
    payload = request.get_json(silent=True) or {}
    try:
        area_id = int(payload.get("area_id"))
    except (TypeError, ValueError):
        return _json_error("area_id must be an integer.", HTTPStatus.BAD_REQUEST)
    return _run(
        lambda service: service.resolve_mapping(
            area_id, district_name=payload.get("district_name") or "", area_name=payload.get("area_name")
        ),
        label="resolve_mapping",
    )


@navio_blueprint.post("/staging/clear")
def navio_staging_clear():
    payload = request.get_json(silent=True) or {}
    batch_id = payload.get("batch_id")
    if not batch_id:
        return _json_error("batch_id is required.", HTTPStatus.BAD_REQUEST)
    return _run(lambda service: service.clear_batch(batch_id), label="clear_batch")


@navio_blueprint.get("/batches/<batch_id>")
def navio_batch_status(batch_id: str):
    return _run(lambda service: service.batch_status(batch_id), label="batch_status")


@navio_blueprint.get("/delivery-check")
def navio_delivery_check():
    try:
        lat = float(request.args["lat"])
        lng = float(request.args["lng"])
    except (KeyError, TypeError, ValueError):
        return _json_error("lat and lng query parameters are required.", HTTPStatus.BAD_REQUEST)
    return _run(lambda service: service.check_delivery(lng=lng, lat=lat), label="delivery_check")


@navio_blueprint.get("/operations")
def navio_operations():
    disabled = _ensure_enabled()
    if disabled:
        return disabled
    operation_type = request.args.get("type") or None
    if operation_type and operation_type not in {item.value for item in OperationType}:
        return _json_error(f"Unknown operation type '{operation_type}'.", HTTPStatus.BAD_REQUEST)
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return _json_error("limit must be an integer.", HTTPStatus.BAD_REQUEST)

    entries = OperationLogService().list_recent(
        limit=limit, operation_type=operation_type, batch_id=request.args.get("batch_id") or None
    )
    return jsonify({"operations": [serialize_operation(entry) for entry in entries]}), HTTPStatus.OK


@navio_blueprint.post("/jobs/<job>")
def navio_enqueue_job(job: str):
    """Hand a full loop to the worker; returns the Celery task id."""
    disabled = _ensure_enabled()
    if disabled:
        return disabled
    task_name = JOB_TASKS.get(job)
    if task_name is None:
        return _json_error(f"Unknown job '{job}'.", HTTPStatus.NOT_FOUND, jobs=sorted(JOB_TASKS))
    if not current_app.extensions.get("navio", {}).get("worker_enabled"):
        return _json_error("Worker disabled; set NAVIO_WORKER_ENABLED=true.", HTTPStatus.SERVICE_UNAVAILABLE)

    payload = request.get_json(silent=True) or {}
    kwargs: dict = {"user_id": _user_id()}
    if job in {"import", "commit"}:
        if not payload.get("batch_id"):
            return _json_error("batch_id is required.", HTTPStatus.BAD_REQUEST)
        kwargs["batch_id"] = payload["batch_id"]
    if job == "import":
        kwargs["only_affected"] = bool(payload.get("only_affected", False))

    celery_app = get_celery_app(current_app)
    if celery_app is None or task_name not in celery_app.tasks:
        return _json_error("Worker task unavailable.", HTTPStatus.SERVICE_UNAVAILABLE)
    result = celery_app.tasks[task_name].apply_async(kwargs=kwargs)
    current_app.logger.info("Navio job enqueued", extra={"navio_job": job, "navio_task_id": result.id})
    return jsonify({"job": job, "task_id": result.id, "queue": DEFAULT_QUEUE_NAME}), HTTPStatus.ACCEPTED
