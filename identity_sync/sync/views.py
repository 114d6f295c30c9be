"""
Sync blueprint endpoints: trigger, cancel, run listing, and health checks.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from config.monitoring import SyncApiMonitoring
from identity_sync.utils.permissions import require_admin_api_key
from identity_sync.utils.sync import get_sync_sources, is_sync_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import SyncRequestError, SyncRunNotFound
from .pipeline.coordinator import SyncCoordinator, SyncRequest
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import SourceDescriptor

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")


def _serialize_source(source: SourceDescriptor) -> dict:
    payload = source.readiness(current_app.config)
    payload["summary"] = source.summary
    return payload


@sync_blueprint.get("/health")
def sync_healthcheck():
    """
    Lightweight health endpoint proving the sync blueprint mounted correctly.
    """
    sync_state = current_app.extensions.get("sync", {})
    sources = sync_state.get("active_sources", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": sync_state.get("enabled", False),
                "sources": [_serialize_source(source) for source in sources],
            }
        ),
        200,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """
    Validate sync worker availability via the heartbeat task.
    """
    sync_state = current_app.extensions.get("sync", {})
    enabled = sync_state.get("enabled", False)
    worker_enabled = sync_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "sync_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"ok": False, "error": message}), status


def _ensure_sync_enabled_api():
    if not is_sync_enabled(current_app):
        return _json_error("Sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_filters():
    raw = request.args
    return RunFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("per_page") or raw.get("page_size"),
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        sources=_split_csv(raw.get("source")),
        search=raw.get("search"),
        started_from=raw.get("started_from"),
        started_to=raw.get("started_to"),
    )


def _serialize_summary(summary):
    return {
        "id": summary.id,
        "source": summary.source,
        "status": summary.status,
        "started_at": summary.started_at.isoformat() if summary.started_at else None,
        "completed_at": summary.completed_at.isoformat() if summary.completed_at else None,
        "duration_seconds": summary.duration_seconds,
        "totals": dict(summary.totals),
        "chunk": summary.chunk,
        "can_resume": summary.can_resume,
        "error_message": summary.error_message,
        "pending_conflicts": summary.pending_conflicts,
    }


def _serialize_detail(run, *, summary):
    payload = _serialize_summary(summary)
    payload.update(
        {
            "checkpoint": run.checkpoint or {},
            "metadata": summary.metadata,
            "created_at": run.created_at.isoformat() if run.created_at else None,
            "updated_at": run.updated_at.isoformat() if run.updated_at else None,
        }
    )
    return payload


def _build_request(payload) -> SyncRequest:
    config = current_app.config
    return SyncRequest.coerce(
        payload,
        allowed_sources=get_sync_sources(current_app),
        default_batch_size=config.get("SYNC_DEFAULT_BATCH_SIZE", 50),
        max_batch_size=config.get("SYNC_MAX_BATCH_SIZE", 500),
    )


def _coordinator() -> SyncCoordinator:
    state = current_app.extensions.get("sync", {})
    return SyncCoordinator(notifier=state.get("notifier"))


@sync_blueprint.post("/trigger")
@require_admin_api_key
def sync_trigger_api():
    guard = _ensure_sync_enabled_api()
    if guard is not None:
        return guard

    start = time.perf_counter()
    status_label = "success"
    try:
        sync_request = _build_request(request.get_json(silent=True) or {})
        response = _coordinator().trigger(sync_request)
        body = response.to_dict()
        http_status = HTTPStatus.OK if response.ok else HTTPStatus.INTERNAL_SERVER_ERROR
        if not response.ok:
            status_label = "failed"
        current_app.logger.info(
            "Sync trigger handled",
            extra={
                "sync_run_id": response.sync_run_id,
                "sync_status": response.status,
                "sync_has_more": response.has_more,
            },
        )
        return jsonify(body), http_status
    except SyncRequestError as exc:
        status_label = "bad_request"
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except SyncRunNotFound as exc:
        status_label = "not_found"
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except Exception:
        status_label = "error"
        current_app.logger.exception("Sync trigger failed unexpectedly.")
        return _json_error("Internal server error.", HTTPStatus.INTERNAL_SERVER_ERROR)
    finally:
        SyncApiMonitoring.record_trigger(duration_seconds=time.perf_counter() - start, status=status_label)


@sync_blueprint.post("/cancel")
@require_admin_api_key
def sync_cancel_api():
    guard = _ensure_sync_enabled_api()
    if guard is not None:
        return guard

    payload = request.get_json(silent=True) or {}
    try:
        sync_request = _build_request(payload)
        cancelled = _coordinator().cancel(run_id=sync_request.sync_run_id, sources=sync_request.sources)
    except SyncRequestError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except SyncRunNotFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify({"ok": True, "status": "cancelled", "cancelled": cancelled}), HTTPStatus.OK


@sync_blueprint.get("/runs")
@require_admin_api_key
def sync_runs_list_api():
    guard = _ensure_sync_enabled_api()
    if guard is not None:
        return guard

    start = time.perf_counter()
    status_label = "success"
    try:
        filters = _parse_filters()
        result = SyncRunService().list_runs(filters)
        return (
            jsonify(
                {
                    "items": [_serialize_summary(item) for item in result.items],
                    "total": result.total,
                    "page": result.page,
                    "page_size": result.page_size,
                    "total_pages": result.total_pages,
                }
            ),
            HTTPStatus.OK,
        )
    except ValueError as exc:
        status_label = "bad_request"
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    finally:
        SyncApiMonitoring.record_runs_list(duration_seconds=time.perf_counter() - start, status=status_label)


@sync_blueprint.get("/runs/<int:run_id>")
@require_admin_api_key
def sync_run_detail_api(run_id: int):
    guard = _ensure_sync_enabled_api()
    if guard is not None:
        return guard

    service = SyncRunService()
    try:
        run = service.get_run(run_id)
    except SyncRunNotFound as exc:
        SyncApiMonitoring.record_runs_detail(status="not_found")
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    SyncApiMonitoring.record_runs_detail(status="success")
    return jsonify(_serialize_detail(run, summary=service.summarize(run))), HTTPStatus.OK
