"""API routes for submitting, inspecting and controlling runs."""

import logging
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from gantry.errors import (
    ApprovalRejected,
    ConfigurationError,
    ConflictError,
    GateNotFound,
    NotFoundError,
    ParameterError,
    UnrecognizedStrategy,
)
from gantry.pipeline.schema import RunStatus, exit_code_for
from gantry.sse import TERMINAL_EVENTS, format_keepalive, format_sse_message

logger = logging.getLogger(__name__)

runs_bp = Blueprint("runs", __name__, url_prefix="/api/runs")
health_bp = Blueprint("health", __name__)

KEEPALIVE_SECONDS = 15.0


def _service():
    return current_app.run_service


def error_response(error: Exception) -> Any:
    """Translate a gantry error into a JSON error response."""
    body = {"error": str(error), "type": type(error).__name__}
    if isinstance(error, ParameterError):
        body["parameter"] = error.parameter
        return jsonify(body), 422
    if isinstance(error, UnrecognizedStrategy):
        return jsonify(body), 422
    if isinstance(error, (GateNotFound, NotFoundError)):
        return jsonify(body), 404
    if isinstance(error, ApprovalRejected):
        return jsonify(body), 403
    if isinstance(error, ConflictError):
        return jsonify(body), 409
    if isinstance(error, ConfigurationError):
        return jsonify(body), 400
    logger.error(f"Unhandled API error: {error}", exc_info=True)
    return jsonify(body), 500


@runs_bp.route("", methods=["POST"])
def submit_run() -> Any:
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"error": "Request body must be JSON"}), 400
    try:
        snapshot = _service().submit(payload)
    except Exception as e:
        return error_response(e)
    return jsonify(snapshot), 202


@runs_bp.route("", methods=["GET"])
def list_runs() -> Any:
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    return jsonify({"runs": _service().list(limit)})


@runs_bp.route("/<run_id>", methods=["GET"])
def get_run(run_id: str) -> Any:
    snapshot = _service().get(run_id)
    if snapshot is None:
        return jsonify({"error": f"Unknown run {run_id}"}), 404
    return jsonify(snapshot)


@runs_bp.route("/<run_id>/approvals", methods=["GET"])
def list_gates(run_id: str) -> Any:
    if _service().get(run_id) is None:
        return jsonify({"error": f"Unknown run {run_id}"}), 404
    return jsonify({"gates": _service().pending_gates(run_id)})


@runs_bp.route("/<run_id>/approvals", methods=["POST"])
def submit_approval(run_id: str) -> Any:
    """
    Answer an input gate.

    Body: ``{"stageName": ..., "approver": ..., "decision": "approve"|"deny",
    "suppliedParameters": {...}}``
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    try:
        gate = _service().approve(run_id, payload)
    except Exception as e:
        return error_response(e)
    return jsonify(gate)


@runs_bp.route("/<run_id>/abort", methods=["POST"])
def abort_run(run_id: str) -> Any:
    try:
        result = _service().abort(run_id)
    except Exception as e:
        return error_response(e)
    return jsonify(result), 202


@runs_bp.route("/<run_id>/events", methods=["GET"])
def stream_events(run_id: str) -> Any:
    """Server-sent events for one run. The stream ends after ``run_completed``."""
    snapshot = _service().get(run_id)
    if snapshot is None:
        return jsonify({"error": f"Unknown run {run_id}"}), 404

    if RunStatus(snapshot["status"]).is_terminal:
        def replay():
            yield format_sse_message("run_completed", {
                "status": snapshot["status"],
                "exit_code": exit_code_for(snapshot["status"], snapshot.get("cause")),
            })
        return Response(replay(), mimetype="text/event-stream")

    sse_manager = current_app.sse_manager
    connection = sse_manager.connect(run_id, request.args.get("client_id"))

    def generate():
        try:
            while True:
                events = connection.get_events(timeout=KEEPALIVE_SECONDS)
                if not events:
                    yield format_keepalive()
                    continue
                for event in events:
                    yield format_sse_message(event["event"], event["data"])
                    if event["event"] in TERMINAL_EVENTS:
                        return
        finally:
            sse_manager.disconnect(run_id, connection.client_id)

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@health_bp.route("/health")
def health_check() -> Any:
    service = _service()
    return jsonify({
        "status": "healthy",
        "service": "gantry",
        "max_concurrent_runs": service.worker.max_concurrent_runs,
    })
