"""API routes for pipeline executions, approvals and live event streams."""

import logging
from typing import Any, Callable, Iterator, Optional, Tuple

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from pydantic import ValidationError

from conveyor.errors import NotFoundError
from conveyor.events import TERMINAL_EVENT_TYPES
from conveyor.sse.stream import GLOBAL_STREAM, SSEManager, format_keepalive, format_sse_message

logger = logging.getLogger(__name__)

pipelines_bp = Blueprint("pipelines", __name__, url_prefix="/api")

# Longest idle gap on an SSE stream before a keepalive comment is sent
SSE_KEEPALIVE_SECONDS = 15.0

_TERMINAL_EVENT_NAMES = frozenset(event_type.value for event_type in TERMINAL_EVENT_TYPES)


def _error_response(e: Exception, action: str) -> Any:
    """Map an exception raised by the executor to a JSON error response."""
    if isinstance(e, NotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, ValidationError):
        return jsonify({"error": f"Invalid pipeline definition: {e}"}), 400
    if isinstance(e, ValueError):
        return jsonify({"error": str(e)}), 400
    logger.error(f"{action} failed: {e}")
    return jsonify({"error": str(e)}), 500


def _json_body() -> dict:
    """Request JSON as a dict; a missing or unparsable body counts as empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' is required")
    return value


# ============================================================================
# Executions
# ============================================================================


@pipelines_bp.route("/executions", methods=["POST"])
def create_execution() -> Any:
    """
    Start a pipeline execution.

    Body:
        {
          "pipelineId": "build",
          "stages": [{"id": "s1", "command": "make", "args": ["test"]}],
          "workingDirectory": "/path/to/repo"
        }

    Returns:
        201 {"executionId": "..."}
    """
    try:
        data = _json_body()
        pipeline_id = _require_str(data, "pipelineId")
        stages = data.get("stages")
        if not isinstance(stages, list):
            raise ValueError("'stages' must be a list")

        execution_id = current_app.pipeline_executor.execute(
            pipeline_id,
            stages,
            working_directory=data.get("workingDirectory"),
        )
        return jsonify({"executionId": execution_id}), 201

    except Exception as e:
        return _error_response(e, "Create execution")


@pipelines_bp.route("/executions", methods=["GET"])
def list_executions() -> Any:
    """
    List executions.

    Query Parameters:
        status: Only return executions in this status (e.g., running)
    """
    try:
        executions = current_app.pipeline_executor.get_all_executions()
        status_filter = request.args.get("status")
        if status_filter:
            executions = [e for e in executions if e.status.value == status_filter]
        return jsonify({"executions": [e.to_dict() for e in executions]})

    except Exception as e:
        return _error_response(e, "List executions")


@pipelines_bp.route("/executions/<execution_id>", methods=["GET"])
def get_execution(execution_id: str) -> Any:
    try:
        execution = current_app.pipeline_executor.get_execution(execution_id)
        return jsonify({"execution": execution.to_dict()})

    except Exception as e:
        return _error_response(e, "Get execution")


@pipelines_bp.route("/executions/<execution_id>/history", methods=["GET"])
def get_execution_history(execution_id: str) -> Any:
    """Recorded events of one execution, oldest first."""
    try:
        events = current_app.pipeline_executor.get_event_history(execution_id)
        return jsonify({"events": [event.to_dict() for event in events]})

    except Exception as e:
        return _error_response(e, "Get execution history")


@pipelines_bp.route("/executions/<execution_id>/cancel", methods=["POST"])
def cancel_execution(execution_id: str) -> Any:
    """Cancel an execution. Cancelling a finished execution changes nothing."""
    try:
        execution = current_app.pipeline_executor.cancel_execution(execution_id)
        return jsonify({"execution": execution.to_dict()})

    except Exception as e:
        return _error_response(e, "Cancel execution")


# ============================================================================
# Approvals
# ============================================================================


@pipelines_bp.route("/approvals", methods=["GET"])
def list_approvals() -> Any:
    """
    List stage executions waiting for approval.

    Query Parameters:
        executionId: Only return approvals of this execution
    """
    try:
        pending = current_app.pipeline_executor.list_pending_approvals(request.args.get("executionId"))
        return jsonify({"approvals": [p.to_dict() for p in pending]})

    except Exception as e:
        return _error_response(e, "List approvals")


@pipelines_bp.route("/stage-executions/<stage_execution_id>/approve", methods=["POST"])
def approve_stage(stage_execution_id: str) -> Any:
    """
    Approve a waiting stage execution.

    Body:
        {"approvedBy": "alice"}
    """
    try:
        data = _json_body()
        approved_by = _require_str(data, "approvedBy")
        stage_execution = current_app.pipeline_executor.approve_stage(stage_execution_id, approved_by)
        return jsonify({"stageExecution": stage_execution.to_dict()})

    except Exception as e:
        return _error_response(e, "Approve stage")


@pipelines_bp.route("/stage-executions/<stage_execution_id>/reject", methods=["POST"])
def reject_stage(stage_execution_id: str) -> Any:
    """
    Reject a waiting stage execution.

    Body:
        {"rejectedBy": "alice", "reason": "not today"}
    """
    try:
        data = _json_body()
        rejected_by = _require_str(data, "rejectedBy")
        stage_execution = current_app.pipeline_executor.reject_stage(
            stage_execution_id,
            rejected_by,
            reason=data.get("reason"),
        )
        return jsonify({"stageExecution": stage_execution.to_dict()})

    except Exception as e:
        return _error_response(e, "Reject stage")


# ============================================================================
# Pipeline definitions
# ============================================================================


@pipelines_bp.route("/pipelines", methods=["GET"])
def list_pipelines() -> Any:
    """Returns {"presets": [...], "custom": [...]}."""
    try:
        return jsonify(current_app.pipeline_registry.list_all())

    except Exception as e:
        return _error_response(e, "List pipelines")


@pipelines_bp.route("/pipelines", methods=["POST"])
def register_pipeline() -> Any:
    """
    Register a custom pipeline definition for this server's lifetime.

    Body:
        {"name": "nightly", "stages": [{"id": "test", "command": "make", "args": ["test"]}]}

    Returns:
        201 {"pipeline": {...}, "warnings": [...]}
    """
    try:
        registry = current_app.pipeline_registry
        pipeline = registry.loader.load_from_dict(_json_body())
        registry.register_custom(pipeline)
        logger.info(f"Registered custom pipeline {pipeline.name} ({len(pipeline.stages)} stages)")
        return jsonify({
            "pipeline": pipeline.to_dict(),
            "warnings": registry.loader.validate_pipeline(pipeline),
        }), 201

    except Exception as e:
        return _error_response(e, "Register pipeline")


@pipelines_bp.route("/pipelines/<name>", methods=["GET"])
def get_pipeline(name: str) -> Any:
    """Return a pipeline definition together with its validation warnings."""
    try:
        registry = current_app.pipeline_registry
        pipeline = registry.get_pipeline(name)
        if pipeline is None:
            return jsonify({"error": f"Pipeline not found: {name}"}), 404
        return jsonify({
            "pipeline": pipeline.to_dict(),
            "warnings": registry.loader.validate_pipeline(pipeline),
        })

    except Exception as e:
        return _error_response(e, "Get pipeline")


@pipelines_bp.route("/pipelines/<name>/executions", methods=["POST"])
def run_pipeline(name: str) -> Any:
    """
    Start an execution of a preset or custom pipeline.

    Body (optional):
        {"workingDirectory": "/path/to/repo"}
    """
    try:
        pipeline = current_app.pipeline_registry.get_pipeline(name)
        if pipeline is None:
            return jsonify({"error": f"Pipeline not found: {name}"}), 404

        data = _json_body()
        execution_id = current_app.pipeline_executor.execute_config(
            pipeline,
            working_directory=data.get("workingDirectory"),
        )
        return jsonify({"executionId": execution_id}), 201

    except Exception as e:
        return _error_response(e, "Run pipeline")


# ============================================================================
# Server-Sent Events
# ============================================================================


def _event_stream(
    sse_manager: SSEManager,
    stream_key: str,
    snapshot: Optional[Callable[[], Tuple[dict, bool]]],
) -> Iterator[str]:
    """
    Yield SSE messages for one client until the followed execution completes.

    ``snapshot`` returns the execution dict and whether its background
    processing has finished. The connection is registered before the
    snapshot is taken so no event emitted in between is lost.
    """
    connection = sse_manager.connect(stream_key)
    try:
        if snapshot is not None:
            execution, finished = snapshot()
            yield format_sse_message("execution:snapshot", execution)
            # A cancelled execution may still be tearing down its stage
            if finished:
                return

        while True:
            events = connection.get_events(timeout=SSE_KEEPALIVE_SECONDS)
            if not events:
                yield format_keepalive()
                continue

            for event in events:
                yield format_sse_message(event["event"], event["data"])
                if stream_key != GLOBAL_STREAM and event["event"] in _TERMINAL_EVENT_NAMES:
                    return
    finally:
        sse_manager.disconnect(stream_key, connection.client_id)


@pipelines_bp.route("/executions/<execution_id>/events", methods=["GET"])
def stream_execution_events(execution_id: str) -> Any:
    """
    Stream events of one execution.

    The first message is an ``execution:snapshot`` with the current state;
    the stream ends after ``execution:completed``.
    """
    executor = current_app.pipeline_executor
    try:
        executor.get_execution(execution_id)
    except Exception as e:
        return _error_response(e, "Stream execution events")

    def snapshot() -> Tuple[dict, bool]:
        finished = executor.is_finished(execution_id)
        return executor.get_execution(execution_id).to_dict(), finished

    return Response(
        stream_with_context(_event_stream(current_app.sse_manager, execution_id, snapshot)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@pipelines_bp.route("/events", methods=["GET"])
def stream_all_events() -> Any:
    """Stream events of every execution until the client disconnects."""
    return Response(
        stream_with_context(_event_stream(current_app.sse_manager, GLOBAL_STREAM, None)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
