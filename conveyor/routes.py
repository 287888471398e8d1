from typing import Any
from flask import Blueprint, current_app, jsonify

main_bp = Blueprint("main", __name__)


@main_bp.route("/health")
def health_check() -> Any:
    return "OK", 200


@main_bp.route("/api/status")
def status() -> Any:
    executor = current_app.pipeline_executor
    executions = executor.get_all_executions()
    return jsonify({
        "executions": len(executions),
        "active": sum(1 for e in executions if not e.status.is_terminal),
        "pendingApprovals": len(executor.list_pending_approvals()),
        "approvalMode": executor.approval_mode.value,
    })
