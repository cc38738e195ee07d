"""Monthly Resolution workflow blueprint.

Routes:
  POST   /resolution/workflows                               – open a workflow for a scope
  GET    /resolution/workflows/<wid>                         – workflow snapshot
  PUT    /resolution/workflows/<wid>/decisions/<item_id>     – queue a decision
  DELETE /resolution/workflows/<wid>/decisions/<item_id>     – back to undecided
  POST   /resolution/workflows/<wid>/commit                  – execute the decisions
  POST   /resolution/workflows/<wid>/confirm                 – final report submission
  POST   /resolution/workflows/<wid>/cancel                  – discard everything
  GET    /resolution/policy                                  – carry-over / drop-approval settings
  PUT    /resolution/policy                                  – update settings

Workflows live in the in-process registry; closed workflows are evicted and
their final snapshot is returned by the call that closed them.
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from kpi_portal.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    SubmissionError,
    ValidationError,
)
from kpi_portal.services import resolution_policy
from kpi_portal.services.commit_orchestrator import CommitOutcome
from kpi_portal.services.resolution_engine import MIN_REASON_LENGTH, ResolutionAction
from kpi_portal.services.resolution_gateway import ReportScope, SqlActionPlanGateway
from kpi_portal.services.resolution_workflow import (
    ResolutionWorkflow,
    WorkflowMode,
    WorkflowState,
    get_registry,
)
from kpi_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

resolution_bp = Blueprint("resolution", __name__, url_prefix="/api/v1/resolution")

_COMMIT_STATUS = {
    CommitOutcome.COMMITTED: 200,
    CommitOutcome.PARTIAL: 207,
    CommitOutcome.BATCH_FAILED: 502,
    CommitOutcome.APPROVALS_FAILED: 502,
}


# ── helpers ──────────────────────────────────────────────────────────────

def _current_user(data: dict | None = None) -> str:
    """Best-effort current user extraction (no auth enforcement)."""
    return (
        (data or {}).get("actor_id")
        or request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )


def _workflow(workflow_id: str) -> ResolutionWorkflow:
    return get_registry(current_app).get(workflow_id)


def _evict_if_closed(workflow: ResolutionWorkflow) -> None:
    if workflow.state is WorkflowState.CLOSED:
        get_registry(current_app).discard(workflow.id)


# ── Error handlers ───────────────────────────────────────────────────────

@resolution_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@resolution_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@resolution_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error))


@resolution_bp.errorhandler(SubmissionError)
def _handle_submission(error: SubmissionError):
    return api_error(E.SUBMISSION, str(error), details={"scope": error.scope, "retryable": True})


@resolution_bp.errorhandler(GatewayError)
def _handle_gateway(error: GatewayError):
    return api_error(E.GATEWAY, str(error), details={"work_item_ids": error.work_item_ids})


@resolution_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in resolution_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Workflow lifecycle
# ═════════════════════════════════════════════════════════════════════════

@resolution_bp.route("/workflows", methods=["POST"])
def open_workflow():
    """Open a resolution workflow.

    Body: { department_code, month, year, mode?: "standalone"|"submit_flow", actor_id? }
    Returns: workflow snapshot (201).
    """
    data = request.get_json(silent=True) or {}
    scope = ReportScope.build(data.get("department_code"), data.get("month"), data.get("year"))

    mode = data.get("mode") or WorkflowMode.STANDALONE.value
    if mode not in {m.value for m in WorkflowMode}:
        return api_error(E.VALIDATION_INVALID, "mode must be 'standalone' or 'submit_flow'")

    workflow = ResolutionWorkflow(
        scope,
        SqlActionPlanGateway(),
        mode=mode,
        actor_id=_current_user(data),
        max_workers=current_app.config.get("RESOLUTION_COMMIT_MAX_WORKERS", 8),
    ).open()
    get_registry(current_app).add(workflow)
    logger.info("Workflow registered", extra={**scope.to_dict(), "workflow_id": workflow.id})
    return jsonify(workflow.to_dict()), 201


@resolution_bp.route("/workflows/<workflow_id>", methods=["GET"])
def get_workflow(workflow_id):
    return jsonify(_workflow(workflow_id).to_dict())


@resolution_bp.route("/workflows/<workflow_id>/decisions/<int:item_id>", methods=["PUT"])
def put_decision(workflow_id, item_id):
    """Queue a decision for one work item.

    Body: { action: "carry_over"|"drop"|"request_drop", reason? }

    ``drop`` on an approval-gated item queues nothing unless ``reason`` is
    given; the response carries ``requires_reason: true`` so the caller can
    prompt for a justification.
    """
    workflow = _workflow(workflow_id)
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    reason = data.get("reason")
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    requires_reason = False
    if action == ResolutionAction.DROP.value:
        selection = workflow.select_drop(item_id)
        requires_reason = selection.requires_reason
        decision = selection.decision
        if requires_reason and reason is not None:
            decision = workflow.queue_drop_request(item_id, reason)
            requires_reason = False
    elif action == ResolutionAction.REQUEST_DROP.value and reason is not None:
        decision = workflow.queue_drop_request(item_id, reason)
    else:
        decision = workflow.set_decision(item_id, action)

    return jsonify({
        "work_item_id": item_id,
        "requires_reason": requires_reason,
        "decision": decision.to_dict() if decision else None,
        "workflow": workflow.to_dict(),
    })


@resolution_bp.route("/workflows/<workflow_id>/decisions/<int:item_id>", methods=["DELETE"])
def delete_decision(workflow_id, item_id):
    workflow = _workflow(workflow_id)
    workflow.cancel_decision(item_id)
    return jsonify(workflow.to_dict())


@resolution_bp.route("/workflows/<workflow_id>/commit", methods=["POST"])
def commit_workflow(workflow_id):
    """Execute the queued decisions.

    Returns 200 (committed), 207 (partial), 502 (batch_failed /
    approvals_failed); 422 when not every item is decided and 409 when a
    commit is already running.
    """
    workflow = _workflow(workflow_id)
    result = workflow.commit()
    body = {"result": result.to_dict(), "workflow": workflow.to_dict()}
    _evict_if_closed(workflow)
    return jsonify(body), _COMMIT_STATUS[result.outcome]


@resolution_bp.route("/workflows/<workflow_id>/confirm", methods=["POST"])
def confirm_workflow(workflow_id):
    """Lock and submit the monthly report (submit_flow workflows only)."""
    workflow = _workflow(workflow_id)
    report = workflow.confirm_submission()
    body = {"report": report, "workflow": workflow.to_dict()}
    _evict_if_closed(workflow)
    return jsonify(body)


@resolution_bp.route("/workflows/<workflow_id>/cancel", methods=["POST"])
def cancel_workflow(workflow_id):
    workflow = _workflow(workflow_id)
    workflow.cancel()
    body = workflow.to_dict()
    _evict_if_closed(workflow)
    return jsonify(body)


# ═════════════════════════════════════════════════════════════════════════
# Policy administration
# ═════════════════════════════════════════════════════════════════════════

@resolution_bp.route("/policy", methods=["GET"])
def get_policy():
    settings = resolution_policy.get_policy_settings()
    settings["min_reason_length"] = MIN_REASON_LENGTH
    return jsonify(settings)


@resolution_bp.route("/policy", methods=["PUT"])
def update_policy():
    """Partial update.

    Body: { carry_over_penalty_1?, carry_over_penalty_2?,
            drop_approval_req_uh?, drop_approval_req_h?,
            drop_approval_req_m?, drop_approval_req_l? }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return api_error(E.VALIDATION_REQUIRED, "JSON body with at least one setting is required")
    return jsonify(resolution_policy.update_policy_settings(data, actor=_current_user()))
