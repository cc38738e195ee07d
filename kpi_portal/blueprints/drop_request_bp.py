"""Drop request review blueprint.

Routes:
  GET    /drop-requests                 – list tickets (?status=pending|approved|rejected)
  POST   /drop-requests/<id>/approve    – approve; plan → Not Achieved, score 0
  POST   /drop-requests/<id>/reject     – reject; plan → Open
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import kpi_portal.services.drop_request_service as drs
from kpi_portal.core.exceptions import ConflictError, NotFoundError, ValidationError
from kpi_portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

drop_request_bp = Blueprint("drop_requests", __name__, url_prefix="/api/v1")


def _current_user() -> str:
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )


# ── Error handlers ───────────────────────────────────────────────────────

@drop_request_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@drop_request_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@drop_request_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error))


@drop_request_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in drop_request_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Routes ───────────────────────────────────────────────────────────────

@drop_request_bp.route("/drop-requests", methods=["GET"])
def list_drop_requests():
    return jsonify(drs.list_drop_requests(request.args.get("status")))


@drop_request_bp.route("/drop-requests/<int:ticket_id>/approve", methods=["POST"])
def approve_drop_request(ticket_id):
    return jsonify(drs.approve_drop_request(ticket_id, actor=_current_user()))


@drop_request_bp.route("/drop-requests/<int:ticket_id>/reject", methods=["POST"])
def reject_drop_request(ticket_id):
    """Body: { rejection_reason? }"""
    data = request.get_json(silent=True) or {}
    return jsonify(drs.reject_drop_request(
        ticket_id,
        actor=_current_user(),
        rejection_reason=data.get("rejection_reason"),
    ))
