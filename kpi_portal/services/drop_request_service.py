"""Drop request review — management decides queued drop tickets.

A ticket is created by the workflow's approval lane. Approving it finalises
the drop (plan → Not Achieved, score 0); rejecting it returns the plan to
Open so the department has to resolve it again. Either way the plan leaves
the ``is_drop_pending`` state.

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from kpi_portal.core.exceptions import ConflictError, NotFoundError, ValidationError
from kpi_portal.models import db
from kpi_portal.models.audit import write_audit
from kpi_portal.models.drop_request import DROP_REQUEST_STATUSES, DropRequest
from kpi_portal.services.resolution_engine import LifecycleStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def list_drop_requests(status: str | None = None) -> list[dict]:
    """List drop tickets, newest first.

    Raises:
        ValidationError: unknown ``status`` filter.
    """
    stmt = select(DropRequest).order_by(DropRequest.created_at.desc(), DropRequest.id.desc())
    if status:
        if status not in DROP_REQUEST_STATUSES:
            raise ValidationError(
                f"Unknown drop request status {status!r}",
                details={"status": f"must be one of {', '.join(sorted(DROP_REQUEST_STATUSES))}"},
            )
        stmt = stmt.where(DropRequest.status == status)
    return [r.to_dict() for r in db.session.execute(stmt).unique().scalars().all()]


def approve_drop_request(ticket_id: int, actor: str = "system") -> dict:
    """Approve a pending ticket and finalise the drop of its action plan.

    Raises:
        NotFoundError: ticket does not exist.
        ConflictError: ticket was already decided.
    """
    ticket = _require_pending(ticket_id)
    plan = ticket.action_plan

    ticket.status = "approved"
    ticket.decided_by = actor
    ticket.decided_at = _utcnow()

    old_status = plan.status
    plan.status = LifecycleStatus.NOT_ACHIEVED.value
    plan.quality_score = 0
    plan.resolution_type = "dropped"
    plan.is_drop_pending = False

    write_audit(
        entity_type="drop_request",
        entity_id=str(ticket.id),
        action="drop_request.approve",
        actor=actor,
        department_code=plan.department_code,
        diff={
            "status": {"old": "pending", "new": "approved"},
            "action_plan_status": {"old": old_status, "new": plan.status},
        },
    )
    db.session.commit()
    logger.info("Drop request approved", extra={"ticket_id": ticket.id, "work_item_id": plan.id, "actor": actor})
    return ticket.to_dict()


def reject_drop_request(ticket_id: int, actor: str = "system", rejection_reason: str | None = None) -> dict:
    """Reject a pending ticket; the action plan goes back to Open.

    Raises:
        NotFoundError: ticket does not exist.
        ConflictError: ticket was already decided.
    """
    ticket = _require_pending(ticket_id)
    plan = ticket.action_plan

    ticket.status = "rejected"
    ticket.decided_by = actor
    ticket.decided_at = _utcnow()
    ticket.rejection_reason = (rejection_reason or "").strip() or None

    old_status = plan.status
    plan.status = LifecycleStatus.OPEN.value
    plan.resolution_type = None
    plan.is_drop_pending = False

    write_audit(
        entity_type="drop_request",
        entity_id=str(ticket.id),
        action="drop_request.reject",
        actor=actor,
        department_code=plan.department_code,
        diff={
            "status": {"old": "pending", "new": "rejected"},
            "action_plan_status": {"old": old_status, "new": plan.status},
            "rejection_reason": {"old": None, "new": ticket.rejection_reason},
        },
    )
    db.session.commit()
    logger.info("Drop request rejected", extra={"ticket_id": ticket.id, "work_item_id": plan.id, "actor": actor})
    return ticket.to_dict()


# ── Private helpers ───────────────────────────────────────────────────────────


def _require_pending(ticket_id: int) -> DropRequest:
    ticket = db.session.get(DropRequest, ticket_id)
    if ticket is None:
        raise NotFoundError(resource="DropRequest", resource_id=ticket_id)
    if ticket.status != "pending":
        raise ConflictError("DropRequest", f"ticket id={ticket_id} is already {ticket.status}")
    return ticket
