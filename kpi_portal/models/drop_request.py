"""
KPI Portal
Drop request model — approval tickets for policy-gated drops.

A ticket is created when a department drops an action plan whose priority
category requires management approval. The plan stays flagged
``is_drop_pending`` until the ticket is approved or rejected.
"""

from datetime import datetime, timezone

from kpi_portal.models import db

DROP_REQUEST_STATUSES = frozenset({"pending", "approved", "rejected"})


class DropRequest(db.Model):
    """
    Approval ticket for dropping one action plan.

    Business rules:
    - At most one ``pending`` ticket per action plan; a repeated request
      returns the existing ticket.
    - ``reason`` is the justification recorded by the requester and is
      never edited after creation.
    - Only pending tickets can be approved or rejected.
    """

    __tablename__ = "drop_requests"

    id = db.Column(db.Integer, primary_key=True)
    action_plan_id = db.Column(
        db.Integer,
        db.ForeignKey("action_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)

    requested_by = db.Column(db.String(150), nullable=False, default="system")
    decided_by = db.Column(db.String(150), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    action_plan = db.relationship("ActionPlan", lazy="joined")

    def to_dict(self) -> dict:
        plan = self.action_plan
        return {
            "id": self.id,
            "action_plan_id": self.action_plan_id,
            "action_plan_title": plan.action_plan if plan else None,
            "department_code": plan.department_code if plan else None,
            "month": plan.month if plan else None,
            "year": plan.year if plan else None,
            "reason": self.reason,
            "status": self.status,
            "requested_by": self.requested_by,
            "decided_by": self.decided_by,
            "rejection_reason": self.rejection_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<DropRequest {self.id} plan={self.action_plan_id} {self.status}>"
