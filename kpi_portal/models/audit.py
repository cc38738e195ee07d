"""
KPI Portal
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for resolution events.
"""

import json
from datetime import UTC, datetime

from kpi_portal.models import db


class AuditLog(db.Model):
    """
    Immutable audit trail for every resolution event.

    One row per action.  ``diff_json`` carries the old→new snapshot of the
    fields the action changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_department", "department_code"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    department_code = db.Column(db.String(20), nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="action_plan | drop_request | monthly_report | system_settings",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_code": self.department_code,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    department_code: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        department_code=department_code,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=str(actor or "system"),
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
