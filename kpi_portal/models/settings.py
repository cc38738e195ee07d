"""
KPI Portal
System settings model — resolution policy storage.

Single-row table (id=1). Holds the carry-over penalty schedule and the
per-priority drop-approval flags read by the monthly resolution workflow.
"""

from datetime import datetime, timezone

from kpi_portal.models import db

SETTINGS_ROW_ID = 1


class SystemSettings(db.Model):
    """Administrator-managed resolution policy (one row, id=1)."""

    __tablename__ = "system_settings"

    id = db.Column(db.Integer, primary_key=True)

    # Carry-over schedule — max achievable score after the 1st / 2nd carry
    carry_over_penalty_1 = db.Column(db.Integer, nullable=False, default=80)
    carry_over_penalty_2 = db.Column(db.Integer, nullable=False, default=50)

    # Drop approval required, per priority code
    drop_approval_req_uh = db.Column(db.Boolean, nullable=False, default=False)
    drop_approval_req_h = db.Column(db.Boolean, nullable=False, default=False)
    drop_approval_req_m = db.Column(db.Boolean, nullable=False, default=False)
    drop_approval_req_l = db.Column(db.Boolean, nullable=False, default=False)

    updated_by = db.Column(db.String(150), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "carry_over_penalty_1": self.carry_over_penalty_1,
            "carry_over_penalty_2": self.carry_over_penalty_2,
            "drop_approval_req_uh": self.drop_approval_req_uh,
            "drop_approval_req_h": self.drop_approval_req_h,
            "drop_approval_req_m": self.drop_approval_req_m,
            "drop_approval_req_l": self.drop_approval_req_l,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return (f"<SystemSettings ceilings={self.carry_over_penalty_1}/"
                f"{self.carry_over_penalty_2}>")
