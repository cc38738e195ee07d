"""
KPI Portal
Monthly report model — submission and lock state of a department period.
"""

from datetime import datetime, timezone

from kpi_portal.models import db


class MonthlyReport(db.Model):
    """
    One row per (department_code, month, year) once a report is submitted.

    A locked report no longer accepts resolution changes; downstream grading
    reads ``submitted_at`` to start its own cycle.
    """

    __tablename__ = "monthly_reports"

    id = db.Column(db.Integer, primary_key=True)
    department_code = db.Column(db.String(20), nullable=False)
    month = db.Column(db.String(3), nullable=False)
    year = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(20), nullable=False, default="submitted")
    is_locked = db.Column(db.Boolean, nullable=False, default=True)
    submitted_by = db.Column(db.String(150), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("department_code", "month", "year", name="uq_monthly_report_scope"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_code": self.department_code,
            "month": self.month,
            "year": self.year,
            "status": self.status,
            "is_locked": self.is_locked,
            "submitted_by": self.submitted_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }

    def __repr__(self):
        return f"<MonthlyReport {self.department_code} {self.month}/{self.year} {self.status}>"
