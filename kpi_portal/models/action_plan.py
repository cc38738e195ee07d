"""
KPI Portal
Action plan domain model.

Models:
    - ActionPlan: one unit of tracked departmental work for a month/year
      period. The monthly resolution workflow reads these as work items and
      writes their terminal disposition back.

Column values mirror what the dashboard stores (``status`` strings such as
"On Progress", carry-over states ``Normal`` / ``Late_Month_1`` /
``Late_Month_2``), so the enums in ``services.resolution_engine`` parse them
instead of redefining them.
"""

from datetime import datetime, timezone

from kpi_portal.models import db

# ── Constants ────────────────────────────────────────────────────────────────

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

UNRESOLVED_STATUSES = ("Open", "On Progress", "Blocked")


def next_period(month: str, year: int) -> tuple[str, int]:
    """Return the (month, year) that follows the given period; Dec rolls into Jan."""
    idx = MONTHS.index(month)
    if idx == len(MONTHS) - 1:
        return MONTHS[0], year + 1
    return MONTHS[idx + 1], year


class ActionPlan(db.Model):
    """
    Departmental action plan for one reporting period.

    Business rules:
    - ``carry_over_status`` only moves forward (Normal → Late_Month_1 →
      Late_Month_2). A carry-over creates a new row in the next period;
      the source row is closed as "Not Achieved".
    - ``is_drop_pending`` marks rows waiting for management approval of a
      drop request; they are excluded from the resolution workflow.
    - Soft-deleted rows (``deleted_at`` set) are invisible to the workflow.
    """

    __tablename__ = "action_plans"

    id = db.Column(db.Integer, primary_key=True)

    # Scope
    department_code = db.Column(db.String(20), nullable=False, index=True)
    month = db.Column(db.String(3), nullable=False, comment="Jan | Feb | ... | Dec")
    year = db.Column(db.Integer, nullable=False)

    # Display
    action_plan = db.Column(db.Text, nullable=False, default="")
    goal_strategy = db.Column(db.Text, nullable=True)
    indicator = db.Column(db.Text, nullable=True)
    pic = db.Column(db.String(150), nullable=True, comment="Person in charge")
    category = db.Column(
        db.String(100), nullable=True,
        comment="Free text, leading token is the priority code: UH | H | M | L",
    )

    # Lifecycle
    status = db.Column(db.String(30), nullable=False, default="Open")
    carry_over_status = db.Column(
        db.String(20), nullable=False, default="Normal",
        comment="Normal | Late_Month_1 | Late_Month_2",
    )
    max_possible_score = db.Column(db.Integer, nullable=False, default=100)
    quality_score = db.Column(db.Integer, nullable=True)
    resolution_type = db.Column(db.String(20), nullable=True, comment="carried_over | dropped")
    carried_from_id = db.Column(
        db.Integer,
        db.ForeignKey("action_plans.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Drop approval
    is_drop_pending = db.Column(db.Boolean, nullable=False, default=False)
    drop_reason = db.Column(db.Text, nullable=True)

    submission_status = db.Column(db.String(20), nullable=False, default="draft")

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_action_plans_scope", "department_code", "year", "month"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_code": self.department_code,
            "month": self.month,
            "year": self.year,
            "action_plan": self.action_plan,
            "goal_strategy": self.goal_strategy,
            "indicator": self.indicator,
            "pic": self.pic,
            "category": self.category,
            "status": self.status,
            "carry_over_status": self.carry_over_status,
            "max_possible_score": self.max_possible_score,
            "quality_score": self.quality_score,
            "resolution_type": self.resolution_type,
            "carried_from_id": self.carried_from_id,
            "is_drop_pending": self.is_drop_pending,
            "drop_reason": self.drop_reason,
            "submission_status": self.submission_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ActionPlan {self.id} {self.department_code} {self.month}/{self.year} {self.status}>"
