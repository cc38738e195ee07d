"""
System-of-record gateway for the monthly resolution workflow.

Implements the operations the workflow consumes and produces against the
SQLAlchemy models:

    fetch_carry_over_policy()                          → CarryOverSchedule
    fetch_drop_approval_policy()                       → DropApprovalPolicy
    list_unresolved_work_items(scope)                  → [WorkItem]
    commit_batch_resolutions(scope, decisions, actor)  → {carried_over_count, dropped_count}
    submit_drop_approval_request(item_id, reason)      → ticket id
    finalize_report_submission(scope, actor)           → MonthlyReport dict

Each write is its own transaction: it commits on success and rolls back and
raises ``GatewayError`` on failure. The commit orchestrator calls the writes
from worker threads, each inside its own app context (own session).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from kpi_portal.core.exceptions import GatewayError, ValidationError
from kpi_portal.models import db
from kpi_portal.models.action_plan import MONTHS, UNRESOLVED_STATUSES, ActionPlan, next_period
from kpi_portal.models.audit import write_audit
from kpi_portal.models.drop_request import DropRequest
from kpi_portal.models.report import MonthlyReport
from kpi_portal.services import resolution_policy
from kpi_portal.services.resolution_engine import (
    CarryOverState,
    LifecycleStatus,
    PriorityCategory,
    ResolutionAction,
    WorkItem,
    next_score_ceiling,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportScope:
    """One department's reporting period."""

    department_code: str
    month: str
    year: int

    @classmethod
    def build(cls, department_code, month, year) -> "ReportScope":
        """Normalise and validate raw input. Raises ValidationError."""
        errors = {}
        code = (department_code or "").strip().upper() if isinstance(department_code, str) else ""
        if not code:
            errors["department_code"] = "department_code is required"
        month_norm = (month or "").strip().title() if isinstance(month, str) else ""
        if month_norm not in MONTHS:
            errors["month"] = f"month must be one of {', '.join(MONTHS)}"
        if isinstance(year, bool) or not isinstance(year, int) or not 2000 <= year <= 2100:
            errors["year"] = "year must be an integer between 2000 and 2100"
        if errors:
            raise ValidationError("Invalid report scope", details=errors)
        return cls(code, month_norm, year)

    def to_dict(self) -> dict:
        return {"department_code": self.department_code, "month": self.month, "year": self.year}


def work_item_from_plan(plan: ActionPlan) -> WorkItem:
    """Snapshot an ActionPlan row into the engine's immutable WorkItem.

    Raises:
        GatewayError: the stored status or carry-over state is not recognised.
    """
    try:
        lifecycle = LifecycleStatus(plan.status)
        carry_over = CarryOverState.parse(plan.carry_over_status)
    except ValueError as exc:
        raise GatewayError(f"ActionPlan id={plan.id} has an unreadable state: {exc}",
                           work_item_ids=[plan.id]) from exc
    return WorkItem(
        id=plan.id,
        title=plan.action_plan or "Untitled Plan",
        owner=plan.pic,
        priority_category=PriorityCategory.from_category(plan.category),
        lifecycle_status=lifecycle,
        carry_over_state=carry_over,
        is_drop_pending=bool(plan.is_drop_pending),
    )


def _scope_query(scope: ReportScope):
    return select(ActionPlan).where(
        ActionPlan.department_code == scope.department_code,
        ActionPlan.month == scope.month,
        ActionPlan.year == scope.year,
        ActionPlan.deleted_at.is_(None),
    )


def _is_locked(scope: ReportScope) -> bool:
    report = db.session.execute(
        select(MonthlyReport).where(
            MonthlyReport.department_code == scope.department_code,
            MonthlyReport.month == scope.month,
            MonthlyReport.year == scope.year,
        )
    ).scalar_one_or_none()
    return bool(report and report.is_locked)


class SqlActionPlanGateway:
    """SQLAlchemy-backed implementation of the workflow's external interfaces."""

    # ── Reads ─────────────────────────────────────────────────────────────

    def fetch_carry_over_policy(self):
        return resolution_policy.fetch_carry_over_policy()

    def fetch_drop_approval_policy(self):
        return resolution_policy.fetch_drop_approval_policy()

    def list_unresolved_work_items(self, scope: ReportScope) -> list[WorkItem]:
        """Unresolved plans of the scope, excluding those already pending approval."""
        stmt = (
            _scope_query(scope)
            .where(
                ActionPlan.status.in_(UNRESOLVED_STATUSES),
                or_(ActionPlan.is_drop_pending.is_(None), ActionPlan.is_drop_pending.is_(False)),
            )
            .order_by(ActionPlan.created_at.asc(), ActionPlan.id.asc())
        )
        plans = db.session.execute(stmt).scalars().all()
        return [work_item_from_plan(p) for p in plans]

    # ── Batch lane ────────────────────────────────────────────────────────

    def commit_batch_resolutions(
        self,
        scope: ReportScope,
        decisions: list[dict],
        actor_id: str | None = None,
    ) -> dict:
        """Apply every carry-over / drop pair in a single transaction.

        Args:
            decisions: ``[{"work_item_id": int, "action": ResolutionAction}]``;
                only CARRY_OVER and DROP are accepted here.

        Returns:
            ``{"carried_over_count": int, "dropped_count": int}``

        Raises:
            GatewayError: the period is locked, an item is outside the scope or
                no longer unresolved, or the database write failed. Nothing is
                applied in that case.
        """
        actor = str(actor_id or "system")
        if not decisions:
            return {"carried_over_count": 0, "dropped_count": 0}

        try:
            if _is_locked(scope):
                raise GatewayError(
                    f"Report {scope.department_code} {scope.month}/{scope.year} is already locked",
                )

            ids = [d["work_item_id"] for d in decisions]
            plans = {
                p.id: p for p in db.session.execute(
                    _scope_query(scope).where(ActionPlan.id.in_(ids))
                ).scalars().all()
            }
            stale = [
                i for i in ids
                if i not in plans
                or plans[i].status not in UNRESOLVED_STATUSES
                or plans[i].is_drop_pending
            ]
            if stale:
                raise GatewayError(
                    f"{len(stale)} action plan(s) are not unresolved in this period",
                    work_item_ids=stale,
                )

            schedule = resolution_policy.fetch_carry_over_policy()
            next_month, next_year = next_period(scope.month, scope.year)
            carried = dropped = 0

            for decision in decisions:
                action = ResolutionAction(decision["action"])
                plan = plans[decision["work_item_id"]]
                if action is ResolutionAction.CARRY_OVER:
                    self._carry_over(plan, schedule, next_month, next_year, actor)
                    carried += 1
                elif action is ResolutionAction.DROP:
                    self._drop(plan, actor)
                    dropped += 1
                else:
                    raise GatewayError(
                        f"Action {action.value!r} cannot be applied in a batch",
                        work_item_ids=[plan.id],
                    )

            db.session.commit()
        except GatewayError:
            db.session.rollback()
            raise
        except (SQLAlchemyError, ValueError) as exc:
            db.session.rollback()
            logger.error("Batch resolution failed for %s %s/%s: %s",
                         scope.department_code, scope.month, scope.year, exc)
            raise GatewayError(f"Batch resolution failed: {exc}",
                               work_item_ids=[d["work_item_id"] for d in decisions]) from exc

        logger.info(
            "Batch resolution committed",
            extra={**scope.to_dict(), "carried_over": carried, "dropped": dropped, "actor": actor},
        )
        return {"carried_over_count": carried, "dropped_count": dropped}

    def _carry_over(self, plan: ActionPlan, schedule, next_month: str, next_year: int, actor: str) -> ActionPlan:
        item = work_item_from_plan(plan)
        # ValueError on the terminal rung aborts the whole batch
        new_state = item.carry_over_state.advance()
        ceiling = next_score_ceiling(item, schedule)

        copy = ActionPlan(
            department_code=plan.department_code,
            month=next_month,
            year=next_year,
            action_plan=plan.action_plan,
            goal_strategy=plan.goal_strategy,
            indicator=plan.indicator,
            pic=plan.pic,
            category=plan.category,
            status=LifecycleStatus.OPEN.value,
            carry_over_status=new_state.value,
            max_possible_score=ceiling,
            carried_from_id=plan.id,
        )
        db.session.add(copy)

        old_status = plan.status
        plan.status = LifecycleStatus.NOT_ACHIEVED.value
        plan.resolution_type = "carried_over"
        db.session.flush()

        write_audit(
            entity_type="action_plan",
            entity_id=str(plan.id),
            action="action_plan.carry_over",
            actor=actor,
            department_code=plan.department_code,
            diff={
                "status": {"old": old_status, "new": plan.status},
                "carried_to": {"old": None, "new": copy.id},
                "carry_over_status": {"old": item.carry_over_state.value, "new": new_state.value},
                "next_max_possible_score": {"old": plan.max_possible_score, "new": ceiling},
            },
        )
        return copy

    def _drop(self, plan: ActionPlan, actor: str) -> None:
        old_status = plan.status
        plan.status = LifecycleStatus.NOT_ACHIEVED.value
        plan.resolution_type = "dropped"
        plan.quality_score = 0
        write_audit(
            entity_type="action_plan",
            entity_id=str(plan.id),
            action="action_plan.drop",
            actor=actor,
            department_code=plan.department_code,
            diff={"status": {"old": old_status, "new": plan.status}, "quality_score": {"old": None, "new": 0}},
        )

    # ── Approval lane ─────────────────────────────────────────────────────

    def submit_drop_approval_request(
        self,
        work_item_id: int,
        reason: str,
        actor_id: str | None = None,
    ) -> int:
        """Create (or return the existing) pending drop ticket for one plan.

        Raises:
            GatewayError: plan missing or already resolved, its period locked,
                or the write failed.
        """
        actor = str(actor_id or "system")
        try:
            existing = db.session.execute(
                select(DropRequest).where(
                    DropRequest.action_plan_id == work_item_id,
                    DropRequest.status == "pending",
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("Drop request already pending — returning existing ticket",
                            extra={"work_item_id": work_item_id, "ticket_id": existing.id})
                return existing.id

            plan = db.session.get(ActionPlan, work_item_id)
            if plan is None or plan.deleted_at is not None:
                raise GatewayError(f"ActionPlan id={work_item_id} not found", work_item_ids=[work_item_id])
            if plan.status not in UNRESOLVED_STATUSES:
                raise GatewayError(
                    f"ActionPlan id={work_item_id} is already {plan.status}",
                    work_item_ids=[work_item_id],
                )
            period = ReportScope(plan.department_code, plan.month, plan.year)
            if _is_locked(period):
                raise GatewayError(
                    f"Report {period.department_code} {period.month}/{period.year} is already locked",
                    work_item_ids=[work_item_id],
                )

            ticket = DropRequest(
                action_plan_id=plan.id,
                reason=reason.strip(),
                status="pending",
                requested_by=actor,
            )
            db.session.add(ticket)

            old_status = plan.status
            plan.status = LifecycleStatus.WAITING_APPROVAL.value
            plan.is_drop_pending = True
            plan.resolution_type = "dropped"
            plan.drop_reason = reason.strip()
            db.session.flush()

            write_audit(
                entity_type="action_plan",
                entity_id=str(plan.id),
                action="action_plan.drop_requested",
                actor=actor,
                department_code=plan.department_code,
                diff={"status": {"old": old_status, "new": plan.status}, "drop_request_id": {"old": None, "new": ticket.id}},
            )
            db.session.commit()
        except GatewayError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise GatewayError(f"Drop request failed: {exc}", work_item_ids=[work_item_id]) from exc

        logger.info("Drop approval requested", extra={"work_item_id": work_item_id, "ticket_id": ticket.id})
        return ticket.id

    # ── Final submission ──────────────────────────────────────────────────

    def finalize_report_submission(self, scope: ReportScope, actor_id: str | None = None) -> dict:
        """Lock the period and mark its plans submitted. Idempotent once locked."""
        actor = str(actor_id or "system")
        try:
            report = db.session.execute(
                select(MonthlyReport).where(
                    MonthlyReport.department_code == scope.department_code,
                    MonthlyReport.month == scope.month,
                    MonthlyReport.year == scope.year,
                )
            ).scalar_one_or_none()
            if report is not None and report.is_locked:
                return report.to_dict()

            if report is None:
                report = MonthlyReport(
                    department_code=scope.department_code,
                    month=scope.month,
                    year=scope.year,
                )
                db.session.add(report)
            report.status = "submitted"
            report.is_locked = True
            report.submitted_by = actor
            report.submitted_at = datetime.now(timezone.utc)

            plans = db.session.execute(_scope_query(scope)).scalars().all()
            for plan in plans:
                plan.submission_status = "submitted"
            db.session.flush()

            write_audit(
                entity_type="monthly_report",
                entity_id=str(report.id),
                action="monthly_report.submit",
                actor=actor,
                department_code=scope.department_code,
                diff={"status": {"old": None, "new": "submitted"}, "plans": {"old": None, "new": len(plans)}},
            )
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise GatewayError(f"Report submission failed: {exc}") from exc

        logger.info("Monthly report submitted", extra={**scope.to_dict(), "actor": actor})
        return report.to_dict()
