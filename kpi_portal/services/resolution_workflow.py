"""
Monthly Resolution Workflow — the two-screen state machine.

    RESOLVE ──commit ok (submit_flow)──▶ CONFIRM ──confirm_submission──▶ CLOSED (submitted)
       │  └──commit ok (standalone)──────────────────────────────────▶ CLOSED (resolved)
       └──cancel──▶ CLOSED (cancelled)        CONFIRM ──cancel──▶ CLOSED (cancelled)

Entry to RESOLVE loads policies, lists the unresolved action plans of the
scope (already-pending drops are excluded) and seeds default decisions.
Everything the caller selects stays in the DecisionLedger until commit;
cancel discards it with no side effects.

Usage:
    wf = ResolutionWorkflow(scope, SqlActionPlanGateway(), mode=WorkflowMode.SUBMIT_FLOW,
                            actor_id="leader-1").open()
    wf.set_decision(12, ResolutionAction.CARRY_OVER)
    wf.queue_drop_request(13, "Vendor contract cancelled")
    result = wf.commit()           # → CONFIRM on success
    wf.confirm_submission()        # → CLOSED (submitted)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum

from kpi_portal.core.exceptions import (
    ConflictError,
    NotFoundError,
    SubmissionError,
    ValidationError,
)
from kpi_portal.services.commit_orchestrator import (
    DEFAULT_MAX_WORKERS,
    CommitJournal,
    CommitOrchestrator,
    CommitResult,
)
from kpi_portal.services.decision_ledger import DecisionLedger
from kpi_portal.services.resolution_engine import (
    PendingDecision,
    ResolutionAction,
    WorkItem,
    allowed_actions,
    carry_over_label,
    is_approval_required,
    is_carry_over_eligible,
    is_ready,
    next_score_ceiling,
    seed_default_decisions,
    undecided_items,
)
from kpi_portal.services.resolution_policy import load_policies

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_TTL_SECONDS = 3600


class WorkflowState(str, Enum):
    RESOLVE = "resolve"
    CONFIRM = "confirm"
    CLOSED = "closed"


class WorkflowMode(str, Enum):
    STANDALONE = "standalone"
    SUBMIT_FLOW = "submit_flow"


@dataclass(frozen=True)
class DropSelection:
    """Outcome of choosing "Drop" for an item.

    ``requires_reason`` means the drop is policy-gated: nothing was queued and
    the caller must prompt for a justification (``queue_drop_request``).
    """
    work_item_id: int
    requires_reason: bool
    decision: PendingDecision | None = None

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "requires_reason": self.requires_reason,
            "decision": self.decision.to_dict() if self.decision else None,
        }


class ResolutionWorkflow:
    """One resolution session for one department/month/year scope."""

    def __init__(
        self,
        scope,
        gateway,
        *,
        mode: WorkflowMode | str = WorkflowMode.STANDALONE,
        actor_id: str | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        workflow_id: str | None = None,
    ):
        self.id = workflow_id or uuid.uuid4().hex
        self.scope = scope
        self.gateway = gateway
        self.mode = WorkflowMode(mode)
        self.actor_id = actor_id
        self.max_workers = max_workers

        self.state = WorkflowState.RESOLVE
        self.loading = True
        self.policies = None
        self.items: list[WorkItem] = []
        self.ledger = DecisionLedger()
        self.journal = CommitJournal()

        self.commit_in_flight = False
        self._commit_lock = threading.Lock()
        self.last_result: CommitResult | None = None
        self.submission: dict | None = None
        self.submission_error: str | None = None
        self.closed_reason: str | None = None

    # ── Entry ─────────────────────────────────────────────────────────────

    def open(self) -> "ResolutionWorkflow":
        """Load policies and items, then seed default decisions."""
        self._ensure_state(WorkflowState.RESOLVE)
        self.loading = True
        self.policies = load_policies(self.gateway)
        listed = self.gateway.list_unresolved_work_items(self.scope)
        self.items = [item for item in listed if item.is_eligible]
        self.ledger = DecisionLedger(seed_default_decisions(self.items, self.policies.drop_approval))
        self.loading = False
        logger.info(
            "Resolution workflow opened",
            extra={"workflow_id": self.id, "items": len(self.items), "seeded": len(self.ledger),
                   "mode": self.mode.value},
        )
        return self

    # ── Decision commands ─────────────────────────────────────────────────

    def set_decision(self, item_id: int, action: ResolutionAction | str) -> PendingDecision:
        item = self._editable_item(item_id)
        action = self._parse_action(action)

        if action is ResolutionAction.CARRY_OVER and not is_carry_over_eligible(item):
            raise ValidationError(
                "Carry-over limit reached for this action plan",
                details={"work_item_id": item_id, "carry_over_state": item.carry_over_state.value},
            )
        gated = is_approval_required(item, self.policies.drop_approval)
        if action is ResolutionAction.DROP and gated:
            raise ValidationError(
                "Dropping this action plan requires management approval; submit a drop request with a reason",
                details={"work_item_id": item_id, "requires_reason": True},
            )
        if action is ResolutionAction.REQUEST_DROP and not gated:
            raise ValidationError(
                "This action plan can be dropped directly; no approval request is needed",
                details={"work_item_id": item_id},
            )
        return self.ledger.set_decision(item_id, action)

    def select_drop(self, item_id: int) -> DropSelection:
        """Choose "Drop": immediate when ungated, reason prompt when gated."""
        item = self._editable_item(item_id)
        if is_approval_required(item, self.policies.drop_approval):
            return DropSelection(item_id, requires_reason=True, decision=self.ledger.get(item_id))
        return DropSelection(item_id, requires_reason=False,
                             decision=self.ledger.set_decision(item_id, ResolutionAction.DROP))

    def queue_drop_request(self, item_id: int, reason: str | None) -> PendingDecision:
        item = self._editable_item(item_id)
        if not is_approval_required(item, self.policies.drop_approval):
            raise ValidationError(
                "This action plan can be dropped directly; no approval request is needed",
                details={"work_item_id": item_id},
            )
        return self.ledger.queue_drop_request(item_id, reason)

    def cancel_decision(self, item_id: int) -> None:
        self._editable_item(item_id)
        self.ledger.cancel_decision(item_id)

    # ── Readiness ─────────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return is_ready(self.items, self.ledger.snapshot())

    @property
    def can_commit(self) -> bool:
        return (
            self.state is WorkflowState.RESOLVE
            and not self.loading
            and not self.commit_in_flight
            and self.is_ready
        )

    # ── Commit ────────────────────────────────────────────────────────────

    def commit(self) -> CommitResult:
        """Execute the queued decisions.

        Returns the CommitResult for every attempt that reached the system of
        record; non-success outcomes keep the workflow in RESOLVE with the
        ledger intact.

        Raises:
            ConflictError: wrong state, still loading, or a commit is in flight.
            ValidationError: not every eligible item is decided.
        """
        if not self._commit_lock.acquire(blocking=False):
            raise ConflictError("ResolutionWorkflow", "a commit is already in flight")
        try:
            self._ensure_state(WorkflowState.RESOLVE)
            if self.loading:
                raise ConflictError("ResolutionWorkflow", "policies are still loading")
            self.commit_in_flight = True
            self.ledger.freeze()
            decisions = self.ledger.snapshot()
            if not is_ready(self.items, decisions):
                raise ValidationError(
                    "Every unresolved action plan needs a decision before commit",
                    details={"undecided_work_item_ids": [i.id for i in undecided_items(self.items, decisions)]},
                )
            orchestrator = CommitOrchestrator(self.gateway, max_workers=self.max_workers, journal=self.journal)
            result = orchestrator.commit(self.scope, self.items, decisions, self.actor_id)
        finally:
            self.ledger.thaw()
            self.commit_in_flight = False
            self._commit_lock.release()

        self.last_result = result
        if result.succeeded:
            if self.mode is WorkflowMode.SUBMIT_FLOW:
                self.state = WorkflowState.CONFIRM
            else:
                self._close("resolved")
        return result

    def confirm_submission(self) -> dict:
        """Lock and submit the report. Only the submission is retried on failure."""
        self._ensure_state(WorkflowState.CONFIRM)
        try:
            report = self.gateway.finalize_report_submission(self.scope, self.actor_id)
        except Exception as exc:
            self.submission_error = str(exc) or exc.__class__.__name__
            logger.warning("Final report submission failed: %s", self.submission_error,
                           extra={"workflow_id": self.id})
            raise SubmissionError(f"Report submission failed: {self.submission_error}",
                                  scope=self.scope.to_dict()) from exc
        self.submission = report
        self.submission_error = None
        self._close("submitted")
        return report

    def cancel(self) -> None:
        if not self._commit_lock.acquire(blocking=False):
            raise ConflictError("ResolutionWorkflow", "cannot cancel while a commit is in flight")
        try:
            self._ensure_state(WorkflowState.RESOLVE, WorkflowState.CONFIRM)
            self._close("cancelled")
        finally:
            self._commit_lock.release()

    # ── Views ─────────────────────────────────────────────────────────────

    def item_views(self) -> list[dict]:
        committed = self.journal.committed_item_ids()
        views = []
        for item in self.items:
            decision = self.ledger.get(item.id)
            views.append({
                **item.to_dict(),
                "carry_over_label": carry_over_label(item),
                "can_carry_over": is_carry_over_eligible(item),
                "next_score_ceiling": (
                    next_score_ceiling(item, self.policies.carry_over) if self.policies else None
                ),
                "approval_required": (
                    is_approval_required(item, self.policies.drop_approval) if self.policies else False
                ),
                "allowed_actions": (
                    [a.value for a in allowed_actions(item, self.policies.drop_approval)]
                    if self.policies else []
                ),
                "decision": decision.to_dict() if decision else None,
                "committed": item.id in committed,
            })
        return views

    def summary(self) -> dict:
        counts = self.ledger.counts()
        return {
            "total": len(self.items),
            "carry_over": counts[ResolutionAction.CARRY_OVER.value],
            "drop": counts[ResolutionAction.DROP.value],
            "request_drop": counts[ResolutionAction.REQUEST_DROP.value],
            "undecided": len(undecided_items(self.items, self.ledger.snapshot())),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope.to_dict(),
            "mode": self.mode.value,
            "state": self.state.value,
            "closed_reason": self.closed_reason,
            "loading": self.loading,
            "commit_in_flight": self.commit_in_flight,
            "can_commit": self.can_commit,
            "policies": self.policies.to_dict() if self.policies else None,
            "items": self.item_views(),
            "summary": self.summary(),
            "journal": self.journal.to_dict(),
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "submission": self.submission,
            "submission_error": self.submission_error,
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _close(self, reason: str) -> None:
        self.state = WorkflowState.CLOSED
        self.closed_reason = reason
        self.ledger.clear()
        logger.info("Resolution workflow closed: %s", reason, extra={"workflow_id": self.id})

    def _ensure_state(self, *allowed: WorkflowState) -> None:
        if self.state not in allowed:
            raise ConflictError(
                "ResolutionWorkflow",
                f"operation not allowed in state '{self.state.value}'",
            )

    def _editable_item(self, item_id: int) -> WorkItem:
        self._ensure_state(WorkflowState.RESOLVE)
        if self.loading:
            raise ConflictError("ResolutionWorkflow", "policies are still loading")
        if self.commit_in_flight:
            raise ConflictError("ResolutionWorkflow", "decisions are read-only while a commit is in flight")
        item = next((i for i in self.items if i.id == item_id), None)
        if item is None:
            raise NotFoundError(resource="WorkItem", resource_id=item_id)
        if item_id in self.journal.committed_item_ids():
            raise ConflictError("ResolutionWorkflow", f"work item {item_id} was already committed")
        return item

    @staticmethod
    def _parse_action(action) -> ResolutionAction:
        try:
            return ResolutionAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown action {action!r}",
                details={"action": f"must be one of {', '.join(a.value for a in ResolutionAction)}"},
            ) from None


# ═════════════════════════════════════════════════════════════════════════════
# Session registry
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowRegistry:
    """Thread-safe in-process map workflow_id → ResolutionWorkflow.

    Every ``add``/``get`` stamps the workflow as touched; workflows left idle
    longer than ``ttl_seconds`` are evicted on the next registry access.
    A workflow with a commit in flight is never evicted.
    """

    def __init__(self, ttl_seconds: float | None = DEFAULT_WORKFLOW_TTL_SECONDS, clock=time.monotonic):
        self._workflows: dict[str, ResolutionWorkflow] = {}
        self._touched: dict[str, float] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def add(self, workflow: ResolutionWorkflow) -> ResolutionWorkflow:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            self._workflows[workflow.id] = workflow
            self._touched[workflow.id] = now
        return workflow

    def get(self, workflow_id: str) -> ResolutionWorkflow:
        with self._lock:
            now = self._clock()
            self._evict_idle(now)
            workflow = self._workflows.get(workflow_id)
            if workflow is not None:
                self._touched[workflow_id] = now
        if workflow is None:
            raise NotFoundError(resource="ResolutionWorkflow", resource_id=workflow_id)
        return workflow

    def discard(self, workflow_id: str) -> None:
        with self._lock:
            self._workflows.pop(workflow_id, None)
            self._touched.pop(workflow_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_idle(self._clock())
            return len(self._workflows)

    def _evict_idle(self, now: float) -> None:
        """Drop idle workflows. Caller holds ``_lock``."""
        if not self.ttl_seconds:
            return
        expired = [
            wid for wid, touched in self._touched.items()
            if now - touched > self.ttl_seconds and not self._workflows[wid].commit_in_flight
        ]
        for wid in expired:
            self._workflows.pop(wid, None)
            self._touched.pop(wid, None)
        if expired:
            logger.info("Evicted %d idle resolution workflow(s)", len(expired),
                        extra={"workflow_ids": expired})


def get_registry(app) -> WorkflowRegistry:
    """Return the app-wide registry, creating it on first use."""
    registry = app.extensions.get("resolution_workflows")
    if registry is None:
        ttl = app.config.get("RESOLUTION_WORKFLOW_TTL_SECONDS", DEFAULT_WORKFLOW_TTL_SECONDS)
        registry = app.extensions.setdefault("resolution_workflows", WorkflowRegistry(ttl_seconds=ttl))
    return registry
