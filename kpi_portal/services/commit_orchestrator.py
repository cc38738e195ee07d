"""
Commit Orchestrator — executes a resolved decision set against the system of record.

Two lanes run concurrently and the orchestrator waits for all of them:

    batch lane     — ONE commit_batch_resolutions call with every
                     carry_over / drop pair (an empty list still yields a
                     well-formed 0/0 result)
    approval lane  — ONE submit_drop_approval_request call per
                     request_drop decision

The lanes are separate transactional boundaries, so the outcome is not
atomic across them. Outcomes are reported distinctly:

    committed         everything succeeded
    partial           some effects are permanent, some approval calls failed
    batch_failed      the batch call failed (approval tickets may exist)
    approvals_failed  no batch work was requested and every approval failed

A CommitJournal remembers what already took effect (batch counts, ticket
ids). A retry skips journaled work and re-issues only the failed subset;
ticket creation on the gateway is idempotent per work item.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum

from flask import current_app, has_app_context

from kpi_portal.core.exceptions import ValidationError
from kpi_portal.services.resolution_engine import (
    PendingDecision,
    WorkItem,
    is_ready,
    partition,
    undecided_items,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


# ═════════════════════════════════════════════════════════════════════════════
# Result types
# ═════════════════════════════════════════════════════════════════════════════

class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    PARTIAL = "partial"
    BATCH_FAILED = "batch_failed"
    APPROVALS_FAILED = "approvals_failed"


@dataclass
class ApprovalRequestResult:
    work_item_id: int
    title: str = ""
    ticket_id: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.ticket_id is not None and self.error is None

    def to_dict(self) -> dict:
        return {
            "work_item_id": self.work_item_id,
            "title": self.title,
            "ticket_id": self.ticket_id,
            "error": self.error,
        }


@dataclass
class CommitResult:
    outcome: CommitOutcome
    carried_over_count: int = 0
    dropped_count: int = 0
    approval_results: list[ApprovalRequestResult] = field(default_factory=list)
    batch_error: str | None = None
    batch_failed_item_ids: list[int] = field(default_factory=list)
    decisions: dict[int, PendingDecision] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome is CommitOutcome.COMMITTED

    @property
    def failed_approvals(self) -> list[ApprovalRequestResult]:
        return [r for r in self.approval_results if not r.ok]

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "carried_over_count": self.carried_over_count,
            "dropped_count": self.dropped_count,
            "approval_results": [r.to_dict() for r in self.approval_results],
            "failed_work_item_ids": [r.work_item_id for r in self.failed_approvals],
            "batch_error": self.batch_error,
            "batch_failed_item_ids": list(self.batch_failed_item_ids),
            "decisions": {str(k): v.to_dict() for k, v in self.decisions.items()},
        }


@dataclass
class CommitJournal:
    """What already took effect on the system of record for one workflow."""
    batch_result: dict | None = None
    batch_item_ids: set[int] = field(default_factory=set)
    tickets: dict[int, int] = field(default_factory=dict)

    @property
    def batch_committed(self) -> bool:
        return self.batch_result is not None

    def committed_item_ids(self) -> set[int]:
        return set(self.batch_item_ids) | set(self.tickets)

    def to_dict(self) -> dict:
        return {
            "batch_committed": self.batch_committed,
            "batch_result": self.batch_result,
            "tickets": {str(k): v for k, v in self.tickets.items()},
        }


# ═════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═════════════════════════════════════════════════════════════════════════════

class CommitOrchestrator:
    """Partition decisions, run both lanes concurrently, aggregate outcomes."""

    def __init__(self, gateway, *, max_workers: int = DEFAULT_MAX_WORKERS,
                 journal: CommitJournal | None = None):
        self.gateway = gateway
        self.max_workers = max(1, int(max_workers))
        self.journal = journal if journal is not None else CommitJournal()

    def commit(
        self,
        scope,
        items: list[WorkItem],
        decisions: dict[int, PendingDecision],
        actor_id: str | None = None,
    ) -> CommitResult:
        """Execute the decision set.

        Raises:
            ValidationError: some eligible item is undecided or a drop request
                lacks a valid reason. Nothing is sent in that case.
        """
        if not is_ready(items, decisions):
            missing = [i.id for i in undecided_items(items, decisions)]
            raise ValidationError(
                "Every unresolved action plan needs a decision before commit",
                details={"undecided_work_item_ids": missing},
            )

        items_by_id = {i.id: i for i in items}
        lanes = partition(decisions, items_by_id)
        pending_approvals = [
            req for req in lanes.approval_requests
            if req["work_item_id"] not in self.journal.tickets
        ]
        pending_batch = [
            res for res in lanes.batch_resolutions
            if res["work_item_id"] not in self.journal.batch_item_ids
        ]
        run_batch = bool(pending_batch) or not self.journal.batch_committed

        app = current_app._get_current_object() if has_app_context() else None
        workers = min(self.max_workers, len(pending_approvals) + 1)

        batch_future = None
        approval_futures = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolution-commit") as pool:
            if run_batch:
                batch_future = pool.submit(
                    self._in_context, app,
                    self.gateway.commit_batch_resolutions, scope, pending_batch, actor_id,
                )
            for req in pending_approvals:
                future = pool.submit(
                    self._in_context, app,
                    self.gateway.submit_drop_approval_request, req["work_item_id"], req["reason"], actor_id,
                )
                approval_futures[future] = req
            wait([f for f in (batch_future, *approval_futures) if f is not None])

        # ── Batch lane ───────────────────────────────────────────────────
        batch_error = None
        batch_failed_ids: list[int] = []
        if batch_future is not None:
            exc = batch_future.exception()
            if exc is not None:
                batch_error = str(exc) or exc.__class__.__name__
                batch_failed_ids = list(getattr(exc, "work_item_ids", None)
                                        or [r["work_item_id"] for r in pending_batch])
                logger.error("Batch resolution lane failed: %s", batch_error,
                             extra={"work_item_ids": batch_failed_ids})
            else:
                counts = batch_future.result() or {}
                previous = self.journal.batch_result or {"carried_over_count": 0, "dropped_count": 0}
                self.journal.batch_result = {
                    "carried_over_count": previous["carried_over_count"] + int(counts.get("carried_over_count", 0)),
                    "dropped_count": previous["dropped_count"] + int(counts.get("dropped_count", 0)),
                }
                self.journal.batch_item_ids |= {r["work_item_id"] for r in pending_batch}

        # ── Approval lane ────────────────────────────────────────────────
        approval_results = []
        for req in lanes.approval_requests:
            item_id = req["work_item_id"]
            # Tickets journaled by an earlier attempt were not re-issued
            if item_id in self.journal.tickets:
                approval_results.append(ApprovalRequestResult(item_id, req["title"], self.journal.tickets[item_id]))
        for future, req in approval_futures.items():
            item_id = req["work_item_id"]
            exc = future.exception()
            if exc is not None:
                logger.warning("Drop approval request failed for work item %s: %s", item_id, exc,
                               extra={"work_item_id": item_id})
                approval_results.append(ApprovalRequestResult(item_id, req["title"], error=str(exc) or exc.__class__.__name__))
            else:
                ticket_id = future.result()
                self.journal.tickets[item_id] = ticket_id
                approval_results.append(ApprovalRequestResult(item_id, req["title"], ticket_id))

        counts = self.journal.batch_result or {"carried_over_count": 0, "dropped_count": 0}
        result = CommitResult(
            outcome=self._classify(batch_error, lanes.batch_resolutions, approval_results),
            carried_over_count=counts["carried_over_count"],
            dropped_count=counts["dropped_count"],
            approval_results=approval_results,
            batch_error=batch_error,
            batch_failed_item_ids=batch_failed_ids,
            decisions=dict(decisions),
        )
        logger.info(
            "Resolution commit finished: %s", result.outcome.value,
            extra={
                "outcome": result.outcome.value,
                "carried_over": result.carried_over_count,
                "dropped": result.dropped_count,
                "approval_failures": len(result.failed_approvals),
            },
        )
        return result

    @staticmethod
    def _classify(batch_error, batch_lane, approval_results) -> CommitOutcome:
        if batch_error is not None:
            return CommitOutcome.BATCH_FAILED
        failed = [r for r in approval_results if not r.ok]
        if not failed:
            return CommitOutcome.COMMITTED
        if not batch_lane and len(failed) == len(approval_results):
            return CommitOutcome.APPROVALS_FAILED
        return CommitOutcome.PARTIAL

    @staticmethod
    def _in_context(app, fn, *args):
        """Run a gateway call inside its own app context (own DB session)."""
        if app is None:
            return fn(*args)
        with app.app_context():
            return fn(*args)
