"""
Decision Ledger — per-workflow queue of pending resolution decisions.

Accumulates validated mutations in memory; nothing is sent to the system of
record until the commit orchestrator consumes ``snapshot()``. Callers can
explore, edit and abandon choices at zero cost.

Rules:
    - set_decision overwrites; any action other than request_drop discards
      the stored reason.
    - queue_drop_request validates the justification first; a rejected
      reason leaves the previous decision untouched.
    - cancel_decision returns the item to "undecided".
    - freeze() makes the ledger read-only while a commit is running.
"""

from __future__ import annotations

from kpi_portal.core.exceptions import ConflictError, ValidationError
from kpi_portal.services.resolution_engine import (
    MIN_REASON_LENGTH,
    PendingDecision,
    ResolutionAction,
    validate_reason,
)


class DecisionLedger:
    """In-memory map work_item_id → PendingDecision."""

    def __init__(self, seed: dict[int, PendingDecision] | None = None):
        self._decisions: dict[int, PendingDecision] = dict(seed or {})
        self._frozen = False

    # ── Mutations ─────────────────────────────────────────────────────────

    def set_decision(self, item_id: int, action: ResolutionAction) -> PendingDecision:
        self._ensure_mutable()
        action = ResolutionAction(action)
        if action is ResolutionAction.REQUEST_DROP:
            # Reason must be supplied through queue_drop_request
            decision = PendingDecision(action, reason="")
        else:
            decision = PendingDecision(action)
        self._decisions[item_id] = decision
        return decision

    def queue_drop_request(self, item_id: int, reason: str | None) -> PendingDecision:
        self._ensure_mutable()
        if not validate_reason(reason):
            raise ValidationError(
                f"A drop justification of at least {MIN_REASON_LENGTH} characters is required",
                details={"reason": "too short", "work_item_id": item_id},
            )
        decision = PendingDecision(ResolutionAction.REQUEST_DROP, reason=reason.strip())
        self._decisions[item_id] = decision
        return decision

    def cancel_decision(self, item_id: int) -> None:
        self._ensure_mutable()
        self._decisions.pop(item_id, None)

    def clear(self) -> None:
        self._decisions.clear()
        self._frozen = False

    # ── Commit boundary ───────────────────────────────────────────────────

    def freeze(self) -> None:
        self._frozen = True

    def thaw(self) -> None:
        self._frozen = False

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def snapshot(self) -> dict[int, PendingDecision]:
        """Copy of the current decisions; PendingDecision itself is immutable."""
        return dict(self._decisions)

    # ── Queries ───────────────────────────────────────────────────────────

    def get(self, item_id: int) -> PendingDecision | None:
        return self._decisions.get(item_id)

    def __contains__(self, item_id) -> bool:
        return item_id in self._decisions

    def __len__(self) -> int:
        return len(self._decisions)

    def counts(self) -> dict[str, int]:
        out = {a.value: 0 for a in ResolutionAction}
        for decision in self._decisions.values():
            out[decision.action.value] += 1
        return out

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise ConflictError("DecisionLedger", "decisions are read-only while a commit is in flight")
