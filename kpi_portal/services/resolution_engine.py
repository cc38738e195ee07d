"""
Monthly Resolution Engine — pure decision logic.

Decides which dispositions are legal for an unfinished action plan, what
score ceiling a carry-over leaves it with, which plans get a default
decision, and how a queued decision set splits into the two commit lanes.

No I/O happens here: the workflow shell feeds in work-item snapshots and
policy documents, and the commit orchestrator consumes ``partition()``.

Carry-over ladder (closed, monotonic):

    NORMAL ──advance──▶ CARRIED_ONCE ──advance──▶ CARRIED_TWICE (terminal)

Usage:
    from kpi_portal.services import resolution_engine as engine

    engine.allowed_actions(item, policy.drop_approval)
    # -> [ResolutionAction.CARRY_OVER, ResolutionAction.REQUEST_DROP]
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

MIN_REASON_LENGTH = 5


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class CarryOverState(str, Enum):
    """Carry-over ladder. Values are the strings stored on ``action_plans``."""
    NORMAL = "Normal"
    CARRIED_ONCE = "Late_Month_1"
    CARRIED_TWICE = "Late_Month_2"

    @classmethod
    def parse(cls, value: str | None) -> "CarryOverState":
        if not value:
            return cls.NORMAL
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown carry-over state: {value!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self is CarryOverState.CARRIED_TWICE

    def advance(self) -> "CarryOverState":
        """Return the next rung of the ladder; the terminal rung has none."""
        if self is CarryOverState.NORMAL:
            return CarryOverState.CARRIED_ONCE
        if self is CarryOverState.CARRIED_ONCE:
            return CarryOverState.CARRIED_TWICE
        raise ValueError("Carry-over limit reached: Late_Month_2 cannot be carried again")


class PriorityCategory(str, Enum):
    ULTRA_HIGH = "UH"
    HIGH = "H"
    MEDIUM = "M"
    LOW = "L"
    UNSPECIFIED = "UNSPECIFIED"

    @classmethod
    def from_category(cls, category: str | None) -> "PriorityCategory":
        """Leading token of the free-text category, up to whitespace or '('."""
        token = re.split(r"[\s(]", (category or "").strip().upper(), maxsplit=1)[0]
        if token and token != cls.UNSPECIFIED.value:
            try:
                return cls(token)
            except ValueError:
                pass
        return cls.UNSPECIFIED


class LifecycleStatus(str, Enum):
    OPEN = "Open"
    IN_PROGRESS = "On Progress"
    BLOCKED = "Blocked"
    WAITING_APPROVAL = "Waiting Approval"
    ACHIEVED = "Achieved"
    NOT_ACHIEVED = "Not Achieved"

    @property
    def is_unresolved(self) -> bool:
        return self in (LifecycleStatus.OPEN, LifecycleStatus.IN_PROGRESS, LifecycleStatus.BLOCKED)


class ResolutionAction(str, Enum):
    CARRY_OVER = "carry_over"
    DROP = "drop"
    REQUEST_DROP = "request_drop"


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WorkItem:
    """Read-only snapshot of an action plan inside one workflow."""
    id: int
    title: str
    owner: str | None
    priority_category: PriorityCategory
    lifecycle_status: LifecycleStatus
    carry_over_state: CarryOverState = CarryOverState.NORMAL
    is_drop_pending: bool = False

    @property
    def is_eligible(self) -> bool:
        """Unresolved and not already waiting on an approval ticket."""
        return self.lifecycle_status.is_unresolved and not self.is_drop_pending

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "owner": self.owner,
            "priority_category": self.priority_category.value,
            "lifecycle_status": self.lifecycle_status.value,
            "carry_over_state": self.carry_over_state.value,
        }


@dataclass(frozen=True)
class CarryOverSchedule:
    score_ceiling_after_first_carry: int = 80
    score_ceiling_after_second_carry: int = 50

    def to_dict(self) -> dict:
        return {
            "score_ceiling_after_first_carry": self.score_ceiling_after_first_carry,
            "score_ceiling_after_second_carry": self.score_ceiling_after_second_carry,
        }


@dataclass(frozen=True)
class DropApprovalPolicy:
    """Which priority categories need an approval ticket before a drop."""
    requires_approval: dict[PriorityCategory, bool] = field(default_factory=dict)

    def __getitem__(self, category: PriorityCategory) -> bool:
        return bool(self.requires_approval.get(category, False))

    def to_dict(self) -> dict:
        return {c.value: self[c] for c in PriorityCategory if c is not PriorityCategory.UNSPECIFIED}


@dataclass(frozen=True)
class PolicyDocument:
    carry_over: CarryOverSchedule
    drop_approval: DropApprovalPolicy

    def to_dict(self) -> dict:
        return {
            "carry_over": self.carry_over.to_dict(),
            "drop_approval": self.drop_approval.to_dict(),
        }


@dataclass(frozen=True)
class PendingDecision:
    action: ResolutionAction
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"action": self.action.value, "reason": self.reason}


@dataclass
class Partition:
    """Decision set split into the two commit lanes."""
    batch_resolutions: list[dict] = field(default_factory=list)
    approval_requests: list[dict] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.batch_resolutions) + len(self.approval_requests)


# ═════════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════════

def is_carry_over_eligible(item: WorkItem) -> bool:
    return not item.carry_over_state.is_terminal


def next_score_ceiling(item: WorkItem, schedule: CarryOverSchedule) -> int | None:
    """Max achievable score the item keeps if it is carried over now."""
    if item.carry_over_state is CarryOverState.NORMAL:
        return schedule.score_ceiling_after_first_carry
    if item.carry_over_state is CarryOverState.CARRIED_ONCE:
        return schedule.score_ceiling_after_second_carry
    return None


def is_approval_required(item: WorkItem, policy: DropApprovalPolicy) -> bool:
    return policy[item.priority_category]


def allowed_actions(item: WorkItem, policy: DropApprovalPolicy) -> list[ResolutionAction]:
    """Actions the caller may select for this item, in display order."""
    actions = []
    if is_carry_over_eligible(item):
        actions.append(ResolutionAction.CARRY_OVER)
    if is_approval_required(item, policy):
        actions.append(ResolutionAction.REQUEST_DROP)
    else:
        actions.append(ResolutionAction.DROP)
    return actions


def carry_over_label(item: WorkItem) -> str | None:
    if item.carry_over_state is CarryOverState.CARRIED_ONCE:
        return "Carried Over (1st time)"
    if item.carry_over_state is CarryOverState.CARRIED_TWICE:
        return "Carried Over (2nd time — final)"
    return None


def validate_reason(reason: object) -> bool:
    return isinstance(reason, str) and len(reason.strip()) >= MIN_REASON_LENGTH


def seed_default_decisions(
    items: list[WorkItem],
    policy: DropApprovalPolicy,
) -> dict[int, PendingDecision]:
    """Pre-select Drop where it is the only legal, non-escalating action.

    The seed is a convenience default; the caller may override it.
    """
    return {
        item.id: PendingDecision(ResolutionAction.DROP)
        for item in items
        if not is_carry_over_eligible(item) and not is_approval_required(item, policy)
    }


def partition(
    decisions: dict[int, PendingDecision],
    items: dict[int, WorkItem] | None = None,
) -> Partition:
    """Split decisions into the batch lane and the approval-request lane.

    ``items`` supplies titles for approval tickets; without it the title is
    left empty.
    """
    result = Partition()
    for item_id, decision in decisions.items():
        if decision.action is ResolutionAction.REQUEST_DROP:
            item = (items or {}).get(item_id)
            result.approval_requests.append({
                "work_item_id": item_id,
                "reason": (decision.reason or "").strip(),
                "title": item.title if item else "",
            })
        else:
            result.batch_resolutions.append({
                "work_item_id": item_id,
                "action": decision.action,
            })
    return result


def undecided_items(items: list[WorkItem], decisions: dict[int, PendingDecision]) -> list[WorkItem]:
    """Eligible items still missing a complete decision."""
    missing = []
    for item in items:
        if not item.is_eligible:
            continue
        decision = decisions.get(item.id)
        if decision is None or decision.action is None:
            missing.append(item)
        elif decision.action is ResolutionAction.REQUEST_DROP and not validate_reason(decision.reason):
            missing.append(item)
    return missing


def is_ready(items: list[WorkItem], decisions: dict[int, PendingDecision]) -> bool:
    """True when every eligible item carries a complete decision."""
    return not undecided_items(items, decisions)
