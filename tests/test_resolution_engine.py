"""
Monthly resolution engine — pure decision logic.

Tests cover:
  - Carry-over ladder (parse, advance, terminal rung)
  - Priority category parsing from free-text categories
  - Eligibility, score ceilings, approval gating, allowed actions
  - Default decision seeding
  - Partition into batch / approval lanes
  - Readiness
"""
import pytest

from kpi_portal.services.resolution_engine import (
    CarryOverSchedule,
    CarryOverState,
    DropApprovalPolicy,
    LifecycleStatus,
    PendingDecision,
    PriorityCategory,
    ResolutionAction,
    WorkItem,
    allowed_actions,
    carry_over_label,
    is_approval_required,
    is_carry_over_eligible,
    is_ready,
    next_score_ceiling,
    partition,
    seed_default_decisions,
    undecided_items,
    validate_reason,
)

GATED_UH_H = DropApprovalPolicy({PriorityCategory.ULTRA_HIGH: True, PriorityCategory.HIGH: True})
NO_APPROVAL = DropApprovalPolicy({})


def _item(item_id=1, priority=PriorityCategory.MEDIUM, state=CarryOverState.NORMAL,
          status=LifecycleStatus.OPEN, pending=False, title=None):
    return WorkItem(
        id=item_id,
        title=title or f"Plan {item_id}",
        owner="alice",
        priority_category=priority,
        lifecycle_status=status,
        carry_over_state=state,
        is_drop_pending=pending,
    )


# ═════════════════════════════════════════════════════════════════════════════
# CARRY-OVER LADDER
# ═════════════════════════════════════════════════════════════════════════════

class TestCarryOverState:
    def test_advance_walks_the_ladder(self):
        assert CarryOverState.NORMAL.advance() is CarryOverState.CARRIED_ONCE
        assert CarryOverState.CARRIED_ONCE.advance() is CarryOverState.CARRIED_TWICE

    def test_terminal_rung_cannot_advance(self):
        assert CarryOverState.CARRIED_TWICE.is_terminal
        with pytest.raises(ValueError):
            CarryOverState.CARRIED_TWICE.advance()

    def test_parse_stored_values(self):
        assert CarryOverState.parse("Late_Month_1") is CarryOverState.CARRIED_ONCE
        assert CarryOverState.parse(None) is CarryOverState.NORMAL
        assert CarryOverState.parse("") is CarryOverState.NORMAL

    def test_parse_unknown_value_raises(self):
        with pytest.raises(ValueError):
            CarryOverState.parse("Late_Month_3")


class TestPriorityCategory:
    @pytest.mark.parametrize("raw, expected", [
        ("UH (Ultra High)", PriorityCategory.ULTRA_HIGH),
        ("h", PriorityCategory.HIGH),
        ("M(Medium)", PriorityCategory.MEDIUM),
        ("  L  low", PriorityCategory.LOW),
        ("Critical", PriorityCategory.UNSPECIFIED),
        ("", PriorityCategory.UNSPECIFIED),
        (None, PriorityCategory.UNSPECIFIED),
    ])
    def test_leading_token(self, raw, expected):
        assert PriorityCategory.from_category(raw) is expected


# ═════════════════════════════════════════════════════════════════════════════
# RULES
# ═════════════════════════════════════════════════════════════════════════════

class TestRules:
    def test_eligible_excludes_pending_and_resolved(self):
        assert _item().is_eligible
        assert not _item(pending=True).is_eligible
        assert not _item(status=LifecycleStatus.ACHIEVED).is_eligible
        assert not _item(status=LifecycleStatus.WAITING_APPROVAL).is_eligible

    def test_carried_twice_not_carry_over_eligible(self):
        assert is_carry_over_eligible(_item(state=CarryOverState.CARRIED_ONCE))
        assert not is_carry_over_eligible(_item(state=CarryOverState.CARRIED_TWICE))

    def test_next_score_ceiling(self):
        schedule = CarryOverSchedule(70, 40)
        assert next_score_ceiling(_item(), schedule) == 70
        assert next_score_ceiling(_item(state=CarryOverState.CARRIED_ONCE), schedule) == 40
        assert next_score_ceiling(_item(state=CarryOverState.CARRIED_TWICE), schedule) is None

    def test_unspecified_category_never_needs_approval(self):
        everything = DropApprovalPolicy({c: True for c in PriorityCategory if c is not PriorityCategory.UNSPECIFIED})
        assert not is_approval_required(_item(priority=PriorityCategory.UNSPECIFIED), everything)
        assert is_approval_required(_item(priority=PriorityCategory.LOW), everything)

    def test_allowed_actions_ungated(self):
        assert allowed_actions(_item(), GATED_UH_H) == [ResolutionAction.CARRY_OVER, ResolutionAction.DROP]

    def test_allowed_actions_gated(self):
        item = _item(priority=PriorityCategory.HIGH)
        assert allowed_actions(item, GATED_UH_H) == [ResolutionAction.CARRY_OVER, ResolutionAction.REQUEST_DROP]

    def test_allowed_actions_carried_twice_gated(self):
        item = _item(priority=PriorityCategory.ULTRA_HIGH, state=CarryOverState.CARRIED_TWICE)
        assert allowed_actions(item, GATED_UH_H) == [ResolutionAction.REQUEST_DROP]

    def test_carry_over_label(self):
        assert carry_over_label(_item()) is None
        assert "1st" in carry_over_label(_item(state=CarryOverState.CARRIED_ONCE))
        assert "final" in carry_over_label(_item(state=CarryOverState.CARRIED_TWICE))

    @pytest.mark.parametrize("reason, ok", [
        (None, False),
        ("", False),
        ("   abcd   ", False),
        ("abcde", True),
        ("  Vendor cancelled  ", True),
        (12345, False),
        (["Vendor cancelled"], False),
    ])
    def test_validate_reason(self, reason, ok):
        assert validate_reason(reason) is ok


# ═════════════════════════════════════════════════════════════════════════════
# SEEDING, PARTITION, READINESS
# ═════════════════════════════════════════════════════════════════════════════

class TestSeedDefaultDecisions:
    def test_only_carried_twice_ungated_items_are_seeded(self):
        items = [
            _item(1),
            _item(2, state=CarryOverState.CARRIED_TWICE),
            _item(3, priority=PriorityCategory.HIGH, state=CarryOverState.CARRIED_TWICE),
        ]
        seeded = seed_default_decisions(items, GATED_UH_H)
        assert seeded == {2: PendingDecision(ResolutionAction.DROP)}


class TestPartition:
    def test_lanes_are_disjoint_and_complete(self):
        decisions = {
            1: PendingDecision(ResolutionAction.CARRY_OVER),
            2: PendingDecision(ResolutionAction.DROP),
            3: PendingDecision(ResolutionAction.REQUEST_DROP, reason="  Out of budget  "),
        }
        items = {3: _item(3, title="Migrate ledger")}
        lanes = partition(decisions, items)

        batch_ids = {r["work_item_id"] for r in lanes.batch_resolutions}
        approval_ids = {r["work_item_id"] for r in lanes.approval_requests}
        assert batch_ids == {1, 2}
        assert approval_ids == {3}
        assert len(lanes) == len(decisions)
        assert lanes.approval_requests[0] == {
            "work_item_id": 3, "reason": "Out of budget", "title": "Migrate ledger",
        }

    def test_empty_decisions(self):
        lanes = partition({})
        assert lanes.batch_resolutions == []
        assert lanes.approval_requests == []


class TestReadiness:
    def test_missing_decision_blocks(self):
        items = [_item(1), _item(2)]
        decisions = {1: PendingDecision(ResolutionAction.DROP)}
        assert not is_ready(items, decisions)
        assert [i.id for i in undecided_items(items, decisions)] == [2]

    def test_request_drop_without_reason_blocks(self):
        items = [_item(1, priority=PriorityCategory.HIGH)]
        assert not is_ready(items, {1: PendingDecision(ResolutionAction.REQUEST_DROP, reason="")})
        assert is_ready(items, {1: PendingDecision(ResolutionAction.REQUEST_DROP, reason="Scope moved")})

    def test_ineligible_items_are_ignored(self):
        assert is_ready([_item(1, pending=True)], {})

    def test_empty_workflow_is_ready(self):
        assert is_ready([], {})
