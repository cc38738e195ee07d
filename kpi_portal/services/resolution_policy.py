"""
Resolution Policy Store — carry-over schedule and drop-approval policy.

Both documents live in the single ``system_settings`` row. Reads fail soft:
when the row cannot be fetched the workflow keeps working on the hard-coded
defaults (``RESOLUTION_DEFAULT_CEILINGS``, 80 / 50 unless configured, and
no approval required for any category).

Usage:
    from kpi_portal.services import resolution_policy

    policy = resolution_policy.load_policies()
    policy.carry_over.score_ceiling_after_first_carry   # 80
"""

from __future__ import annotations

import logging

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from kpi_portal.core.exceptions import ValidationError
from kpi_portal.models import db
from kpi_portal.models.audit import write_audit
from kpi_portal.models.settings import SETTINGS_ROW_ID, SystemSettings
from kpi_portal.services.resolution_engine import (
    CarryOverSchedule,
    DropApprovalPolicy,
    PolicyDocument,
    PriorityCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_CARRY_OVER = CarryOverSchedule(80, 50)
DEFAULT_DROP_APPROVAL = DropApprovalPolicy({})

_APPROVAL_COLUMNS = {
    PriorityCategory.ULTRA_HIGH: "drop_approval_req_uh",
    PriorityCategory.HIGH: "drop_approval_req_h",
    PriorityCategory.MEDIUM: "drop_approval_req_m",
    PriorityCategory.LOW: "drop_approval_req_l",
}


def default_carry_over() -> CarryOverSchedule:
    """Fallback ceilings: ``RESOLUTION_DEFAULT_CEILINGS`` when an app is active."""
    if not has_app_context():
        return DEFAULT_CARRY_OVER
    ceilings = current_app.config.get("RESOLUTION_DEFAULT_CEILINGS")
    if not ceilings:
        return DEFAULT_CARRY_OVER
    first, second = ceilings
    return CarryOverSchedule(int(first), int(second))


def _settings_row() -> SystemSettings | None:
    return db.session.get(SystemSettings, SETTINGS_ROW_ID)


# ── Fetch (fail soft) ──────────────────────────────────────────────────────────


def fetch_carry_over_policy() -> CarryOverSchedule:
    """Return the configured carry-over ceilings, or the defaults on any failure."""
    try:
        row = _settings_row()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Carry-over policy fetch failed — using defaults", exc_info=True)
        return default_carry_over()
    if row is None:
        logger.info("No system_settings row — using default carry-over ceilings")
        return default_carry_over()
    return CarryOverSchedule(
        score_ceiling_after_first_carry=row.carry_over_penalty_1,
        score_ceiling_after_second_carry=row.carry_over_penalty_2,
    )


def fetch_drop_approval_policy() -> DropApprovalPolicy:
    """Return the per-priority approval flags, or "never required" on any failure."""
    try:
        row = _settings_row()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Drop approval policy fetch failed — using defaults", exc_info=True)
        return DEFAULT_DROP_APPROVAL
    if row is None:
        return DEFAULT_DROP_APPROVAL
    return DropApprovalPolicy({
        category: bool(getattr(row, column))
        for category, column in _APPROVAL_COLUMNS.items()
    })


def load_policies(gateway=None) -> PolicyDocument:
    """Load both policy documents; never raises.

    ``gateway`` may be any object exposing ``fetch_carry_over_policy`` and
    ``fetch_drop_approval_policy``; the module-level fetchers are used
    otherwise. A gateway that raises is treated like an unreachable store.
    """
    source = gateway
    try:
        carry_over = source.fetch_carry_over_policy() if source else fetch_carry_over_policy()
    except Exception:
        logger.warning("Carry-over policy unavailable — using defaults", exc_info=True)
        carry_over = default_carry_over()
    try:
        drop_approval = source.fetch_drop_approval_policy() if source else fetch_drop_approval_policy()
    except Exception:
        logger.warning("Drop approval policy unavailable — using defaults", exc_info=True)
        drop_approval = DEFAULT_DROP_APPROVAL
    return PolicyDocument(carry_over=carry_over, drop_approval=drop_approval)


# ── Administration ─────────────────────────────────────────────────────────────


def get_policy_settings() -> dict:
    """Return the stored settings, or the defaults when no row exists yet."""
    row = _settings_row()
    if row is None:
        defaults = default_carry_over()
        return SystemSettings(
            carry_over_penalty_1=defaults.score_ceiling_after_first_carry,
            carry_over_penalty_2=defaults.score_ceiling_after_second_carry,
            drop_approval_req_uh=False,
            drop_approval_req_h=False,
            drop_approval_req_m=False,
            drop_approval_req_l=False,
        ).to_dict()
    return row.to_dict()


def update_policy_settings(data: dict, actor: str = "system") -> dict:
    """Validate and persist a partial update of the policy row.

    Raises:
        ValidationError: ceilings outside 0..100, second ceiling above the
            first, or a non-boolean approval flag.
    """
    row = _settings_row()
    if row is None:
        row = SystemSettings(id=SETTINGS_ROW_ID)
        db.session.add(row)

    defaults = default_carry_over()
    errors: dict[str, str] = {}
    ceilings = {}
    for key in ("carry_over_penalty_1", "carry_over_penalty_2"):
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
            errors[key] = "must be an integer between 0 and 100"
        else:
            ceilings[key] = value

    first = ceilings.get("carry_over_penalty_1",
                         row.carry_over_penalty_1 if row.carry_over_penalty_1 is not None
                         else defaults.score_ceiling_after_first_carry)
    second = ceilings.get("carry_over_penalty_2",
                          row.carry_over_penalty_2 if row.carry_over_penalty_2 is not None
                          else defaults.score_ceiling_after_second_carry)
    if not errors and second > first:
        errors["carry_over_penalty_2"] = "second carry-over ceiling cannot exceed the first"

    flags = {}
    for column in _APPROVAL_COLUMNS.values():
        if column not in data:
            continue
        if not isinstance(data[column], bool):
            errors[column] = "must be a boolean"
        else:
            flags[column] = data[column]

    if errors:
        db.session.rollback()
        raise ValidationError("Invalid resolution policy settings", details=errors)

    before = {k: getattr(row, k) for k in (*ceilings, *flags)}
    row.carry_over_penalty_1 = first
    row.carry_over_penalty_2 = second
    for column in _APPROVAL_COLUMNS.values():
        value = flags.get(column, getattr(row, column))
        setattr(row, column, bool(value))
    row.updated_by = actor

    write_audit(
        entity_type="system_settings",
        entity_id=str(SETTINGS_ROW_ID),
        action="system_settings.update",
        actor=actor,
        diff={k: {"old": before[k], "new": getattr(row, k)} for k in before},
    )
    db.session.commit()
    logger.info("Resolution policy updated", extra={"actor": actor, "fields": sorted(before)})
    return row.to_dict()
