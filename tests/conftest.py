"""
Shared pytest fixtures for the KPI Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_plan: ActionPlan factory (committed rows)
    - policy: Pre-created system_settings row with approval required for UH / H
    - fake_gateway: FakeGateway recording every call (no DB)
    - scope: ENG Mar/2025 ReportScope
"""

import threading

import pytest

from kpi_portal import create_app
from kpi_portal.core.exceptions import GatewayError
from kpi_portal.models import db as _db
from kpi_portal.models.action_plan import ActionPlan
from kpi_portal.models.settings import SETTINGS_ROW_ID, SystemSettings
from kpi_portal.services.resolution_engine import CarryOverSchedule, DropApprovalPolicy, ResolutionAction
from kpi_portal.services.resolution_gateway import ReportScope


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_plan():
    """Factory for committed ActionPlan rows in the ENG Mar/2025 period by default.

    Commits rather than flushes: gateway writes run in their own app context
    and must see the rows.
    """

    def _make(title="Plan", **kw):
        fields = {
            "department_code": "ENG",
            "month": "Mar",
            "year": 2025,
            "action_plan": title,
            "pic": "alice",
            "category": "M (Medium)",
            "status": "Open",
            "carry_over_status": "Normal",
        }
        fields.update(kw)
        plan = ActionPlan(**fields)
        _db.session.add(plan)
        _db.session.commit()
        return plan

    return _make


@pytest.fixture()
def policy():
    """Ceilings 70/40; drop approval required for UH and H."""
    row = SystemSettings(
        id=SETTINGS_ROW_ID,
        carry_over_penalty_1=70,
        carry_over_penalty_2=40,
        drop_approval_req_uh=True,
        drop_approval_req_h=True,
        drop_approval_req_m=False,
        drop_approval_req_l=False,
    )
    _db.session.add(row)
    _db.session.commit()
    return row


# ── In-memory gateway ────────────────────────────────────────────────────


class FakeGateway:
    """Records every call; failures are switched on per operation."""

    WRITES = ("commit_batch_resolutions", "submit_drop_approval_request", "finalize_report_submission")

    def __init__(self, items=None, carry_over=None, drop_approval=None):
        self.items = list(items or [])
        self.carry_over = carry_over or CarryOverSchedule(80, 50)
        self.drop_approval = drop_approval or DropApprovalPolicy({})
        self.policy_error = None
        self.batch_error = None
        self.submission_error = None
        self.failing_approvals = set()
        self.barrier = None
        self.calls = []
        self._next_ticket = 100
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, args))

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def args_of(self, name):
        return [args for call, args in self.calls if call == name]

    @property
    def write_calls(self):
        return [call for call, _ in self.calls if call in self.WRITES]

    def _rendezvous(self):
        if self.barrier is not None:
            self.barrier.wait(timeout=5)

    # Reads

    def fetch_carry_over_policy(self):
        self._record("fetch_carry_over_policy")
        if self.policy_error:
            raise self.policy_error
        return self.carry_over

    def fetch_drop_approval_policy(self):
        self._record("fetch_drop_approval_policy")
        if self.policy_error:
            raise self.policy_error
        return self.drop_approval

    def list_unresolved_work_items(self, scope):
        self._record("list_unresolved_work_items", scope)
        return list(self.items)

    # Writes

    def commit_batch_resolutions(self, scope, decisions, actor_id=None):
        self._record("commit_batch_resolutions", list(decisions))
        self._rendezvous()
        if self.batch_error:
            raise self.batch_error
        actions = [ResolutionAction(d["action"]) for d in decisions]
        return {
            "carried_over_count": actions.count(ResolutionAction.CARRY_OVER),
            "dropped_count": actions.count(ResolutionAction.DROP),
        }

    def submit_drop_approval_request(self, work_item_id, reason, actor_id=None):
        self._record("submit_drop_approval_request", work_item_id, reason)
        self._rendezvous()
        if work_item_id in self.failing_approvals:
            raise GatewayError("approval service unavailable", work_item_ids=[work_item_id])
        with self._lock:
            self._next_ticket += 1
            return self._next_ticket

    def finalize_report_submission(self, scope, actor_id=None):
        self._record("finalize_report_submission", scope)
        if self.submission_error:
            raise self.submission_error
        return {**scope.to_dict(), "status": "submitted", "is_locked": True}


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def scope():
    return ReportScope.build("ENG", "Mar", 2025)
