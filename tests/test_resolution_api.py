"""
Resolution workflow HTTP API.

Tests cover:
  - Opening workflows (scope validation, mode)
  - Decision routing (requires_reason for gated drops)
  - Commit status codes: 200 / 207 / 422 / 502
  - submit_flow confirm, cancel, eviction of closed workflows
  - Policy administration endpoints
  - Health endpoint
"""
import pytest

from kpi_portal.core.exceptions import GatewayError
from kpi_portal.models import db
from kpi_portal.models.action_plan import ActionPlan
from kpi_portal.models.drop_request import DropRequest
from kpi_portal.models.report import MonthlyReport
from kpi_portal.services.resolution_gateway import SqlActionPlanGateway

BASE = "/api/v1/resolution"
SCOPE = {"department_code": "ENG", "month": "Mar", "year": 2025}


def _open(client, **extra):
    res = client.post(f"{BASE}/workflows", json={**SCOPE, **extra})
    assert res.status_code == 201, res.get_json()
    return res.get_json()


def _decide(client, wid, item_id, action, reason=None):
    body = {"action": action}
    if reason is not None:
        body["reason"] = reason
    return client.put(f"{BASE}/workflows/{wid}/decisions/{item_id}", json=body)


@pytest.fixture()
def plans(make_plan, policy):
    """One gated (H) and one ungated (L) plan; approval required for UH/H."""
    return make_plan("Gated", category="H (High)"), make_plan("Ungated", category="L")


# ═════════════════════════════════════════════════════════════════════════════
# OPEN
# ═════════════════════════════════════════════════════════════════════════════

class TestOpenWorkflow:
    def test_open_returns_snapshot(self, client, plans):
        gated, ungated = plans
        wf = _open(client, actor_id="lead")
        assert wf["state"] == "resolve"
        assert wf["mode"] == "standalone"
        assert wf["policies"]["carry_over"]["score_ceiling_after_first_carry"] == 70
        views = {v["id"]: v for v in wf["items"]}
        assert views[gated.id]["approval_required"] is True
        assert views[gated.id]["allowed_actions"] == ["carry_over", "request_drop"]
        assert views[ungated.id]["next_score_ceiling"] == 70
        assert wf["can_commit"] is False

    def test_invalid_scope(self, client):
        res = client.post(f"{BASE}/workflows", json={"department_code": "ENG", "month": "Smarch", "year": 2025})
        assert res.status_code == 422
        assert "month" in res.get_json()["details"]

    def test_invalid_mode(self, client):
        res = client.post(f"{BASE}/workflows", json={**SCOPE, "mode": "batch"})
        assert res.status_code == 400

    def test_unknown_workflow(self, client):
        assert client.get(f"{BASE}/workflows/nope").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# DECISIONS & COMMIT
# ═════════════════════════════════════════════════════════════════════════════

class TestDecisionsAndCommit:
    def test_standalone_flow(self, client, plans):
        gated, ungated = plans
        wid = _open(client)["id"]

        res = _decide(client, wid, ungated.id, "drop")
        assert res.status_code == 200
        assert res.get_json()["requires_reason"] is False

        res = _decide(client, wid, gated.id, "drop")
        body = res.get_json()
        assert body["requires_reason"] is True
        assert body["decision"] is None

        res = client.post(f"{BASE}/workflows/{wid}/commit")
        assert res.status_code == 422
        assert res.get_json()["details"]["undecided_work_item_ids"] == [gated.id]

        res = _decide(client, wid, gated.id, "drop", reason="abc")
        assert res.status_code == 422

        res = _decide(client, wid, gated.id, "drop", reason="Customer cancelled the project")
        assert res.get_json()["decision"]["action"] == "request_drop"

        res = client.post(f"{BASE}/workflows/{wid}/commit")
        assert res.status_code == 200
        body = res.get_json()
        assert body["result"]["outcome"] == "committed"
        assert body["result"]["dropped_count"] == 1
        assert body["workflow"]["state"] == "closed"
        assert body["workflow"]["closed_reason"] == "resolved"
        assert client.get(f"{BASE}/workflows/{wid}").status_code == 404

        db.session.expire_all()
        assert db.session.get(ActionPlan, ungated.id).resolution_type == "dropped"
        assert db.session.get(ActionPlan, gated.id).status == "Waiting Approval"
        assert DropRequest.query.filter_by(action_plan_id=gated.id, status="pending").count() == 1

    @pytest.mark.parametrize("reason", [12345, ["Customer cancelled"], {"text": "Customer cancelled"}])
    def test_non_string_reason_is_rejected(self, client, plans, reason):
        gated, _ = plans
        wid = _open(client)["id"]
        res = _decide(client, wid, gated.id, "request_drop", reason=reason)
        assert res.status_code == 422
        view = next(v for v in client.get(f"{BASE}/workflows/{wid}").get_json()["items"] if v["id"] == gated.id)
        assert view["decision"] is None

    def test_delete_decision(self, client, plans):
        _, ungated = plans
        wid = _open(client)["id"]
        _decide(client, wid, ungated.id, "carry_over")
        res = client.delete(f"{BASE}/workflows/{wid}/decisions/{ungated.id}")
        assert res.status_code == 200
        view = next(v for v in res.get_json()["items"] if v["id"] == ungated.id)
        assert view["decision"] is None

    def test_carry_over_rejected_for_final_rung(self, client, make_plan):
        final = make_plan("Final", carry_over_status="Late_Month_2")
        wf = _open(client)
        view = wf["items"][0]
        assert view["decision"] == {"action": "drop", "reason": None}
        res = _decide(client, wf["id"], final.id, "carry_over")
        assert res.status_code == 422

    def test_partial_commit_returns_207(self, client, plans, monkeypatch):
        gated, ungated = plans

        def _failing(self, work_item_id, reason, actor_id=None):
            raise GatewayError("ticketing offline", work_item_ids=[work_item_id])

        monkeypatch.setattr(SqlActionPlanGateway, "submit_drop_approval_request", _failing)
        wid = _open(client)["id"]
        _decide(client, wid, ungated.id, "carry_over")
        _decide(client, wid, gated.id, "request_drop", reason="Replaced by new KPI")

        res = client.post(f"{BASE}/workflows/{wid}/commit")
        assert res.status_code == 207
        body = res.get_json()
        assert body["result"]["outcome"] == "partial"
        assert body["result"]["carried_over_count"] == 1
        assert body["result"]["failed_work_item_ids"] == [gated.id]
        assert body["workflow"]["state"] == "resolve"
        assert client.get(f"{BASE}/workflows/{wid}").status_code == 200

    def test_batch_failure_returns_502_and_keeps_decisions(self, client, plans):
        _, ungated = plans
        wid = _open(client)["id"]
        _decide(client, wid, ungated.id, "drop")
        gated_id = plans[0].id
        _decide(client, wid, gated_id, "request_drop", reason="Out of budget")

        db.session.add(MonthlyReport(department_code="ENG", month="Mar", year=2025, is_locked=True))
        db.session.commit()

        res = client.post(f"{BASE}/workflows/{wid}/commit")
        assert res.status_code == 502
        body = res.get_json()
        assert body["result"]["outcome"] == "batch_failed"
        assert "locked" in body["result"]["batch_error"]
        views = {v["id"]: v for v in body["workflow"]["items"]}
        assert views[ungated.id]["decision"]["action"] == "drop"
        assert [r["ticket_id"] for r in body["result"]["approval_results"]] == [None]
        assert DropRequest.query.count() == 0


class TestSubmitFlow:
    def test_commit_confirm(self, client, plans):
        gated, ungated = plans
        wid = _open(client, mode="submit_flow")["id"]
        _decide(client, wid, ungated.id, "carry_over")
        _decide(client, wid, gated.id, "carry_over")

        res = client.post(f"{BASE}/workflows/{wid}/commit")
        assert res.status_code == 200
        assert res.get_json()["workflow"]["state"] == "confirm"

        res = client.post(f"{BASE}/workflows/{wid}/confirm")
        assert res.status_code == 200
        body = res.get_json()
        assert body["report"]["is_locked"] is True
        assert body["workflow"]["closed_reason"] == "submitted"

    def test_confirm_before_commit_conflicts(self, client, plans):
        wid = _open(client, mode="submit_flow")["id"]
        assert client.post(f"{BASE}/workflows/{wid}/confirm").status_code == 409

    def test_cancel_discards_without_writes(self, client, plans):
        gated, ungated = plans
        wid = _open(client, mode="submit_flow")["id"]
        _decide(client, wid, ungated.id, "drop")

        res = client.post(f"{BASE}/workflows/{wid}/cancel")
        assert res.status_code == 200
        assert res.get_json()["closed_reason"] == "cancelled"
        db.session.expire_all()
        assert db.session.get(ActionPlan, ungated.id).status == "Open"
        assert MonthlyReport.query.count() == 0
        assert client.get(f"{BASE}/workflows/{wid}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# POLICY & HEALTH
# ═════════════════════════════════════════════════════════════════════════════

class TestPolicyEndpoints:
    def test_get_policy(self, client, policy):
        res = client.get(f"{BASE}/policy")
        assert res.status_code == 200
        data = res.get_json()
        assert data["carry_over_penalty_1"] == 70
        assert data["min_reason_length"] == 5

    def test_put_policy(self, client):
        res = client.put(f"{BASE}/policy", json={"drop_approval_req_l": True}, headers={"X-User": "admin"})
        assert res.status_code == 200
        assert res.get_json()["drop_approval_req_l"] is True
        assert res.get_json()["updated_by"] == "admin"

    def test_put_policy_validation(self, client):
        res = client.put(f"{BASE}/policy", json={"carry_over_penalty_1": 500})
        assert res.status_code == 422
        assert "carry_over_penalty_1" in res.get_json()["details"]

    def test_put_policy_empty_body(self, client):
        assert client.put(f"{BASE}/policy", json={}).status_code == 400


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["checks"]["database"]["status"] == "ok"
    assert "X-Request-ID" in res.headers
