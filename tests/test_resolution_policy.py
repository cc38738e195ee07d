"""Resolution policy store — fail-soft reads and administration."""
import pytest
from sqlalchemy.exc import OperationalError

from kpi_portal.core.exceptions import ValidationError
from kpi_portal.models.audit import AuditLog
from kpi_portal.services import resolution_policy
from kpi_portal.services.resolution_engine import CarryOverSchedule, PriorityCategory


def _boom():
    raise OperationalError("SELECT system_settings", {}, Exception("database is down"))


class TestFetch:
    def test_defaults_without_row(self):
        assert resolution_policy.fetch_carry_over_policy() == CarryOverSchedule(80, 50)
        drop = resolution_policy.fetch_drop_approval_policy()
        assert not any(drop[c] for c in PriorityCategory)

    def test_defaults_follow_app_config(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "RESOLUTION_DEFAULT_CEILINGS", (90, 60))
        assert resolution_policy.fetch_carry_over_policy() == CarryOverSchedule(90, 60)
        assert resolution_policy.get_policy_settings()["carry_over_penalty_2"] == 60

    def test_reads_stored_row(self, policy):
        assert resolution_policy.fetch_carry_over_policy() == CarryOverSchedule(70, 40)
        drop = resolution_policy.fetch_drop_approval_policy()
        assert drop[PriorityCategory.ULTRA_HIGH] and drop[PriorityCategory.HIGH]
        assert not drop[PriorityCategory.MEDIUM]
        assert not drop[PriorityCategory.UNSPECIFIED]

    def test_database_error_falls_back(self, monkeypatch):
        monkeypatch.setattr(resolution_policy, "_settings_row", _boom)
        assert resolution_policy.fetch_carry_over_policy() == resolution_policy.DEFAULT_CARRY_OVER
        assert resolution_policy.fetch_drop_approval_policy() == resolution_policy.DEFAULT_DROP_APPROVAL

    def test_load_policies_never_raises(self):
        class Broken:
            def fetch_carry_over_policy(self):
                raise ConnectionError("unreachable")

            def fetch_drop_approval_policy(self):
                raise ConnectionError("unreachable")

        doc = resolution_policy.load_policies(Broken())
        assert doc.carry_over == resolution_policy.DEFAULT_CARRY_OVER
        assert doc.drop_approval == resolution_policy.DEFAULT_DROP_APPROVAL


class TestAdministration:
    def test_get_defaults_without_row(self):
        settings = resolution_policy.get_policy_settings()
        assert settings["carry_over_penalty_1"] == 80
        assert settings["carry_over_penalty_2"] == 50
        assert settings["drop_approval_req_uh"] is False

    def test_partial_update_creates_row_and_audits(self):
        out = resolution_policy.update_policy_settings(
            {"carry_over_penalty_1": 90, "drop_approval_req_h": True}, actor="admin",
        )
        assert out["carry_over_penalty_1"] == 90
        assert out["carry_over_penalty_2"] == 50
        assert out["drop_approval_req_h"] is True
        assert out["updated_by"] == "admin"
        log = AuditLog.query.filter_by(action="system_settings.update").one()
        assert log.diff["carry_over_penalty_1"]["new"] == 90

    @pytest.mark.parametrize("payload, field", [
        ({"carry_over_penalty_1": 120}, "carry_over_penalty_1"),
        ({"carry_over_penalty_2": -1}, "carry_over_penalty_2"),
        ({"carry_over_penalty_1": True}, "carry_over_penalty_1"),
        ({"carry_over_penalty_1": 40, "carry_over_penalty_2": 60}, "carry_over_penalty_2"),
        ({"drop_approval_req_m": "yes"}, "drop_approval_req_m"),
    ])
    def test_invalid_updates(self, policy, payload, field):
        with pytest.raises(ValidationError) as exc:
            resolution_policy.update_policy_settings(payload)
        assert field in exc.value.details
        assert resolution_policy.fetch_carry_over_policy() == CarryOverSchedule(70, 40)
